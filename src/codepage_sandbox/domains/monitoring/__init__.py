"""Metrics and alerting domain."""
