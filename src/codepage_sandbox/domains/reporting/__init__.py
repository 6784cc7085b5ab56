"""Test reporting domain."""
