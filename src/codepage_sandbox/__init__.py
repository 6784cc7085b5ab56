"""Sandboxed codepage execution, reporting and alerting core."""
