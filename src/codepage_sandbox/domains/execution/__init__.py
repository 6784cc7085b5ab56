"""Script execution domain."""
