"""
SchemaDB Test Suite.

This package contains:
- unit/: Unit tests (pure functions, SQLite engine in a temp directory)
- integration/: Integration tests (full open/upgrade flows on SQLite)
"""
