"""
CLI tools for SchemaDB administration.

This module provides command-line tools for:
- schema: Inspect databases, preview and run upgrades

Invariants:
    - Tools work against database files directly (no running service)
    - Only the upgrade command changes a database
"""

from .schema_cli import SchemaCLI, setup_logging

__all__ = ["SchemaCLI", "setup_logging"]
