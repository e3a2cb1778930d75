"""
Schema CLI tool for SchemaDB.

This tool inspects databases and previews or runs upgrades:
- inspect: Persisted schema, version and reserved stores as JSON
- history: Applied migrations from the ledger
- diff: Classified changes between a database and declared stores
- snapshot: Declared schema with its fingerprint
- upgrade: Open a database with declared stores, applying changes

Usage:
    schemadb-schema inspect --db app
    schemadb-schema diff --db app --module myapp.schema --preserve
    schemadb-schema snapshot --module myapp.schema > schema.lock.json
    schemadb-schema upgrade --db app --module myapp.schema --version 4

Declared stores are loaded from a module exposing `stores` or `get_stores()`.

Invariants:
    - Dangerous changes cause a non-zero exit code
    - JSON output is deterministic (sorted keys)
    - Only upgrade writes to a database

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for CI parsing
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Sequence

import json_log_formatter

from ..config import ObservabilityConfig, SchemaDBConfig
from ..database import open_database
from ..engine import EngineError, SqliteEngine
from ..errors import SchemaDBError
from ..schema import (
    RemovedStorePolicy,
    StoreSchema,
    VersionStrategy,
    apply_removed_store_policy,
    describe_change,
    diff_schemas,
    is_reserved_name,
    probe_database,
    read_applied,
    read_existing_schema,
    schema_fingerprint,
    to_desired_schema,
)
from ..schema.migrations import LEDGER_STORE_NAME

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Observability configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    # Logs go to stderr so stdout stays parseable
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


def _key_path(value: Any) -> Any:
    return list(value) if isinstance(value, tuple) else value


class SchemaCLI:
    """CLI tool for schema management.

    Example:
        >>> cli = SchemaCLI(SqliteEngine("./data"))
        >>> report = await cli.inspect("app")
        >>> report["version"]
        3
    """

    def __init__(self, engine: SqliteEngine) -> None:
        self.engine = engine

    async def inspect(self, name: str) -> Dict[str, Any]:
        """Describe the persisted schema of a database.

        Args:
            name: Database name

        Returns:
            Dictionary with version, stores, reserved stores and ledger
        """
        if not self.engine.exists(name):
            return {"name": name, "exists": False, "version": 0}

        db = await self.engine.open(name)
        try:
            schema = read_existing_schema(db)
            applied = read_applied(db)
            reserved = [s for s in db.store_names if is_reserved_name(s) and s != LEDGER_STORE_NAME]
            version = db.version
        finally:
            db.close()

        stores = {
            store.name: {
                "key_path": _key_path(store.key_path),
                "indexes": {
                    index_name: {
                        "key_path": _key_path(info.key_path),
                        "unique": info.unique,
                        "multi_entry": info.multi_entry,
                    }
                    for index_name, info in store.indexes.items()
                },
            }
            for store in schema.values()
        }
        return {
            "name": name,
            "exists": True,
            "version": version,
            "stores": stores,
            "backups": reserved,
            "applied_migrations": applied,
        }

    async def history(self, name: str) -> List[str]:
        """Applied migrations, in execution order."""
        probe = await probe_database(self.engine, name)
        return probe.applied if probe is not None else []

    async def diff(
        self,
        name: str,
        stores: Sequence[StoreSchema],
        policy: RemovedStorePolicy = RemovedStorePolicy.ERROR,
    ) -> List[Dict[str, Any]]:
        """Classify the changes an upgrade would make.

        Args:
            name: Database name
            stores: Declared stores
            policy: Removed-store policy to apply

        Returns:
            List of change dictionaries, safe changes first
        """
        probe = await probe_database(self.engine, name)
        existing = probe.schema if probe is not None else {}
        current = probe.version if probe is not None else 0

        result = diff_schemas(existing, to_desired_schema(stores))
        result = apply_removed_store_policy(result, policy, current)

        return [
            {
                "kind": change.kind.name,
                "store": change.store,
                "index": change.index,
                "message": describe_change(change),
                "is_dangerous": change.is_dangerous,
            }
            for change in result.changes
        ]

    def snapshot(self, stores: Sequence[StoreSchema]) -> str:
        """Export declared stores to JSON.

        Returns:
            JSON string representation
        """
        output = {
            "fingerprint": schema_fingerprint(stores),
            "stores": [store.to_dict() for store in stores],
        }
        return json.dumps(output, indent=2, sort_keys=True)

    async def upgrade(
        self,
        name: str,
        stores: Sequence[StoreSchema],
        version: Optional[int] = None,
        policy: RemovedStorePolicy = RemovedStorePolicy.ERROR,
        strategy: VersionStrategy = VersionStrategy.AUTO,
    ) -> Dict[str, Any]:
        """Open a database with the declared stores and report what ran.

        A given version always opens with the explicit strategy; without
        one, `strategy` applies and explicit fails for lack of a version.
        """
        db = await open_database(
            self.engine,
            name=name,
            stores=tuple(stores),
            version=version,
            version_strategy=strategy if version is None else VersionStrategy.EXPLICIT,
            removed_store_policy=policy,
        )
        try:
            return {
                "name": name,
                "version": db.version,
                "previous_version": db.resolution.current_version,
                "migrations_run": list(db.upgrade.migrations_run),
            }
        finally:
            db.close()


def main(argv: Optional[Sequence[str]] = None) -> None:
    """CLI entry point for schema tool."""
    config = SchemaDBConfig.from_env()

    parser = argparse.ArgumentParser(description="SchemaDB schema management tool")
    parser.add_argument(
        "--data-dir",
        default=config.storage.data_dir,
        help="Directory holding database files (default: $SCHEMADB_DATA_DIR)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    inspect_parser = subparsers.add_parser("inspect", help="Show persisted schema")
    inspect_parser.add_argument("--db", required=True, help="Database name")

    history_parser = subparsers.add_parser("history", help="Show applied migrations")
    history_parser.add_argument("--db", required=True, help="Database name")

    diff_parser = subparsers.add_parser("diff", help="Show changes an upgrade would make")
    diff_parser.add_argument("--db", required=True, help="Database name")
    diff_parser.add_argument("--module", required=True, help="Module declaring the stores")
    diff_parser.add_argument(
        "--preserve", action="store_true", help="Back up removed stores instead of failing"
    )
    diff_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    snapshot_parser = subparsers.add_parser("snapshot", help="Export declared schema to JSON")
    snapshot_parser.add_argument("--module", required=True, help="Module declaring the stores")
    snapshot_parser.add_argument("--output", "-o", help="Output file (default: stdout)")

    upgrade_parser = subparsers.add_parser("upgrade", help="Apply declared schema")
    upgrade_parser.add_argument("--db", required=True, help="Database name")
    upgrade_parser.add_argument("--module", required=True, help="Module declaring the stores")
    upgrade_parser.add_argument("--version", type=int, help="Explicit version (default: $SCHEMADB_VERSION_STRATEGY)")
    upgrade_parser.add_argument(
        "--preserve", action="store_true", help="Back up removed stores instead of failing"
    )

    args = parser.parse_args(argv)
    setup_logging(config.observability)
    config.log_config()

    cli = SchemaCLI(
        SqliteEngine(
            args.data_dir,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
    )
    policy = RemovedStorePolicy.PRESERVE if getattr(args, "preserve", False) else (
        config.removed_store_policy
    )

    if args.command == "inspect":
        report = asyncio.run(cli.inspect(args.db))
        print(json.dumps(report, indent=2, sort_keys=True))

    elif args.command == "history":
        applied = asyncio.run(cli.history(args.db))
        if not applied:
            print("No migrations applied")
        for name in applied:
            print(name)

    elif args.command == "diff":
        changes = asyncio.run(cli.diff(args.db, _load_stores(args.module), policy))

        if args.format == "json":
            print(json.dumps(changes, indent=2, sort_keys=True))
        elif not changes:
            print("No changes detected")
        else:
            print(f"Found {len(changes)} change(s):")
            for change in changes:
                status = "DANGEROUS" if change["is_dangerous"] else "SAFE"
                print(f"  [{status}] {change['kind']}: {change['store']}")
                print(f"          {change['message']}")

        dangerous = [c for c in changes if c["is_dangerous"]]
        sys.exit(1 if dangerous else 0)

    elif args.command == "snapshot":
        output = cli.snapshot(_load_stores(args.module))

        if args.output:
            with open(args.output, "w") as f:
                f.write(output)
            print(f"Schema exported to {args.output}", file=sys.stderr)
        else:
            print(output)

    elif args.command == "upgrade":
        try:
            report = asyncio.run(
                cli.upgrade(
                    args.db,
                    _load_stores(args.module),
                    args.version,
                    policy,
                    config.version_strategy,
                )
            )
        except (SchemaDBError, EngineError) as e:
            print(f"Upgrade failed: {e}", file=sys.stderr)
            sys.exit(1)
        print(json.dumps(report, indent=2, sort_keys=True))


def _load_stores(module_path: str) -> List[StoreSchema]:
    """Load store declarations from a module.

    Args:
        module_path: Python module path exposing `stores` or `get_stores()`

    Returns:
        List of StoreSchema
    """
    module = importlib.import_module(module_path)
    if hasattr(module, "stores"):
        return list(module.stores)
    if hasattr(module, "get_stores"):
        return list(module.get_stores())
    raise ValueError(f"Module {module_path} has no 'stores' or 'get_stores()'")


if __name__ == "__main__":
    main()
