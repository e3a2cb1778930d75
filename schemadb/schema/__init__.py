"""
Schema module for SchemaDB.

This module covers the evolution of a versioned object-store database:
- Declarations (StoreSchema, IndexDefinition, Migration)
- Introspection of the persisted schema
- Diffing and safe/dangerous classification
- Version resolution
- Migration registry and history ledger
- Upgrade execution

Invariants:
    - Store names, index names (per store) and migration names are unique
    - Names starting with "__" are reserved for SchemaDB
    - Dangerous changes are never applied without an explicit migration
    - Each migration runs at most once per database

How to change safely:
    - Add stores and indexes freely; bump the version or use AUTO
    - Removing a store needs the preserve policy or a migration
    - Changing a key path needs a migration that recreates the store
"""

from .diff import (
    ChangeKind,
    RemovedStorePolicy,
    SchemaChange,
    SchemaDiffResult,
    apply_removed_store_policy,
    backup_store_name,
    diff_schemas,
    key_paths_equal,
    schema_fingerprint,
)
from .migrations import (
    LEDGER_STORE_NAME,
    MigrationRegistry,
    ensure_ledger_store,
    forget_migration,
    read_applied,
    record_applied,
)
from .reader import (
    ExistingStore,
    IndexInfo,
    ProbeResult,
    probe_database,
    read_existing_schema,
    to_desired_schema,
)
from .types import (
    RESERVED_PREFIX,
    IndexDefinition,
    Migration,
    StoreSchema,
    index,
    is_reserved_name,
    migration,
    validate_stores,
)
from .upgrade import UpgradeSession, UpgradeState, execute_upgrade
from .versioning import (
    VersionResolution,
    VersionStrategy,
    describe_change,
    resolve,
    resolve_version,
)

__all__ = [
    # Declarations
    "StoreSchema",
    "IndexDefinition",
    "Migration",
    "index",
    "migration",
    "validate_stores",
    "is_reserved_name",
    "RESERVED_PREFIX",
    # Introspection
    "ExistingStore",
    "IndexInfo",
    "ProbeResult",
    "read_existing_schema",
    "to_desired_schema",
    "probe_database",
    # Diffing
    "ChangeKind",
    "SchemaChange",
    "SchemaDiffResult",
    "RemovedStorePolicy",
    "diff_schemas",
    "key_paths_equal",
    "apply_removed_store_policy",
    "backup_store_name",
    "schema_fingerprint",
    # Versioning
    "VersionStrategy",
    "VersionResolution",
    "resolve_version",
    "resolve",
    "describe_change",
    # Migrations
    "LEDGER_STORE_NAME",
    "MigrationRegistry",
    "ensure_ledger_store",
    "read_applied",
    "record_applied",
    "forget_migration",
    # Upgrade
    "UpgradeState",
    "UpgradeSession",
    "execute_upgrade",
]
