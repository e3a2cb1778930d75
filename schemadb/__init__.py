"""
SchemaDB - Declarative schema evolution for versioned object-store databases.

Declare stores, indexes and migrations in code; SchemaDB compares them
with what is on disk, applies the safe differences, runs pending
migrations exactly once and refuses anything that could lose data.

Example:
    >>> from schemadb import SqliteEngine, StoreSchema, index, migration, open_database
    >>>
    >>> @migration("001-seed-admin")
    ... def seed_admin(db, tx):
    ...     tx.object_store("users").put({"id": "admin", "email": "admin@example.com"})
    >>>
    >>> users = StoreSchema(
    ...     name="users",
    ...     key_path="id",
    ...     indexes=(index("by_email", "email", unique=True),),
    ...     migrations=(seed_admin,),
    ... )
    >>>
    >>> engine = SqliteEngine("./data")
    >>> db = await open_database(engine, name="app", stores=[users], version_strategy="auto")
    >>> await db.store("users").get("admin")
    {'id': 'admin', 'email': 'admin@example.com'}

Invariants:
    - The database version never decreases
    - Dangerous changes (store removal, key path change) are never automatic
    - Each migration runs at most once, atomically with its upgrade

Version: 0.3.0
"""

__version__ = "0.3.0"

from .config import DatabaseConfig, ObservabilityConfig, SchemaDBConfig, StorageConfig
from .database import DatabaseTransaction, GatedStore, SchemaDatabase, open_database, open_db
from .engine import EngineError, SqliteEngine
from .errors import (
    ConfigurationError,
    DeferredSchemaChangeError,
    DuplicateDefinitionError,
    MigrationFailureError,
    SchemaDBError,
    UnsafeSchemaChangeError,
)
from .schema import (
    IndexDefinition,
    Migration,
    RemovedStorePolicy,
    StoreSchema,
    VersionStrategy,
    forget_migration,
    index,
    migration,
    schema_fingerprint,
)

__all__ = [
    # Version
    "__version__",
    # Declarations
    "StoreSchema",
    "IndexDefinition",
    "Migration",
    "index",
    "migration",
    "forget_migration",
    "schema_fingerprint",
    # Configuration
    "DatabaseConfig",
    "SchemaDBConfig",
    "StorageConfig",
    "ObservabilityConfig",
    "VersionStrategy",
    "RemovedStorePolicy",
    # Database
    "SqliteEngine",
    "SchemaDatabase",
    "GatedStore",
    "DatabaseTransaction",
    "open_db",
    "open_database",
    # Errors
    "SchemaDBError",
    "ConfigurationError",
    "DuplicateDefinitionError",
    "UnsafeSchemaChangeError",
    "DeferredSchemaChangeError",
    "MigrationFailureError",
    "EngineError",
]
