"""
Storage engine for SchemaDB.

The engine hosts named, versioned databases of object stores. It grants
exactly one privileged upgrade transaction per version increase; that is
the only place stores and indexes can be created or deleted.

Invariants:
    - A database version never decreases
    - Version-changing opens against one name are serialized
    - Everything done during a failed upgrade is rolled back

How to change safely:
    - New engines must implement the StorageEngine protocol
    - Keep the upgrade callback synchronous; asynchronous work goes
      through Transaction.track()
"""

from .base import (
    AbortError,
    ConstraintError,
    DataError,
    EngineError,
    Index,
    InvalidAccessError,
    InvalidStateError,
    KeyPath,
    NotFoundError,
    ReadOnlyError,
    StorageEngine,
    TransactionInactiveError,
    TransactionMode,
    TransactionState,
    VersionError,
)
from .sqlite import Connection, ObjectStore, SqliteEngine, Transaction

__all__ = [
    # Protocol and types
    "StorageEngine",
    "Index",
    "KeyPath",
    "TransactionMode",
    "TransactionState",
    # Errors
    "EngineError",
    "VersionError",
    "ConstraintError",
    "NotFoundError",
    "InvalidStateError",
    "InvalidAccessError",
    "TransactionInactiveError",
    "ReadOnlyError",
    "DataError",
    "AbortError",
    # Implementation
    "SqliteEngine",
    "Connection",
    "Transaction",
    "ObjectStore",
]
