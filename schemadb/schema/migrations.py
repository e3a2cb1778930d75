"""
Migration registry and history ledger for SchemaDB.

The registry collects every migration declared by every store and fixes
their execution order. The ledger is a reserved object store recording
which migrations have run; it makes migrations idempotent across opens.

Ledger layout:
    __schema_history__ (key path "name"):
        - name: migration name
        - applied_at: Unix milliseconds when the upgrade ran it

Invariants:
    - Migration names are globally unique, whichever store declares them
    - Execution order is the code-point order of names, independent of
      declaration order
    - Ledger records are written only inside the upgrade transaction, so
      they commit or roll back together with the migration
    - The ledger is append-only; forget_migration() is the one explicit
      administrative exception

How to change safely:
    - Never rename a shipped migration; it would run again
    - Prefix names with a sortable sequence ("001-", "2024-05-") to control order
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Dict, Iterable, Iterator, List

from ..errors import DuplicateDefinitionError
from .types import Migration, StoreSchema

if TYPE_CHECKING:
    from ..engine.sqlite import Connection, Transaction

logger = logging.getLogger(__name__)

LEDGER_STORE_NAME = "__schema_history__"
LEDGER_KEY_PATH = "name"


class MigrationRegistry:
    """Ordered, duplicate-free collection of every declared migration.

    Example:
        >>> registry = MigrationRegistry.from_stores([users, posts])
        >>> [m.name for m in registry.pending(["001-init"])]
        ['002-backfill', '003-rename']
    """

    def __init__(self, migrations: Iterable[Migration] = ()) -> None:
        self._by_name: Dict[str, Migration] = {}
        for item in migrations:
            self.register(item)

    @classmethod
    def from_stores(cls, stores: Iterable[StoreSchema]) -> MigrationRegistry:
        """Collect migrations across stores.

        Raises:
            DuplicateDefinitionError: If two migrations share a name
        """
        registry = cls()
        for store in stores:
            for item in store.migrations:
                registry.register(item)
        return registry

    def register(self, item: Migration) -> None:
        """Add a migration.

        Raises:
            DuplicateDefinitionError: If the name is already registered
        """
        if item.name in self._by_name:
            raise DuplicateDefinitionError(
                "migration",
                item.name,
                f'Duplicate migration name "{item.name}" found across stores',
            )
        self._by_name[item.name] = item
        logger.debug(f"Registered migration: {item.name}")

    def __len__(self) -> int:
        return len(self._by_name)

    def __iter__(self) -> Iterator[Migration]:
        return iter(self.ordered)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def names(self) -> List[str]:
        """Registered names in execution order."""
        return sorted(self._by_name)

    @property
    def ordered(self) -> List[Migration]:
        """Registered migrations in execution order."""
        return [self._by_name[name] for name in self.names]

    def pending(self, applied: Iterable[str]) -> List[Migration]:
        """Migrations not yet in the ledger, in execution order."""
        applied_set = set(applied)
        return [m for m in self.ordered if m.name not in applied_set]


def ensure_ledger_store(db: Connection) -> bool:
    """Create the ledger store if it is missing. Must run inside the upgrade.

    Databases created before the ledger existed get it on their next upgrade.

    Returns:
        True if the store was created
    """
    if LEDGER_STORE_NAME in db.store_names:
        return False
    db.create_object_store(LEDGER_STORE_NAME, key_path=LEDGER_KEY_PATH)
    logger.debug(f"Created migration ledger store on '{db.name}'")
    return True


def read_applied(db: Connection) -> List[str]:
    """Read applied migration names from an open connection.

    The read transaction is aborted, never committed. Returns an empty
    list if the ledger store does not exist.
    """
    if LEDGER_STORE_NAME not in db.store_names:
        return []

    tx = db.transaction([LEDGER_STORE_NAME], "readonly")
    try:
        records = tx.object_store(LEDGER_STORE_NAME).get_all()
    finally:
        tx.abort()
    return sorted(record["name"] for record in records)


def record_applied(tx: Transaction, name: str) -> None:
    """Append a migration name to the ledger within the given transaction."""
    tx.object_store(LEDGER_STORE_NAME).put(
        {"name": name, "applied_at": int(time.time() * 1000)}
    )
    logger.debug(f"Recorded migration as applied: {name}")


def forget_migration(tx: Transaction, name: str) -> None:
    """Remove a ledger entry so the migration runs again on the next upgrade.

    This is the only sanctioned way to shrink the ledger; call it from an
    administrative migration.
    """
    tx.object_store(LEDGER_STORE_NAME).delete(name)
    logger.warning(f"Removed migration from ledger: {name}")

