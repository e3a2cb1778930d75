"""
Upgrade execution for SchemaDB.

Runs inside the engine's upgrade callback and turns a resolved version
increase into structural changes plus migrations, all in the single
upgrade transaction.

Application order for an existing database:
    1. Ensure the migration ledger store exists
    2. Store renames (records, key path and indexes are carried over)
    3. New stores
    4. New indexes (a replaced index has its stale definition removed first)
    5. Remaining index deletions
    6. Pending migrations, each recorded in the ledger as soon as it returns

Invariants:
    - Everything here is issued synchronously from the upgrade callback
    - A failing migration aborts the whole transaction, including ledger
      records written earlier in the same upgrade
    - An UpgradeSession moves forward only:
      NOT_STARTED -> IN_UPGRADE -> COMMITTED | ABORTED

How to change safely:
    - New safe change kinds need a phase here; keep renames first so a
      recreated store of the same name does not collide with the backup
    - Never commit or await inside execute_upgrade; the engine does both
"""

from __future__ import annotations

import inspect
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Dict, Iterable, List, Optional, Set

from ..engine.base import InvalidStateError
from ..errors import MigrationFailureError
from .diff import ChangeKind, SchemaChange, SchemaDiffResult
from .migrations import LEDGER_STORE_NAME, ensure_ledger_store, record_applied
from .types import IndexDefinition, Migration, StoreSchema

if TYPE_CHECKING:
    from ..engine.sqlite import Connection, Transaction

logger = logging.getLogger(__name__)


class UpgradeState(Enum):
    """Lifecycle of the one-shot upgrade privilege."""

    NOT_STARTED = "not_started"
    IN_UPGRADE = "in_upgrade"
    COMMITTED = "committed"
    ABORTED = "aborted"


class UpgradeSession:
    """Tracks one version increase from callback to commit.

    The engine grants at most one upgrade transaction per open; the session
    makes a second entry an error instead of a silent re-run.

    Example:
        >>> session = UpgradeSession("app", 2, 3)
        >>> session.begin()
        >>> session.commit()
        >>> session.state
        <UpgradeState.COMMITTED: 'committed'>
    """

    def __init__(self, name: str, old_version: int, new_version: int) -> None:
        self.name = name
        self.old_version = old_version
        self.new_version = new_version
        self.state = UpgradeState.NOT_STARTED
        self.error: Optional[BaseException] = None
        self.migrations_run: List[str] = []

    def __repr__(self) -> str:
        return (
            f"UpgradeSession(name={self.name!r}, {self.old_version}->{self.new_version}, "
            f"state={self.state.value})"
        )

    def begin(self) -> None:
        """Enter the upgrade.

        Raises:
            InvalidStateError: If the session was already entered
        """
        self._transition(UpgradeState.NOT_STARTED, UpgradeState.IN_UPGRADE)

    def commit(self) -> None:
        self._transition(UpgradeState.IN_UPGRADE, UpgradeState.COMMITTED)
        logger.info(
            f"Upgrade of '{self.name}' to version {self.new_version} committed "
            f"({len(self.migrations_run)} migration(s) run)"
        )

    def abort(self, error: Optional[BaseException] = None) -> None:
        self._transition(UpgradeState.IN_UPGRADE, UpgradeState.ABORTED)
        self.error = error

    def _transition(self, expected: UpgradeState, target: UpgradeState) -> None:
        if self.state is not expected:
            raise InvalidStateError(
                f"Upgrade of '{self.name}' cannot move from {self.state.value} to {target.value}"
            )
        self.state = target


def _create_indexes(store: Any, indexes: Iterable[IndexDefinition]) -> None:
    for idx in indexes:
        store.create_index(
            idx.name,
            idx.key_path,
            unique=idx.unique,
            multi_entry=idx.multi_entry,
        )


def _create_all(connection: Connection, stores: Iterable[StoreSchema]) -> None:
    """Create every declared store of a fresh database."""
    for store_schema in stores:
        store = connection.create_object_store(store_schema.name, key_path=store_schema.key_path)
        _create_indexes(store, store_schema.indexes)
        logger.debug(
            f"Created store '{store_schema.name}' with {len(store_schema.indexes)} index(es)"
        )


def _rename_store(connection: Connection, transaction: Transaction, old: str, new: str) -> None:
    """Move a store to a new name, keeping key path, indexes and records."""
    source = transaction.object_store(old)
    key_path = source.key_path
    indexes = [source.index(name) for name in source.index_names]
    if key_path is None:
        entries = list(zip(source.get_all_keys(), source.get_all()))
    else:
        entries = [(None, value) for value in source.get_all()]

    connection.delete_object_store(old)
    target = connection.create_object_store(new, key_path=key_path)
    for idx in indexes:
        target.create_index(idx.name, idx.key_path, unique=idx.unique, multi_entry=idx.multi_entry)
    for key, value in entries:
        target.put(value, key)

    logger.info(f"Renamed store '{old}' to '{new}' ({len(entries)} record(s) moved)")


def _apply_safe_changes(
    connection: Connection,
    transaction: Transaction,
    changes: List[SchemaChange],
    desired: Dict[str, StoreSchema],
) -> None:
    by_kind: Dict[ChangeKind, List[SchemaChange]] = {kind: [] for kind in ChangeKind}
    for change in changes:
        by_kind[change.kind].append(change)

    for change in by_kind[ChangeKind.STORE_RENAME]:
        _rename_store(connection, transaction, change.store, change.new_value)

    for change in by_kind[ChangeKind.STORE_ADD]:
        store_schema = desired[change.store]
        store = connection.create_object_store(store_schema.name, key_path=store_schema.key_path)
        _create_indexes(store, store_schema.indexes)
        logger.info(f"Created store '{change.store}'")

    # INDEX_MODIFY is a delete followed by an add of the same name
    additions = by_kind[ChangeKind.INDEX_ADD] + by_kind[ChangeKind.INDEX_MODIFY]
    stale = {
        (c.store, c.index)
        for c in by_kind[ChangeKind.INDEX_DELETE] + by_kind[ChangeKind.INDEX_MODIFY]
    }
    done: Set[tuple] = set()

    for change in additions:
        store = transaction.object_store(change.store)
        identity = (change.store, change.index)
        if identity in stale and change.index in store.index_names:
            store.delete_index(change.index)
            done.add(identity)
        definition = change.new_value
        if not isinstance(definition, IndexDefinition):
            definition = desired[change.store].get_index(change.index)
        _create_indexes(store, [definition])
        logger.info(f"Created index '{change.store}.{change.index}'")

    for change in by_kind[ChangeKind.INDEX_DELETE]:
        identity = (change.store, change.index)
        if identity in done:
            continue
        transaction.object_store(change.store).delete_index(change.index)
        logger.info(f"Deleted index '{change.store}.{change.index}'")


def _ledger_names(connection: Connection, transaction: Transaction) -> Set[str]:
    if LEDGER_STORE_NAME not in connection.store_names:
        return set()
    return set(transaction.object_store(LEDGER_STORE_NAME).get_all_keys())


async def _guard(transaction: Transaction, name: str, awaitable: Awaitable[Any]) -> Any:
    """Await a migration's asynchronous work, aborting the upgrade if it fails."""
    try:
        return await awaitable
    except Exception as exc:
        error = MigrationFailureError(name, exc)
        logger.error(error.message)
        if transaction.active:
            transaction.abort(error)
        raise error from exc


def _run_migrations(
    connection: Connection,
    transaction: Transaction,
    pending: Iterable[Migration],
    applied: Set[str],
) -> List[str]:
    ran: List[str] = []
    for item in pending:
        if item.name in applied:
            logger.debug(f"Skipping migration already in ledger: {item.name}")
            continue

        logger.info(f"Running migration: {item.name}")
        try:
            result = item.up(connection, transaction)
        except Exception as exc:
            error = MigrationFailureError(item.name, exc)
            logger.error(error.message)
            if transaction.active:
                transaction.abort(error)
            raise error from exc

        if inspect.isawaitable(result):
            transaction.track(_guard(transaction, item.name, result))

        record_applied(transaction, item.name)
        applied.add(item.name)
        ran.append(item.name)
    return ran


def execute_upgrade(
    connection: Connection,
    transaction: Transaction,
    old_version: int,
    desired_stores: Iterable[StoreSchema],
    pending_migrations: Iterable[Migration],
    applied_names: Iterable[str],
    diff: Optional[SchemaDiffResult],
) -> List[str]:
    """Apply structural changes and pending migrations in the upgrade transaction.

    Args:
        connection: Connection the engine is upgrading
        transaction: The upgrade transaction
        old_version: Persisted version before the upgrade (0 when fresh)
        desired_stores: Declared stores
        pending_migrations: Migrations to run, in execution order
        applied_names: Ledger contents seen before the upgrade
        diff: Classified changes; ignored for a fresh database

    Returns:
        Names of the migrations that ran

    Raises:
        MigrationFailureError: If a migration raises; the transaction is aborted
    """
    desired_stores = list(desired_stores)

    if old_version == 0:
        _create_all(connection, desired_stores)
        ensure_ledger_store(connection)
    else:
        ensure_ledger_store(connection)
        if diff is not None and diff.safe:
            desired = {store.name: store for store in desired_stores}
            _apply_safe_changes(connection, transaction, diff.safe, desired)

    applied = set(applied_names) | _ledger_names(connection, transaction)
    return _run_migrations(connection, transaction, pending_migrations, applied)
