"""
SQLite-backed storage engine for SchemaDB.

Each named database is one SQLite file under the engine's data directory.
The file holds four tables:

    _schemadb_meta:
        - key TEXT PRIMARY KEY ("version")
        - value TEXT

    _schemadb_stores:
        - name TEXT PRIMARY KEY
        - key_path TEXT (JSON, NULL for out-of-line keys)

    _schemadb_indexes:
        - store TEXT
        - name TEXT
        - key_path TEXT (JSON)
        - is_unique INTEGER
        - multi_entry INTEGER
        - PRIMARY KEY (store, name)

    _schemadb_records:
        - store TEXT
        - key TEXT (JSON-encoded key)
        - value TEXT (JSON-encoded record)
        - PRIMARY KEY (store, key)

Invariants:
    - The persisted version only changes inside a committed upgrade
    - Version-changing opens against one name are serialized
    - The upgrade callback runs synchronously; work it registers with
      Transaction.track() is awaited in aggregate before commit
    - Any failure during the upgrade rolls back every change it made,
      and an aborted first-ever creation leaves no database behind

How to change safely:
    - The table layout is an on-disk format; add tables rather than
      altering existing ones
    - Keep every structural statement inside the upgrade transaction
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Awaitable, Sequence
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from .base import (
    MISSING,
    AbortError,
    ConstraintError,
    DataError,
    Index,
    InvalidAccessError,
    InvalidStateError,
    KeyPath,
    NotFoundError,
    ReadOnlyError,
    TransactionInactiveError,
    TransactionMode,
    TransactionState,
    UpgradeCallback,
    VersionError,
    decode_key,
    encode_key,
    evaluate_key_path,
    index_keys,
    is_valid_key,
    key_path_from_json,
    key_path_to_json,
    key_sort_key,
    normalize_key_path,
)

logger = logging.getLogger(__name__)

VersionChangeHandler = Callable[[int, int], None]


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class SqliteEngine:
    """Storage engine hosting versioned databases as SQLite files.

    Thread safety:
        Intended for use from a single asyncio event loop. Opens that
        change the version are serialized per database name.

    Example:
        >>> engine = SqliteEngine("/var/lib/schemadb")
        >>> def upgrade(conn, tx, old_version):
        ...     conn.create_object_store("users", key_path="id")
        >>> conn = await engine.open("app", 1, on_upgrade=upgrade)
        >>> conn.store_names
        ['users']
    """

    def __init__(
        self,
        data_dir: Union[str, Path],
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the engine.

        Args:
            data_dir: Directory for SQLite database files
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._connections: Dict[str, Set[Connection]] = {}
        self._open_locks: Dict[str, asyncio.Lock] = {}
        self._release_waiters: Dict[str, List[asyncio.Future]] = {}

    def _get_db_path(self, name: str) -> Path:
        """Get database file path for a database name."""
        # Sanitize name to prevent path traversal
        safe_name = "".join(c for c in name if c.isalnum() or c in "-_.").lstrip(".")
        if not safe_name:
            raise ValueError(f"Invalid database name: {name!r}")
        return self.data_dir / f"{safe_name}.sqlite"

    def _connect(self, path: Path) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
        if self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    @staticmethod
    def _create_schema(conn: sqlite3.Connection) -> None:
        """Create the metadata and record tables."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS _schemadb_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS _schemadb_stores (
                name TEXT PRIMARY KEY,
                key_path TEXT
            );

            CREATE TABLE IF NOT EXISTS _schemadb_indexes (
                store TEXT NOT NULL,
                name TEXT NOT NULL,
                key_path TEXT NOT NULL,
                is_unique INTEGER NOT NULL DEFAULT 0,
                multi_entry INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (store, name)
            );

            CREATE TABLE IF NOT EXISTS _schemadb_records (
                store TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (store, key)
            );
        """)

    @staticmethod
    def _read_version(conn: sqlite3.Connection) -> int:
        table = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = '_schemadb_meta'"
        ).fetchone()
        if table is None:
            return 0
        row = conn.execute("SELECT value FROM _schemadb_meta WHERE key = 'version'").fetchone()
        return int(row["value"]) if row is not None else 0

    def _remove_files(self, path: Path) -> None:
        for suffix in ("", "-wal", "-shm", "-journal"):
            Path(f"{path}{suffix}").unlink(missing_ok=True)

    def exists(self, name: str) -> bool:
        """Whether a database with this name has been created."""
        return self.version_of(name) > 0

    def version_of(self, name: str) -> int:
        """Persisted version of a database, 0 if it does not exist."""
        path = self._get_db_path(name)
        if not path.exists():
            return 0
        conn = sqlite3.connect(str(path), timeout=self.busy_timeout_ms / 1000.0)
        conn.row_factory = sqlite3.Row
        try:
            return self._read_version(conn)
        finally:
            conn.close()

    def delete_database(self, name: str) -> None:
        """Remove a database file.

        Raises:
            InvalidStateError: If connections to the database are still open
        """
        if any(not c.closed for c in self._connections.get(name, ())):
            raise InvalidStateError(f"Cannot delete database '{name}' while connections are open")
        self._remove_files(self._get_db_path(name))
        logger.info(f"Deleted database: {name}")

    async def open(
        self,
        name: str,
        version: Optional[int] = None,
        on_upgrade: Optional[UpgradeCallback] = None,
        on_blocked: Optional[Callable[[], None]] = None,
    ) -> Connection:
        """Open a connection to a database.

        Args:
            name: Database name
            version: Requested version (None opens at the current version,
                creating the database at version 1 if it does not exist)
            on_upgrade: Called synchronously with (connection, transaction,
                old_version) when the requested version is greater than the
                persisted one
            on_blocked: Called once if other open connections delay the upgrade

        Returns:
            Open Connection at the requested version

        Raises:
            VersionError: If version is invalid or lower than the persisted version
            EngineError: If the upgrade is aborted
            Exception: Whatever the upgrade callback or its tracked work raised
        """
        if version is not None and (
            isinstance(version, bool) or not isinstance(version, int) or version < 1
        ):
            raise VersionError(f"Invalid version {version!r}; versions are positive integers")

        lock = self._open_locks.setdefault(name, asyncio.Lock())
        async with lock:
            path = self._get_db_path(name)
            path.parent.mkdir(parents=True, exist_ok=True)

            raw = self._connect(path)
            try:
                self._create_schema(raw)
                old_version = self._read_version(raw)
            except Exception:
                raw.close()
                raise

            if version is None:
                version = old_version or 1

            if version < old_version:
                raw.close()
                raise VersionError(
                    f"Requested version {version} is less than the existing version "
                    f"{old_version} of database '{name}'"
                )

            connection = Connection(self, name, raw, old_version)

            if version > old_version:
                try:
                    await self._wait_until_unblocked(name, old_version, version, on_blocked)
                    await self._run_upgrade(connection, old_version, version, on_upgrade)
                except BaseException:
                    connection.close()
                    if old_version == 0:
                        self._remove_files(path)
                    raise

            self._connections.setdefault(name, set()).add(connection)
            return connection

    async def _wait_until_unblocked(
        self,
        name: str,
        old_version: int,
        new_version: int,
        on_blocked: Optional[Callable[[], None]],
    ) -> None:
        """Notify other connections of the version change and wait for them to close."""
        for other in list(self._connections.get(name, ())):
            if not other.closed:
                other._fire_version_change(old_version, new_version)

        if not self._has_open_connections(name):
            return

        logger.info(
            f"Open of '{name}' at version {new_version} is blocked by open connections"
        )
        if on_blocked is not None:
            on_blocked()

        loop = asyncio.get_running_loop()
        while self._has_open_connections(name):
            waiter = loop.create_future()
            self._release_waiters.setdefault(name, []).append(waiter)
            await waiter

    async def _run_upgrade(
        self,
        connection: Connection,
        old_version: int,
        new_version: int,
        on_upgrade: Optional[UpgradeCallback],
    ) -> None:
        """Grant the single upgrade transaction for this version increase."""
        connection._raw.execute("BEGIN IMMEDIATE")
        transaction = Transaction(connection, (), TransactionMode.VERSIONCHANGE)
        connection._active = transaction
        connection._upgrade_transaction = transaction
        connection._version = new_version

        try:
            if on_upgrade is not None:
                on_upgrade(connection, transaction, old_version)

            await transaction._settle()

            if transaction.state is TransactionState.ABORTED:
                raise transaction.error or AbortError(
                    f"Upgrade of '{connection.name}' to version {new_version} was aborted"
                )

            connection._raw.execute(
                "INSERT OR REPLACE INTO _schemadb_meta (key, value) VALUES ('version', ?)",
                (str(new_version),),
            )
            transaction._commit()
            logger.info(
                f"Upgraded database '{connection.name}' from version {old_version} "
                f"to {new_version}"
            )
        except BaseException as exc:
            if transaction.state is TransactionState.ACTIVE:
                transaction.abort(exc if isinstance(exc, Exception) else None)
            connection._version = old_version
            logger.warning(
                f"Upgrade of '{connection.name}' to version {new_version} failed: {exc}"
            )
            raise
        finally:
            connection._upgrade_transaction = None

    def _has_open_connections(self, name: str) -> bool:
        return any(not c.closed for c in self._connections.get(name, ()))

    def _release(self, connection: Connection) -> None:
        """Forget a closed connection and wake opens waiting on it."""
        self._connections.get(connection.name, set()).discard(connection)
        if self._has_open_connections(connection.name):
            return
        for waiter in self._release_waiters.pop(connection.name, []):
            if not waiter.done():
                waiter.set_result(None)


class Connection:
    """An open connection to one database at one version.

    Structural operations (create_object_store, delete_object_store and the
    index operations on ObjectStore) are only legal while the engine's
    upgrade transaction is active.

    Attributes:
        name: Database name
        on_version_change: Called with (old_version, new_version) when another
            open requests a higher version; closing the connection inside the
            handler lets that open proceed
    """

    def __init__(
        self,
        engine: SqliteEngine,
        name: str,
        raw: sqlite3.Connection,
        version: int,
    ) -> None:
        self._engine = engine
        self.name = name
        self._raw = raw
        self._version = version
        self._closed = False
        self._active: Optional[Transaction] = None
        self._upgrade_transaction: Optional[Transaction] = None
        self.on_version_change: Optional[VersionChangeHandler] = None

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"Connection(name={self.name!r}, version={self._version}, {state})"

    @property
    def version(self) -> int:
        """Version of the database as seen by this connection."""
        return self._version

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def store_names(self) -> List[str]:
        """Names of every object store, sorted."""
        self._require_open()
        rows = self._raw.execute("SELECT name FROM _schemadb_stores ORDER BY name").fetchall()
        return [row["name"] for row in rows]

    def transaction(
        self,
        store_names: Union[str, Sequence[str]],
        mode: Union[str, TransactionMode] = TransactionMode.READONLY,
    ) -> Transaction:
        """Start a readonly or readwrite transaction over some stores.

        Only one transaction may be active on a connection at a time.
        Readwrite transactions must be committed explicitly; closing the
        connection rolls back an uncommitted one.

        Raises:
            InvalidStateError: If an upgrade or another transaction is active
            NotFoundError: If a store does not exist
        """
        self._require_open()
        if isinstance(store_names, str):
            store_names = [store_names]
        if isinstance(mode, str):
            mode = TransactionMode.from_str(mode)

        if mode is TransactionMode.VERSIONCHANGE:
            raise InvalidAccessError("Upgrade transactions are only granted by the engine")
        if self._upgrade_transaction is not None:
            raise InvalidStateError("Cannot start a transaction while an upgrade is running")
        if self._active is not None and self._active.active:
            raise InvalidStateError(f"Another transaction is active on '{self.name}'")
        if not store_names:
            raise InvalidAccessError("A transaction needs at least one store")

        for store_name in store_names:
            self._store_key_path(store_name)

        self._raw.execute("BEGIN" if mode is TransactionMode.READONLY else "BEGIN IMMEDIATE")
        transaction = Transaction(self, store_names, mode)
        self._active = transaction
        return transaction

    def create_object_store(
        self,
        name: str,
        key_path: Union[str, Sequence[str], None] = None,
    ) -> ObjectStore:
        """Create an object store. Only legal during the upgrade.

        Raises:
            InvalidStateError: If no upgrade is running
            ConstraintError: If the store already exists
        """
        transaction = self._require_upgrade()
        if not name:
            raise InvalidAccessError("Object store name must not be empty")
        normalized = normalize_key_path(key_path)
        if self._has_store(name):
            raise ConstraintError(f"Object store '{name}' already exists")

        self._raw.execute(
            "INSERT INTO _schemadb_stores (name, key_path) VALUES (?, ?)",
            (name, key_path_to_json(normalized)),
        )
        logger.debug(f"Created object store: {name} (key_path={normalized!r})")
        return ObjectStore(transaction, name)

    def delete_object_store(self, name: str) -> None:
        """Delete an object store with its indexes and records. Only legal during the upgrade.

        Raises:
            InvalidStateError: If no upgrade is running
            NotFoundError: If the store does not exist
        """
        self._require_upgrade()
        if not self._has_store(name):
            raise NotFoundError(f"Object store '{name}' not found")

        self._raw.execute("DELETE FROM _schemadb_records WHERE store = ?", (name,))
        self._raw.execute("DELETE FROM _schemadb_indexes WHERE store = ?", (name,))
        self._raw.execute("DELETE FROM _schemadb_stores WHERE name = ?", (name,))
        logger.debug(f"Deleted object store: {name}")

    def close(self) -> None:
        """Close the connection, rolling back any uncommitted transaction."""
        if self._closed:
            return
        if self._active is not None and self._active.active:
            self._active.abort(AbortError("Connection closed with an active transaction"))
        self._closed = True
        self._raw.close()
        self._engine._release(self)

    def _fire_version_change(self, old_version: int, new_version: int) -> None:
        if self.on_version_change is not None:
            self.on_version_change(old_version, new_version)

    def _require_open(self) -> None:
        if self._closed:
            raise InvalidStateError(f"Connection to '{self.name}' is closed")

    def _require_upgrade(self) -> Transaction:
        self._require_open()
        transaction = self._upgrade_transaction
        if transaction is None or not transaction.active:
            raise InvalidStateError("Structural changes are only allowed during an upgrade")
        return transaction

    def _has_store(self, name: str) -> bool:
        row = self._raw.execute(
            "SELECT 1 FROM _schemadb_stores WHERE name = ?", (name,)
        ).fetchone()
        return row is not None

    def _store_key_path(self, name: str) -> Optional[KeyPath]:
        row = self._raw.execute(
            "SELECT key_path FROM _schemadb_stores WHERE name = ?", (name,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Object store '{name}' not found")
        return key_path_from_json(row["key_path"])

    def _indexes(self, store: str) -> List[Index]:
        rows = self._raw.execute(
            """
            SELECT name, key_path, is_unique, multi_entry
            FROM _schemadb_indexes WHERE store = ? ORDER BY name
            """,
            (store,),
        ).fetchall()
        return [
            Index(
                name=row["name"],
                key_path=key_path_from_json(row["key_path"]),
                unique=bool(row["is_unique"]),
                multi_entry=bool(row["multi_entry"]),
            )
            for row in rows
        ]

    def _transaction_finished(self, transaction: Transaction) -> None:
        if self._active is transaction:
            self._active = None


class Transaction:
    """A transaction over one connection.

    State machine: ACTIVE -> COMMITTED | ABORTED, no re-entry.

    Attributes:
        store_names: Stores in scope (empty for the upgrade, which may touch any store)
        mode: Transaction mode
        state: Current lifecycle state
        error: The error that aborted the transaction, if any
    """

    def __init__(
        self,
        connection: Connection,
        store_names: Sequence[str],
        mode: TransactionMode,
    ) -> None:
        self._connection = connection
        self.store_names: Tuple[str, ...] = tuple(store_names)
        self.mode = mode
        self.state = TransactionState.ACTIVE
        self.error: Optional[BaseException] = None
        self._pending: List[asyncio.Future] = []
        self._tracked: List[asyncio.Future] = []

    def __repr__(self) -> str:
        return f"Transaction(mode={self.mode.value}, state={self.state.value})"

    @property
    def active(self) -> bool:
        return self.state is TransactionState.ACTIVE

    @property
    def connection(self) -> Connection:
        return self._connection

    def object_store(self, name: str) -> ObjectStore:
        """Get a handle on a store within this transaction.

        Raises:
            TransactionInactiveError: If the transaction has finished
            NotFoundError: If the store does not exist or is out of scope
        """
        self._require_active()
        if self.mode is not TransactionMode.VERSIONCHANGE and name not in self.store_names:
            raise NotFoundError(f"Store '{name}' is not in the scope of this transaction")
        return ObjectStore(self, name)

    def commit(self) -> None:
        """Commit a readonly or readwrite transaction.

        Raises:
            InvalidStateError: If called on the upgrade transaction
            TransactionInactiveError: If the transaction has finished
        """
        if self.mode is TransactionMode.VERSIONCHANGE:
            raise InvalidStateError("The upgrade transaction is committed by the engine")
        self._commit()

    def abort(self, error: Optional[BaseException] = None) -> None:
        """Roll back every change made in this transaction.

        Raises:
            InvalidStateError: If the transaction has already finished
        """
        if not self.active:
            raise InvalidStateError(f"Cannot abort a {self.state.value} transaction")
        raw = self._connection._raw
        if not self._connection.closed and raw.in_transaction:
            raw.execute("ROLLBACK")
        self.state = TransactionState.ABORTED
        self.error = error
        self._connection._transaction_finished(self)

        current = _current_task()
        for future in self._tracked:
            if not future.done() and future is not current:
                future.cancel()

    def track(self, awaitable: Awaitable[Any]) -> asyncio.Future:
        """Register asynchronous work the upgrade must wait on before committing.

        The work is scheduled immediately. If it fails, the upgrade is
        rolled back and the failure is raised from the open.

        Raises:
            InvalidStateError: If this is not the upgrade transaction
        """
        if self.mode is not TransactionMode.VERSIONCHANGE:
            raise InvalidStateError("Only the upgrade transaction waits on tracked work")
        self._require_active()
        future = asyncio.ensure_future(awaitable)
        self._pending.append(future)
        self._tracked.append(future)
        return future

    def _commit(self) -> None:
        self._require_active()
        self._connection._raw.execute("COMMIT")
        self.state = TransactionState.COMMITTED
        self._connection._transaction_finished(self)

    async def _settle(self) -> None:
        """Wait for all tracked work, raising the first failure.

        Returns early once the transaction is aborted; the caller raises
        the abort error instead.
        """
        while self._pending:
            batch, self._pending = self._pending, []
            results = await asyncio.gather(*batch, return_exceptions=True)
            if not self.active:
                return
            for result in results:
                if isinstance(result, BaseException):
                    raise result

    def _require_active(self) -> None:
        if not self.active:
            raise TransactionInactiveError(f"Transaction is {self.state.value}")
        self._connection._require_open()


class ObjectStore:
    """Handle on one object store, bound to a transaction.

    Records are JSON values; tuples come back as lists.

    Attributes:
        name: Store name
        key_path: In-line key path, or None for out-of-line keys
        transaction: The transaction this handle is bound to
    """

    def __init__(self, transaction: Transaction, name: str) -> None:
        self.transaction = transaction
        self.name = name
        self._connection = transaction.connection
        self.key_path = self._connection._store_key_path(name)

    def __repr__(self) -> str:
        return f"ObjectStore(name={self.name!r}, key_path={self.key_path!r})"

    @property
    def index_names(self) -> List[str]:
        """Names of every index on this store, sorted."""
        self.transaction._require_active()
        return [index.name for index in self._connection._indexes(self.name)]

    def index(self, name: str) -> Index:
        """Get index metadata.

        Raises:
            NotFoundError: If the index does not exist
        """
        self.transaction._require_active()
        for index in self._connection._indexes(self.name):
            if index.name == name:
                return index
        raise NotFoundError(f"Index '{name}' not found on store '{self.name}'")

    def create_index(
        self,
        name: str,
        key_path: Union[str, Sequence[str]],
        unique: bool = False,
        multi_entry: bool = False,
    ) -> Index:
        """Create an index. Only legal during the upgrade.

        Raises:
            InvalidStateError: If no upgrade is running
            InvalidAccessError: If multi_entry is combined with a compound key path
            ConstraintError: If the index exists, or existing records violate uniqueness
        """
        self._require_upgrade()
        normalized = normalize_key_path(key_path)
        if normalized is None:
            raise InvalidAccessError(f"Index '{name}' needs a key path")
        if multi_entry and isinstance(normalized, tuple):
            raise InvalidAccessError(
                f"Index '{name}': multi_entry requires a single key path"
            )
        if name in self.index_names:
            raise ConstraintError(f"Index '{name}' already exists on store '{self.name}'")

        index = Index(name=name, key_path=normalized, unique=unique, multi_entry=multi_entry)
        if unique:
            self._check_unique_index(index)

        self._connection._raw.execute(
            """
            INSERT INTO _schemadb_indexes (store, name, key_path, is_unique, multi_entry)
            VALUES (?, ?, ?, ?, ?)
            """,
            (self.name, name, key_path_to_json(normalized), int(unique), int(multi_entry)),
        )
        logger.debug(f"Created index: {self.name}.{name} (key_path={normalized!r})")
        return index

    def delete_index(self, name: str) -> None:
        """Delete an index. Only legal during the upgrade.

        Raises:
            NotFoundError: If the index does not exist
        """
        self._require_upgrade()
        cursor = self._connection._raw.execute(
            "DELETE FROM _schemadb_indexes WHERE store = ? AND name = ?",
            (self.name, name),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Index '{name}' not found on store '{self.name}'")
        logger.debug(f"Deleted index: {self.name}.{name}")

    def get(self, key: Any) -> Any:
        """Get a record by primary key, or None."""
        self.transaction._require_active()
        self._validate_key(key)
        row = self._connection._raw.execute(
            "SELECT value FROM _schemadb_records WHERE store = ? AND key = ?",
            (self.name, encode_key(key)),
        ).fetchone()
        return json.loads(row["value"]) if row is not None else None

    def get_all(self) -> List[Any]:
        """Get every record, ordered by primary key."""
        self.transaction._require_active()
        return [value for _, value in self._entries()]

    def get_all_keys(self) -> List[Any]:
        """Get every primary key, in order."""
        self.transaction._require_active()
        return [key for key, _ in self._entries()]

    def get_all_by_index(self, index_name: str, key: Any = None) -> List[Any]:
        """Get records through an index.

        Args:
            index_name: Index to read
            key: Index key to match; None returns every indexed record
                ordered by index key, then primary key

        Raises:
            NotFoundError: If the index does not exist
        """
        index = self.index(index_name)
        entries = self._entries()

        if key is not None:
            self._validate_key(key)
            wanted = encode_key(key)
            return [
                value
                for _, value in entries
                if any(encode_key(k) == wanted for k in index_keys(value, index))
            ]

        indexed: List[Tuple[Any, Any, Any]] = []
        for primary_key, value in entries:
            for index_key in index_keys(value, index):
                indexed.append((index_key, primary_key, value))
        indexed.sort(key=lambda item: (key_sort_key(item[0]), key_sort_key(item[1])))
        return [value for _, _, value in indexed]

    def count(self) -> int:
        """Number of records in the store."""
        self.transaction._require_active()
        row = self._connection._raw.execute(
            "SELECT COUNT(*) AS n FROM _schemadb_records WHERE store = ?", (self.name,)
        ).fetchone()
        return int(row["n"])

    def put(self, value: Any, key: Any = None) -> Any:
        """Insert or replace a record. Returns its primary key.

        Raises:
            ReadOnlyError: In a readonly transaction
            DataError: If the key is missing or invalid
            ConstraintError: If a unique index would be violated
        """
        self._require_writable()
        key = self._resolve_key(value, key)
        payload = self._serialize(value)
        self._check_unique(value, key)
        self._connection._raw.execute(
            "INSERT OR REPLACE INTO _schemadb_records (store, key, value) VALUES (?, ?, ?)",
            (self.name, encode_key(key), payload),
        )
        return key

    def add(self, value: Any, key: Any = None) -> Any:
        """Insert a record that must not exist yet. Returns its primary key.

        Raises:
            ConstraintError: If a record with the same key exists
        """
        self._require_writable()
        key = self._resolve_key(value, key)
        payload = self._serialize(value)
        existing = self._connection._raw.execute(
            "SELECT 1 FROM _schemadb_records WHERE store = ? AND key = ?",
            (self.name, encode_key(key)),
        ).fetchone()
        if existing is not None:
            raise ConstraintError(f"Key {key!r} already exists in store '{self.name}'")
        self._check_unique(value, key)
        self._connection._raw.execute(
            "INSERT INTO _schemadb_records (store, key, value) VALUES (?, ?, ?)",
            (self.name, encode_key(key), payload),
        )
        return key

    def delete(self, key: Any) -> None:
        """Delete a record by primary key. Missing keys are ignored."""
        self._require_writable()
        self._validate_key(key)
        self._connection._raw.execute(
            "DELETE FROM _schemadb_records WHERE store = ? AND key = ?",
            (self.name, encode_key(key)),
        )

    def clear(self) -> None:
        """Delete every record in the store."""
        self._require_writable()
        self._connection._raw.execute(
            "DELETE FROM _schemadb_records WHERE store = ?", (self.name,)
        )

    def _entries(self) -> List[Tuple[Any, Any]]:
        rows = self._connection._raw.execute(
            "SELECT key, value FROM _schemadb_records WHERE store = ?", (self.name,)
        ).fetchall()
        entries = [(decode_key(row["key"]), json.loads(row["value"])) for row in rows]
        entries.sort(key=lambda entry: key_sort_key(entry[0]))
        return entries

    def _resolve_key(self, value: Any, key: Any) -> Any:
        if self.key_path is not None:
            if key is not None:
                raise DataError(
                    f"Store '{self.name}' uses in-line keys; a key argument is not allowed"
                )
            key = evaluate_key_path(value, self.key_path)
            if key is MISSING:
                raise DataError(
                    f"Record has no value at key path {self.key_path!r} of store '{self.name}'"
                )
        elif key is None:
            raise DataError(
                f"Store '{self.name}' uses out-of-line keys; a key argument is required"
            )
        self._validate_key(key)
        return key

    @staticmethod
    def _validate_key(key: Any) -> None:
        if not is_valid_key(key):
            raise DataError(f"Invalid key {key!r}")

    @staticmethod
    def _serialize(value: Any) -> str:
        try:
            return json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise DataError(f"Record is not serializable: {exc}") from exc

    def _check_unique(self, value: Any, key: Any) -> None:
        unique_indexes = [i for i in self._connection._indexes(self.name) if i.unique]
        if not unique_indexes:
            return

        own_key = encode_key(key)
        entries = self._entries()
        for index in unique_indexes:
            new_keys = {encode_key(k) for k in index_keys(value, index)}
            if not new_keys:
                continue
            for other_key, other_value in entries:
                if encode_key(other_key) == own_key:
                    continue
                other_keys = {encode_key(k) for k in index_keys(other_value, index)}
                if new_keys & other_keys:
                    raise ConstraintError(
                        f"Unique index '{index.name}' on store '{self.name}' "
                        f"already contains {sorted(new_keys & other_keys)}"
                    )

    def _check_unique_index(self, index: Index) -> None:
        seen: Dict[str, Any] = {}
        for primary_key, value in self._entries():
            for index_key in index_keys(value, index):
                encoded = encode_key(index_key)
                if encoded in seen:
                    raise ConstraintError(
                        f"Cannot create unique index '{index.name}' on store '{self.name}': "
                        f"records {seen[encoded]!r} and {primary_key!r} share key {index_key!r}"
                    )
                seen[encoded] = primary_key

    def _require_writable(self) -> None:
        self.transaction._require_active()
        if self.transaction.mode is TransactionMode.READONLY:
            raise ReadOnlyError(f"Cannot write to '{self.name}' in a readonly transaction")

    def _require_upgrade(self) -> None:
        self.transaction._require_active()
        if self.transaction.mode is not TransactionMode.VERSIONCHANGE:
            raise InvalidStateError("Index changes are only allowed during an upgrade")
