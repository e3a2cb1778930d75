"""
Database orchestration for SchemaDB.

open_db() validates a DatabaseConfig, returns a SchemaDatabase immediately
and initializes it in the background:

    probe (throwaway connection) -> resolve version -> open at that version
    -> upgrade callback applies safe changes and pending migrations -> ready

Every data call on the returned object waits for readiness first. If
initialization fails, the failure is kept and re-raised by every gated
call; nothing is retried.

Invariants:
    - Configuration and duplicate-name errors are raised synchronously,
      before any I/O
    - The probe connection is closed before the version-changing open
    - Gated calls never run before initialization finished successfully
    - One gated call is one transaction

How to change safely:
    - Keep _initialize the only place that opens the real connection
    - New gated operations go through SchemaDatabase._run
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Sequence, Union

from .config import DatabaseConfig
from .engine.base import InvalidStateError, NotFoundError, StorageEngine, TransactionMode
from .engine.sqlite import Connection, ObjectStore, Transaction
from .schema.diff import schema_fingerprint
from .schema.migrations import MigrationRegistry
from .schema.upgrade import UpgradeSession, UpgradeState, execute_upgrade
from .schema.versioning import VersionResolution, resolve

logger = logging.getLogger(__name__)


class GatedStore:
    """Readiness-gated accessor for one declared store.

    Each call waits for the database to be ready, then runs in its own
    transaction, committed before the call returns.

    Example:
        >>> users = db.store("users")
        >>> await users.put({"id": "u1", "name": "Kim"})
        >>> await users.get("u1")
        {'id': 'u1', 'name': 'Kim'}
    """

    def __init__(self, database: SchemaDatabase, name: str) -> None:
        self._database = database
        self.name = name

    def __repr__(self) -> str:
        return f"GatedStore(name={self.name!r})"

    async def get(self, key: Any) -> Any:
        return await self._database._run(self.name, TransactionMode.READONLY, lambda s: s.get(key))

    async def get_all(self) -> List[Any]:
        return await self._database._run(self.name, TransactionMode.READONLY, lambda s: s.get_all())

    async def get_all_keys(self) -> List[Any]:
        return await self._database._run(
            self.name, TransactionMode.READONLY, lambda s: s.get_all_keys()
        )

    async def get_all_by_index(self, index_name: str, key: Any = None) -> List[Any]:
        return await self._database._run(
            self.name,
            TransactionMode.READONLY,
            lambda s: s.get_all_by_index(index_name, key),
        )

    async def count(self) -> int:
        return await self._database._run(self.name, TransactionMode.READONLY, lambda s: s.count())

    async def put(self, value: Any, key: Any = None) -> Any:
        return await self._database._run(
            self.name, TransactionMode.READWRITE, lambda s: s.put(value, key)
        )

    async def add(self, value: Any, key: Any = None) -> Any:
        return await self._database._run(
            self.name, TransactionMode.READWRITE, lambda s: s.add(value, key)
        )

    async def delete(self, key: Any) -> None:
        await self._database._run(self.name, TransactionMode.READWRITE, lambda s: s.delete(key))

    async def clear(self) -> None:
        await self._database._run(self.name, TransactionMode.READWRITE, lambda s: s.clear())


class DatabaseTransaction:
    """Readwrite transaction over several stores.

    Operations on the store handles apply immediately inside the
    transaction; commit() makes them durable, abort() discards them.
    Used as an async context manager it commits on success and aborts
    on error.

    Example:
        >>> async with db.start_transaction(["users", "posts"]) as tx:
        ...     tx.store("users").put({"id": "u1"})
        ...     tx.store("posts").put({"id": "p1", "author": "u1"})
    """

    def __init__(self, transaction: Transaction) -> None:
        self._transaction = transaction

    @property
    def raw(self) -> Transaction:
        """The underlying engine transaction."""
        return self._transaction

    @property
    def active(self) -> bool:
        return self._transaction.active

    @property
    def store_names(self) -> Sequence[str]:
        return self._transaction.store_names

    def store(self, name: str) -> ObjectStore:
        """Handle on a store in the transaction's scope."""
        return self._transaction.object_store(name)

    def __getitem__(self, name: str) -> ObjectStore:
        return self.store(name)

    async def commit(self) -> None:
        self._transaction.commit()

    def abort(self) -> None:
        self._transaction.abort()

    async def __aenter__(self) -> DatabaseTransaction:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if not self._transaction.active:
            return
        if exc_type is None:
            await self.commit()
        else:
            self.abort()


class SchemaDatabase:
    """A declared database that initializes in the background.

    Attributes:
        name: Database name
        config: The declaration this database was opened with
    """

    def __init__(
        self,
        engine: StorageEngine,
        config: DatabaseConfig,
        registry: MigrationRegistry,
    ) -> None:
        self._engine = engine
        self.config = config
        self.name = config.name
        self._registry = registry
        self._store_names = [store.name for store in config.stores]
        self._connection: Optional[Connection] = None
        self._error: Optional[BaseException] = None
        self._ready_event = asyncio.Event()
        self._init_task: Optional[asyncio.Task] = None
        self._closed = False
        self.resolution: Optional[VersionResolution] = None
        self.upgrade: Optional[UpgradeSession] = None

    def __repr__(self) -> str:
        return f"SchemaDatabase(name={self.name!r}, version={self.version}, ready={self.ready})"

    @property
    def ready(self) -> bool:
        """Whether initialization finished successfully."""
        return self._connection is not None and self._error is None

    @property
    def error(self) -> Optional[BaseException]:
        """The initialization failure, if any."""
        return self._error

    @property
    def version(self) -> Optional[int]:
        """Version of the open connection, None before ready."""
        return self._connection.version if self._connection is not None else None

    @property
    def store_names(self) -> List[str]:
        """Declared store names, in declaration order."""
        return list(self._store_names)

    @property
    def fingerprint(self) -> str:
        return schema_fingerprint(self.config.stores)

    @property
    def raw(self) -> Connection:
        """The underlying engine connection.

        Raises:
            InvalidStateError: If the database is not ready
        """
        return self._require_ready()

    def store(self, name: str) -> GatedStore:
        """Gated accessor for a declared store.

        Raises:
            NotFoundError: If no store with this name was declared
        """
        if name not in self._store_names:
            raise NotFoundError(f"Store '{name}' is not declared on database '{self.name}'")
        return GatedStore(self, name)

    def __getitem__(self, name: str) -> GatedStore:
        return self.store(name)

    def start_transaction(self, store_names: Union[str, Sequence[str]]) -> DatabaseTransaction:
        """Start a readwrite transaction over one or more stores.

        Raises:
            InvalidStateError: If the database is not ready or another
                transaction is active
        """
        connection = self._require_ready()
        transaction = connection.transaction(store_names, TransactionMode.READWRITE)
        return DatabaseTransaction(transaction)

    async def wait_for_ready(self) -> SchemaDatabase:
        """Wait for initialization to finish.

        Raises:
            Whatever initialization failed with
        """
        await self._ready_event.wait()
        if self._error is not None:
            raise self._error
        return self

    def close(self) -> None:
        """Close the connection, or stop an initialization in progress."""
        self._closed = True
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            # A task cancelled before its first step never runs _initialize
            if not self._ready_event.is_set():
                self._error = InvalidStateError(
                    f"Database '{self.name}' was closed during initialization"
                )
                self._ready_event.set()
        if self._connection is not None:
            self._connection.close()
            logger.debug(f"Closed database '{self.name}'")

    def _start(self) -> None:
        self._init_task = asyncio.get_running_loop().create_task(self._initialize())

    async def _initialize(self) -> None:
        try:
            self._connection = await self._open()
            if self._closed:
                self._connection.close()
                raise InvalidStateError(f"Database '{self.name}' was closed during initialization")
        except asyncio.CancelledError:
            self._error = InvalidStateError(
                f"Database '{self.name}' was closed during initialization"
            )
        except Exception as e:
            self._error = e
            logger.error(f"Failed to initialize database '{self.name}': {e}")
        finally:
            self._ready_event.set()

    async def _open(self) -> Connection:
        config = self.config
        resolution = await resolve(
            self._engine,
            self.name,
            config.stores,
            config.version_strategy,
            config.removed_store_policy,
            config.version,
            strict=config.strict_versioning,
            registry=self._registry,
        )
        self.resolution = resolution
        session = UpgradeSession(self.name, resolution.current_version, resolution.target_version)
        self.upgrade = session

        def on_upgrade(connection: Connection, transaction: Transaction, old_version: int) -> None:
            session.begin()
            if old_version != resolution.current_version:
                raise InvalidStateError(
                    f"Database '{self.name}' changed from version {resolution.current_version} "
                    f"to {old_version} while opening"
                )
            session.migrations_run = execute_upgrade(
                connection,
                transaction,
                old_version,
                config.stores,
                resolution.pending,
                resolution.applied,
                resolution.diff,
            )

        try:
            connection = await self._engine.open(
                self.name,
                resolution.target_version,
                on_upgrade=on_upgrade,
                on_blocked=config.on_blocked,
            )
        except BaseException as e:
            if session.state is UpgradeState.IN_UPGRADE:
                session.abort(e)
            raise

        if session.state is UpgradeState.IN_UPGRADE:
            session.commit()
        if config.on_version_change is not None:
            connection.on_version_change = config.on_version_change

        logger.info(f"Database '{self.name}' ready at version {connection.version}")
        return connection

    def _require_ready(self) -> Connection:
        if self._error is not None:
            raise self._error
        if self._connection is None:
            raise InvalidStateError(
                f"Database '{self.name}' is not ready. Call wait_for_ready() first."
            )
        return self._connection

    async def _run(
        self,
        store_name: str,
        mode: TransactionMode,
        operation: Callable[[ObjectStore], Any],
    ) -> Any:
        await self.wait_for_ready()
        connection = self._require_ready()
        transaction = connection.transaction([store_name], mode)
        try:
            result = operation(transaction.object_store(store_name))
        except Exception:
            if transaction.active:
                transaction.abort()
            raise
        transaction.commit()
        return result


def open_db(
    engine: StorageEngine,
    config: Optional[DatabaseConfig] = None,
    **kwargs: Any,
) -> SchemaDatabase:
    """Declare a database and start initializing it.

    Must be called with a running event loop. Returns immediately; use
    wait_for_ready() or any gated call to wait for initialization.

    Args:
        engine: Engine hosting the database
        config: Database declaration; alternatively pass DatabaseConfig
            fields as keyword arguments

    Raises:
        ConfigurationError: If the declaration is invalid
        DuplicateDefinitionError: If a store or migration name repeats
    """
    if config is None:
        config = DatabaseConfig(**kwargs)
    elif kwargs:
        raise TypeError("Pass either a DatabaseConfig or keyword arguments, not both")

    registry = config.validate()
    database = SchemaDatabase(engine, config, registry)
    database._start()
    logger.debug(
        f"Opening database '{config.name}' ({len(config.stores)} store(s), "
        f"{len(registry)} migration(s), strategy={config.version_strategy.value})"
    )
    return database


async def open_database(
    engine: StorageEngine,
    config: Optional[DatabaseConfig] = None,
    **kwargs: Any,
) -> SchemaDatabase:
    """Declare a database and wait until it is ready.

    Raises:
        Whatever validation or initialization failed with
    """
    database = open_db(engine, config, **kwargs)
    return await database.wait_for_ready()
