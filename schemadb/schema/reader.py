"""
Schema introspection for SchemaDB.

Reads the structural metadata persisted in a database into a canonical
snapshot that can be compared against the declared stores:
- read_existing_schema: stores and indexes of an open connection
- to_desired_schema: declarations in the same canonical shape
- probe_database: version, schema and migration ledger of a database,
  read through a throwaway connection

Invariants:
    - Reserved stores (ledger, backups) never appear in a snapshot
    - Reading never mutates: every probing transaction is aborted
    - No connection or store handle outlives the call that opened it
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from ..engine.base import KeyPath
from .migrations import read_applied
from .types import StoreSchema, is_reserved_name

if TYPE_CHECKING:
    from ..engine.base import StorageEngine
    from ..engine.sqlite import Connection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexInfo:
    """Persisted definition of one index."""

    key_path: KeyPath
    unique: bool = False
    multi_entry: bool = False


@dataclass
class ExistingStore:
    """Persisted definition of one store.

    Attributes:
        name: Store name
        key_path: Key path, None for out-of-line keys
        indexes: Index name -> IndexInfo
    """

    name: str
    key_path: Optional[KeyPath]
    indexes: Dict[str, IndexInfo] = field(default_factory=dict)


ExistingSchema = Dict[str, ExistingStore]
DesiredSchema = Dict[str, StoreSchema]


@dataclass
class ProbeResult:
    """What a throwaway connection saw of an existing database.

    Attributes:
        version: Persisted version
        schema: Snapshot of the non-reserved stores
        applied: Names in the migration ledger
    """

    version: int
    schema: ExistingSchema
    applied: List[str] = field(default_factory=list)


def read_existing_schema(db: Connection) -> ExistingSchema:
    """Read every non-reserved store and its indexes.

    One readonly transaction per store is opened to read metadata and
    then aborted.
    """
    schema: ExistingSchema = {}
    store_names = [name for name in db.store_names if not is_reserved_name(name)]

    for store_name in store_names:
        tx = db.transaction(store_name, "readonly")
        try:
            store = tx.object_store(store_name)
            indexes: Dict[str, IndexInfo] = {}
            for index_name in store.index_names:
                info = store.index(index_name)
                indexes[index_name] = IndexInfo(
                    key_path=info.key_path,
                    unique=info.unique,
                    multi_entry=info.multi_entry,
                )
            schema[store_name] = ExistingStore(
                name=store_name,
                key_path=store.key_path,
                indexes=indexes,
            )
        finally:
            # Only metadata was needed
            tx.abort()

    return schema


def to_desired_schema(stores: Iterable[StoreSchema]) -> DesiredSchema:
    """Index declarations by name, keeping declaration order."""
    return {store.name: store for store in stores}


async def probe_database(engine: StorageEngine, name: str) -> Optional[ProbeResult]:
    """Read version, schema and ledger of a database without changing it.

    Returns:
        ProbeResult, or None if the database has never been created
    """
    if not engine.exists(name):
        logger.debug(f"Database '{name}' does not exist yet")
        return None

    db = await engine.open(name)
    try:
        result = ProbeResult(
            version=db.version,
            schema=read_existing_schema(db),
            applied=read_applied(db),
        )
    finally:
        db.close()

    logger.debug(
        f"Probed '{name}': version={result.version}, stores={sorted(result.schema)}, "
        f"applied_migrations={len(result.applied)}"
    )
    return result
