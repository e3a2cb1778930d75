"""
Core declaration types for SchemaDB schemas.

This module defines the static declarations a program makes at startup:
- IndexDefinition: One index of a store
- StoreSchema: One object store with its key path, indexes and migrations
- Migration: A named, developer-authored upgrade step

Invariants:
    - Declarations are immutable once constructed
    - Index names are unique within a store
    - Store names are unique within a database and never use the "__" prefix
    - A store's key path cannot change once the store exists on disk

How to change safely:
    - Add new stores and indexes freely; they are applied automatically
    - Changing a key path or removing a store needs an explicit migration
    - Never rename a migration that has already shipped; its name is its identity

Example:
    >>> from schemadb.schema.types import StoreSchema, index, migration
    >>> @migration("2024-01-backfill-emails")
    ... def backfill(db, tx):
    ...     store = tx.object_store("users")
    ...     for user in store.get_all():
    ...         store.put({**user, "email": user.get("email", "")})
    >>> users = StoreSchema(
    ...     name="users",
    ...     key_path="id",
    ...     indexes=(index("by_email", "email", unique=True),),
    ...     migrations=(backfill,),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field as dataclass_field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Optional, Sequence, Tuple, Union

from ..engine.base import KeyPath, normalize_key_path
from ..errors import ConfigurationError, DuplicateDefinitionError

if TYPE_CHECKING:
    from ..engine.sqlite import Connection, Transaction

RESERVED_PREFIX = "__"

MigrationBody = Callable[["Connection", "Transaction"], Optional[Awaitable[Any]]]


def is_reserved_name(store_name: str) -> bool:
    """Whether a store name belongs to SchemaDB itself (ledger, backups)."""
    return store_name.startswith(RESERVED_PREFIX)


@dataclass(frozen=True)
class IndexDefinition:
    """Declaration of a single index.

    Attributes:
        name: Index name, unique within its store
        key_path: Field or ordered field list to index
        unique: Whether index keys must be unique across records
        multi_entry: Whether each element of an array value is indexed
    """

    name: str
    key_path: KeyPath
    unique: bool = False
    multi_entry: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "key_path", normalize_key_path(self.key_path))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        key_path = list(self.key_path) if isinstance(self.key_path, tuple) else self.key_path
        return {
            "name": self.name,
            "key_path": key_path,
            "unique": self.unique,
            "multi_entry": self.multi_entry,
        }


@dataclass(frozen=True)
class Migration:
    """A named upgrade step run once inside the upgrade transaction.

    The body receives the live connection and the active upgrade
    transaction. It may return an awaitable; the upgrade waits for it
    before committing, and a failure aborts the whole upgrade.

    Attributes:
        name: Globally unique name; also defines execution order
        up: Migration body
    """

    name: str
    up: MigrationBody = dataclass_field(compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Migration name must not be empty", option="migrations")


@dataclass(frozen=True)
class StoreSchema:
    """Declaration of one object store.

    Attributes:
        name: Store name, unique within the database
        key_path: In-line key path, or None when keys are given per operation
        indexes: Index declarations
        migrations: Migrations contributed by this store
    """

    name: str
    key_path: Optional[KeyPath] = None
    indexes: Tuple[IndexDefinition, ...] = ()
    migrations: Tuple[Migration, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "key_path", normalize_key_path(self.key_path))
        object.__setattr__(self, "indexes", tuple(self.indexes))
        object.__setattr__(self, "migrations", tuple(self.migrations))

        seen: set[str] = set()
        for idx in self.indexes:
            if idx.name in seen:
                raise DuplicateDefinitionError(
                    "index",
                    idx.name,
                    f'Duplicate index name "{idx.name}" in store "{self.name}"',
                )
            seen.add(idx.name)

    def get_index(self, name: str) -> Optional[IndexDefinition]:
        for idx in self.indexes:
            if idx.name == name:
                return idx
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation (migrations by name only)."""
        key_path = list(self.key_path) if isinstance(self.key_path, tuple) else self.key_path
        return {
            "name": self.name,
            "key_path": key_path,
            "indexes": [idx.to_dict() for idx in self.indexes],
            "migrations": [m.name for m in self.migrations],
        }


def index(
    name: str,
    key_path: Union[str, Sequence[str]],
    *,
    unique: bool = False,
    multi_entry: bool = False,
) -> IndexDefinition:
    """Convenience function to declare an index.

    Example:
        >>> index("by_tag", "tags", multi_entry=True)
    """
    return IndexDefinition(
        name=name,
        key_path=normalize_key_path(key_path),
        unique=unique,
        multi_entry=multi_entry,
    )


def migration(name: str) -> Callable[[MigrationBody], Migration]:
    """Decorator turning a function into a named Migration.

    Example:
        >>> @migration("001-seed-admin")
        ... def seed_admin(db, tx):
        ...     tx.object_store("users").put({"id": "admin"})
    """

    def decorator(func: MigrationBody) -> Migration:
        return Migration(name=name, up=func)

    return decorator


def validate_stores(stores: Iterable[StoreSchema]) -> None:
    """Check store declarations before any I/O.

    Raises:
        DuplicateDefinitionError: If two stores share a name
        ConfigurationError: If a store name is empty or reserved
    """
    seen: set[str] = set()
    for store in stores:
        if not store.name:
            raise ConfigurationError("Store name must not be empty", option="stores")
        if is_reserved_name(store.name):
            raise ConfigurationError(
                f'Store name "{store.name}" uses the reserved prefix "{RESERVED_PREFIX}"',
                option="stores",
            )
        if store.name in seen:
            raise DuplicateDefinitionError("store", store.name, f'Duplicate store name: "{store.name}"')
        seen.add(store.name)
