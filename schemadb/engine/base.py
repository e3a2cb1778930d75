"""
Base protocol and types for the storage engine abstraction.

The engine hosts named databases, each with a single monotonically
increasing version number. A version increase is the only way to obtain
the privileged upgrade transaction in which stores and indexes may be
created or deleted.

This module defines:
- The StorageEngine protocol that engine implementations follow
- Transaction modes and states
- Index metadata
- Key path evaluation and key ordering helpers
- The EngineError hierarchy

Invariants:
    - A database version never decreases
    - At most one upgrade transaction is granted per version-increasing open
    - Structural mutation is only legal inside the upgrade transaction
    - Keys order as numbers < strings < arrays

How to change safely:
    - Protocol changes require updating all implementations
    - Key encoding changes break existing databases on disk
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
    runtime_checkable,
)

if TYPE_CHECKING:
    from .sqlite import Connection, Transaction

logger = logging.getLogger(__name__)

KeyPath = Union[str, Tuple[str, ...]]

UpgradeCallback = Callable[["Connection", "Transaction", int], None]


class EngineError(Exception):
    """Base exception for storage engine operations."""
    pass


class VersionError(EngineError):
    """Requested version is invalid or lower than the persisted version."""
    pass


class ConstraintError(EngineError):
    """A uniqueness constraint was violated (duplicate key, store or index)."""
    pass


class NotFoundError(EngineError):
    """Referenced store or index does not exist."""
    pass


class InvalidStateError(EngineError):
    """Operation is not legal in the current connection or upgrade state."""
    pass


class InvalidAccessError(EngineError):
    """Operation arguments are incompatible with each other."""
    pass


class TransactionInactiveError(EngineError):
    """Transaction was already committed or aborted."""
    pass


class ReadOnlyError(EngineError):
    """Write attempted in a readonly transaction."""
    pass


class DataError(EngineError):
    """Key is missing, invalid, or supplied where the store derives its own."""
    pass


class AbortError(EngineError):
    """Transaction was aborted without an underlying error."""
    pass


class TransactionMode(Enum):
    """Transaction modes, mirroring the engine's privilege levels."""

    READONLY = "readonly"
    READWRITE = "readwrite"
    VERSIONCHANGE = "versionchange"

    @classmethod
    def from_str(cls, value: str) -> TransactionMode:
        """Convert string representation to TransactionMode.

        Raises:
            ValueError: If value is not a valid mode
        """
        for mode in cls:
            if mode.value == value:
                return mode
        valid = [m.value for m in cls]
        raise ValueError(f"Invalid transaction mode '{value}'. Valid modes: {valid}")


class TransactionState(Enum):
    """Transaction lifecycle. Transitions only go forward."""

    ACTIVE = "active"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Index:
    """Persisted metadata for one index of an object store.

    Attributes:
        name: Index name, unique within its store
        key_path: Field or ordered field list the index is built on
        unique: Whether two records may share an index key
        multi_entry: Whether array values produce one index key per element
    """

    name: str
    key_path: KeyPath
    unique: bool = False
    multi_entry: bool = False


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def normalize_key_path(key_path: Union[str, Sequence[str], None]) -> Optional[KeyPath]:
    """Normalize a key path: lists become tuples, strings and None pass through."""
    if key_path is None or isinstance(key_path, str):
        return key_path
    return tuple(key_path)


def key_path_to_json(key_path: Optional[KeyPath]) -> Optional[str]:
    """Serialize a key path for the metadata tables."""
    if key_path is None:
        return None
    if isinstance(key_path, tuple):
        return json.dumps(list(key_path))
    return json.dumps(key_path)


def key_path_from_json(raw: Optional[str]) -> Optional[KeyPath]:
    """Deserialize a key path from the metadata tables."""
    if raw is None:
        return None
    return normalize_key_path(json.loads(raw))


def evaluate_key_path(value: Any, key_path: KeyPath) -> Any:
    """Extract the key addressed by key_path from a record.

    Dotted paths walk nested mappings. A tuple key path produces a list
    (compound key). Returns MISSING if any component is absent.
    """
    if isinstance(key_path, tuple):
        parts = [evaluate_key_path(value, p) for p in key_path]
        if any(p is MISSING for p in parts):
            return MISSING
        return parts

    if key_path == "":
        return value

    current = value
    for segment in key_path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return MISSING
        current = current[segment]
    return current


def is_valid_key(key: Any) -> bool:
    """Whether key can be used as a primary or index key."""
    if isinstance(key, bool):
        return False
    if isinstance(key, (int, float, str)):
        return True
    if isinstance(key, (list, tuple)):
        return all(is_valid_key(k) for k in key)
    return False


def _canonical_key(key: Any) -> Any:
    if isinstance(key, float) and key.is_integer():
        return int(key)
    if isinstance(key, (list, tuple)):
        return [_canonical_key(k) for k in key]
    return key


def encode_key(key: Any) -> str:
    """Encode a valid key as the string stored in the records table."""
    return json.dumps(_canonical_key(key), separators=(",", ":"))


def decode_key(raw: str) -> Any:
    """Decode a key stored by encode_key."""
    return json.loads(raw)


def key_sort_key(key: Any) -> Tuple[Any, ...]:
    """Sort key implementing the engine's key order."""
    if isinstance(key, (int, float)) and not isinstance(key, bool):
        return (0, key)
    if isinstance(key, str):
        return (1, key)
    return (2, tuple(key_sort_key(k) for k in key))


def index_keys(value: Any, index: Index) -> List[Any]:
    """Return the index keys a record contributes to an index.

    Records whose indexed field is absent or not a valid key are not
    indexed. Multi-entry indexes contribute one key per distinct valid
    array element.
    """
    key = evaluate_key_path(value, index.key_path)
    if key is MISSING:
        return []

    if index.multi_entry and isinstance(key, list):
        seen: set[str] = set()
        keys: List[Any] = []
        for element in key:
            if not is_valid_key(element):
                continue
            encoded = encode_key(element)
            if encoded not in seen:
                seen.add(encoded)
                keys.append(element)
        return keys

    if not is_valid_key(key):
        return []
    return [key]


@runtime_checkable
class StorageEngine(Protocol):
    """Protocol for engines hosting versioned databases.

    Example:
        >>> conn = await engine.open("app", 2, on_upgrade=handle_upgrade)
        >>> conn.version
        2
    """

    def exists(self, name: str) -> bool:
        """Whether a database with this name has been created."""
        ...

    def version_of(self, name: str) -> int:
        """Persisted version of a database, 0 if it does not exist."""
        ...

    async def open(
        self,
        name: str,
        version: Optional[int] = None,
        on_upgrade: Optional[UpgradeCallback] = None,
        on_blocked: Optional[Callable[[], None]] = None,
    ) -> Connection:
        """Open a connection, running on_upgrade if the version increases."""
        ...

    def delete_database(self, name: str) -> None:
        """Remove a database and all of its stores."""
        ...
