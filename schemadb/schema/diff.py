"""
Schema diffing for SchemaDB.

Compares the persisted schema with the declared one and classifies every
difference:

Safe changes (applied automatically during the upgrade):
- New store
- New index
- Index deletion
- Changed index definition (modelled as delete + add of the same name)
- Store rename (only produced by the preserve removed-store policy)

Dangerous changes (need an explicit migration):
- Store deletion
- Key path change

Invariants:
    - diff_schemas is pure: same inputs, same ordered output
    - Each (kind, store, index) appears at most once
    - The delete of a replaced index always precedes its add
    - Index changes are not reported for a store whose key path changed

How to change safely:
    - A new change kind must be classified in ChangeKind.is_dangerous
    - Anything that could lose records belongs on the dangerous side

Example:
    >>> result = diff_schemas(existing, to_desired_schema(stores))
    >>> result = apply_removed_store_policy(result, RemovedStorePolicy.PRESERVE, 3)
    >>> if result.dangerous:
    ...     raise UnsafeSchemaChangeError(result.dangerous)
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Tuple

from ..engine.base import KeyPath, normalize_key_path
from .reader import DesiredSchema, ExistingSchema, IndexInfo
from .types import IndexDefinition, StoreSchema

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    """Types of schema changes."""

    STORE_ADD = "store_add"
    STORE_DELETE = "store_delete"
    STORE_RENAME = "store_rename"
    KEYPATH_CHANGE = "keypath_change"
    INDEX_ADD = "index_add"
    INDEX_DELETE = "index_delete"
    INDEX_MODIFY = "index_modify"

    @property
    def is_dangerous(self) -> bool:
        """Whether this change kind needs an explicit migration."""
        return self in {ChangeKind.STORE_DELETE, ChangeKind.KEYPATH_CHANGE}


class RemovedStorePolicy(Enum):
    """What to do with stores that exist on disk but are no longer declared.

    ERROR leaves the deletion dangerous; PRESERVE renames the store to a
    versioned backup name instead.
    """

    ERROR = "error"
    PRESERVE = "preserve"

    @classmethod
    def from_str(cls, value: str) -> RemovedStorePolicy:
        """Convert string representation to RemovedStorePolicy.

        Raises:
            ValueError: If value is not a valid policy
        """
        for policy in cls:
            if policy.value == value:
                return policy
        valid = [p.value for p in cls]
        raise ValueError(f"Invalid removed store policy '{value}'. Valid policies: {valid}")


@dataclass(frozen=True)
class SchemaChange:
    """A single difference between the persisted and the declared schema.

    Attributes:
        kind: The type of change
        store: Store the change applies to (the old name for renames)
        index: Index name for index changes
        old_value: Previous value (old key path, old index info, ...)
        new_value: New value (new key path, IndexDefinition, new store name)
    """

    kind: ChangeKind
    store: str
    index: Optional[str] = None
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None

    @property
    def is_dangerous(self) -> bool:
        return self.kind.is_dangerous

    @property
    def identity(self) -> Tuple[ChangeKind, str, Optional[str]]:
        """Deduplication key."""
        return (self.kind, self.store, self.index)

    def __str__(self) -> str:
        status = "DANGEROUS" if self.is_dangerous else "SAFE"
        target = f"{self.store}.{self.index}" if self.index else self.store
        return f"[{status}] {self.kind.value}: {target}"


@dataclass
class SchemaDiffResult:
    """Ordered, classified changes between two schemas.

    Attributes:
        safe: Changes the upgrade applies automatically, in application order
        dangerous: Changes that need an explicit migration
    """

    safe: List[SchemaChange] = field(default_factory=list)
    dangerous: List[SchemaChange] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.safe or self.dangerous)

    @property
    def changes(self) -> List[SchemaChange]:
        return [*self.safe, *self.dangerous]


def key_paths_equal(a: Optional[KeyPath], b: Optional[KeyPath]) -> bool:
    """Deep-compare two key paths (scalar or ordered field list)."""
    return normalize_key_path(a) == normalize_key_path(b)


def _index_differs(existing: IndexInfo, desired: IndexDefinition) -> bool:
    return (
        not key_paths_equal(existing.key_path, desired.key_path)
        or existing.unique != desired.unique
        or existing.multi_entry != desired.multi_entry
    )


def _dedupe(changes: Iterable[SchemaChange]) -> List[SchemaChange]:
    seen: set[Tuple[ChangeKind, str, Optional[str]]] = set()
    result: List[SchemaChange] = []
    for change in changes:
        if change.identity in seen:
            continue
        seen.add(change.identity)
        result.append(change)
    return result


def diff_schemas(existing: ExistingSchema, desired: DesiredSchema) -> SchemaDiffResult:
    """Compare a persisted schema with a declared one.

    Args:
        existing: Snapshot read from the database
        desired: Declared stores by name

    Returns:
        SchemaDiffResult with safe and dangerous changes in application order
    """
    safe: List[SchemaChange] = []
    dangerous: List[SchemaChange] = []

    for store_name, desired_store in desired.items():
        existing_store = existing.get(store_name)

        if existing_store is None:
            safe.append(SchemaChange(kind=ChangeKind.STORE_ADD, store=store_name))
            continue

        if not key_paths_equal(existing_store.key_path, desired_store.key_path):
            dangerous.append(SchemaChange(
                kind=ChangeKind.KEYPATH_CHANGE,
                store=store_name,
                old_value=existing_store.key_path,
                new_value=desired_store.key_path,
            ))
            # The key path cannot be recovered without a manual migration
            continue

        safe.extend(_diff_indexes(store_name, existing_store.indexes, desired_store))

    for store_name in existing:
        if store_name not in desired:
            dangerous.append(SchemaChange(kind=ChangeKind.STORE_DELETE, store=store_name))

    result = SchemaDiffResult(safe=_dedupe(safe), dangerous=_dedupe(dangerous))
    if result.has_changes:
        logger.debug(
            f"Schema diff: {len(result.safe)} safe, {len(result.dangerous)} dangerous change(s)"
        )
    return result


def _diff_indexes(
    store_name: str,
    existing_indexes: dict[str, IndexInfo],
    desired_store: StoreSchema,
) -> List[SchemaChange]:
    """Index changes for a store whose key path is unchanged."""
    changes: List[SchemaChange] = []

    for desired_index in desired_store.indexes:
        existing_index = existing_indexes.get(desired_index.name)

        if existing_index is None:
            changes.append(SchemaChange(
                kind=ChangeKind.INDEX_ADD,
                store=store_name,
                index=desired_index.name,
                new_value=desired_index,
            ))
        elif _index_differs(existing_index, desired_index):
            # Replace: delete first, then add under the same name
            changes.append(SchemaChange(
                kind=ChangeKind.INDEX_DELETE,
                store=store_name,
                index=desired_index.name,
                old_value=existing_index,
            ))
            changes.append(SchemaChange(
                kind=ChangeKind.INDEX_ADD,
                store=store_name,
                index=desired_index.name,
                old_value=existing_index,
                new_value=desired_index,
            ))

    desired_names = {idx.name for idx in desired_store.indexes}
    for index_name, existing_index in existing_indexes.items():
        if index_name not in desired_names:
            changes.append(SchemaChange(
                kind=ChangeKind.INDEX_DELETE,
                store=store_name,
                index=index_name,
                old_value=existing_index,
            ))

    return changes


def backup_store_name(store_name: str, version: int) -> str:
    """Reserved name a removed store is preserved under."""
    return f"__{store_name}_deleted_v{version}__"


def apply_removed_store_policy(
    result: SchemaDiffResult,
    policy: RemovedStorePolicy,
    current_version: int,
) -> SchemaDiffResult:
    """Rewrite store deletions according to the removed-store policy.

    Under PRESERVE every store deletion becomes a safe rename to
    backup_store_name(store, current_version). The pre-upgrade version
    keeps backup names distinct when a store is deleted and recreated
    several times.

    Returns:
        A new SchemaDiffResult; the input is left untouched
    """
    if policy is RemovedStorePolicy.ERROR:
        return SchemaDiffResult(safe=list(result.safe), dangerous=list(result.dangerous))

    safe = list(result.safe)
    dangerous: List[SchemaChange] = []
    for change in result.dangerous:
        if change.kind is ChangeKind.STORE_DELETE:
            backup = backup_store_name(change.store, current_version)
            safe.append(SchemaChange(
                kind=ChangeKind.STORE_RENAME,
                store=change.store,
                new_value=backup,
            ))
            logger.info(f"Store '{change.store}' will be preserved as '{backup}'")
        else:
            dangerous.append(change)

    return SchemaDiffResult(safe=_dedupe(safe), dangerous=dangerous)


def schema_fingerprint(stores: Iterable[StoreSchema]) -> str:
    """Generate a fingerprint of the declared schema.

    The fingerprint is a SHA-256 hash of the canonical schema
    representation (stores and indexes sorted by name, migrations
    excluded). It changes when the structural schema changes.

    Returns:
        Fingerprint string in format 'sha256:<hash>'
    """
    normalized = []
    for store in sorted(stores, key=lambda s: s.name):
        data = store.to_dict()
        data.pop("migrations")
        data["indexes"] = sorted(data["indexes"], key=lambda i: i["name"])
        normalized.append(data)
    canonical = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
    hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"sha256:{hash_bytes}"
