"""
Version resolution for SchemaDB.

Decides which version to request when opening a database, given what a
probe saw on disk and what the program declares.

Strategies:
    - EXPLICIT: the caller supplies the version. Safe changes are applied
      only when it is greater than the persisted version; otherwise they
      are deferred with a warning.
    - AUTO: the version is derived. A fresh database starts at 1, any safe
      structural change or pending migration bumps it by one, and an
      unchanged schema keeps it.

Invariants:
    - resolve_version is pure apart from logging; it never touches the engine
    - Dangerous changes left after the removed-store policy always raise,
      whatever the strategy
    - AUTO never increments the version for an unchanged schema with no
      pending migrations
    - The resolved version is never lower than the persisted one under AUTO

How to change safely:
    - A new change kind needs a line in describe_change
    - Keep all I/O in resolve(); tests drive resolve_version directly
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List, Optional

from ..engine.base import KeyPath
from ..errors import ConfigurationError, DeferredSchemaChangeError, UnsafeSchemaChangeError
from .diff import (
    ChangeKind,
    RemovedStorePolicy,
    SchemaChange,
    SchemaDiffResult,
    apply_removed_store_policy,
    diff_schemas,
)
from .migrations import MigrationRegistry
from .reader import DesiredSchema, ProbeResult, probe_database, to_desired_schema
from .types import Migration, StoreSchema

if TYPE_CHECKING:
    from ..engine.base import StorageEngine

logger = logging.getLogger(__name__)


class VersionStrategy(Enum):
    """How the version requested on open is chosen."""

    EXPLICIT = "explicit"
    AUTO = "auto"

    @classmethod
    def from_str(cls, value: str) -> VersionStrategy:
        """Convert string representation to VersionStrategy.

        Raises:
            ValueError: If value is not a valid strategy
        """
        for strategy in cls:
            if strategy.value == value:
                return strategy
        valid = [s.value for s in cls]
        raise ValueError(f"Invalid version strategy '{value}'. Valid strategies: {valid}")


@dataclass
class VersionResolution:
    """Outcome of version resolution.

    Attributes:
        target_version: Version to request from the engine
        current_version: Persisted version (0 for a fresh database)
        diff: Classified changes after the removed-store policy; None for a
            fresh database
        pending: Migrations to run, in execution order
        applied: Ledger contents seen by the probe
    """

    target_version: int
    current_version: int
    diff: Optional[SchemaDiffResult] = None
    pending: List[Migration] = field(default_factory=list)
    applied: List[str] = field(default_factory=list)

    @property
    def needs_upgrade(self) -> bool:
        return self.target_version > self.current_version

    @property
    def is_fresh(self) -> bool:
        return self.current_version == 0


def _format_key_path(key_path: Optional[KeyPath]) -> str:
    if key_path is None:
        return "none"
    if isinstance(key_path, tuple):
        return ",".join(key_path)
    return key_path


def describe_change(change: SchemaChange) -> str:
    """Human-readable one-line description of a change."""
    kind = change.kind
    if kind is ChangeKind.STORE_ADD:
        return f'Add store "{change.store}"'
    if kind is ChangeKind.STORE_RENAME:
        return f'Rename store "{change.store}" to "{change.new_value}"'
    if kind is ChangeKind.STORE_DELETE:
        return (
            f'Store "{change.store}" would be deleted. Use the preserve removed-store '
            f"policy to back it up, or add a migration to explicitly delete it."
        )
    if kind is ChangeKind.KEYPATH_CHANGE:
        return (
            f'Store "{change.store}" key path changed from '
            f'"{_format_key_path(change.old_value)}" to "{_format_key_path(change.new_value)}". '
            f"This requires recreating the store with a manual migration."
        )
    if kind is ChangeKind.INDEX_ADD:
        return f'Add index "{change.index}" on "{change.store}"'
    if kind is ChangeKind.INDEX_DELETE:
        return f'Delete index "{change.index}" from "{change.store}"'
    if kind is ChangeKind.INDEX_MODIFY:
        return f'Modify index "{change.index}" on "{change.store}"'
    return "Schema change"


def _require_version(strategy: VersionStrategy, explicit_version: Optional[int]) -> None:
    if strategy is VersionStrategy.EXPLICIT and explicit_version is None:
        raise ConfigurationError(
            'Version is required when the version strategy is "explicit"',
            option="version",
        )


def _classify(
    probe: ProbeResult,
    desired: DesiredSchema,
    policy: RemovedStorePolicy,
) -> SchemaDiffResult:
    diff = diff_schemas(probe.schema, desired)
    diff = apply_removed_store_policy(diff, policy, probe.version)
    if diff.dangerous:
        error = UnsafeSchemaChangeError(diff.dangerous)
        logger.error(error.message)
        raise error
    return diff


def resolve_version(
    probe: Optional[ProbeResult],
    desired: DesiredSchema,
    strategy: VersionStrategy,
    policy: RemovedStorePolicy,
    explicit_version: Optional[int],
    registry: MigrationRegistry,
    strict: bool = False,
) -> VersionResolution:
    """Choose the version to open at.

    Args:
        probe: What a throwaway connection saw, or None for a fresh database
        desired: Declared stores by name
        strategy: EXPLICIT or AUTO
        policy: What to do with stores no longer declared
        explicit_version: Version supplied by the caller (EXPLICIT only)
        registry: Every declared migration
        strict: Raise instead of warning when EXPLICIT defers safe changes

    Returns:
        VersionResolution

    Raises:
        ConfigurationError: EXPLICIT without a version
        UnsafeSchemaChangeError: Dangerous changes remain after the policy
        DeferredSchemaChangeError: Strict mode and safe changes not applied
    """
    _require_version(strategy, explicit_version)

    applied = list(probe.applied) if probe is not None else []
    pending = registry.pending(applied)

    if probe is None:
        target = explicit_version if strategy is VersionStrategy.EXPLICIT else 1
        logger.debug(f"Fresh database, resolved version {target}")
        return VersionResolution(
            target_version=target,
            current_version=0,
            pending=pending,
            applied=applied,
        )

    current = probe.version
    diff = _classify(probe, desired, policy)

    if strategy is VersionStrategy.EXPLICIT:
        target = explicit_version
        if target <= current:
            if diff.safe:
                _defer(diff.safe, current, target, strict)
            if pending:
                logger.warning(
                    f"{len(pending)} pending migration(s) will not run until the version "
                    f"is bumped: {[m.name for m in pending]}. "
                    f"Current DB version: {current}, provided version: {target}"
                )
    elif diff.has_changes or pending:
        # Pending migrations alone still need an upgrade opportunity
        target = current + 1
    else:
        target = current

    logger.debug(
        f"Resolved version {target} (current={current}, strategy={strategy.value}, "
        f"safe_changes={len(diff.safe)}, pending_migrations={len(pending)})"
    )
    return VersionResolution(
        target_version=target,
        current_version=current,
        diff=diff,
        pending=pending,
        applied=applied,
    )


def _defer(changes: List[SchemaChange], current: int, requested: int, strict: bool) -> None:
    if strict:
        raise DeferredSchemaChangeError(changes, current, requested)
    lines = "\n".join(f"- {describe_change(change)}" for change in changes)
    logger.warning(
        "Schema changes detected but version not bumped:\n"
        f"{lines}\n"
        f"Current DB version: {current}, provided version: {requested}\n"
        "Bump the version to apply these changes."
    )


async def resolve(
    engine: StorageEngine,
    name: str,
    stores: Iterable[StoreSchema],
    strategy: VersionStrategy,
    policy: RemovedStorePolicy = RemovedStorePolicy.ERROR,
    explicit_version: Optional[int] = None,
    strict: bool = False,
    registry: Optional[MigrationRegistry] = None,
) -> VersionResolution:
    """Probe a database and resolve the version to open it at.

    The probe connection is closed before this returns. The registry is
    built from the stores unless an already validated one is passed.
    """
    stores = list(stores)
    if registry is None:
        registry = MigrationRegistry.from_stores(stores)
    _require_version(strategy, explicit_version)

    probe = await probe_database(engine, name)
    return resolve_version(
        probe,
        to_desired_schema(stores),
        strategy,
        policy,
        explicit_version,
        registry,
        strict=strict,
    )
