"""
Error types for SchemaDB.

This module defines the exceptions raised while opening and evolving a
database:
- SchemaDBError: Base exception
- ConfigurationError: Invalid or incomplete database configuration
- DuplicateDefinitionError: Repeated store, index or migration name
- UnsafeSchemaChangeError: Schema change that needs a manual migration
- DeferredSchemaChangeError: Safe changes found without a version bump (strict mode)
- MigrationFailureError: A named migration failed inside the upgrade

Engine failures (blocked opens, version downgrades, constraint violations)
are raised as EngineError subclasses from schemadb.engine and are surfaced
unchanged.

Invariants:
    - All errors inherit from SchemaDBError (engine errors from EngineError)
    - Configuration and duplicate errors are raised before any I/O
    - Error messages name the offending store or migration
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .engine.base import EngineError

if TYPE_CHECKING:
    from .schema.diff import SchemaChange


class SchemaDBError(Exception):
    """Base exception for all SchemaDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SCHEMADB_ERROR"
        self.details = details or {}


class ConfigurationError(SchemaDBError):
    """Database configuration is invalid.

    Raised when:
    - The explicit version strategy is used without a version
    - A store name uses the reserved "__" prefix
    - An option has an unknown value
    """

    def __init__(self, message: str, option: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"option": option},
        )
        self.option = option


class DuplicateDefinitionError(SchemaDBError):
    """A name that must be unique was declared twice.

    Attributes:
        kind: What was duplicated ("store", "index" or "migration")
        name: The duplicated name
    """

    def __init__(self, kind: str, name: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f'Duplicate {kind} name "{name}"',
            code="DUPLICATE_DEFINITION",
            details={"kind": kind, "name": name},
        )
        self.kind = kind
        self.name = name


class UnsafeSchemaChangeError(SchemaDBError):
    """Schema changes that cannot be applied automatically were detected.

    Every offending change is listed in the message, one per line.

    Attributes:
        changes: The dangerous changes that remained after the removed-store policy
    """

    def __init__(self, changes: List[SchemaChange]) -> None:
        from .schema.versioning import describe_change

        self.changes = list(changes)
        lines = [describe_change(change) for change in self.changes]
        message = (
            "Dangerous schema changes detected:\n"
            + "\n".join(lines)
            + "\n\nAdd explicit migrations to handle these changes safely."
        )
        super().__init__(
            message,
            code="UNSAFE_SCHEMA_CHANGE",
            details={"stores": sorted({change.store for change in self.changes})},
        )


class DeferredSchemaChangeError(SchemaDBError):
    """Safe schema changes were found but the explicit version was not bumped.

    Only raised when strict versioning is enabled; otherwise the changes are
    deferred with a warning.
    """

    def __init__(
        self,
        changes: List[SchemaChange],
        current_version: int,
        requested_version: int,
    ) -> None:
        from .schema.versioning import describe_change

        self.changes = list(changes)
        self.current_version = current_version
        self.requested_version = requested_version
        lines = [f"- {describe_change(change)}" for change in self.changes]
        super().__init__(
            "Schema changes detected but version not bumped:\n"
            + "\n".join(lines)
            + f"\nCurrent DB version: {current_version}, provided version: {requested_version}",
            code="DEFERRED_SCHEMA_CHANGE",
            details={
                "current_version": current_version,
                "requested_version": requested_version,
            },
        )


class MigrationFailureError(SchemaDBError):
    """A migration failed while the upgrade transaction was active.

    The whole upgrade transaction is aborted, including ledger entries of
    migrations that ran earlier in the same upgrade.

    Attributes:
        migration_name: Name of the failing migration
        cause: The underlying exception
    """

    def __init__(self, migration_name: str, cause: BaseException) -> None:
        super().__init__(
            f'Migration "{migration_name}" failed: {cause}',
            code="MIGRATION_FAILED",
            details={"migration": migration_name, "cause": repr(cause)},
        )
        self.migration_name = migration_name
        self.cause = cause


__all__ = [
    "SchemaDBError",
    "ConfigurationError",
    "DuplicateDefinitionError",
    "UnsafeSchemaChangeError",
    "DeferredSchemaChangeError",
    "MigrationFailureError",
    "EngineError",
]
