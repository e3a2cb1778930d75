"""
Configuration management for SchemaDB.

Process-wide settings (storage location, logging) come from environment
variables. Per-database settings (stores, version, strategy) are declared
in code through DatabaseConfig.

Invariants:
    - All settings have sensible defaults for local development
    - DatabaseConfig.validate() runs before any I/O and never touches disk
    - The explicit version strategy always comes with a version

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - New environment variables use the SCHEMADB_ prefix, except the shared
      LOG_LEVEL and LOG_FORMAT
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

from .errors import ConfigurationError
from .schema.diff import RemovedStorePolicy
from .schema.migrations import MigrationRegistry
from .schema.types import StoreSchema, validate_stores
from .schema.versioning import VersionStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        data_dir: Directory for SQLite database files
        busy_timeout_ms: SQLite busy timeout in milliseconds
        wal_mode: SQLite WAL mode enabled
    """

    data_dir: str = "./data"
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("SCHEMADB_DATA_DIR", "./data"),
            busy_timeout_ms=int(os.getenv("SCHEMADB_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=os.getenv("SCHEMADB_WAL_MODE", "true").lower() == "true",
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class SchemaDBConfig:
    """Complete process configuration.

    Attributes:
        storage: Local storage configuration
        observability: Logging configuration
        version_strategy: Default version strategy for tools
        removed_store_policy: Default removed-store policy for tools
    """

    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    version_strategy: VersionStrategy = VersionStrategy.AUTO
    removed_store_policy: RemovedStorePolicy = RemovedStorePolicy.ERROR

    @classmethod
    def from_env(cls) -> SchemaDBConfig:
        """Load complete configuration from environment variables.

        Raises:
            ConfigurationError: If a value is invalid
        """
        strategy_str = os.getenv("SCHEMADB_VERSION_STRATEGY", "auto").lower()
        policy_str = os.getenv("SCHEMADB_REMOVED_STORE_POLICY", "error").lower()
        try:
            strategy = VersionStrategy.from_str(strategy_str)
            policy = RemovedStorePolicy.from_str(policy_str)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        config = cls(
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
            version_strategy=strategy,
            removed_store_policy=policy,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if self.storage.busy_timeout_ms < 0:
            raise ConfigurationError(
                "SCHEMADB_BUSY_TIMEOUT_MS must not be negative", option="busy_timeout_ms"
            )
        if self.observability.log_format not in ("json", "text"):
            raise ConfigurationError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text",
                option="log_format",
            )
        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first open."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "SchemaDB configuration loaded",
            extra={
                "data_dir": self.storage.data_dir,
                "wal_mode": self.storage.wal_mode,
                "version_strategy": self.version_strategy.value,
                "removed_store_policy": self.removed_store_policy.value,
                "log_level": self.observability.log_level,
            },
        )


@dataclass(frozen=True)
class DatabaseConfig:
    """Declaration of one database.

    Attributes:
        name: Database name
        stores: Store declarations
        version: Version to open at (required for the explicit strategy)
        version_strategy: How the version is chosen
        removed_store_policy: What to do with stores no longer declared
        strict_versioning: Raise instead of warning when the explicit
            strategy defers safe changes
        on_blocked: Called if other open connections delay the upgrade
        on_version_change: Installed on the connection; called with
            (old_version, new_version) when another open upgrades the database
    """

    name: str
    stores: Tuple[StoreSchema, ...] = ()
    version: Optional[int] = None
    version_strategy: VersionStrategy = VersionStrategy.EXPLICIT
    removed_store_policy: RemovedStorePolicy = RemovedStorePolicy.ERROR
    strict_versioning: bool = False
    on_blocked: Optional[Callable[[], None]] = None
    on_version_change: Optional[Callable[[int, int], None]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "stores", tuple(self.stores))
        if isinstance(self.version_strategy, str):
            object.__setattr__(
                self, "version_strategy", VersionStrategy.from_str(self.version_strategy)
            )
        if isinstance(self.removed_store_policy, str):
            object.__setattr__(
                self, "removed_store_policy", RemovedStorePolicy.from_str(self.removed_store_policy)
            )

    def validate(self) -> MigrationRegistry:
        """Check the declaration before any I/O.

        Returns:
            The migration registry built from the stores

        Raises:
            ConfigurationError: Missing name, bad version, reserved store name
            DuplicateDefinitionError: Repeated store or migration name
        """
        if not self.name:
            raise ConfigurationError("Database name must not be empty", option="name")

        if self.version is not None and (
            isinstance(self.version, bool) or not isinstance(self.version, int) or self.version < 1
        ):
            raise ConfigurationError(
                f"Invalid version {self.version!r}; versions are positive integers",
                option="version",
            )

        if self.version_strategy is VersionStrategy.EXPLICIT and self.version is None:
            raise ConfigurationError(
                'Version is required when the version strategy is "explicit"',
                option="version",
            )

        validate_stores(self.stores)
        return MigrationRegistry.from_stores(self.stores)
