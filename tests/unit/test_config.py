"""
Unit tests for configuration.

Tests cover:
- Environment loading of process settings
- Validation of process settings
- DatabaseConfig validation before any I/O
"""

import pytest

from schemadb.config import (
    DatabaseConfig,
    ObservabilityConfig,
    SchemaDBConfig,
    StorageConfig,
)
from schemadb.errors import ConfigurationError, DuplicateDefinitionError
from schemadb.schema.diff import RemovedStorePolicy
from schemadb.schema.types import Migration, StoreSchema
from schemadb.schema.versioning import VersionStrategy


def noop(db, tx):
    return None


class TestEnvironment:
    """Tests for from_env() loaders."""

    def test_storage_defaults(self, monkeypatch):
        """Unset variables fall back to defaults."""
        for var in ("SCHEMADB_DATA_DIR", "SCHEMADB_BUSY_TIMEOUT_MS", "SCHEMADB_WAL_MODE"):
            monkeypatch.delenv(var, raising=False)

        config = StorageConfig.from_env()

        assert config.data_dir == "./data"
        assert config.busy_timeout_ms == 5000
        assert config.wal_mode is True

    def test_storage_from_env(self, monkeypatch):
        """Storage settings are read from the environment."""
        monkeypatch.setenv("SCHEMADB_DATA_DIR", "/tmp/schemadb")
        monkeypatch.setenv("SCHEMADB_BUSY_TIMEOUT_MS", "250")
        monkeypatch.setenv("SCHEMADB_WAL_MODE", "false")

        config = StorageConfig.from_env()

        assert config.data_dir == "/tmp/schemadb"
        assert config.busy_timeout_ms == 250
        assert config.wal_mode is False

    def test_observability_from_env(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("LOG_FORMAT", "text")

        config = ObservabilityConfig.from_env()

        assert config.log_level == "DEBUG"
        assert config.log_format == "text"

    def test_full_config_from_env(self, monkeypatch, tmp_path):
        """Strategy and policy defaults for tools come from the environment."""
        monkeypatch.setenv("SCHEMADB_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("SCHEMADB_VERSION_STRATEGY", "explicit")
        monkeypatch.setenv("SCHEMADB_REMOVED_STORE_POLICY", "PRESERVE")
        monkeypatch.setenv("LOG_FORMAT", "json")

        config = SchemaDBConfig.from_env()

        assert config.version_strategy is VersionStrategy.EXPLICIT
        assert config.removed_store_policy is RemovedStorePolicy.PRESERVE
        assert config.storage.data_dir == str(tmp_path)

    def test_invalid_strategy(self, monkeypatch):
        """An unknown strategy is a ConfigurationError."""
        monkeypatch.setenv("SCHEMADB_VERSION_STRATEGY", "sometimes")

        with pytest.raises(ConfigurationError):
            SchemaDBConfig.from_env()


class TestValidate:
    """Tests for SchemaDBConfig.validate()."""

    def test_invalid_log_format(self, tmp_path):
        config = SchemaDBConfig(
            storage=StorageConfig(data_dir=str(tmp_path)),
            observability=ObservabilityConfig(log_format="xml"),
        )

        with pytest.raises(ConfigurationError) as exc_info:
            config.validate()
        assert exc_info.value.option == "log_format"

    def test_negative_timeout(self, tmp_path):
        config = SchemaDBConfig(storage=StorageConfig(data_dir=str(tmp_path), busy_timeout_ms=-1))

        with pytest.raises(ConfigurationError):
            config.validate()

    def test_missing_data_dir_only_warns(self, tmp_path, caplog):
        """A data directory that does not exist yet is not an error."""
        config = SchemaDBConfig(storage=StorageConfig(data_dir=str(tmp_path / "missing")))

        config.validate()

        assert any("does not exist" in r.getMessage() for r in caplog.records)


class TestDatabaseConfig:
    """Tests for DatabaseConfig."""

    def test_valid_returns_registry(self):
        """A valid declaration yields the migration registry."""
        users = StoreSchema("users", "id", migrations=(Migration("002", noop), Migration("001", noop)))
        config = DatabaseConfig(name="app", stores=[users], version=1)

        registry = config.validate()

        assert registry.names == ["001", "002"]
        assert isinstance(config.stores, tuple)

    def test_defaults(self):
        config = DatabaseConfig(name="app")

        assert config.version_strategy is VersionStrategy.EXPLICIT
        assert config.removed_store_policy is RemovedStorePolicy.ERROR
        assert config.strict_versioning is False

    def test_string_options_converted(self):
        """Strategy and policy may be given as strings."""
        config = DatabaseConfig(
            name="app", version_strategy="auto", removed_store_policy="preserve"
        )

        assert config.version_strategy is VersionStrategy.AUTO
        assert config.removed_store_policy is RemovedStorePolicy.PRESERVE

    def test_unknown_string_option(self):
        with pytest.raises(ValueError):
            DatabaseConfig(name="app", version_strategy="sometimes")

    def test_empty_name(self):
        with pytest.raises(ConfigurationError) as exc_info:
            DatabaseConfig(name="", version=1).validate()
        assert exc_info.value.option == "name"

    @pytest.mark.parametrize("version", [0, -3, 1.5, "2", True])
    def test_invalid_version(self, version):
        """Versions must be positive integers."""
        with pytest.raises(ConfigurationError) as exc_info:
            DatabaseConfig(name="app", version=version).validate()
        assert exc_info.value.option == "version"

    def test_explicit_requires_version(self):
        with pytest.raises(ConfigurationError, match="explicit"):
            DatabaseConfig(name="app", version_strategy=VersionStrategy.EXPLICIT).validate()

    def test_auto_without_version(self):
        """AUTO does not need a version."""
        config = DatabaseConfig(name="app", version_strategy=VersionStrategy.AUTO)
        assert len(config.validate()) == 0

    def test_duplicate_store(self):
        stores = (StoreSchema("users", "id"), StoreSchema("users", "uuid"))

        with pytest.raises(DuplicateDefinitionError) as exc_info:
            DatabaseConfig(name="app", stores=stores, version=1).validate()
        assert exc_info.value.kind == "store"

    def test_reserved_store_name(self):
        with pytest.raises(ConfigurationError):
            DatabaseConfig(
                name="app", stores=(StoreSchema("__schema_history__", "name"),), version=1
            ).validate()

    def test_duplicate_migration_across_stores(self):
        stores = (
            StoreSchema("users", "id", migrations=(Migration("001", noop),)),
            StoreSchema("posts", "id", migrations=(Migration("001", noop),)),
        )

        with pytest.raises(DuplicateDefinitionError) as exc_info:
            DatabaseConfig(name="app", stores=stores, version=1).validate()
        assert exc_info.value.kind == "migration"
