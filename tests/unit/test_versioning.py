"""
Unit tests for version resolution.

Tests cover:
- AUTO strategy on fresh, unchanged and changed databases
- Forced bumps for pending migrations
- EXPLICIT strategy validation and deferred changes
- Dangerous change errors
- Probing a real database through resolve()
- Change descriptions
"""

import logging
import tempfile

import pytest

from schemadb.engine import SqliteEngine
from schemadb.errors import (
    ConfigurationError,
    DeferredSchemaChangeError,
    UnsafeSchemaChangeError,
)
from schemadb.schema.diff import ChangeKind, RemovedStorePolicy, SchemaChange
from schemadb.schema.migrations import MigrationRegistry
from schemadb.schema.reader import ExistingStore, IndexInfo, ProbeResult, to_desired_schema
from schemadb.schema.types import Migration, StoreSchema, index
from schemadb.schema.versioning import (
    VersionStrategy,
    describe_change,
    resolve,
    resolve_version,
)

USERS = StoreSchema("users", "id", (index("by_email", "email"),))


def probe_of(version, *stores, applied=()):
    """Helper to build a probe result from existing stores."""
    return ProbeResult(
        version=version,
        schema={store.name: store for store in stores},
        applied=list(applied),
    )


def users_on_disk():
    return ExistingStore("users", "id", {"by_email": IndexInfo("email")})


def resolve_with(
    probe,
    stores,
    strategy=VersionStrategy.AUTO,
    policy=RemovedStorePolicy.ERROR,
    version=None,
    strict=False,
):
    """Resolve with a registry built from the stores."""
    return resolve_version(
        probe,
        to_desired_schema(stores),
        strategy,
        policy,
        version,
        MigrationRegistry.from_stores(stores),
        strict=strict,
    )


class TestAutoStrategy:
    """Tests for the AUTO strategy."""

    def test_fresh_database_starts_at_one(self):
        """A fresh database resolves to version 1 without a diff."""
        resolution = resolve_with(None, [USERS])

        assert resolution.target_version == 1
        assert resolution.current_version == 0
        assert resolution.diff is None
        assert resolution.is_fresh
        assert resolution.needs_upgrade

    def test_unchanged_keeps_version(self):
        """An unchanged schema keeps the current version."""
        resolution = resolve_with(probe_of(4, users_on_disk()), [USERS])

        assert resolution.target_version == 4
        assert not resolution.needs_upgrade
        assert not resolution.diff.has_changes

    def test_repeated_resolution_never_bumps(self):
        """Resolving an unchanged schema repeatedly never increments."""
        probe = probe_of(2, users_on_disk())
        versions = {resolve_with(probe, [USERS]).target_version for _ in range(5)}
        assert versions == {2}

    def test_safe_change_bumps_by_one(self):
        """Safe changes increment the version by one."""
        posts = StoreSchema("posts", "id")
        resolution = resolve_with(probe_of(4, users_on_disk()), [USERS, posts])

        assert resolution.target_version == 5
        assert [c.kind for c in resolution.diff.safe] == [ChangeKind.STORE_ADD]

    def test_pending_migration_forces_bump(self):
        """A pending migration alone forces an upgrade."""
        users = StoreSchema(
            "users", "id", (index("by_email", "email"),), (Migration("001-a", lambda db, tx: None),)
        )
        resolution = resolve_with(probe_of(3, users_on_disk()), [users])

        assert resolution.target_version == 4
        assert [m.name for m in resolution.pending] == ["001-a"]

    def test_applied_migration_does_not_bump(self):
        """Migrations already in the ledger are not pending."""
        users = StoreSchema(
            "users", "id", (index("by_email", "email"),), (Migration("001-a", lambda db, tx: None),)
        )
        resolution = resolve_with(probe_of(3, users_on_disk(), applied=["001-a"]), [users])

        assert resolution.target_version == 3
        assert resolution.pending == []
        assert resolution.applied == ["001-a"]

    def test_dangerous_change_raises(self):
        """A removed store fails resolution under the error policy."""
        legacy = ExistingStore("legacy", "id")

        with pytest.raises(UnsafeSchemaChangeError) as exc_info:
            resolve_with(probe_of(2, users_on_disk(), legacy), [USERS])

        assert exc_info.value.details["stores"] == ["legacy"]
        assert 'Store "legacy" would be deleted' in str(exc_info.value)

    def test_preserve_makes_removal_safe(self):
        """The preserve policy turns removal into a bump."""
        legacy = ExistingStore("legacy", "id")
        resolution = resolve_with(
            probe_of(2, users_on_disk(), legacy), [USERS], policy=RemovedStorePolicy.PRESERVE
        )

        assert resolution.target_version == 3
        assert resolution.diff.safe[0].new_value == "__legacy_deleted_v2__"

    def test_key_path_change_raises_even_with_preserve(self):
        """Key path changes stay dangerous under every policy."""
        with pytest.raises(UnsafeSchemaChangeError) as exc_info:
            resolve_with(
                probe_of(1, users_on_disk()),
                [StoreSchema("users", "uuid", (index("by_email", "email"),))],
                policy=RemovedStorePolicy.PRESERVE,
            )

        assert 'key path changed from "id" to "uuid"' in str(exc_info.value)


class TestExplicitStrategy:
    """Tests for the EXPLICIT strategy."""

    def test_version_required(self):
        """EXPLICIT without a version raises ConfigurationError."""
        with pytest.raises(ConfigurationError) as exc_info:
            resolve_with(None, [USERS], strategy=VersionStrategy.EXPLICIT)
        assert exc_info.value.option == "version"

    def test_fresh_database_uses_given_version(self):
        """A fresh database is created at the given version."""
        resolution = resolve_with(None, [USERS], strategy=VersionStrategy.EXPLICIT, version=7)
        assert resolution.target_version == 7

    def test_bumped_version_applies_changes(self):
        """A greater version carries the safe changes."""
        posts = StoreSchema("posts", "id")
        resolution = resolve_with(
            probe_of(2, users_on_disk()), [USERS, posts], strategy=VersionStrategy.EXPLICIT,
            version=3,
        )

        assert resolution.target_version == 3
        assert resolution.needs_upgrade
        assert [c.store for c in resolution.diff.safe] == ["posts"]

    def test_deferred_changes_warn(self, caplog):
        """Safe changes without a bump are deferred with a warning listing each."""
        posts = StoreSchema("posts", "id")
        users = StoreSchema("users", "id")

        with caplog.at_level(logging.WARNING, logger="schemadb.schema.versioning"):
            resolution = resolve_with(
                probe_of(2, users_on_disk()), [users, posts], strategy=VersionStrategy.EXPLICIT,
                version=2,
            )

        assert resolution.target_version == 2
        assert not resolution.needs_upgrade
        messages = "\n".join(r.getMessage() for r in caplog.records)
        assert "Schema changes detected but version not bumped" in messages
        assert '- Delete index "by_email" from "users"' in messages
        assert '- Add store "posts"' in messages
        assert "Current DB version: 2, provided version: 2" in messages

    def test_deferred_changes_strict(self):
        """Strict mode raises instead of warning."""
        posts = StoreSchema("posts", "id")

        with pytest.raises(DeferredSchemaChangeError) as exc_info:
            resolve_with(
                probe_of(2, users_on_disk()), [USERS, posts], strategy=VersionStrategy.EXPLICIT,
                version=2, strict=True,
            )

        assert exc_info.value.current_version == 2
        assert exc_info.value.requested_version == 2

    def test_pending_migrations_without_bump_warn(self, caplog):
        """Pending migrations with an unchanged version are reported."""
        users = StoreSchema(
            "users", "id", (index("by_email", "email"),), (Migration("001-a", lambda db, tx: None),)
        )

        with caplog.at_level(logging.WARNING, logger="schemadb.schema.versioning"):
            resolution = resolve_with(
                probe_of(2, users_on_disk()), [users], strategy=VersionStrategy.EXPLICIT, version=2
            )

        assert resolution.target_version == 2
        assert any("001-a" in r.getMessage() for r in caplog.records)

    def test_dangerous_change_raises(self):
        """Dangerous changes raise under EXPLICIT too."""
        with pytest.raises(UnsafeSchemaChangeError):
            resolve_with(
                probe_of(2, users_on_disk()), [], strategy=VersionStrategy.EXPLICIT, version=3
            )


class TestResolveAgainstEngine:
    """Tests for resolve() probing a real database."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def engine(self, data_dir):
        """Create engine."""
        return SqliteEngine(data_dir, wal_mode=False)

    async def create_users(self, engine):
        def upgrade(conn, tx, old_version):
            store = conn.create_object_store("users", key_path="id")
            store.create_index("by_email", "email")

        conn = await engine.open("app", 1, on_upgrade=upgrade)
        conn.close()

    @pytest.mark.asyncio
    async def test_missing_database_is_fresh(self, engine):
        """Resolving a database that does not exist creates nothing."""
        resolution = await resolve(engine, "app", [USERS], VersionStrategy.AUTO)

        assert resolution.is_fresh
        assert resolution.target_version == 1
        assert not engine.exists("app")

    @pytest.mark.asyncio
    async def test_unchanged_database(self, engine):
        await self.create_users(engine)

        resolution = await resolve(engine, "app", [USERS], VersionStrategy.AUTO)

        assert resolution.current_version == 1
        assert not resolution.needs_upgrade

    @pytest.mark.asyncio
    async def test_added_store_bumps(self, engine):
        """The persisted schema is diffed against the declaration."""
        await self.create_users(engine)

        resolution = await resolve(
            engine, "app", [USERS, StoreSchema("posts", "id")], VersionStrategy.AUTO
        )

        assert resolution.target_version == 2
        assert [c.store for c in resolution.diff.safe] == ["posts"]
        assert engine.version_of("app") == 1

    @pytest.mark.asyncio
    async def test_removed_store_raises(self, engine):
        await self.create_users(engine)

        with pytest.raises(UnsafeSchemaChangeError):
            await resolve(engine, "app", [], VersionStrategy.AUTO)

    @pytest.mark.asyncio
    async def test_explicit_without_version(self, engine):
        """The version check runs before the database is probed."""
        with pytest.raises(ConfigurationError):
            await resolve(engine, "app", [USERS], VersionStrategy.EXPLICIT)
        assert not engine.exists("app")


class TestDescribeChange:
    """Tests for describe_change()."""

    def test_descriptions(self):
        assert describe_change(SchemaChange(ChangeKind.STORE_ADD, "users")) == 'Add store "users"'
        assert describe_change(
            SchemaChange(ChangeKind.STORE_RENAME, "users", new_value="__users_deleted_v1__")
        ) == 'Rename store "users" to "__users_deleted_v1__"'
        assert describe_change(
            SchemaChange(ChangeKind.INDEX_ADD, "users", "by_email")
        ) == 'Add index "by_email" on "users"'

    def test_compound_key_path(self):
        text = describe_change(
            SchemaChange(ChangeKind.KEYPATH_CHANGE, "events", old_value=("a", "b"), new_value="id")
        )
        assert 'from "a,b" to "id"' in text

    def test_strategy_from_str(self):
        assert VersionStrategy.from_str("auto") is VersionStrategy.AUTO
        with pytest.raises(ValueError):
            VersionStrategy.from_str("manual")
