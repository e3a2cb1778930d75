"""
Unit tests for the migration registry and history ledger.

Tests cover:
- Collection across stores and duplicate detection
- Execution order by name
- Pending migration calculation
- Ledger reads and writes inside the upgrade
"""

import tempfile

import pytest

from schemadb.engine import SqliteEngine
from schemadb.errors import DuplicateDefinitionError
from schemadb.schema.migrations import (
    LEDGER_STORE_NAME,
    MigrationRegistry,
    ensure_ledger_store,
    forget_migration,
    read_applied,
    record_applied,
)
from schemadb.schema.types import Migration, StoreSchema


def noop(db, tx):
    """Migration body that does nothing."""
    return None


class TestMigrationRegistry:
    """Tests for MigrationRegistry."""

    def test_collects_across_stores(self):
        """Migrations from every store are collected."""
        users = StoreSchema(name="users", migrations=(Migration("b-x", noop),))
        posts = StoreSchema(name="posts", migrations=(Migration("a-y", noop),))

        registry = MigrationRegistry.from_stores([users, posts])

        assert len(registry) == 2
        assert "a-y" in registry
        assert "c-z" not in registry

    def test_ordered_by_name(self):
        """Execution order is by name, not declaration order."""
        registry = MigrationRegistry(
            [Migration("b-x", noop), Migration("a-y", noop), Migration("B-upper", noop)]
        )

        # Code-point order puts upper case first
        assert registry.names == ["B-upper", "a-y", "b-x"]
        assert [m.name for m in registry] == ["B-upper", "a-y", "b-x"]

    def test_duplicate_across_stores_rejected(self):
        """The same migration name in two stores raises."""
        users = StoreSchema(name="users", migrations=(Migration("001-init", noop),))
        posts = StoreSchema(name="posts", migrations=(Migration("001-init", noop),))

        with pytest.raises(DuplicateDefinitionError) as exc_info:
            MigrationRegistry.from_stores([users, posts])

        assert exc_info.value.kind == "migration"
        assert 'Duplicate migration name "001-init" found across stores' in str(exc_info.value)

    def test_pending(self):
        """pending() excludes applied names and keeps order."""
        registry = MigrationRegistry(
            [Migration("003", noop), Migration("001", noop), Migration("002", noop)]
        )

        assert [m.name for m in registry.pending(["002"])] == ["001", "003"]
        assert registry.pending(["001", "002", "003"]) == []
        assert [m.name for m in registry.pending([])] == ["001", "002", "003"]


class TestLedger:
    """Tests for the ledger helpers."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def engine(self, data_dir):
        """Create engine."""
        return SqliteEngine(data_dir, wal_mode=False)

    @pytest.mark.asyncio
    async def test_no_ledger_reads_empty(self, engine):
        """A database without a ledger has no applied migrations."""

        def upgrade(conn, tx, old_version):
            conn.create_object_store("users", key_path="id")

        conn = await engine.open("app", 1, on_upgrade=upgrade)
        assert read_applied(conn) == []
        conn.close()

    @pytest.mark.asyncio
    async def test_record_and_read(self, engine):
        """Recorded names are read back sorted."""

        def upgrade(conn, tx, old_version):
            assert ensure_ledger_store(conn) is True
            assert ensure_ledger_store(conn) is False
            record_applied(tx, "002-b")
            record_applied(tx, "001-a")

        conn = await engine.open("app", 1, on_upgrade=upgrade)
        assert read_applied(conn) == ["001-a", "002-b"]

        tx = conn.transaction(LEDGER_STORE_NAME)
        record = tx.object_store(LEDGER_STORE_NAME).get("001-a")
        tx.abort()
        assert record["name"] == "001-a"
        assert isinstance(record["applied_at"], int)
        conn.close()

    @pytest.mark.asyncio
    async def test_read_does_not_block_transactions(self, engine):
        """read_applied leaves no transaction active."""

        def upgrade(conn, tx, old_version):
            ensure_ledger_store(conn)

        conn = await engine.open("app", 1, on_upgrade=upgrade)
        read_applied(conn)

        tx = conn.transaction(LEDGER_STORE_NAME, "readwrite")
        tx.commit()
        conn.close()

    @pytest.mark.asyncio
    async def test_forget_migration(self, engine):
        """forget_migration removes a ledger entry in a later upgrade."""

        def v1(conn, tx, old_version):
            ensure_ledger_store(conn)
            record_applied(tx, "001-a")
            record_applied(tx, "002-b")

        conn = await engine.open("app", 1, on_upgrade=v1)
        conn.close()

        def v2(conn, tx, old_version):
            forget_migration(tx, "001-a")

        conn = await engine.open("app", 2, on_upgrade=v2)
        assert read_applied(conn) == ["002-b"]
        conn.close()
