"""
Unit tests for schema declarations.

Tests cover:
- StoreSchema and IndexDefinition construction
- Key path normalization
- Duplicate and reserved name validation
- The migration decorator
"""

import pytest

from schemadb.errors import ConfigurationError, DuplicateDefinitionError
from schemadb.schema.types import (
    IndexDefinition,
    Migration,
    StoreSchema,
    index,
    is_reserved_name,
    migration,
    validate_stores,
)


class TestStoreSchema:
    """Tests for StoreSchema."""

    def test_defaults(self):
        """Stores default to out-of-line keys, no indexes, no migrations."""
        store = StoreSchema(name="kv")

        assert store.key_path is None
        assert store.indexes == ()
        assert store.migrations == ()

    def test_list_key_path_normalized(self):
        """List key paths become tuples."""
        store = StoreSchema(name="events", key_path=["tenant", "seq"])
        assert store.key_path == ("tenant", "seq")

    def test_indexes_become_tuple(self):
        """Index lists are stored as tuples."""
        store = StoreSchema(name="users", key_path="id", indexes=[index("by_email", "email")])
        assert isinstance(store.indexes, tuple)
        assert store.get_index("by_email").key_path == "email"
        assert store.get_index("missing") is None

    def test_duplicate_index_rejected(self):
        """Two indexes with the same name raise."""
        with pytest.raises(DuplicateDefinitionError) as exc_info:
            StoreSchema(
                name="users",
                key_path="id",
                indexes=(index("by_email", "email"), index("by_email", "mail")),
            )

        assert exc_info.value.kind == "index"
        assert "users" in str(exc_info.value)

    def test_frozen(self):
        """Declarations are immutable."""
        store = StoreSchema(name="users", key_path="id")
        with pytest.raises(AttributeError):
            store.name = "people"

    def test_to_dict(self):
        """to_dict lists indexes and migration names."""

        @migration("001-seed")
        def seed(db, tx):
            pass

        store = StoreSchema(
            name="users",
            key_path=("org", "id"),
            indexes=(index("by_tag", "tags", multi_entry=True),),
            migrations=(seed,),
        )

        assert store.to_dict() == {
            "name": "users",
            "key_path": ["org", "id"],
            "indexes": [
                {"name": "by_tag", "key_path": "tags", "unique": False, "multi_entry": True}
            ],
            "migrations": ["001-seed"],
        }


class TestIndexDefinition:
    """Tests for IndexDefinition and the index() helper."""

    def test_index_helper(self):
        """index() builds an IndexDefinition."""
        idx = index("by_name", ["last", "first"], unique=True)

        assert idx == IndexDefinition(name="by_name", key_path=("last", "first"), unique=True)
        assert idx.multi_entry is False

    def test_equality_ignores_list_vs_tuple(self):
        """Key paths compare equal after normalization."""
        assert IndexDefinition("a", ["x", "y"]) == IndexDefinition("a", ("x", "y"))


class TestMigration:
    """Tests for Migration declarations."""

    def test_decorator(self):
        """@migration wraps a function into a Migration."""

        @migration("002-backfill")
        def backfill(db, tx):
            return None

        assert isinstance(backfill, Migration)
        assert backfill.name == "002-backfill"
        assert backfill.up(None, None) is None

    def test_empty_name_rejected(self):
        """Migrations need a name."""
        with pytest.raises(ConfigurationError):
            Migration(name="", up=lambda db, tx: None)


class TestValidateStores:
    """Tests for validate_stores()."""

    def test_valid(self):
        """Distinct, unreserved names pass."""
        validate_stores([StoreSchema(name="users"), StoreSchema(name="posts")])

    def test_duplicate_store_rejected(self):
        """Duplicate store names raise before any I/O."""
        with pytest.raises(DuplicateDefinitionError, match='Duplicate store name: "users"'):
            validate_stores([StoreSchema(name="users"), StoreSchema(name="users")])

    def test_reserved_prefix_rejected(self):
        """Store names cannot use the reserved prefix."""
        with pytest.raises(ConfigurationError) as exc_info:
            validate_stores([StoreSchema(name="__internal")])
        assert exc_info.value.option == "stores"

    def test_empty_name_rejected(self):
        """Store names cannot be empty."""
        with pytest.raises(ConfigurationError):
            validate_stores([StoreSchema(name="")])

    def test_is_reserved_name(self):
        """Backup and ledger names are reserved."""
        assert is_reserved_name("__schema_history__")
        assert is_reserved_name("__users_deleted_v3__")
        assert not is_reserved_name("_users")
