"""
Unit tests for in-memory stores and SQLite storage.

Tests cover:
- Keyed store operations and not-found errors
- Database initialization
- Extension record save, load and delete
- Checksum verification on reload
- Deployment and marketplace records
- Hash computation and ID generation
"""

import tempfile
import threading
from pathlib import Path

import pytest

from rulesmith.errors import (
    ExtensionNotFoundError,
    StorageIntegrityError,
    TemplateNotFoundError,
)
from rulesmith.schema import (
    DeploymentResult,
    DeploymentStatus,
    DeploymentStrategy,
    ExtensionRegistryEntry,
    InheritanceMetadata,
    LifecycleState,
    MarketplaceEntry,
    RulePatch,
    StateTransition,
    Template,
    TemplateExtension,
)
from rulesmith.store import (
    ExtensionDB,
    ExtensionStore,
    TemplateStore,
    compute_hash,
    generate_id,
)


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Path:
    """Create a temporary database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        yield Path(f.name)


@pytest.fixture
def db(temp_db_path: Path) -> ExtensionDB:
    """Create a database instance."""
    database = ExtensionDB(temp_db_path)
    yield database
    database.close()


def make_entry(ext_id: str = "strict", state: LifecycleState = LifecycleState.DRAFT) -> ExtensionRegistryEntry:
    """Create a registry entry."""
    return ExtensionRegistryEntry(
        extension=TemplateExtension(
            id=ext_id,
            name=ext_id.title(),
            target_template_id="base",
            rules=RulePatch(deny=["innerHTML ="]),
        ),
        state=state,
        state_history=[
            StateTransition(to_state=LifecycleState.DRAFT, reason="Extension created")
        ],
    )


# =============================================================================
# Keyed Stores
# =============================================================================


class TestKeyedStore:
    """Tests for the in-memory stores."""

    def test_put_get(self) -> None:
        """Stored values come back by key, as the stored object."""
        store = TemplateStore()
        template = Template(id="base", name="Base")
        store.put("base", template)
        assert store.get("base") is template
        assert "base" in store
        assert len(store) == 1

    def test_not_found_errors(self) -> None:
        """Each store raises its own not-found error."""
        with pytest.raises(TemplateNotFoundError):
            TemplateStore().get("ghost")
        with pytest.raises(ExtensionNotFoundError):
            ExtensionStore().get("ghost")
        assert TemplateStore().get_optional("ghost") is None

    def test_empty_key(self) -> None:
        """Keys must be non-empty."""
        with pytest.raises(ValueError):
            TemplateStore().put("", Template(id="x", name="X"))

    def test_delete(self) -> None:
        """delete() reports whether the key existed."""
        store = TemplateStore()
        store.put("base", Template(id="base", name="Base"))
        assert store.delete("base")
        assert not store.delete("base")

    def test_snapshots_sorted(self) -> None:
        """keys(), values() and items() are ordered by key."""
        store = TemplateStore()
        for tid in ["c", "a", "b"]:
            store.put(tid, Template(id=tid, name=tid))
        assert store.keys() == ["a", "b", "c"]
        assert [t.id for t in store.values()] == ["a", "b", "c"]
        assert [k for k, _ in store.items()] == ["a", "b", "c"]

    def test_update(self) -> None:
        """update() replaces the value with fn(value)."""
        store = ExtensionStore()
        store.put("strict", make_entry())
        updated = store.update("strict", lambda e: e.model_copy(update={"active": True}))
        assert updated.active
        assert store.get("strict").active

    def test_concurrent_updates(self) -> None:
        """Concurrent update() calls never lose a write."""
        store = ExtensionStore()
        store.put("strict", make_entry())

        def bump() -> None:
            for _ in range(50):
                store.update(
                    "strict",
                    lambda e: e.model_copy(update={"dependents": [*e.dependents, "x"]}),
                )

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(store.get("strict").dependents) == 200

    def test_children_of(self) -> None:
        """children_of() finds direct children only."""
        store = TemplateStore()
        store.put("base", Template(id="base", name="Base"))
        store.put("team", Template(
            id="team",
            name="Team",
            inheritance=InheritanceMetadata(parent_id="base", chain=["base"]),
        ))
        store.put("proj", Template(
            id="proj",
            name="Proj",
            inheritance=InheritanceMetadata(parent_id="team", chain=["base", "team"]),
        ))
        assert [t.id for t in store.children_of("base")] == ["team"]


# =============================================================================
# Database
# =============================================================================


class TestDatabaseInit:
    """Tests for database initialization."""

    def test_create_database(self, temp_db_path: Path) -> None:
        """Test database creation."""
        db = ExtensionDB(temp_db_path)
        assert temp_db_path.exists()
        db.close()

    def test_context_manager(self, temp_db_path: Path) -> None:
        """Test database as context manager."""
        with ExtensionDB(temp_db_path) as db:
            assert db._conn is not None
        assert db._conn is None

    def test_reopen(self, temp_db_path: Path) -> None:
        """Reopening keeps the data and the schema version."""
        with ExtensionDB(temp_db_path) as db:
            db.save_entry(make_entry())
        with ExtensionDB(temp_db_path) as db:
            assert db.get_entry("strict") is not None
            rows = db._conn.execute("SELECT version FROM schema_version").fetchall()
            assert len(rows) == 1


class TestExtensionRecords:
    """Tests for extension record operations."""

    def test_save_and_get(self, db: ExtensionDB) -> None:
        """Saved entries round-trip."""
        entry = make_entry(state=LifecycleState.TESTING)
        db.save_entry(entry)
        loaded = db.get_entry("strict")
        assert loaded is not None
        assert loaded.extension == entry.extension
        assert loaded.state == LifecycleState.TESTING
        assert loaded.state_history == entry.state_history
        assert loaded.storage.checksum == compute_hash(entry.extension.model_dump_json())

    def test_get_missing(self, db: ExtensionDB) -> None:
        """Unknown ids return None."""
        assert db.get_entry("ghost") is None

    def test_save_replaces(self, db: ExtensionDB) -> None:
        """Saving again replaces the record."""
        db.save_entry(make_entry())
        db.save_entry(make_entry(state=LifecycleState.ARCHIVED))
        entries, rejected = db.load_entries()
        assert [e.state for e in entries] == [LifecycleState.ARCHIVED]
        assert rejected == []

    def test_delete(self, db: ExtensionDB) -> None:
        """Deleted records are gone."""
        db.save_entry(make_entry())
        assert db.delete_entry("strict")
        assert not db.delete_entry("strict")
        assert db.get_entry("strict") is None

    def test_load_ordered(self, db: ExtensionDB) -> None:
        """load_entries() returns records by id."""
        for ext_id in ["b", "a"]:
            db.save_entry(make_entry(ext_id))
        entries, _ = db.load_entries()
        assert [e.extension.id for e in entries] == ["a", "b"]


class TestIntegrity:
    """Tests for checksum verification."""

    def test_tampered_state_rejected(self, db: ExtensionDB) -> None:
        """A state edited outside the manager fails verification."""
        db.save_entry(make_entry("strict"))
        db.save_entry(make_entry("other"))
        db._conn.execute(
            "UPDATE extensions SET state = 'deployed' WHERE extension_id = 'strict'"
        )
        db._conn.commit()

        entries, rejected = db.load_entries()

        assert [e.extension.id for e in entries] == ["other"]
        assert rejected == ["strict"]

    def test_tampered_body_raises_on_get(self, db: ExtensionDB) -> None:
        """get_entry() raises on a record that fails verification."""
        db.save_entry(make_entry())
        db._conn.execute(
            "UPDATE extensions SET history_json = '[]' WHERE extension_id = 'strict'"
        )
        db._conn.commit()

        with pytest.raises(StorageIntegrityError) as exc_info:
            db.get_entry("strict")
        assert exc_info.value.record_id == "strict"


class TestDeploymentRecords:
    """Tests for deployment and marketplace records."""

    def test_record_and_list(self, db: ExtensionDB) -> None:
        """Deployments are listed oldest first; re-recording replaces."""
        first = DeploymentResult(
            deployment_id="d1",
            extension_id="strict",
            strategy=DeploymentStrategy.IMMEDIATE,
            environment="production",
            status=DeploymentStatus.SUCCEEDED,
        )
        db.record_deployment(first)
        first.status = DeploymentStatus.ROLLED_BACK
        db.record_deployment(first)

        deployments = db.get_deployments("strict")

        assert len(deployments) == 1
        assert deployments[0].status == DeploymentStatus.ROLLED_BACK
        assert db.get_deployments("other") == []

    def test_marketplace(self, db: ExtensionDB) -> None:
        """Listings round-trip."""
        listing = MarketplaceEntry(
            extension_id="strict",
            name="Strict",
            version="1.0.0",
            publisher="acme",
        )
        db.save_marketplace_entry(listing)
        assert db.list_marketplace() == [listing]


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    """Tests for hashing and id generation."""

    def test_hash_string_and_bytes(self) -> None:
        """Strings and their UTF-8 bytes hash the same."""
        assert compute_hash("abc") == compute_hash(b"abc")
        assert len(compute_hash("abc")) == 64

    def test_hash_dict_key_order(self) -> None:
        """Dict hashing ignores key order."""
        assert compute_hash({"a": 1, "b": 2}) == compute_hash({"b": 2, "a": 1})

    def test_hash_none(self) -> None:
        """None hashes to the empty string."""
        assert compute_hash(None) == ""

    def test_generate_id(self) -> None:
        """IDs are short and unique."""
        ids = {generate_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(len(i) == 8 for i in ids)
