"""Tests for the LoreStore backing database."""

import sqlite3

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

from lorehub.models import LoreRelation, WorkspaceFilters
from lorehub.store import LoreStore, WorkspaceError
from lorehub.sync.snapshot import Snapshot


@pytest.fixture
def store():
    """Create an in-memory LoreStore for testing."""
    store = LoreStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def tracker():
    """Create a mock change tracker."""
    tracker = MagicMock()
    tracker.record_lore_change = AsyncMock()
    tracker.record_realm_change = AsyncMock()
    tracker.record_relation_change = AsyncMock()
    return tracker


@pytest.fixture
def tracked_store(tracker):
    """Create an in-memory LoreStore wired to a mock tracker."""
    store = LoreStore(":memory:", tracker=tracker)
    store.connect()
    yield store
    store.close()


class TestLoreStoreSchema:
    """Tests for database schema initialization."""

    def test_connect_creates_tables(self):
        """Test that connect() creates all required tables."""
        store = LoreStore(":memory:")
        store.connect()

        tables = store._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()
        table_names = [t[0] for t in tables]

        for name in ("realms", "lores", "lore_relations", "workspaces", "realm_workspaces"):
            assert name in table_names

        store.close()

    def test_connect_is_idempotent(self, store):
        """Test that calling connect() multiple times is safe."""
        store.connect()
        store.connect()

        assert store.get_stats()["realms_count"] == 0


class TestRealmOperations:
    """Tests for realm CRUD."""

    @pytest.mark.asyncio
    async def test_create_and_find(self, store):
        """Test creating a realm and reading it back."""
        realm = await store.create_realm("api", "/src/api", provinces=["auth"])

        found = store.find_realm(realm.id)

        assert found.name == "api"
        assert found.provinces == ["auth"]
        assert store.find_realm_by_path("/src/api").id == realm.id

    @pytest.mark.asyncio
    async def test_path_is_unique(self, store):
        """Test two realms cannot share a path."""
        await store.create_realm("api", "/src/api")

        with pytest.raises(sqlite3.IntegrityError):
            await store.create_realm("api-2", "/src/api")

    @pytest.mark.asyncio
    async def test_delete_cascades(self, store):
        """Test realm deletion removes lores, relations and workspace links."""
        workspace = store.create_workspace("main")
        realm = await store.create_realm("api", "/src/api")
        await store.link_realm_to_workspace(realm.id, workspace.id)
        a = await store.create_lore(realm.id, "a")
        b = await store.create_lore(realm.id, "b")
        await store.create_relation(a.id, b.id, "supports")

        assert await store.delete_realm(realm.id) is True

        assert store.list_lores() == []
        assert store.list_relations() == []
        assert store.get_workspace_realms(workspace.id) == []
        assert await store.delete_realm(realm.id) is False

    @pytest.mark.asyncio
    async def test_tracked_create_notifies(self, tracked_store, tracker):
        """Test realm creation is reported to the tracker."""
        realm = await tracked_store.create_realm("api", "/src/api")

        tracker.record_realm_change.assert_awaited_once()
        args = tracker.record_realm_change.await_args.args
        assert args[0] == "create"
        assert args[1] == realm.id

    @pytest.mark.asyncio
    async def test_untracked_create_is_silent(self, tracked_store, tracker):
        """Test track=False skips the tracker."""
        await tracked_store.create_realm("api", "/src/api", track=False)

        tracker.record_realm_change.assert_not_awaited()


class TestLoreOperations:
    """Tests for lore CRUD."""

    @pytest_asyncio.fixture
    async def realm(self, store):
        """Create a realm for lore tests."""
        return await store.create_realm("api", "/src/api", track=False)

    @pytest.mark.asyncio
    async def test_create_defaults(self, store, realm):
        """Test lore defaults."""
        lore = await store.create_lore(realm.id, "Use UTC everywhere", type="decree")

        found = store.find_lore(lore.id)

        assert found.content == "Use UTC everywhere"
        assert found.type == "decree"
        assert found.status == "living"
        assert found.confidence == 80
        assert found.origin["type"] == "manual"

    @pytest.mark.asyncio
    async def test_update_keeps_given_timestamp(self, store, realm):
        """Test replayed updates keep the remote updated_at."""
        lore = await store.create_lore(realm.id, "before")
        stamp = "2030-01-01T00:00:00+00:00"

        updated = await store.update_lore(
            lore.id, {"content": "after", "unknown": 1, "updated_at": stamp}
        )

        assert updated.content == "after"
        assert updated.updated_at.isoformat() == stamp

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self, store):
        """Test updating an unknown lore."""
        assert await store.update_lore("missing", {"content": "x"}) is None

    @pytest.mark.asyncio
    async def test_archive_is_soft_delete(self, store, realm):
        """Test archive keeps the row with archived status."""
        lore = await store.create_lore(realm.id, "old")

        assert await store.archive_lore(lore.id) is True
        assert store.find_lore(lore.id).status == "archived"

    @pytest.mark.asyncio
    async def test_delete(self, store, realm):
        """Test hard delete."""
        lore = await store.create_lore(realm.id, "gone")

        assert await store.delete_lore(lore.id) is True
        assert store.find_lore(lore.id) is None
        assert await store.delete_lore(lore.id) is False

    @pytest.mark.asyncio
    async def test_tracked_mutations_pass_realm(self, tracked_store, tracker):
        """Test lore events carry the owning realm for routing."""
        realm = await tracked_store.create_realm("api", "/src/api", track=False)
        lore = await tracked_store.create_lore(realm.id, "x")
        await tracked_store.update_lore(lore.id, {"content": "y"})
        await tracked_store.delete_lore(lore.id)

        calls = tracker.record_lore_change.await_args_list
        assert [c.args[0] for c in calls] == ["create", "update", "delete"]
        assert all(c.args[2] == realm.id for c in calls)


class TestRelationOperations:
    """Tests for relations."""

    @pytest.mark.asyncio
    async def test_relation_roundtrip(self, store):
        """Test creating, finding and deleting a relation."""
        realm = await store.create_realm("api", "/src/api")
        a = await store.create_lore(realm.id, "a")
        b = await store.create_lore(realm.id, "b")

        relation = await store.create_relation(a.id, b.id, "depends_on", strength=0.5)

        assert relation.key == f"{a.id}:{b.id}:depends_on"
        assert store.find_relation(a.id, b.id, "depends_on").strength == 0.5
        assert len(store.list_relations_by_lore(b.id)) == 1
        assert await store.delete_relation(a.id, b.id, "depends_on") is True
        assert store.list_relations() == []

    def test_self_relation_rejected(self):
        """Test a lore cannot relate to itself."""
        with pytest.raises(ValueError):
            LoreRelation(from_lore_id="a", to_lore_id="a", type="supports")


class TestWorkspaceOperations:
    """Tests for workspaces and realm membership."""

    def test_first_workspace_is_default(self, store):
        """Test the first workspace becomes the default."""
        first = store.create_workspace("first")
        second = store.create_workspace("second")

        assert first.is_default
        assert not second.is_default
        assert store.get_default_workspace().id == first.id

    def test_defaults(self, store):
        """Test workspace field defaults."""
        workspace = store.create_workspace("main")

        assert workspace.sync_enabled is False
        assert workspace.sync_branch == "main"
        assert workspace.auto_sync is True
        assert workspace.sync_interval == 300
        assert workspace.filters is None

    def test_name_unique(self, store):
        """Test duplicate names are rejected."""
        store.create_workspace("main")

        with pytest.raises(WorkspaceError):
            store.create_workspace("main")

    def test_switch_default(self, store):
        """Test setting a new default clears the old one."""
        first = store.create_workspace("first")
        second = store.create_workspace("second")

        store.update_workspace(second.id, {"is_default": True})

        assert store.get_default_workspace().id == second.id
        assert not store.find_workspace(first.id).is_default

    def test_update_filters(self, store):
        """Test filters are stored as structured values."""
        workspace = store.create_workspace("main")

        updated = store.update_workspace(
            workspace.id,
            {"filters": WorkspaceFilters(lore_types=["decree"], min_confidence=50)},
        )

        assert updated.filters.lore_types == ["decree"]
        assert updated.filters.min_confidence == 50

    def test_delete_default_promotes_another(self, store):
        """Test deleting the default workspace keeps one default."""
        first = store.create_workspace("first")
        second = store.create_workspace("second")

        store.delete_workspace(first.id)

        assert store.get_default_workspace().id == second.id

    def test_ensure_default_workspace(self, store):
        """Test a default workspace is created on demand."""
        workspace = store.ensure_default_workspace()

        assert workspace.is_default
        assert store.ensure_default_workspace().id == workspace.id

    @pytest.mark.asyncio
    async def test_link_realm_records_create(self, tracked_store, tracker):
        """Test linking a realm announces it to the workspace."""
        workspace = tracked_store.create_workspace("main", sync_enabled=True)
        realm = await tracked_store.create_realm("api", "/src/api", track=False)

        await tracked_store.link_realm_to_workspace(realm.id, workspace.id)
        await tracked_store.link_realm_to_workspace(realm.id, workspace.id)

        tracker.record_realm_change.assert_awaited_once()
        assert tracker.record_realm_change.await_args.kwargs["workspace_id"] == workspace.id
        assert [w.id for w in tracked_store.get_realm_workspaces(realm.id)] == [workspace.id]

    @pytest.mark.asyncio
    async def test_link_unknown_realm(self, store):
        """Test linking requires both sides to exist."""
        workspace = store.create_workspace("main")

        with pytest.raises(WorkspaceError):
            await store.link_realm_to_workspace("missing", workspace.id)


class TestImportExport:
    """Tests for snapshot import and export."""

    @pytest.mark.asyncio
    async def test_export_import_roundtrip(self, store):
        """Test exporting and importing into a fresh store gives the same records."""
        realm = await store.create_realm("api", "/src/api")
        a = await store.create_lore(realm.id, "a", sigils=["db"])
        b = await store.create_lore(realm.id, "b", why="because")
        await store.create_relation(a.id, b.id, "challenges", metadata={"note": "x"})

        snapshot = store.export_data()

        fresh = LoreStore(":memory:")
        fresh.connect()
        counts = fresh.import_data(snapshot)

        assert counts == {"realms": 1, "lores": 2, "relations": 1}
        assert fresh.export_data() == snapshot
        fresh.close()

    @pytest.mark.asyncio
    async def test_import_never_tracks(self, tracked_store, tracker):
        """Test imports bypass the tracker."""
        source = LoreStore(":memory:")
        source.connect()
        realm = await source.create_realm("api", "/src/api")
        await source.create_lore(realm.id, "a")

        tracked_store.import_data(source.export_data())

        tracker.record_realm_change.assert_not_awaited()
        tracker.record_lore_change.assert_not_awaited()
        assert len(tracked_store.list_lores()) == 1
        source.close()

    @pytest.mark.asyncio
    async def test_merge_mode_skips_existing(self, store):
        """Test merge import keeps existing records."""
        realm = await store.create_realm("api", "/src/api")
        lore = await store.create_lore(realm.id, "local")
        snapshot = store.export_data()
        await store.update_lore(lore.id, {"content": "changed"})

        counts = store.import_data(snapshot, mode="merge")

        assert counts == {"realms": 0, "lores": 0, "relations": 0}
        assert store.find_lore(lore.id).content == "changed"

    def test_unknown_mode(self, store):
        """Test invalid import mode."""
        with pytest.raises(ValueError):
            store.import_data(Snapshot(), mode="append")
