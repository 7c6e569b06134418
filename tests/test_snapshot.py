"""Tests for deterministic workspace snapshots."""

import json

import pytest

from lorehub.models import WorkspaceFilters
from lorehub.store import LoreStore
from lorehub.sync.snapshot import (
    LORES_FILE,
    RELATIONS_FILE,
    STATE_DIR,
    build_snapshot,
    read_snapshot,
    write_snapshot,
)


@pytest.fixture
def store():
    """Create an in-memory LoreStore for testing."""
    store = LoreStore(":memory:")
    store.connect()
    yield store
    store.close()


async def populate(store):
    """Workspace with one linked and one unlinked realm."""
    workspace = store.create_workspace("team", sync_enabled=True)
    linked = await store.create_realm("api", "/src/api")
    other = await store.create_realm("web", "/src/web")
    await store.link_realm_to_workspace(linked.id, workspace.id)

    decree = await store.create_lore(linked.id, "Use UTC", type="decree", confidence=90)
    risk = await store.create_lore(linked.id, "Clock skew", type="risk", confidence=40)
    await store.create_lore(other.id, "Not in workspace")
    await store.create_relation(risk.id, decree.id, "challenges")
    return workspace, decree, risk


class TestBuildSnapshot:
    """Tests for collecting a workspace's records."""

    @pytest.mark.asyncio
    async def test_only_linked_realms(self, store):
        """Test unlinked realms and their lores are left out."""
        workspace, decree, risk = await populate(store)

        snapshot = build_snapshot(store, workspace)

        assert [r.name for r in snapshot.realms] == ["api"]
        assert {l.id for l in snapshot.lores} == {decree.id, risk.id}
        assert len(snapshot.relations) == 1

    @pytest.mark.asyncio
    async def test_filters_drop_dangling_relations(self, store):
        """Test a relation is exported only when both ends are."""
        workspace, decree, risk = await populate(store)
        workspace = store.update_workspace(
            workspace.id, {"filters": WorkspaceFilters(lore_types=["decree"])}
        )

        snapshot = build_snapshot(store, workspace)

        assert [l.id for l in snapshot.lores] == [decree.id]
        assert snapshot.relations == []

    @pytest.mark.asyncio
    async def test_min_confidence_filter(self, store):
        """Test confidence filtering."""
        workspace, decree, _ = await populate(store)
        workspace = store.update_workspace(
            workspace.id, {"filters": WorkspaceFilters(min_confidence=80)}
        )

        snapshot = build_snapshot(store, workspace)

        assert [l.id for l in snapshot.lores] == [decree.id]


class TestWriteSnapshot:
    """Tests for writing snapshot files."""

    @pytest.mark.asyncio
    async def test_files_are_deterministic(self, store, tmp_path):
        """Test identical state writes byte-identical files."""
        workspace, _, _ = await populate(store)
        snapshot = build_snapshot(store, workspace)

        first = tmp_path / "one"
        second = tmp_path / "two"
        write_snapshot(snapshot, first)
        # Same records in a different order
        snapshot.lores.reverse()
        write_snapshot(snapshot, second)

        for name in (LORES_FILE, RELATIONS_FILE):
            assert (first / STATE_DIR / name).read_bytes() == (second / STATE_DIR / name).read_bytes()

    @pytest.mark.asyncio
    async def test_unchanged_files_not_rewritten(self, store, tmp_path):
        """Test a second export with the same state reports no changes."""
        workspace, _, _ = await populate(store)
        snapshot = build_snapshot(store, workspace)

        assert len(write_snapshot(snapshot, tmp_path)) == 3
        assert write_snapshot(snapshot, tmp_path) == []

    @pytest.mark.asyncio
    async def test_stale_files_removed(self, store, tmp_path):
        """Test leftover files in the state directory are deleted."""
        workspace, _, _ = await populate(store)
        stale = tmp_path / STATE_DIR / "old.json"
        stale.parent.mkdir(parents=True)
        stale.write_text("{}")

        write_snapshot(build_snapshot(store, workspace), tmp_path)

        assert not stale.exists()

    @pytest.mark.asyncio
    async def test_sorted_keys_and_records(self, store, tmp_path):
        """Test records are sorted by id and keys are sorted."""
        workspace, _, _ = await populate(store)
        write_snapshot(build_snapshot(store, workspace), tmp_path)

        text = (tmp_path / STATE_DIR / LORES_FILE).read_text()
        lores = json.loads(text)

        assert [l["id"] for l in lores] == sorted(l["id"] for l in lores)
        assert list(lores[0].keys()) == sorted(lores[0].keys())
        assert text.endswith("\n")

    @pytest.mark.asyncio
    async def test_read_roundtrip_into_fresh_store(self, store, tmp_path):
        """Test an exported snapshot imports into an empty store unchanged."""
        workspace, _, _ = await populate(store)
        snapshot = build_snapshot(store, workspace)
        write_snapshot(snapshot, tmp_path)

        fresh = LoreStore(":memory:")
        fresh.connect()
        fresh.import_data(read_snapshot(tmp_path))

        assert {r.id: r.to_dict() for r in fresh.list_realms()} == {
            r.id: r.to_dict() for r in snapshot.realms
        }
        assert {l.id: l.to_dict() for l in fresh.list_lores()} == {
            l.id: l.to_dict() for l in snapshot.lores
        }
        assert {r.key for r in fresh.list_relations()} == {r.key for r in snapshot.relations}
        fresh.close()
