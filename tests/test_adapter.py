"""Tests for SyncAdapter against real git repositories."""

import asyncio
import shutil
import sqlite3
import subprocess
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from lorehub.config import SyncConfig
from lorehub.store import LoreStore
from lorehub.sync import (
    ChangeEvent,
    ChangeLog,
    ChangeTracker,
    SyncAdapter,
    SyncSetupError,
    SyncStateStore,
    VectorClock,
)
from lorehub.sync.adapter import event_path
from lorehub.sync.git import GitRepo

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

WORKSPACE_ID = "ws-team"


def git(*args, cwd=None):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


class Device:
    """One machine with its own databases and working tree."""

    def __init__(self, root, device_id, sync_repo):
        self.device_id = device_id
        self.store = LoreStore(":memory:")
        self.store.connect()
        self.change_log = ChangeLog(":memory:")
        self.change_log.connect()
        self.state_store = SyncStateStore(":memory:")
        self.state_store.connect()

        config = SyncConfig(
            repos_dir=str(root / "repos"),
            author_name=f"Device {device_id}",
            author_email=f"{device_id}@example.com",
        )
        self.tracker = ChangeTracker(config, device_id, self.change_log, self.state_store)
        self.tracker.initialize(self.store)
        self.workspace = self.store.create_workspace(
            "team", sync_enabled=True, sync_repo=sync_repo, auto_sync=False, id=WORKSPACE_ID
        )
        self.adapter: SyncAdapter | None = None

    async def start(self):
        self.adapter = await self.tracker.get_adapter(self.workspace)

    @property
    def clock(self) -> VectorClock:
        return self.state_store.get(WORKSPACE_ID, self.device_id).vector_clock

    async def add_realm(self, track=False):
        realm = await self.store.create_realm("api", "/src/api", track=False)
        await self.store.link_realm_to_workspace(realm.id, WORKSPACE_ID, track=track)
        return realm

    async def close(self):
        await self.tracker.close()
        self.store.close()
        self.change_log.close()
        self.state_store.close()


@pytest.fixture
def remote(tmp_path):
    """Empty bare repository acting as the shared remote."""
    path = tmp_path / "remote.git"
    git("init", "--bare", str(path))
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=path)
    return str(path)


@pytest_asyncio.fixture
async def make_device(tmp_path, remote):
    """Factory for started devices sharing the remote."""
    devices = []

    async def make(device_id, sync_repo=remote):
        device = Device(tmp_path / device_id, device_id, sync_repo)
        await device.start()
        devices.append(device)
        return device

    yield make
    for device in devices:
        await device.close()


async def shared_lore(make_device):
    """Devices A and B holding the same lore, both at clock {A:1, B:1}."""
    a = await make_device("A")
    realm = await a.add_realm()
    lore = await a.store.create_lore(realm.id, "Use UTC")
    assert (await a.adapter.push()).pushed == 1

    b = await make_device("B")
    assert (await b.adapter.pull()).pulled == 1
    await b.store.update_lore(lore.id, {"content": "Use UTC everywhere"})
    assert (await b.adapter.push()).pushed == 1

    assert (await a.adapter.pull()).pulled == 1
    assert a.store.find_lore(lore.id).content == "Use UTC everywhere"
    assert a.clock == VectorClock({"A": 1, "B": 1})
    assert b.clock == VectorClock({"A": 1, "B": 1})
    return a, b, lore


class TestInitialize:
    """Tests for repository setup."""

    @pytest.mark.asyncio
    async def test_creates_manifest_commit(self, make_device):
        """Test a fresh repository gets a manifest and a first commit."""
        device = await make_device("A")

        repo = device.adapter.repo
        assert (repo.path / "manifest.json").exists()
        assert await repo.has_commits()
        assert await repo.current_branch() == "main"

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, make_device):
        """Test repeated initialization keeps the same history."""
        device = await make_device("A")
        head = await device.adapter.repo.head()

        await device.adapter.initialize()

        assert await device.adapter.repo.head() == head

    @pytest.mark.asyncio
    async def test_unreachable_remote_raises_setup_error(self, tmp_path):
        """Test a remote that cannot be cloned is a setup failure."""
        store = LoreStore(":memory:")
        store.connect()
        change_log = ChangeLog(":memory:")
        change_log.connect()
        state_store = SyncStateStore(":memory:")
        state_store.connect()
        workspace = store.create_workspace(
            "team", sync_enabled=True, sync_repo=str(tmp_path / "missing.git")
        )
        adapter = SyncAdapter(
            workspace, store, change_log, state_store, "A", tmp_path / "repos"
        )

        with pytest.raises(SyncSetupError):
            await adapter.initialize()

    @pytest.mark.asyncio
    async def test_non_repository_directory_raises_setup_error(self, tmp_path):
        """Test a non-empty directory in the repository's place is refused."""
        store = LoreStore(":memory:")
        store.connect()
        workspace = store.create_workspace("team", sync_enabled=True, id=WORKSPACE_ID)
        occupied = tmp_path / "repos" / WORKSPACE_ID
        occupied.mkdir(parents=True)
        (occupied / "notes.txt").write_text("not a repository")
        change_log = ChangeLog(":memory:")
        change_log.connect()
        state_store = SyncStateStore(":memory:")
        state_store.connect()
        adapter = SyncAdapter(
            workspace, store, change_log, state_store, "A", tmp_path / "repos"
        )

        with pytest.raises(SyncSetupError):
            await adapter.initialize()


class TestRecordChange:
    """Tests for recording local changes."""

    @pytest.mark.asyncio
    async def test_counter_strictly_increases(self, make_device):
        """Test each recorded change advances this device's counter."""
        device = await make_device("A")

        counters = []
        for index in range(3):
            event = await device.adapter.record_change(
                ChangeEvent("create", "lore", f"lore-{index}", data={"id": f"lore-{index}"})
            )
            counters.append(event.vector_clock["A"])

        assert counters == [1, 2, 3]
        assert device.clock == VectorClock({"A": 3})

    @pytest.mark.asyncio
    async def test_stamps_event(self, make_device):
        """Test recorded events carry id, timestamp, device and workspace."""
        device = await make_device("A")

        event = await device.adapter.record_change(ChangeEvent("delete", "lore", "lore-1"))

        assert event.id
        assert event.timestamp is not None
        assert event.device_id == "A"
        assert event.metadata["workspaceId"] == WORKSPACE_ID
        assert device.change_log.count_unsynced(WORKSPACE_ID) == 1
        assert device.adapter.get_status()["pending_changes"] == 1


class TestPush:
    """Tests for pushing local changes."""

    @pytest.mark.asyncio
    async def test_push_writes_event_files_and_snapshot(self, make_device):
        """Test push commits one file per event and the state snapshot."""
        device = await make_device("A")
        realm = await device.add_realm()
        lore = await device.store.create_lore(realm.id, "Use UTC")

        result = await device.adapter.push()

        assert result.ok
        assert result.pushed == 1
        (event,) = device.change_log.get_events(WORKSPACE_ID)
        repo = device.adapter.repo
        assert (repo.path / event_path(event)).exists()
        assert lore.id in (repo.path / "state" / "lores.json").read_text()
        assert await repo.unpushed_count("main") == 0
        assert device.change_log.count_unsynced(WORKSPACE_ID) == 0
        assert device.adapter.get_status()["last_sync_commit"] == await repo.head()

    @pytest.mark.asyncio
    async def test_second_push_is_noop(self, make_device):
        """Test pushing twice without new changes pushes nothing."""
        device = await make_device("A")
        realm = await device.add_realm()
        await device.store.create_lore(realm.id, "Use UTC")
        await device.adapter.push()
        head = await device.adapter.repo.head()

        result = await device.adapter.push()

        assert result.pushed == 0
        assert result.errors == []
        assert await device.adapter.repo.head() == head

    @pytest.mark.asyncio
    async def test_failed_push_keeps_events_unsynced(self, make_device, remote, tmp_path):
        """Test events stay pending until a push succeeds."""
        device = await make_device("A")
        realm = await device.add_realm()
        await device.store.create_lore(realm.id, "Use UTC")
        moved = tmp_path / "moved.git"
        shutil.move(remote, moved)

        result = await device.adapter.push()

        assert result.pushed == 0
        assert result.errors[0].startswith("Push failed")
        assert device.change_log.count_unsynced(WORKSPACE_ID) == 1

        shutil.move(moved, remote)
        retry = await device.adapter.push()

        assert retry.pushed == 1
        assert device.change_log.count_unsynced(WORKSPACE_ID) == 0

    @pytest.mark.asyncio
    async def test_push_without_remote_commits_locally(self, make_device):
        """Test a workspace without a remote still commits and clears pending."""
        device = await make_device("A", sync_repo=None)
        realm = await device.add_realm()
        await device.store.create_lore(realm.id, "Local only")
        before = await device.adapter.repo.head()

        result = await device.adapter.push()

        assert result.pushed == 1
        assert result.errors == []
        assert await device.adapter.repo.head() != before
        assert device.change_log.count_unsynced(WORKSPACE_ID) == 0


class TestPull:
    """Tests for pulling and replaying remote changes."""

    @pytest.mark.asyncio
    async def test_pull_without_remote(self, make_device):
        """Test pull is a no-op without a remote."""
        device = await make_device("A", sync_repo=None)

        result = await device.adapter.pull()

        assert (result.pulled, result.conflicts, result.errors) == (0, 0, [])

    @pytest.mark.asyncio
    async def test_pull_before_first_push(self, make_device):
        """Test pulling from a remote with no branch yet."""
        device = await make_device("A")

        result = await device.adapter.pull()

        assert (result.pulled, result.conflicts, result.errors) == (0, 0, [])

    @pytest.mark.asyncio
    async def test_end_to_end_fresh_clone(self, make_device):
        """Test a lore pushed by one device appears on a freshly cloned one."""
        dev1 = await make_device("dev1")
        realm = await dev1.add_realm()
        lore = await dev1.store.create_lore(realm.id, "Never store secrets in lore")

        pushed = await dev1.adapter.push()
        assert (pushed.pushed, pushed.errors) == (1, [])

        dev2 = await make_device("dev2")
        pulled = await dev2.adapter.pull()

        assert (pulled.pulled, pulled.conflicts, pulled.errors) == (1, 0, [])
        assert [l.id for l in dev2.store.list_lores()] == [lore.id]
        # The realm came from the remote snapshot
        assert [r.id for r in dev2.store.get_workspace_realms(WORKSPACE_ID)] == [realm.id]
        assert dev2.clock == VectorClock({"dev1": 1})

    @pytest.mark.asyncio
    async def test_pull_is_idempotent(self, make_device):
        """Test pulling again without remote changes applies nothing."""
        a = await make_device("A")
        realm = await a.add_realm()
        await a.store.create_lore(realm.id, "Use UTC")
        await a.adapter.push()
        b = await make_device("B")
        await b.adapter.pull()

        again = await b.adapter.pull()

        assert (again.pulled, again.conflicts, again.errors) == (0, 0, [])
        assert len(b.store.list_lores()) == 1

    @pytest.mark.asyncio
    async def test_realm_and_relation_events_replay(self, make_device):
        """Test realm links and relations travel with their events."""
        a = await make_device("A")
        realm = await a.add_realm(track=True)
        first = await a.store.create_lore(realm.id, "Use UTC")
        second = await a.store.create_lore(realm.id, "Clock skew breaks tokens", type="risk")
        await a.store.create_relation(second.id, first.id, "challenges")
        assert (await a.adapter.push()).pushed == 4

        b = await make_device("B")
        result = await b.adapter.pull()

        assert (result.pulled, result.errors) == (4, [])
        assert b.store.find_relation(second.id, first.id, "challenges") is not None

        await a.store.delete_relation(second.id, first.id, "challenges")
        await a.adapter.push()
        result = await b.adapter.pull()

        assert result.pulled == 1
        assert b.store.list_relations() == []

    @pytest.mark.asyncio
    async def test_failed_apply_is_retried(self, make_device):
        """Test an event that failed to apply is replayed by the next pull."""
        a = await make_device("A")
        realm = await a.add_realm()
        lore = await a.store.create_lore(realm.id, "Use UTC")
        await a.adapter.push()
        b = await make_device("B")

        locked = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))
        with patch.object(b.adapter, "_apply", locked):
            failed = await b.adapter.pull()

        assert (failed.pulled, len(failed.errors)) == (0, 1)
        assert b.clock["A"] == 0
        assert b.store.list_lores() == []

        retry = await b.adapter.pull()

        assert (retry.pulled, retry.errors) == (1, [])
        assert [l.id for l in b.store.list_lores()] == [lore.id]
        assert b.clock == VectorClock({"A": 1})

    @pytest.mark.asyncio
    async def test_operations_never_overlap(self, make_device):
        """Test concurrent pushes and pulls on one workspace run git one at a time."""
        a = await make_device("A")
        realm = await a.add_realm()
        await a.store.create_lore(realm.id, "Use UTC")
        await a.store.create_lore(realm.id, "Store offsets")

        run = GitRepo.run
        running = 0
        peak = 0

        async def tracked(self, *args, **kwargs):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            try:
                await asyncio.sleep(0)
                return await run(self, *args, **kwargs)
            finally:
                running -= 1

        with patch.object(GitRepo, "run", tracked):
            results = await asyncio.gather(
                a.adapter.push(), a.adapter.pull(), a.adapter.push(), a.adapter.pull()
            )

        assert peak == 1
        assert all(result.errors == [] for result in results)
        assert [result.pushed for result in results] == [2, 0, 0, 0]
        assert a.change_log.count_unsynced(WORKSPACE_ID) == 0

    @pytest.mark.asyncio
    async def test_fast_forward(self, make_device):
        """Test a change causally after the local state is applied."""
        a, b, lore = await shared_lore(make_device)

        updated = await a.store.update_lore(lore.id, {"content": "Use UTC, always"})
        (event,) = a.change_log.get_unsynced(WORKSPACE_ID)
        assert event.vector_clock == VectorClock({"A": 2, "B": 1})
        await a.adapter.push()

        result = await b.adapter.pull()

        assert (result.pulled, result.conflicts, result.errors) == (1, 0, [])
        assert b.store.find_lore(lore.id).to_dict() == updated.to_dict()

    @pytest.mark.asyncio
    async def test_concurrent_edits_conflict(self, make_device):
        """Test independent edits of one lore are flagged, not overwritten."""
        a, b, lore = await shared_lore(make_device)

        await a.store.update_lore(lore.id, {"content": "from A"})
        await a.adapter.push()
        await b.store.update_lore(lore.id, {"content": "from B"})
        (local_event,) = b.change_log.get_unsynced(WORKSPACE_ID)
        assert local_event.vector_clock == VectorClock({"A": 1, "B": 2})

        result = await b.adapter.pull()

        assert result.conflicts == 1
        assert result.pulled == 0
        assert b.store.find_lore(lore.id).content == "from B"
        (conflict,) = b.adapter.list_conflicts()
        assert conflict.entity_id == lore.id
        assert conflict.local_data["content"] == "from B"
        assert conflict.remote_data["content"] == "from A"
        assert conflict.remote_clock == VectorClock({"A": 2, "B": 1})
        assert b.adapter.get_status()["open_conflicts"] == 1

    @pytest.mark.asyncio
    async def test_sync_stops_on_conflict(self, make_device):
        """Test sync does not push while conflicts are open."""
        a, b, lore = await shared_lore(make_device)
        await a.store.update_lore(lore.id, {"content": "from A"})
        await a.adapter.push()
        await b.store.update_lore(lore.id, {"content": "from B"})

        result = await b.adapter.sync()

        assert result.conflicts == 1
        assert result.pushed == 0
        assert b.change_log.count_unsynced(WORKSPACE_ID) == 1


class TestResolveConflict:
    """Tests for settling conflicts."""

    async def conflicted(self, make_device):
        a, b, lore = await shared_lore(make_device)
        await a.store.update_lore(lore.id, {"content": "from A"})
        await a.adapter.push()
        await b.store.update_lore(lore.id, {"content": "from B"})
        await b.adapter.pull()
        (conflict,) = b.adapter.list_conflicts()
        return a, b, lore, conflict

    @pytest.mark.asyncio
    async def test_keep_remote(self, make_device):
        """Test keeping the remote side applies it with a dominating clock."""
        a, b, lore, conflict = await self.conflicted(make_device)

        event = await b.adapter.resolve_conflict(conflict.id, keep="remote")

        assert b.store.find_lore(lore.id).content == "from A"
        assert event.vector_clock.dominates(conflict.local_clock)
        assert event.vector_clock.dominates(conflict.remote_clock)
        assert b.adapter.list_conflicts() == []
        (resolved,) = b.adapter.list_conflicts(include_resolved=True)
        assert resolved.resolution == "remote"

    @pytest.mark.asyncio
    async def test_keep_local_converges(self, make_device):
        """Test the other device adopts the kept version without a new conflict."""
        a, b, lore, conflict = await self.conflicted(make_device)

        await b.adapter.resolve_conflict(conflict.id, keep="local")
        assert (await b.adapter.push()).errors == []

        result = await a.adapter.pull()

        assert result.conflicts == 0
        assert result.errors == []
        assert a.store.find_lore(lore.id).content == "from B"

    @pytest.mark.asyncio
    async def test_invalid_requests(self, make_device):
        """Test bad arguments and repeated resolution are rejected."""
        a, b, lore, conflict = await self.conflicted(make_device)

        with pytest.raises(ValueError):
            await b.adapter.resolve_conflict(conflict.id, keep="both")
        with pytest.raises(ValueError):
            await b.adapter.resolve_conflict("missing")

        await b.adapter.resolve_conflict(conflict.id)
        with pytest.raises(ValueError):
            await b.adapter.resolve_conflict(conflict.id)

    @pytest.mark.asyncio
    async def test_relation_type_with_separator(self, make_device):
        """Test relation conflicts use the stored endpoints, not the split key."""
        a = await make_device("A")
        realm = await a.add_realm()
        first = await a.store.create_lore(realm.id, "Use UTC")
        second = await a.store.create_lore(realm.id, "Store offsets")
        await a.store.create_relation(first.id, second.id, "see:also")
        assert (await a.adapter.push()).pushed == 3
        b = await make_device("B")
        assert (await b.adapter.pull()).pulled == 3

        await a.store.delete_relation(first.id, second.id, "see:also")
        await a.adapter.push()
        await b.store.delete_relation(first.id, second.id, "see:also")
        await b.store.create_relation(first.id, second.id, "see:also", strength=0.5)

        result = await b.adapter.pull()

        assert result.conflicts == 1
        (conflict,) = b.adapter.list_conflicts()
        assert conflict.local_data["type"] == "see:also"
        assert conflict.local_data["strength"] == 0.5

        event = await b.adapter.resolve_conflict(conflict.id, keep="remote")

        assert b.store.list_relations() == []
        assert event.operation == "delete"
        assert event.data == {
            "from_lore_id": first.id,
            "to_lore_id": second.id,
            "type": "see:also",
        }
