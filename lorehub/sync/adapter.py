"""Per-workspace synchronization over a git repository.

The adapter owns one workspace's working tree under ``<repos_dir>/<workspace_id>``.
Local mutations are recorded into the change log; ``push`` materialises them as
one file per event under ``changes/<device_id>/`` together with a deterministic
snapshot under ``state/``, commits and pushes. ``pull`` merges the remote
branch and replays the other devices' change files, comparing vector clocks
per entity to tell fast-forwards from concurrent edits.
"""

import asyncio
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator

from ..models import Lore, LoreRelation, Realm, Workspace, utcnow
from ..store.lore_store import LoreStore, WorkspaceError
from .change_log import ChangeEvent, ChangeLog, new_event_id
from .git import GitError, GitRepo
from .snapshot import REALMS_FILE, STATE_DIR, build_snapshot, dump_json, write_snapshot
from .state import SyncConflict, SyncState, SyncStateStore, new_conflict_id
from .vector_clock import ClockOrder, VectorClock

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
CHANGES_DIR = "changes"
PROTOCOL = "git-v1"
MANIFEST_VERSION = "1.0.0"

REMOTE_NAME = "origin"


class AdapterState(Enum):
    """Lifecycle of a SyncAdapter."""

    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RECORDING = "recording"
    EXPORTING = "exporting"
    PUSHING = "pushing"
    PULLING = "pulling"


class SyncSetupError(Exception):
    """The local sync repository could not be created or prepared."""


@dataclass
class SyncResult:
    """Outcome of a push, pull or sync."""

    pulled: int = 0
    pushed: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "pulled": self.pulled,
            "pushed": self.pushed,
            "conflicts": self.conflicts,
            "errors": list(self.errors),
            "timestamp": self.timestamp.isoformat(),
        }


def event_path(event: ChangeEvent) -> str:
    """Repository-relative path of the file holding ``event``."""
    return f"{CHANGES_DIR}/{event.device_id}/{event.counter:010d}-{event.id}.json"


def _counter_from_name(name: str) -> int | None:
    prefix = name.split("-", 1)[0]
    return int(prefix) if prefix.isdigit() else None


RELATION_FIELDS = ("from_lore_id", "to_lore_id", "type")


def _relation_endpoints(parts: dict[str, Any] | None) -> tuple[str, str, str] | None:
    if not parts or any(not parts.get(field) for field in RELATION_FIELDS):
        return None
    return tuple(parts[field] for field in RELATION_FIELDS)


def _superseded(events: list[ChangeEvent]) -> set[str]:
    """Ids of events dominated by another event on the same entity."""
    by_entity: dict[tuple[str, str], list[ChangeEvent]] = {}
    for event in events:
        by_entity.setdefault(event.entity_key, []).append(event)

    ids = set()
    for group in by_entity.values():
        for event in group:
            if any(other.vector_clock.dominates(event.vector_clock) for other in group):
                ids.add(event.id)
    return ids


def _below_failures(clock: VectorClock, failed: list[ChangeEvent]) -> VectorClock:
    """``clock`` held under the counter of each device's first failed event."""
    counters = clock.to_dict()
    for event in failed:
        limit = event.counter - 1
        if counters.get(event.device_id, 0) > limit:
            counters[event.device_id] = limit
    return VectorClock(counters)


class SyncAdapter:
    """Synchronizes one workspace against one remote git repository.

    Push and pull share a lock so at most one git operation runs on the
    working tree at a time. Recording never touches git and never waits on
    that lock.
    """

    def __init__(
        self,
        workspace: Workspace,
        store: LoreStore,
        change_log: ChangeLog,
        state_store: SyncStateStore,
        device_id: str,
        repos_dir: str | Path,
        author_name: str | None = None,
        author_email: str | None = None,
    ):
        """Initialize the adapter.

        Args:
            workspace: Workspace to synchronize.
            store: Backing store, borrowed for export and replay.
            change_log: Log of local and merged-in events.
            state_store: SyncState, entity clock and conflict persistence.
            device_id: Identifier of this machine.
            repos_dir: Directory holding one working tree per workspace.
            author_name: Git author name when the repository has none.
            author_email: Git author email when the repository has none.
        """
        self.workspace = workspace
        self.store = store
        self.change_log = change_log
        self.state_store = state_store
        self.device_id = device_id
        self.repo = GitRepo(Path(repos_dir).expanduser() / workspace.id)
        self.author_name = author_name or f"lorehub {device_id[:8]}"
        self.author_email = author_email or f"{device_id}@lorehub.local"

        self.state = AdapterState.UNINITIALIZED
        self.sync_state: SyncState | None = None
        self._lock = asyncio.Lock()
        self._consecutive_failures = 0

    @property
    def remote(self) -> str | None:
        return self.workspace.sync_repo

    @property
    def branch(self) -> str:
        return self.workspace.sync_branch or "main"

    @property
    def remote_ref(self) -> str:
        return f"refs/remotes/{REMOTE_NAME}/{self.branch}"

    def _refresh_workspace(self) -> Workspace:
        # Filters, remote and branch may have been edited since construction
        current = self.store.find_workspace(self.workspace.id)
        if current is not None:
            self.workspace = current
        return self.workspace

    @asynccontextmanager
    async def _operation(self, state: AdapterState) -> AsyncIterator[None]:
        async with self._lock:
            self.state = state
            try:
                yield
            finally:
                self.state = AdapterState.INITIALIZED

    # ==================== Setup ====================

    async def initialize(self) -> None:
        """Prepare the working tree and load this device's SyncState.

        Safe to call repeatedly.

        Raises:
            SyncSetupError: If the repository cannot be cloned or created.
        """
        if self.state is not AdapterState.UNINITIALIZED:
            return

        try:
            await self._prepare_repository()
        except (GitError, OSError) as e:
            raise SyncSetupError(
                f"Cannot set up sync repository for workspace '{self.workspace.name}' "
                f"at {self.repo.path}: {e}"
            ) from e

        self.sync_state = self.state_store.load_or_create(self.workspace.id, self.device_id)
        self.state = AdapterState.INITIALIZED
        logger.info(
            f"Sync adapter ready for workspace '{self.workspace.name}' "
            f"(branch={self.branch}, remote={self.remote or 'none'})"
        )

    async def _prepare_repository(self) -> None:
        path = self.repo.path
        if not self.repo.exists():
            if path.exists() and any(path.iterdir()):
                raise SyncSetupError(f"{path} exists and is not a git repository")
            if self.remote:
                logger.info(f"Cloning {self.remote} into {path}")
                await GitRepo.clone(self.remote, path)
            else:
                await self.repo.init(self.branch)

        if self.remote:
            await self.repo.set_remote(self.remote, REMOTE_NAME)

        if await self.repo.get_config("user.name") is None:
            await self.repo.set_config("user.name", self.author_name)
        if await self.repo.get_config("user.email") is None:
            await self.repo.set_config("user.email", self.author_email)

        await self.repo.checkout_branch(self.branch, REMOTE_NAME)

        if not await self.repo.has_commits():
            manifest = {
                "version": MANIFEST_VERSION,
                "protocol": PROTOCOL,
                "workspace_id": self.workspace.id,
                "workspace_name": self.workspace.name,
                "created_by": self.device_id,
            }
            (path / MANIFEST_FILE).write_text(dump_json(manifest), encoding="utf-8")
            await self.repo.commit(f"Initialize lorehub workspace {self.workspace.name}")

    async def _ensure_initialized(self) -> SyncState:
        if self.state is AdapterState.UNINITIALIZED:
            await self.initialize()
        return self.sync_state

    # ==================== Recording ====================

    async def record_change(self, change: ChangeEvent) -> ChangeEvent:
        """Stamp a change and append it to the local log.

        The device's own counter is advanced and the event carries the clock
        right after that increment. Nothing is written to git here.
        """
        state = await self._ensure_initialized()
        previous = self.state
        self.state = AdapterState.RECORDING
        try:
            clock = state.vector_clock.increment(self.device_id)
            change.id = change.id or new_event_id()
            change.timestamp = utcnow()
            change.device_id = self.device_id
            change.vector_clock = clock
            change.metadata = {**change.metadata, "workspaceId": self.workspace.id}

            self.change_log.append(self.workspace.id, change)
            self.state_store.set_entity_clock(
                self.workspace.id, change.entity, change.entity_id, clock, change.id
            )
            state.vector_clock = clock
            state.pending_changes += 1
            self.state_store.save(state)
        finally:
            self.state = previous

        return change

    # ==================== Export ====================

    async def export_workspace_data(self) -> list[Path]:
        """Write the workspace snapshot into the working tree.

        Returns:
            Snapshot files that changed.
        """
        await self._ensure_initialized()
        async with self._operation(AdapterState.EXPORTING):
            return self._export()

    def _export(self) -> list[Path]:
        workspace = self._refresh_workspace()
        snapshot = build_snapshot(self.store, workspace)
        written = write_snapshot(snapshot, self.repo.path)
        logger.debug(
            f"Exported {len(snapshot.realms)} realms, {len(snapshot.lores)} lores, "
            f"{len(snapshot.relations)} relations ({len(written)} files changed)"
        )
        return written

    def _write_event_files(self, events: list[ChangeEvent]) -> None:
        for event in events:
            path = self.repo.path / event_path(event)
            text = dump_json(event.to_dict())
            if path.exists() and path.read_text(encoding="utf-8") == text:
                continue
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")

    # ==================== Push ====================

    async def push(self) -> SyncResult:
        """Commit pending events and the snapshot, then push them.

        Events are marked synced only after the push succeeds, so a failed
        push leaves everything in place for the next attempt.
        """
        state = await self._ensure_initialized()
        result = SyncResult()

        async with self._operation(AdapterState.PUSHING):
            self._refresh_workspace()
            events = self.change_log.get_unsynced(self.workspace.id)

            try:
                self._write_event_files(events)
                self._export()
                commit = await self.repo.commit(self._commit_message(events))
                if commit:
                    logger.debug(f"Committed {commit[:12]} with {len(events)} events")

                if self.remote:
                    await self.repo.set_remote(self.remote, REMOTE_NAME)
                    if await self.repo.unpushed_count(self.branch, REMOTE_NAME) > 0:
                        await self.repo.push(self.branch, REMOTE_NAME)
                        logger.info(f"Pushed {len(events)} events to {self.remote} ({self.branch})")
            except (GitError, OSError) as e:
                logger.warning(f"Push failed for workspace '{self.workspace.name}': {e}")
                result.errors.append(f"Push failed: {e}")
                self._consecutive_failures += 1
                return result

            self.change_log.mark_synced([event.id for event in events])
            state.pending_changes = self.change_log.count_unsynced(self.workspace.id)
            state.last_sync_at = utcnow()
            state.last_sync_commit = await self.repo.head()
            self.state_store.save(state)

            result.pushed = len(events)
            self._consecutive_failures = 0
        return result

    def _commit_message(self, events: list[ChangeEvent]) -> str:
        if not events:
            return f"Update snapshot from {self.device_id[:8]}"
        noun = "change" if len(events) == 1 else "changes"
        return f"Sync {len(events)} {noun} from {self.device_id[:8]}"

    # ==================== Pull ====================

    async def pull(self) -> SyncResult:
        """Fetch and merge the remote branch, then replay other devices' events.

        Returns zeros when no remote is configured or the remote branch does
        not exist yet.
        """
        await self._ensure_initialized()
        result = SyncResult()
        self._refresh_workspace()
        if not self.remote:
            return result

        async with self._operation(AdapterState.PULLING):
            try:
                await self._pull(result)
            except GitError as e:
                logger.warning(f"Pull failed for workspace '{self.workspace.name}': {e}")
                result.errors.append(f"Pull failed: {e}")

        if result.errors:
            self._consecutive_failures += 1
        else:
            self._consecutive_failures = 0
        return result

    async def _pull(self, result: SyncResult) -> None:
        state = self.sync_state
        await self.repo.set_remote(self.remote, REMOTE_NAME)

        if not await self.repo.remote_has_branch(self.branch, REMOTE_NAME):
            logger.info(f"Remote branch {self.branch} does not exist yet, nothing to pull")
            return

        await self.repo.fetch(self.branch, REMOTE_NAME)

        if state.last_sync_commit and await self.repo.is_ancestor(
            self.remote_ref, state.last_sync_commit
        ):
            # Events that failed to apply last time are still replayed
            logger.info(f"Workspace '{self.workspace.name}' already up to date")
        elif not await self._merge_remote(result):
            return

        await self._replay(result)

        state.last_sync_commit = await self.repo.head()
        state.last_sync_at = utcnow()
        self.state_store.save(state)

        logger.info(
            f"Pulled {result.pulled} events into '{self.workspace.name}' "
            f"({result.conflicts} conflicts, {len(result.errors)} errors)"
        )

    async def _merge_remote(self, result: SyncResult) -> bool:
        """Bring the remote branch into the local one.

        Conflicting paths keep the local side; ``state/`` always keeps the
        local side since the next push re-exports it.
        """
        # Everything in the working tree is regenerated from the databases
        await self.repo.discard_changes()

        head = await self.repo.head()
        if await self.repo.is_ancestor(self.remote_ref, head):
            return True
        if await self.repo.is_ancestor(head, self.remote_ref):
            await self.repo.merge_ff_only(self.remote_ref)
            return True

        merge = await self.repo.merge_no_commit(self.remote_ref)
        if not merge.ok and not await self.repo.rev_parse("MERGE_HEAD"):
            result.errors.append(f"Pull failed: {merge.stderr.strip() or merge.stdout.strip()}")
            return False

        for path in await self.repo.unmerged_paths():
            ref = "HEAD" if await self.repo.path_in_ref("HEAD", path) else self.remote_ref
            await self.repo.checkout_paths(ref, path)

        unresolved = await self.repo.unmerged_paths()
        if unresolved:
            await self.repo.abort_merge()
            result.errors.append(f"Pull failed: unresolved merge conflicts in {', '.join(unresolved)}")
            return False

        if await self.repo.path_in_ref("HEAD", STATE_DIR):
            await self.repo.checkout_paths("HEAD", STATE_DIR)

        await self.repo.run(
            "commit", "--no-verify", "-m", f"Merge {REMOTE_NAME}/{self.branch} into {self.branch}"
        )
        return True

    def _read_remote_events(self, clock: VectorClock, result: SyncResult) -> list[ChangeEvent]:
        """Change files of other devices not yet covered by ``clock``."""
        changes_dir = self.repo.path / CHANGES_DIR
        if not changes_dir.is_dir():
            return []

        events = []
        for device_dir in sorted(changes_dir.iterdir()):
            if not device_dir.is_dir() or device_dir.name == self.device_id:
                continue
            seen = clock[device_dir.name]
            for path in sorted(device_dir.glob("*.json")):
                counter = _counter_from_name(path.name)
                if counter is None or counter <= seen:
                    continue
                try:
                    events.append(ChangeEvent.from_dict(json.loads(path.read_text(encoding="utf-8"))))
                except (OSError, ValueError, KeyError) as e:
                    logger.warning(f"Unreadable change file {path}: {e}")
                    result.errors.append(f"Unreadable change file {path.name}: {e}")
        return events

    async def _replay(self, result: SyncResult) -> None:
        """Apply new remote events, leaving failed ones to be read again."""
        state = self.sync_state
        events = self._read_remote_events(state.vector_clock, result)
        fresh = self.change_log.merge(self.workspace.id, events)
        fresh.sort(
            key=lambda e: (e.vector_clock.total(), e.timestamp or utcnow(), e.id)
        )

        superseded = _superseded(fresh)
        seen = VectorClock()
        failed: list[ChangeEvent] = []
        for event in fresh:
            try:
                await self._replay_event(event, result, superseded=event.id in superseded)
            except (sqlite3.Error, WorkspaceError, ValueError, KeyError) as e:
                logger.warning(f"Failed to apply {event.id}: {e}")
                result.errors.append(
                    f"Failed to apply {event.operation} {event.entity} {event.entity_id}: {e}"
                )
                failed.append(event)
                continue
            seen = seen.merge(event.vector_clock)

        # Covers skipped and conflicting events too, so they are not read again
        state.vector_clock = state.vector_clock.merge(_below_failures(seen, failed))
        self.state_store.save(state)
        self.change_log.forget([event.id for event in failed])

    async def _replay_event(
        self, event: ChangeEvent, result: SyncResult, superseded: bool = False
    ) -> None:
        local_clock, local_event_id = self.state_store.get_entity_clock(
            self.workspace.id, event.entity, event.entity_id
        )
        order = event.vector_clock.compare(local_clock)

        if order is ClockOrder.CONCURRENT and superseded:
            # A later event in this batch already settles the entity
            logger.debug(f"Skipping superseded event {event.id}")
        elif order is ClockOrder.AFTER:
            await self._apply(event)
            self.state_store.set_entity_clock(
                self.workspace.id, event.entity, event.entity_id, event.vector_clock, event.id
            )
            result.pulled += 1
        elif order is ClockOrder.CONCURRENT:
            conflict = SyncConflict(
                id=new_conflict_id(),
                workspace_id=self.workspace.id,
                entity=event.entity,
                entity_id=event.entity_id,
                local_event_id=local_event_id,
                local_clock=local_clock,
                local_data=self._current_data(
                    event.entity, event.entity_id, event.data or event.metadata
                ),
                remote_event_id=event.id,
                remote_device_id=event.device_id,
                remote_operation=event.operation,
                remote_clock=event.vector_clock,
                remote_data=event.data,
            )
            if self.state_store.add_conflict(conflict):
                logger.warning(
                    f"Conflict on {event.entity} {event.entity_id}: "
                    f"local {local_clock.to_dict()} vs remote {event.vector_clock.to_dict()}"
                )
                result.conflicts += 1
        else:
            logger.debug(f"Skipping stale event {event.id} ({order.value})")

    # ==================== Applying remote events ====================

    async def _apply(self, event: ChangeEvent) -> None:
        if event.entity == "realm":
            await self._apply_realm(event)
        elif event.entity == "lore":
            await self._apply_lore(event)
        else:
            await self._apply_relation(event)

    async def _apply_realm(self, event: ChangeEvent) -> None:
        if event.operation == "delete":
            await self.store.delete_realm(event.entity_id, track=False)
            return
        if event.operation == "archive":
            logger.debug(f"Ignoring archive of realm {event.entity_id}")
            return

        data = event.data or {}
        if self.store.find_realm(event.entity_id):
            await self.store.update_realm(event.entity_id, data, track=False)
        else:
            await self.store.put_realm(Realm.from_dict(data), track=False)
        await self.store.link_realm_to_workspace(event.entity_id, self.workspace.id, track=False)

    async def _apply_lore(self, event: ChangeEvent) -> None:
        if event.operation == "delete":
            await self.store.delete_lore(event.entity_id, track=False)
            return
        if event.operation == "archive":
            await self.store.archive_lore(event.entity_id, track=False)
            return

        data = event.data or {}
        if self.store.find_lore(event.entity_id):
            await self.store.update_lore(event.entity_id, data, track=False)
            return

        lore = Lore.from_dict(data)
        await self._ensure_realm(lore.realm_id)
        await self.store.put_lore(lore, track=False)

    async def _ensure_realm(self, realm_id: str) -> None:
        """Make a lore's realm exist locally, taking it from the remote snapshot."""
        if self.store.find_realm(realm_id):
            return

        text = await self.repo.show_file(self.remote_ref, f"{STATE_DIR}/{REALMS_FILE}")
        if text is None and (self.repo.path / STATE_DIR / REALMS_FILE).exists():
            text = (self.repo.path / STATE_DIR / REALMS_FILE).read_text(encoding="utf-8")

        for data in json.loads(text) if text else []:
            if data.get("id") == realm_id:
                await self.store.put_realm(Realm.from_dict(data), track=False)
                await self.store.link_realm_to_workspace(realm_id, self.workspace.id, track=False)
                return

        raise WorkspaceError(f"Realm {realm_id} not found locally or in the remote snapshot")

    async def _apply_relation(self, event: ChangeEvent) -> None:
        parts = event.data or event.metadata
        from_id, to_id, rel_type = parts["from_lore_id"], parts["to_lore_id"], parts["type"]

        if event.operation in ("delete", "archive"):
            await self.store.delete_relation(from_id, to_id, rel_type, track=False)
            return

        if self.store.find_relation(from_id, to_id, rel_type):
            await self.store.delete_relation(from_id, to_id, rel_type, track=False)
        await self.store.put_relation(LoreRelation.from_dict(parts), track=False)

    def _current_data(
        self, entity: str, entity_id: str, parts: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Local version of an entity as stored right now.

        Relations are looked up by the endpoints in ``parts``, since a relation
        type may itself contain the key separator.
        """
        if entity == "lore":
            lore = self.store.find_lore(entity_id)
            return lore.to_dict() if lore else None
        if entity == "realm":
            realm = self.store.find_realm(entity_id)
            return realm.to_dict() if realm else None

        endpoints = _relation_endpoints(parts)
        if endpoints is None:
            return None
        relation = self.store.find_relation(*endpoints)
        return relation.to_dict() if relation else None

    # ==================== Conflicts ====================

    def list_conflicts(self, include_resolved: bool = False) -> list[SyncConflict]:
        return self.state_store.list_conflicts(self.workspace.id, include_resolved)

    async def resolve_conflict(self, conflict_id: str, keep: str = "local") -> ChangeEvent:
        """Settle a conflict by keeping one side.

        A new event is recorded whose clock dominates both versions, so every
        device that pulls it converges on the chosen one.

        Args:
            conflict_id: Conflict to resolve.
            keep: "local" keeps the current local state; "remote" applies the
                remote version first.

        Returns:
            The recorded resolution event.
        """
        if keep not in ("local", "remote"):
            raise ValueError(f"keep must be 'local' or 'remote', not {keep!r}")

        state = await self._ensure_initialized()
        conflict = self.state_store.get_conflict(conflict_id)
        if conflict is None or conflict.workspace_id != self.workspace.id:
            raise ValueError(f"Conflict {conflict_id} not found in workspace '{self.workspace.name}'")
        if conflict.is_resolved:
            raise ValueError(f"Conflict {conflict_id} is already resolved ({conflict.resolution})")

        async with self._lock:
            if keep == "remote":
                remote_event = self.change_log.get(conflict.remote_event_id)
                if remote_event is None:
                    raise ValueError(f"Remote event {conflict.remote_event_id} is missing from the log")
                await self._apply(remote_event)

            parts = conflict.remote_data or conflict.local_data
            current = self._current_data(conflict.entity, conflict.entity_id, parts)
            metadata: dict[str, Any] = {"resolvesConflict": conflict.id}
            if conflict.entity == "lore":
                realm_id = (current or conflict.local_data or conflict.remote_data or {}).get("realm_id")
                if realm_id:
                    metadata["realmId"] = realm_id

            data = current
            if data is None and conflict.entity == "relation":
                endpoints = _relation_endpoints(parts)
                if endpoints is None:
                    raise ValueError(f"Conflict {conflict.id} does not record the relation endpoints")
                data = dict(zip(RELATION_FIELDS, endpoints))

            state.vector_clock = state.vector_clock.merge(conflict.remote_clock)
            event = await self.record_change(
                ChangeEvent(
                    operation="update" if current is not None else "delete",
                    entity=conflict.entity,
                    entity_id=conflict.entity_id,
                    data=data,
                    metadata=metadata,
                )
            )
            self.state_store.resolve_conflict(conflict.id, keep)

        logger.info(f"Resolved conflict {conflict.id} on {conflict.entity} {conflict.entity_id} keeping {keep}")
        return event

    # ==================== Sync ====================

    async def sync(self) -> SyncResult:
        """Pull, then push unless the pull failed or found conflicts."""
        pulled = await self.pull()
        if pulled.errors or pulled.conflicts:
            return pulled

        pushed = await self.push()
        return SyncResult(
            pulled=pulled.pulled,
            pushed=pushed.pushed,
            conflicts=0,
            errors=pushed.errors,
        )

    async def sync_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run sync periodically until ``stop_event`` is set.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop for '{self.workspace.name}' with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            try:
                result = await self.sync()
                logger.info(
                    f"Sync: pulled={result.pulled}, pushed={result.pushed}, "
                    f"conflicts={result.conflicts}, errors={len(result.errors)}"
                )
                for error in result.errors:
                    logger.warning(error)
            except Exception as e:
                self._consecutive_failures += 1
                logger.error(f"Sync loop error: {e}", exc_info=True)

            # Back off on consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(interval_seconds * (2 ** self._consecutive_failures), 3600)
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    # ==================== Status ====================

    def get_status(self) -> dict[str, Any]:
        """Summary of this workspace's sync state on this device."""
        workspace = self._refresh_workspace()
        state = self.sync_state or self.state_store.get(workspace.id, self.device_id)
        return {
            "workspace": {"id": workspace.id, "name": workspace.name},
            "remote": workspace.sync_repo,
            "branch": self.branch,
            "device_id": self.device_id,
            "repo_path": str(self.repo.path),
            "adapter_state": self.state.value,
            "vector_clock": state.vector_clock.to_dict() if state else {},
            "pending_changes": state.pending_changes if state else 0,
            "last_sync_at": (
                state.last_sync_at.isoformat() if state and state.last_sync_at else None
            ),
            "last_sync_commit": state.last_sync_commit if state else None,
            "open_conflicts": self.state_store.count_open_conflicts(workspace.id),
            "log": self.change_log.get_stats(workspace.id),
        }


__all__ = [
    "AdapterState",
    "SyncAdapter",
    "SyncResult",
    "SyncSetupError",
    "event_path",
]
