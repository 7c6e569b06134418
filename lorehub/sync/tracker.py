"""Dispatch of store mutations to the sync adapters of their workspaces."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..models import Workspace, relation_key, utcnow
from .adapter import SyncAdapter
from .change_log import ChangeEvent, ChangeLog
from .state import SyncStateStore

if TYPE_CHECKING:
    from ..config import SyncConfig
    from ..store import LoreStore

logger = logging.getLogger(__name__)


@dataclass
class TrackerError:
    """A failure of a background push."""

    workspace_id: str
    workspace_name: str
    message: str
    timestamp: datetime


class ChangeTracker:
    """Routes every tracked mutation to the adapters of the workspaces it belongs to.

    Nothing raised while routing or recording reaches the caller: the store
    mutation that triggered the change has already succeeded and must stay
    that way. Background push failures are kept in a bounded backlog read
    with ``drain_errors()``.
    """

    def __init__(
        self,
        config: "SyncConfig",
        device_id: str,
        change_log: ChangeLog,
        state_store: SyncStateStore,
    ):
        """Initialize the tracker.

        Args:
            config: Sync configuration (repos dir, git identity, backlog size).
            device_id: Identifier of this machine.
            change_log: Log shared by all adapters.
            state_store: SyncState persistence shared by all adapters.
        """
        self.config = config
        self.device_id = device_id
        self.change_log = change_log
        self.state_store = state_store

        self.store: "LoreStore | None" = None
        self.enabled = config.enabled
        self._adapters: dict[str, SyncAdapter] = {}
        self._registry_lock = asyncio.Lock()
        self._push_tasks: dict[str, asyncio.Task] = {}
        self._push_again: set[str] = set()
        self._errors: deque[TrackerError] = deque(maxlen=config.max_error_backlog)

    def initialize(self, store: "LoreStore") -> None:
        """Bind the tracker to a store. Calling again with the same store is a no-op."""
        if self.store is store:
            return
        self.store = store
        store.tracker = self
        logger.debug(f"ChangeTracker bound to {store.db_path}")

    def enable(self) -> None:
        self.enabled = True

    def disable(self) -> None:
        self.enabled = False

    @property
    def is_active(self) -> bool:
        return self.enabled and self.store is not None

    # ==================== Adapters ====================

    async def get_adapter(self, workspace: Workspace) -> SyncAdapter:
        """Return the workspace's adapter, constructing and initializing it once."""
        adapter = self._adapters.get(workspace.id)
        if adapter is not None:
            return adapter

        async with self._registry_lock:
            adapter = self._adapters.get(workspace.id)
            if adapter is None:
                adapter = SyncAdapter(
                    workspace,
                    self.store,
                    self.change_log,
                    self.state_store,
                    self.device_id,
                    Path(self.config.repos_dir).expanduser(),
                    author_name=self.config.author_name or None,
                    author_email=self.config.author_email or None,
                )
                await adapter.initialize()
                self._adapters[workspace.id] = adapter
        return adapter

    @property
    def adapters(self) -> dict[str, SyncAdapter]:
        return dict(self._adapters)

    def _resolve_workspaces(self, change: ChangeEvent, realm_id: str | None) -> list[Workspace]:
        workspaces: list[Workspace] = []
        if realm_id:
            workspaces = self.store.get_realm_workspaces(realm_id)

        workspace_id = change.metadata.get("workspaceId")
        if not workspaces and workspace_id:
            workspace = self.store.find_workspace(workspace_id)
            if workspace:
                workspaces = [workspace]

        if not workspaces:
            default = self.store.get_default_workspace()
            if default:
                workspaces = [default]
        return workspaces

    # ==================== Recording ====================

    async def record_change(self, change: ChangeEvent, realm_id: str | None = None) -> None:
        """Record a change in every sync-enabled workspace it belongs to.

        Workspaces are the ones linked to ``realm_id``; if there are none, the
        one named by ``change.metadata["workspaceId"]``; if that is missing
        too, the default one. Sync is checked only after this lookup.
        """
        if not self.is_active:
            return

        try:
            workspaces = [
                w for w in self._resolve_workspaces(change, realm_id) if w.sync_enabled
            ]
        except Exception as e:
            logger.error(
                f"Failed to resolve workspaces for {change.entity} {change.entity_id}: {e}",
                exc_info=True,
            )
            return

        for index, workspace in enumerate(workspaces):
            metadata = {**change.metadata, "workspaceId": workspace.id}
            if realm_id:
                metadata["realmId"] = realm_id

            # Each workspace logs its own event
            event = replace(
                change,
                id=change.id if index == 0 else None,
                metadata=metadata,
            )
            try:
                adapter = await self.get_adapter(workspace)
                await adapter.record_change(event)
            except Exception as e:
                logger.error(
                    f"Failed to record {change.operation} {change.entity} "
                    f"{change.entity_id} in '{workspace.name}': {e}",
                    exc_info=True,
                )
                continue

            if workspace.auto_sync and workspace.sync_repo:
                self._schedule_push(adapter)

    async def record_lore_change(
        self,
        operation: str,
        lore_id: str,
        realm_id: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self.record_change(
            ChangeEvent(operation=operation, entity="lore", entity_id=lore_id, data=data),
            realm_id=realm_id,
        )

    async def record_realm_change(
        self,
        operation: str,
        realm_id: str,
        data: dict[str, Any] | None = None,
        workspace_id: str | None = None,
    ) -> None:
        """Record a realm change.

        With ``workspace_id`` the change goes to that workspace only (used
        when a realm is linked); otherwise it follows the realm's links.
        """
        change = ChangeEvent(operation=operation, entity="realm", entity_id=realm_id, data=data)
        if workspace_id:
            change.metadata["workspaceId"] = workspace_id
            await self.record_change(change)
        else:
            await self.record_change(change, realm_id=realm_id)

    async def record_relation_change(
        self,
        operation: str,
        from_lore_id: str,
        to_lore_id: str,
        type: str,
        realm_id: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        parts = {"from_lore_id": from_lore_id, "to_lore_id": to_lore_id, "type": type}
        await self.record_change(
            ChangeEvent(
                operation=operation,
                entity="relation",
                entity_id=relation_key(from_lore_id, to_lore_id, type),
                data=data or parts,
                metadata=dict(parts),
            ),
            realm_id=realm_id,
        )

    # ==================== Background push ====================

    def _schedule_push(self, adapter: SyncAdapter) -> None:
        workspace_id = adapter.workspace.id
        task = self._push_tasks.get(workspace_id)
        if task is not None and not task.done():
            # The running task pushes once more before finishing
            self._push_again.add(workspace_id)
            return

        self._push_tasks[workspace_id] = asyncio.create_task(
            self._run_push(adapter), name=f"lorehub-push-{workspace_id}"
        )

    async def _run_push(self, adapter: SyncAdapter) -> None:
        workspace = adapter.workspace
        while True:
            self._push_again.discard(workspace.id)
            try:
                result = await adapter.push()
                for error in result.errors:
                    self._report(workspace, error)
            except Exception as e:
                logger.error(f"Background push for '{workspace.name}' crashed: {e}", exc_info=True)
                self._report(workspace, f"Push failed: {e}")

            if workspace.id not in self._push_again:
                break

    def _report(self, workspace: Workspace, message: str) -> None:
        logger.warning(f"Background sync error in '{workspace.name}': {message}")
        self._errors.append(
            TrackerError(
                workspace_id=workspace.id,
                workspace_name=workspace.name,
                message=message,
                timestamp=utcnow(),
            )
        )

    def drain_errors(self) -> list[TrackerError]:
        """Return and clear the background error backlog."""
        errors = list(self._errors)
        self._errors.clear()
        return errors

    async def wait_idle(self) -> None:
        """Wait for every background push to finish."""
        while True:
            pending = [task for task in self._push_tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        await self.wait_idle()
        self._push_tasks.clear()
        self._adapters.clear()
