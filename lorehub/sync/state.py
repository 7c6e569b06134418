"""Persistent sync bookkeeping: per-device SyncState, entity clocks, conflicts."""

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from ..models import utcnow
from .vector_clock import VectorClock

logger = logging.getLogger(__name__)

SYNC_STATE_SCHEMA = """
-- One row per (workspace, device)
CREATE TABLE IF NOT EXISTS sync_state (
    workspace_id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    last_sync_at TEXT,
    last_sync_commit TEXT,
    vector_clock TEXT,
    pending_changes INTEGER NOT NULL DEFAULT 0 CHECK(pending_changes >= 0),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (workspace_id, device_id)
);

CREATE INDEX IF NOT EXISTS idx_sync_state_workspace ON sync_state(workspace_id);

-- Clock of the last event recorded or applied locally for each entity
CREATE TABLE IF NOT EXISTS entity_clocks (
    workspace_id TEXT NOT NULL,
    entity TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    vector_clock TEXT NOT NULL,
    event_id TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (workspace_id, entity, entity_id)
);

-- Concurrent edits detected during pull, kept until resolved by hand
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    entity TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    local_event_id TEXT,
    local_clock TEXT NOT NULL,
    local_data TEXT,
    remote_event_id TEXT NOT NULL,
    remote_device_id TEXT,
    remote_operation TEXT NOT NULL,
    remote_clock TEXT NOT NULL,
    remote_data TEXT,
    detected_at TEXT NOT NULL,
    resolved_at TEXT,
    resolution TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_conflicts_open ON sync_conflicts(workspace_id, resolved_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_conflicts_remote ON sync_conflicts(workspace_id, remote_event_id);
"""


@dataclass
class SyncState:
    """Causal and operational bookkeeping for one device in one workspace."""

    workspace_id: str
    device_id: str
    vector_clock: VectorClock = field(default_factory=VectorClock)
    last_sync_at: datetime | None = None
    last_sync_commit: str | None = None
    pending_changes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "device_id": self.device_id,
            "vector_clock": self.vector_clock.to_dict(),
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "last_sync_commit": self.last_sync_commit,
            "pending_changes": self.pending_changes,
        }


@dataclass
class SyncConflict:
    """Both sides of a concurrent edit to one entity."""

    id: str
    workspace_id: str
    entity: str
    entity_id: str
    local_clock: VectorClock
    local_data: dict[str, Any] | None
    remote_event_id: str
    remote_operation: str
    remote_clock: VectorClock
    remote_data: dict[str, Any] | None
    local_event_id: str | None = None
    remote_device_id: str | None = None
    detected_at: datetime = field(default_factory=utcnow)
    resolved_at: datetime | None = None
    resolution: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "local_event_id": self.local_event_id,
            "local_clock": self.local_clock.to_dict(),
            "local_data": self.local_data,
            "remote_event_id": self.remote_event_id,
            "remote_device_id": self.remote_device_id,
            "remote_operation": self.remote_operation,
            "remote_clock": self.remote_clock.to_dict(),
            "remote_data": self.remote_data,
            "detected_at": self.detected_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution,
        }


def _loads(text: str | None) -> Any:
    return json.loads(text) if text else None


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


class SyncStateStore:
    """SQLite persistence for SyncState rows, entity clocks and conflicts."""

    def __init__(self, db_path: str | Path):
        """Initialize the state store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SYNC_STATE_SCHEMA)
        self._conn.commit()

        logger.info(f"SyncStateStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    # ==================== SyncState ====================

    def get(self, workspace_id: str, device_id: str) -> SyncState | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT * FROM sync_state WHERE workspace_id = ? AND device_id = ?",
            (workspace_id, device_id),
        ).fetchone()
        if row is None:
            return None

        return SyncState(
            workspace_id=row["workspace_id"],
            device_id=row["device_id"],
            vector_clock=VectorClock.from_json(row["vector_clock"]),
            last_sync_at=(
                datetime.fromisoformat(row["last_sync_at"]) if row["last_sync_at"] else None
            ),
            last_sync_commit=row["last_sync_commit"],
            pending_changes=row["pending_changes"],
        )

    def load_or_create(self, workspace_id: str, device_id: str) -> SyncState:
        """Load the state row, seeding an empty clock on first use."""
        state = self.get(workspace_id, device_id)
        if state is None:
            state = SyncState(workspace_id=workspace_id, device_id=device_id)
            self.save(state)
            logger.info(f"Created sync state for workspace {workspace_id} on {device_id}")
        return state

    def save(self, state: SyncState) -> None:
        conn = self._ensure_connected()
        now = utcnow().isoformat()
        conn.execute(
            """
            INSERT INTO sync_state (
                workspace_id, device_id, last_sync_at, last_sync_commit,
                vector_clock, pending_changes, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(workspace_id, device_id) DO UPDATE SET
                last_sync_at = excluded.last_sync_at,
                last_sync_commit = excluded.last_sync_commit,
                vector_clock = excluded.vector_clock,
                pending_changes = excluded.pending_changes,
                updated_at = excluded.updated_at
            """,
            (
                state.workspace_id,
                state.device_id,
                state.last_sync_at.isoformat() if state.last_sync_at else None,
                state.last_sync_commit,
                state.vector_clock.to_json(),
                max(0, state.pending_changes),
                now,
                now,
            ),
        )
        conn.commit()

    def list_states(self, workspace_id: str) -> list[SyncState]:
        conn = self._ensure_connected()
        rows = conn.execute(
            "SELECT device_id FROM sync_state WHERE workspace_id = ? ORDER BY device_id",
            (workspace_id,),
        ).fetchall()
        return [self.get(workspace_id, row["device_id"]) for row in rows]

    # ==================== Entity clocks ====================

    def get_entity_clock(
        self, workspace_id: str, entity: str, entity_id: str
    ) -> tuple[VectorClock, str | None]:
        """Clock and event id of the last local event for an entity."""
        conn = self._ensure_connected()
        row = conn.execute(
            """
            SELECT vector_clock, event_id FROM entity_clocks
            WHERE workspace_id = ? AND entity = ? AND entity_id = ?
            """,
            (workspace_id, entity, entity_id),
        ).fetchone()
        if row is None:
            return VectorClock(), None
        return VectorClock.from_json(row["vector_clock"]), row["event_id"]

    def set_entity_clock(
        self,
        workspace_id: str,
        entity: str,
        entity_id: str,
        clock: VectorClock,
        event_id: str | None,
    ) -> None:
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO entity_clocks (
                workspace_id, entity, entity_id, vector_clock, event_id, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(workspace_id, entity, entity_id) DO UPDATE SET
                vector_clock = excluded.vector_clock,
                event_id = excluded.event_id,
                updated_at = excluded.updated_at
            """,
            (
                workspace_id,
                entity,
                entity_id,
                clock.to_json(),
                event_id,
                utcnow().isoformat(),
            ),
        )
        conn.commit()

    # ==================== Conflicts ====================

    def add_conflict(self, conflict: SyncConflict) -> bool:
        """Store a conflict; returns False if the remote event was already flagged."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO sync_conflicts (
                id, workspace_id, entity, entity_id, local_event_id, local_clock,
                local_data, remote_event_id, remote_device_id, remote_operation,
                remote_clock, remote_data, detected_at, resolved_at, resolution
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conflict.id,
                conflict.workspace_id,
                conflict.entity,
                conflict.entity_id,
                conflict.local_event_id,
                conflict.local_clock.to_json(),
                _dumps(conflict.local_data),
                conflict.remote_event_id,
                conflict.remote_device_id,
                conflict.remote_operation,
                conflict.remote_clock.to_json(),
                _dumps(conflict.remote_data),
                conflict.detected_at.isoformat(),
                None,
                None,
            ),
        )
        conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_conflict(row: sqlite3.Row) -> SyncConflict:
        return SyncConflict(
            id=row["id"],
            workspace_id=row["workspace_id"],
            entity=row["entity"],
            entity_id=row["entity_id"],
            local_event_id=row["local_event_id"],
            local_clock=VectorClock.from_json(row["local_clock"]),
            local_data=_loads(row["local_data"]),
            remote_event_id=row["remote_event_id"],
            remote_device_id=row["remote_device_id"],
            remote_operation=row["remote_operation"],
            remote_clock=VectorClock.from_json(row["remote_clock"]),
            remote_data=_loads(row["remote_data"]),
            detected_at=datetime.fromisoformat(row["detected_at"]),
            resolved_at=(
                datetime.fromisoformat(row["resolved_at"]) if row["resolved_at"] else None
            ),
            resolution=row["resolution"],
        )

    def get_conflict(self, conflict_id: str) -> SyncConflict | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,)
        ).fetchone()
        return self._row_to_conflict(row) if row else None

    def list_conflicts(
        self, workspace_id: str, include_resolved: bool = False
    ) -> list[SyncConflict]:
        conn = self._ensure_connected()
        query = "SELECT * FROM sync_conflicts WHERE workspace_id = ?"
        if not include_resolved:
            query += " AND resolved_at IS NULL"
        query += " ORDER BY detected_at, id"
        return [self._row_to_conflict(row) for row in conn.execute(query, (workspace_id,))]

    def count_open_conflicts(self, workspace_id: str) -> int:
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            SELECT COUNT(*) FROM sync_conflicts
            WHERE workspace_id = ? AND resolved_at IS NULL
            """,
            (workspace_id,),
        )
        return cursor.fetchone()[0]

    def resolve_conflict(self, conflict_id: str, resolution: str) -> None:
        conn = self._ensure_connected()
        conn.execute(
            "UPDATE sync_conflicts SET resolved_at = ?, resolution = ? WHERE id = ?",
            (utcnow().isoformat(), resolution, conflict_id),
        )
        conn.commit()


def new_conflict_id() -> str:
    return str(uuid.uuid4())
