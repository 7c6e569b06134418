"""Append-only change log recording every mutation as a ChangeEvent.

Local events stay unsynced until the push that carries them succeeds; events
merged in from other devices are marked synced on receipt. Rows are never
deleted, so the table is also the idempotency record for replay.
"""

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

OPERATIONS = ("create", "update", "delete", "archive")
ENTITIES = ("lore", "realm", "relation")

CHANGE_LOG_SCHEMA = """
-- Change log: append-only, one row per ChangeEvent
CREATE TABLE IF NOT EXISTS change_log (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    counter INTEGER NOT NULL,
    vector_clock TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    operation TEXT NOT NULL,
    entity TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    data TEXT,
    metadata TEXT,
    synced_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_change_log_workspace ON change_log(workspace_id, synced_at);
CREATE INDEX IF NOT EXISTS idx_change_log_device ON change_log(workspace_id, device_id, counter);
CREATE INDEX IF NOT EXISTS idx_change_log_entity ON change_log(entity, entity_id);
"""


@dataclass
class ChangeEvent:
    """One causal unit of mutation."""

    operation: str  # "create", "update", "delete", "archive"
    entity: str  # "lore", "realm", "relation"
    entity_id: str
    data: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    timestamp: datetime | None = None
    device_id: str | None = None
    vector_clock: VectorClock = field(default_factory=VectorClock)

    def __post_init__(self) -> None:
        if self.operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {self.operation}")
        if self.entity not in ENTITIES:
            raise ValueError(f"Unknown entity: {self.entity}")
        if not isinstance(self.vector_clock, VectorClock):
            self.vector_clock = VectorClock(self.vector_clock)

    @property
    def counter(self) -> int:
        """The recording device's own position in its clock."""
        return self.vector_clock[self.device_id] if self.device_id else 0

    @property
    def entity_key(self) -> tuple[str, str]:
        return (self.entity, self.entity_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "device_id": self.device_id,
            "operation": self.operation,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "data": self.data,
            "metadata": self.metadata,
            "vector_clock": self.vector_clock.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChangeEvent":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            timestamp=(
                datetime.fromisoformat(data["timestamp"])
                if data.get("timestamp")
                else None
            ),
            device_id=data.get("device_id"),
            operation=data["operation"],
            entity=data["entity"],
            entity_id=data["entity_id"],
            data=data.get("data"),
            metadata=data.get("metadata") or {},
            vector_clock=VectorClock(data.get("vector_clock") or {}),
        )


class ChangeLog:
    """SQLite-backed append-only log of ChangeEvents, scoped by workspace."""

    def __init__(self, db_path: str | Path):
        """Initialize the change log.

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
        self._conn.executescript(CHANGE_LOG_SCHEMA)
        self._conn.commit()

        logger.info(f"ChangeLog connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _insert(
        self,
        conn: sqlite3.Connection,
        workspace_id: str,
        event: ChangeEvent,
        synced_at: str | None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO change_log (
                id, workspace_id, device_id, counter, vector_clock, timestamp,
                operation, entity, entity_id, data, metadata, synced_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                workspace_id,
                event.device_id,
                event.counter,
                event.vector_clock.to_json(),
                (event.timestamp or utcnow()).isoformat(),
                event.operation,
                event.entity,
                event.entity_id,
                json.dumps(event.data) if event.data is not None else None,
                json.dumps(event.metadata or {}),
                synced_at,
            ),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> ChangeEvent:
        return ChangeEvent(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            device_id=row["device_id"],
            operation=row["operation"],
            entity=row["entity"],
            entity_id=row["entity_id"],
            data=json.loads(row["data"]) if row["data"] else None,
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            vector_clock=VectorClock.from_json(row["vector_clock"]),
        )

    def append(self, workspace_id: str, event: ChangeEvent) -> ChangeEvent:
        """Append a locally recorded event; it stays unsynced until pushed.

        Args:
            workspace_id: Workspace the event belongs to.
            event: A fully stamped event (id, timestamp, device_id, clock).

        Returns:
            The stored event.
        """
        if not (event.id and event.timestamp and event.device_id):
            raise ValueError("ChangeEvent must be stamped before it is logged")

        conn = self._ensure_connected()
        self._insert(conn, workspace_id, event, None)
        conn.commit()

        logger.debug(
            f"Appended {event.operation} {event.entity}:{event.entity_id} "
            f"as {event.id} (counter={event.counter})"
        )
        return event

    def get_unsynced(self, workspace_id: str, limit: int | None = None) -> list[ChangeEvent]:
        """Get events that haven't been pushed yet, oldest first."""
        conn = self._ensure_connected()

        query = """
            SELECT * FROM change_log
            WHERE workspace_id = ? AND synced_at IS NULL
            ORDER BY device_id, counter ASC
        """
        params: tuple[Any, ...] = (workspace_id,)
        if limit is not None:
            query += " LIMIT ?"
            params += (limit,)

        return [self._row_to_event(row) for row in conn.execute(query, params)]

    def count_unsynced(self, workspace_id: str) -> int:
        conn = self._ensure_connected()
        cursor = conn.execute(
            "SELECT COUNT(*) FROM change_log WHERE workspace_id = ? AND synced_at IS NULL",
            (workspace_id,),
        )
        return cursor.fetchone()[0]

    def get(self, event_id: str) -> ChangeEvent | None:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT * FROM change_log WHERE id = ?", (event_id,)
        ).fetchone()
        return self._row_to_event(row) if row else None

    def contains(self, event_id: str) -> bool:
        conn = self._ensure_connected()
        return (
            conn.execute("SELECT 1 FROM change_log WHERE id = ?", (event_id,)).fetchone()
            is not None
        )

    def get_events(self, workspace_id: str, device_id: str | None = None) -> list[ChangeEvent]:
        """All events of a workspace, optionally for one device, in counter order."""
        conn = self._ensure_connected()
        if device_id is None:
            cursor = conn.execute(
                "SELECT * FROM change_log WHERE workspace_id = ? ORDER BY device_id, counter",
                (workspace_id,),
            )
        else:
            cursor = conn.execute(
                """
                SELECT * FROM change_log
                WHERE workspace_id = ? AND device_id = ?
                ORDER BY counter
                """,
                (workspace_id, device_id),
            )
        return [self._row_to_event(row) for row in cursor]

    def mark_synced(self, event_ids: list[str]) -> int:
        """Mark events as synced.

        Args:
            event_ids: List of event IDs to mark.

        Returns:
            Number of events updated.
        """
        if not event_ids:
            return 0

        conn = self._ensure_connected()

        now = utcnow().isoformat()
        placeholders = ",".join("?" * len(event_ids))

        cursor = conn.execute(
            f"""
            UPDATE change_log
            SET synced_at = ?
            WHERE id IN ({placeholders}) AND synced_at IS NULL
            """,
            (now, *event_ids),
        )
        conn.commit()

        count = cursor.rowcount
        logger.debug(f"Marked {count} events as synced")
        return count

    def merge(self, workspace_id: str, remote_events: list[ChangeEvent]) -> list[ChangeEvent]:
        """Merge events received from other devices into the log.

        Events whose id is already known are skipped, which makes replay of
        the same remote history a no-op.

        Args:
            workspace_id: Workspace the events belong to.
            remote_events: Events read from the shared repository.

        Returns:
            The events that were not seen before, in input order.
        """
        if not remote_events:
            return []

        conn = self._ensure_connected()
        now = utcnow().isoformat()

        added = []
        for event in remote_events:
            if self.contains(event.id):
                continue
            self._insert(conn, workspace_id, event, now)
            added.append(event)

        conn.commit()
        if added:
            logger.info(f"Merged {len(added)} new events from remote")
        return added

    def forget(self, event_ids: list[str]) -> int:
        """Drop remote events that could not be applied so a later merge sees them again."""
        if not event_ids:
            return 0

        conn = self._ensure_connected()
        placeholders = ",".join("?" * len(event_ids))
        cursor = conn.execute(
            f"DELETE FROM change_log WHERE id IN ({placeholders}) AND synced_at IS NOT NULL",
            event_ids,
        )
        conn.commit()
        return cursor.rowcount

    def get_stats(self, workspace_id: str) -> dict[str, Any]:
        """Get log statistics for a workspace."""
        conn = self._ensure_connected()

        stats: dict[str, Any] = {}

        cursor = conn.execute(
            "SELECT COUNT(*) FROM change_log WHERE workspace_id = ?", (workspace_id,)
        )
        stats["total_events"] = cursor.fetchone()[0]
        stats["unsynced_events"] = self.count_unsynced(workspace_id)

        cursor = conn.execute(
            """
            SELECT entity, COUNT(*) FROM change_log
            WHERE workspace_id = ? GROUP BY entity
            """,
            (workspace_id,),
        )
        stats["events_by_entity"] = {row[0]: row[1] for row in cursor}

        cursor = conn.execute(
            """
            SELECT device_id, COUNT(*) FROM change_log
            WHERE workspace_id = ? GROUP BY device_id
            """,
            (workspace_id,),
        )
        stats["events_by_device"] = {row[0]: row[1] for row in cursor}

        return stats


def new_event_id() -> str:
    return str(uuid.uuid4())
