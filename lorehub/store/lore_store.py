"""SQLite backing store for realms, lores, relations and workspaces."""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..models import (
    Lore,
    LoreRelation,
    Realm,
    Workspace,
    WorkspaceFilters,
    utcnow,
)

if TYPE_CHECKING:
    from ..sync.snapshot import Snapshot
    from ..sync.tracker import ChangeTracker

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS realms (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    path TEXT NOT NULL UNIQUE,
    git_remote TEXT,
    is_monorepo INTEGER NOT NULL DEFAULT 0,
    provinces TEXT NOT NULL DEFAULT '[]',
    last_seen TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS lores (
    id TEXT PRIMARY KEY,
    realm_id TEXT NOT NULL REFERENCES realms(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    why TEXT,
    type TEXT NOT NULL,
    provinces TEXT NOT NULL DEFAULT '[]',
    sigils TEXT NOT NULL DEFAULT '[]',
    confidence INTEGER NOT NULL DEFAULT 80,
    origin TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'living',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_lores_realm_id ON lores(realm_id);
CREATE INDEX IF NOT EXISTS idx_lores_status ON lores(status);

CREATE TABLE IF NOT EXISTS lore_relations (
    from_lore_id TEXT NOT NULL REFERENCES lores(id) ON DELETE CASCADE,
    to_lore_id TEXT NOT NULL REFERENCES lores(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    strength REAL NOT NULL DEFAULT 1.0,
    metadata TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (from_lore_id, to_lore_id, type)
);

CREATE INDEX IF NOT EXISTS idx_lore_relations_from ON lore_relations(from_lore_id);
CREATE INDEX IF NOT EXISTS idx_lore_relations_to ON lore_relations(to_lore_id);

CREATE TABLE IF NOT EXISTS workspaces (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    sync_enabled INTEGER NOT NULL DEFAULT 0,
    sync_repo TEXT,
    sync_branch TEXT DEFAULT 'main',
    auto_sync INTEGER NOT NULL DEFAULT 1,
    sync_interval INTEGER DEFAULT 300,
    filters TEXT,
    is_default INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS realm_workspaces (
    realm_id TEXT NOT NULL REFERENCES realms(id) ON DELETE CASCADE,
    workspace_id TEXT NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    PRIMARY KEY (realm_id, workspace_id)
);

CREATE INDEX IF NOT EXISTS idx_realm_workspaces_realm ON realm_workspaces(realm_id);
CREATE INDEX IF NOT EXISTS idx_realm_workspaces_workspace ON realm_workspaces(workspace_id);
"""

# Fields a lore update may touch
LORE_UPDATABLE = ("content", "why", "type", "provinces", "sigils", "confidence", "origin", "status")
REALM_UPDATABLE = ("name", "path", "git_remote", "is_monorepo", "provinces")
WORKSPACE_UPDATABLE = (
    "name",
    "sync_enabled",
    "sync_repo",
    "sync_branch",
    "auto_sync",
    "sync_interval",
    "filters",
    "is_default",
)


class WorkspaceError(Exception):
    """Unknown or conflicting workspace / realm configuration."""


class LoreStore:
    """SQLite store for lore records, with change notification for sync.

    Mutating methods are coroutines because they notify the ChangeTracker;
    pass ``track=False`` to apply a change without recording it (used when
    replaying changes that came from another device).
    """

    def __init__(self, db_path: str | Path, tracker: "ChangeTracker | None" = None):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            tracker: ChangeTracker notified of every tracked mutation.
        """
        self.db_path = db_path if db_path == ":memory:" else Path(db_path).expanduser()
        self.tracker = tracker
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(SCHEMA)
        self._conn.commit()

        logger.info(f"LoreStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LoreStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    # ==================== Row conversion ====================

    @staticmethod
    def _row_to_realm(row: sqlite3.Row) -> Realm:
        return Realm.from_dict(
            {
                **dict(row),
                "is_monorepo": bool(row["is_monorepo"]),
                "provinces": json.loads(row["provinces"]),
            }
        )

    @staticmethod
    def _row_to_lore(row: sqlite3.Row) -> Lore:
        return Lore.from_dict(
            {
                **dict(row),
                "provinces": json.loads(row["provinces"]),
                "sigils": json.loads(row["sigils"]),
                "origin": json.loads(row["origin"]),
            }
        )

    @staticmethod
    def _row_to_relation(row: sqlite3.Row) -> LoreRelation:
        return LoreRelation.from_dict(
            {
                **dict(row),
                "metadata": json.loads(row["metadata"]) if row["metadata"] else None,
            }
        )

    @staticmethod
    def _row_to_workspace(row: sqlite3.Row) -> Workspace:
        filters = json.loads(row["filters"]) if row["filters"] else None
        return Workspace(
            id=row["id"],
            name=row["name"],
            sync_enabled=bool(row["sync_enabled"]),
            sync_repo=row["sync_repo"] or None,
            sync_branch=row["sync_branch"] or "main",
            auto_sync=bool(row["auto_sync"]),
            sync_interval=row["sync_interval"] or 300,
            filters=WorkspaceFilters.from_dict(filters) if filters else None,
            is_default=bool(row["is_default"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # ==================== Realm Operations ====================

    def _insert_realm(self, conn: sqlite3.Connection, realm: Realm) -> None:
        conn.execute(
            """
            INSERT INTO realms (
                id, name, path, git_remote, is_monorepo, provinces, last_seen, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                realm.id,
                realm.name,
                realm.path,
                realm.git_remote,
                int(realm.is_monorepo),
                json.dumps(realm.provinces),
                realm.last_seen.isoformat(),
                realm.created_at.isoformat(),
            ),
        )

    async def create_realm(
        self,
        name: str,
        path: str,
        id: str | None = None,
        git_remote: str | None = None,
        is_monorepo: bool = False,
        provinces: list[str] | None = None,
        track: bool = True,
    ) -> Realm:
        """Create a realm.

        Args:
            name: Display name.
            path: Filesystem path of the project; unique.
            id: Explicit id, generated if omitted.
            git_remote: Remote URL of the project itself.
            is_monorepo: Whether the realm has provinces.
            provinces: Service names inside a monorepo.
            track: Notify the change tracker.

        Returns:
            The created Realm.
        """
        realm = Realm(
            id=id or str(uuid.uuid4()),
            name=name,
            path=path,
            git_remote=git_remote,
            is_monorepo=is_monorepo,
            provinces=provinces or [],
        )
        return await self.put_realm(realm, track=track)

    async def put_realm(self, realm: Realm, track: bool = True) -> Realm:
        """Insert a fully built realm, keeping its id and timestamps."""
        conn = self._ensure_connected()
        self._insert_realm(conn, realm)
        conn.commit()

        if track and self.tracker:
            await self.tracker.record_realm_change("create", realm.id, realm.to_dict())
        return realm

    def find_realm(self, realm_id: str) -> Realm | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT * FROM realms WHERE id = ?", (realm_id,)).fetchone()
        return self._row_to_realm(row) if row else None

    def find_realm_by_path(self, path: str) -> Realm | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT * FROM realms WHERE path = ?", (path,)).fetchone()
        return self._row_to_realm(row) if row else None

    def list_realms(self) -> list[Realm]:
        conn = self._ensure_connected()
        rows = conn.execute("SELECT * FROM realms ORDER BY last_seen DESC, id").fetchall()
        return [self._row_to_realm(row) for row in rows]

    async def update_realm(
        self, realm_id: str, updates: dict[str, Any], track: bool = True
    ) -> Realm | None:
        """Update realm fields; unknown keys are ignored."""
        if self.find_realm(realm_id) is None:
            return None

        sets: dict[str, Any] = {}
        for key in REALM_UPDATABLE:
            if key not in updates:
                continue
            value = updates[key]
            if key == "provinces":
                value = json.dumps(value or [])
            elif key == "is_monorepo":
                value = int(bool(value))
            sets[key] = value
        sets["last_seen"] = updates.get("last_seen") or utcnow().isoformat()

        conn = self._ensure_connected()
        assignments = ", ".join(f"{key} = ?" for key in sets)
        conn.execute(
            f"UPDATE realms SET {assignments} WHERE id = ?",
            (*sets.values(), realm_id),
        )
        conn.commit()

        realm = self.find_realm(realm_id)
        if track and self.tracker and realm:
            await self.tracker.record_realm_change("update", realm_id, realm.to_dict())
        return realm

    async def delete_realm(self, realm_id: str, track: bool = True) -> bool:
        """Delete a realm; its lores, relations and workspace links cascade."""
        realm = self.find_realm(realm_id)
        if realm is None:
            return False

        # Route the event before the workspace links disappear with the realm
        if track and self.tracker:
            await self.tracker.record_realm_change("delete", realm_id, {"id": realm_id})

        conn = self._ensure_connected()
        conn.execute("DELETE FROM realms WHERE id = ?", (realm_id,))
        conn.commit()
        return True

    # ==================== Lore Operations ====================

    def _insert_lore(self, conn: sqlite3.Connection, lore: Lore) -> None:
        conn.execute(
            """
            INSERT INTO lores (
                id, realm_id, content, why, type, provinces, sigils,
                confidence, origin, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                lore.id,
                lore.realm_id,
                lore.content,
                lore.why,
                lore.type,
                json.dumps(lore.provinces),
                json.dumps(lore.sigils),
                lore.confidence,
                json.dumps(lore.origin),
                lore.status,
                lore.created_at.isoformat(),
                lore.updated_at.isoformat(),
            ),
        )

    async def create_lore(
        self,
        realm_id: str,
        content: str,
        type: str = "other",
        origin: dict[str, Any] | None = None,
        why: str | None = None,
        provinces: list[str] | None = None,
        sigils: list[str] | None = None,
        confidence: int = 80,
        status: str = "living",
        id: str | None = None,
        track: bool = True,
    ) -> Lore:
        """Create a lore in a realm."""
        lore = Lore(
            id=id or str(uuid.uuid4()),
            realm_id=realm_id,
            content=content,
            type=type,
            origin=origin or {"type": "manual", "reference": "cli"},
            why=why,
            provinces=provinces or [],
            sigils=sigils or [],
            confidence=confidence,
            status=status,
        )
        return await self.put_lore(lore, track=track)

    async def put_lore(self, lore: Lore, track: bool = True) -> Lore:
        """Insert a fully built lore, keeping its id and timestamps."""
        conn = self._ensure_connected()
        self._insert_lore(conn, lore)
        conn.commit()

        if track and self.tracker:
            await self.tracker.record_lore_change("create", lore.id, lore.realm_id, lore.to_dict())
        return lore

    def find_lore(self, lore_id: str) -> Lore | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT * FROM lores WHERE id = ?", (lore_id,)).fetchone()
        return self._row_to_lore(row) if row else None

    def list_lores(self) -> list[Lore]:
        conn = self._ensure_connected()
        rows = conn.execute("SELECT * FROM lores ORDER BY created_at DESC, id").fetchall()
        return [self._row_to_lore(row) for row in rows]

    def list_lores_by_realm(self, realm_id: str) -> list[Lore]:
        conn = self._ensure_connected()
        rows = conn.execute(
            "SELECT * FROM lores WHERE realm_id = ? ORDER BY created_at DESC, id",
            (realm_id,),
        ).fetchall()
        return [self._row_to_lore(row) for row in rows]

    async def update_lore(
        self, lore_id: str, updates: dict[str, Any], track: bool = True
    ) -> Lore | None:
        """Update lore fields; unknown keys are ignored.

        ``updated_at`` is taken from ``updates`` when present (replayed
        changes keep the original device's timestamp), otherwise set to now.
        """
        existing = self.find_lore(lore_id)
        if existing is None:
            return None

        sets: dict[str, Any] = {}
        for key in LORE_UPDATABLE:
            if key not in updates:
                continue
            value = updates[key]
            if key in ("provinces", "sigils"):
                value = json.dumps(value or [])
            elif key == "origin":
                value = json.dumps(value or {})
            sets[key] = value
        sets["updated_at"] = updates.get("updated_at") or utcnow().isoformat()

        conn = self._ensure_connected()
        assignments = ", ".join(f"{key} = ?" for key in sets)
        conn.execute(
            f"UPDATE lores SET {assignments} WHERE id = ?",
            (*sets.values(), lore_id),
        )
        conn.commit()

        lore = self.find_lore(lore_id)
        if track and self.tracker and lore:
            await self.tracker.record_lore_change("update", lore_id, existing.realm_id, lore.to_dict())
        return lore

    async def delete_lore(self, lore_id: str, track: bool = True) -> bool:
        lore = self.find_lore(lore_id)
        if lore is None:
            return False

        conn = self._ensure_connected()
        conn.execute("DELETE FROM lores WHERE id = ?", (lore_id,))
        conn.commit()

        if track and self.tracker:
            await self.tracker.record_lore_change("delete", lore_id, lore.realm_id, {"id": lore_id})
        return True

    async def archive_lore(self, lore_id: str, track: bool = True) -> bool:
        """Soft delete: mark the lore archived."""
        lore = self.find_lore(lore_id)
        if lore is None:
            return False

        conn = self._ensure_connected()
        conn.execute(
            "UPDATE lores SET status = 'archived', updated_at = ? WHERE id = ?",
            (utcnow().isoformat(), lore_id),
        )
        conn.commit()

        if track and self.tracker:
            await self.tracker.record_lore_change(
                "archive", lore_id, lore.realm_id, {"id": lore_id, "status": "archived"}
            )
        return True

    # ==================== Relation Operations ====================

    async def create_relation(
        self,
        from_lore_id: str,
        to_lore_id: str,
        type: str,
        strength: float = 1.0,
        metadata: dict[str, Any] | None = None,
        track: bool = True,
    ) -> LoreRelation:
        relation = LoreRelation(
            from_lore_id=from_lore_id,
            to_lore_id=to_lore_id,
            type=type,
            strength=strength,
            metadata=metadata,
        )
        return await self.put_relation(relation, track=track)

    async def put_relation(self, relation: LoreRelation, track: bool = True) -> LoreRelation:
        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT INTO lore_relations (
                from_lore_id, to_lore_id, type, strength, metadata, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                relation.from_lore_id,
                relation.to_lore_id,
                relation.type,
                relation.strength,
                json.dumps(relation.metadata) if relation.metadata else None,
                relation.created_at.isoformat(),
            ),
        )
        conn.commit()

        if track and self.tracker:
            from_lore = self.find_lore(relation.from_lore_id)
            if from_lore:
                await self.tracker.record_relation_change(
                    "create",
                    relation.from_lore_id,
                    relation.to_lore_id,
                    relation.type,
                    from_lore.realm_id,
                    relation.to_dict(),
                )
        return relation

    def find_relation(self, from_lore_id: str, to_lore_id: str, type: str) -> LoreRelation | None:
        conn = self._ensure_connected()
        row = conn.execute(
            """
            SELECT * FROM lore_relations
            WHERE from_lore_id = ? AND to_lore_id = ? AND type = ?
            """,
            (from_lore_id, to_lore_id, type),
        ).fetchone()
        return self._row_to_relation(row) if row else None

    def list_relations(self) -> list[LoreRelation]:
        conn = self._ensure_connected()
        rows = conn.execute(
            "SELECT * FROM lore_relations ORDER BY from_lore_id, to_lore_id, type"
        ).fetchall()
        return [self._row_to_relation(row) for row in rows]

    def list_relations_by_lore(self, lore_id: str) -> list[LoreRelation]:
        conn = self._ensure_connected()
        rows = conn.execute(
            """
            SELECT * FROM lore_relations
            WHERE from_lore_id = ? OR to_lore_id = ?
            ORDER BY from_lore_id, to_lore_id, type
            """,
            (lore_id, lore_id),
        ).fetchall()
        return [self._row_to_relation(row) for row in rows]

    async def delete_relation(
        self, from_lore_id: str, to_lore_id: str, type: str, track: bool = True
    ) -> bool:
        from_lore = self.find_lore(from_lore_id)

        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            DELETE FROM lore_relations
            WHERE from_lore_id = ? AND to_lore_id = ? AND type = ?
            """,
            (from_lore_id, to_lore_id, type),
        )
        conn.commit()

        if track and self.tracker and from_lore:
            await self.tracker.record_relation_change(
                "delete", from_lore_id, to_lore_id, type, from_lore.realm_id
            )
        return cursor.rowcount > 0

    # ==================== Workspace Operations ====================

    def create_workspace(
        self,
        name: str,
        sync_enabled: bool = False,
        sync_repo: str | None = None,
        sync_branch: str = "main",
        auto_sync: bool = True,
        sync_interval: int = 300,
        filters: WorkspaceFilters | None = None,
        is_default: bool = False,
        id: str | None = None,
    ) -> Workspace:
        """Create a workspace. The first one created becomes the default."""
        conn = self._ensure_connected()

        if self.find_workspace_by_name(name):
            raise WorkspaceError(f"Workspace with name '{name}' already exists")

        count = conn.execute("SELECT COUNT(*) FROM workspaces").fetchone()[0]
        should_be_default = is_default or count == 0
        if should_be_default:
            conn.execute("UPDATE workspaces SET is_default = 0 WHERE is_default = 1")

        now = utcnow().isoformat()
        workspace_id = id or str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO workspaces (
                id, name, sync_enabled, sync_repo, sync_branch, auto_sync,
                sync_interval, filters, is_default, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                workspace_id,
                name,
                int(sync_enabled),
                sync_repo,
                sync_branch or "main",
                int(auto_sync),
                sync_interval,
                json.dumps(filters.to_dict()) if filters else None,
                int(should_be_default),
                now,
                now,
            ),
        )
        conn.commit()

        logger.info(f"Created workspace '{name}' ({workspace_id})")
        return self.find_workspace(workspace_id)

    def find_workspace(self, workspace_id: str) -> Workspace | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
        return self._row_to_workspace(row) if row else None

    def find_workspace_by_name(self, name: str) -> Workspace | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT * FROM workspaces WHERE name = ?", (name,)).fetchone()
        return self._row_to_workspace(row) if row else None

    def get_default_workspace(self) -> Workspace | None:
        conn = self._ensure_connected()
        row = conn.execute("SELECT * FROM workspaces WHERE is_default = 1").fetchone()
        return self._row_to_workspace(row) if row else None

    def list_workspaces(self) -> list[Workspace]:
        conn = self._ensure_connected()
        rows = conn.execute(
            "SELECT * FROM workspaces ORDER BY is_default DESC, name"
        ).fetchall()
        return [self._row_to_workspace(row) for row in rows]

    def update_workspace(self, workspace_id: str, updates: dict[str, Any]) -> Workspace | None:
        """Update workspace settings; unknown keys are ignored."""
        if self.find_workspace(workspace_id) is None:
            return None

        conn = self._ensure_connected()
        sets: dict[str, Any] = {}
        for key in WORKSPACE_UPDATABLE:
            if key not in updates:
                continue
            value = updates[key]
            if key == "filters":
                if isinstance(value, WorkspaceFilters):
                    value = value.to_dict()
                value = json.dumps(value) if value else None
            elif key in ("sync_enabled", "auto_sync", "is_default"):
                value = int(bool(value))
            sets[key] = value

        if "name" in sets:
            other = self.find_workspace_by_name(sets["name"])
            if other and other.id != workspace_id:
                raise WorkspaceError(f"Workspace with name '{sets['name']}' already exists")

        if sets.get("is_default"):
            conn.execute(
                "UPDATE workspaces SET is_default = 0 WHERE is_default = 1 AND id != ?",
                (workspace_id,),
            )

        sets["updated_at"] = utcnow().isoformat()
        assignments = ", ".join(f"{key} = ?" for key in sets)
        conn.execute(
            f"UPDATE workspaces SET {assignments} WHERE id = ?",
            (*sets.values(), workspace_id),
        )
        conn.commit()
        return self.find_workspace(workspace_id)

    def delete_workspace(self, workspace_id: str) -> None:
        """Delete a workspace, promoting another one if it was the default."""
        workspace = self.find_workspace(workspace_id)
        if workspace is None:
            raise WorkspaceError(f"Workspace {workspace_id} not found")

        conn = self._ensure_connected()
        if workspace.is_default:
            other = conn.execute(
                "SELECT id FROM workspaces WHERE id != ? ORDER BY name LIMIT 1",
                (workspace_id,),
            ).fetchone()
            if other:
                conn.execute("UPDATE workspaces SET is_default = 1 WHERE id = ?", (other["id"],))

        conn.execute("DELETE FROM workspaces WHERE id = ?", (workspace_id,))
        conn.commit()

    def ensure_default_workspace(self) -> Workspace:
        workspace = self.get_default_workspace()
        if workspace is None:
            workspace = self.create_workspace("main", is_default=True, sync_enabled=False)
        return workspace

    async def link_realm_to_workspace(
        self, realm_id: str, workspace_id: str, track: bool = True
    ) -> None:
        """Attach a realm to a workspace.

        The realm is recorded as a ``create`` change for that workspace so
        devices pulling it learn about the realm before its lores.
        """
        realm = self.find_realm(realm_id)
        if realm is None:
            raise WorkspaceError(f"Realm {realm_id} not found")
        if self.find_workspace(workspace_id) is None:
            raise WorkspaceError(f"Workspace {workspace_id} not found")

        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO realm_workspaces (realm_id, workspace_id, created_at)
            VALUES (?, ?, ?)
            """,
            (realm_id, workspace_id, utcnow().isoformat()),
        )
        conn.commit()

        if cursor.rowcount and track and self.tracker:
            await self.tracker.record_realm_change(
                "create", realm_id, realm.to_dict(), workspace_id=workspace_id
            )

    def unlink_realm_from_workspace(self, realm_id: str, workspace_id: str) -> None:
        conn = self._ensure_connected()
        conn.execute(
            "DELETE FROM realm_workspaces WHERE realm_id = ? AND workspace_id = ?",
            (realm_id, workspace_id),
        )
        conn.commit()

    def get_realm_workspaces(self, realm_id: str) -> list[Workspace]:
        conn = self._ensure_connected()
        rows = conn.execute(
            """
            SELECT w.* FROM realm_workspaces rw
            JOIN workspaces w ON w.id = rw.workspace_id
            WHERE rw.realm_id = ?
            ORDER BY w.name
            """,
            (realm_id,),
        ).fetchall()
        return [self._row_to_workspace(row) for row in rows]

    def get_workspace_realms(self, workspace_id: str) -> list[Realm]:
        conn = self._ensure_connected()
        rows = conn.execute(
            """
            SELECT r.* FROM realm_workspaces rw
            JOIN realms r ON r.id = rw.realm_id
            WHERE rw.workspace_id = ?
            ORDER BY r.id
            """,
            (workspace_id,),
        ).fetchall()
        return [self._row_to_realm(row) for row in rows]

    # ==================== Export / Import ====================

    def export_data(self) -> "Snapshot":
        """Everything in the store, independent of workspaces."""
        from ..sync.snapshot import Snapshot

        return Snapshot(
            realms=self.list_realms(),
            lores=self.list_lores(),
            relations=self.list_relations(),
        ).sorted()

    def import_data(self, snapshot: "Snapshot", mode: str = "replace") -> dict[str, int]:
        """Load a snapshot, keeping ids and timestamps. Never tracked.

        Args:
            snapshot: Records to load.
            mode: "replace" clears realms/lores/relations first; "merge"
                skips records that already exist.

        Returns:
            Counts of inserted records per type.
        """
        if mode not in ("replace", "merge"):
            raise ValueError(f"Unknown import mode: {mode}")

        conn = self._ensure_connected()
        counts = {"realms": 0, "lores": 0, "relations": 0}

        with conn:
            if mode == "replace":
                conn.execute("DELETE FROM lore_relations")
                conn.execute("DELETE FROM lores")
                conn.execute("DELETE FROM realms")

            for realm in snapshot.realms:
                if mode == "merge" and self.find_realm(realm.id):
                    continue
                self._insert_realm(conn, realm)
                counts["realms"] += 1

            for lore in snapshot.lores:
                if mode == "merge" and self.find_lore(lore.id):
                    continue
                self._insert_lore(conn, lore)
                counts["lores"] += 1

            for relation in snapshot.relations:
                if mode == "merge" and self.find_relation(
                    relation.from_lore_id, relation.to_lore_id, relation.type
                ):
                    continue
                conn.execute(
                    """
                    INSERT INTO lore_relations (
                        from_lore_id, to_lore_id, type, strength, metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        relation.from_lore_id,
                        relation.to_lore_id,
                        relation.type,
                        relation.strength,
                        json.dumps(relation.metadata) if relation.metadata else None,
                        relation.created_at.isoformat(),
                    ),
                )
                counts["relations"] += 1

        logger.info(
            f"Imported {counts['realms']} realms, {counts['lores']} lores, "
            f"{counts['relations']} relations ({mode})"
        )
        return counts

    def get_stats(self) -> dict[str, Any]:
        conn = self._ensure_connected()
        stats = {}
        for table, key in (
            ("realms", "realms_count"),
            ("lores", "lores_count"),
            ("lore_relations", "relations_count"),
            ("workspaces", "workspaces_count"),
        ):
            stats[key] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        return stats


__all__ = ["LoreStore", "WorkspaceError"]
