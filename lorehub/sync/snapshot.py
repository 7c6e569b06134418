"""Deterministic export of a workspace's realms, lores and relations.

Two devices holding the same logical state must write byte-identical files,
so records are sorted by id, keys are sorted, and nothing time-of-export
dependent is written.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..models import Lore, LoreRelation, Realm, Workspace

if TYPE_CHECKING:
    from ..store import LoreStore

logger = logging.getLogger(__name__)

STATE_DIR = "state"
REALMS_FILE = "realms.json"
LORES_FILE = "lores.json"
RELATIONS_FILE = "relations.json"
SNAPSHOT_FILES = (REALMS_FILE, LORES_FILE, RELATIONS_FILE)


def dump_json(data: Any) -> str:
    """Stable JSON text used for every file committed to the sync repository."""
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


@dataclass
class Snapshot:
    """Full logical state of a workspace at one point."""

    realms: list[Realm] = field(default_factory=list)
    lores: list[Lore] = field(default_factory=list)
    relations: list[LoreRelation] = field(default_factory=list)

    def sorted(self) -> "Snapshot":
        return Snapshot(
            realms=sorted(self.realms, key=lambda r: r.id),
            lores=sorted(self.lores, key=lambda l: l.id),
            relations=sorted(
                self.relations,
                key=lambda r: (r.from_lore_id, r.to_lore_id, r.type),
            ),
        )

    def to_files(self) -> dict[str, str]:
        """Render as {filename: text} for the state directory."""
        ordered = self.sorted()
        return {
            REALMS_FILE: dump_json([r.to_dict() for r in ordered.realms]),
            LORES_FILE: dump_json([l.to_dict() for l in ordered.lores]),
            RELATIONS_FILE: dump_json([r.to_dict() for r in ordered.relations]),
        }

    @classmethod
    def from_files(cls, files: dict[str, str]) -> "Snapshot":
        def load(name: str) -> list[dict[str, Any]]:
            text = files.get(name)
            return json.loads(text) if text else []

        return cls(
            realms=[Realm.from_dict(d) for d in load(REALMS_FILE)],
            lores=[Lore.from_dict(d) for d in load(LORES_FILE)],
            relations=[LoreRelation.from_dict(d) for d in load(RELATIONS_FILE)],
        )


def build_snapshot(store: "LoreStore", workspace: Workspace) -> Snapshot:
    """Collect everything belonging to a workspace, applying its filters.

    A relation is included only when both of its lores are.
    """
    filters = workspace.filters
    realms = store.get_workspace_realms(workspace.id)

    lores: list[Lore] = []
    for realm in realms:
        for lore in store.list_lores_by_realm(realm.id):
            if filters is None or filters.matches(lore):
                lores.append(lore)

    lore_ids = {lore.id for lore in lores}
    relations: dict[str, LoreRelation] = {}
    for lore_id in sorted(lore_ids):
        for relation in store.list_relations_by_lore(lore_id):
            if relation.from_lore_id in lore_ids and relation.to_lore_id in lore_ids:
                relations[relation.key] = relation

    return Snapshot(realms=realms, lores=lores, relations=list(relations.values())).sorted()


def write_snapshot(snapshot: Snapshot, root: str | Path) -> list[Path]:
    """Write snapshot files under ``root/state``, removing stale files.

    Files whose content is already identical are left untouched.

    Returns:
        Paths that were (re)written.
    """
    state_dir = Path(root) / STATE_DIR
    state_dir.mkdir(parents=True, exist_ok=True)

    files = snapshot.to_files()
    written = []
    for name, text in files.items():
        path = state_dir / name
        if path.exists() and path.read_text(encoding="utf-8") == text:
            continue
        path.write_text(text, encoding="utf-8")
        written.append(path)

    for stale in state_dir.iterdir():
        if stale.is_file() and stale.name not in files:
            stale.unlink()
            logger.debug(f"Removed stale snapshot file {stale.name}")

    return written


def read_snapshot(root: str | Path) -> Snapshot:
    """Read a snapshot previously written with write_snapshot."""
    state_dir = Path(root) / STATE_DIR
    files = {}
    for name in SNAPSHOT_FILES:
        path = state_dir / name
        if path.exists():
            files[name] = path.read_text(encoding="utf-8")
    return Snapshot.from_files(files)
