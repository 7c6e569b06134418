"""Domain records shared by the store and the sync engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

LORE_TYPES = (
    "decree",
    "wisdom",
    "belief",
    "constraint",
    "requirement",
    "risk",
    "quest",
    "saga",
    "story",
    "anomaly",
    "other",
)

LORE_STATUSES = ("living", "ancient", "whispered", "proclaimed", "archived")

RELATION_TYPES = ("succeeds", "challenges", "supports", "depends_on", "bound_to")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _parse_ts(value: str | datetime | None) -> datetime:
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def relation_key(from_lore_id: str, to_lore_id: str, type: str) -> str:
    """Composite key identifying a relation."""
    return f"{from_lore_id}:{to_lore_id}:{type}"


@dataclass
class Realm:
    """A tracked project or codebase that owns lores."""

    id: str
    name: str
    path: str
    git_remote: str | None = None
    is_monorepo: bool = False
    provinces: list[str] = field(default_factory=list)
    last_seen: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "git_remote": self.git_remote,
            "is_monorepo": self.is_monorepo,
            "provinces": list(self.provinces),
            "last_seen": self.last_seen.isoformat(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Realm":
        return cls(
            id=data["id"],
            name=data["name"],
            path=data["path"],
            git_remote=data.get("git_remote"),
            is_monorepo=bool(data.get("is_monorepo", False)),
            provinces=list(data.get("provinces") or []),
            last_seen=_parse_ts(data.get("last_seen")),
            created_at=_parse_ts(data.get("created_at")),
        )


@dataclass
class Lore:
    """A recorded fact, decision or risk about a realm."""

    id: str
    realm_id: str
    content: str
    type: str
    origin: dict[str, Any]
    why: str | None = None
    provinces: list[str] = field(default_factory=list)
    sigils: list[str] = field(default_factory=list)
    confidence: int = 80
    status: str = "living"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "realm_id": self.realm_id,
            "content": self.content,
            "why": self.why,
            "type": self.type,
            "provinces": list(self.provinces),
            "sigils": list(self.sigils),
            "confidence": self.confidence,
            "origin": dict(self.origin),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Lore":
        return cls(
            id=data["id"],
            realm_id=data["realm_id"],
            content=data["content"],
            type=data.get("type", "other"),
            origin=dict(data.get("origin") or {"type": "manual", "reference": ""}),
            why=data.get("why"),
            provinces=list(data.get("provinces") or []),
            sigils=list(data.get("sigils") or []),
            confidence=int(data.get("confidence", 80)),
            status=data.get("status", "living"),
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )


@dataclass
class LoreRelation:
    """A typed, directed link between two lores."""

    from_lore_id: str
    to_lore_id: str
    type: str
    strength: float = 1.0
    metadata: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.from_lore_id == self.to_lore_id:
            raise ValueError("A lore cannot have a relation to itself")

    @property
    def key(self) -> str:
        return relation_key(self.from_lore_id, self.to_lore_id, self.type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_lore_id": self.from_lore_id,
            "to_lore_id": self.to_lore_id,
            "type": self.type,
            "strength": self.strength,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoreRelation":
        return cls(
            from_lore_id=data["from_lore_id"],
            to_lore_id=data["to_lore_id"],
            type=data["type"],
            strength=float(data.get("strength", 1.0)),
            metadata=data.get("metadata"),
            created_at=_parse_ts(data.get("created_at")),
        )


@dataclass
class WorkspaceFilters:
    """Record filters restricting what a workspace exports.

    Empty lists mean no restriction on that field.
    """

    lore_types: list[str] = field(default_factory=list)
    statuses: list[str] = field(default_factory=list)
    sigils: list[str] = field(default_factory=list)
    provinces: list[str] = field(default_factory=list)
    min_confidence: int | None = None

    def matches(self, lore: Lore) -> bool:
        if self.lore_types and lore.type not in self.lore_types:
            return False
        if self.statuses and lore.status not in self.statuses:
            return False
        if self.sigils and not set(self.sigils) & set(lore.sigils):
            return False
        if self.provinces and not set(self.provinces) & set(lore.provinces):
            return False
        if self.min_confidence is not None and lore.confidence < self.min_confidence:
            return False
        return True

    def is_empty(self) -> bool:
        return not (
            self.lore_types
            or self.statuses
            or self.sigils
            or self.provinces
            or self.min_confidence is not None
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "lore_types": list(self.lore_types),
            "statuses": list(self.statuses),
            "sigils": list(self.sigils),
            "provinces": list(self.provinces),
            "min_confidence": self.min_confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkspaceFilters":
        return cls(
            lore_types=list(data.get("lore_types") or []),
            statuses=list(data.get("statuses") or []),
            sigils=list(data.get("sigils") or []),
            provinces=list(data.get("provinces") or []),
            min_confidence=data.get("min_confidence"),
        )


@dataclass
class Workspace:
    """A named sync scope grouping realms against one remote repository."""

    id: str
    name: str
    sync_enabled: bool = False
    sync_repo: str | None = None
    sync_branch: str = "main"
    auto_sync: bool = True
    sync_interval: int = 300  # seconds
    filters: WorkspaceFilters | None = None
    is_default: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "sync_enabled": self.sync_enabled,
            "sync_repo": self.sync_repo,
            "sync_branch": self.sync_branch,
            "auto_sync": self.auto_sync,
            "sync_interval": self.sync_interval,
            "filters": self.filters.to_dict() if self.filters else None,
            "is_default": self.is_default,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
