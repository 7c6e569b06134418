"""Backing store for realms, lores, relations and workspaces."""

from .lore_store import LoreStore, WorkspaceError

__all__ = ["LoreStore", "WorkspaceError"]
