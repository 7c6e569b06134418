"""lorehub: local-first project lore with git-based multi-device sync."""

__version__ = "0.1.0"
