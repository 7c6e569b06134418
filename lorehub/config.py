"""Configuration loading for lorehub."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_PATH = "~/.lorehub/config.yaml"


@dataclass
class DatabaseConfig:
    path: str = "~/.lorehub/lorehub.db"


@dataclass
class SyncConfig:
    """Configuration for git-based workspace sync."""

    enabled: bool = True
    home: str = "~/.lorehub"
    repos_dir: str = "~/.lorehub/sync/repos"
    state_db_path: str = "~/.lorehub/sync.db"
    device_id: str = ""  # empty: read or create <home>/device-id
    author_name: str = ""
    author_email: str = ""
    max_error_backlog: int = 50
    remote_probe_timeout: float = 5.0

    @property
    def device_id_path(self) -> Path:
        return Path(self.home).expanduser() / "device-id"


@dataclass
class Config:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with LOREHUB_ prefix."""
    return os.environ.get(f"LOREHUB_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if db_path := _get_env("DB_PATH"):
        config.database.path = db_path

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = sync_enabled.lower() in ("true", "1", "yes")
    if home := _get_env("SYNC_HOME"):
        config.sync.home = home
    if repos_dir := _get_env("SYNC_REPOS_DIR"):
        config.sync.repos_dir = repos_dir
    if state_db := _get_env("SYNC_STATE_DB"):
        config.sync.state_db_path = state_db
    if device_id := _get_env("DEVICE_ID"):
        config.sync.device_id = device_id
    if author_name := _get_env("GIT_AUTHOR_NAME"):
        config.sync.author_name = author_name
    if author_email := _get_env("GIT_AUTHOR_EMAIL"):
        config.sync.author_email = author_email

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path).expanduser()
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "database" in data:
                config.database = DatabaseConfig(
                    path=data["database"].get("path", config.database.path)
                )

            if "sync" in data:
                sync_data = data["sync"]
                defaults = config.sync
                home = sync_data.get("home", defaults.home)
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", defaults.enabled),
                    home=home,
                    repos_dir=sync_data.get("repos_dir", f"{home}/sync/repos"),
                    state_db_path=sync_data.get("state_db_path", f"{home}/sync.db"),
                    device_id=sync_data.get("device_id") or "",
                    author_name=sync_data.get("author_name") or "",
                    author_email=sync_data.get("author_email") or "",
                    max_error_backlog=sync_data.get(
                        "max_error_backlog", defaults.max_error_backlog
                    ),
                    remote_probe_timeout=sync_data.get(
                        "remote_probe_timeout", defaults.remote_probe_timeout
                    ),
                )

    return _apply_env_overrides(config)
