"""Composition point wiring the store, change log and tracker together."""

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import Config
from .store import LoreStore
from .sync.change_log import ChangeLog
from .sync.device import get_or_create_device_id
from .sync.state import SyncStateStore
from .sync.tracker import ChangeTracker

logger = logging.getLogger(__name__)


@dataclass
class LoreContext:
    """Everything a command needs, built once per process."""

    config: Config
    store: LoreStore
    change_log: ChangeLog
    state_store: SyncStateStore
    tracker: ChangeTracker
    device_id: str

    async def close(self) -> None:
        await self.tracker.close()
        self.store.close()
        self.change_log.close()
        self.state_store.close()


def open_context(config: Config) -> LoreContext:
    """Open the databases and bind a ChangeTracker to the store.

    The tracker starts disabled when ``sync.enabled`` is false.
    """
    sync = config.sync
    device_id = sync.device_id or get_or_create_device_id(sync.device_id_path)

    state_db = sync.state_db_path if sync.state_db_path == ":memory:" else Path(sync.state_db_path).expanduser()
    change_log = ChangeLog(state_db)
    change_log.connect()
    state_store = SyncStateStore(state_db)
    state_store.connect()

    store = LoreStore(config.database.path)
    store.connect()

    tracker = ChangeTracker(sync, device_id, change_log, state_store)
    tracker.initialize(store)

    logger.debug(f"Opened lorehub context for device {device_id}")
    return LoreContext(
        config=config,
        store=store,
        change_log=change_log,
        state_store=state_store,
        tracker=tracker,
        device_id=device_id,
    )
