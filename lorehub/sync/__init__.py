"""Multi-device sync of lore workspaces over git.

Every tracked mutation becomes a ChangeEvent stamped with a vector clock.
Events travel as files in a per-workspace git repository; pulling replays
other devices' events and flags concurrent edits to the same record as
conflicts instead of overwriting either side.
"""

from .adapter import AdapterState, SyncAdapter, SyncResult, SyncSetupError
from .change_log import ChangeEvent, ChangeLog
from .git import GitError
from .state import SyncConflict, SyncState, SyncStateStore
from .tracker import ChangeTracker
from .vector_clock import ClockOrder, VectorClock

__all__ = [
    "AdapterState",
    "ChangeEvent",
    "ChangeLog",
    "ChangeTracker",
    "ClockOrder",
    "GitError",
    "SyncAdapter",
    "SyncConflict",
    "SyncResult",
    "SyncSetupError",
    "SyncState",
    "SyncStateStore",
    "VectorClock",
]
