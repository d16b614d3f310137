"""Application state shared between clients through one DynamoDB table.

Provides the optimistic, version-counted synchronizer plus a session driver
and a local snapshot for restarts.
"""

from .app_state import (
    ALWAYS_ACTIVE,
    MAX_BATCH,
    AppState,
    AppStateError,
    Updates,
    account_incomplete,
    go_active,
    idle,
    initial_load,
    is_active,
    make_app_state,
    save,
    get_value,
    scan_keys,
    store,
    update,
)
from .session import QueueFullError, SyncResult, SyncSession, SyncStatus
from .snapshot import LocalSnapshot, SnapshotData

__all__ = [
    "ALWAYS_ACTIVE",
    "MAX_BATCH",
    "AppState",
    "AppStateError",
    "Updates",
    "account_incomplete",
    "go_active",
    "idle",
    "initial_load",
    "is_active",
    "make_app_state",
    "save",
    "get_value",
    "scan_keys",
    "store",
    "update",
    "QueueFullError",
    "SyncResult",
    "SyncSession",
    "SyncStatus",
    "LocalSnapshot",
    "SnapshotData",
]
