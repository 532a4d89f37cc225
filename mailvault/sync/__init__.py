"""
Incremental sync engine for mailbox archiving.
"""

from mailvault.sync.engine import PassState, SyncEngine, SyncResult
from mailvault.sync.exceptions import (
    ObjectWriteFailure,
    StateStoreCorruption,
    SyncAbortedError,
    SyncCancelledError,
    SyncError,
    SyncLockedError,
    TokenInvalidated,
    TransientRemoteError,
)
from mailvault.sync.models import SyncEvent, SyncSession
from mailvault.sync.state_store import SyncStateStore

__all__ = [
    "SyncEngine",
    "SyncResult",
    "PassState",
    "SyncStateStore",
    "SyncSession",
    "SyncEvent",
    "SyncError",
    "SyncAbortedError",
    "SyncLockedError",
    "SyncCancelledError",
    "TransientRemoteError",
    "TokenInvalidated",
    "StateStoreCorruption",
    "ObjectWriteFailure",
]
