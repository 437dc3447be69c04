"""Offline-first sync: conflict resolution, operation queue and sync manager."""

from .manager import SyncManager
from .queue import OperationQueue
from .resolver import ConflictResolver, merge_arrays, merge_strings
from .scheduler import AutoSyncScheduler
from .status import StatusChannel, Subscription

__all__ = [
    "SyncManager",
    "OperationQueue",
    "ConflictResolver",
    "merge_arrays",
    "merge_strings",
    "AutoSyncScheduler",
    "StatusChannel",
    "Subscription",
]
