"""Offline storage and synchronization."""

from omnicare_sync.sync.conflict_resolver import (
    ConflictPolicy,
    ConflictResolver,
    ConflictStrategy,
    TieBreak,
)
from omnicare_sync.sync.events import EventBus, Subscription, SyncEvent, SyncEventType
from omnicare_sync.sync.network_monitor import (
    ConnectionQuality,
    NetworkStatusMonitor,
    classify_quality,
)
from omnicare_sync.sync.retry_queue import RetryQueue
from omnicare_sync.sync.runtime import OfflineSyncRuntime
from omnicare_sync.sync.secure_store import SecureLocalStore
from omnicare_sync.sync.sync_engine import SyncEngine

__all__ = [
    "ConflictPolicy",
    "ConflictResolver",
    "ConflictStrategy",
    "ConnectionQuality",
    "EventBus",
    "NetworkStatusMonitor",
    "OfflineSyncRuntime",
    "RetryQueue",
    "SecureLocalStore",
    "Subscription",
    "SyncEngine",
    "SyncEvent",
    "SyncEventType",
    "TieBreak",
    "classify_quality",
]
