"""Data models for offline sync."""

from omnicare_sync.models.sync import (
    ConflictResolution,
    ConflictType,
    DataClassification,
    EncryptedRecord,
    ManualReview,
    Priority,
    ResolutionWinner,
    RetryQueueItem,
    StoredRecord,
    SyncConflict,
    SyncOperation,
    SyncStatus,
    VersionedPayload,
)

__all__ = [
    "ConflictResolution",
    "ConflictType",
    "DataClassification",
    "EncryptedRecord",
    "ManualReview",
    "Priority",
    "ResolutionWinner",
    "RetryQueueItem",
    "StoredRecord",
    "SyncConflict",
    "SyncOperation",
    "SyncStatus",
    "VersionedPayload",
]
