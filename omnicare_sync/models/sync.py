"""Offline sync data models.

Record and conflict shapes shared by the secure store, the retry queue and
the sync engine. Status-dependent fields are checked by validators so a
record cannot, for example, be ``synced`` while still carrying a pending
operation.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.monotonic() * 1000


class DataClassification(str, Enum):
    """Sensitivity tier governing encryption and retention."""

    PHI = "phi"
    SENSITIVE = "sensitive"
    GENERAL = "general"


class SyncStatus(str, Enum):
    """Synchronization status of a stored record."""

    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"
    FAILED = "failed"


class SyncOperation(str, Enum):
    """Sync operation types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncDirection(str, Enum):
    """Sync direction."""

    PUSH = "push"  # Local to server
    PULL = "pull"  # Server to local
    BIDIRECTIONAL = "bidirectional"


class Priority(str, Enum):
    """Retry queue priority."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Sort rank, lower runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class ConflictType(str, Enum):
    """Kind of divergence between local and remote copies."""

    UPDATE = "update"
    DELETE = "delete"


class ResolutionWinner(str, Enum):
    """Outcome of a conflict resolution."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"


class StoredRecord(BaseModel):
    """One locally persisted resource, decrypted."""

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(..., min_length=1)
    resource_type: str = Field(..., min_length=1)
    payload: Dict[str, Any]
    classification: DataClassification = DataClassification.SENSITIVE
    local_version: int = Field(default=1, ge=0)
    remote_version: Optional[int] = None
    sync_status: SyncStatus = SyncStatus.PENDING
    pending_operation: Optional[SyncOperation] = SyncOperation.CREATE
    conflict_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_status_fields(self) -> "StoredRecord":
        """Reject field combinations the status does not allow."""
        if self.sync_status == SyncStatus.SYNCED:
            if self.remote_version is None or self.local_version != self.remote_version:
                raise ValueError("synced record must have local_version == remote_version")
            if self.pending_operation is not None or self.conflict_id is not None:
                raise ValueError("synced record cannot carry pending work or a conflict")
        elif self.sync_status == SyncStatus.PENDING:
            if self.pending_operation is None:
                raise ValueError("pending record needs a pending_operation")
            if self.conflict_id is not None:
                raise ValueError("pending record cannot carry a conflict")
        elif self.sync_status == SyncStatus.CONFLICT:
            if self.conflict_id is None:
                raise ValueError("conflicted record needs a conflict_id")
        return self

    @property
    def key(self) -> str:
        """Store key, unique across resource types."""
        return record_key(self.resource_type, self.id)

    def evolve(self, **changes: Any) -> "StoredRecord":
        """Copy with changes, re-running validation."""
        data = self.model_dump()
        data.update(changes)
        return StoredRecord.model_validate(data)


def record_key(resource_type: str, resource_id: str) -> str:
    """Build the namespaced key for a record."""
    return f"{resource_type}/{resource_id}"


class EncryptedRecord(BaseModel):
    """Persisted row for a StoredRecord; the payload only exists as ciphertext."""

    id: str
    resource_type: str
    classification: DataClassification
    ciphertext: str
    checksum: str
    key_bits: int
    local_version: int
    remote_version: Optional[int] = None
    sync_status: SyncStatus
    pending_operation: Optional[SyncOperation] = None
    conflict_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    last_accessed_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        """Store key."""
        return record_key(self.resource_type, self.id)

    def is_expired(self, now: datetime) -> bool:
        """Whether the retention window has passed."""
        return now >= self.expires_at

    def to_record(self, payload: Dict[str, Any]) -> StoredRecord:
        """Attach a decrypted payload."""
        data = self.model_dump(exclude={"ciphertext", "checksum", "key_bits"})
        data["payload"] = payload
        return StoredRecord.model_validate(data)


@dataclass
class RetryQueueItem:
    """A deferred operation awaiting successful execution."""

    id: str
    action: Callable[[], Awaitable[Any]]
    retry_count: int = 0
    max_retries: int = 3
    backoff_ms: Optional[float] = None
    priority: Priority = Priority.NORMAL
    timestamp: Optional[float] = None
    description: str = ""
    on_exhausted: Optional[Callable[["RetryQueueItem", BaseException], Awaitable[None]]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ConflictResolution(BaseModel):
    """A decision on which copy of a conflicted record wins."""

    winner: ResolutionWinner
    merged_payload: Optional[Dict[str, Any]] = None
    strategy: str = "manual"
    reason: Optional[str] = None

    @model_validator(mode="after")
    def check_merged_payload(self) -> "ConflictResolution":
        """A merged winner needs the merge result."""
        if self.winner == ResolutionWinner.MERGED and self.merged_payload is None:
            raise ValueError("merged resolution requires merged_payload")
        if self.winner != ResolutionWinner.MERGED and self.merged_payload is not None:
            raise ValueError("merged_payload is only valid for a merged resolution")
        return self


class ManualReview(BaseModel):
    """Resolver outcome asking for a human decision."""

    conflict_type: ConflictType
    reason: str


class VersionedPayload(BaseModel):
    """One side of a conflict, as seen by the resolver."""

    version: Optional[int] = None
    payload: Optional[Dict[str, Any]] = None
    classification: DataClassification = DataClassification.SENSITIVE
    updated_at: Optional[datetime] = None

    @property
    def deleted(self) -> bool:
        """A missing payload means this side deleted the record."""
        return self.payload is None


class SyncConflict(BaseModel):
    """Divergence between local and remote versions of one record."""

    id: str
    resource_type: str
    data_id: str
    classification: DataClassification = DataClassification.SENSITIVE
    local_version: int
    remote_version: Optional[int] = None
    conflict_type: ConflictType
    local_payload: Optional[Dict[str, Any]] = None
    remote_payload: Optional[Dict[str, Any]] = None
    detected_at: datetime = Field(default_factory=utcnow)
    resolved: bool = False
    resolution: Optional[ConflictResolution] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @model_validator(mode="after")
    def check_resolution(self) -> "SyncConflict":
        """Resolved conflicts carry their resolution."""
        if self.resolved and self.resolution is None:
            raise ValueError("resolved conflict requires a resolution")
        return self

    @property
    def record_key(self) -> str:
        """Key of the conflicted record."""
        return record_key(self.resource_type, self.data_id)

    def local_side(self) -> VersionedPayload:
        """Local copy for the resolver."""
        return VersionedPayload(
            version=self.local_version,
            payload=self.local_payload,
            classification=self.classification,
        )

    def remote_side(self) -> VersionedPayload:
        """Remote copy for the resolver."""
        return VersionedPayload(
            version=self.remote_version,
            payload=self.remote_payload,
            classification=self.classification,
        )


class QueueOptions(BaseModel):
    """Options for queueing a local mutation."""

    priority: Optional[Priority] = None
    classification: Optional[DataClassification] = None
    user_id: Optional[str] = None
    max_retries: Optional[int] = Field(default=None, ge=1)


class SyncOptions(BaseModel):
    """Options for one sync request."""

    direction: Optional[SyncDirection] = None
    resource_types: Optional[List[str]] = None
    since: Optional[datetime] = None


class SyncState(str, Enum):
    """Sync engine cycle state."""

    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


class SyncError(BaseModel):
    """A surfaced sync failure."""

    resource_type: str
    resource_id: str
    operation: Optional[SyncOperation] = None
    error: str
    retryable: bool
    timestamp: datetime = Field(default_factory=utcnow)


class SyncReport(BaseModel):
    """Outcome of one sync request."""

    state: SyncState = SyncState.IDLE
    skipped: bool = False
    pushed: int = 0
    retrying: int = 0
    failed: int = 0
    conflicts: int = 0
    pulled: int = 0
    deferred: int = 0
    cycles: int = 0
    errors: List[SyncError] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class SyncStatusSnapshot(BaseModel):
    """Read-only view of the engine for UIs."""

    is_online: bool
    is_syncing: bool
    state: SyncState
    last_result: Optional[SyncState] = None
    quality: str
    pending_changes: int
    failed_changes: int
    conflicted_changes: int
    queued_operations: int
    last_sync_at: Optional[datetime] = None
    errors: List[SyncError] = Field(default_factory=list)
