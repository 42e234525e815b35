"""
Audit Logging Module.

Audit trail for offline PHI handling: every encrypt, decrypt, purge and
conflict resolution produces an AuditEntry. Entries are kept in a bounded
in-memory log, written through structlog and forwarded to registered sinks
(the external compliance collaborator).
"""

import json
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from omnicare_sync.models.sync import utcnow
from omnicare_sync.utils.logging import get_logger

logger = get_logger("audit")

AuditSink = Callable[["AuditEntry"], None]


class AuditAction(str, Enum):
    """Types of audit events in the offline subsystem."""

    DATA_ENCRYPTED = "DATA_ENCRYPTED"
    DATA_DECRYPTED = "DATA_DECRYPTED"
    DATA_DELETED = "DATA_DELETED"
    DATA_PURGED = "DATA_PURGED"
    DATA_EXPORTED = "DATA_EXPORTED"
    DATA_IMPORTED = "DATA_IMPORTED"
    DATA_CLEARED = "DATA_CLEARED"
    ACCESS_DENIED = "ACCESS_DENIED"
    INTEGRITY_FAILURE = "INTEGRITY_FAILURE"
    CONFLICT_DETECTED = "CONFLICT_DETECTED"
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"
    SYNC_FAILED = "SYNC_FAILED"


class AuditSeverity(str, Enum):
    """Audit entry severity."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class AuditEntry(BaseModel):
    """A single audit record."""

    timestamp: datetime = Field(default_factory=utcnow)
    action: AuditAction
    severity: AuditSeverity = AuditSeverity.INFO
    description: str = ""
    user_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class AuditLogger:
    """Handles audit logging for offline data access."""

    def __init__(
        self,
        enabled: bool = True,
        max_entries: int = 10_000,
        sinks: Optional[List[AuditSink]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the audit logger."""
        self.enabled = enabled
        self.max_entries = max_entries
        self._entries: List[AuditEntry] = []
        self._sinks: List[AuditSink] = list(sinks or [])
        self._clock = clock or utcnow

    def add_sink(self, sink: AuditSink) -> Callable[[], None]:
        """Register a sink; returns a callable that removes it again."""
        self._sinks.append(sink)

        def remove() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return remove

    def log(
        self,
        action: AuditAction,
        description: str = "",
        severity: AuditSeverity = AuditSeverity.INFO,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEntry]:
        """Record an audit entry."""
        if not self.enabled:
            return None

        entry = AuditEntry(
            timestamp=self._clock(),
            action=action,
            severity=severity,
            description=description,
            user_id=user_id,
            metadata=metadata,
        )
        self._entries.append(entry)
        if len(self._entries) > self.max_entries:
            del self._entries[: len(self._entries) - self.max_entries]

        log_method = logger.warning if severity != AuditSeverity.INFO else logger.info
        log_method(
            "audit_event",
            action=action.value,
            severity=severity.value,
            user_id=user_id,
            description=description,
            compliance="HIPAA",
        )

        for sink in list(self._sinks):
            try:
                sink(entry)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.error("audit_sink_failed", action=action.value, exc_info=True)

        return entry

    def get_entries(
        self,
        action: Optional[AuditAction] = None,
        user_id: Optional[str] = None,
        severity: Optional[AuditSeverity] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AuditEntry]:
        """Get audit entries matching all given filters, oldest first."""
        entries = self._entries
        if action is not None:
            entries = [e for e in entries if e.action == action]
        if user_id is not None:
            entries = [e for e in entries if e.user_id == user_id]
        if severity is not None:
            entries = [e for e in entries if e.severity == severity]
        if start is not None:
            entries = [e for e in entries if e.timestamp >= start]
        if end is not None:
            entries = [e for e in entries if e.timestamp <= end]
        return list(entries)

    def count(self, action: AuditAction) -> int:
        """Number of retained entries for an action."""
        return sum(1 for e in self._entries if e.action == action)

    def prune(self, retention_days: int) -> int:
        """Drop entries older than the retention window."""
        cutoff = self._clock() - timedelta(days=retention_days)
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.timestamp >= cutoff]
        return before - len(self._entries)

    def export_json(self) -> str:
        """Export the retained log for compliance review."""
        return json.dumps(
            [entry.model_dump(mode="json") for entry in self._entries], indent=2
        )

    def clear(self) -> None:
        """Drop all retained entries."""
        self._entries.clear()
