"""Encrypted, classification-aware offline storage.

Security Note: This module persists PHI on client devices. Payloads are
encrypted with a per-classification AES-GCM key bound to the record key,
checksummed, and expire according to the classification's retention window.
Every encrypt, decrypt, delete and purge is written to the audit trail.
"""

import asyncio
import json
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from omnicare_sync.audit.audit_logger import AuditAction, AuditLogger, AuditSeverity
from omnicare_sync.config import Settings, get_settings
from omnicare_sync.core.exceptions import (
    AccessDeniedError,
    IntegrityError,
    InvalidTransitionError,
    NotFoundError,
)
from omnicare_sync.models.sync import (
    DataClassification,
    EncryptedRecord,
    StoredRecord,
    SyncConflict,
    SyncStatus,
    record_key,
    utcnow,
)
from omnicare_sync.monitoring import metrics
from omnicare_sync.sync.backends import (
    ACCESS_CONTROL,
    CONFLICTS,
    RECORDS,
    SYNC_METADATA,
    StorageBackend,
)
from omnicare_sync.utils.encryption import (
    ClassifiedEncryptionService,
    canonical_json,
    checksum,
)
from omnicare_sync.utils.logging import get_logger

logger = get_logger(__name__)

SNAPSHOT_FORMAT_VERSION = 1

PurgeHook = Callable[[EncryptedRecord], Union[None, Awaitable[None]]]


class SecureLocalStore:
    """Durable, encrypted, TTL-governed store for offline FHIR resources."""

    def __init__(
        self,
        backend: StorageBackend,
        encryption: ClassifiedEncryptionService,
        audit_logger: AuditLogger,
        settings: Optional[Settings] = None,
        purge_hooks: Optional[Dict[DataClassification, PurgeHook]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the store.

        Args:
            backend: Backing medium for encrypted rows
            encryption: Per-classification encryption service
            audit_logger: Audit trail sink
            settings: Retention and purge configuration
            purge_hooks: Callback per classification, run before a record is purged
            clock: Source of "now" (timezone-aware)
        """
        settings = settings or get_settings()
        self._backend = backend
        self._encryption = encryption
        self._audit = audit_logger
        self._clock = clock or utcnow
        self._ttl: Dict[DataClassification, timedelta] = {
            DataClassification.PHI: timedelta(seconds=settings.phi_ttl_seconds),
            DataClassification.SENSITIVE: timedelta(seconds=settings.sensitive_ttl_seconds),
            DataClassification.GENERAL: timedelta(seconds=settings.general_ttl_seconds),
        }
        self._purge_enabled = settings.purge_enabled
        self._purge_interval = settings.purge_interval_seconds
        self._audit_retention_days = settings.audit_retention_days
        self._purge_hooks: Dict[DataClassification, List[PurgeHook]] = {
            c: [] for c in DataClassification
        }
        for classification, hook in (purge_hooks or {}).items():
            self._purge_hooks[classification].append(hook)
        self._purging = False
        self._purge_task: Optional["asyncio.Task[None]"] = None

    @property
    def audit_logger(self) -> AuditLogger:
        """Audit trail this store writes to."""
        return self._audit

    # Lifecycle

    async def init(self) -> None:
        """Start the periodic expiry purge."""
        if self._purge_enabled and self._purge_task is None:
            self._purge_task = asyncio.create_task(self._purge_loop())
        logger.info("secure_store_initialized", purge_enabled=self._purge_enabled)

    async def shutdown(self) -> None:
        """Stop background work and close the backing medium."""
        if self._purge_task is not None:
            self._purge_task.cancel()
            try:
                await self._purge_task
            except asyncio.CancelledError:
                pass
            self._purge_task = None
        self._backend.close()

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self._purge_interval)
            try:
                await self.purge_expired()
            except Exception:  # pylint: disable=broad-exception-caught
                logger.error("periodic_purge_failed", exc_info=True)

    def add_purge_hook(self, classification: DataClassification, hook: PurgeHook) -> None:
        """Register a callback run before records of a classification are purged."""
        self._purge_hooks[classification].append(hook)

    def ttl_for(self, classification: DataClassification) -> timedelta:
        """Retention window for a classification."""
        return self._ttl[classification]

    # Records

    async def put(self, record: StoredRecord, user_id: Optional[str] = None) -> StoredRecord:
        """Encrypt and persist a record, replacing any record with the same key."""
        return await self._write(record, user_id=user_id)

    async def _write(
        self,
        record: StoredRecord,
        user_id: Optional[str] = None,
        resolving: bool = False,
    ) -> StoredRecord:
        existing = self._load_row(record.key)
        if existing is not None and not resolving:
            self._check_transition(existing.sync_status, record.sync_status, record.key)

        now = self._clock()
        stored = record.evolve(
            created_at=existing.created_at if existing else record.created_at,
            updated_at=now,
            expires_at=now + self._ttl[record.classification],
        )
        ciphertext = self._encryption.encrypt(
            canonical_json(stored.payload),
            stored.classification,
            associated_data=stored.key.encode(),
        )
        row = EncryptedRecord(
            **stored.model_dump(exclude={"payload"}),
            ciphertext=ciphertext,
            checksum=checksum(stored.payload),
            key_bits=self._encryption.key_bits(stored.classification),
        )
        self._backend.put(RECORDS, stored.key, row.model_dump(mode="json"))
        if user_id:
            self._backend.put(
                ACCESS_CONTROL,
                stored.key,
                {
                    "owner_id": user_id,
                    "classification": stored.classification.value,
                    "granted_at": now.isoformat(),
                },
            )

        self._audit.log(
            AuditAction.DATA_ENCRYPTED,
            f"Stored {stored.resource_type} offline",
            user_id=user_id,
            metadata={
                "resource_type": stored.resource_type,
                "classification": stored.classification.value,
                "key_bits": row.key_bits,
            },
        )
        return stored

    async def get(
        self,
        resource_type: str,
        resource_id: str,
        user_id: Optional[str] = None,
    ) -> StoredRecord:
        """Decrypt and verify a record.

        Raises:
            NotFoundError: absent or past its expiry
            AccessDeniedError: owned by another user
            IntegrityError: checksum or authentication tag mismatch
        """
        key = record_key(resource_type, resource_id)
        row = self._load_row(key)
        now = self._clock()
        if row is None:
            raise NotFoundError(f"{key} not found")
        if row.is_expired(now):
            raise NotFoundError(f"{key} expired")
        self._check_access(key, user_id)

        payload = self._decrypt_payload(row)

        row.last_accessed_at = now
        self._backend.put(RECORDS, key, row.model_dump(mode="json"))
        self._audit.log(
            AuditAction.DATA_DECRYPTED,
            f"Read {resource_type} from offline store",
            user_id=user_id,
            metadata={
                "resource_type": resource_type,
                "classification": row.classification.value,
            },
        )
        return row.to_record(payload)

    def _decrypt_payload(self, row: EncryptedRecord) -> Dict[str, Any]:
        try:
            plaintext = self._encryption.decrypt(
                row.ciphertext, row.classification, associated_data=row.key.encode()
            )
            payload = json.loads(plaintext)
        except (IntegrityError, json.JSONDecodeError) as e:
            self._report_corruption(row.key, str(e))
            if isinstance(e, IntegrityError):
                raise
            raise IntegrityError(f"{row.key} payload is not valid JSON") from e

        if checksum(payload) != row.checksum:
            self._report_corruption(row.key, "checksum mismatch")
            raise IntegrityError(f"{row.key} failed checksum verification")
        return payload  # type: ignore[no-any-return]

    def _report_corruption(self, key: str, reason: str) -> None:
        logger.error("offline_record_corrupted", key=key, reason=reason)
        self._audit.log(
            AuditAction.INTEGRITY_FAILURE,
            f"Integrity verification failed for {key}",
            severity=AuditSeverity.ERROR,
            metadata={"reason": reason},
        )

    async def get_metadata(
        self, resource_type: str, resource_id: str
    ) -> Optional[EncryptedRecord]:
        """Record metadata without decrypting, including expired rows."""
        return self._load_row(record_key(resource_type, resource_id))

    async def update_sync_state(
        self, resource_type: str, resource_id: str, **changes: Any
    ) -> EncryptedRecord:
        """Change sync bookkeeping fields without touching the ciphertext."""
        key = record_key(resource_type, resource_id)
        row = self._load_row(key)
        if row is None:
            raise NotFoundError(f"{key} not found")
        if "sync_status" in changes:
            self._check_transition(row.sync_status, changes["sync_status"], key)

        # Validate the new state against the record invariants
        row.to_record({}).evolve(**changes)

        updated = row.model_copy(update={**changes, "updated_at": self._clock()})
        self._backend.put(RECORDS, key, updated.model_dump(mode="json"))
        return updated

    async def list_records(
        self,
        sync_status: Optional[SyncStatus] = None,
        resource_type: Optional[str] = None,
    ) -> List[EncryptedRecord]:
        """Record metadata, filtered; payloads stay encrypted."""
        rows = [EncryptedRecord.model_validate(row) for _, row in self._backend.items(RECORDS)]
        if sync_status is not None:
            rows = [r for r in rows if r.sync_status == sync_status]
        if resource_type is not None:
            rows = [r for r in rows if r.resource_type == resource_type]
        return rows

    async def delete(self, resource_type: str, resource_id: str) -> bool:
        """Remove a record and its access-control metadata. Idempotent."""
        key = record_key(resource_type, resource_id)
        removed = self._backend.delete(RECORDS, key)
        self._backend.delete(ACCESS_CONTROL, key)
        if removed:
            self._audit.log(
                AuditAction.DATA_DELETED,
                f"Deleted {resource_type} from offline store",
                metadata={"resource_type": resource_type},
            )
        return removed

    async def purge_expired(self) -> int:
        """Delete records past their expiry; returns how many were purged."""
        if self._purging:
            logger.debug("purge_already_running")
            return 0

        self._purging = True
        try:
            now = self._clock()
            purged = 0
            for key, raw in self._backend.items(RECORDS):
                row = EncryptedRecord.model_validate(raw)
                if not row.is_expired(now):
                    continue
                try:
                    await self._run_purge_hooks(row)
                except Exception:  # pylint: disable=broad-exception-caught
                    logger.error("purge_hook_failed", key=key, exc_info=True)
                    continue
                self._backend.delete(RECORDS, key)
                self._backend.delete(ACCESS_CONTROL, key)
                metrics.records_purged_total.labels(
                    classification=row.classification.value
                ).inc()
                purged += 1

            self._audit.prune(self._audit_retention_days)
            if purged:
                self._audit.log(
                    AuditAction.DATA_PURGED,
                    f"Purged {purged} expired items",
                    metadata={"count": purged},
                )
            logger.info("offline_purge_completed", purged=purged)
            return purged
        finally:
            self._purging = False

    async def _run_purge_hooks(self, row: EncryptedRecord) -> None:
        for hook in self._purge_hooks[row.classification]:
            result = hook(row)
            if asyncio.iscoroutine(result):
                await result

    # Conflicts

    async def save_conflict(self, conflict: SyncConflict) -> None:
        """Persist a conflict; its payload copies are encrypted like records."""
        ciphertext = self._encryption.encrypt(
            conflict.model_dump_json(),
            conflict.classification,
            associated_data=f"conflict:{conflict.id}".encode(),
        )
        self._backend.put(
            CONFLICTS,
            conflict.id,
            {
                "id": conflict.id,
                "resource_type": conflict.resource_type,
                "data_id": conflict.data_id,
                "classification": conflict.classification.value,
                "resolved": conflict.resolved,
                "ciphertext": ciphertext,
            },
        )
        self._audit.log(
            AuditAction.DATA_ENCRYPTED,
            f"Stored conflict for {conflict.resource_type}",
            metadata={"conflict_id": conflict.id, "kind": "conflict"},
        )

    async def get_conflict(self, conflict_id: str) -> SyncConflict:
        """Load and decrypt a conflict."""
        row = self._backend.get(CONFLICTS, conflict_id)
        if row is None:
            raise NotFoundError(f"Conflict {conflict_id} not found")
        return self._decrypt_conflict(row)

    def _decrypt_conflict(self, row: Dict[str, Any]) -> SyncConflict:
        classification = DataClassification(row["classification"])
        plaintext = self._encryption.decrypt(
            row["ciphertext"],
            classification,
            associated_data=f"conflict:{row['id']}".encode(),
        )
        try:
            conflict = SyncConflict.model_validate_json(plaintext)
        except ValidationError as e:
            self._report_corruption(f"conflict:{row['id']}", "invalid conflict body")
            raise IntegrityError(f"Conflict {row['id']} is malformed") from e
        self._audit.log(
            AuditAction.DATA_DECRYPTED,
            f"Read conflict for {conflict.resource_type}",
            metadata={"conflict_id": conflict.id, "kind": "conflict"},
        )
        return conflict

    async def list_conflicts(self, resolved: Optional[bool] = None) -> List[SyncConflict]:
        """Conflicts, optionally filtered by resolution state, oldest first."""
        conflicts = [
            self._decrypt_conflict(row)
            for _, row in self._backend.items(CONFLICTS)
            if resolved is None or bool(row["resolved"]) == resolved
        ]
        return sorted(conflicts, key=lambda c: c.detected_at)

    async def commit_resolution(
        self,
        conflict: SyncConflict,
        record: Optional[StoredRecord] = None,
        delete_record: bool = False,
    ) -> None:
        """Write a resolved conflict and the record state it decided."""
        if not conflict.resolved or conflict.resolution is None:
            raise InvalidTransitionError(f"Conflict {conflict.id} is not resolved")

        if record is not None:
            await self._write(record, resolving=True)
        elif delete_record:
            await self.delete(conflict.resource_type, conflict.data_id)
        await self.save_conflict(conflict)

        self._audit.log(
            AuditAction.CONFLICT_RESOLVED,
            f"Resolved conflict on {conflict.resource_type}",
            user_id=conflict.resolved_by,
            metadata={
                "conflict_id": conflict.id,
                "winner": conflict.resolution.winner.value,
                "strategy": conflict.resolution.strategy,
            },
        )

    # Sync metadata

    async def get_meta(self, name: str) -> Any:
        """Read a sync metadata value."""
        row = self._backend.get(SYNC_METADATA, name)
        return row["value"] if row else None

    async def set_meta(self, name: str, value: Any) -> None:
        """Write a sync metadata value (JSON-serializable)."""
        self._backend.put(SYNC_METADATA, name, {"value": value})

    # Snapshot / restore

    async def export_all(self) -> Dict[str, Any]:
        """Snapshot every namespace for backup or migration; rows stay encrypted."""
        data = self._backend.snapshot()
        self._audit.log(
            AuditAction.DATA_EXPORTED,
            "Exported offline store",
            metadata={"records": len(data.get(RECORDS, {}))},
        )
        return {
            "format_version": SNAPSHOT_FORMAT_VERSION,
            "exported_at": self._clock().isoformat(),
            "data": data,
        }

    async def import_all(self, snapshot: Dict[str, Any]) -> int:
        """Restore a snapshot; nothing changes unless every record verifies."""
        if snapshot.get("format_version") != SNAPSHOT_FORMAT_VERSION:
            raise IntegrityError("Unsupported offline snapshot format")
        data = snapshot.get("data")
        if not isinstance(data, dict):
            raise IntegrityError("Offline snapshot has no data section")

        records = data.get(RECORDS, {})
        for key, raw in records.items():
            try:
                row = EncryptedRecord.model_validate(raw)
            except ValidationError as e:
                raise IntegrityError(f"Snapshot row {key} is malformed") from e
            if row.key != key:
                raise IntegrityError(f"Snapshot row {key} does not match its key")
            self._decrypt_payload(row)

        for conflict_id, raw in data.get(CONFLICTS, {}).items():
            if not isinstance(raw, dict) or raw.get("id") != conflict_id:
                raise IntegrityError(f"Snapshot conflict {conflict_id} is malformed")

        self._backend.restore(data)
        self._audit.log(
            AuditAction.DATA_IMPORTED,
            "Imported offline store",
            metadata={"records": len(records)},
        )
        return len(records)

    # Maintenance

    async def get_storage_stats(self) -> Dict[str, Any]:
        """Counts and sizes for diagnostics; never decrypts."""
        rows = await self.list_records()
        stats: Dict[str, Any] = {
            "total_items": len(rows),
            "total_size": sum(len(r.ciphertext) for r in rows),
            "by_classification": {},
            "by_sync_status": {},
            "oldest_item": None,
            "newest_item": None,
            "unresolved_conflicts": sum(
                1 for _, row in self._backend.items(CONFLICTS) if not row["resolved"]
            ),
        }
        for row in rows:
            by_class = stats["by_classification"]
            by_class[row.classification.value] = by_class.get(row.classification.value, 0) + 1
            by_status = stats["by_sync_status"]
            by_status[row.sync_status.value] = by_status.get(row.sync_status.value, 0) + 1
        if rows:
            stats["oldest_item"] = min(r.created_at for r in rows)
            stats["newest_item"] = max(r.created_at for r in rows)
        return stats

    async def clear_all(self) -> None:
        """Wipe all offline data (emergency use)."""
        self._backend.clear()
        self._audit.log(
            AuditAction.DATA_CLEARED,
            "All offline data cleared",
            severity=AuditSeverity.WARNING,
        )

    def _load_row(self, key: str) -> Optional[EncryptedRecord]:
        raw = self._backend.get(RECORDS, key)
        if raw is None:
            return None
        try:
            return EncryptedRecord.model_validate(raw)
        except ValidationError as e:
            self._report_corruption(key, "malformed row")
            raise IntegrityError(f"{key} row is malformed") from e

    def _check_access(self, key: str, user_id: Optional[str]) -> None:
        if user_id is None:
            return
        entry = self._backend.get(ACCESS_CONTROL, key)
        if entry and entry.get("owner_id") and entry["owner_id"] != user_id:
            self._audit.log(
                AuditAction.ACCESS_DENIED,
                f"Access denied for {key}",
                severity=AuditSeverity.WARNING,
                user_id=user_id,
            )
            raise AccessDeniedError(f"{user_id} may not read {key}")

    @staticmethod
    def _check_transition(current: SyncStatus, new: SyncStatus, key: str) -> None:
        if current == SyncStatus.CONFLICT and new == SyncStatus.SYNCED:
            raise InvalidTransitionError(
                f"{key} is in conflict; resolve it before marking it synced"
            )
