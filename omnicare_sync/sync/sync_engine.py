"""
Offline Data Synchronization Engine.

Ties local mutations, the FHIR server, the retry queue and conflict handling
into one process. Local changes are persisted as ``pending`` and queued;
``sync()`` pushes ready items and pulls server changes. Version divergence
becomes a ``SyncConflict`` instead of a retry.

One cycle runs at a time. A sync requested while a cycle is running is
folded into a follow-up cycle and the caller gets the combined report.
"""

import asyncio
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from omnicare_sync.audit.audit_logger import AuditAction, AuditSeverity
from omnicare_sync.config import Settings, get_settings
from omnicare_sync.core.exceptions import (
    ConflictError,
    OfflineSyncError,
    TransientNetworkError,
)
from omnicare_sync.healthcare.fhir_gateway import FHIRGateway, RemoteResource
from omnicare_sync.models.sync import (
    ConflictResolution,
    ConflictType,
    DataClassification,
    EncryptedRecord,
    Priority,
    QueueOptions,
    ResolutionWinner,
    RetryQueueItem,
    StoredRecord,
    SyncConflict,
    SyncDirection,
    SyncError,
    SyncOperation,
    SyncOptions,
    SyncReport,
    SyncState,
    SyncStatus,
    SyncStatusSnapshot,
    record_key,
    utcnow,
)
from omnicare_sync.monitoring import metrics
from omnicare_sync.sync.conflict_resolver import ConflictResolver
from omnicare_sync.sync.events import EventBus, SyncEvent, SyncEventType
from omnicare_sync.sync.network_monitor import NetworkStatusMonitor
from omnicare_sync.sync.retry_queue import RetryQueue
from omnicare_sync.sync.secure_store import SecureLocalStore
from omnicare_sync.utils.logging import get_logger

logger = get_logger(__name__)

LAST_SYNC_KEY = "last_sync_at"
LAST_PULL_KEY = "last_pull_at"

# Resource type priorities
RESOURCE_TYPE_PRIORITIES: Dict[str, int] = {
    "Patient": 100,
    "Practitioner": 90,
    "Organization": 85,
    "Encounter": 80,
    "MedicationRequest": 75,
    "Observation": 70,
    "ServiceRequest": 65,
    "DiagnosticReport": 60,
    "CarePlan": 55,
}

PHI_RESOURCE_TYPES = {
    "AllergyIntolerance",
    "Binary",
    "CarePlan",
    "Condition",
    "DiagnosticReport",
    "DocumentReference",
    "Encounter",
    "Immunization",
    "Media",
    "MedicationRequest",
    "Observation",
    "Patient",
    "Procedure",
    "ServiceRequest",
}

GENERAL_RESOURCE_TYPES = {
    "CodeSystem",
    "Location",
    "Organization",
    "ValueSet",
}

MAX_RECENT_ERRORS = 50


def default_classification(resource_type: str) -> DataClassification:
    """Classification for a resource type when the caller gives none."""
    if resource_type in PHI_RESOURCE_TYPES:
        return DataClassification.PHI
    if resource_type in GENERAL_RESOURCE_TYPES:
        return DataClassification.GENERAL
    return DataClassification.SENSITIVE


def default_priority(resource_type: str) -> Priority:
    """Queue priority for a resource type when the caller gives none."""
    weight = RESOURCE_TYPE_PRIORITIES.get(resource_type, 50)
    if weight >= 70:
        return Priority.HIGH
    if weight >= 50:
        return Priority.NORMAL
    return Priority.LOW


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SyncEngine:
    """Orchestrates offline mutations, push/pull and conflict handling."""

    def __init__(
        self,
        store: SecureLocalStore,
        queue: RetryQueue,
        resolver: ConflictResolver,
        gateway: FHIRGateway,
        event_bus: EventBus,
        settings: Optional[Settings] = None,
        monitor: Optional[NetworkStatusMonitor] = None,
        classify: Optional[Callable[[str], DataClassification]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Secure local store, the source of truth
            queue: Retry queue holding pending pushes
            resolver: Conflict resolution policy
            gateway: Remote FHIR gateway
            event_bus: Bus for sync notifications
            settings: Sync configuration
            monitor: Network monitor; without one the engine assumes it is online
            classify: Classification for new resource types
            clock: Source of "now"
        """
        settings = settings or get_settings()
        self._store = store
        self._queue = queue
        self._resolver = resolver
        self._gateway = gateway
        self._bus = event_bus
        self._monitor = monitor
        self._classify = classify or default_classification
        self._clock = clock or utcnow

        self._timeout = settings.sync_request_timeout_seconds
        self._default_direction = SyncDirection(settings.sync_direction)
        self._sync_on_queue = settings.sync_on_queue
        self._auto_resolve = settings.auto_resolve_conflicts
        self._max_retries = settings.retry_max_retries
        self._check_interval_ms = settings.retry_check_interval_ms
        self._batch_size = settings.sync_batch_size
        self._initial_backoff_ms = settings.retry_initial_backoff_ms
        self._pull_resource_types = list(settings.sync_resource_types)

        self._state = SyncState.IDLE
        self._last_result: Optional[SyncState] = None
        self._last_sync_at: Optional[datetime] = None
        self._active: Optional["asyncio.Future[SyncReport]"] = None
        self._rerun: Optional[SyncOptions] = None
        self._report: Optional[SyncReport] = None
        self._status_index: Dict[str, SyncStatus] = {}
        self._conflicts: Dict[str, SyncConflict] = {}
        self._errors: Deque[SyncError] = deque(maxlen=MAX_RECENT_ERRORS)
        self._background: Set["asyncio.Task[Any]"] = set()
        self._hooks_registered = False

    # Lifecycle

    async def init(self) -> None:
        """Rebuild in-memory indices and the retry queue from the store."""
        requeued = 0
        for row in await self._store.list_records():
            status = row.sync_status
            if status == SyncStatus.FAILED:
                row = await self._store.update_sync_state(
                    row.resource_type,
                    row.id,
                    sync_status=SyncStatus.PENDING,
                    pending_operation=row.pending_operation or SyncOperation.UPDATE,
                )
                status = SyncStatus.PENDING
            self._status_index[row.key] = status
            if status == SyncStatus.PENDING:
                self._enqueue_push(row.resource_type, row.id, row.pending_operation)
                requeued += 1

        for conflict in await self._store.list_conflicts(resolved=False):
            self._conflicts[conflict.id] = conflict

        self._last_sync_at = _parse_timestamp(await self._store.get_meta(LAST_SYNC_KEY))

        if not self._hooks_registered:
            for classification in DataClassification:
                self._store.add_purge_hook(classification, self._on_record_purged)
            self._hooks_registered = True

        self._queue.start(
            self._check_interval_ms,
            should_run=lambda: self.is_online,
            predicate=lambda item: not self.is_deferred(item),
            limit=self._batch_size,
        )
        logger.info(
            "sync_engine_initialized",
            records=len(self._status_index),
            requeued=requeued,
            conflicts=len(self._conflicts),
        )

    async def shutdown(self) -> None:
        """Stop the retry timer and wait for background syncs to settle."""
        await self._queue.stop()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        logger.info("sync_engine_shutdown")

    @property
    def is_online(self) -> bool:
        return self._monitor.is_online if self._monitor is not None else True

    @property
    def is_syncing(self) -> bool:
        return self._active is not None

    def is_deferred(self, item: RetryQueueItem) -> bool:
        """Whether the current link quality holds this queued push back."""
        if self._monitor is None:
            return False
        return self._monitor.should_defer(
            item.metadata.get("resource_type", ""), item.priority
        )

    # Local mutations

    async def queue_operation(
        self,
        operation: SyncOperation,
        resource: Dict[str, Any],
        options: Optional[QueueOptions] = None,
    ) -> StoredRecord:
        """Record a local mutation as pending and queue it for push."""
        options = options or QueueOptions()
        resource_type = resource.get("resourceType")
        resource_id = resource.get("id")
        if not resource_type or not resource_id:
            raise OfflineSyncError(
                "Resource must have a resourceType and an id", "INVALID_RESOURCE"
            )
        key = record_key(resource_type, resource_id)

        existing = await self._store.get_metadata(resource_type, resource_id)
        if existing is not None and existing.sync_status == SyncStatus.CONFLICT:
            raise ConflictError(f"{key} has an unresolved conflict")

        classification = options.classification or (
            existing.classification if existing else self._classify(resource_type)
        )
        priority = options.priority or default_priority(resource_type)

        if existing is None:
            local_version = 1
            remote_version = None
            pending = operation
        else:
            local_version = existing.local_version + 1
            remote_version = existing.remote_version
            previous = (
                existing.pending_operation
                if existing.sync_status in (SyncStatus.PENDING, SyncStatus.FAILED)
                else None
            )
            pending = self._coalesce(previous, operation, remote_version)

        record = StoredRecord(
            id=resource_id,
            resource_type=resource_type,
            payload=resource,
            classification=classification,
            local_version=local_version,
            remote_version=remote_version,
            sync_status=SyncStatus.PENDING,
            pending_operation=pending or SyncOperation.DELETE,
        )

        if pending is None:
            # Created and deleted without ever reaching the server
            await self._store.delete(resource_type, resource_id)
            self._queue.remove(key)
            self._status_index.pop(key, None)
            logger.info("local_only_record_discarded", resource_type=resource_type)
            return record

        stored = await self._store.put(record, user_id=options.user_id)
        self._status_index[key] = SyncStatus.PENDING
        self._enqueue_push(
            resource_type,
            resource_id,
            pending,
            priority=priority,
            max_retries=options.max_retries,
        )
        metrics.operations_queued_total.labels(
            resource_type=resource_type, operation=pending.value
        ).inc()
        logger.info(
            "operation_queued",
            resource_type=resource_type,
            operation=pending.value,
            priority=priority.value,
        )
        await self._bus.publish(
            SyncEventType.OPERATION_QUEUED,
            resource_type=resource_type,
            resource_id=resource_id,
            operation=pending.value,
            priority=priority.value,
        )

        if self._sync_on_queue and self.is_online:
            # Fresh items become ready after the initial backoff
            self.request_sync(delay_seconds=self._initial_backoff_ms / 1000)
        return stored

    @staticmethod
    def _coalesce(
        previous: Optional[SyncOperation],
        operation: SyncOperation,
        remote_version: Optional[int],
    ) -> Optional[SyncOperation]:
        """Fold a new mutation into one that has not been pushed yet."""
        if previous == SyncOperation.CREATE:
            if operation == SyncOperation.UPDATE:
                return SyncOperation.CREATE
            if operation == SyncOperation.DELETE and remote_version is None:
                return None
        if previous == SyncOperation.DELETE and operation != SyncOperation.DELETE:
            return SyncOperation.UPDATE if remote_version is not None else SyncOperation.CREATE
        if operation == SyncOperation.CREATE and remote_version is not None:
            return SyncOperation.UPDATE
        return operation

    def _enqueue_push(
        self,
        resource_type: str,
        resource_id: str,
        operation: Optional[SyncOperation],
        priority: Optional[Priority] = None,
        max_retries: Optional[int] = None,
    ) -> RetryQueueItem:
        key = record_key(resource_type, resource_id)

        async def action() -> None:
            await self._push(resource_type, resource_id)

        return self._queue.enqueue(
            RetryQueueItem(
                id=key,
                action=action,
                max_retries=max_retries or self._max_retries,
                priority=priority or default_priority(resource_type),
                description=f"{operation.value if operation else 'push'} {key}",
                on_exhausted=self._on_exhausted,
                metadata={"resource_type": resource_type, "resource_id": resource_id},
            )
        )

    # Sync cycle

    async def sync(self, options: Optional[SyncOptions] = None) -> SyncReport:
        """Push ready queue items and pull server changes."""
        options = options or SyncOptions()
        if not self.is_online:
            logger.info("sync_skipped_offline")
            return SyncReport(state=self._state, skipped=True)

        if self._active is not None:
            # Coalesce into a follow-up cycle
            self._rerun = options
            return await asyncio.shield(self._active)

        active: "asyncio.Future[SyncReport]" = asyncio.get_running_loop().create_future()
        self._active = active
        report = SyncReport(started_at=self._clock())
        self._report = report
        try:
            pending: Optional[SyncOptions] = options
            while pending is not None and self.is_online:
                self._rerun = None
                await self._run_cycle(pending, report)
                pending = self._rerun
            report.finished_at = self._clock()
            active.set_result(report)
            return report
        except Exception as e:
            # Coalesced callers get the same error
            active.set_exception(e)
            active.exception()
            raise
        finally:
            self._report = None
            self._active = None
            self._state = SyncState.IDLE
            if not active.done():
                active.cancel()

    async def _run_cycle(self, options: SyncOptions, report: SyncReport) -> None:
        direction = options.direction or self._default_direction
        self._state = SyncState.SYNCING
        report.cycles += 1
        failed_before = report.failed
        await self._bus.publish(
            SyncEventType.SYNC_STARTED, direction=direction.value, cycle=report.cycles
        )
        logger.info("sync_started", direction=direction.value, cycle=report.cycles)

        try:
            if direction in (SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL):
                await self._push_phase(options, report)
                await self._bus.publish(
                    SyncEventType.SYNC_PROGRESS,
                    phase="push",
                    pushed=report.pushed,
                    deferred=report.deferred,
                )
            if direction in (SyncDirection.PULL, SyncDirection.BIDIRECTIONAL):
                await self._pull_phase(options, report)
                await self._bus.publish(
                    SyncEventType.SYNC_PROGRESS, phase="pull", pulled=report.pulled
                )
        except Exception as e:  # pylint: disable=broad-exception-caught
            self._finish_cycle(report, SyncState.ERROR)
            self._record_error("*", "*", None, e)
            logger.error("sync_failed", error=str(e), exc_info=True)
            await self._bus.publish(SyncEventType.SYNC_FAILED, error=str(e))
            return

        if self._conflicts:
            outcome = SyncState.CONFLICT
        elif report.failed > failed_before:
            outcome = SyncState.ERROR
        else:
            outcome = SyncState.SUCCESS
        self._finish_cycle(report, outcome)
        self._last_sync_at = self._clock()
        await self._store.set_meta(LAST_SYNC_KEY, self._last_sync_at.isoformat())
        logger.info(
            "sync_completed",
            state=outcome.value,
            pushed=report.pushed,
            pulled=report.pulled,
            conflicts=report.conflicts,
        )
        await self._bus.publish(
            SyncEventType.SYNC_COMPLETED,
            state=outcome.value,
            pushed=report.pushed,
            pulled=report.pulled,
            conflicts=report.conflicts,
            failed=report.failed,
            deferred=report.deferred,
        )

    def _finish_cycle(self, report: SyncReport, outcome: SyncState) -> None:
        report.state = outcome
        self._state = outcome
        self._last_result = outcome

    async def _push_phase(self, options: SyncOptions, report: SyncReport) -> None:
        resource_types = set(options.resource_types or [])
        deferred: Set[str] = set()

        def predicate(item: RetryQueueItem) -> bool:
            if resource_types and item.metadata.get("resource_type") not in resource_types:
                return False
            if self.is_deferred(item):
                deferred.add(item.id)
                return False
            return True

        # Batch after batch until a pass comes back short
        while True:
            result = await self._queue.drain(predicate=predicate, limit=self._batch_size)
            if result is None:
                # The timer or a reconnect drain got there first
                await self._queue.wait_idle()
                continue
            if len(result.attempted) < self._batch_size:
                break
        report.deferred += len(deferred)

    async def _pull_phase(self, options: SyncOptions, report: SyncReport) -> None:
        resource_types = (
            options.resource_types
            or self._pull_resource_types
            or sorted({key.split("/", 1)[0] for key in self._status_index})
        )
        if not resource_types:
            return

        since = options.since or _parse_timestamp(await self._store.get_meta(LAST_PULL_KEY))
        started = self._clock()
        changes = await self._call(self._gateway.fetch_changes(resource_types, since))
        for remote in changes:
            await self._reconcile(remote, report)
        await self._store.set_meta(LAST_PULL_KEY, started.isoformat())

    async def _call(self, awaitable: Any) -> Any:
        """Bound a remote call by the request timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(
                f"FHIR request timed out after {self._timeout}s"
            ) from e

    # Push

    async def _push(self, resource_type: str, resource_id: str) -> None:
        """Push one pending record; the retry queue calls this."""
        row = await self._store.get_metadata(resource_type, resource_id)
        if row is None or row.sync_status != SyncStatus.PENDING or row.pending_operation is None:
            return

        operation = row.pending_operation
        payload: Optional[Dict[str, Any]] = None
        try:
            if operation != SyncOperation.DELETE:
                payload = (await self._store.get(resource_type, resource_id)).payload
            remote = await self._call(self._send(operation, row, payload))
        except ConflictError as e:
            remote_copy = e.remote
            if remote_copy is None:
                remote_copy = await self._read_remote(resource_type, resource_id)
            self._queue.remove(row.key)
            await self._open_conflict(row, payload, remote_copy, auto=remote_copy is not None)
            return
        except TransientNetworkError as e:
            self._record_error(resource_type, resource_id, operation, e)
            self._count("retrying")
            metrics.push_outcomes_total.labels(outcome="retry").inc()
            raise
        except Exception as e:
            # Rejected by the server, or expired/unreadable locally
            await self._mark_failed(row, e)
            raise

        await self._apply_ack(row, operation, remote, payload)

    async def _send(
        self,
        operation: SyncOperation,
        row: EncryptedRecord,
        payload: Optional[Dict[str, Any]],
    ) -> RemoteResource:
        if operation == SyncOperation.CREATE:
            return await self._gateway.create(row.resource_type, row.id, payload or {})
        if operation == SyncOperation.UPDATE:
            return await self._gateway.update(
                row.resource_type, row.id, payload or {}, expected_version=row.remote_version
            )
        return await self._gateway.delete(
            row.resource_type, row.id, expected_version=row.remote_version
        )

    async def _read_remote(self, resource_type: str, resource_id: str) -> Optional[RemoteResource]:
        """Server copy after a conflict; None only when it could not be read."""
        try:
            remote = await self._call(self._gateway.read(resource_type, resource_id))
        except OfflineSyncError:
            logger.warning("conflict_remote_unavailable", resource_type=resource_type)
            return None
        if remote is None:
            # Gone on the server
            return RemoteResource(resource_type=resource_type, id=resource_id, deleted=True)
        return remote

    async def _apply_ack(
        self,
        row: EncryptedRecord,
        operation: SyncOperation,
        remote: RemoteResource,
        payload: Optional[Dict[str, Any]],
    ) -> None:
        current = await self._store.get_metadata(row.resource_type, row.id)
        if current is None:
            return

        if current.local_version != row.local_version or current.sync_status != SyncStatus.PENDING:
            # A newer local change arrived while this push was in flight
            if current.sync_status == SyncStatus.PENDING and remote.version is not None:
                changes: Dict[str, Any] = {"remote_version": remote.version}
                if current.pending_operation == SyncOperation.CREATE:
                    changes["pending_operation"] = SyncOperation.UPDATE
                await self._store.update_sync_state(row.resource_type, row.id, **changes)
            return

        if (
            operation == SyncOperation.UPDATE
            and remote.version is not None
            and row.remote_version is not None
            and remote.version <= row.remote_version
        ):
            logger.warning(
                "stale_server_acknowledgement",
                resource_type=row.resource_type,
                known_version=row.remote_version,
                returned_version=remote.version,
            )
            self._queue.remove(row.key)
            await self._open_conflict(row, payload, remote, auto=False)
            return

        if operation == SyncOperation.DELETE:
            await self._store.delete(row.resource_type, row.id)
            self._status_index.pop(row.key, None)
        else:
            version = (
                remote.version if remote.version is not None else (row.remote_version or 0) + 1
            )
            await self._store.update_sync_state(
                row.resource_type,
                row.id,
                sync_status=SyncStatus.SYNCED,
                local_version=version,
                remote_version=version,
                pending_operation=None,
            )
            self._status_index[row.key] = SyncStatus.SYNCED

        self._count("pushed")
        metrics.push_outcomes_total.labels(outcome="synced").inc()
        await self._bus.publish(
            SyncEventType.OPERATION_SYNCED,
            resource_type=row.resource_type,
            resource_id=row.id,
            operation=operation.value,
            version=remote.version,
        )

    async def _on_exhausted(self, item: RetryQueueItem, exc: BaseException) -> None:
        row = await self._store.get_metadata(
            item.metadata["resource_type"], item.metadata["resource_id"]
        )
        if row is not None:
            await self._mark_failed(row, exc)

    async def _mark_failed(self, row: EncryptedRecord, exc: BaseException) -> None:
        retryable = bool(getattr(exc, "retryable", False))
        if row.sync_status == SyncStatus.PENDING:
            await self._store.update_sync_state(
                row.resource_type, row.id, sync_status=SyncStatus.FAILED
            )
            self._status_index[row.key] = SyncStatus.FAILED

        self._record_error(row.resource_type, row.id, row.pending_operation, exc)
        self._count("failed")
        metrics.push_outcomes_total.labels(
            outcome="exhausted" if retryable else "rejected"
        ).inc()
        self._store.audit_logger.log(
            AuditAction.SYNC_FAILED,
            f"Sync failed for {row.resource_type}",
            severity=AuditSeverity.ERROR,
            metadata={
                "resource_type": row.resource_type,
                "operation": row.pending_operation.value if row.pending_operation else None,
                "retryable": retryable,
                "error": type(exc).__name__,
            },
        )
        logger.error(
            "operation_failed",
            resource_type=row.resource_type,
            error=type(exc).__name__,
            retryable=retryable,
        )
        await self._bus.publish(
            SyncEventType.OPERATION_FAILED,
            resource_type=row.resource_type,
            resource_id=row.id,
            operation=row.pending_operation.value if row.pending_operation else None,
            error=str(exc),
            retryable=retryable,
        )

    async def retry_failed(self) -> int:
        """Put every failed record back on the queue."""
        count = 0
        for row in await self._store.list_records(sync_status=SyncStatus.FAILED):
            operation = row.pending_operation or SyncOperation.UPDATE
            await self._store.update_sync_state(
                row.resource_type,
                row.id,
                sync_status=SyncStatus.PENDING,
                pending_operation=operation,
            )
            self._status_index[row.key] = SyncStatus.PENDING
            self._enqueue_push(row.resource_type, row.id, operation)
            count += 1
        logger.info("failed_operations_requeued", count=count)
        return count

    # Pull

    async def _reconcile(self, remote: RemoteResource, report: SyncReport) -> None:
        row = await self._store.get_metadata(remote.resource_type, remote.id)
        if row is None:
            if not remote.deleted and remote.payload is not None:
                await self._adopt_remote(remote, self._classify(remote.resource_type))
                report.pulled += 1
            return

        if (
            remote.version is not None
            and row.remote_version is not None
            and remote.version <= row.remote_version
        ):
            return

        if row.sync_status == SyncStatus.SYNCED:
            if remote.deleted:
                await self._store.delete(remote.resource_type, remote.id)
                self._status_index.pop(row.key, None)
            else:
                await self._adopt_remote(remote, row.classification)
            report.pulled += 1
        elif row.sync_status in (SyncStatus.PENDING, SyncStatus.FAILED):
            local_payload = None
            if row.pending_operation != SyncOperation.DELETE:
                local_payload = (await self._store.get(row.resource_type, row.id)).payload
            self._queue.remove(row.key)
            await self._open_conflict(row, local_payload, remote, auto=True)
        elif row.conflict_id is not None:
            await self._refresh_conflict(row.conflict_id, remote)

    async def _adopt_remote(
        self, remote: RemoteResource, classification: DataClassification
    ) -> None:
        version = remote.version or 1
        await self._store.put(
            StoredRecord(
                id=remote.id,
                resource_type=remote.resource_type,
                payload=remote.payload or {},
                classification=classification,
                local_version=version,
                remote_version=version,
                sync_status=SyncStatus.SYNCED,
                pending_operation=None,
            )
        )
        self._status_index[record_key(remote.resource_type, remote.id)] = SyncStatus.SYNCED

    async def _refresh_conflict(self, conflict_id: str, remote: RemoteResource) -> None:
        conflict = self._conflicts.get(conflict_id)
        if conflict is None or conflict.resolved:
            return
        conflict = conflict.model_copy(
            update={
                "remote_version": remote.version,
                "remote_payload": None if remote.deleted else remote.payload,
            }
        )
        await self._store.save_conflict(conflict)
        self._conflicts[conflict.id] = conflict

    # Conflicts

    async def _open_conflict(
        self,
        row: EncryptedRecord,
        local_payload: Optional[Dict[str, Any]],
        remote: Optional[RemoteResource],
        auto: bool,
    ) -> SyncConflict:
        local_deleted = row.pending_operation == SyncOperation.DELETE
        remote_deleted = remote is not None and remote.deleted
        conflict = SyncConflict(
            id=uuid.uuid4().hex,
            resource_type=row.resource_type,
            data_id=row.id,
            classification=row.classification,
            local_version=row.local_version,
            remote_version=remote.version if remote else None,
            conflict_type=(
                ConflictType.DELETE if local_deleted or remote_deleted else ConflictType.UPDATE
            ),
            local_payload=None if local_deleted else local_payload,
            remote_payload=None if remote is None or remote_deleted else remote.payload,
            detected_at=self._clock(),
        )
        await self._store.save_conflict(conflict)
        await self._store.update_sync_state(
            row.resource_type,
            row.id,
            sync_status=SyncStatus.CONFLICT,
            conflict_id=conflict.id,
        )
        self._conflicts[conflict.id] = conflict
        self._status_index[row.key] = SyncStatus.CONFLICT
        self._count("conflicts")
        metrics.conflicts_total.labels(conflict_type=conflict.conflict_type.value).inc()
        self._store.audit_logger.log(
            AuditAction.CONFLICT_DETECTED,
            f"Conflict detected on {row.resource_type}",
            severity=AuditSeverity.WARNING,
            metadata={
                "conflict_id": conflict.id,
                "conflict_type": conflict.conflict_type.value,
                "local_version": conflict.local_version,
                "remote_version": conflict.remote_version,
            },
        )
        logger.warning(
            "conflict_detected",
            resource_type=row.resource_type,
            conflict_id=conflict.id,
            conflict_type=conflict.conflict_type.value,
        )
        await self._bus.publish(
            SyncEventType.CONFLICT_DETECTED,
            conflict_id=conflict.id,
            resource_type=row.resource_type,
            resource_id=row.id,
            conflict_type=conflict.conflict_type.value,
        )

        if auto and self._auto_resolve and remote is not None:
            outcome = self._resolver.resolve(conflict.local_side(), conflict.remote_side())
            if isinstance(outcome, ConflictResolution):
                return await self.resolve_conflict(conflict.id, outcome, resolved_by="system")
            logger.info("conflict_needs_review", conflict_id=conflict.id, reason=outcome.reason)
        return conflict

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        resolved_by: Optional[str] = None,
    ) -> SyncConflict:
        """Apply a resolution to a conflict and the record it concerns."""
        conflict = self._conflicts.get(conflict_id) or await self._store.get_conflict(conflict_id)
        if conflict.resolved:
            previous = conflict.resolution
            if (
                previous is not None
                and previous.winner == resolution.winner
                and previous.merged_payload == resolution.merged_payload
            ):
                return conflict
            raise OfflineSyncError(
                f"Conflict {conflict_id} was already resolved differently",
                "CONFLICT_ALREADY_RESOLVED",
            )

        resolved = conflict.model_copy(
            update={
                "resolved": True,
                "resolution": resolution,
                "resolved_at": self._clock(),
                "resolved_by": resolved_by,
            }
        )
        key = conflict.record_key

        if resolution.winner == ResolutionWinner.REMOTE:
            if conflict.remote_payload is None:
                await self._store.commit_resolution(resolved, delete_record=True)
                self._status_index.pop(key, None)
            else:
                version = conflict.remote_version or 1
                await self._store.commit_resolution(
                    resolved,
                    record=StoredRecord(
                        id=conflict.data_id,
                        resource_type=conflict.resource_type,
                        payload=conflict.remote_payload,
                        classification=conflict.classification,
                        local_version=version,
                        remote_version=version,
                        sync_status=SyncStatus.SYNCED,
                        pending_operation=None,
                    ),
                )
                self._status_index[key] = SyncStatus.SYNCED
            self._queue.remove(key)
        else:
            payload = (
                conflict.local_payload
                if resolution.winner == ResolutionWinner.LOCAL
                else resolution.merged_payload
            )
            if payload is None:
                operation = SyncOperation.DELETE
                payload = conflict.remote_payload or {
                    "resourceType": conflict.resource_type,
                    "id": conflict.data_id,
                }
            elif conflict.remote_payload is None:
                operation = SyncOperation.CREATE
            else:
                operation = SyncOperation.UPDATE
            await self._store.commit_resolution(
                resolved,
                record=StoredRecord(
                    id=conflict.data_id,
                    resource_type=conflict.resource_type,
                    payload=payload,
                    classification=conflict.classification,
                    local_version=(conflict.remote_version or 0) + 1,
                    remote_version=conflict.remote_version,
                    sync_status=SyncStatus.PENDING,
                    pending_operation=operation,
                ),
            )
            self._status_index[key] = SyncStatus.PENDING
            self._enqueue_push(conflict.resource_type, conflict.data_id, operation)

        self._conflicts.pop(conflict_id, None)
        logger.info(
            "conflict_resolved",
            conflict_id=conflict_id,
            winner=resolution.winner.value,
            resolved_by=resolved_by,
        )
        await self._bus.publish(
            SyncEventType.CONFLICT_RESOLVED,
            conflict_id=conflict_id,
            resource_type=conflict.resource_type,
            resource_id=conflict.data_id,
            winner=resolution.winner.value,
            resolved_by=resolved_by,
        )
        return resolved

    async def get_conflicts(self, resolved: Optional[bool] = False) -> List[SyncConflict]:
        """Conflicts from the store, unresolved ones by default."""
        return await self._store.list_conflicts(resolved=resolved)

    # Status

    def get_sync_status(self) -> SyncStatusSnapshot:
        """Synchronous, side-effect free view for UIs."""
        statuses = list(self._status_index.values())
        return SyncStatusSnapshot(
            is_online=self.is_online,
            is_syncing=self.is_syncing,
            state=self._state,
            last_result=self._last_result,
            quality=self._monitor.quality.value if self._monitor is not None else "unknown",
            pending_changes=statuses.count(SyncStatus.PENDING),
            failed_changes=statuses.count(SyncStatus.FAILED),
            conflicted_changes=statuses.count(SyncStatus.CONFLICT),
            queued_operations=len(self._queue),
            last_sync_at=self._last_sync_at,
            errors=list(self._errors),
        )

    # Triggers

    def request_sync(
        self, options: Optional[SyncOptions] = None, delay_seconds: float = 0
    ) -> "asyncio.Task[SyncReport]":
        """Run ``sync()`` in the background."""

        async def run() -> SyncReport:
            if delay_seconds:
                await asyncio.sleep(delay_seconds)
            return await self.sync(options)

        task = asyncio.create_task(run())
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background_sync_failed", exc_info=task.exception())

    async def wait_until_idle(self) -> None:
        """Wait for background syncs, the running cycle and any queue drain."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._active is not None:
            await asyncio.shield(self._active)
        await self._queue.wait_idle()

    async def handle_event(self, event: SyncEvent) -> None:
        """Bus subscriber: sync when the network comes back."""
        if event.type == SyncEventType.NETWORK_ONLINE:
            self.request_sync()

    async def _on_record_purged(self, row: EncryptedRecord) -> None:
        self._status_index.pop(row.key, None)
        if row.sync_status in (SyncStatus.PENDING, SyncStatus.FAILED):
            self._queue.remove(row.key)
            logger.warning(
                "unsynced_record_purged",
                resource_type=row.resource_type,
                classification=row.classification.value,
            )
            self._store.audit_logger.log(
                AuditAction.DATA_PURGED,
                f"Unsynced {row.resource_type} expired before it reached the server",
                severity=AuditSeverity.WARNING,
                metadata={
                    "resource_type": row.resource_type,
                    "classification": row.classification.value,
                    "sync_status": row.sync_status.value,
                },
            )

    # Helpers

    def _count(self, field: str) -> None:
        if self._report is not None:
            setattr(self._report, field, getattr(self._report, field) + 1)

    def _record_error(
        self,
        resource_type: str,
        resource_id: str,
        operation: Optional[SyncOperation],
        exc: BaseException,
    ) -> None:
        self._errors.append(
            SyncError(
                resource_type=resource_type,
                resource_id=resource_id,
                operation=operation,
                error=str(exc) or type(exc).__name__,
                retryable=bool(getattr(exc, "retryable", False)),
                timestamp=self._clock(),
            )
        )
        if self._report is not None:
            self._report.errors.append(self._errors[-1])
