"""In-memory FHIR gateway for development and testing.

Keeps versioned resources in a dict and enforces the same optimistic
concurrency rules as a FHIR server. Faults can be injected to simulate
outages, throttling, rejections and stale acknowledgements.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from omnicare_sync.core.exceptions import ConflictError, TransientNetworkError
from omnicare_sync.healthcare.fhir_gateway import (
    FHIRGateway,
    RemoteResource,
    latest_per_resource,
)
from omnicare_sync.models.sync import utcnow
from omnicare_sync.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _Fault:
    error: Exception
    remaining: int
    operations: Optional[Set[str]] = None


@dataclass
class _Entry:
    version: int
    payload: Optional[Dict[str, Any]]
    last_updated: datetime
    history: List[RemoteResource] = field(default_factory=list)

    @property
    def deleted(self) -> bool:
        return self.payload is None


class InMemoryFHIRGateway(FHIRGateway):
    """Mock FHIR server that simulates versioned datastore operations."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        """Initialize mock FHIR gateway."""
        self._clock = clock or utcnow
        self._resources: Dict[str, _Entry] = {}
        self._faults: List[_Fault] = []
        self._ack_overrides: List[int] = []
        self.online = True
        self.calls: List[Dict[str, Any]] = []
        logger.info("Initialized in-memory FHIR gateway")

    # Fault injection

    def inject_fault(
        self,
        error: Exception,
        times: int = 1,
        operations: Optional[Iterable[str]] = None,
    ) -> None:
        """Fail the next ``times`` calls (optionally only for some operations)."""
        self._faults.append(
            _Fault(error, times, set(operations) if operations else None)
        )

    def acknowledge_with_version(self, version: int) -> None:
        """Make the next successful write report ``version`` back to the caller."""
        self._ack_overrides.append(version)

    def set_online(self, online: bool) -> None:
        """Simulate losing or regaining the server."""
        self.online = online

    def calls_for(self, operation: str) -> List[Dict[str, Any]]:
        """Recorded calls of one operation."""
        return [c for c in self.calls if c["operation"] == operation]

    # Server-side edits

    def seed(
        self, resource_type: str, resource_id: str, payload: Dict[str, Any]
    ) -> RemoteResource:
        """Write a resource as if another client had, bumping its version."""
        return self._store(resource_type, resource_id, copy.deepcopy(payload))

    def remove(self, resource_type: str, resource_id: str) -> RemoteResource:
        """Delete a resource as if another client had."""
        return self._store(resource_type, resource_id, None)

    def current(self, resource_type: str, resource_id: str) -> Optional[RemoteResource]:
        """Current server copy without recording a call."""
        entry = self._resources.get(_key(resource_type, resource_id))
        if entry is None:
            return None
        return self._snapshot(resource_type, resource_id, entry)

    # FHIRGateway

    async def create(
        self, resource_type: str, resource_id: str, payload: Dict[str, Any]
    ) -> RemoteResource:
        self._enter("create", resource_type, resource_id)
        entry = self._resources.get(_key(resource_type, resource_id))
        if entry is not None and not entry.deleted:
            raise ConflictError(
                f"{resource_type}/{resource_id} already exists",
                remote=self._snapshot(resource_type, resource_id, entry),
            )
        return self._ack(self._store(resource_type, resource_id, copy.deepcopy(payload)))

    async def update(
        self,
        resource_type: str,
        resource_id: str,
        payload: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> RemoteResource:
        self._enter("update", resource_type, resource_id, expected_version)
        self._check_version(resource_type, resource_id, expected_version)
        return self._ack(self._store(resource_type, resource_id, copy.deepcopy(payload)))

    async def delete(
        self,
        resource_type: str,
        resource_id: str,
        expected_version: Optional[int] = None,
    ) -> RemoteResource:
        self._enter("delete", resource_type, resource_id, expected_version)
        entry = self._resources.get(_key(resource_type, resource_id))
        if entry is None or entry.deleted:
            return RemoteResource(
                resource_type=resource_type,
                id=resource_id,
                version=entry.version if entry else None,
                deleted=True,
            )
        self._check_version(resource_type, resource_id, expected_version)
        return self._ack(self._store(resource_type, resource_id, None))

    async def read(self, resource_type: str, resource_id: str) -> Optional[RemoteResource]:
        self._enter("read", resource_type, resource_id)
        return self.current(resource_type, resource_id)

    async def fetch_changes(
        self, resource_types: Iterable[str], since: Optional[datetime] = None
    ) -> List[RemoteResource]:
        types = set(resource_types)
        self._enter("fetch_changes", ",".join(sorted(types)), "_history")
        changes = [
            item
            for entry in self._resources.values()
            for item in entry.history
            if item.resource_type in types
            and (since is None or (item.last_updated is not None and item.last_updated > since))
        ]
        return latest_per_resource(changes)

    # Internals

    def _enter(
        self,
        operation: str,
        resource_type: str,
        resource_id: str,
        expected_version: Optional[int] = None,
    ) -> None:
        self.calls.append(
            {
                "operation": operation,
                "resource_type": resource_type,
                "id": resource_id,
                "expected_version": expected_version,
            }
        )
        if not self.online:
            raise TransientNetworkError("FHIR server unreachable")
        for fault in self._faults:
            if fault.operations is None or operation in fault.operations:
                fault.remaining -= 1
                if fault.remaining <= 0:
                    self._faults.remove(fault)
                raise fault.error

    def _check_version(
        self, resource_type: str, resource_id: str, expected_version: Optional[int]
    ) -> None:
        if expected_version is None:
            return
        entry = self._resources.get(_key(resource_type, resource_id))
        if entry is None or entry.deleted or entry.version != expected_version:
            remote = (
                self._snapshot(resource_type, resource_id, entry)
                if entry
                else RemoteResource(resource_type=resource_type, id=resource_id, deleted=True)
            )
            raise ConflictError(
                f"{resource_type}/{resource_id} is not at version {expected_version}",
                remote=remote,
            )

    def _store(
        self,
        resource_type: str,
        resource_id: str,
        payload: Optional[Dict[str, Any]],
    ) -> RemoteResource:
        key = _key(resource_type, resource_id)
        entry = self._resources.get(key)
        version = entry.version + 1 if entry else 1
        now = self._clock()
        if payload is not None:
            payload = {
                **payload,
                "resourceType": resource_type,
                "id": resource_id,
                "meta": {"versionId": str(version), "lastUpdated": now.isoformat()},
            }
        if entry is None:
            entry = _Entry(version=version, payload=payload, last_updated=now)
            self._resources[key] = entry
        else:
            entry.version = version
            entry.payload = payload
            entry.last_updated = now
        snapshot = self._snapshot(resource_type, resource_id, entry)
        entry.history.append(snapshot)
        return snapshot

    def _ack(self, resource: RemoteResource) -> RemoteResource:
        if self._ack_overrides:
            return resource.model_copy(update={"version": self._ack_overrides.pop(0)})
        return resource

    @staticmethod
    def _snapshot(resource_type: str, resource_id: str, entry: _Entry) -> RemoteResource:
        return RemoteResource(
            resource_type=resource_type,
            id=resource_id,
            version=entry.version,
            payload=copy.deepcopy(entry.payload),
            deleted=entry.deleted,
            last_updated=entry.last_updated,
        )


def _key(resource_type: str, resource_id: str) -> str:
    return f"{resource_type}/{resource_id}"
