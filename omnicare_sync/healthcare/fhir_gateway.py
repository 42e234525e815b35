"""Remote FHIR gateway interface.

The sync engine talks to the server only through ``FHIRGateway``. Two
implementations conform to it: ``HttpFHIRGateway`` for a real FHIR server and
``InMemoryFHIRGateway`` for development and tests. Which one is used is
decided once, at construction time, by ``create_fhir_gateway``.
"""

import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

# W/"3" or "3"
_ETAG_PATTERN = re.compile(r'^(?:W/)?"?([^"]*)"?$')


class RemoteResource(BaseModel):
    """Server copy of a resource with its version marker."""

    resource_type: str
    id: str
    version: Optional[int] = None
    payload: Optional[Dict[str, Any]] = None
    deleted: bool = False
    last_updated: Optional[datetime] = None


def parse_version(value: Any) -> Optional[int]:
    """Turn a FHIR versionId or ETag into an integer version."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    match = _ETAG_PATTERN.match(str(value).strip())
    if not match:
        return None
    try:
        return int(match.group(1))
    except ValueError:
        return None


def format_etag(version: int) -> str:
    """Weak ETag used for If-Match."""
    return f'W/"{version}"'


class FHIRGateway(ABC):
    """Create, update, delete and read FHIR resources by type and id."""

    @abstractmethod
    async def create(
        self, resource_type: str, resource_id: str, payload: Dict[str, Any]
    ) -> RemoteResource:
        """Create a resource with a client-assigned id."""

    @abstractmethod
    async def update(
        self,
        resource_type: str,
        resource_id: str,
        payload: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> RemoteResource:
        """Update a resource, failing with ConflictError on a version mismatch."""

    @abstractmethod
    async def delete(
        self,
        resource_type: str,
        resource_id: str,
        expected_version: Optional[int] = None,
    ) -> RemoteResource:
        """Delete a resource. Deleting an absent resource succeeds."""

    @abstractmethod
    async def read(self, resource_type: str, resource_id: str) -> Optional[RemoteResource]:
        """Current server copy, or None when it does not exist."""

    @abstractmethod
    async def fetch_changes(
        self, resource_types: Iterable[str], since: Optional[datetime] = None
    ) -> List[RemoteResource]:
        """Latest version of every resource changed after ``since``, deletions included."""

    async def close(self) -> None:
        """Release connections."""


def latest_per_resource(resources: Iterable[RemoteResource]) -> List[RemoteResource]:
    """Collapse a change history to the newest version of each resource."""
    latest: Dict[str, RemoteResource] = {}
    for resource in resources:
        key = f"{resource.resource_type}/{resource.id}"
        current = latest.get(key)
        if current is None or (resource.version or 0) >= (current.version or 0):
            latest[key] = resource
    return sorted(latest.values(), key=lambda r: (r.resource_type, r.id))
