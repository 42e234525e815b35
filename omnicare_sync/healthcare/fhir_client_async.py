"""Async FHIR gateway over HTTP.

Speaks the FHIR REST API with httpx. Local records carry client-assigned
ids, so creates are ``PUT [type]/[id]``. Optimistic concurrency uses weak
ETags (``If-Match: W/"n"``). HTTP outcomes are mapped onto the sync error
taxonomy so the retry queue can tell transient failures from rejections.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urljoin

import httpx

from omnicare_sync.core.exceptions import (
    ConflictError,
    OfflineSyncError,
    PermanentRejectionError,
    TransientNetworkError,
)
from omnicare_sync.healthcare.fhir_gateway import (
    FHIRGateway,
    RemoteResource,
    format_etag,
    latest_per_resource,
    parse_version,
)
from omnicare_sync.utils.logging import get_logger

logger = get_logger(__name__)

TRANSIENT_STATUS_CODES = {408, 429}
CONFLICT_STATUS_CODES = {409, 412}


class HttpFHIRGateway(FHIRGateway):
    """Async FHIR client for real server interactions."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        access_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize FHIR client.

        Args:
            base_url: Base URL of the FHIR server
            timeout: Request timeout in seconds
            access_token: Bearer token sent with every request
            transport: Custom httpx transport (tests use ``httpx.MockTransport``)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.access_token = access_token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {
                "Accept": "application/fhir+json",
                "Content-Type": "application/fhir+json",
            }
            if self.access_token:
                headers["Authorization"] = f"Bearer {self.access_token}"
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _url(self, path: str) -> str:
        return urljoin(self.base_url + "/", path)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            logger.warning("fhir_request_failed", method=method, error=type(e).__name__)
            raise TransientNetworkError(f"Failed to reach FHIR server: {e}") from e

    async def create(
        self, resource_type: str, resource_id: str, payload: Dict[str, Any]
    ) -> RemoteResource:
        body = {**payload, "resourceType": resource_type, "id": resource_id}
        response = await self._request(
            "PUT", self._url(f"{resource_type}/{resource_id}"), json=body
        )
        await self._check(response, resource_type, resource_id)
        return self._to_remote(response, resource_type, resource_id)

    async def update(
        self,
        resource_type: str,
        resource_id: str,
        payload: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> RemoteResource:
        headers = {}
        if expected_version is not None:
            headers["If-Match"] = format_etag(expected_version)
        body = {**payload, "resourceType": resource_type, "id": resource_id}
        response = await self._request(
            "PUT",
            self._url(f"{resource_type}/{resource_id}"),
            json=body,
            headers=headers,
        )
        await self._check(response, resource_type, resource_id)
        return self._to_remote(response, resource_type, resource_id)

    async def delete(
        self,
        resource_type: str,
        resource_id: str,
        expected_version: Optional[int] = None,
    ) -> RemoteResource:
        headers = {}
        if expected_version is not None:
            headers["If-Match"] = format_etag(expected_version)
        response = await self._request(
            "DELETE", self._url(f"{resource_type}/{resource_id}"), headers=headers
        )
        if response.status_code not in (404, 410):
            await self._check(response, resource_type, resource_id)
        return RemoteResource(
            resource_type=resource_type,
            id=resource_id,
            version=parse_version(response.headers.get("ETag")),
            deleted=True,
        )

    async def read(self, resource_type: str, resource_id: str) -> Optional[RemoteResource]:
        response = await self._request("GET", self._url(f"{resource_type}/{resource_id}"))
        if response.status_code == 404:
            return None
        if response.status_code == 410:
            return RemoteResource(
                resource_type=resource_type,
                id=resource_id,
                version=parse_version(response.headers.get("ETag")),
                deleted=True,
            )
        await self._check(response, resource_type, resource_id, read_on_conflict=False)
        return self._to_remote(response, resource_type, resource_id)

    async def fetch_changes(
        self, resource_types: Iterable[str], since: Optional[datetime] = None
    ) -> List[RemoteResource]:
        changes: List[RemoteResource] = []
        for resource_type in resource_types:
            params = {"_since": since.isoformat()} if since else None
            url: Optional[str] = self._url(f"{resource_type}/_history")
            while url:
                response = await self._request("GET", url, params=params)
                await self._check(response, resource_type, "_history", read_on_conflict=False)
                bundle = response.json()
                changes.extend(self._history_entries(bundle, resource_type))
                url = _next_link(bundle)
                # The next link already carries the query
                params = None
        return latest_per_resource(changes)

    def _history_entries(
        self, bundle: Dict[str, Any], resource_type: str
    ) -> List[RemoteResource]:
        entries = []
        for entry in bundle.get("entry", []):
            request = entry.get("request", {})
            response = entry.get("response", {})
            resource = entry.get("resource")
            if request.get("method") == "DELETE" or resource is None:
                parts = request.get("url", "").split("/")
                if len(parts) < 2:
                    continue
                entries.append(
                    RemoteResource(
                        resource_type=parts[0],
                        id=parts[1],
                        version=parse_version(response.get("etag")),
                        deleted=True,
                        last_updated=response.get("lastModified"),
                    )
                )
                continue
            meta = resource.get("meta", {})
            entries.append(
                RemoteResource(
                    resource_type=resource.get("resourceType", resource_type),
                    id=resource["id"],
                    version=parse_version(meta.get("versionId") or response.get("etag")),
                    payload=resource,
                    last_updated=meta.get("lastUpdated"),
                )
            )
        return entries

    async def _check(
        self,
        response: httpx.Response,
        resource_type: str,
        resource_id: str,
        read_on_conflict: bool = True,
    ) -> None:
        """Map an HTTP status onto the sync error taxonomy."""
        status = response.status_code
        if status < 400:
            return
        if status in TRANSIENT_STATUS_CODES or status >= 500:
            raise TransientNetworkError(
                f"FHIR server returned {status} for {resource_type}/{resource_id}"
            )
        if status in CONFLICT_STATUS_CODES:
            remote = None
            if read_on_conflict:
                try:
                    remote = await self.read(resource_type, resource_id)
                except OfflineSyncError:
                    logger.warning(
                        "conflict_remote_read_failed", resource_type=resource_type
                    )
            raise ConflictError(
                f"Version conflict on {resource_type}/{resource_id}", remote=remote
            )
        raise PermanentRejectionError(
            f"FHIR server rejected {resource_type}/{resource_id}: {status}",
            status_code=status,
        )

    @staticmethod
    def _to_remote(
        response: httpx.Response, resource_type: str, resource_id: str
    ) -> RemoteResource:
        payload: Optional[Dict[str, Any]] = None
        if response.content:
            payload = response.json()
        meta = (payload or {}).get("meta", {})
        version = parse_version(meta.get("versionId")) or parse_version(
            response.headers.get("ETag")
        )
        return RemoteResource(
            resource_type=resource_type,
            id=resource_id,
            version=version,
            payload=payload,
            last_updated=meta.get("lastUpdated") or None,
        )


def _next_link(bundle: Dict[str, Any]) -> Optional[str]:
    for link in bundle.get("link", []):
        if link.get("relation") == "next":
            return link.get("url")
    return None
