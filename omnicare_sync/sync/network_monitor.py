"""
Network status monitor: online/offline detection and connection quality.

The monitor does not get polled per operation. Platform signals (or the
optional periodic probe) are fed into ``report()``, which publishes discrete
transitions on the event bus: ``network_online``, ``network_offline`` and
``quality_changed``. The sync engine and the retry queue react to those.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urljoin

import httpx
from pydantic import BaseModel

from omnicare_sync.config import Settings, get_settings
from omnicare_sync.models.sync import Priority, utcnow
from omnicare_sync.monitoring import metrics
from omnicare_sync.sync.events import EventBus, SyncEventType
from omnicare_sync.utils.logging import get_logger

logger = get_logger(__name__)


class ConnectionQuality(str, Enum):
    """Four-level connection quality scale."""

    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"


# (quality, max rtt ms, min downlink Mbps), best first
_QUALITY_BOUNDS = (
    (ConnectionQuality.EXCELLENT, 50, 10.0),
    (ConnectionQuality.GOOD, 150, 2.0),
    (ConnectionQuality.FAIR, 300, 1.0),
)


def classify_quality(
    rtt_ms: Optional[float] = None, downlink_mbps: Optional[float] = None
) -> ConnectionQuality:
    """Derive quality from round-trip time and bandwidth.

    An unknown measurement never drags the quality down. With no
    measurement at all the link is assumed to be good.
    """
    if rtt_ms is None and downlink_mbps is None:
        return ConnectionQuality.GOOD
    for quality, max_rtt, min_downlink in _QUALITY_BOUNDS:
        rtt_ok = rtt_ms is None or rtt_ms <= max_rtt
        downlink_ok = downlink_mbps is None or downlink_mbps >= min_downlink
        if rtt_ok and downlink_ok:
            return quality
    return ConnectionQuality.POOR


class NetworkStatus(BaseModel):
    """Snapshot of the current connectivity state."""

    online: bool
    quality: ConnectionQuality
    rtt_ms: Optional[float] = None
    downlink_mbps: Optional[float] = None
    changed_at: datetime


class ProbeResult(BaseModel):
    """Outcome of one connectivity probe."""

    online: bool
    rtt_ms: Optional[float] = None
    downlink_mbps: Optional[float] = None


class ConnectivityProbe(ABC):
    """Source of connectivity measurements."""

    @abstractmethod
    async def check(self) -> ProbeResult:
        """Measure connectivity once."""

    async def close(self) -> None:
        """Release resources."""


class HttpConnectivityProbe(ConnectivityProbe):
    """Probe the FHIR server's capability statement and time the round trip."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = urljoin(base_url.rstrip("/") + "/", "metadata")
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/fhir+json"},
            transport=transport,
        )

    async def check(self) -> ProbeResult:
        started = time.perf_counter()
        try:
            response = await self._client.get(self.url)
        except httpx.RequestError as e:
            logger.debug("connectivity_probe_failed", error=type(e).__name__)
            return ProbeResult(online=False)
        rtt_ms = (time.perf_counter() - started) * 1000
        # A 5xx still proves the network path works, but not the service
        return ProbeResult(online=response.status_code < 500, rtt_ms=rtt_ms)

    async def close(self) -> None:
        await self._client.aclose()


class NetworkStatusMonitor:
    """Track connectivity and publish transitions on the event bus."""

    def __init__(
        self,
        event_bus: EventBus,
        settings: Optional[Settings] = None,
        probe: Optional[ConnectivityProbe] = None,
        clock: Optional[Callable[[], datetime]] = None,
        initial_online: bool = True,
    ) -> None:
        """Initialize the monitor.

        Args:
            event_bus: Bus that receives transition events
            settings: Probe interval and deferrable resource types
            probe: Optional periodic connectivity probe
            clock: Source of "now"
            initial_online: Assumed state before the first signal
        """
        settings = settings or get_settings()
        self._bus = event_bus
        self._probe = probe
        self._clock = clock or utcnow
        self._probe_interval = settings.network_probe_interval_seconds
        self.deferrable_resource_types = set(settings.deferrable_resource_types)
        self._status = NetworkStatus(
            online=initial_online,
            quality=ConnectionQuality.GOOD,
            changed_at=self._clock(),
        )
        self._task: Optional["asyncio.Task[None]"] = None
        metrics.network_online.set(1 if initial_online else 0)

    @property
    def status(self) -> NetworkStatus:
        return self._status

    @property
    def is_online(self) -> bool:
        return self._status.online

    @property
    def quality(self) -> ConnectionQuality:
        return self._status.quality

    async def report(
        self,
        online: bool,
        rtt_ms: Optional[float] = None,
        downlink_mbps: Optional[float] = None,
    ) -> NetworkStatus:
        """Feed a connectivity signal and publish any resulting transitions."""
        previous = self._status
        quality = classify_quality(rtt_ms, downlink_mbps) if online else previous.quality
        went_online = online and not previous.online
        went_offline = previous.online and not online
        quality_changed = quality != previous.quality

        self._status = NetworkStatus(
            online=online,
            quality=quality,
            rtt_ms=rtt_ms if online else None,
            downlink_mbps=downlink_mbps if online else None,
            changed_at=self._clock() if (went_online or went_offline or quality_changed)
            else previous.changed_at,
        )
        metrics.network_online.set(1 if online else 0)

        # Quality first so deferral decisions on reconnect see the new value
        if quality_changed:
            logger.info(
                "connection_quality_changed",
                previous=previous.quality.value,
                quality=quality.value,
            )
            await self._bus.publish(
                SyncEventType.QUALITY_CHANGED,
                previous=previous.quality.value,
                quality=quality.value,
            )
        if went_online:
            logger.info("network_online", quality=quality.value)
            await self._bus.publish(SyncEventType.NETWORK_ONLINE, quality=quality.value)
        elif went_offline:
            logger.warning("network_offline")
            await self._bus.publish(SyncEventType.NETWORK_OFFLINE)
        return self._status

    def should_defer(self, resource_type: str, priority: Priority = Priority.NORMAL) -> bool:
        """Whether non-critical, attachment-sized work should wait for a better link."""
        return (
            self._status.quality == ConnectionQuality.POOR
            and resource_type in self.deferrable_resource_types
            and priority != Priority.HIGH
        )

    async def check_now(self) -> NetworkStatus:
        """Run the probe once and report its result."""
        if self._probe is None:
            return self._status
        result = await self._probe.check()
        return await self.report(result.online, result.rtt_ms, result.downlink_mbps)

    def start(self) -> None:
        """Start periodic probing (no-op without a probe)."""
        if self._probe is not None and self._task is None:
            self._task = asyncio.create_task(self._probe_loop())
            logger.info("network_monitor_started", interval=self._probe_interval)

    async def stop(self) -> None:
        """Stop periodic probing and release the probe."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._probe is not None:
            await self._probe.close()

    async def _probe_loop(self) -> None:
        while True:
            try:
                await self.check_now()
            except Exception:  # pylint: disable=broad-exception-caught
                logger.error("connectivity_check_failed", exc_info=True)
            await asyncio.sleep(self._probe_interval)
