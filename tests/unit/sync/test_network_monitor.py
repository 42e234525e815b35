"""Tests for network status detection."""

import httpx
import pytest

from omnicare_sync.models.sync import Priority
from omnicare_sync.sync.events import SyncEventType
from omnicare_sync.sync.network_monitor import (
    ConnectionQuality,
    ConnectivityProbe,
    HttpConnectivityProbe,
    NetworkStatusMonitor,
    ProbeResult,
    classify_quality,
)


class StaticProbe(ConnectivityProbe):
    """Probe returning canned results."""

    def __init__(self, *results):
        self.results = list(results)
        self.closed = False

    async def check(self):
        return self.results.pop(0)

    async def close(self):
        self.closed = True


class TestClassifyQuality:
    """Quality thresholds."""

    @pytest.mark.parametrize(
        "rtt_ms,downlink_mbps,expected",
        [
            (30, 20, ConnectionQuality.EXCELLENT),
            (100, 5, ConnectionQuality.GOOD),
            (250, 1.5, ConnectionQuality.FAIR),
            (800, 0.3, ConnectionQuality.POOR),
            (30, 0.5, ConnectionQuality.POOR),
            (400, None, ConnectionQuality.POOR),
            (None, 15, ConnectionQuality.EXCELLENT),
            (None, None, ConnectionQuality.GOOD),
        ],
    )
    def test_thresholds(self, rtt_ms, downlink_mbps, expected):
        assert classify_quality(rtt_ms, downlink_mbps) == expected


class TestTransitions:
    """Events published on state changes."""

    @pytest.mark.asyncio
    async def test_offline_then_online(self, monitor, event_bus):
        await monitor.report(online=False)
        status = await monitor.report(online=True, rtt_ms=40, downlink_mbps=20)

        types = [e.type for e in event_bus.recent()]
        assert types == [
            SyncEventType.NETWORK_OFFLINE,
            SyncEventType.QUALITY_CHANGED,
            SyncEventType.NETWORK_ONLINE,
        ]
        assert status.online is True
        assert status.quality == ConnectionQuality.EXCELLENT

    @pytest.mark.asyncio
    async def test_repeated_signal_publishes_nothing(self, monitor, event_bus):
        await monitor.report(online=True)
        await monitor.report(online=True)

        assert event_bus.recent() == []

    @pytest.mark.asyncio
    async def test_quality_change_while_online(self, monitor, event_bus):
        await monitor.report(online=True, rtt_ms=500)

        events = event_bus.recent()
        assert [e.type for e in events] == [SyncEventType.QUALITY_CHANGED]
        assert events[0].data == {"previous": "good", "quality": "poor"}

    @pytest.mark.asyncio
    async def test_going_offline_keeps_last_quality(self, monitor):
        await monitor.report(online=True, rtt_ms=250, downlink_mbps=1.5)

        status = await monitor.report(online=False)

        assert status.quality == ConnectionQuality.FAIR
        assert status.rtt_ms is None

    @pytest.mark.asyncio
    async def test_changed_at_only_moves_on_transition(self, monitor, clock):
        start = monitor.status.changed_at
        clock.advance(seconds=10)

        await monitor.report(online=True)
        assert monitor.status.changed_at == start

        await monitor.report(online=False)
        assert monitor.status.changed_at == clock.now

    def test_initially_offline(self, event_bus, settings):
        monitor = NetworkStatusMonitor(event_bus, settings=settings, initial_online=False)

        assert monitor.is_online is False


class TestDeferral:
    """Quality-aware deferral."""

    @pytest.mark.asyncio
    async def test_deferral_only_on_poor_connection(self, monitor):
        assert monitor.should_defer("Media") is False

        await monitor.report(online=True, rtt_ms=800)

        assert monitor.should_defer("Media") is True
        assert monitor.should_defer("Media", Priority.HIGH) is False
        assert monitor.should_defer("Patient") is False


class TestProbe:
    """Probing."""

    @pytest.mark.asyncio
    async def test_check_now_reports_probe_result(self, event_bus, settings):
        probe = StaticProbe(ProbeResult(online=False))
        monitor = NetworkStatusMonitor(event_bus, settings=settings, probe=probe)

        status = await monitor.check_now()
        await monitor.stop()

        assert status.online is False
        assert probe.closed is True
        assert event_bus.recent(SyncEventType.NETWORK_OFFLINE)

    @pytest.mark.asyncio
    async def test_check_now_without_probe_is_a_no_op(self, monitor):
        status = await monitor.check_now()

        assert status.online is True

    @pytest.mark.asyncio
    async def test_http_probe_online(self):
        def handler(request):
            assert request.url.path == "/fhir/metadata"
            return httpx.Response(200, json={"resourceType": "CapabilityStatement"})

        probe = HttpConnectivityProbe(
            "https://fhir.example.org/fhir", transport=httpx.MockTransport(handler)
        )
        result = await probe.check()
        await probe.close()

        assert result.online is True
        assert result.rtt_ms is not None

    @pytest.mark.asyncio
    async def test_http_probe_connection_error_is_offline(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        probe = HttpConnectivityProbe(
            "https://fhir.example.org/fhir", transport=httpx.MockTransport(handler)
        )
        result = await probe.check()
        await probe.close()

        assert result.online is False

    @pytest.mark.asyncio
    async def test_http_probe_server_error_is_offline(self):
        probe = HttpConnectivityProbe(
            "https://fhir.example.org/fhir",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )
        result = await probe.check()
        await probe.close()

        assert result.online is False
