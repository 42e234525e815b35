"""Tests for runtime wiring and lifecycle."""

import asyncio

import pytest

from omnicare_sync.config import Settings
from omnicare_sync.models.sync import SyncOperation, SyncStatus
from omnicare_sync.services.fhir_gateway_mock import InMemoryFHIRGateway
from omnicare_sync.sync.backends import InMemoryStorageBackend, SQLiteStorageBackend
from omnicare_sync.sync.events import SyncEventType
from omnicare_sync.sync.runtime import OfflineSyncRuntime, create_storage_backend

RUNTIME_KEY = "runtime-key-0123456789abcdefghij"


@pytest.fixture
def runtime_settings(tmp_path):
    return Settings(
        environment="test",
        encryption_key=RUNTIME_KEY,
        encryption_kdf_iterations=1_000,
        offline_storage_backend="memory",
        offline_storage_path=str(tmp_path),
        purge_enabled=False,
        sync_on_queue=False,
        use_mock_fhir=True,
        retry_initial_backoff_ms=1,
    )


def test_storage_backend_selection(runtime_settings):
    assert isinstance(create_storage_backend(runtime_settings), InMemoryStorageBackend)

    sqlite_settings = runtime_settings.model_copy(update={"offline_storage_backend": "sqlite"})
    backend = create_storage_backend(sqlite_settings)
    try:
        assert isinstance(backend, SQLiteStorageBackend)
    finally:
        backend.close()


@pytest.mark.asyncio
async def test_reconnect_drains_every_queued_item(runtime_settings):
    gateway = InMemoryFHIRGateway()
    runtime = OfflineSyncRuntime(
        settings=runtime_settings, gateway=gateway, initial_online=False
    )

    async with runtime:
        for resource_id in ("a", "b"):
            await runtime.engine.queue_operation(
                SyncOperation.CREATE, {"resourceType": "Patient", "id": resource_id}
            )
        await asyncio.sleep(0.02)
        assert gateway.calls == []

        await runtime.monitor.report(online=True)

        assert sorted(c["id"] for c in gateway.calls_for("create")) == ["a", "b"]
        await runtime.engine.wait_until_idle()
        for resource_id in ("a", "b"):
            row = await runtime.store.get_metadata("Patient", resource_id)
            assert row.sync_status == SyncStatus.SYNCED
        assert runtime.engine.get_sync_status().queued_operations == 0


@pytest.mark.asyncio
async def test_init_and_shutdown_are_idempotent(runtime_settings):
    runtime = OfflineSyncRuntime(settings=runtime_settings, gateway=InMemoryFHIRGateway())

    await runtime.init()
    await runtime.init()
    await runtime.shutdown()
    await runtime.shutdown()

    assert runtime.event_bus.subscriber_count(SyncEventType.NETWORK_ONLINE) == 0


@pytest.mark.asyncio
async def test_runtime_survives_restart_with_sqlite(runtime_settings):
    settings = runtime_settings.model_copy(update={"offline_storage_backend": "sqlite"})

    first = OfflineSyncRuntime(settings=settings, gateway=InMemoryFHIRGateway(), initial_online=False)
    async with first:
        await first.engine.queue_operation(
            SyncOperation.CREATE, {"resourceType": "Patient", "id": "a"}
        )

    second = OfflineSyncRuntime(settings=settings, gateway=InMemoryFHIRGateway(), initial_online=False)
    async with second:
        status = second.engine.get_sync_status()
        assert status.pending_changes == 1
        assert status.queued_operations == 1


@pytest.mark.asyncio
async def test_periodic_retry_holds_back_attachments_on_poor_link(runtime_settings):
    settings = runtime_settings.model_copy(update={"retry_check_interval_ms": 10})
    gateway = InMemoryFHIRGateway()
    runtime = OfflineSyncRuntime(settings=settings, gateway=gateway)

    async with runtime:
        await runtime.monitor.report(online=True, rtt_ms=800)
        await runtime.engine.queue_operation(
            SyncOperation.CREATE, {"resourceType": "Media", "id": "m1", "status": "completed"}
        )
        await asyncio.sleep(0.1)

        assert gateway.calls_for("create") == []
        assert "Media/m1" in runtime.queue
