"""Construction and lifecycle of the offline sync subsystem.

Every component is built explicitly from settings and handed to the
components that use it; nothing is a module-level singleton. The runtime
wires the network monitor's ``network_online`` event to the retry queue
(drain) and the sync engine (sync), and owns init/shutdown order.
"""

from typing import List, Optional

from omnicare_sync.audit.audit_logger import AuditLogger
from omnicare_sync.config import Settings, get_settings
from omnicare_sync.healthcare.fhir_gateway import FHIRGateway
from omnicare_sync.services.fhir_gateway_factory import create_fhir_gateway
from omnicare_sync.sync.backends import (
    InMemoryStorageBackend,
    SQLiteStorageBackend,
    StorageBackend,
)
from omnicare_sync.sync.conflict_resolver import (
    ConflictPolicy,
    ConflictResolver,
    ConflictStrategy,
)
from omnicare_sync.sync.events import EventBus, SyncEvent, SyncEventType, Subscription
from omnicare_sync.sync.network_monitor import (
    ConnectivityProbe,
    HttpConnectivityProbe,
    NetworkStatusMonitor,
)
from omnicare_sync.sync.retry_queue import RetryQueue
from omnicare_sync.sync.secure_store import SecureLocalStore
from omnicare_sync.sync.sync_engine import SyncEngine
from omnicare_sync.utils.encryption import ClassifiedEncryptionService
from omnicare_sync.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_storage_backend(settings: Settings) -> StorageBackend:
    """Backing medium named by ``offline_storage_backend``."""
    if settings.offline_storage_backend == "memory":
        return InMemoryStorageBackend()
    return SQLiteStorageBackend(storage_path=settings.offline_storage_path)


class OfflineSyncRuntime:
    """Owns the offline sync components and their lifecycle."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        backend: Optional[StorageBackend] = None,
        gateway: Optional[FHIRGateway] = None,
        probe: Optional[ConnectivityProbe] = None,
        initial_online: bool = True,
    ) -> None:
        """Build every component from settings.

        Args:
            settings: Configuration; defaults to ``get_settings()``
            backend: Backing medium override
            gateway: FHIR gateway override
            probe: Connectivity probe override; an HTTP probe against the
                FHIR server is used when a real gateway is configured
            initial_online: Assumed network state before the first signal
        """
        self.settings = settings or get_settings()
        self.event_bus = EventBus()
        self.audit_logger = AuditLogger(
            enabled=self.settings.audit_enabled,
            max_entries=self.settings.audit_max_entries,
        )
        self.encryption = ClassifiedEncryptionService(settings=self.settings)
        self.store = SecureLocalStore(
            backend or create_storage_backend(self.settings),
            self.encryption,
            self.audit_logger,
            settings=self.settings,
        )
        self.queue = RetryQueue(
            initial_backoff_ms=self.settings.retry_initial_backoff_ms,
            multiplier=self.settings.retry_backoff_multiplier,
            max_backoff_ms=self.settings.retry_max_backoff_ms,
            max_retries=self.settings.retry_max_retries,
        )
        self.resolver = ConflictResolver(
            ConflictPolicy(strategy=ConflictStrategy(self.settings.conflict_strategy))
        )
        self.gateway = gateway or create_fhir_gateway(self.settings)
        if probe is None and gateway is None and not self.settings.use_mock_fhir:
            probe = HttpConnectivityProbe(self.settings.fhir_base_url)
        self.monitor = NetworkStatusMonitor(
            self.event_bus,
            settings=self.settings,
            probe=probe,
            initial_online=initial_online,
        )
        self.engine = SyncEngine(
            self.store,
            self.queue,
            self.resolver,
            self.gateway,
            self.event_bus,
            settings=self.settings,
            monitor=self.monitor,
        )
        self._subscriptions: List[Subscription] = []
        self._started = False

    async def init(self) -> None:
        """Start the store, the engine and the monitor, then wire reconnect handling."""
        if self._started:
            return
        setup_logging(self.settings)
        await self.store.init()
        await self.engine.init()
        self._subscriptions = [
            self.event_bus.subscribe(self._drain_on_reconnect, [SyncEventType.NETWORK_ONLINE]),
            self.event_bus.subscribe(self.engine.handle_event, [SyncEventType.NETWORK_ONLINE]),
        ]
        self.monitor.start()
        self._started = True
        logger.info("offline_sync_runtime_started", environment=self.settings.environment)

    async def shutdown(self) -> None:
        """Stop everything in reverse order of startup."""
        if not self._started:
            return
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []
        await self.monitor.stop()
        await self.engine.shutdown()
        await self.gateway.close()
        await self.store.shutdown()
        self._started = False
        logger.info("offline_sync_runtime_stopped")

    async def _drain_on_reconnect(self, event: SyncEvent) -> None:
        if len(self.queue) == 0:
            return
        logger.info("draining_retry_queue_on_reconnect", queued=len(self.queue))
        await self.queue.drain(predicate=lambda item: not self.engine.is_deferred(item))

    async def __aenter__(self) -> "OfflineSyncRuntime":
        await self.init()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()
