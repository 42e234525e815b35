"""Test configuration for OmniCare offline sync.

Shared fixtures build every component explicitly with injected clocks so
expiry and backoff can be exercised without sleeping.
"""

import logging
import os
from datetime import datetime, timedelta, timezone

import pytest

from omnicare_sync.audit.audit_logger import AuditLogger
from omnicare_sync.config import Settings
from omnicare_sync.services.fhir_gateway_mock import InMemoryFHIRGateway
from omnicare_sync.sync.backends import InMemoryStorageBackend
from omnicare_sync.sync.conflict_resolver import ConflictResolver
from omnicare_sync.sync.events import EventBus
from omnicare_sync.sync.network_monitor import NetworkStatusMonitor
from omnicare_sync.sync.retry_queue import RetryQueue
from omnicare_sync.sync.secure_store import SecureLocalStore
from omnicare_sync.sync.sync_engine import SyncEngine
from omnicare_sync.utils.encryption import ClassifiedEncryptionService

# Set testing environment BEFORE settings are built
os.environ["TESTING"] = "true"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - [MEDICAL_COMPLIANCE] %(message)s",
)

# Test data only
TEST_ENCRYPTION_KEY = "test-key-0123456789abcdefghijklm"


# Medical compliance markers - register custom markers
def pytest_configure(config):
    """Register custom markers for medical compliance."""
    config.addinivalue_line(
        "markers", "hipaa_required: mark test as requiring HIPAA compliance"
    )
    config.addinivalue_line(
        "markers", "phi_encryption: mark test as requiring PHI encryption"
    )
    config.addinivalue_line(
        "markers", "audit_required: mark test as requiring audit logging"
    )


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMillisClock:
    """Manually advanced millisecond clock for the retry queue."""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms
        return self.now


@pytest.fixture
def settings():
    """Settings with a fixed key and cheap key derivation."""
    return Settings(
        environment="test",
        encryption_key=TEST_ENCRYPTION_KEY,
        encryption_kdf_iterations=1_000,
        offline_storage_backend="memory",
        purge_enabled=False,
        sync_on_queue=False,
        sync_request_timeout_seconds=5,
        use_mock_fhir=True,
    )


@pytest.fixture
def clock():
    """Injected wall clock."""
    return FakeClock()


@pytest.fixture
def ms_clock():
    """Injected retry queue clock."""
    return FakeMillisClock()


@pytest.fixture
def audit_logger(clock):
    """In-memory audit trail."""
    return AuditLogger(clock=clock)


@pytest.fixture
def encryption(settings):
    """Per-classification encryption service."""
    return ClassifiedEncryptionService(settings=settings)


@pytest.fixture
def backend():
    """Process-local backing medium."""
    return InMemoryStorageBackend()


@pytest.fixture
def store(backend, encryption, audit_logger, settings, clock):
    """Secure local store over the in-memory backend."""
    return SecureLocalStore(backend, encryption, audit_logger, settings=settings, clock=clock)


@pytest.fixture
def queue(ms_clock):
    """Retry queue on the fake clock."""
    return RetryQueue(clock=ms_clock)


@pytest.fixture
def gateway(clock):
    """In-memory FHIR server."""
    return InMemoryFHIRGateway(clock=clock)


@pytest.fixture
def event_bus():
    """Event bus."""
    return EventBus()


@pytest.fixture
def monitor(event_bus, settings, clock):
    """Network monitor that starts online."""
    return NetworkStatusMonitor(event_bus, settings=settings, clock=clock)


@pytest.fixture
def engine(store, queue, gateway, event_bus, settings, monitor, clock):
    """Sync engine wired to the fixtures above."""
    return SyncEngine(
        store,
        queue,
        ConflictResolver(),
        gateway,
        event_bus,
        settings=settings,
        monitor=monitor,
        clock=clock,
    )
