"""
Gateway factory for FHIR implementation selection.

CRITICAL: In production, ONLY use a real FHIR server.
The in-memory gateway is for development/testing ONLY.
"""

from typing import Optional

from omnicare_sync.config import Settings, get_settings
from omnicare_sync.core.exceptions import ConfigurationError
from omnicare_sync.healthcare.fhir_client_async import HttpFHIRGateway
from omnicare_sync.healthcare.fhir_gateway import FHIRGateway
from omnicare_sync.services.fhir_gateway_mock import InMemoryFHIRGateway
from omnicare_sync.utils.logging import get_logger

logger = get_logger(__name__)


def create_fhir_gateway(settings: Optional[Settings] = None) -> FHIRGateway:
    """
    Build the FHIR gateway for the configured environment.

    CRITICAL: Production MUST use a real FHIR server.
    Patient data synced from devices requires real infrastructure.
    """
    settings = settings or get_settings()
    environment = settings.environment.lower()

    if settings.is_production:
        if settings.use_mock_fhir:
            raise ConfigurationError(
                "CRITICAL ERROR: Cannot use mock FHIR gateway in "
                f"{environment}! Real patient data requires a real FHIR server."
            )
        if not settings.fhir_base_url:
            raise ConfigurationError(
                f"FHIR server not configured for {environment}! FHIR_BASE_URL must be set."
            )

    if settings.use_mock_fhir:
        logger.warning(
            "Using in-memory FHIR gateway - FOR DEVELOPMENT ONLY! "
            "Never use this with real patient data!"
        )
        return InMemoryFHIRGateway()

    if not settings.fhir_base_url:
        raise ConfigurationError(
            "Configure FHIR_BASE_URL or set USE_MOCK_FHIR=true for development."
        )

    logger.info("Using FHIR server", environment=environment)
    return HttpFHIRGateway(
        settings.fhir_base_url,
        timeout=settings.sync_request_timeout_seconds,
        access_token=settings.fhir_access_token,
    )
