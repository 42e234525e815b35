"""Gateway implementations and factory."""

from omnicare_sync.services.fhir_gateway_factory import create_fhir_gateway
from omnicare_sync.services.fhir_gateway_mock import InMemoryFHIRGateway

__all__ = ["InMemoryFHIRGateway", "create_fhir_gateway"]
