"""FHIR server access for offline sync."""

from omnicare_sync.healthcare.fhir_client_async import HttpFHIRGateway
from omnicare_sync.healthcare.fhir_gateway import FHIRGateway, RemoteResource

__all__ = ["FHIRGateway", "HttpFHIRGateway", "RemoteResource"]
