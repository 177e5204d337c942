"""Case service transports: contract, HTTP client and in-memory service."""

from incident_core_lib.clients.transport import CaseTransport
from incident_core_lib.clients.base import BaseServiceClient
from incident_core_lib.clients.case_service_client import CaseServiceClient
from incident_core_lib.clients.memory import InMemoryCaseService

__all__ = [
    "CaseTransport",
    "BaseServiceClient",
    "CaseServiceClient",
    "InMemoryCaseService",
]
