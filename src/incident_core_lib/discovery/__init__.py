"""Service Discovery Module

Deployment-neutral URL resolution for the incident case service.
"""

from .service_registry import (
    ServiceRegistry,
    DeploymentMode,
    get_service_registry,
    reset_service_registry,
)

__all__ = [
    "ServiceRegistry",
    "DeploymentMode",
    "get_service_registry",
    "reset_service_registry",
]
