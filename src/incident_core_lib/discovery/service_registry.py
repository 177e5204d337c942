"""Service discovery for the incident case service and its neighbours.

Resolves service URLs for the supported deployment modes:
- Docker Compose: container name resolution
- Kubernetes: DNS-based service discovery
- Local: localhost port mapping
"""

import logging
import os
from enum import Enum
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class DeploymentMode(Enum):
    """Deployment environment types."""

    DOCKER = "docker"  # Docker Compose
    KUBERNETES = "kubernetes"  # Kubernetes cluster
    LOCAL = "local"  # Local development (localhost)


class ServiceRegistry:
    """Service discovery registry.

    Hosts per deployment mode:
    - Docker: {service}-service
    - K8s: {service}-service.{namespace}.svc.cluster.local
    - Local: localhost

    Environment Variables:
        DEPLOYMENT_MODE: "docker" (default), "kubernetes", or "local"
        K8S_NAMESPACE: Kubernetes namespace (default: "incidents")
        SERVICE_{NAME}_PORT: Override default port for a service

    Example:
        ```python
        registry = ServiceRegistry()
        registry.get_url("incident")
        # Docker: http://incident-service:8010
        # K8s: http://incident-service.incidents.svc.cluster.local:8010
        # Local: http://localhost:8010
        ```
    """

    DEFAULT_PORTS: Dict[str, int] = {
        "incident": 8010,  # case/stage store (authoritative)
    }

    def __init__(
        self,
        mode: Optional[str] = None,
        namespace: Optional[str] = None,
        custom_ports: Optional[Dict[str, int]] = None
    ):
        """Initialize service registry.

        Args:
            mode: Deployment mode (overrides DEPLOYMENT_MODE env var)
            namespace: Kubernetes namespace (overrides K8S_NAMESPACE env var)
            custom_ports: Custom port mappings (overrides defaults)
        """
        mode_str = mode or os.getenv("DEPLOYMENT_MODE", "docker")
        try:
            self.mode = DeploymentMode(mode_str.lower())
        except ValueError:
            logger.warning(f"Invalid DEPLOYMENT_MODE '{mode_str}', defaulting to 'docker'")
            self.mode = DeploymentMode.DOCKER

        self.namespace = namespace or os.getenv("K8S_NAMESPACE", "incidents")

        self.services = self.DEFAULT_PORTS.copy()
        if custom_ports:
            self.services.update(custom_ports)

        for service_name in self.services:
            env_key = f"SERVICE_{service_name.upper().replace('-', '_')}_PORT"
            env_port = os.getenv(env_key)
            if env_port:
                try:
                    self.services[service_name] = int(env_port)
                except ValueError:
                    logger.warning(f"Invalid port in {env_key}: {env_port}")

        logger.info(
            f"ServiceRegistry initialized: mode={self.mode.value}, "
            f"namespace={self.namespace}, services={len(self.services)}"
        )

    def _require(self, service_name: str) -> None:
        if service_name not in self.services:
            raise ValueError(
                f"Unknown service: {service_name}. "
                f"Known services: {list(self.services)}"
            )

    def get_host(self, service_name: str) -> str:
        """Get just the hostname (without protocol or port).

        Raises:
            ValueError: If service name is unknown
        """
        self._require(service_name)
        container = f"{service_name}-service"
        if self.mode == DeploymentMode.KUBERNETES:
            return f"{container}.{self.namespace}.svc.cluster.local"
        if self.mode == DeploymentMode.LOCAL:
            return "localhost"
        return container

    def get_port(self, service_name: str) -> int:
        self._require(service_name)
        return self.services[service_name]

    def get_url(self, service_name: str, protocol: str = "http") -> str:
        """Get the full URL for a service.

        Args:
            service_name: Service name (e.g., "incident")
            protocol: Protocol to use (default: "http")

        Returns:
            Full service URL

        Raises:
            ValueError: If service name is unknown
        """
        url = f"{protocol}://{self.get_host(service_name)}:{self.get_port(service_name)}"
        logger.debug(f"Resolved {service_name} -> {url}")
        return url

    def register_service(self, service_name: str, port: int) -> None:
        """Register a new service or update existing one."""
        self.services[service_name] = port
        logger.info(f"Registered service: {service_name} -> port {port}")

    def list_services(self) -> Dict[str, str]:
        """All registered services with their URLs."""
        return {name: self.get_url(name) for name in self.services}


# Singleton instance for global access
_registry_instance: Optional[ServiceRegistry] = None


def get_service_registry() -> ServiceRegistry:
    """Get or create the global ServiceRegistry instance."""
    global _registry_instance

    if _registry_instance is None:
        _registry_instance = ServiceRegistry()

    return _registry_instance


def reset_service_registry():
    """Reset the global ServiceRegistry instance.

    Used for testing or reconfiguration.
    """
    global _registry_instance
    _registry_instance = None
    logger.warning("ServiceRegistry instance reset")
