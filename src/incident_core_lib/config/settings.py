"""Runtime settings for the incident stage engine.

Environment Variables:
    INCIDENT_SERVICE_URL: Case service base URL (default: resolved by ServiceRegistry)
    INCIDENT_CLIENT_TIMEOUT: HTTP timeout in seconds (default: 30)
    INCIDENT_LOAD_RETRY_ATTEMPTS: Attempts for initial case loads (default: 3)
    INCIDENT_AUTOSAVE_ENABLED: "true"/"1"/"yes" to arm autosave (default: off)
    INCIDENT_AUTOSAVE_INTERVAL_MS: Autosave period in milliseconds (default: 0)
"""

import logging
import os
from typing import Any, Optional

from pydantic import BaseModel, Field

from incident_core_lib.discovery import ServiceRegistry, get_service_registry

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer in {name}: {raw!r}, using {default}")
        return default


class AutosaveConfig(BaseModel):
    """Autosave timer configuration.

    Disabled or a zero interval means no timer runs.
    """

    enabled: bool = Field(default=False)
    interval_ms: int = Field(default=0, ge=0, description="Period between sweeps (ms)")

    @property
    def armed(self) -> bool:
        return self.enabled and self.interval_ms > 0

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000

    @classmethod
    def disabled(cls) -> "AutosaveConfig":
        return cls(enabled=False, interval_ms=0)

    @classmethod
    def from_minutes(cls, enabled: Any, minutes: Any) -> "AutosaveConfig":
        """Build from a user preference (period in minutes).

        Missing, non-numeric or non-positive periods disable autosave.
        """
        try:
            period = float(minutes)
        except (TypeError, ValueError):
            return cls.disabled()
        if period <= 0:
            return cls.disabled()
        if isinstance(enabled, str):
            enabled = enabled.strip().lower() in _TRUE_VALUES
        return cls(enabled=bool(enabled), interval_ms=int(period * 60_000))

    @classmethod
    def from_env(cls) -> "AutosaveConfig":
        enabled = os.getenv("INCIDENT_AUTOSAVE_ENABLED", "").strip().lower() in _TRUE_VALUES
        interval_ms = max(0, _env_int("INCIDENT_AUTOSAVE_INTERVAL_MS", 0))
        return cls(enabled=enabled, interval_ms=interval_ms)

    class Config:
        frozen = True


class ClientSettings(BaseModel):
    """Connection settings for the case service client."""

    service_url: str = Field(description="Case service base URL")
    timeout: float = Field(default=30.0, gt=0)
    load_retry_attempts: int = Field(default=3, ge=1)
    autosave: AutosaveConfig = Field(default_factory=AutosaveConfig.disabled)

    @classmethod
    def from_env(cls, registry: Optional[ServiceRegistry] = None) -> "ClientSettings":
        """Read settings from the environment.

        Falls back to service discovery for the URL when INCIDENT_SERVICE_URL
        is unset.
        """
        url = os.getenv("INCIDENT_SERVICE_URL")
        if not url:
            url = (registry or get_service_registry()).get_url("incident")
        try:
            timeout = float(os.getenv("INCIDENT_CLIENT_TIMEOUT", "30"))
        except ValueError:
            logger.warning("Invalid INCIDENT_CLIENT_TIMEOUT, using 30s")
            timeout = 30.0
        return cls(
            service_url=url,
            timeout=timeout,
            load_retry_attempts=max(1, _env_int("INCIDENT_LOAD_RETRY_ATTEMPTS", 3)),
            autosave=AutosaveConfig.from_env(),
        )

    def build_client(self, transport: Any = None):
        """Create a CaseServiceClient for these settings."""
        from incident_core_lib.clients.case_service_client import CaseServiceClient

        return CaseServiceClient(base_url=self.service_url, timeout=self.timeout, transport=transport)
