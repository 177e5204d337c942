"""Configuration models."""

from incident_core_lib.config.settings import AutosaveConfig, ClientSettings

__all__ = ["AutosaveConfig", "ClientSettings"]
