"""Infrastructure adapters (Redis connection, preference store)."""

from incident_core_lib.infrastructure.redis_setup import get_redis_client, parse_sentinel_hosts
from incident_core_lib.infrastructure.preferences import PreferenceStore

__all__ = ["get_redis_client", "parse_sentinel_hosts", "PreferenceStore"]
