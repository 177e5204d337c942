"""Per-user autosave preferences stored in Redis.

Each user has one hash ``incident:prefs:{user_id}`` with the fields:
- incident_autosave_enabled: "true" / "false"
- incident_autosave_period: period in minutes

Missing or invalid values mean autosave is disabled.
"""

import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from incident_core_lib.config import AutosaveConfig

logger = logging.getLogger(__name__)


class PreferenceStore:
    """Reads and writes autosave preferences."""

    KEY_PREFIX = "incident:prefs:"
    ENABLED_FIELD = "incident_autosave_enabled"
    PERIOD_FIELD = "incident_autosave_period"

    def __init__(self, redis_client: Redis):
        self._redis = redis_client

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    async def get_autosave(self, user_id: str) -> AutosaveConfig:
        """Autosave configuration of a user (disabled if unset or unreadable)."""
        try:
            prefs = await self._redis.hgetall(self._key(user_id))
        except RedisError as e:
            logger.warning(f"[Preferences] Could not read autosave preference of {user_id}: {e}")
            return AutosaveConfig.disabled()
        if not prefs:
            return AutosaveConfig.disabled()
        return AutosaveConfig.from_minutes(prefs.get(self.ENABLED_FIELD), prefs.get(self.PERIOD_FIELD))

    async def set_autosave(self, user_id: str, enabled: bool, period_minutes: float) -> AutosaveConfig:
        """Store a user's autosave preference.

        Raises:
            ValueError: If the period is not positive
        """
        if period_minutes <= 0:
            raise ValueError("Autosave period must be positive")
        await self._redis.hset(
            self._key(user_id),
            mapping={
                self.ENABLED_FIELD: "true" if enabled else "false",
                self.PERIOD_FIELD: str(period_minutes),
            },
        )
        logger.info(f"[Preferences] Autosave for {user_id}: enabled={enabled}, period={period_minutes}min")
        return AutosaveConfig.from_minutes(enabled, period_minutes)
