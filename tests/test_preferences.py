"""
Tests for per-user autosave preferences.
"""

import asyncio

import pytest

from conftest import FakeRedis
from incident_core_lib.infrastructure import PreferenceStore


def test_unset_preference_is_disabled():
    store = PreferenceStore(FakeRedis())
    config = asyncio.run(store.get_autosave("alice"))
    assert not config.armed


def test_stored_preference_round_trip():
    redis = FakeRedis()
    store = PreferenceStore(redis)

    async def scenario():
        await store.set_autosave("alice", True, 0.5)
        return await store.get_autosave("alice")

    config = asyncio.run(scenario())
    assert redis.hashes["incident:prefs:alice"] == {
        "incident_autosave_enabled": "true",
        "incident_autosave_period": "0.5",
    }
    assert config.armed
    assert config.interval_ms == 30_000


@pytest.mark.parametrize("prefs", [
    {"incident_autosave_enabled": "false", "incident_autosave_period": "5"},
    {"incident_autosave_enabled": "true", "incident_autosave_period": "soon"},
    {"incident_autosave_enabled": "true", "incident_autosave_period": "-1"},
    {"incident_autosave_enabled": "true"},
])
def test_disabled_or_invalid_preferences(prefs):
    redis = FakeRedis()
    redis.hashes["incident:prefs:bob"] = prefs
    config = asyncio.run(PreferenceStore(redis).get_autosave("bob"))
    assert not config.armed


def test_non_positive_period_is_refused():
    with pytest.raises(ValueError):
        asyncio.run(PreferenceStore(FakeRedis()).set_autosave("alice", True, 0))


def test_redis_outage_disables_autosave():
    config = asyncio.run(PreferenceStore(FakeRedis(broken=True)).get_autosave("alice"))
    assert not config.enabled
