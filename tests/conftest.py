"""
Shared pytest fixtures for the incident core library test suite.

Provides:
    - service: Fresh InMemoryCaseService (authoritative store)
    - seeded: Case with an investigation stage and an (open) closure stage
    - FlakyTransport: Transport wrapper that injects failures and holds calls
    - FakeRedis: Minimal async Redis hash store for preference tests
"""

import asyncio
from types import SimpleNamespace
from typing import Dict, List, Optional, Tuple

import pytest
from redis.exceptions import RedisError

from incident_core_lib.clients import CaseTransport, InMemoryCaseService
from incident_core_lib.content import serialize
from incident_core_lib.models import StageStatus
from incident_core_lib.session import CaseSession


# ── Transport doubles ─────────────────────────────────────────────────────


class FlakyTransport(CaseTransport):
    """Delegates to a real transport, optionally failing or pausing calls."""

    def __init__(self, inner: CaseTransport):
        self.inner = inner
        self._failures: Dict[str, List[Tuple[Exception, Optional[str]]]] = {}
        self._gates: Dict[str, asyncio.Event] = {}
        self.entered: Dict[str, asyncio.Event] = {}

    def fail(self, method: str, error: Exception, stage_id: Optional[str] = None, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` (for ``stage_id``) raise ``error``."""
        self._failures.setdefault(method, []).extend([(error, stage_id)] * times)

    def hold(self, method: str) -> asyncio.Event:
        """Pause calls of ``method`` until the returned event is set."""
        gate = asyncio.Event()
        self._gates[method] = gate
        self.entered[method] = asyncio.Event()
        return gate

    async def _call(self, method: str, *args, **kwargs):
        if method in self._gates:
            self.entered[method].set()
            await self._gates[method].wait()
        queue = self._failures.get(method, [])
        for index, (error, stage_id) in enumerate(queue):
            if stage_id is None or stage_id in args:
                queue.pop(index)
                raise error
        return await getattr(self.inner, method)(*args, **kwargs)

    async def get_case(self, *args, **kwargs):
        return await self._call("get_case", *args, **kwargs)

    async def list_stages(self, *args, **kwargs):
        return await self._call("list_stages", *args, **kwargs)

    async def get_stage_entry(self, *args, **kwargs):
        return await self._call("get_stage_entry", *args, **kwargs)

    async def put_stage_entry(self, *args, **kwargs):
        return await self._call("put_stage_entry", *args, **kwargs)

    async def update_case(self, *args, **kwargs):
        return await self._call("update_case", *args, **kwargs)

    async def complete_stage(self, *args, **kwargs):
        return await self._call("complete_stage", *args, **kwargs)

    async def close_case(self, *args, **kwargs):
        return await self._call("close_case", *args, **kwargs)

    async def create_stage(self, *args, **kwargs):
        return await self._call("create_stage", *args, **kwargs)

    async def update_stage(self, *args, **kwargs):
        return await self._call("update_stage", *args, **kwargs)

    async def delete_stage(self, *args, **kwargs):
        return await self._call("delete_stage", *args, **kwargs)


class FakeRedis:
    """Async hash store standing in for redis.asyncio.Redis."""

    def __init__(self, broken: bool = False):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.broken = broken

    async def hgetall(self, key):
        if self.broken:
            raise RedisError("connection refused")
        return dict(self.hashes.get(key, {}))

    async def hset(self, key, mapping=None):
        if self.broken:
            raise RedisError("connection refused")
        self.hashes.setdefault(key, {}).update(mapping or {})
        return len(mapping or {})


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture()
def service() -> InMemoryCaseService:
    """Empty authoritative store."""
    return InMemoryCaseService()


@pytest.fixture()
def seeded(service: InMemoryCaseService) -> SimpleNamespace:
    """Open case with an investigation stage and an open closure stage."""
    case = service.create_case("Database outage", owner="alice", participants=["bob"])
    investigation = service.seed_stage(
        case.case_id, "Investigation", content=serialize("investigation", []), position=1
    )
    closure = service.seed_stage(
        case.case_id, "Closure", content=serialize("closure", []), position=2
    )
    return SimpleNamespace(
        case_id=case.case_id,
        investigation=investigation.stage.stage_id,
        closure=closure.stage.stage_id,
    )


def make_session(transport: CaseTransport, user_id: str = "alice", **kwargs) -> CaseSession:
    """Session without load retry backoff."""
    return CaseSession(transport, user_id=user_id, load_retry_wait=0, **kwargs)


def seed_done_closure(service: InMemoryCaseService, decisions: Optional[list] = None) -> SimpleNamespace:
    """Case whose only content stage is a completed closure stage."""
    case = service.create_case("Payment API errors", owner="alice")
    blocks = [{"type": "decisions", "items": decisions or []}]
    closure = service.seed_stage(
        case.case_id,
        "Closure",
        content=serialize("closure", blocks),
        position=1,
        status=StageStatus.DONE,
    )
    return SimpleNamespace(case_id=case.case_id, closure=closure.stage.stage_id)
