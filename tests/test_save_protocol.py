"""
Tests for the optimistic-concurrency save protocol.

Covers:
  - save_stage_content: no-op when clean, version monotonicity
  - two editors on one stage: the second save conflicts, local edits survive
  - transport failure keeps the stage dirty; resubmission is safe
  - late success: edits made while a save is in flight stay dirty
  - same-stage saves are serialised
  - save_dirty_stages: independent per-stage outcomes
  - save_case_field: conflict adopts the server record
"""

import asyncio

import pytest

from conftest import FlakyTransport, make_session
from incident_core_lib.errors import (
    ReadOnlyError,
    TransportError,
    ValidationRejectedError,
    VersionConflictError,
)
from incident_core_lib.models import CaseStatus


def _note_id(state):
    return next(block.id for block in state.blocks if block.type == "note")


def _edit(view, stage_id, text):
    state = view.stage(stage_id)
    state.set_note_text(_note_id(state), text)
    return state


# ── Single stage ──────────────────────────────────────────────────────────


def test_clean_stage_is_not_submitted(service, seeded):
    async def scenario():
        session = make_session(service)
        view = await session.open_case(seeded.case_id)
        saved = await session.saves.save_stage_content(view, seeded.investigation)
        assert saved is False
        assert "put_stage_entry" not in service.calls

    asyncio.run(scenario())


def test_save_bumps_entry_version_by_one(service, seeded):
    async def scenario():
        session = make_session(service)
        view = await session.open_case(seeded.case_id)
        for expected, text in ((2, "a"), (3, "b"), (4, "c")):
            state = _edit(view, seeded.investigation, text)
            assert await session.saves.save_stage_content(view, seeded.investigation)
            assert state.entry_version == expected
            assert not state.dirty
        stored = await service.get_stage_entry(seeded.case_id, seeded.investigation)
        assert stored.version == 4
        assert stored.content == view.stage(seeded.investigation).current_serialized

    asyncio.run(scenario())


def test_second_editor_gets_conflict_and_keeps_edits(service, seeded):
    async def scenario():
        alice = make_session(service, user_id="alice")
        bob = make_session(service, user_id="bob")
        view_a = await alice.open_case(seeded.case_id)
        view_b = await bob.open_case(seeded.case_id)

        _edit(view_a, seeded.investigation, "alice's findings")
        state_b = _edit(view_b, seeded.investigation, "bob's findings")
        bob_local = state_b.current_serialized

        assert await alice.saves.save_stage_content(view_a, seeded.investigation)
        with pytest.raises(VersionConflictError) as exc:
            await bob.saves.save_stage_content(view_b, seeded.investigation)

        assert exc.value.resource_id == seeded.investigation
        assert exc.value.expected_version == 1
        assert state_b.current_serialized == bob_local
        assert state_b.entry_version == 1
        assert state_b.dirty

        stored = await service.get_stage_entry(seeded.case_id, seeded.investigation)
        assert "alice's findings" in stored.content
        assert stored.version == 2

        await bob.saves.reload_stage(view_b, seeded.investigation)
        assert state_b.entry_version == 2
        assert not state_b.dirty
        assert "alice's findings" in state_b.current_serialized

    asyncio.run(scenario())


def test_transport_failure_keeps_stage_dirty(service, seeded):
    async def scenario():
        transport = FlakyTransport(service)
        transport.fail("put_stage_entry", TransportError("gateway timeout"))
        session = make_session(transport)
        view = await session.open_case(seeded.case_id)
        state = _edit(view, seeded.investigation, "draft")

        with pytest.raises(TransportError):
            await session.saves.save_stage_content(view, seeded.investigation)
        assert state.dirty
        assert state.entry_version == 1

        assert await session.saves.save_stage_content(view, seeded.investigation)
        assert state.entry_version == 2
        assert not state.dirty

    asyncio.run(scenario())


def test_edit_during_inflight_save_stays_dirty(service, seeded):
    async def scenario():
        transport = FlakyTransport(service)
        session = make_session(transport)
        view = await session.open_case(seeded.case_id)
        state = _edit(view, seeded.investigation, "first")
        submitted = state.current_serialized

        gate = transport.hold("put_stage_entry")
        task = asyncio.create_task(session.saves.save_stage_content(view, seeded.investigation))
        await transport.entered["put_stage_entry"].wait()
        _edit(view, seeded.investigation, "second")
        gate.set()
        assert await task

        assert state.entry_version == 2
        assert state.initial_serialized == submitted
        assert state.dirty
        stored = await service.get_stage_entry(seeded.case_id, seeded.investigation)
        assert stored.content == submitted

    asyncio.run(scenario())


def test_same_stage_saves_are_serialised(service, seeded):
    async def scenario():
        transport = FlakyTransport(service)
        session = make_session(transport)
        view = await session.open_case(seeded.case_id)
        _edit(view, seeded.investigation, "once")

        gate = transport.hold("put_stage_entry")
        first = asyncio.create_task(session.saves.save_stage_content(view, seeded.investigation))
        second = asyncio.create_task(session.saves.save_stage_content(view, seeded.investigation))
        await transport.entered["put_stage_entry"].wait()
        gate.set()

        assert await asyncio.gather(first, second) == [True, False]
        assert service.calls.count("put_stage_entry") == 1

    asyncio.run(scenario())


def test_closed_case_stage_is_never_submitted(service, seeded):
    async def scenario():
        session = make_session(service)
        view = await session.open_case(seeded.case_id)
        state = view.stage(seeded.investigation)
        state.case_read_only = True
        assert await session.saves.save_stage_content(view, seeded.investigation) is False

    asyncio.run(scenario())


# ── All dirty stages ──────────────────────────────────────────────────────


def test_save_dirty_stages_reports_each_stage(service, seeded):
    async def scenario():
        transport = FlakyTransport(service)
        transport.fail("put_stage_entry", TransportError("reset"), stage_id=seeded.investigation)
        session = make_session(transport)
        view = await session.open_case(seeded.case_id)
        _edit(view, seeded.investigation, "x")
        closure = view.stage(seeded.closure)
        decisions = closure.blocks[0]
        closure.update_item(decisions.id, decisions.items[0].id, rationale="contained")

        report = await session.saves.save_dirty_stages(view)

        assert report.saved == [seeded.closure]
        assert isinstance(report.failed(seeded.investigation), TransportError)
        assert report.failed(seeded.closure) is None
        assert not report.all_succeeded
        assert view.stage(seeded.investigation).dirty
        assert not closure.dirty

    asyncio.run(scenario())


def test_save_dirty_stages_with_nothing_dirty(service, seeded):
    async def scenario():
        session = make_session(service)
        view = await session.open_case(seeded.case_id)
        report = await session.saves.save_dirty_stages(view)
        assert report.all_succeeded
        assert report.saved == []

    asyncio.run(scenario())


# ── Case fields ───────────────────────────────────────────────────────────


def test_save_case_field_adopts_server_record(service, seeded):
    async def scenario():
        session = make_session(service)
        view = await session.open_case(seeded.case_id)
        case = await session.saves.save_case_field(view, {"title": "Primary DB outage", "assignee": "bob"})
        assert case.version == 2
        assert view.case.title == "Primary DB outage"
        assert view.case.assignee == "bob"

    asyncio.run(scenario())


def test_save_case_field_conflict_adopts_latest(service, seeded):
    async def scenario():
        alice = make_session(service, user_id="alice")
        bob = make_session(service, user_id="bob")
        view_a = await alice.open_case(seeded.case_id)
        view_b = await bob.open_case(seeded.case_id)

        await bob.saves.save_case_field(view_b, {"title": "Bob's title"})
        with pytest.raises(VersionConflictError) as exc:
            await alice.saves.save_case_field(view_a, {"title": "Alice's title"})

        assert exc.value.latest.title == "Bob's title"
        assert view_a.case.title == "Bob's title"
        assert view_a.case.version == 2

    asyncio.run(scenario())


@pytest.mark.parametrize("patch", [
    {"status": CaseStatus.CLOSED},
    {"status": "closed"},
    {"version": 9},
    {"status": "archived"},
])
def test_save_case_field_refuses_closing_and_versions(service, seeded, patch):
    async def scenario():
        session = make_session(service)
        view = await session.open_case(seeded.case_id)
        with pytest.raises(ValidationRejectedError):
            await session.saves.save_case_field(view, patch)
        assert "update_case" not in service.calls

    asyncio.run(scenario())


def test_save_case_field_on_closed_case(service, seeded):
    async def scenario():
        session = make_session(service)
        view = await session.open_case(seeded.case_id)
        view.adopt_case(view.case.model_copy(update={"status": CaseStatus.CLOSED}))
        with pytest.raises(ReadOnlyError):
            await session.saves.save_case_field(view, {"title": "late"})

    asyncio.run(scenario())


def test_case_conflict_survives_failed_refresh(service, seeded):
    async def scenario():
        transport = FlakyTransport(service)
        alice = make_session(transport, user_id="alice")
        bob = make_session(service, user_id="bob")
        view_a = await alice.open_case(seeded.case_id)
        view_b = await bob.open_case(seeded.case_id)

        await bob.saves.save_case_field(view_b, {"title": "Bob's title"})
        transport.fail("get_case", TransportError("offline"))
        with pytest.raises(VersionConflictError) as exc:
            await alice.saves.save_case_field(view_a, {"title": "Alice's title"})

        assert exc.value.latest is None
        assert exc.value.resource == "case"
        assert view_a.case.version == 1

    asyncio.run(scenario())


def test_unknown_case_field_is_rejected(service, seeded):
    async def scenario():
        session = make_session(service)
        view = await session.open_case(seeded.case_id)
        with pytest.raises(ValidationRejectedError):
            await session.saves.save_case_field(view, {"severity": "high"})
        detail = await service.get_case(seeded.case_id)
        assert detail.case.version == 1

    asyncio.run(scenario())
