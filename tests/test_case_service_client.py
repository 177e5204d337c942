"""
Tests for CaseServiceClient against a mocked HTTP transport.

Covers:
  - request shape: paths, user headers, correlation id, versioned bodies
  - response decoding: legacy aliases, list bodies, missing entry version
  - error mapping: 409 conflict vs read-only, closure codes, 404, 5xx, network
"""

import asyncio
import json

import httpx
import pytest

from incident_core_lib.clients import CaseServiceClient
from incident_core_lib.errors import (
    ClosureGateError,
    NotFoundError,
    ReadOnlyError,
    TransportError,
    ValidationRejectedError,
    VersionConflictError,
)
from incident_core_lib.models import CaseStatus, StageStatus

BASE_URL = "http://incident-service:8000"


def _client(handler):
    return CaseServiceClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))


def _run(coro):
    return asyncio.run(coro)


# ── Reads ─────────────────────────────────────────────────────────────────


def test_get_case_sends_user_headers_and_reads_legacy_keys():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        return httpx.Response(200, json={
            "incident": {"id": 17, "title": "DNS outage", "status": "IN_PROGRESS", "version": 4, "owner_user_id": "u-1"},
            "participants": [{"user_id": "u-2", "role": "assignee"}],
        })

    detail = _run(_client(handler).get_case("17", user_id="u-1"))

    assert seen["path"] == "/api/incidents/17"
    assert seen["headers"]["X-User-ID"] == "u-1"
    assert seen["headers"]["X-Correlation-ID"]
    assert detail.case.case_id == "17"
    assert detail.case.status == CaseStatus.IN_PROGRESS
    assert detail.case.owner == "u-1"
    assert detail.participants[0].role == "assignee"


def test_list_stages_accepts_plain_list():
    def handler(request):
        return httpx.Response(200, json=[
            {"id": "s1", "title": "Overview", "is_default": True, "position": 0},
            {"id": "s2", "title": "Closure", "status": "DONE", "position": 1},
        ])

    stages = _run(_client(handler).list_stages("c1"))
    assert [stage.stage_id for stage in stages] == ["s1", "s2"]
    assert stages[1].status == StageStatus.DONE


def test_get_stage_entry_fills_stage_id():
    def handler(request):
        assert request.url.path == "/api/incidents/c1/stages/s2/entry"
        return httpx.Response(200, json={"content": "{}", "version": 5})

    entry = _run(_client(handler).get_stage_entry("c1", "s2"))
    assert entry.stage_id == "s2"
    assert entry.version == 5


# ── Writes ────────────────────────────────────────────────────────────────


def test_put_stage_entry_sends_expected_version():
    sent = {}

    def handler(request):
        sent.update(json.loads(request.content))
        return httpx.Response(200, json={"version": 8, "updated_by": "u-1"})

    entry = _run(_client(handler).put_stage_entry("c1", "s2", '{"blocks":[]}', 7, change_reason="edit", user_id="u-1"))
    assert sent == {"content": '{"blocks":[]}', "change_reason": "edit", "version": 7}
    assert entry.version == 8
    assert entry.content == '{"blocks":[]}'


def test_put_stage_entry_without_version_in_reply():
    entry = _run(_client(lambda request: httpx.Response(204)).put_stage_entry("c1", "s2", "{}", 3))
    assert entry.version == 4


def test_update_case_sends_patch_with_version():
    sent = {}

    def handler(request):
        sent.update(json.loads(request.content))
        return httpx.Response(200, json={"case": {"case_id": "c1", "status": "contained", "version": 3}})

    case = _run(_client(handler).update_case("c1", {"status": "contained"}, 2))
    assert sent == {"status": "contained", "version": 2}
    assert case.version == 3


def _no_request(request):
    raise AssertionError("no request expected")


@pytest.mark.parametrize("patch", [
    {"status": "closed"},
    {"title": "x" * 300},
    {"severity": "high"},
])
def test_invalid_case_update_is_rejected_locally(patch):
    with pytest.raises(ValidationRejectedError) as exc:
        _run(_client(_no_request).update_case("c1", patch, 2))
    assert exc.value.code == "incidents.invalidUpdate"


# ── Error mapping ─────────────────────────────────────────────────────────


def test_version_conflict_is_mapped():
    def handler(request):
        return httpx.Response(409, json={"error": {"code": "incidents.conflictVersion", "message": "stale"}})

    with pytest.raises(VersionConflictError) as exc:
        _run(_client(handler).put_stage_entry("c1", "s2", "{}", 3))
    assert exc.value.resource == "stage_entry"
    assert exc.value.resource_id == "s2"
    assert exc.value.expected_version == 3


def test_plain_text_version_conflict_is_mapped():
    def handler(request):
        return httpx.Response(409, text="incidents.conflictVersion\n")

    with pytest.raises(VersionConflictError) as exc:
        _run(_client(handler).put_stage_entry("c1", "s2", "{}", 3))
    assert exc.value.expected_version == 3


def test_plain_text_case_conflict_is_mapped():
    def handler(request):
        return httpx.Response(409, text="incidents.conflictVersion\n")

    with pytest.raises(VersionConflictError) as exc:
        _run(_client(handler).update_case("c1", {"status": "contained"}, 2))
    assert exc.value.resource == "case"


def test_other_409_is_read_only():
    def handler(request):
        return httpx.Response(409, json={"error": {"code": "incidents.stageCompletedReadOnly"}})

    with pytest.raises(ReadOnlyError) as exc:
        _run(_client(handler).put_stage_entry("c1", "s2", "{}", 3))
    assert exc.value.code == "incidents.stageCompletedReadOnly"


@pytest.mark.parametrize("code, blocker", [
    ("incidents.completionStageMissing", "missing_closure_stage"),
    ("incidents.completionStageNotDone", "closure_stage_open"),
    ("incidents.completionStageEmpty", "no_decisions"),
])
def test_closure_refusal_becomes_gate_error(code, blocker):
    def handler(request):
        return httpx.Response(400, text=f"{code}\n")

    with pytest.raises(ClosureGateError) as exc:
        _run(_client(handler).close_case("c1"))
    assert exc.value.blockers == [blocker]


def test_closure_refusal_in_json_envelope():
    def handler(request):
        return httpx.Response(400, json={"error": {"code": "incidents.close.completionStageEmpty", "message": "no decision"}})

    with pytest.raises(ClosureGateError) as exc:
        _run(_client(handler).close_case("c1"))
    assert exc.value.blockers == ["no_decisions"]


def test_closing_a_closed_case_reports_already_closed():
    def handler(request):
        return httpx.Response(409, text="incidents.closedReadOnly\n")

    with pytest.raises(ClosureGateError) as exc:
        _run(_client(handler).close_case("c1"))
    assert exc.value.blockers == ["already_closed"]


def test_closed_case_write_is_read_only():
    def handler(request):
        return httpx.Response(409, text="incidents.closedReadOnly\n")

    with pytest.raises(ReadOnlyError) as exc:
        _run(_client(handler).put_stage_entry("c1", "s2", "{}", 3))
    assert exc.value.code == "incidents.closedReadOnly"


def test_plain_400_is_validation_rejected():
    def handler(request):
        return httpx.Response(422, json={"detail": "title too long"})

    with pytest.raises(ValidationRejectedError) as exc:
        _run(_client(handler).create_stage("c1", "x"))
    assert not isinstance(exc.value, ClosureGateError)


def test_404_is_not_found():
    with pytest.raises(NotFoundError):
        _run(_client(lambda request: httpx.Response(404, json={"error": "incidents.notFound"})).get_case("nope"))


@pytest.mark.parametrize("status", [500, 502, 503])
def test_server_errors_are_transport_errors(status):
    with pytest.raises(TransportError):
        _run(_client(lambda request: httpx.Response(status, text="upstream down")).list_stages("c1"))


def test_network_failure_is_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError):
        _run(_client(handler).get_case("c1"))
