"""
Tests for StageState (live stage content and dirty tracking).

Covers:
  - from_entry: clean state from stored content
  - mutations: dirty iff the canonical form changed
  - read-only: done stages, closed cases and the overview stage
  - mark_saved: edits made after the payload was captured stay dirty
"""

import pytest

from incident_core_lib.content import StageState, is_editable, serialize
from incident_core_lib.errors import ReadOnlyError
from incident_core_lib.models import Stage, StageEntry, StageStatus, StageType


def _state(stage_type="investigation", blocks=None, status=StageStatus.OPEN, version=3):
    stage = Stage(stage_id="stage-1", case_id="case-1", title="Work", position=1, status=status)
    entry = StageEntry(stage_id="stage-1", content=serialize(stage_type, blocks or []), version=version)
    return StageState.from_entry(stage, entry)


def _first(state, block_type):
    return next(block for block in state.blocks if block.type == block_type)


# ── Loading ───────────────────────────────────────────────────────────────


def test_loaded_state_is_clean():
    state = _state()
    assert state.stage_type == StageType.INVESTIGATION
    assert state.entry_version == 3
    assert not state.dirty
    assert is_editable(state)


def test_overview_stage_is_never_editable():
    stage = Stage(stage_id="ov", is_default=True)
    state = StageState.from_entry(stage, StageEntry(stage_id="ov", content="{}"))
    assert state.stage_type == StageType.OVERVIEW
    assert state.blocks == []
    assert not is_editable(state)
    assert not state.dirty
    with pytest.raises(ReadOnlyError):
        state.add_block("note")


# ── Mutations ─────────────────────────────────────────────────────────────


def test_edit_makes_dirty_and_revert_makes_clean():
    state = _state()
    note = _first(state, "note")
    state.set_note_text(note.id, "lateral movement ruled out")
    assert state.dirty
    state.set_note_text(note.id, "")
    assert not state.dirty


def test_add_and_remove_block():
    state = _state("custom")
    block = state.add_block("checklist", index=0)
    assert state.blocks[0].id == block.id
    assert state.dirty
    state.remove_block(block.id)
    assert not state.dirty


def test_move_block():
    state = _state()
    note = _first(state, "note")
    state.move_block(note.id, 0)
    assert state.blocks[0].id == note.id
    assert state.dirty


def test_add_update_remove_item():
    state = _state()
    table = _first(state, "table")
    item = state.add_item(table.id, indicator="evil.example.com", indicator_type="domain")
    updated = state.update_item(table.id, item.id, context="C2 beacon")
    assert updated.id == item.id
    assert _first(state, "table").items[-1].context == "C2 beacon"
    state.remove_item(table.id, item.id)
    assert len(_first(state, "table").items) == 1


def test_removing_last_item_inserts_template():
    state = _state("closure")
    decisions = _first(state, "decisions")
    only = decisions.items[0].id
    state.remove_item(decisions.id, only)
    items = _first(state, "decisions").items
    assert len(items) == 1
    assert items[0].id != only


def test_set_item_status_stamps_time():
    state = _state()
    checklist = _first(state, "checklist")
    item = checklist.items[0]
    state.set_item_status(checklist.id, item.id, True, at="2024-07-01T12:00:00Z")
    stored = _first(state, "checklist").items[0]
    assert stored.status == "done"
    assert stored.status_changed_at == "2024-07-01T12:00:00Z"


def test_unknown_block_is_rejected():
    state = _state()
    with pytest.raises(ValueError):
        state.set_note_text("missing", "x")


def test_replace_blocks_changes_stage_type():
    state = _state("custom")
    state.replace_blocks([{"type": "decisions", "items": [{"rationale": "ok"}]}], stage_type="closure")
    assert state.stage_type == StageType.CLOSURE
    assert state.blocks[0].items[0].rationale == "ok"
    assert state.dirty


# ── Read-only ─────────────────────────────────────────────────────────────


def test_done_stage_is_read_only():
    state = _state(status=StageStatus.DONE)
    assert state.read_only
    with pytest.raises(ReadOnlyError) as exc:
        state.add_block("note")
    assert exc.value.code == "incidents.stageCompletedReadOnly"
    assert not state.dirty


def test_closed_case_makes_stage_read_only():
    state = _state()
    state.case_read_only = True
    with pytest.raises(ReadOnlyError):
        state.set_note_text(_first(state, "note").id, "x")


# ── Save reconciliation ───────────────────────────────────────────────────


def test_mark_saved_with_older_payload_keeps_stage_dirty():
    state = _state()
    note = _first(state, "note")
    state.set_note_text(note.id, "first")
    submitted = state.current_serialized
    state.set_note_text(note.id, "second")
    state.mark_saved(submitted, 4)
    assert state.entry_version == 4
    assert state.dirty


def test_adopt_entry_discards_local_edits():
    state = _state()
    state.set_note_text(_first(state, "note").id, "local")
    remote = serialize("response", [])
    state.adopt_entry(StageEntry(stage_id="stage-1", content=remote, version=7))
    assert state.stage_type == StageType.RESPONSE
    assert state.entry_version == 7
    assert not state.dirty


def test_returned_items_are_the_stored_items():
    state = _state()
    table = _first(state, "table")
    added = state.add_item(table.id, indicator="10.0.0.9")
    assert any(item is added for item in _first(state, "table").items)
    updated = state.update_item(table.id, added.id, context="scanner")
    assert _first(state, "table").find_item(added.id) is updated
