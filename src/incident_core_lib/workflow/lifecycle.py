"""Stage and case lifecycle state machine.

Stage:  OPEN → DONE (terminal, read-only)
Case:   operational statuses ⇄ each other → CLOSED (terminal, read-only)

Closure gate - a case may be closed only if:
1. it is not already closed
2. it has a closure stage
3. the closure stage is done
4. the closure stage holds at least one filled decision

Stage management (add, rename, reorder, delete) also lives here because each
of those operations is refused on closed cases and completed stages.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, List, Optional

from incident_core_lib.clients.transport import CaseTransport
from incident_core_lib.content.store import StageState
from incident_core_lib.errors import (
    ClosureGateError,
    IncidentCoreError,
    ReadOnlyError,
    ValidationRejectedError,
    VersionConflictError,
)
from incident_core_lib.models.blocks import (
    StageType,
    create_blocks_from_selection,
    has_decision_entry,
    normalize_stage_type,
)
from incident_core_lib.models.case import (
    OPERATIONAL_STATUSES,
    Case,
    CaseStatus,
    Stage,
    StageStatus,
    is_valid_stage_transition,
)
from incident_core_lib.workflow.save_protocol import SaveProtocol

if TYPE_CHECKING:
    from incident_core_lib.session.case_view import CaseView

logger = logging.getLogger(__name__)


class ClosureBlocker(str, Enum):
    """Reasons a case cannot be closed, most fundamental first."""

    ALREADY_CLOSED = "already_closed"
    MISSING_CLOSURE_STAGE = "missing_closure_stage"
    CLOSURE_STAGE_OPEN = "closure_stage_open"
    NO_DECISIONS = "no_decisions"


@dataclass
class ClosureAvailability:
    blockers: List[ClosureBlocker] = field(default_factory=list)
    closure_stage_id: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return not self.blockers

    @property
    def reason(self) -> Optional[ClosureBlocker]:
        return self.blockers[0] if self.blockers else None


@dataclass
class StageCompletion:
    """Result of completing a stage.

    Attributes:
        stage: The completed stage record
        next_stage_id: Next stage by position (now active), if any
        closure_stage_id: Closure stage to jump to, when it is neither the
            completed stage nor the next one
    """

    stage: Stage
    next_stage_id: Optional[str] = None
    closure_stage_id: Optional[str] = None


@dataclass
class StatusChange:
    status: CaseStatus
    applied: bool
    conflict: bool = False


def evaluate_closure(view: "CaseView") -> ClosureAvailability:
    """Evaluate the closure gate against the view's local state."""
    blockers: List[ClosureBlocker] = []
    if view.read_only:
        blockers.append(ClosureBlocker.ALREADY_CLOSED)

    closure = view.closure_stage
    if closure is None:
        blockers.append(ClosureBlocker.MISSING_CLOSURE_STAGE)
        return ClosureAvailability(blockers=blockers)

    if not closure.stage.is_done:
        blockers.append(ClosureBlocker.CLOSURE_STAGE_OPEN)
    if not has_decision_entry(closure.blocks):
        blockers.append(ClosureBlocker.NO_DECISIONS)
    return ClosureAvailability(blockers=blockers, closure_stage_id=closure.stage_id)


def _gate_error(blockers: Iterable[ClosureBlocker]) -> ClosureGateError:
    return ClosureGateError([blocker.value for blocker in blockers])


class CaseLifecycle:
    """Gated lifecycle transitions of open case views."""

    def __init__(self, transport: CaseTransport, saves: SaveProtocol, user_id: Optional[str] = None):
        self.transport = transport
        self.saves = saves
        self.user_id = user_id

    # ============================================================
    # Stage completion
    # ============================================================

    async def complete_stage(self, view: "CaseView", stage_id: str) -> StageCompletion:
        """Mark a stage done, saving pending edits first.

        Raises:
            ValidationRejectedError: Overview stage
            ReadOnlyError: Stage already done or case closed
            ClosureGateError: Closure stage without a filled decision
            VersionConflictError: Pending edits could not be saved
        """
        state = view.stage(stage_id)
        if state.stage.is_default:
            raise ValidationRejectedError("The overview stage cannot be completed", code="incidents.defaultStageImmutable")
        if not is_valid_stage_transition(state.stage.status, StageStatus.DONE):
            raise ReadOnlyError(f"Stage {stage_id} is already completed", code="incidents.stageCompletedReadOnly")
        if state.read_only:
            raise ReadOnlyError(f"Case {view.case_id} is closed", code="incidents.caseClosedReadOnly")
        if state.stage_type == StageType.CLOSURE and not has_decision_entry(state.blocks):
            raise _gate_error([ClosureBlocker.NO_DECISIONS])

        async with state.save_lock:
            if state.dirty:
                await self.saves.save_locked(view, state)
            stage = await self.transport.complete_stage(view.case_id, stage_id, user_id=self.user_id)
            state.apply_completion(stage)

        nxt = view.next_stage(stage_id)
        closure = view.closure_stage
        closure_id = None
        if closure is not None and closure.stage_id not in (stage_id, nxt.stage_id if nxt else None):
            closure_id = closure.stage_id
        if nxt is not None:
            view.active_stage_id = nxt.stage_id

        logger.info(f"[Lifecycle] Stage {stage_id} of case {view.case_id} completed")
        view.notify("stage_completed", stage_id)
        return StageCompletion(stage=stage, next_stage_id=nxt.stage_id if nxt else None, closure_stage_id=closure_id)

    # ============================================================
    # Case closure
    # ============================================================

    async def close_case(self, view: "CaseView") -> Case:
        """Close the case if the closure gate allows it.

        Dirty stages are saved first. Any save failure aborts closure (the
        closure stage's error takes precedence), since a closed case can no
        longer accept the pending edits.

        Raises:
            ClosureGateError: Gate not satisfied (``blockers`` lists every reason)
            VersionConflictError: A pending save conflicted
        """
        availability = evaluate_closure(view)
        if ClosureBlocker.ALREADY_CLOSED in availability.blockers:
            raise _gate_error(availability.blockers)

        report = await self.saves.save_dirty_stages(view)
        closure = view.closure_stage
        if not report.all_succeeded:
            failure = (closure and report.failed(closure.stage_id)) or next(iter(report.failures.values()))
            logger.warning(f"[Lifecycle] Closure of case {view.case_id} aborted: unsaved stages {list(report.failures)}")
            raise failure
        if closure is not None and closure.dirty:
            raise VersionConflictError(
                "Closure stage has unsaved changes",
                resource="stage_entry",
                resource_id=closure.stage_id,
                expected_version=closure.entry_version,
            )

        availability = evaluate_closure(view)
        if not availability.allowed:
            raise _gate_error(availability.blockers)

        case = await self.transport.close_case(view.case_id, user_id=self.user_id)
        view.adopt_case(case)
        logger.info(f"[Lifecycle] Case {view.case_id} closed (outcome: {case.closure_outcome})")
        view.notify("case_closed")
        return case

    # ============================================================
    # Status
    # ============================================================

    async def change_status(self, view: "CaseView", status: CaseStatus) -> StatusChange:
        """Set an operational status label.

        The new label is shown immediately and then written against the local
        case version. On conflict the server's record is adopted and no retry
        is made.
        """
        try:
            target = CaseStatus(status)
        except ValueError as e:
            raise ValidationRejectedError(f"Unknown status {status!r}", code="incidents.invalidStatus") from e
        if target not in OPERATIONAL_STATUSES:
            raise ValidationRejectedError("Use the close action to close a case", code="incidents.closeRequiresAction")
        if view.read_only:
            raise ReadOnlyError(f"Case {view.case_id} is closed", code="incidents.caseClosedReadOnly")
        if view.case.status == target:
            return StatusChange(status=target, applied=False)

        previous = view.case
        view.case = previous.model_copy(update={"status": target})
        view.status_saving = True
        view.notify("status_changed")
        try:
            case = await self.transport.update_case(
                view.case_id, {"status": target.value}, previous.version, user_id=self.user_id
            )
        except VersionConflictError:
            logger.warning(f"[Lifecycle] Status of case {view.case_id} changed elsewhere, adopting server status")
            await self._reconcile(view, previous)
            return StatusChange(status=view.case.status, applied=False, conflict=True)
        except IncidentCoreError:
            await self._reconcile(view, previous)
            raise
        finally:
            view.status_saving = False

        view.adopt_case(case)
        return StatusChange(status=case.status, applied=True)

    async def _reconcile(self, view: "CaseView", previous: Case) -> None:
        """Re-fetch the case; roll back to ``previous`` if that fails too."""
        try:
            await self.saves.refresh_case(view)
        except IncidentCoreError as e:
            logger.warning(f"[Lifecycle] Could not refresh case {view.case_id} ({e.code}), rolling back status")
            view.adopt_case(previous)

    # ============================================================
    # Stage management
    # ============================================================

    async def add_stage(
        self,
        view: "CaseView",
        title: str,
        stage_type: StageType = StageType.CUSTOM,
        block_types: Optional[Iterable[str]] = None,
        position: Optional[int] = None,
    ) -> StageState:
        """Create a stage and write its initial blocks.

        If the initial write fails, the stage stays dirty so the next manual
        save or autosave sweep writes it.
        """
        if view.read_only:
            raise ReadOnlyError(f"Case {view.case_id} is closed", code="incidents.caseClosedReadOnly")
        kind = normalize_stage_type(stage_type)
        if kind == StageType.OVERVIEW:
            raise ValidationRejectedError("Only the case has an overview stage", code="incidents.overviewReserved")
        if kind == StageType.CLOSURE and view.closure_stage is not None:
            raise ValidationRejectedError("The case already has a closure stage", code="incidents.closureStageExists")

        blocks = create_blocks_from_selection(block_types, kind)
        created = await self.transport.create_stage(view.case_id, title, position=position, user_id=self.user_id)
        state = StageState.pending(created.stage, created.entry, kind, blocks)
        view.add_stage_state(state)
        view.active_stage_id = state.stage_id

        try:
            await self.saves.save_stage_content(view, state.stage_id, change_reason="stage created")
        except IncidentCoreError as e:
            logger.warning(f"[Lifecycle] Initial content of stage {state.stage_id} not saved yet ({e.code})")
        view.notify("stage_added", state.stage_id)
        return state

    async def rename_stage(self, view: "CaseView", stage_id: str, title: str) -> Stage:
        return await self._update_stage(view, stage_id, title=title)

    async def move_stage(self, view: "CaseView", stage_id: str, position: int) -> Stage:
        return await self._update_stage(view, stage_id, position=position)

    async def _update_stage(self, view: "CaseView", stage_id: str, **changes) -> Stage:
        state = view.stage(stage_id)
        if state.stage.is_default:
            raise ValidationRejectedError("The overview stage cannot be changed", code="incidents.defaultStageImmutable")
        if view.read_only:
            raise ReadOnlyError(f"Case {view.case_id} is closed", code="incidents.caseClosedReadOnly")
        stage = await self.transport.update_stage(
            view.case_id, stage_id, state.stage.version, user_id=self.user_id, **changes
        )
        state.adopt_stage(stage)
        view.notify("stage_updated", stage_id)
        return stage

    def deletion_blocker(self, view: "CaseView", stage_id: str) -> Optional[IncidentCoreError]:
        """Why a stage may not be deleted, or None when deletion is allowed."""
        state = view.stages.get(stage_id)
        if state is None:
            return ValidationRejectedError(f"Stage {stage_id} is not loaded", code="incidents.stageUnknown")
        if state.stage.is_default:
            return ValidationRejectedError("The overview stage cannot be deleted", code="incidents.cannotDeleteOverview")
        if view.read_only:
            return ReadOnlyError(f"Case {view.case_id} is closed", code="incidents.caseClosedReadOnly")
        if state.stage.is_done:
            return ReadOnlyError(f"Stage {stage_id} is completed", code="incidents.stageCompletedReadOnly")
        if state.saving:
            return ValidationRejectedError(f"Stage {stage_id} is being saved", code="incidents.stageSaving")
        return None

    def can_delete_stage(self, view: "CaseView", stage_id: str) -> bool:
        return self.deletion_blocker(view, stage_id) is None

    async def delete_stage(self, view: "CaseView", stage_id: str) -> None:
        """Delete a non-default, open stage of an open case."""
        blocker = self.deletion_blocker(view, stage_id)
        if blocker is not None:
            raise blocker
        await self.transport.delete_stage(view.case_id, stage_id, user_id=self.user_id)
        view.remove_stage_state(stage_id)
        logger.info(f"[Lifecycle] Stage {stage_id} deleted from case {view.case_id}")
        view.notify("stage_deleted", stage_id)
