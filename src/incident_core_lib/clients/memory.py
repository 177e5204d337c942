"""In-process case service.

InMemoryCaseService is an authoritative CaseTransport kept in process memory.
It applies the same rules as the HTTP service: expected-version checks on
every write, read-only done stages and closed cases, the immutable default
stage and the closure gate. Used to embed the engine without a server and as
the backend of the test suite.

Returned records are always copies; callers never share state with the store.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from incident_core_lib.clients.transport import CaseTransport
from incident_core_lib.content.serialization import parse_content
from incident_core_lib.errors import (
    ClosureGateError,
    NotFoundError,
    ReadOnlyError,
    ValidationRejectedError,
    VersionConflictError,
)
from incident_core_lib.models.api_models import CaseDetail, CaseUpdateRequest, StageCreated
from incident_core_lib.models.blocks import StageType, decision_outcome, has_decision_entry
from incident_core_lib.models.case import (
    Case,
    CaseStatus,
    Participant,
    Stage,
    StageEntry,
    StageStatus,
    is_valid_stage_transition,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryCaseService(CaseTransport):
    """Authoritative in-memory case store."""

    def __init__(self):
        self._cases: Dict[str, Case] = {}
        self._participants: Dict[str, List[Participant]] = {}
        self._stages: Dict[str, Dict[str, Stage]] = {}
        self._entries: Dict[str, StageEntry] = {}
        self.calls: List[str] = []

    # ============================================================
    # Seeding
    # ============================================================

    def create_case(
        self,
        title: str,
        owner: Optional[str] = None,
        status: CaseStatus = CaseStatus.OPEN,
        participants: Optional[List[str]] = None,
    ) -> Case:
        """Create a case with its default overview stage."""
        now = _now()
        case = Case(
            case_id=f"case_{uuid4().hex[:12]}",
            title=title,
            status=status,
            owner=owner,
            participants=list(participants or []),
            created_at=now,
            updated_at=now,
        )
        self._cases[case.case_id] = case
        self._participants[case.case_id] = [
            Participant(user_id=user_id, role="owner" if user_id == owner else "participant")
            for user_id in ([owner] if owner else []) + [p for p in case.participants if p != owner]
        ]
        self._stages[case.case_id] = {}
        self._add_stage(case.case_id, "Overview", position=0, is_default=True)
        logger.info(f"Created case {case.case_id} ({title})")
        return case.model_copy(deep=True)

    def seed_stage(
        self,
        case_id: str,
        title: str,
        content: str = "",
        position: Optional[int] = None,
        status: StageStatus = StageStatus.OPEN,
    ) -> StageCreated:
        """Insert a stage with stored content directly (no checks)."""
        created = self._add_stage(case_id, title, position=position)
        stage = self._stages[case_id][created.stage.stage_id]
        stage.status = status
        self._entries[stage.stage_id].content = content
        return StageCreated(stage=stage.model_copy(deep=True), entry=self._entries[stage.stage_id].model_copy(deep=True))

    def _add_stage(self, case_id: str, title: str, position: Optional[int] = None, is_default: bool = False) -> StageCreated:
        stages = self._stages[case_id]
        if position is None:
            position = max((s.position for s in stages.values()), default=-1) + 1
        stage = Stage(
            stage_id=f"stage_{uuid4().hex[:12]}",
            case_id=case_id,
            title=title,
            is_default=is_default,
            position=position,
        )
        entry = StageEntry(stage_id=stage.stage_id, content="", version=1, updated_at=_now())
        stages[stage.stage_id] = stage
        self._entries[stage.stage_id] = entry
        return StageCreated(stage=stage.model_copy(deep=True), entry=entry.model_copy(deep=True))

    # ============================================================
    # Lookups
    # ============================================================

    def _case(self, case_id: str) -> Case:
        case = self._cases.get(case_id)
        if case is None:
            raise NotFoundError(f"Case {case_id} not found", code="incidents.notFound")
        return case

    def _stage(self, case_id: str, stage_id: str) -> Stage:
        self._case(case_id)
        stage = self._stages[case_id].get(stage_id)
        if stage is None:
            raise NotFoundError(f"Stage {stage_id} not found", code="incidents.stageNotFound")
        return stage

    def _writable_case(self, case_id: str) -> Case:
        case = self._case(case_id)
        if case.is_read_only:
            raise ReadOnlyError(f"Case {case_id} is closed", code="incidents.caseClosedReadOnly")
        return case

    def _writable_stage(self, case_id: str, stage_id: str) -> Stage:
        self._writable_case(case_id)
        stage = self._stage(case_id, stage_id)
        if stage.is_default:
            raise ValidationRejectedError("The overview stage cannot be changed", code="incidents.defaultStageImmutable")
        if stage.is_done:
            raise ReadOnlyError(f"Stage {stage_id} is completed", code="incidents.stageCompletedReadOnly")
        return stage

    def _closure_stage(self, case_id: str) -> Optional[Stage]:
        for stage in sorted(self._stages[case_id].values(), key=lambda s: s.sort_key):
            if stage.is_default:
                continue
            if parse_content(self._entries[stage.stage_id].content).stage_type == StageType.CLOSURE:
                return stage
        return None

    def _touch_case(self, case: Case) -> None:
        case.version += 1
        case.updated_at = _now()

    # ============================================================
    # CaseTransport
    # ============================================================

    async def get_case(self, case_id: str, user_id: Optional[str] = None) -> CaseDetail:
        await asyncio.sleep(0)
        self.calls.append("get_case")
        case = self._case(case_id)
        return CaseDetail(
            case=case.model_copy(deep=True),
            participants=[p.model_copy(deep=True) for p in self._participants.get(case_id, [])],
        )

    async def list_stages(self, case_id: str, user_id: Optional[str] = None) -> List[Stage]:
        await asyncio.sleep(0)
        self.calls.append("list_stages")
        self._case(case_id)
        return [stage.model_copy(deep=True) for stage in self._stages[case_id].values()]

    async def get_stage_entry(self, case_id: str, stage_id: str, user_id: Optional[str] = None) -> StageEntry:
        await asyncio.sleep(0)
        self.calls.append("get_stage_entry")
        self._stage(case_id, stage_id)
        return self._entries[stage_id].model_copy(deep=True)

    async def put_stage_entry(
        self,
        case_id: str,
        stage_id: str,
        content: str,
        version: int,
        change_reason: str = "",
        user_id: Optional[str] = None,
    ) -> StageEntry:
        await asyncio.sleep(0)
        self.calls.append("put_stage_entry")
        self._writable_stage(case_id, stage_id)
        entry = self._entries[stage_id]
        if entry.version != version:
            logger.info(f"Rejected stale save of stage {stage_id}: expected {version}, stored {entry.version}")
            raise VersionConflictError(
                resource="stage_entry",
                resource_id=stage_id,
                expected_version=version,
            )
        updated = StageEntry(
            stage_id=stage_id,
            content=content,
            change_reason=change_reason,
            version=entry.version + 1,
            updated_by=user_id,
            updated_at=_now(),
        )
        self._entries[stage_id] = updated
        return updated.model_copy(deep=True)

    async def update_case(
        self,
        case_id: str,
        patch: Dict[str, Any],
        version: int,
        user_id: Optional[str] = None,
    ) -> Case:
        await asyncio.sleep(0)
        self.calls.append("update_case")
        case = self._writable_case(case_id)
        if case.version != version:
            raise VersionConflictError(resource="case", resource_id=case_id, expected_version=version)
        try:
            request = CaseUpdateRequest(version=version, **patch)
        except ValueError as e:
            raise ValidationRejectedError(str(e), code="incidents.invalidUpdate") from e
        for field, value in request.patch().items():
            setattr(case, field, value)
        self._touch_case(case)
        return case.model_copy(deep=True)

    async def complete_stage(self, case_id: str, stage_id: str, user_id: Optional[str] = None) -> Stage:
        await asyncio.sleep(0)
        self.calls.append("complete_stage")
        self._writable_case(case_id)
        stage = self._stage(case_id, stage_id)
        if stage.is_default:
            raise ValidationRejectedError("The overview stage cannot be completed", code="incidents.defaultStageImmutable")
        if not is_valid_stage_transition(stage.status, StageStatus.DONE):
            raise ReadOnlyError(f"Stage {stage_id} is already {stage.status.value}", code="incidents.stageCompletedReadOnly")
        stage.status = StageStatus.DONE
        stage.closed_at = _now()
        stage.closed_by = user_id
        stage.version += 1
        return stage.model_copy(deep=True)

    async def close_case(self, case_id: str, user_id: Optional[str] = None) -> Case:
        await asyncio.sleep(0)
        self.calls.append("close_case")
        case = self._case(case_id)
        blockers: List[str] = []
        closure = self._closure_stage(case_id)
        blocks = parse_content(self._entries[closure.stage_id].content).blocks if closure else []
        if case.is_read_only:
            blockers.append("already_closed")
        if closure is None:
            blockers.append("missing_closure_stage")
        else:
            if not closure.is_done:
                blockers.append("closure_stage_open")
            if not has_decision_entry(blocks):
                blockers.append("no_decisions")
        if blockers:
            raise ClosureGateError(blockers)

        case.status = CaseStatus.CLOSED
        case.closed_at = _now()
        case.closed_by = user_id
        case.metadata = {**case.metadata, "closure_outcome": decision_outcome(blocks)}
        self._touch_case(case)
        logger.info(f"Closed case {case_id} with outcome {case.metadata['closure_outcome']}")
        return case.model_copy(deep=True)

    async def create_stage(
        self,
        case_id: str,
        title: str,
        position: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> StageCreated:
        await asyncio.sleep(0)
        self.calls.append("create_stage")
        self._writable_case(case_id)
        if not title.strip():
            raise ValidationRejectedError("Stage title is required", code="incidents.stageTitleRequired")
        return self._add_stage(case_id, title, position=position)

    async def update_stage(
        self,
        case_id: str,
        stage_id: str,
        version: int,
        title: Optional[str] = None,
        position: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> Stage:
        await asyncio.sleep(0)
        self.calls.append("update_stage")
        self._writable_case(case_id)
        stage = self._stage(case_id, stage_id)
        if stage.is_default:
            raise ValidationRejectedError("The overview stage cannot be changed", code="incidents.defaultStageImmutable")
        if stage.version != version:
            raise VersionConflictError(resource="stage", resource_id=stage_id, expected_version=version)
        if title is not None:
            stage.title = title
        if position is not None:
            stage.position = position
        stage.version += 1
        return stage.model_copy(deep=True)

    async def delete_stage(self, case_id: str, stage_id: str, user_id: Optional[str] = None) -> None:
        await asyncio.sleep(0)
        self.calls.append("delete_stage")
        self._writable_case(case_id)
        stage = self._stage(case_id, stage_id)
        if stage.is_default:
            raise ValidationRejectedError("The overview stage cannot be deleted", code="incidents.cannotDeleteOverview")
        if stage.is_done:
            raise ReadOnlyError(f"Stage {stage_id} is completed", code="incidents.stageCompletedReadOnly")
        del self._stages[case_id][stage_id]
        del self._entries[stage_id]
