"""Optimistic-concurrency save protocol.

Stage content is saved as ``{content, change_reason, version}`` where version
is the entry version the local edits are based on. The server accepts the
write only if that version is still current, so concurrent editors can never
silently overwrite each other: the loser gets a VersionConflictError and
keeps its local edits.

Rules:
- Saves of the same stage are serialised by the stage's asyncio.Lock; a save
  waiting on the lock re-checks dirtiness before submitting
- On success the submitted payload becomes the clean baseline, so edits made
  while the request was in flight keep the stage dirty
- On any failure the local state is left untouched and the error is raised
- Resubmitting the same ``{content, version}`` after a transport failure is
  safe: either it lands once or it conflicts
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from incident_core_lib.clients.transport import CaseTransport
from incident_core_lib.content.store import StageState
from incident_core_lib.errors import (
    IncidentCoreError,
    ReadOnlyError,
    ValidationRejectedError,
    VersionConflictError,
)
from incident_core_lib.models.case import Case, CaseStatus

if TYPE_CHECKING:
    from incident_core_lib.session.case_view import CaseView

logger = logging.getLogger(__name__)


@dataclass
class SaveReport:
    """Outcome of saving every dirty stage of a case."""

    saved: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: Dict[str, IncidentCoreError] = field(default_factory=dict)

    @property
    def all_succeeded(self) -> bool:
        return not self.failures

    def failed(self, stage_id: str) -> Optional[IncidentCoreError]:
        """Error raised while saving ``stage_id``, if it failed."""
        return self.failures.get(stage_id)


class SaveProtocol:
    """Saves stage content and case fields with expected-version checks."""

    def __init__(self, transport: CaseTransport, user_id: Optional[str] = None):
        self.transport = transport
        self.user_id = user_id

    # ============================================================
    # Stage content
    # ============================================================

    async def save_stage_content(self, view: "CaseView", stage_id: str, change_reason: str = "") -> bool:
        """Save one stage if it has unsaved edits.

        Args:
            view: Open case view holding the stage
            stage_id: Stage to save
            change_reason: Optional audit note sent with the content

        Returns:
            True if content was submitted and accepted, False for a no-op

        Raises:
            VersionConflictError: Another editor saved first
            ReadOnlyError / ValidationRejectedError: Server refused the write
            TransportError: Network or server failure
        """
        state = view.stage(stage_id)
        if not state.dirty:
            logger.debug(f"[SaveProtocol] Stage {stage_id} is clean or read-only, nothing to save")
            return False

        async with state.save_lock:
            saved = await self.save_locked(view, state, change_reason)

        if saved:
            view.notify("stage_saved", stage_id)
        return saved

    async def save_locked(self, view: "CaseView", state: StageState, change_reason: str = "") -> bool:
        """Submit a stage's current content. The caller holds ``state.save_lock``."""
        if not state.dirty:
            return False

        payload = state.current_serialized
        version = state.entry_version
        try:
            entry = await self.transport.put_stage_entry(
                view.case_id,
                state.stage_id,
                payload,
                version,
                change_reason=change_reason,
                user_id=self.user_id,
            )
        except VersionConflictError as e:
            e.resource = e.resource or "stage_entry"
            e.resource_id = e.resource_id or state.stage_id
            e.expected_version = version
            logger.warning(
                f"[SaveProtocol] Version conflict on stage {state.stage_id} "
                f"(local entry version {version}); local edits kept"
            )
            raise
        except IncidentCoreError as e:
            logger.warning(f"[SaveProtocol] Save of stage {state.stage_id} failed: {e.code}: {e.message}")
            raise

        state.mark_saved(payload, entry.version or version + 1)
        logger.debug(f"[SaveProtocol] Saved stage {state.stage_id} at entry version {state.entry_version}")
        return True

    async def save_dirty_stages(self, view: "CaseView", change_reason: str = "") -> SaveReport:
        """Save every dirty stage of a case, concurrently and independently.

        Failures are collected per stage in the report, never raised.
        """
        dirty = view.dirty_stages()
        report = SaveReport()
        if not dirty:
            return report

        results = await asyncio.gather(
            *(self.save_stage_content(view, state.stage_id, change_reason) for state in dirty),
            return_exceptions=True,
        )
        for state, result in zip(dirty, results):
            if isinstance(result, IncidentCoreError):
                report.failures[state.stage_id] = result
            elif isinstance(result, BaseException):
                raise result
            elif result:
                report.saved.append(state.stage_id)
            else:
                report.skipped.append(state.stage_id)

        if report.failures:
            logger.info(
                f"[SaveProtocol] Case {view.case_id}: saved {len(report.saved)}, "
                f"failed {len(report.failures)} ({', '.join(report.failures)})"
            )
        return report

    async def reload_stage(self, view: "CaseView", stage_id: str) -> StageState:
        """Discard local edits of a stage and adopt the server's entry."""
        state = view.stage(stage_id)
        async with state.save_lock:
            entry = await self.transport.get_stage_entry(view.case_id, stage_id, user_id=self.user_id)
            state.adopt_entry(entry)
        view.notify("stage_reloaded", stage_id)
        return state

    # ============================================================
    # Case fields
    # ============================================================

    async def save_case_field(self, view: "CaseView", patch: Dict[str, Any]) -> Case:
        """Update case-level fields against the local case version.

        On conflict the authoritative record is fetched and adopted, then the
        conflict is raised with ``latest`` set. Never force-overwrites.

        Raises:
            ValidationRejectedError: ``version`` in patch or status closed
            ReadOnlyError: Case is closed
            VersionConflictError: Case changed on the server
        """
        if "version" in patch:
            raise ValidationRejectedError("Case version is managed by the save protocol", code="incidents.versionManaged")

        body = {key: value.value if isinstance(value, Enum) else value for key, value in patch.items()}
        if body.get("status") is not None:
            try:
                status = CaseStatus(str(body["status"]).lower())
            except ValueError as e:
                raise ValidationRejectedError(f"Unknown status {body['status']!r}", code="incidents.invalidStatus") from e
            if status.is_terminal:
                raise ValidationRejectedError("Use the close action to close a case", code="incidents.closeRequiresAction")
            body["status"] = status.value

        if view.read_only:
            raise ReadOnlyError(f"Case {view.case_id} is closed", code="incidents.caseClosedReadOnly")

        version = view.case.version
        try:
            case = await self.transport.update_case(view.case_id, body, version, user_id=self.user_id)
        except VersionConflictError as e:
            logger.warning(f"[SaveProtocol] Case {view.case_id} changed since version {version}, adopting server record")
            e.resource = e.resource or "case"
            e.resource_id = e.resource_id or view.case_id
            e.expected_version = version
            try:
                e.latest = await self.refresh_case(view)
            except IncidentCoreError as refresh_error:
                logger.warning(f"[SaveProtocol] Could not refresh case {view.case_id} after conflict: {refresh_error.code}")
            raise

        view.adopt_case(case)
        return case

    async def refresh_case(self, view: "CaseView") -> Case:
        """Fetch and adopt the authoritative case record."""
        detail = await self.transport.get_case(view.case_id, user_id=self.user_id)
        view.participants = detail.participants
        view.adopt_case(detail.case)
        return detail.case
