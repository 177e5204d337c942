"""Open case views and the session that owns them.

A CaseView is the live, editable state of one open case: the case record,
its participants and one StageState per stage. Views are created by
CaseSession.open_case and discarded (not deleted) by close_view; nothing is
kept in module globals.

CaseSession wires one transport to the save protocol, the lifecycle state
machine and the autosave scheduler.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence

from incident_core_lib.clients.transport import CaseTransport
from incident_core_lib.config import AutosaveConfig, ClientSettings
from incident_core_lib.content.store import StageState
from incident_core_lib.errors import NotFoundError, TransportError
from incident_core_lib.models.api_models import CaseDetail
from incident_core_lib.models.blocks import StageType
from incident_core_lib.models.case import Case, Participant, Stage, StageEntry
from incident_core_lib.utils import create_custom_retry
from incident_core_lib.workflow.autosave import AutosaveScheduler
from incident_core_lib.workflow.lifecycle import CaseLifecycle
from incident_core_lib.workflow.save_protocol import SaveProtocol

logger = logging.getLogger(__name__)

Listener = Callable[["CaseView", str, Optional[str]], None]


class CaseView:
    """Live state of one open case."""

    def __init__(self, case: Case, participants: Sequence[Participant], stages: Sequence[StageState]):
        self.case = case
        self.participants: List[Participant] = list(participants)
        self.stages: Dict[str, StageState] = {state.stage_id: state for state in stages}
        self.status_saving = False
        self._listeners: List[Listener] = []
        self.sync_read_only()
        ordered = self.ordered_stages()
        self.active_stage_id: Optional[str] = ordered[0].stage_id if ordered else None

    @classmethod
    def load(cls, detail: CaseDetail, stages: Sequence[Stage], entries: Dict[str, StageEntry]) -> "CaseView":
        read_only = detail.case.is_read_only
        states = [StageState.from_entry(stage, entries.get(stage.stage_id), read_only) for stage in stages]
        return cls(detail.case, detail.participants, states)

    @property
    def case_id(self) -> str:
        return self.case.case_id

    @property
    def read_only(self) -> bool:
        return self.case.is_read_only

    # ============================================================
    # Stage queries
    # ============================================================

    def ordered_stages(self) -> List[StageState]:
        """Stages by position, ties broken by stage id."""
        return sorted(self.stages.values(), key=lambda state: state.stage.sort_key)

    def stage(self, stage_id: str) -> StageState:
        state = self.stages.get(stage_id)
        if state is None:
            raise NotFoundError(f"Stage {stage_id} is not part of case {self.case_id}", code="incidents.stageNotFound")
        return state

    @property
    def active_stage(self) -> Optional[StageState]:
        return self.stages.get(self.active_stage_id) if self.active_stage_id else None

    @property
    def closure_stage(self) -> Optional[StageState]:
        """First closure-type stage by position."""
        for state in self.ordered_stages():
            if not state.stage.is_default and state.stage_type == StageType.CLOSURE:
                return state
        return None

    def dirty_stages(self) -> List[StageState]:
        return [state for state in self.ordered_stages() if state.dirty]

    @property
    def has_unsaved_changes(self) -> bool:
        return any(state.dirty for state in self.stages.values())

    def next_stage(self, stage_id: str) -> Optional[StageState]:
        """Stage following ``stage_id`` in position order (overview excluded)."""
        ordered = [state for state in self.ordered_stages() if not state.stage.is_default]
        ids = [state.stage_id for state in ordered]
        if stage_id not in ids:
            return None
        index = ids.index(stage_id)
        return ordered[index + 1] if index + 1 < len(ordered) else None

    # ============================================================
    # Mutation (used by the workflow layer)
    # ============================================================

    def adopt_case(self, case: Case) -> None:
        """Replace the case record and propagate its read-only flag."""
        self.case = case
        self.sync_read_only()
        self.notify("case_updated")

    def sync_read_only(self) -> None:
        read_only = self.read_only
        for state in self.stages.values():
            state.case_read_only = read_only

    def add_stage_state(self, state: StageState) -> None:
        state.case_read_only = self.read_only
        self.stages[state.stage_id] = state

    def remove_stage_state(self, stage_id: str) -> None:
        self.stages.pop(stage_id, None)
        if self.active_stage_id == stage_id:
            ordered = self.ordered_stages()
            self.active_stage_id = ordered[0].stage_id if ordered else None

    # ============================================================
    # Change notification
    # ============================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener(view, event, stage_id)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, event: str, stage_id: Optional[str] = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, event, stage_id)
            except Exception:
                logger.exception(f"Listener failed on {event} for case {self.case_id}")


class CaseSession:
    """Owns the open case views of one user and the engines acting on them.

    Usage:
        async with CaseSession(transport, user_id="u-1", autosave=AutosaveConfig.from_env()) as session:
            view = await session.open_case(case_id)
            view.stage(stage_id).set_note_text(block_id, "Root cause confirmed")
            await session.saves.save_stage_content(view, stage_id)
    """

    def __init__(
        self,
        transport: CaseTransport,
        user_id: Optional[str] = None,
        autosave: Optional[AutosaveConfig] = None,
        load_retry_attempts: int = 3,
        load_retry_wait: float = 0.5,
    ):
        self.transport = transport
        self.user_id = user_id
        self._views: Dict[str, CaseView] = {}
        self._owns_transport = False

        self.saves = SaveProtocol(transport, user_id)
        self.lifecycle = CaseLifecycle(transport, self.saves, user_id)
        self.autosave = AutosaveScheduler(self.views, self.saves, autosave)

        self._load_retry = create_custom_retry(
            max_attempts=load_retry_attempts,
            min_wait=load_retry_wait,
            max_wait=load_retry_wait * 8,
            multiplier=load_retry_wait,
            retry_on=TransportError,
        )

    @classmethod
    def from_settings(cls, settings: ClientSettings, user_id: Optional[str] = None) -> "CaseSession":
        """Session talking HTTP to the configured case service."""
        session = cls(
            settings.build_client(),
            user_id=user_id,
            autosave=settings.autosave,
            load_retry_attempts=settings.load_retry_attempts,
        )
        session._owns_transport = True
        return session

    def views(self) -> List[CaseView]:
        return list(self._views.values())

    def view(self, case_id: str) -> CaseView:
        view = self._views.get(case_id)
        if view is None:
            raise NotFoundError(f"Case {case_id} is not open", code="incidents.caseNotOpen")
        return view

    async def open_case(self, case_id: str) -> CaseView:
        """Load a case into a view (or return the already open view).

        Transport failures are retried with exponential backoff.
        """
        if case_id in self._views:
            return self._views[case_id]
        view = await self._load_retry(self._load_view)(case_id)
        self._views[case_id] = view
        logger.info(f"Opened case {case_id} with {len(view.stages)} stage(s)")
        return view

    async def _load_view(self, case_id: str) -> CaseView:
        detail = await self.transport.get_case(case_id, user_id=self.user_id)
        stages = await self.transport.list_stages(case_id, user_id=self.user_id)
        content_stages = [stage for stage in stages if not stage.is_default]
        entries = await asyncio.gather(
            *(self.transport.get_stage_entry(case_id, stage.stage_id, user_id=self.user_id) for stage in content_stages)
        )
        return CaseView.load(detail, stages, {entry.stage_id: entry for entry in entries})

    def close_view(self, case_id: str) -> Optional[CaseView]:
        """Discard an open view. Unsaved edits are dropped."""
        view = self._views.pop(case_id, None)
        if view is not None and view.has_unsaved_changes:
            logger.warning(
                f"Closed case {case_id} with unsaved stages: "
                f"{[state.stage_id for state in view.dirty_stages()]}"
            )
        return view

    async def close(self) -> None:
        """Stop autosave and discard all views."""
        await self.autosave.stop()
        for case_id in list(self._views):
            self.close_view(case_id)
        if self._owns_transport:
            await self.transport.close()

    async def __aenter__(self) -> "CaseSession":
        self.autosave.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
