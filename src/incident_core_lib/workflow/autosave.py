"""Periodic background flush of dirty stages.

Every ``interval_ms`` the scheduler saves the dirty stages of each open,
non-closed case view. Autosave is silent: save errors are logged, never
raised, and the stages stay dirty for the next sweep or a manual save. A sweep
that is still running when the next tick fires makes that tick a no-op.
Case-level fields are never autosaved.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Dict, Iterable, Optional

from incident_core_lib.config import AutosaveConfig
from incident_core_lib.errors import IncidentCoreError
from incident_core_lib.workflow.save_protocol import SaveProtocol, SaveReport

if TYPE_CHECKING:
    from incident_core_lib.session.case_view import CaseView

logger = logging.getLogger(__name__)


class AutosaveScheduler:
    """Timer-driven autosave for the views of one session."""

    def __init__(
        self,
        views: Callable[[], Iterable["CaseView"]],
        saves: SaveProtocol,
        config: Optional[AutosaveConfig] = None,
    ):
        self._views = views
        self._saves = saves
        self.config = config or AutosaveConfig.disabled()
        self._timer: Optional[asyncio.Task] = None
        self._sweep: Optional[asyncio.Task] = None
        self._in_flight = False
        self.skipped_ticks = 0

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        """Arm the timer (no-op when disabled or already running).

        Must be called from within the running event loop.
        """
        if not self.config.armed:
            logger.debug("[Autosave] Disabled, no timer armed")
            return
        if self.running:
            return
        self._timer = asyncio.get_running_loop().create_task(self._tick_loop())
        logger.info(f"[Autosave] Armed every {self.config.interval_ms}ms")

    async def stop(self) -> None:
        """Disarm the timer and wait for an in-flight sweep to finish."""
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        sweep, self._sweep = self._sweep, None
        if sweep is not None and not sweep.done():
            await sweep

    async def reconfigure(self, config: AutosaveConfig) -> None:
        """Apply new settings, restarting the timer if it should run."""
        await self.stop()
        self.config = config
        self.start()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.interval_seconds)
            if self._in_flight:
                self.skipped_ticks += 1
                logger.debug("[Autosave] Previous sweep still running, skipping tick")
                continue
            self._sweep = asyncio.get_running_loop().create_task(self.run_once())
            self._sweep.add_done_callback(self._sweep_done)

    @staticmethod
    def _sweep_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("[Autosave] Sweep crashed", exc_info=task.exception())

    async def run_once(self) -> Dict[str, SaveReport]:
        """Run one sweep over all open, non-closed views.

        Returns:
            Save report per case id (empty when the sweep was skipped)
        """
        if self._in_flight:
            self.skipped_ticks += 1
            return {}

        self._in_flight = True
        reports: Dict[str, SaveReport] = {}
        try:
            for view in list(self._views()):
                if view.read_only:
                    continue
                try:
                    report = await self._saves.save_dirty_stages(view)
                except IncidentCoreError as e:
                    logger.warning(f"[Autosave] Case {view.case_id}: sweep failed: {e.code}")
                    continue
                for stage_id, error in report.failures.items():
                    logger.warning(f"[Autosave] Case {view.case_id} stage {stage_id} not saved: {error.code}")
                if report.saved:
                    logger.debug(f"[Autosave] Case {view.case_id}: saved {report.saved}")
                reports[view.case_id] = report
        finally:
            self._in_flight = False
        return reports
