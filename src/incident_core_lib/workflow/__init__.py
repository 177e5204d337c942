"""Save protocol, lifecycle state machine and autosave."""

from incident_core_lib.workflow.save_protocol import SaveProtocol, SaveReport
from incident_core_lib.workflow.lifecycle import (
    CaseLifecycle,
    ClosureAvailability,
    ClosureBlocker,
    StageCompletion,
    StatusChange,
    evaluate_closure,
)
from incident_core_lib.workflow.autosave import AutosaveScheduler

__all__ = [
    "SaveProtocol",
    "SaveReport",
    "CaseLifecycle",
    "ClosureAvailability",
    "ClosureBlocker",
    "StageCompletion",
    "StatusChange",
    "evaluate_closure",
    "AutosaveScheduler",
]
