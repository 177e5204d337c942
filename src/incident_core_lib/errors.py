"""Error taxonomy for the incident stage engine.

Every failure raised by the transport, the save protocol or the lifecycle
state machine derives from IncidentCoreError so that callers can decide in
one place whether to surface it (explicit actions) or log it (autosave).

- VersionConflictError: expected-version check failed, recoverable
- ValidationRejectedError: request refused for a business rule
- ClosureGateError: case closure (or closure-stage completion) blocked
- ReadOnlyError: target is closed/done or otherwise not editable
- NotFoundError: case or stage no longer exists
- TransportError: network or server failure, local state kept
"""

from typing import Any, List, Optional


class IncidentCoreError(Exception):
    """Base class for all incident engine errors."""

    default_code = "incidents.error"

    def __init__(self, message: str = "", code: Optional[str] = None):
        self.code = code or self.default_code
        self.message = message or self.code
        super().__init__(self.message)


class VersionConflictError(IncidentCoreError):
    """A write was submitted against a stale version.

    Attributes:
        resource: "stage_entry", "stage" or "case"
        resource_id: Identifier of the conflicting record
        expected_version: Version the rejected write was based on
        latest: Authoritative record fetched after the conflict, if any
    """

    default_code = "incidents.conflictVersion"

    def __init__(
        self,
        message: str = "",
        resource: str = "",
        resource_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        latest: Any = None,
    ):
        super().__init__(message or f"Version conflict on {resource or 'record'}")
        self.resource = resource
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.latest = latest


class ValidationRejectedError(IncidentCoreError):
    """The request was refused because it breaks a business rule."""

    default_code = "incidents.validation"


class ClosureGateError(ValidationRejectedError):
    """Case closure is blocked.

    Attributes:
        blockers: Every unmet closure condition, most fundamental first
    """

    default_code = "incidents.close.unavailable"

    def __init__(self, blockers: List[str], message: str = ""):
        self.blockers = list(blockers)
        primary = self.blockers[0] if self.blockers else self.default_code
        super().__init__(
            message or f"Case cannot be closed: {', '.join(self.blockers) or 'unavailable'}",
            code=f"incidents.close.{primary}" if self.blockers else None,
        )


class ReadOnlyError(IncidentCoreError):
    """Mutation attempted on a closed case or completed stage."""

    default_code = "incidents.readOnly"


class NotFoundError(IncidentCoreError):
    """Case or stage does not exist (or is no longer visible)."""

    default_code = "incidents.notFound"


class TransportError(IncidentCoreError):
    """Network or server failure; the caller keeps its local state."""

    default_code = "incidents.transport"
