"""Open case views and sessions."""

from incident_core_lib.session.case_view import CaseSession, CaseView

__all__ = ["CaseSession", "CaseView"]
