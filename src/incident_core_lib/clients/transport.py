"""Transport contract between the stage engine and the case service.

Every write carries the version it is based on. Implementations must raise
the errors of incident_core_lib.errors:

- VersionConflictError when the expected version is stale
- ReadOnlyError when the target is closed/done
- ValidationRejectedError (ClosureGateError) for business-rule refusals
- NotFoundError for missing cases or stages
- TransportError for network/server failures
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from incident_core_lib.models.api_models import CaseDetail, StageCreated
from incident_core_lib.models.case import Case, Stage, StageEntry


class CaseTransport(ABC):
    """Async access to the authoritative case service."""

    @abstractmethod
    async def get_case(self, case_id: str, user_id: Optional[str] = None) -> CaseDetail:
        """Fetch a case record with its participants."""
        pass

    @abstractmethod
    async def list_stages(self, case_id: str, user_id: Optional[str] = None) -> List[Stage]:
        """List the stages of a case (unordered)."""
        pass

    @abstractmethod
    async def get_stage_entry(self, case_id: str, stage_id: str, user_id: Optional[str] = None) -> StageEntry:
        """Fetch the current content entry of a stage."""
        pass

    @abstractmethod
    async def put_stage_entry(
        self,
        case_id: str,
        stage_id: str,
        content: str,
        version: int,
        change_reason: str = "",
        user_id: Optional[str] = None,
    ) -> StageEntry:
        """Save stage content against the expected entry version.

        Returns:
            The stored entry carrying the new version
        """
        pass

    @abstractmethod
    async def update_case(
        self,
        case_id: str,
        patch: Dict[str, Any],
        version: int,
        user_id: Optional[str] = None,
    ) -> Case:
        """Update case-level fields against the expected case version."""
        pass

    @abstractmethod
    async def complete_stage(self, case_id: str, stage_id: str, user_id: Optional[str] = None) -> Stage:
        """Mark a stage done (terminal)."""
        pass

    @abstractmethod
    async def close_case(self, case_id: str, user_id: Optional[str] = None) -> Case:
        """Close the case if the closure gate allows it (terminal)."""
        pass

    @abstractmethod
    async def create_stage(
        self,
        case_id: str,
        title: str,
        position: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> StageCreated:
        """Create a stage together with its empty entry."""
        pass

    @abstractmethod
    async def update_stage(
        self,
        case_id: str,
        stage_id: str,
        version: int,
        title: Optional[str] = None,
        position: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> Stage:
        """Rename or reorder a stage against its record version."""
        pass

    @abstractmethod
    async def delete_stage(self, case_id: str, stage_id: str, user_id: Optional[str] = None) -> None:
        """Delete a non-default, open stage."""
        pass

    async def close(self) -> None:
        """Release any held connections."""
        pass
