"""HTTP client for the incident case service."""

from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from incident_core_lib.clients.base import BaseServiceClient
from incident_core_lib.clients.transport import CaseTransport
from incident_core_lib.errors import ValidationRejectedError
from incident_core_lib.models import (
    Case,
    CaseDetail,
    CaseUpdateRequest,
    Stage,
    StageContentUpdateRequest,
    StageCreated,
    StageCreateRequest,
    StageEntry,
    StageListResponse,
    StageUpdateRequest,
)


class CaseServiceClient(BaseServiceClient, CaseTransport):
    """Async HTTP client for the incident case service.

    Implements CaseTransport against the ``/api/incidents`` routes. Every
    write sends the version it is based on; HTTP errors are raised as
    incident_core_lib errors.

    Usage:
        client = CaseServiceClient(base_url="http://incident-service:8000")
        detail = await client.get_case(case_id="case_123", user_id="user-456")
    """

    def __init__(
        self,
        base_url: str = "http://incident-service:8000",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            base_url: Base URL of the incident service
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport override
        """
        super().__init__(base_url=base_url, timeout=timeout, transport=transport)

    def _case_path(self, case_id: str) -> str:
        return f"/api/incidents/{case_id}"

    def _stage_path(self, case_id: str, stage_id: str) -> str:
        return f"/api/incidents/{case_id}/stages/{stage_id}"

    async def get_case(self, case_id: str, user_id: Optional[str] = None) -> CaseDetail:
        """Get case by ID.

        Args:
            case_id: Case identifier
            user_id: User ID for X-User-ID header

        Returns:
            CaseDetail with the case record and its participants

        Raises:
            NotFoundError: If case not found
        """
        data = await self._request("GET", self._case_path(case_id), user_id=user_id)
        return CaseDetail.model_validate(data)

    async def list_stages(self, case_id: str, user_id: Optional[str] = None) -> List[Stage]:
        data = await self._request("GET", f"{self._case_path(case_id)}/stages", user_id=user_id)
        if isinstance(data, list):
            data = {"items": data}
        return StageListResponse.model_validate(data or {}).items

    async def get_stage_entry(self, case_id: str, stage_id: str, user_id: Optional[str] = None) -> StageEntry:
        data = await self._request("GET", f"{self._stage_path(case_id, stage_id)}/entry", user_id=user_id)
        return StageEntry.model_validate({"stage_id": stage_id, **(data or {})})

    async def put_stage_entry(
        self,
        case_id: str,
        stage_id: str,
        content: str,
        version: int,
        change_reason: str = "",
        user_id: Optional[str] = None,
    ) -> StageEntry:
        """Save stage content.

        Args:
            case_id: Case identifier
            stage_id: Stage identifier
            content: Serialised content document
            version: Entry version the content is based on
            change_reason: Optional audit note
            user_id: User ID for X-User-ID header

        Returns:
            Stored entry. When the server omits the new version, it is taken
            to be ``version + 1``.

        Raises:
            VersionConflictError: If ``version`` is stale
            ReadOnlyError: If the stage is done or the case closed
        """
        body = StageContentUpdateRequest(content=content, change_reason=change_reason, version=version)
        data = await self._request(
            "PUT",
            f"{self._stage_path(case_id, stage_id)}/entry",
            user_id=user_id,
            json_body=body.model_dump(mode="json"),
            resource="stage_entry",
            resource_id=stage_id,
            expected_version=version,
        )
        data = data if isinstance(data, dict) else {}
        return StageEntry(
            stage_id=stage_id,
            content=content,
            change_reason=change_reason,
            version=data.get("version") or version + 1,
            updated_by=data.get("updated_by", user_id),
            updated_at=data.get("updated_at"),
        )

    async def update_case(
        self,
        case_id: str,
        patch: Dict[str, Any],
        version: int,
        user_id: Optional[str] = None,
    ) -> Case:
        """Update case-level fields.

        Raises:
            ValidationRejectedError: If the patch is not a valid case update
            VersionConflictError: If ``version`` is stale
        """
        try:
            body = CaseUpdateRequest(version=version, **patch)
        except ValidationError as e:
            raise ValidationRejectedError(str(e), code="incidents.invalidUpdate") from e
        data = await self._request(
            "PUT",
            self._case_path(case_id),
            user_id=user_id,
            json_body={**body.patch(), "version": version},
            resource="case",
            resource_id=case_id,
            expected_version=version,
        )
        return self._case_from(data)

    async def complete_stage(self, case_id: str, stage_id: str, user_id: Optional[str] = None) -> Stage:
        data = await self._request(
            "POST",
            f"{self._stage_path(case_id, stage_id)}/complete",
            user_id=user_id,
            resource="stage",
            resource_id=stage_id,
        )
        return Stage.model_validate(data)

    async def close_case(self, case_id: str, user_id: Optional[str] = None) -> Case:
        """Close the case.

        Raises:
            ClosureGateError: If the server refuses closure
        """
        data = await self._request(
            "POST",
            f"{self._case_path(case_id)}/close",
            user_id=user_id,
            resource="case",
            resource_id=case_id,
            closing=True,
        )
        return self._case_from(data)

    async def create_stage(
        self,
        case_id: str,
        title: str,
        position: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> StageCreated:
        body = StageCreateRequest(title=title, position=position)
        data = await self._request(
            "POST",
            f"{self._case_path(case_id)}/stages",
            user_id=user_id,
            json_body=body.model_dump(mode="json", exclude_none=True),
        )
        return StageCreated.model_validate(data)

    async def update_stage(
        self,
        case_id: str,
        stage_id: str,
        version: int,
        title: Optional[str] = None,
        position: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> Stage:
        body = StageUpdateRequest(version=version, title=title, position=position)
        data = await self._request(
            "PUT",
            self._stage_path(case_id, stage_id),
            user_id=user_id,
            json_body=body.model_dump(mode="json", exclude_none=True),
            resource="stage",
            resource_id=stage_id,
            expected_version=version,
        )
        return Stage.model_validate(data)

    async def delete_stage(self, case_id: str, stage_id: str, user_id: Optional[str] = None) -> None:
        await self._request("DELETE", self._stage_path(case_id, stage_id), user_id=user_id)

    @staticmethod
    def _case_from(data: Any) -> Case:
        if isinstance(data, dict) and ("case" in data or "incident" in data):
            return CaseDetail.model_validate(data).case
        return Case.model_validate(data)
