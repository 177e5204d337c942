"""API Request/Response Models for the incident case service.

These models describe the wire payloads exchanged with the case service.
They handle:
- Request validation (expected versions are mandatory on every update)
- Response parsing (legacy field names accepted via aliases)
"""

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from incident_core_lib.models.case import Case, CaseStatus, Participant, Stage, StageEntry


# ============================================================
# Case Reads and Updates
# ============================================================

class CaseDetail(BaseModel):
    """Case record together with its participants."""

    case: Case = Field(validation_alias=AliasChoices("case", "incident"))
    participants: List[Participant] = Field(default_factory=list)


class CaseUpdateRequest(BaseModel):
    """Versioned partial update of case-level fields.

    Closing a case is a separate action; CLOSED is refused here.
    """

    version: int = Field(ge=1, description="Case version the update is based on")

    title: Optional[str] = Field(default=None, max_length=200)
    status: Optional[CaseStatus] = Field(default=None)
    owner: Optional[str] = Field(default=None)
    assignee: Optional[str] = Field(default=None)
    participants: Optional[List[str]] = Field(default=None)
    metadata: Optional[Dict[str, Any]] = Field(default=None)

    @field_validator("status")
    @classmethod
    def status_not_closed(cls, v):
        if v is not None and v.is_terminal:
            raise ValueError("Use the close action to close a case")
        return v

    def patch(self) -> Dict[str, Any]:
        """Fields actually being changed (without the version)."""
        return self.model_dump(mode="json", exclude_none=True, exclude={"version"})

    class Config:
        extra = "forbid"  # Unknown fields are refused, not dropped


# ============================================================
# Stages
# ============================================================

class StageListResponse(BaseModel):
    items: List[Stage] = Field(default_factory=list)


class StageContentUpdateRequest(BaseModel):
    """Save of a stage content document against an expected entry version."""

    content: str = Field(description="Serialised stage content document")
    change_reason: str = Field(default="")
    version: int = Field(ge=1, description="Entry version the content is based on")


class StageCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    position: Optional[int] = Field(default=None)


class StageCreated(BaseModel):
    """New stage record plus its initial (empty) entry."""

    stage: Stage
    entry: StageEntry


class StageUpdateRequest(BaseModel):
    """Rename or reorder a stage against its record version."""

    version: int = Field(ge=1)
    title: Optional[str] = Field(default=None, max_length=200)
    position: Optional[int] = Field(default=None)
