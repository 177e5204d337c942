"""Case, stage and stage entry records.

Key Models:
- Case: incident case record with optimistic-concurrency version
- CaseStatus: operational status labels plus the terminal CLOSED state
- Stage: one step of a case (the default overview stage carries no content)
- StageStatus: OPEN → DONE (terminal)
- StageEntry: the versioned content document of a stage
- Participant: a user attached to a case

Versioning:
- Case.version and Stage.version are record versions bumped by the server
- StageEntry.version is the content version, bumped once per accepted save
- Every write carries the version it was based on; stale writes are rejected
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from incident_core_lib.models.blocks import StageType


# ============================================================
# Status Models
# ============================================================

class CaseStatus(str, Enum):
    """
    Case status.

    Every label except CLOSED is operational and can be set freely through a
    versioned case update. CLOSED is reached only through the closure action
    and is terminal: a closed case and all of its stages are read-only.
    """

    DRAFT = "draft"
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CONTAINED = "contained"
    RESOLVED = "resolved"
    WAITING = "waiting"
    WAITING_INFO = "waiting_info"
    APPROVAL = "approval"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal"""
        return self == CaseStatus.CLOSED

    @property
    def is_operational(self) -> bool:
        """Check if this label may be set by a plain status change"""
        return self != CaseStatus.CLOSED


OPERATIONAL_STATUSES: List[CaseStatus] = [s for s in CaseStatus if s.is_operational]


class StageStatus(str, Enum):
    """Stage status. DONE is terminal and makes the stage read-only."""

    OPEN = "open"
    DONE = "done"

    @property
    def is_terminal(self) -> bool:
        return self == StageStatus.DONE


def is_valid_stage_transition(from_status: StageStatus, to_status: StageStatus) -> bool:
    """
    Validate stage status transition.

    Valid Transitions:
    - OPEN → DONE

    Invalid:
    - DONE → * (terminal, no reopen)
    """
    valid_transitions = {
        StageStatus.OPEN: [StageStatus.DONE],
        StageStatus.DONE: [],  # Terminal
    }
    return to_status in valid_transitions.get(from_status, [])


def _id_as_str(v):
    if v is None:
        return v
    return str(v)


# ============================================================
# Records
# ============================================================

class Participant(BaseModel):
    """A user attached to a case. Display data is resolved elsewhere."""

    user_id: str = Field(description="Participant user id")
    role: str = Field(default="participant", description="owner | assignee | participant")
    display_name: Optional[str] = Field(
        default=None,
        description="Resolved by the user directory; opaque to this library"
    )

    @field_validator("user_id", mode="before")
    @classmethod
    def user_id_as_str(cls, v):
        return _id_as_str(v)


class Case(BaseModel):
    """
    Incident case record.

    The record is authoritative on the server. Local copies are replaced
    wholesale whenever the server returns a newer version.
    """

    case_id: str = Field(
        validation_alias=AliasChoices("case_id", "id"),
        description="Unique case identifier"
    )

    title: str = Field(default="", description="Short case title")

    status: CaseStatus = Field(
        default=CaseStatus.DRAFT,
        description="Current status label"
    )

    version: int = Field(
        default=1,
        ge=1,
        description="Record version, bumped by the server on every accepted update"
    )

    owner: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("owner", "owner_user_id"),
        description="Owner user id"
    )

    assignee: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("assignee", "assignee_user_id"),
        description="Assignee user id"
    )

    participants: List[str] = Field(
        default_factory=list,
        description="User ids of case participants"
    )

    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("metadata", "meta"),
        description="""
        Free-form case metadata.

        The server records `closure_outcome` here when the case is closed
        (outcome of the first filled decision of the closure stage).
        """
    )

    closed_at: Optional[datetime] = Field(default=None, description="When the case was closed")
    closed_by: Optional[str] = Field(default=None, description="Who closed the case")
    created_at: Optional[datetime] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None)

    @field_validator("case_id", "owner", "assignee", "closed_by", mode="before")
    @classmethod
    def ids_as_str(cls, v):
        return _id_as_str(v)

    @field_validator("participants", mode="before")
    @classmethod
    def participant_ids(cls, v):
        if not v:
            return []
        return [str(p.get("user_id", "")) if isinstance(p, dict) else str(p) for p in v]

    @field_validator("status", mode="before")
    @classmethod
    def status_lowercase(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @property
    def is_read_only(self) -> bool:
        """Closed cases cannot be edited."""
        return self.status.is_terminal

    @property
    def closure_outcome(self) -> Optional[str]:
        return self.metadata.get("closure_outcome")

    class Config:
        validate_assignment = True  # Validate on field assignment
        use_enum_values = False     # Keep enum instances


class Stage(BaseModel):
    """
    Stage record (title, ordering, status).

    Content lives in the separately versioned StageEntry.
    """

    stage_id: str = Field(
        validation_alias=AliasChoices("stage_id", "id"),
        description="Unique stage identifier"
    )
    case_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("case_id", "incident_id"),
    )
    title: str = Field(default="", description="Stage title")
    is_default: bool = Field(
        default=False,
        description="Overview stage created with the case; immutable, never deletable"
    )
    status: StageStatus = Field(default=StageStatus.OPEN)
    position: int = Field(default=0, description="Ordering key (ties broken by stage_id)")
    version: int = Field(default=1, ge=1, description="Stage record version")
    closed_at: Optional[datetime] = Field(default=None)
    closed_by: Optional[str] = Field(default=None)

    @field_validator("stage_id", "case_id", "closed_by", mode="before")
    @classmethod
    def ids_as_str(cls, v):
        return _id_as_str(v)

    @field_validator("status", mode="before")
    @classmethod
    def status_lowercase(cls, v):
        """Case-insensitive on input; missing status means open."""
        if v is None or v == "":
            return StageStatus.OPEN
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @property
    def is_done(self) -> bool:
        return self.status.is_terminal

    @property
    def sort_key(self):
        return (self.position, self.stage_id)

    class Config:
        validate_assignment = True


class StageEntry(BaseModel):
    """Versioned content document of one stage."""

    stage_id: str = Field(validation_alias=AliasChoices("stage_id", "id"))
    content: str = Field(default="", description="Serialised stage content document")
    change_reason: str = Field(default="")
    version: int = Field(default=1, ge=1, description="Content version, +1 per accepted save")
    updated_by: Optional[str] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None)

    @field_validator("stage_id", "updated_by", mode="before")
    @classmethod
    def ids_as_str(cls, v):
        return _id_as_str(v)

    @field_validator("content", "change_reason", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return "" if v is None else v


__all__ = [
    "CaseStatus",
    "OPERATIONAL_STATUSES",
    "StageStatus",
    "StageType",
    "is_valid_stage_transition",
    "Participant",
    "Case",
    "Stage",
    "StageEntry",
]
