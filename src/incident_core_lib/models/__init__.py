"""
Shared data models for the incident stage engine.

Blocks (content), case/stage records and the wire payloads of the case
service.
"""

from incident_core_lib.models.blocks import (
    # Vocabularies
    STAGE_SCHEMA,
    BLOCK_ORDER,
    CHECKLIST_UNITS,
    DECISION_OUTCOMES,
    LINK_TYPES,
    BlockType,
    StageType,

    # Items
    BlockItem,
    ChecklistItem,
    ActionItem,
    DecisionItem,
    TimelineItem,
    ArtifactItem,
    LinkItem,
    TableItem,

    # Blocks
    Block,
    NoteBlock,
    ItemBlock,
    ChecklistBlock,
    ActionsBlock,
    DecisionsBlock,
    TimelineBlock,
    ArtifactsBlock,
    LinksBlock,
    TableBlock,

    # Presets and normalisation
    StagePreset,
    STAGE_PRESETS,
    create_template,
    normalize_block,
    normalize_blocks,
    normalize_stage_type,
    create_blocks_from_selection,
    missing_required_blocks,
    has_decision_entry,
    decision_outcome,
)

from incident_core_lib.models.case import (
    Case,
    CaseStatus,
    OPERATIONAL_STATUSES,
    Participant,
    Stage,
    StageEntry,
    StageStatus,
    is_valid_stage_transition,
)

from incident_core_lib.models.api_models import (
    CaseDetail,
    CaseUpdateRequest,
    StageContentUpdateRequest,
    StageCreateRequest,
    StageCreated,
    StageListResponse,
    StageUpdateRequest,
)

__all__ = [
    # Vocabularies
    "STAGE_SCHEMA", "BLOCK_ORDER", "CHECKLIST_UNITS", "DECISION_OUTCOMES",
    "LINK_TYPES", "BlockType", "StageType",
    # Items
    "BlockItem", "ChecklistItem", "ActionItem", "DecisionItem",
    "TimelineItem", "ArtifactItem", "LinkItem", "TableItem",
    # Blocks
    "Block", "NoteBlock", "ItemBlock", "ChecklistBlock", "ActionsBlock",
    "DecisionsBlock", "TimelineBlock", "ArtifactsBlock", "LinksBlock",
    "TableBlock",
    # Presets
    "StagePreset", "STAGE_PRESETS", "create_template", "normalize_block",
    "normalize_blocks", "normalize_stage_type", "create_blocks_from_selection",
    "missing_required_blocks", "has_decision_entry", "decision_outcome",
    # Records
    "Case", "CaseStatus", "OPERATIONAL_STATUSES", "Participant", "Stage",
    "StageEntry", "StageStatus", "is_valid_stage_transition",
    # API
    "CaseDetail", "CaseUpdateRequest", "StageContentUpdateRequest",
    "StageCreateRequest", "StageCreated", "StageListResponse",
    "StageUpdateRequest",
]
