"""Stage content block models.

A stage's content document is an ordered list of typed blocks. Each block
variant is a pydantic model discriminated by its ``type`` field, so every
dispatch over blocks (normalisation, serialisation, closure checks) goes
through one tagged union instead of ad-hoc string checks.

Key Models:
- NoteBlock: freeform text
- ChecklistBlock: items with done/not_done status and a relative due value
- ActionsBlock: action log with owner, scheduled time and result
- DecisionsBlock: decision records (required by closure stages)
- TimelineBlock: timestamped events
- ArtifactsBlock: artifact references with attached file ids
- LinksBlock: typed references to other entities
- TableBlock: free-form indicator rows

Normalisation Rules:
- Unknown or missing block type becomes a note (keeping any text)
- Missing ids are assigned
- Empty item lists get exactly one template item
- Scalars are coerced to strings, legacy field names are folded
- Unknown fields are preserved but never interpreted
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, Iterable, List, Literal, Optional, Sequence, Tuple, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)

STAGE_SCHEMA = "incident-stage/v2"


# ============================================================
# Vocabularies
# ============================================================

class BlockType(str, Enum):
    """Block variants, in canonical authoring order."""

    NOTE = "note"
    CHECKLIST = "checklist"
    ACTIONS = "actions"
    DECISIONS = "decisions"
    TIMELINE = "timeline"
    ARTIFACTS = "artifacts"
    LINKS = "links"
    TABLE = "table"


BLOCK_ORDER: List[str] = [block_type.value for block_type in BlockType]


class StageType(str, Enum):
    """Stage presets. OVERVIEW is reserved for the default stage."""

    INVESTIGATION = "investigation"
    RESPONSE = "response"
    CLOSURE = "closure"
    DECISION = "decision"
    CUSTOM = "custom"
    OVERVIEW = "overview"


CHECKLIST_UNITS: Tuple[str, ...] = ("minutes", "hours", "days", "weeks", "months", "years")
DECISION_OUTCOMES: Tuple[str, ...] = ("closed", "approved", "rejected", "blocked", "deferred", "monitor")
LINK_TYPES: Tuple[str, ...] = ("doc", "incident", "report", "task", "other")

# Legacy and localised outcome labels found in stored documents
_OUTCOME_ALIASES: Dict[str, str] = {
    "monitoring": "monitor",
    "разрешено": "approved",
    "закрыт": "closed",
    "отклонено": "rejected",
    "блокировка": "blocked",
    "заблокировано": "blocked",
    "отложено": "deferred",
    "под наблюдением": "monitor",
}


def new_id(prefix: str) -> str:
    """Generate a stable block/item identifier."""
    return f"{prefix}-{uuid4().hex[:12]}"


def _as_text(value: Any) -> str:
    """Coerce a stored scalar into the string form used by every text field."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False)
    return str(value)


def normalize_outcome(raw: Any) -> str:
    """Map a stored decision outcome onto DECISION_OUTCOMES (default: approved)."""
    value = _as_text(raw).strip().lower()
    if value in DECISION_OUTCOMES:
        return value
    return _OUTCOME_ALIASES.get(value, "approved")


def normalize_stage_type(raw: Any) -> StageType:
    """Map a stored stageType string onto the preset vocabulary."""
    value = _as_text(raw).strip().lower()
    try:
        return StageType(value)
    except ValueError:
        return StageType.CUSTOM


def _fold(data: Dict[str, Any], legacy: str, field: str) -> None:
    """Move a legacy key onto its canonical field unless the field is already set."""
    if legacy not in data:
        return
    value = data.pop(legacy)
    if not data.get(field):
        data[field] = value


# ============================================================
# Items
# ============================================================

class BlockItem(BaseModel):
    """Base for block items. Unknown keys are kept as extras."""

    model_config = ConfigDict(extra="allow")

    id: str

    @model_validator(mode="before")
    @classmethod
    def assign_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not _as_text(data.get("id")).strip():
            data = dict(data)
            data["id"] = new_id("item")
        return data

    @field_validator("id", mode="before")
    @classmethod
    def id_as_text(cls, v):
        return _as_text(v).strip()


class ChecklistItem(BlockItem):
    text: str = ""
    owner: str = ""
    status: Literal["done", "not_done"] = "not_done"
    status_changed_at: str = ""
    due_value: str = ""
    due_unit: str = "hours"

    @model_validator(mode="before")
    @classmethod
    def fold_legacy_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            _fold(data, "state", "status")
            _fold(data, "due", "due_value")
            _fold(data, "changed_at", "status_changed_at")
        return data

    @field_validator("text", "owner", "status_changed_at", "due_value", mode="before")
    @classmethod
    def text_fields(cls, v):
        return _as_text(v)

    @field_validator("status", mode="before")
    @classmethod
    def two_value_status(cls, v):
        return "done" if _as_text(v).strip().lower() == "done" else "not_done"

    @field_validator("due_unit", mode="before")
    @classmethod
    def known_unit(cls, v):
        unit = _as_text(v).strip().lower()
        return unit if unit in CHECKLIST_UNITS else "hours"


class ActionItem(BlockItem):
    action: str = ""
    owner: str = ""
    at: str = Field(default="", description="Scheduled time (ISO date-time)")
    result: str = ""

    @field_validator("action", "owner", "at", "result", mode="before")
    @classmethod
    def text_fields(cls, v):
        return _as_text(v)


class DecisionItem(BlockItem):
    """One decision record.

    A decision counts towards the closure gate only when it is filled: the
    default outcome on a template item is not a decision anyone made.
    """

    decision: str = ""
    outcome: str = "approved"
    options: List[str] = Field(default_factory=list)
    rationale: str = ""
    risks: str = ""
    approver: str = ""
    at: str = ""

    @model_validator(mode="before")
    @classmethod
    def fold_legacy_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            _fold(data, "selected", "outcome")
            _fold(data, "reason", "rationale")
            _fold(data, "compromise", "risks")
            _fold(data, "owner", "approver")
            _fold(data, "date", "at")
        return data

    @field_validator("decision", "rationale", "risks", "approver", "at", mode="before")
    @classmethod
    def text_fields(cls, v):
        return _as_text(v)

    @field_validator("outcome", mode="before")
    @classmethod
    def known_outcome(cls, v):
        return normalize_outcome(v)

    @field_validator("options", mode="before")
    @classmethod
    def option_list(cls, v):
        if not isinstance(v, list):
            return []
        return [_as_text(option) for option in v]

    @property
    def is_filled(self) -> bool:
        """True once any substantive field has been entered."""
        texts = (self.decision, self.rationale, self.risks, self.approver, self.at)
        return any(text.strip() for text in texts) or any(opt.strip() for opt in self.options)


class TimelineItem(BlockItem):
    at: str = ""
    event_type: str = ""
    message: str = ""

    @field_validator("at", "event_type", "message", mode="before")
    @classmethod
    def text_fields(cls, v):
        return _as_text(v)


class ArtifactItem(BlockItem):
    title: str = ""
    reference: str = ""
    note: str = ""
    files: List[str] = Field(
        default_factory=list,
        description="Ids of files held by the external attachment store"
    )

    @field_validator("title", "reference", "note", mode="before")
    @classmethod
    def text_fields(cls, v):
        return _as_text(v)

    @field_validator("files", mode="before")
    @classmethod
    def file_ids(cls, v):
        if not isinstance(v, list):
            return []
        ids = []
        for entry in v:
            file_id = entry.get("id") if isinstance(entry, dict) else entry
            file_id = _as_text(file_id).strip()
            if file_id:
                ids.append(file_id)
        return ids


class LinkItem(BlockItem):
    link_type: str = "doc"
    reference: str = ""
    comment: str = ""

    @field_validator("reference", "comment", mode="before")
    @classmethod
    def text_fields(cls, v):
        return _as_text(v)

    @field_validator("link_type", mode="before")
    @classmethod
    def known_link_type(cls, v):
        link_type = _as_text(v).strip().lower()
        if not link_type or link_type == "document":
            return "doc"
        return link_type if link_type in LINK_TYPES else "other"


class TableItem(BlockItem):
    indicator: str = ""
    indicator_type: str = ""
    context: str = ""

    @field_validator("indicator", "indicator_type", "context", mode="before")
    @classmethod
    def text_fields(cls, v):
        return _as_text(v)


# ============================================================
# Blocks
# ============================================================

class BlockBase(BaseModel):
    """Common block behaviour: stable id, preserved extras."""

    model_config = ConfigDict(extra="allow")

    id_prefix: ClassVar[str] = "blk"

    id: str

    @model_validator(mode="before")
    @classmethod
    def assign_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not _as_text(data.get("id")).strip():
            data = dict(data)
            data["id"] = new_id(cls.id_prefix)
        return data

    @field_validator("id", mode="before")
    @classmethod
    def id_as_text(cls, v):
        return _as_text(v).strip()


class NoteBlock(BlockBase):
    id_prefix: ClassVar[str] = "note"

    type: Literal["note"] = "note"
    text: str = ""

    @field_validator("text", mode="before")
    @classmethod
    def text_field(cls, v):
        return _as_text(v)


class ItemBlock(BlockBase):
    """Block holding an ordered item list that is never empty."""

    item_model: ClassVar[type] = BlockItem
    primary_field: ClassVar[str] = "text"

    items: List[Any] = Field(default_factory=list)

    @field_validator("items", mode="before")
    @classmethod
    def item_list(cls, v):
        if not isinstance(v, list):
            return []
        items = []
        for raw in v:
            if raw is None:
                continue
            if isinstance(raw, (dict, BaseModel)):
                items.append(raw)
            else:
                items.append({cls.primary_field: _as_text(raw)})
        return items

    @model_validator(mode="after")
    def ensure_template_item(self):
        if not self.items:
            self.items.append(self.new_item())
        return self

    @classmethod
    def new_item(cls) -> BlockItem:
        """Fresh template item for this block type."""
        return cls.item_model.model_validate({})

    def find_item(self, item_id: str) -> Optional[BlockItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class ChecklistBlock(ItemBlock):
    id_prefix: ClassVar[str] = "checklist"
    item_model: ClassVar[type] = ChecklistItem

    type: Literal["checklist"] = "checklist"
    items: List[ChecklistItem] = Field(default_factory=list)


class ActionsBlock(ItemBlock):
    id_prefix: ClassVar[str] = "actions"
    item_model: ClassVar[type] = ActionItem
    primary_field: ClassVar[str] = "action"

    type: Literal["actions"] = "actions"
    items: List[ActionItem] = Field(default_factory=list)


class DecisionsBlock(ItemBlock):
    id_prefix: ClassVar[str] = "decisions"
    item_model: ClassVar[type] = DecisionItem
    primary_field: ClassVar[str] = "decision"

    type: Literal["decisions"] = "decisions"
    items: List[DecisionItem] = Field(default_factory=list)

    @property
    def filled_items(self) -> List[DecisionItem]:
        return [item for item in self.items if item.is_filled]


class TimelineBlock(ItemBlock):
    id_prefix: ClassVar[str] = "timeline"
    item_model: ClassVar[type] = TimelineItem
    primary_field: ClassVar[str] = "message"

    type: Literal["timeline"] = "timeline"
    items: List[TimelineItem] = Field(default_factory=list)


class ArtifactsBlock(ItemBlock):
    id_prefix: ClassVar[str] = "artifact"
    item_model: ClassVar[type] = ArtifactItem
    primary_field: ClassVar[str] = "title"

    type: Literal["artifacts"] = "artifacts"
    items: List[ArtifactItem] = Field(default_factory=list)


class LinksBlock(ItemBlock):
    id_prefix: ClassVar[str] = "link"
    item_model: ClassVar[type] = LinkItem
    primary_field: ClassVar[str] = "reference"

    type: Literal["links"] = "links"
    items: List[LinkItem] = Field(default_factory=list)


class TableBlock(ItemBlock):
    id_prefix: ClassVar[str] = "table"
    item_model: ClassVar[type] = TableItem
    primary_field: ClassVar[str] = "indicator"

    type: Literal["table"] = "table"
    items: List[TableItem] = Field(default_factory=list)


Block = Annotated[
    Union[
        NoteBlock,
        ChecklistBlock,
        ActionsBlock,
        DecisionsBlock,
        TimelineBlock,
        ArtifactsBlock,
        LinksBlock,
        TableBlock,
    ],
    Field(discriminator="type"),
]

BLOCK_MODELS: Dict[BlockType, type] = {
    BlockType.NOTE: NoteBlock,
    BlockType.CHECKLIST: ChecklistBlock,
    BlockType.ACTIONS: ActionsBlock,
    BlockType.DECISIONS: DecisionsBlock,
    BlockType.TIMELINE: TimelineBlock,
    BlockType.ARTIFACTS: ArtifactsBlock,
    BlockType.LINKS: LinksBlock,
    BlockType.TABLE: TableBlock,
}

_block_adapter: TypeAdapter = TypeAdapter(Block)


# ============================================================
# Stage presets
# ============================================================

@dataclass(frozen=True)
class StagePreset:
    """Initial block layout of a stage type.

    Required blocks cannot be removed while authoring; the data layer only
    reports their absence (see missing_required_blocks).
    """

    blocks: Tuple[BlockType, ...]
    required: Tuple[BlockType, ...] = ()


STAGE_PRESETS: Dict[StageType, StagePreset] = {
    StageType.INVESTIGATION: StagePreset(
        blocks=(
            BlockType.TABLE,
            BlockType.CHECKLIST,
            BlockType.ACTIONS,
            BlockType.ARTIFACTS,
            BlockType.TIMELINE,
            BlockType.LINKS,
            BlockType.NOTE,
        ),
        required=(BlockType.TABLE,),
    ),
    StageType.RESPONSE: StagePreset(
        blocks=(BlockType.ACTIONS, BlockType.CHECKLIST, BlockType.ARTIFACTS, BlockType.LINKS, BlockType.NOTE),
        required=(BlockType.ACTIONS,),
    ),
    StageType.CLOSURE: StagePreset(
        blocks=(BlockType.DECISIONS,),
        required=(BlockType.DECISIONS,),
    ),
    StageType.DECISION: StagePreset(
        blocks=(BlockType.DECISIONS, BlockType.NOTE, BlockType.LINKS, BlockType.TIMELINE),
        required=(BlockType.DECISIONS,),
    ),
}


def get_preset(stage_type: Any) -> Optional[StagePreset]:
    return STAGE_PRESETS.get(normalize_stage_type(stage_type))


# ============================================================
# Templates & normalisation
# ============================================================

def create_template(block_type: Any) -> Block:
    """Create a new block of the given type with exactly one template item.

    Unknown types produce an empty note.
    """
    try:
        kind = BlockType(_as_text(block_type).strip().lower())
    except ValueError:
        kind = BlockType.NOTE
    return BLOCK_MODELS[kind].model_validate({})


def _raw_note(data: Dict[str, Any]) -> NoteBlock:
    """Note holding the raw block as JSON."""
    return NoteBlock.model_validate({
        "id": data.get("id"),
        "text": json.dumps(data, sort_keys=True, ensure_ascii=False, default=str),
    })


def _note_from(data: Dict[str, Any]) -> NoteBlock:
    """Note for a block of unknown type.

    A block carrying only text keeps that text; anything else is kept as raw
    JSON so that no field is lost.
    """
    text = data.get("text")
    content = {key: value for key, value in data.items() if key not in ("id", "type", "text")}
    if content:
        return _raw_note(data)
    return NoteBlock.model_validate({"id": data.get("id"), "text": _as_text(text)})


def normalize_block(block: Any) -> Block:
    """Return a well-formed copy of a possibly partial or malformed block.

    Never raises: anything that cannot be understood becomes a note block so
    that typed content is not lost.
    """
    if isinstance(block, BaseModel):
        data = block.model_dump(mode="json")
    elif isinstance(block, dict):
        data = dict(block)
    else:
        logger.debug(f"Discarding non-object block entry of type {type(block).__name__}")
        return create_template(BlockType.NOTE)

    block_type = _as_text(data.get("type")).strip().lower()
    if block_type not in BLOCK_ORDER:
        return _note_from(data)
    data["type"] = block_type

    try:
        return _block_adapter.validate_python(data)
    except ValidationError as e:
        logger.warning(
            f"Block {data.get('id')!r} ({block_type}) failed validation with "
            f"{e.error_count()} error(s); keeping its raw content as a note"
        )
        return _raw_note(data)


def normalize_blocks(blocks: Any, stage_type: Any = None) -> List[Block]:
    """Normalise a block list; an absent or empty list becomes the stage preset."""
    if not isinstance(blocks, (list, tuple)) or not blocks:
        preset = get_preset(stage_type)
        if preset:
            return [create_template(block_type) for block_type in preset.blocks]
        return [create_template(BlockType.NOTE)]
    return [normalize_block(block) for block in blocks]


def create_blocks_from_selection(selected: Optional[Iterable[Any]], stage_type: Any) -> List[Block]:
    """Build the initial blocks of a new stage from the author's selection.

    Closure stages always start with a single decisions block.
    """
    if normalize_stage_type(stage_type) == StageType.CLOSURE:
        return [create_template(BlockType.DECISIONS)]
    chosen: List[str] = []
    for raw in selected or []:
        block_type = _as_text(getattr(raw, "value", raw)).strip().lower()
        if block_type in BLOCK_ORDER and block_type not in chosen:
            chosen.append(block_type)
    if not chosen:
        preset = get_preset(stage_type)
        chosen = [block_type.value for block_type in preset.blocks] if preset else [BlockType.NOTE.value]
    return [create_template(block_type) for block_type in chosen]


def missing_required_blocks(blocks: Sequence[Block], stage_type: Any) -> List[BlockType]:
    """Required block types of the preset that are absent from ``blocks``."""
    preset = get_preset(stage_type)
    if not preset:
        return []
    present = {block.type for block in blocks}
    return [block_type for block_type in preset.required if block_type.value not in present]


# ============================================================
# Closure helpers
# ============================================================

def has_decision_entry(blocks: Sequence[Block]) -> bool:
    """True if any decisions block holds at least one filled decision."""
    return any(
        isinstance(block, DecisionsBlock) and block.filled_items
        for block in blocks
    )


def decision_outcome(blocks: Sequence[Block]) -> Optional[str]:
    """Outcome of the first filled decision, recorded on the case at closure."""
    for block in blocks:
        if isinstance(block, DecisionsBlock):
            for item in block.filled_items:
                return item.outcome
    return None
