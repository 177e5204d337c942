"""Live editable state of one stage.

StageState owns a stage's blocks and the two serialisations used for dirty
tracking:

- initial_serialized: what the server is known to hold at entry_version
- current_serialized: canonical form of the local blocks

Every mutation goes through is_editable() and recomputes current_serialized,
so ``dirty`` is always a plain string comparison.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

from incident_core_lib.content.serialization import parse_content, serialize
from incident_core_lib.errors import ReadOnlyError
from incident_core_lib.models.blocks import (
    Block,
    BlockItem,
    ChecklistBlock,
    ItemBlock,
    NoteBlock,
    StageType,
    create_template,
    normalize_blocks,
    normalize_stage_type,
)
from incident_core_lib.models.case import Stage, StageEntry

logger = logging.getLogger(__name__)


def is_editable(state: "StageState") -> bool:
    """Single editability predicate for every mutation and save path.

    False for the default (overview) stage and for read-only stages.
    """
    return not state.stage.is_default and not state.read_only


@dataclass
class StageState:
    """One stage's live content, versions and save lock."""

    stage: Stage
    stage_type: StageType = StageType.CUSTOM
    blocks: List[Block] = field(default_factory=list)
    entry_version: int = 1
    initial_serialized: str = ""
    current_serialized: str = ""
    case_read_only: bool = False
    save_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    # ============================================================
    # Construction
    # ============================================================

    @classmethod
    def overview(cls, stage: Stage, case_read_only: bool = False) -> "StageState":
        """State of the default stage: no blocks, never dirty."""
        return cls(stage=stage, stage_type=StageType.OVERVIEW, case_read_only=case_read_only)

    @classmethod
    def from_entry(
        cls,
        stage: Stage,
        entry: Optional[StageEntry],
        case_read_only: bool = False,
    ) -> "StageState":
        """Build clean state from a loaded stage and its entry."""
        if stage.is_default:
            return cls.overview(stage, case_read_only)
        parsed = parse_content(entry.content if entry else "")
        return cls(
            stage=stage,
            stage_type=parsed.stage_type,
            blocks=parsed.blocks,
            entry_version=entry.version if entry else 1,
            initial_serialized=parsed.serialized,
            current_serialized=parsed.serialized,
            case_read_only=case_read_only,
        )

    @classmethod
    def pending(
        cls,
        stage: Stage,
        entry: StageEntry,
        stage_type: Any,
        blocks: Sequence[Block],
    ) -> "StageState":
        """State of a freshly created stage whose initial content is not yet saved.

        The empty baseline keeps it dirty until the content is written.
        """
        kind = normalize_stage_type(stage_type)
        normalized = normalize_blocks(list(blocks), kind)
        return cls(
            stage=stage,
            stage_type=kind,
            blocks=normalized,
            entry_version=entry.version,
            initial_serialized="",
            current_serialized=serialize(kind, normalized),
        )

    # ============================================================
    # Derived state
    # ============================================================

    @property
    def stage_id(self) -> str:
        return self.stage.stage_id

    @property
    def read_only(self) -> bool:
        return self.case_read_only or self.stage.is_done

    @property
    def dirty(self) -> bool:
        if not is_editable(self):
            return False
        return self.current_serialized != self.initial_serialized

    @property
    def saving(self) -> bool:
        return self.save_lock.locked()

    def find_block(self, block_id: str) -> Block:
        for block in self.blocks:
            if block.id == block_id:
                return block
        raise ValueError(f"Block {block_id} not found in stage {self.stage_id}")

    def _item_block(self, block_id: str) -> ItemBlock:
        block = self.find_block(block_id)
        if not isinstance(block, ItemBlock):
            raise ValueError(f"Block {block_id} ({block.type}) has no items")
        return block

    # ============================================================
    # Mutations
    # ============================================================

    def _require_editable(self) -> None:
        if is_editable(self):
            return
        if self.stage.is_default:
            raise ReadOnlyError(f"Stage {self.stage_id} is the overview stage", code="incidents.defaultStageImmutable")
        if self.stage.is_done:
            raise ReadOnlyError(f"Stage {self.stage_id} is completed", code="incidents.stageCompletedReadOnly")
        raise ReadOnlyError(f"Case of stage {self.stage_id} is closed", code="incidents.caseClosedReadOnly")

    def _touch(self) -> None:
        self.blocks = normalize_blocks(self.blocks, self.stage_type)
        self.current_serialized = serialize(self.stage_type, self.blocks)

    def add_block(self, block_type: Any, index: Optional[int] = None) -> Block:
        """Append (or insert at ``index``) a new template block."""
        self._require_editable()
        block = create_template(block_type)
        if index is None:
            self.blocks.append(block)
        else:
            self.blocks.insert(index, block)
        self._touch()
        return self.find_block(block.id)

    def remove_block(self, block_id: str) -> None:
        self._require_editable()
        block = self.find_block(block_id)
        self.blocks.remove(block)
        self._touch()

    def move_block(self, block_id: str, index: int) -> None:
        self._require_editable()
        block = self.find_block(block_id)
        self.blocks.remove(block)
        self.blocks.insert(max(0, min(index, len(self.blocks))), block)
        self._touch()

    def add_item(self, block_id: str, **fields: Any) -> BlockItem:
        self._require_editable()
        block = self._item_block(block_id)
        item = block.item_model.model_validate(fields)
        block.items.append(item)
        self._touch()
        return self._item_block(block_id).find_item(item.id)

    def remove_item(self, block_id: str, item_id: str) -> None:
        """Remove an item; the last item is replaced by a fresh template."""
        self._require_editable()
        block = self._item_block(block_id)
        remaining = [item for item in block.items if item.id != item_id]
        if len(remaining) == len(block.items):
            raise ValueError(f"Item {item_id} not found in block {block_id}")
        block.items[:] = remaining or [block.new_item()]
        self._touch()

    def update_item(self, block_id: str, item_id: str, **changes: Any) -> BlockItem:
        """Apply field changes to an item. The item id never changes."""
        self._require_editable()
        block = self._item_block(block_id)
        item = block.find_item(item_id)
        if item is None:
            raise ValueError(f"Item {item_id} not found in block {block_id}")
        data = item.model_dump()
        data.update(changes)
        data["id"] = item.id
        updated = block.item_model.model_validate(data)
        block.items[block.items.index(item)] = updated
        self._touch()
        return self._item_block(block_id).find_item(item_id)

    def set_item_status(self, block_id: str, item_id: str, done: bool, at: Optional[str] = None) -> BlockItem:
        """Toggle a checklist item and stamp status_changed_at."""
        block = self.find_block(block_id)
        if not isinstance(block, ChecklistBlock):
            raise ValueError(f"Block {block_id} is not a checklist")
        return self.update_item(
            block_id,
            item_id,
            status="done" if done else "not_done",
            status_changed_at=at or datetime.now(timezone.utc).isoformat(),
        )

    def set_note_text(self, block_id: str, text: str) -> None:
        self._require_editable()
        block = self.find_block(block_id)
        if not isinstance(block, NoteBlock):
            raise ValueError(f"Block {block_id} is not a note")
        block.text = text
        self._touch()

    def replace_blocks(self, blocks: Sequence[Any], stage_type: Any = None) -> None:
        """Replace the whole block list (and optionally the stage type)."""
        self._require_editable()
        if stage_type is not None:
            self.stage_type = normalize_stage_type(stage_type)
        self.blocks = list(blocks)
        self._touch()

    # ============================================================
    # Server reconciliation
    # ============================================================

    def mark_saved(self, serialized: str, version: int) -> None:
        """Record an accepted save of ``serialized`` at entry ``version``.

        Edits made after ``serialized`` was captured keep the stage dirty.
        """
        self.initial_serialized = serialized
        self.entry_version = version

    def adopt_entry(self, entry: StageEntry) -> None:
        """Discard local edits and take the server's entry as the new baseline."""
        if self.stage.is_default:
            return
        parsed = parse_content(entry.content)
        self.stage_type = parsed.stage_type
        self.blocks = parsed.blocks
        self.entry_version = entry.version
        self.initial_serialized = parsed.serialized
        self.current_serialized = parsed.serialized
        logger.info(f"Stage {self.stage_id} reloaded at entry version {entry.version}")

    def apply_completion(self, stage: Stage) -> None:
        """Adopt the completed stage record; the stage becomes read-only and clean."""
        self.stage = stage
        self.initial_serialized = self.current_serialized

    def adopt_stage(self, stage: Stage) -> None:
        """Adopt a newer stage record (rename, reorder)."""
        self.stage = stage


__all__ = ["StageState", "is_editable"]
