"""Canonical serialisation of stage content documents.

Document shape: ``{"schema": "incident-stage/v2", "stageType": ..., "blocks": [...]}``
encoded as canonical JSON (sorted keys, compact separators, UTF-8 kept).
Canonical form makes string equality the dirty check: two serialisations are
equal iff their normalised structures are equal.

parse_content never raises. Malformed or legacy documents degrade to note
blocks holding the original text.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from incident_core_lib.models.blocks import (
    STAGE_SCHEMA,
    Block,
    BlockType,
    NoteBlock,
    StageType,
    create_template,
    normalize_blocks,
    normalize_stage_type,
)

logger = logging.getLogger(__name__)


@dataclass
class ParsedContent:
    """Result of parsing a stored stage entry."""

    stage_type: StageType
    blocks: List[Block]
    serialized: str


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _document(stage_type: StageType, blocks: Sequence[Block]) -> Dict[str, Any]:
    return {
        "schema": STAGE_SCHEMA,
        "stageType": stage_type.value,
        "blocks": [block.model_dump(mode="json") for block in blocks],
    }


def serialize(stage_type: Any, blocks: Sequence[Any]) -> str:
    """Normalise ``blocks`` and encode them as a canonical content document.

    Args:
        stage_type: Stage type (unknown values are stored as custom)
        blocks: Blocks as models or raw dicts

    Returns:
        Canonical JSON string
    """
    kind = normalize_stage_type(stage_type)
    return canonical_json(_document(kind, normalize_blocks(list(blocks), kind)))


def _note(text: str) -> List[Block]:
    return [NoteBlock.model_validate({"text": text})]


def parse_content(raw: Any) -> ParsedContent:
    """Decode a stored stage entry into normalised blocks.

    - Empty input gives the custom preset (a single note)
    - Non-JSON or non-object JSON gives one note holding the raw text
    - A document without a block list uses its ``text`` as a note
    - ``type`` is accepted as a legacy name for ``stageType``
    """
    text = raw if isinstance(raw, str) else ("" if raw is None else str(raw))

    if not text.strip():
        blocks = [create_template(BlockType.NOTE)]
        return ParsedContent(StageType.CUSTOM, blocks, canonical_json(_document(StageType.CUSTOM, blocks)))

    try:
        data = json.loads(text)
    except ValueError:
        data = None

    if not isinstance(data, dict):
        logger.debug("Stage content is not a JSON document, keeping it as a note")
        blocks = _note(text)
        return ParsedContent(StageType.CUSTOM, blocks, canonical_json(_document(StageType.CUSTOM, blocks)))

    kind = normalize_stage_type(data.get("stageType") or data.get("type"))
    raw_blocks = data.get("blocks")
    if isinstance(raw_blocks, list):
        blocks = normalize_blocks(raw_blocks, kind)
    elif isinstance(data.get("text"), str) and data["text"]:
        blocks = _note(data["text"])
    else:
        blocks = normalize_blocks(None, kind)

    return ParsedContent(kind, blocks, canonical_json(_document(kind, blocks)))
