"""Stage content: canonical serialisation and live per-stage state."""

from incident_core_lib.content.serialization import (
    ParsedContent,
    canonical_json,
    parse_content,
    serialize,
)
from incident_core_lib.content.store import StageState, is_editable

__all__ = [
    "ParsedContent",
    "canonical_json",
    "parse_content",
    "serialize",
    "StageState",
    "is_editable",
]
