"""Incident Core Library

Stage content versioning and concurrency engine for incident cases: block
models, canonical content documents, optimistic-concurrency saves, the
stage/case lifecycle and autosave.
"""

__version__ = "0.1.0"

# Export models and errors first (no dependencies)
from incident_core_lib.errors import (
    IncidentCoreError,
    VersionConflictError,
    ValidationRejectedError,
    ClosureGateError,
    ReadOnlyError,
    NotFoundError,
    TransportError,
)
from incident_core_lib.models import (
    Case, CaseStatus, Stage, StageStatus, StageEntry, StageType, BlockType,
    Block, create_template, normalize_blocks,
)
from incident_core_lib.content import StageState, parse_content, serialize

# Export service discovery (no model dependencies)
from incident_core_lib.discovery import (
    ServiceRegistry,
    DeploymentMode,
    get_service_registry,
    reset_service_registry,
)

_LAZY = {
    "CaseServiceClient": "incident_core_lib.clients",
    "InMemoryCaseService": "incident_core_lib.clients",
    "CaseSession": "incident_core_lib.session",
    "CaseView": "incident_core_lib.session",
}


# Lazy import for clients and sessions; both pull in httpx and the workflow layer
def __getattr__(name):
    """Lazy import for clients and sessions."""
    if name in _LAZY:
        import importlib

        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    # Errors
    "IncidentCoreError", "VersionConflictError", "ValidationRejectedError",
    "ClosureGateError", "ReadOnlyError", "NotFoundError", "TransportError",
    # Models
    "Case", "CaseStatus", "Stage", "StageStatus", "StageEntry", "StageType",
    "BlockType", "Block", "create_template", "normalize_blocks",
    # Content
    "StageState", "parse_content", "serialize",
    # Clients and sessions (lazy loaded)
    "CaseServiceClient", "InMemoryCaseService", "CaseSession", "CaseView",
    # Service Discovery
    "ServiceRegistry",
    "DeploymentMode",
    "get_service_registry",
    "reset_service_registry",
]
