"""Session module: agent session lifecycle and model resolution.

Public API: SessionStore, the model resolver and all schema types from
schemas.py. SessionController lives in agentdeck.session.controller; it is
not re-exported here because it depends on the host client, which itself
imports this package's schemas.
"""

from agentdeck.session.resolver import (
    ModelContextResolver,
    ModelResolution,
    SessionHeader,
    context_utilization,
    resolve_model,
    session_header,
)
from agentdeck.session.schemas import (
    AgentDefinition,
    AgentSession,
    ModelInfo,
    ModelLimit,
    ModelOption,
    ModelRef,
    ProviderCatalog,
    ProviderInfo,
    SessionStatus,
)
from agentdeck.session.store import SessionStore, accepts_transition

__all__ = [
    # Lifecycle
    "SessionStore",
    "accepts_transition",
    # Model resolution
    "ModelContextResolver",
    "ModelResolution",
    "SessionHeader",
    "context_utilization",
    "resolve_model",
    "session_header",
    # Schemas
    "AgentDefinition",
    "AgentSession",
    "ModelInfo",
    "ModelLimit",
    "ModelOption",
    "ModelRef",
    "ProviderCatalog",
    "ProviderInfo",
    "SessionStatus",
]
