"""Conversation module: live reconstruction of an agent's chat thread.

Public API: event types, the pure reconciler fold, and read-time views.
"""

from agentdeck.conversation.events import (
    ConversationEvent,
    IgnoredEvent,
    MessageRemoved,
    MessageUpdated,
    PartRemoved,
    PartUpdated,
    SessionActivity,
)
from agentdeck.conversation.reconciler import (
    Conversation,
    ConversationMessage,
    append_local_echo,
    apply_event,
)
from agentdeck.conversation.schemas import (
    ExecutionState,
    MessageInfo,
    MessageOrigin,
    MessagePart,
    PartKind,
    Role,
    TokenUsage,
    ToolState,
)
from agentdeck.conversation.views import (
    GroupLayout,
    MessageGroup,
    ThinkingBlock,
    ToolView,
    classify_parts,
    group_by_role,
    layout_group,
    tool_view,
)

__all__ = [
    # Events
    "ConversationEvent",
    "IgnoredEvent",
    "MessageRemoved",
    "MessageUpdated",
    "PartRemoved",
    "PartUpdated",
    "SessionActivity",
    # State
    "Conversation",
    "ConversationMessage",
    "append_local_echo",
    "apply_event",
    # Payloads
    "ExecutionState",
    "MessageInfo",
    "MessageOrigin",
    "MessagePart",
    "PartKind",
    "Role",
    "TokenUsage",
    "ToolState",
    # Views
    "GroupLayout",
    "MessageGroup",
    "ThinkingBlock",
    "ToolView",
    "classify_parts",
    "group_by_role",
    "layout_group",
    "tool_view",
]
