"""Read-time projections over a Conversation.

Nothing here changes conversation state: grouping, thinking blocks and tool
rendering are computed on demand for whichever front end is drawing.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from agentdeck.conversation.reconciler import Conversation, ConversationMessage
from agentdeck.conversation.schemas import (
    ExecutionState,
    MessagePart,
    PartKind,
    Role,
)

DEFAULT_OUTPUT_LIMIT = 500
DEFAULT_PREVIEW_LINES = 3


@dataclass(frozen=True)
class MessageGroup:
    """Consecutive messages sharing one role."""

    role: Role
    messages: tuple[ConversationMessage, ...]

    @property
    def key(self) -> str:
        return self.messages[0].id

    @property
    def parts(self) -> list[MessagePart]:
        return [part for message in self.messages for part in message.parts]


@dataclass(frozen=True)
class ThinkingBlock:
    """Reasoning text of a group, collapsed to a short preview by default."""

    text: str
    preview_lines: int = DEFAULT_PREVIEW_LINES

    @property
    def lines(self) -> list[str]:
        return self.text.split("\n")

    @property
    def needs_expand(self) -> bool:
        return len(self.lines) > self.preview_lines

    def display(self, expanded: bool = False) -> str:
        if expanded or not self.needs_expand:
            return self.text
        return "\n".join(self.lines[: self.preview_lines])


@dataclass(frozen=True)
class ToolView:
    name: str
    running: bool
    output: str | None = None
    truncated: bool = False


@dataclass(frozen=True)
class GroupLayout:
    role: Role
    thinking: ThinkingBlock | None
    content: tuple[MessagePart, ...]


def group_by_role(messages: Conversation | Iterable[ConversationMessage]) -> list[MessageGroup]:
    """Split messages into groups; a role change starts a new group."""
    if isinstance(messages, Conversation):
        messages = messages.messages

    groups: list[MessageGroup] = []
    for message in messages:
        if groups and groups[-1].role is message.role:
            last = groups[-1]
            groups[-1] = MessageGroup(role=last.role, messages=last.messages + (message,))
        else:
            groups.append(MessageGroup(role=message.role, messages=(message,)))
    return groups


def classify_parts(
    parts: Sequence[MessagePart],
    preview_lines: int = DEFAULT_PREVIEW_LINES,
) -> tuple[ThinkingBlock | None, tuple[MessagePart, ...]]:
    """Route reasoning parts to one thinking block; keep the rest in order."""
    thinking: list[str] = []
    content: list[MessagePart] = []
    for part in parts:
        if part.kind is PartKind.REASONING:
            thinking.append(part.thinking_text)
        else:
            content.append(part)

    text = "\n".join(thinking).strip()
    block = ThinkingBlock(text=text, preview_lines=preview_lines) if text else None
    return block, tuple(content)


def layout_group(group: MessageGroup, preview_lines: int = DEFAULT_PREVIEW_LINES) -> GroupLayout:
    thinking, content = classify_parts(group.parts, preview_lines)
    return GroupLayout(role=group.role, thinking=thinking, content=content)


def tool_view(part: MessagePart, output_limit: int = DEFAULT_OUTPUT_LIMIT) -> ToolView:
    output = part.captured_output
    truncated = output is not None and len(output) > output_limit
    return ToolView(
        name=part.tool or "tool",
        running=part.execution_state in (ExecutionState.RUNNING, ExecutionState.PARTIAL),
        output=truncate(output, output_limit) if output else None,
        truncated=truncated,
    )


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
