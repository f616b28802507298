"""Pydantic models for conversation payloads pushed by the agent host.

Push frames are loosely typed; these models keep the fields the client reads
and ignore everything else. Field aliases match the host's camelCase names.
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class PartKind(StrEnum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL_INVOCATION = "tool-invocation"
    TOOL_RESULT = "tool-result"
    OTHER = "other"


class ExecutionState(StrEnum):
    RUNNING = "running"
    PARTIAL = "partial"
    DONE = "done"


class MessageOrigin(StrEnum):
    REAL = "real"  # seen in history or in a message.updated event
    SYNTHESIZED = "synthesized"  # placeholder for a part whose message is unknown
    LOCAL = "local"  # optimistic echo of a prompt the user just sent


_REASONING_TYPES = frozenset({"reasoning", "thinking"})
_TOOL_INVOCATION_TYPES = frozenset({"tool-invocation", "tool_use", "tool"})
_TOOL_RESULT_TYPES = frozenset({"tool-result", "tool_result"})

# Raw tool states, plain or from a ToolState.status
_RUNNING_STATES = frozenset({"running"})
_PARTIAL_STATES = frozenset({"partial", "partial-call", "pending"})


class _Payload(BaseModel):
    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, frozen=True, protected_namespaces=()
    )


class CacheUsage(_Payload):
    read: int = 0
    write: int = 0


class TokenUsage(_Payload):
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache: CacheUsage = Field(default_factory=CacheUsage)

    @property
    def has_counts(self) -> bool:
        return self.input > 0 or self.output > 0


class MessageInfo(_Payload):
    """Message metadata as carried by message.updated and history entries."""

    id: str = Field(min_length=1)
    role: Role = Role.ASSISTANT
    time: Any = None  # ISO string, epoch millis, or {"created": ..., "completed": ...}
    model_id: str | None = Field(None, alias="modelID")
    provider_id: str | None = Field(None, alias="providerID")
    cost: float | None = None
    tokens: TokenUsage | None = None

    @property
    def created(self) -> Any:
        if isinstance(self.time, dict):
            return self.time.get("created")
        return self.time


class ToolState(_Payload):
    status: str = ""
    input: Any = None
    output: Any = None
    title: str | None = None
    error: str | None = None


class MessagePart(_Payload):
    """One fragment of a message: text, reasoning, or a tool call/result."""

    id: str = Field(min_length=1)
    message_id: str = Field(alias="messageID", min_length=1)
    type: str = "text"
    text: str | None = None
    content: str | None = None
    thinking: str | None = None
    reasoning: str | None = None
    tool: str | None = None
    call_id: str | None = Field(None, alias="callID")
    state: str | ToolState | None = None
    output: str | None = None
    title: str | None = None

    @field_validator("output", mode="before")
    @classmethod
    def _stringify_output(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value, default=str)

    @property
    def kind(self) -> PartKind:
        if self.type in _REASONING_TYPES or self.thinking or self.reasoning:
            return PartKind.REASONING
        if self.type in _TOOL_INVOCATION_TYPES:
            return PartKind.TOOL_INVOCATION
        if self.type in _TOOL_RESULT_TYPES:
            return PartKind.TOOL_RESULT
        if self.type == "text":
            return PartKind.TEXT
        return PartKind.OTHER

    @property
    def raw_state(self) -> str:
        if isinstance(self.state, ToolState):
            return self.state.status
        return self.state or ""

    @property
    def execution_state(self) -> ExecutionState:
        raw = self.raw_state
        if raw in _RUNNING_STATES:
            return ExecutionState.RUNNING
        if raw in _PARTIAL_STATES:
            return ExecutionState.PARTIAL
        return ExecutionState.DONE

    @property
    def captured_output(self) -> str | None:
        """Tool output, from the part itself or from its tool state."""
        if self.output:
            return self.output
        if isinstance(self.state, ToolState) and self.state.output is not None:
            output = self.state.output
            return output if isinstance(output, str) else json.dumps(output, default=str)
        return None

    @property
    def body(self) -> str:
        return self.text or self.content or ""

    @property
    def thinking_text(self) -> str:
        return self.thinking or self.reasoning or self.text or self.content or ""
