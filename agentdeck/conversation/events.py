"""Typed domain events decoded from the session push channel.

A closed set of variants; anything the client does not understand becomes an
IgnoredEvent so newer hosts can add event types without breaking older
clients.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from agentdeck.conversation.schemas import MessageInfo, MessagePart

MESSAGE_UPDATED = "message.updated"
MESSAGE_PART_UPDATED = "message.part.updated"
MESSAGE_REMOVED = "message.removed"
MESSAGE_PART_REMOVED = "message.part.removed"
SESSION_STATUS = "session.status"
SESSION_IDLE = "session.idle"


@dataclass(frozen=True)
class MessageUpdated:
    info: MessageInfo


@dataclass(frozen=True)
class PartUpdated:
    part: MessagePart


@dataclass(frozen=True)
class MessageRemoved:
    message_id: str


@dataclass(frozen=True)
class PartRemoved:
    part_id: str
    message_id: str | None = None


@dataclass(frozen=True)
class SessionActivity:
    """The agent started (busy) or finished (idle) working on a prompt."""

    busy: bool


@dataclass(frozen=True)
class IgnoredEvent:
    event_type: str


ConversationEvent = Union[
    MessageUpdated,
    PartUpdated,
    MessageRemoved,
    PartRemoved,
    SessionActivity,
    IgnoredEvent,
]
