"""Conversation state and the pure fold that applies push events to it.

apply_event() never performs I/O and never mutates its input. Every event
carries the full current value of what it touches, so upserts are idempotent
and the last event received wins.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from agentdeck.conversation.events import (
    ConversationEvent,
    MessageRemoved,
    MessageUpdated,
    PartRemoved,
    PartUpdated,
)
from agentdeck.conversation.schemas import (
    MessageInfo,
    MessageOrigin,
    MessagePart,
    Role,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationMessage:
    """A message and its parts, in arrival order."""

    info: MessageInfo
    parts: tuple[MessagePart, ...] = ()
    origin: MessageOrigin = MessageOrigin.REAL

    @property
    def id(self) -> str:
        return self.info.id

    @property
    def role(self) -> Role:
        return self.info.role

    def part_index(self, part_id: str) -> int:
        for idx, part in enumerate(self.parts):
            if part.id == part_id:
                return idx
        return -1

    def without_part(self, part_id: str) -> ConversationMessage:
        return replace(self, parts=tuple(p for p in self.parts if p.id != part_id))


@dataclass(frozen=True)
class Conversation:
    """Ordered, id-unique list of messages. Insertion order is display order."""

    messages: tuple[ConversationMessage, ...] = ()

    @classmethod
    def from_history(cls, entries: list[dict[str, Any]]) -> Conversation:
        """Build the bootstrap state from a GET messages reply.

        Entries that fail validation are skipped; parts without a messageID
        inherit the id of the entry they came with.
        """
        conversation = cls()
        for entry in entries:
            try:
                info = MessageInfo.model_validate(entry.get("info") or {})
            except (ValidationError, AttributeError):
                logger.debug("Skipping malformed history entry: %r", entry)
                continue
            conversation = apply_event(conversation, MessageUpdated(info))
            for raw_part in entry.get("parts") or []:
                if not isinstance(raw_part, dict):
                    continue
                try:
                    part = MessagePart.model_validate(
                        {**raw_part, "messageID": raw_part.get("messageID") or info.id}
                    )
                except ValidationError:
                    logger.debug("Skipping malformed history part in %s", info.id)
                    continue
                conversation = apply_event(conversation, PartUpdated(part))
        return conversation

    def __len__(self) -> int:
        return len(self.messages)

    def index_of(self, message_id: str) -> int:
        for idx, message in enumerate(self.messages):
            if message.id == message_id:
                return idx
        return -1

    def get(self, message_id: str) -> ConversationMessage | None:
        idx = self.index_of(message_id)
        return self.messages[idx] if idx >= 0 else None

    def find_part(self, part_id: str) -> tuple[ConversationMessage, MessagePart] | None:
        for message in self.messages:
            idx = message.part_index(part_id)
            if idx >= 0:
                return message, message.parts[idx]
        return None

    def last_assistant(self, *, with_tokens: bool = False, with_model: bool = False) -> ConversationMessage | None:
        """Most recent assistant message, optionally one carrying tokens or a model id."""
        for message in reversed(self.messages):
            if message.role is not Role.ASSISTANT:
                continue
            if with_tokens and not (message.info.tokens and message.info.tokens.has_counts):
                continue
            if with_model and not message.info.model_id:
                continue
            return message
        return None

    @property
    def pending_echoes(self) -> int:
        return sum(1 for m in self.messages if m.origin is MessageOrigin.LOCAL)


def apply_event(conversation: Conversation, event: ConversationEvent) -> Conversation:
    """Fold one event into the conversation, returning the next state."""
    if isinstance(event, MessageUpdated):
        return _upsert_message(conversation, event.info)
    if isinstance(event, PartUpdated):
        return _upsert_part(conversation, event.part)
    if isinstance(event, MessageRemoved):
        return _remove_message(conversation, event.message_id)
    if isinstance(event, PartRemoved):
        return _remove_part(conversation, event.part_id)
    return conversation


def append_local_echo(conversation: Conversation, text: str) -> Conversation:
    """Append the user's own prompt before the host confirms it."""
    message_id = f"local-{uuid4().hex[:12]}"
    info = MessageInfo(id=message_id, role=Role.USER, time=int(time.time() * 1000))
    part = MessagePart(id=f"{message_id}-text", message_id=message_id, type="text", text=text)
    echo = ConversationMessage(info=info, parts=(part,), origin=MessageOrigin.LOCAL)
    return Conversation(conversation.messages + (echo,))


def _upsert_message(conversation: Conversation, info: MessageInfo) -> Conversation:
    messages = conversation.messages
    idx = conversation.index_of(info.id)

    if idx >= 0:
        current = messages[idx]
        promoted = replace(current, info=info, origin=MessageOrigin.REAL)
        if promoted == current:
            return conversation
        updated = messages[:idx] + (promoted,) + messages[idx + 1 :]
        if current.origin is MessageOrigin.SYNTHESIZED and info.role is Role.USER:
            updated = _retire_oldest_echo(updated)
        return Conversation(updated)

    if info.role is Role.USER:
        messages = _retire_oldest_echo(messages)
    return Conversation(messages + (ConversationMessage(info=info),))


def _upsert_part(conversation: Conversation, part: MessagePart) -> Conversation:
    messages = list(conversation.messages)
    owner = conversation.index_of(part.message_id)

    # Part ids are global: a part reported under a new owner leaves its old one
    for i, message in enumerate(messages):
        if i != owner and message.part_index(part.id) >= 0:
            messages[i] = message.without_part(part.id)

    if owner < 0:
        placeholder = ConversationMessage(
            info=MessageInfo(id=part.message_id, role=Role.ASSISTANT),
            parts=(part,),
            origin=MessageOrigin.SYNTHESIZED,
        )
        messages.append(placeholder)
        return Conversation(tuple(messages))

    message = messages[owner]
    parts = list(message.parts)
    part_idx = message.part_index(part.id)
    if part_idx >= 0:
        parts[part_idx] = part
    else:
        parts.append(part)
    messages[owner] = replace(message, parts=tuple(parts))

    updated = Conversation(tuple(messages))
    return conversation if updated == conversation else updated


def _remove_message(conversation: Conversation, message_id: str) -> Conversation:
    if conversation.index_of(message_id) < 0:
        return conversation
    return Conversation(tuple(m for m in conversation.messages if m.id != message_id))


def _remove_part(conversation: Conversation, part_id: str) -> Conversation:
    if conversation.find_part(part_id) is None:
        return conversation
    return Conversation(
        tuple(
            m.without_part(part_id) if m.part_index(part_id) >= 0 else m
            for m in conversation.messages
        )
    )


def _retire_oldest_echo(messages: tuple[ConversationMessage, ...]) -> tuple[ConversationMessage, ...]:
    for idx, message in enumerate(messages):
        if message.origin is MessageOrigin.LOCAL:
            return messages[:idx] + messages[idx + 1 :]
    return messages
