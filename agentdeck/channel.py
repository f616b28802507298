"""Event channel: the server-push stream of a running agent session.

One channel instance holds at most one open stream. Raw SSE frames are
decoded into typed conversation events; frames that fail to parse are dropped
and never interrupt the stream. The channel does not reconnect on its own:
whoever owns it reopens it when the session becomes running again.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterable, Callable, Iterable, Iterator

import httpx
from pydantic import ValidationError

from agentdeck.conversation.events import (
    MESSAGE_PART_REMOVED,
    MESSAGE_PART_UPDATED,
    MESSAGE_REMOVED,
    MESSAGE_UPDATED,
    SESSION_IDLE,
    SESSION_STATUS,
    ConversationEvent,
    IgnoredEvent,
    MessageRemoved,
    MessageUpdated,
    PartRemoved,
    PartUpdated,
    SessionActivity,
)
from agentdeck.conversation.schemas import MessageInfo, MessagePart
from agentdeck.errors import HostError
from agentdeck.host import HostClient

logger = logging.getLogger(__name__)

# Handler type: sync function receiving each decoded event
EventHandler = Callable[[ConversationEvent], None]


def parse_frame(raw: str) -> ConversationEvent | None:
    """Decode one SSE data payload into an event.

    Returns None for malformed frames (bad JSON, missing or invalid fields).
    Unknown event types become IgnoredEvent.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict):
        return None

    # Some hosts wrap the event as {"directory": ..., "payload": {...}}
    if isinstance(data.get("payload"), dict):
        data = data["payload"]

    event_type = data.get("type")
    if not isinstance(event_type, str) or not event_type:
        return None

    props = data.get("properties")
    if not isinstance(props, dict):
        props = {}

    try:
        if event_type == MESSAGE_UPDATED:
            if not isinstance(props.get("info"), dict):
                return None
            return MessageUpdated(MessageInfo.model_validate(props["info"]))

        if event_type == MESSAGE_PART_UPDATED:
            if not isinstance(props.get("part"), dict):
                return None
            return PartUpdated(MessagePart.model_validate(props["part"]))
    except ValidationError:
        return None

    if event_type == MESSAGE_REMOVED:
        message_id = props.get("messageID")
        if not isinstance(message_id, str) or not message_id:
            return None
        return MessageRemoved(message_id)

    if event_type == MESSAGE_PART_REMOVED:
        part_id = props.get("partID")
        if not isinstance(part_id, str) or not part_id:
            return None
        message_id = props.get("messageID")
        return PartRemoved(part_id, message_id if isinstance(message_id, str) else None)

    if event_type == SESSION_IDLE:
        return SessionActivity(busy=False)

    if event_type == SESSION_STATUS:
        status = props.get("status")
        kind = status.get("type") if isinstance(status, dict) else status
        if kind == "busy":
            return SessionActivity(busy=True)
        if kind == "idle":
            return SessionActivity(busy=False)
        return IgnoredEvent(event_type)

    return IgnoredEvent(event_type)


def iter_sse_data(lines: Iterable[str]) -> Iterator[str]:
    """Group SSE lines into data payloads (one per blank-line-terminated frame)."""
    data: list[str] = []
    for line in lines:
        payload = _feed(line, data)
        if payload is not None:
            yield payload
    if data:
        yield "\n".join(data)


async def aiter_sse_data(lines: AsyncIterable[str]) -> AsyncIterable[str]:
    """Async twin of iter_sse_data() for a streaming response."""
    data: list[str] = []
    async for line in lines:
        payload = _feed(line, data)
        if payload is not None:
            yield payload
    if data:
        yield "\n".join(data)


def _feed(line: str, data: list[str]) -> str | None:
    line = line.rstrip("\r\n")
    if not line:
        if not data:
            return None
        payload = "\n".join(data)
        data.clear()
        return payload
    if line.startswith(":"):
        return None  # comment / keepalive
    field, _, value = line.partition(":")
    if field == "data":
        data.append(value[1:] if value.startswith(" ") else value)
    return None


class ChannelHandle:
    """One open stream. Once closed, nothing more is delivered through it."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.closed = False
        self.events_delivered = 0
        self.frames_dropped = 0
        self._task: asyncio.Task | None = None

    @property
    def finished(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def active(self) -> bool:
        return not self.closed and not self.finished

    async def wait(self) -> None:
        """Wait for the reader to stop (stream end, error, or close)."""
        if self._task is None:
            return
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise


class EventChannel:
    """Opens and closes the push stream for a session and decodes its frames."""

    def __init__(self, host: HostClient, handler: EventHandler) -> None:
        self._host = host
        self._handler = handler
        self._handle: ChannelHandle | None = None

    @property
    def handle(self) -> ChannelHandle | None:
        return self._handle

    @property
    def is_open(self) -> bool:
        return self._handle is not None and self._handle.active

    async def open(self, session_id: str) -> ChannelHandle:
        """Open the stream for session_id, closing any stream for another session first."""
        if self._handle is not None:
            if self._handle.active and self._handle.session_id == session_id:
                return self._handle
            await self.close()

        handle = ChannelHandle(session_id)
        self._handle = handle
        handle._task = asyncio.create_task(self._read(handle), name=f"event-channel-{session_id}")
        logger.info("Event channel opened for session %s", session_id)
        return handle

    async def close(self) -> None:
        """Close the current stream. Frames already in flight are discarded."""
        handle, self._handle = self._handle, None
        if handle is None or handle.closed:
            return
        handle.closed = True
        task = handle._task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(
            "Event channel closed for session %s (%d events, %d dropped frames)",
            handle.session_id,
            handle.events_delivered,
            handle.frames_dropped,
        )

    async def _read(self, handle: ChannelHandle) -> None:
        try:
            async with self._host.stream_events(handle.session_id) as response:
                async for raw in aiter_sse_data(response.aiter_lines()):
                    if handle.closed:
                        return
                    self._deliver(handle, raw)
        except asyncio.CancelledError:
            raise
        except (HostError, httpx.HTTPError) as e:
            logger.warning("Event stream for session %s failed: %s", handle.session_id, e)
        except Exception:
            logger.exception("Event stream for session %s crashed", handle.session_id)
        else:
            if not handle.closed:
                logger.warning("Event stream for session %s ended by host", handle.session_id)

    def _deliver(self, handle: ChannelHandle, raw: str) -> None:
        event = parse_frame(raw)
        if event is None:
            handle.frames_dropped += 1
            logger.debug("Dropped malformed frame: %.200s", raw)
            return
        if isinstance(event, IgnoredEvent):
            logger.debug("Ignoring event type %s", event.event_type)
            return
        handle.events_delivered += 1
        try:
            self._handler(event)
        except Exception:
            logger.exception("Event handler failed for %s", type(event).__name__)
