"""Shared fixtures: settings, an in-memory agent host and frame builders."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from agentdeck.config import Settings
from agentdeck.host import HostClient
from agentdeck.session.schemas import AgentSession, ProviderCatalog, SessionStatus

HOST_URL = "http://agent-host.test"

# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Real Settings, isolated from the environment and any .env file."""
    values: dict[str, Any] = {
        "host_url": HOST_URL,
        "poll_interval": 0.01,
        "project_dir": "/work/demo",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_session(
    session_id: str = "sess-1",
    status: SessionStatus = SessionStatus.STARTING,
    project_dir: str = "/work/demo",
    **extra: Any,
) -> AgentSession:
    return AgentSession(
        id=session_id,
        agent_id="opencode",
        agent_name="OpenCode",
        project_dir=project_dir,
        status=status,
        **extra,
    )


def message_info(message_id: str, role: str = "assistant", **extra: Any) -> dict[str, Any]:
    return {"id": message_id, "role": role, **extra}


def text_part(part_id: str, message_id: str, text: str, **extra: Any) -> dict[str, Any]:
    return {"id": part_id, "messageID": message_id, "type": "text", "text": text, **extra}


def frame(event_type: str, **properties: Any) -> dict[str, Any]:
    return {"type": event_type, "properties": properties}


def sse_lines(*frames: dict[str, Any] | str) -> list[str]:
    """Encode frames as SSE lines; strings are sent as raw (possibly malformed) data."""
    lines: list[str] = []
    for f in frames:
        lines.append(f"data: {f if isinstance(f, str) else json.dumps(f)}")
        lines.append("")
    return lines


async def settle(rounds: int = 10) -> None:
    """Let background tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# In-memory host
# ---------------------------------------------------------------------------


class FakeStream:
    """Stand-in for a streaming response: lines are fed in by the test."""

    def __init__(self) -> None:
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()

    def feed(self, *lines: str | None) -> None:
        for line in lines:
            self._lines.put_nowait(line)

    def push(self, *frames: dict[str, Any] | str) -> None:
        self.feed(*sse_lines(*frames))

    def end(self) -> None:
        self._lines.put_nowait(None)

    async def aiter_lines(self):
        while True:
            line = await self._lines.get()
            if line is None:
                return
            yield line


class FakeHost:
    """HostClient double: AsyncMock endpoints plus queue-backed event streams."""

    def __init__(self) -> None:
        self.list_agents = AsyncMock(return_value=[])
        self.launch_session = AsyncMock(return_value=make_session())
        self.stop_session = AsyncMock(return_value=None)
        self.list_sessions = AsyncMock(return_value=[])
        self.get_or_create_conversation = AsyncMock(return_value="conv-1")
        self.fetch_messages = AsyncMock(return_value=[])
        self.send_prompt = AsyncMock(return_value=None)
        self.fetch_config = AsyncMock(return_value={})
        self.fetch_providers = AsyncMock(return_value=ProviderCatalog())
        self.update_model = AsyncMock(return_value=None)
        self.close = AsyncMock(return_value=None)

        self.streams: dict[str, list[FakeStream]] = {}
        self.stream_log: list[tuple[str, str]] = []
        self.open_streams = 0
        self.max_open_streams = 0

    @asynccontextmanager
    async def stream_events(self, session_id: str):
        stream = FakeStream()
        self.streams.setdefault(session_id, []).append(stream)
        self.stream_log.append(("open", session_id))
        self.open_streams += 1
        self.max_open_streams = max(self.max_open_streams, self.open_streams)
        try:
            yield stream
        finally:
            self.open_streams -= 1
            self.stream_log.append(("close", session_id))

    def stream(self, session_id: str) -> FakeStream:
        """Most recent stream opened for session_id."""
        return self.streams[session_id][-1]


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost()


def mock_host_client(handler, settings: Settings | None = None) -> HostClient:
    """Real HostClient over an httpx.MockTransport."""
    settings = settings or make_settings()
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=settings.host_url)
    return HostClient(settings, http=http)
