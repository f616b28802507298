"""Tests for the event channel: frame parsing, SSE decoding, stream lifecycle."""

from __future__ import annotations

import json

import httpx
import pytest

from agentdeck.channel import EventChannel, iter_sse_data, parse_frame
from agentdeck.conversation import (
    IgnoredEvent,
    MessageRemoved,
    MessageUpdated,
    PartRemoved,
    PartUpdated,
    SessionActivity,
)
from tests.conftest import (
    FakeHost,
    frame,
    message_info,
    mock_host_client,
    settle,
    sse_lines,
    text_part,
)


class TestParseFrame:
    def test_message_updated(self):
        event = parse_frame(json.dumps(frame("message.updated", info=message_info("m1", modelID="sonnet"))))
        assert isinstance(event, MessageUpdated)
        assert event.info.id == "m1"
        assert event.info.model_id == "sonnet"

    def test_part_updated(self):
        event = parse_frame(json.dumps(frame("message.part.updated", part=text_part("p1", "m1", "hi"))))
        assert isinstance(event, PartUpdated)
        assert event.part.message_id == "m1"

    def test_removals(self):
        assert parse_frame(json.dumps(frame("message.removed", messageID="m1"))) == MessageRemoved("m1")
        assert parse_frame(json.dumps(frame("message.part.removed", partID="p1", messageID="m1"))) == PartRemoved(
            "p1", "m1"
        )

    def test_wrapped_payload(self):
        raw = json.dumps({"directory": "/x", "payload": frame("message.removed", messageID="m1")})
        assert parse_frame(raw) == MessageRemoved("m1")

    def test_busy_and_idle(self):
        assert parse_frame(json.dumps(frame("session.status", status={"type": "busy"}))) == SessionActivity(True)
        assert parse_frame(json.dumps(frame("session.status", status="idle"))) == SessionActivity(False)
        assert parse_frame(json.dumps(frame("session.idle"))) == SessionActivity(False)

    def test_unknown_type_is_ignored(self):
        assert parse_frame(json.dumps(frame("server.connected"))) == IgnoredEvent("server.connected")

    @pytest.mark.parametrize(
        "raw",
        [
            "{not json",
            "[1, 2]",
            json.dumps({"properties": {}}),
            json.dumps(frame("message.updated")),
            json.dumps(frame("message.updated", info={"role": "assistant"})),
            json.dumps(frame("message.part.updated", part={"id": "p1"})),
            json.dumps(frame("message.removed", messageID=7)),
            json.dumps(frame("message.part.removed")),
        ],
    )
    def test_malformed_frames_return_none(self, raw):
        assert parse_frame(raw) is None


class TestSseDecoding:
    def test_frames_split_on_blank_lines(self):
        lines = ["data: one", "", ": keepalive", "event: message", "data: two", ""]
        assert list(iter_sse_data(lines)) == ["one", "two"]

    def test_multiline_data_joined(self):
        assert list(iter_sse_data(["data: {", "data:  \"a\": 1}", ""])) == ['{\n "a": 1}']

    def test_trailing_frame_without_blank_line(self):
        assert list(iter_sse_data(["data: last"])) == ["last"]


class TestStreamOverHttp:
    @pytest.mark.asyncio
    async def test_malformed_frame_does_not_stop_stream(self):
        body = "\n".join(
            sse_lines(
                frame("message.updated", info=message_info("m1")),
                "{broken",
                frame("message.part.updated", part=text_part("p1", "m1", "hi")),
            )
        )
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode())

        host = mock_host_client(handler)
        received = []
        channel = EventChannel(host, received.append)
        handle = await channel.open("sess-1")
        await handle.wait()

        assert [type(e) for e in received] == [MessageUpdated, PartUpdated]
        assert handle.frames_dropped == 1
        assert requests[0].url.path == "/api/agents/sessions/sess-1/proxy/event"
        assert requests[0].headers["accept"] == "text/event-stream"
        await host.close()

    @pytest.mark.asyncio
    async def test_refused_stream_ends_quietly(self):
        host = mock_host_client(lambda request: httpx.Response(404, text="no such session"))
        received = []
        channel = EventChannel(host, received.append)
        handle = await channel.open("sess-1")
        await handle.wait()

        assert handle.finished
        assert received == []


class TestChannelLifecycle:
    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self, fake_host: FakeHost):
        received = []
        channel = EventChannel(fake_host, received.append)
        await channel.open("sess-1")
        await settle()

        fake_host.stream("sess-1").push(
            frame("message.updated", info=message_info("m1")),
            frame("server.heartbeat"),
            frame("message.removed", messageID="m1"),
        )
        await settle()

        assert [type(e) for e in received] == [MessageUpdated, MessageRemoved]
        assert channel.handle.events_delivered == 2
        await channel.close()

    @pytest.mark.asyncio
    async def test_opening_another_session_closes_the_first(self, fake_host: FakeHost):
        channel = EventChannel(fake_host, lambda event: None)
        first = await channel.open("sess-a")
        await settle()
        second = await channel.open("sess-b")
        await settle()

        assert first.closed
        assert not second.closed
        assert fake_host.stream_log == [("open", "sess-a"), ("close", "sess-a"), ("open", "sess-b")]
        assert fake_host.max_open_streams == 1
        await channel.close()
        assert fake_host.open_streams == 0

    @pytest.mark.asyncio
    async def test_reopening_same_session_keeps_handle(self, fake_host: FakeHost):
        channel = EventChannel(fake_host, lambda event: None)
        first = await channel.open("sess-1")
        assert await channel.open("sess-1") is first
        await channel.close()

    @pytest.mark.asyncio
    async def test_frames_after_close_are_discarded(self, fake_host: FakeHost):
        received = []
        channel = EventChannel(fake_host, received.append)
        await channel.open("sess-1")
        await settle()
        stream = fake_host.stream("sess-1")

        await channel.close()
        stream.push(frame("message.updated", info=message_info("late")))
        await settle()

        assert received == []
        assert not channel.is_open

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_stream(self, fake_host: FakeHost):
        received = []

        def handler(event):
            received.append(event)
            if len(received) == 1:
                raise RuntimeError("boom")

        channel = EventChannel(fake_host, handler)
        await channel.open("sess-1")
        await settle()
        fake_host.stream("sess-1").push(
            frame("message.removed", messageID="m1"),
            frame("message.removed", messageID="m2"),
        )
        await settle()

        assert len(received) == 2
        await channel.close()

    @pytest.mark.asyncio
    async def test_stream_end_finishes_handle(self, fake_host: FakeHost):
        channel = EventChannel(fake_host, lambda event: None)
        handle = await channel.open("sess-1")
        await settle()
        fake_host.stream("sess-1").end()
        await handle.wait()

        assert handle.finished
        assert fake_host.open_streams == 0
        await channel.close()

    @pytest.mark.asyncio
    async def test_ended_stream_is_not_open_and_reopens(self, fake_host: FakeHost):
        channel = EventChannel(fake_host, lambda event: None)
        ended = await channel.open("sess-1")
        await settle()
        fake_host.stream("sess-1").end()
        await ended.wait()

        assert not channel.is_open

        fresh = await channel.open("sess-1")
        await settle()
        assert fresh is not ended
        assert channel.is_open
        assert len(fake_host.streams["sess-1"]) == 2
        await channel.close()
        assert fake_host.open_streams == 0
