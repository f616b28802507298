"""Tests for SessionStore: launch, polling, stale responses, stop."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from agentdeck.errors import HostError, LaunchError
from agentdeck.session import SessionStatus, SessionStore, accepts_transition
from tests.conftest import FakeHost, make_session, make_settings, settle


def _store(host: FakeHost, **overrides) -> SessionStore:
    return SessionStore(host, make_settings(**overrides))


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class TestTransitions:
    def test_starting_to_running_allowed(self):
        assert accepts_transition(make_session(), make_session(status=SessionStatus.RUNNING))

    def test_running_never_returns_to_starting(self):
        assert not accepts_transition(make_session(status=SessionStatus.RUNNING), make_session())

    def test_terminal_states_are_final(self):
        stopped = make_session(status=SessionStatus.STOPPED)
        assert not accepts_transition(stopped, make_session(status=SessionStatus.RUNNING))
        errored = make_session(status=SessionStatus.ERROR, error="boom")
        assert not accepts_transition(errored, make_session(status=SessionStatus.STARTING))


class TestLaunch:
    @pytest.mark.asyncio
    async def test_missing_project_dir_fails_without_host_call(self, fake_host: FakeHost):
        store = _store(fake_host)
        with pytest.raises(LaunchError):
            await store.launch("opencode", "")
        fake_host.launch_session.assert_not_awaited()
        assert store.session is None

    @pytest.mark.asyncio
    async def test_launch_registers_active_session(self, fake_host: FakeHost):
        store = _store(fake_host)
        changes = []

        async def listener(previous, session):
            changes.append((previous, session.status if session else None))

        store.on_change(listener)
        session = await store.launch("opencode", "/work/demo", "key-1")

        fake_host.launch_session.assert_awaited_once_with("opencode", "/work/demo", "key-1")
        assert store.session == session
        assert store.active_session_id("opencode") == "sess-1"
        assert changes == [(None, SessionStatus.STARTING)]
        assert store.polling
        await store.close()

    @pytest.mark.asyncio
    async def test_launch_error_propagates(self, fake_host: FakeHost):
        fake_host.launch_session.side_effect = LaunchError("agent not installed", 400)
        store = _store(fake_host)
        with pytest.raises(LaunchError, match="not installed"):
            await store.launch("opencode", "/work/demo")
        assert store.session is None

    @pytest.mark.asyncio
    async def test_running_launch_does_not_poll(self, fake_host: FakeHost):
        fake_host.launch_session.return_value = make_session(status=SessionStatus.RUNNING)
        store = _store(fake_host)
        await store.launch("opencode", "/work/demo")
        assert not store.polling


class TestPolling:
    @pytest.mark.asyncio
    async def test_polling_stops_once_running(self, fake_host: FakeHost):
        fake_host.list_sessions.side_effect = [
            [make_session()],
            [make_session(status=SessionStatus.RUNNING)],
        ]
        store = _store(fake_host)
        changes = []

        async def listener(previous, session):
            changes.append((previous, session.status))

        store.on_change(listener)
        await store.launch("opencode", "/work/demo")
        await _wait_for(lambda: store.status is SessionStatus.RUNNING)
        await settle()

        assert not store.polling
        assert fake_host.list_sessions.await_count == 2
        assert changes[-1] == (SessionStatus.STARTING, SessionStatus.RUNNING)

    @pytest.mark.asyncio
    async def test_poll_failure_keeps_polling(self, fake_host: FakeHost):
        fake_host.list_sessions.side_effect = [
            HostError("host restarting"),
            [make_session(status=SessionStatus.ERROR, error="missing binary")],
        ]
        store = _store(fake_host)
        await store.launch("opencode", "/work/demo")
        await _wait_for(lambda: store.status is SessionStatus.ERROR)

        assert store.session.error == "missing binary"
        await settle()
        assert not store.polling

    @pytest.mark.asyncio
    async def test_stale_response_after_stop_is_discarded(self, fake_host: FakeHost):
        release = asyncio.Event()

        async def slow_list():
            await release.wait()
            return [make_session(status=SessionStatus.RUNNING)]

        store = _store(fake_host)
        await store.launch("opencode", "/work/demo")

        # A refresh started before the stop answers after it
        fake_host.list_sessions.side_effect = slow_list
        refresh = asyncio.create_task(store.refresh())
        await settle()
        await store.stop()
        release.set()
        await refresh

        assert store.session is None
        assert store.status is None

    @pytest.mark.asyncio
    async def test_close_cancels_listener_run_by_poll(self, fake_host: FakeHost):
        fake_host.list_sessions.return_value = [make_session(status=SessionStatus.RUNNING)]
        store = _store(fake_host)
        entered = asyncio.Event()
        cancelled = []

        async def slow_listener(previous, session):
            if session is not None and session.status is SessionStatus.RUNNING:
                entered.set()
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.append(session.id)
                    raise

        store.on_change(slow_listener)
        await store.launch("opencode", "/work/demo")
        await asyncio.wait_for(entered.wait(), 1.0)
        assert not store.polling

        await store.close()
        assert cancelled == ["sess-1"]

    @pytest.mark.asyncio
    async def test_refresh_cannot_move_back_to_starting(self, fake_host: FakeHost):
        fake_host.launch_session.return_value = make_session(status=SessionStatus.RUNNING)
        fake_host.list_sessions.return_value = [make_session(status=SessionStatus.STARTING)]
        store = _store(fake_host)
        await store.launch("opencode", "/work/demo")
        await store.refresh()
        assert store.status is SessionStatus.RUNNING


class TestStopAndRecover:
    @pytest.mark.asyncio
    async def test_stop_clears_session_and_notifies(self, fake_host: FakeHost):
        store = _store(fake_host)
        changes = []

        async def listener(previous, session):
            changes.append((previous, session))

        await store.launch("opencode", "/work/demo")
        store.on_change(listener)
        await store.stop()

        assert not store.polling
        assert store.session is None
        assert store.active_session_id("opencode") is None
        assert changes == [(SessionStatus.STARTING, None)]
        fake_host.stop_session.assert_awaited_once_with("sess-1")

    @pytest.mark.asyncio
    async def test_stop_failure_is_swallowed(self, fake_host: FakeHost):
        fake_host.stop_session.side_effect = HostError("gone", 404)
        store = _store(fake_host)
        await store.launch("opencode", "/work/demo")
        await store.stop()
        assert store.session is None

    @pytest.mark.asyncio
    async def test_stop_without_session_is_noop(self, fake_host: FakeHost):
        store = _store(fake_host)
        await store.stop()
        fake_host.stop_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recover_adopts_live_session_for_project(self, fake_host: FakeHost):
        fake_host.list_sessions.return_value = [
            make_session("old", status=SessionStatus.STOPPED),
            make_session("other", status=SessionStatus.RUNNING, project_dir="/elsewhere"),
            make_session("live", status=SessionStatus.RUNNING),
        ]
        store = _store(fake_host)
        session = await store.recover("/work/demo")

        assert session.id == "live"
        assert store.session.id == "live"
        assert store.active_session_id("opencode") == "live"

    @pytest.mark.asyncio
    async def test_recover_finds_nothing(self, fake_host: FakeHost):
        store = _store(fake_host)
        assert await store.recover("/work/demo") is None
        assert store.session is None

    @pytest.mark.asyncio
    async def test_listener_error_is_isolated(self, fake_host: FakeHost):
        store = _store(fake_host)
        store.on_change(AsyncMock(side_effect=RuntimeError("boom")))
        second = AsyncMock()
        store.on_change(second)

        await store.launch("opencode", "/work/demo")
        second.assert_awaited_once()
        await store.close()
