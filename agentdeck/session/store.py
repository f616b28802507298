"""Session store: owns the current agent session record and its lifecycle.

State machine:
  starting -> running     host finished booting the agent
  starting -> error       host reported a launch failure (terminal)
  running  -> stopped     user stop (terminal)
  any      -> stopped     explicit stop

While a session is starting, the store refreshes on a fixed interval until the
status changes. Responses that arrive after the session has moved on are
discarded: every poll records the store generation it started under, and a
status can never move back to starting or out of error/stopped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from agentdeck.config import Settings
from agentdeck.errors import HostError, LaunchError
from agentdeck.session.schemas import AgentSession, SessionStatus

if TYPE_CHECKING:
    from agentdeck.host import HostClient

logger = logging.getLogger(__name__)

# Listener: async function taking (previous status, current session or None)
SessionListener = Callable[[SessionStatus | None, AgentSession | None], Awaitable[None]]

_TERMINAL = frozenset({SessionStatus.ERROR, SessionStatus.STOPPED})


def accepts_transition(current: AgentSession, incoming: AgentSession) -> bool:
    """Whether a refreshed record may overwrite the current one."""
    if current.status in _TERMINAL:
        return incoming == current
    if incoming.status is SessionStatus.STARTING:
        return current.status is SessionStatus.STARTING
    return True


class SessionStore:
    """Holds the active session and issues launch/stop/poll requests.

    Listeners registered via on_change() are awaited on every status change,
    in registration order. Listener errors are logged, never propagated.
    """

    def __init__(self, host: HostClient, settings: Settings) -> None:
        self._host = host
        self._settings = settings
        self._session: AgentSession | None = None
        self._active: dict[str, str] = {}  # agent_id -> session_id
        self._listeners: list[SessionListener] = []
        self._poll_task: asyncio.Task | None = None
        # Poll task that detached itself to run listeners after leaving starting
        self._detached: asyncio.Task | None = None
        self._generation = 0

    @property
    def session(self) -> AgentSession | None:
        return self._session

    @property
    def status(self) -> SessionStatus | None:
        return self._session.status if self._session else None

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def active_session_id(self, agent_id: str) -> str | None:
        return self._active.get(agent_id)

    def on_change(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    async def launch(self, agent_id: str, project_dir: str, api_key: str | None = None) -> AgentSession:
        """Start an agent for project_dir. Raises LaunchError on failure."""
        if not project_dir:
            raise LaunchError("No project directory selected")

        session = await self._host.launch_session(agent_id, project_dir, api_key)
        logger.info("Launched %s session %s for %s (%s)", agent_id, session.id, project_dir, session.status)

        self._cancel_polling()
        self._active[agent_id] = session.id
        await self._set_session(session)
        self._ensure_polling()
        return session

    async def adopt(self, session: AgentSession) -> None:
        """Make an existing host session the current one."""
        self._cancel_polling()
        if session.agent_id:
            self._active[session.agent_id] = session.id
        await self._set_session(session)
        self._ensure_polling()

    async def recover(self, project_dir: str) -> AgentSession | None:
        """Adopt a live session for project_dir left over from an earlier run."""
        sessions = await self._host.list_sessions()
        for session in sessions:
            if session.project_dir == project_dir and session.is_live:
                logger.info("Recovered session %s for %s (%s)", session.id, project_dir, session.status)
                await self.adopt(session)
                return session
        return None

    async def refresh(self) -> list[AgentSession]:
        """Pull the full session list and apply the record for the current session."""
        generation = self._generation
        sessions = await self._host.list_sessions()
        previous = self._apply_refresh(sessions, generation)
        if previous is not None:
            await self._notify(previous, self._session)
        return sessions

    async def stop(self) -> None:
        """Stop the current session. Best effort: the local record is cleared regardless."""
        session = self._session
        self._cancel_polling()
        if session is None:
            return

        self._active = {k: v for k, v in self._active.items() if v != session.id}
        self._session = None
        await self._notify(session.status, None)

        try:
            await self._host.stop_session(session.id)
            logger.info("Stopped session %s", session.id)
        except HostError as e:
            logger.warning("Stop request for session %s failed (ignored): %s", session.id, e)

    async def close(self) -> None:
        """Stop polling and any listener fan-out still running, without touching the host."""
        tasks = [self._poll_task, self._detached]
        self._cancel_polling()
        self._detached = None
        for task in tasks:
            if task is None or task is asyncio.current_task():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _ensure_polling(self) -> None:
        if self.status is SessionStatus.STARTING and not self.polling:
            self._poll_task = asyncio.create_task(
                self._poll_loop(self._generation), name="session-poll"
            )

    def _cancel_polling(self) -> None:
        """Synchronously stop polling and invalidate any in-flight response.

        Called from inside the poll task itself, the task is only detached so
        the listeners it is about to run are not cancelled with it.
        """
        self._generation += 1
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        if task is asyncio.current_task():
            self._detached = task
            task.add_done_callback(self._forget_detached)
        elif not task.done():
            task.cancel()

    def _forget_detached(self, task: asyncio.Task) -> None:
        if self._detached is task:
            self._detached = None

    async def _poll_loop(self, generation: int) -> None:
        while self._generation == generation and self.status is SessionStatus.STARTING:
            await asyncio.sleep(self._settings.poll_interval)
            if self._generation != generation:
                return
            try:
                sessions = await self._host.list_sessions()
            except HostError as e:
                logger.warning("Session poll failed: %s", e)
                continue
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Unexpected error while polling session")
                continue
            previous = self._apply_refresh(sessions, generation)
            if previous is not None:
                await self._notify(previous, self._session)

    # ------------------------------------------------------------------
    # State updates
    # ------------------------------------------------------------------

    def _apply_refresh(self, sessions: list[AgentSession], generation: int) -> SessionStatus | None:
        """Apply a session list; returns the previous status if the status changed."""
        current = self._session
        if current is None or generation != self._generation:
            logger.debug("Discarding stale session list (generation %d)", generation)
            return None
        incoming = next((s for s in sessions if s.id == current.id), None)
        if incoming is None or incoming == current:
            return None
        if not accepts_transition(current, incoming):
            logger.debug(
                "Rejected %s -> %s for session %s", current.status, incoming.status, current.id
            )
            return None

        self._session = incoming
        if incoming.status is current.status:
            return None
        logger.info("Session %s: %s -> %s", current.id, current.status, incoming.status)
        if current.status is SessionStatus.STARTING:
            self._cancel_polling()
        return current.status

    async def _set_session(self, session: AgentSession) -> None:
        previous = self._session.status if self._session else None
        self._session = session
        await self._notify(previous, session)

    async def _notify(self, previous: SessionStatus | None, session: AgentSession | None) -> None:
        for listener in list(self._listeners):
            try:
                await listener(previous, session)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Session listener failed")
