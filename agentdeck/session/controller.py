"""Session controller: binds the store, event channel, reconciler and resolver.

The controller owns the whole client-side aggregate for one agent session:
the session record (through SessionStore), the conversation fold, the busy
flag, the resolved model and a transient error string. Front ends subscribe
and redraw from snapshot(); they never see a host exception.

Every status change re-evaluates the channel. Entering running binds the
session (resolver, conversation, history, channel); leaving it unbinds. Work
started under one binding is discarded once the epoch moves on.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from agentdeck.channel import EventChannel
from agentdeck.config import Settings
from agentdeck.conversation import (
    Conversation,
    ConversationEvent,
    MessageGroup,
    SessionActivity,
    append_local_echo,
    apply_event,
    group_by_role,
)
from agentdeck.errors import HostError
from agentdeck.host import HostClient
from agentdeck.session.resolver import (
    ModelContextResolver,
    ModelResolution,
    SessionHeader,
    session_header,
)
from agentdeck.session.schemas import (
    AgentDefinition,
    AgentSession,
    ModelOption,
    ModelRef,
    SessionStatus,
)
from agentdeck.session.store import SessionStore

logger = logging.getLogger(__name__)

# Subscriber: sync or async callable receiving each new snapshot
Subscriber = Callable[["SessionSnapshot"], Awaitable[None] | None]


@dataclass(frozen=True)
class SessionSnapshot:
    """Everything a front end needs to draw one frame."""

    session: AgentSession | None = None
    conversation_id: str | None = None
    conversation: Conversation = field(default_factory=Conversation)
    groups: tuple[MessageGroup, ...] = ()
    header: SessionHeader = field(default_factory=SessionHeader)
    busy: bool = False
    error: str | None = None
    models: tuple[ModelOption, ...] = ()

    @property
    def status(self) -> SessionStatus | None:
        return self.session.status if self.session else None

    @property
    def session_error(self) -> str | None:
        """The session's own failure message (not a transport error)."""
        if self.session is not None and self.session.status is SessionStatus.ERROR:
            return self.session.error or "Agent failed to start"
        return None


class SessionController:
    """Drives one agent session and exposes it as snapshots."""

    def __init__(
        self,
        settings: Settings | None = None,
        host: HostClient | None = None,
        store: SessionStore | None = None,
        resolver: ModelContextResolver | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._owns_host = host is None
        self._host = host or HostClient(self._settings)
        self._store = store or SessionStore(self._host, self._settings)
        self._resolver = resolver or ModelContextResolver(self._host, self._settings)
        self._channel = EventChannel(self._host, self._on_event)

        self._conversation = Conversation()
        self._conversation_id: str | None = None
        self._bound_session: str | None = None
        self._resolution: ModelResolution | None = None
        self._busy = False
        self._error: str | None = None

        self._epoch = 0
        self._resolver_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._subscribers: list[Subscriber] = []

        self._store.on_change(self._on_session_change)

    async def __aenter__(self) -> SessionController:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def resolution(self) -> ModelResolution | None:
        return self._resolution

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def error(self) -> str | None:
        return self._error

    def snapshot(self) -> SessionSnapshot:
        models = self._resolution.catalog.available_models() if self._resolution else []
        return SessionSnapshot(
            session=self._store.session,
            conversation_id=self._conversation_id,
            conversation=self._conversation,
            groups=tuple(group_by_role(self._conversation)),
            header=session_header(self._resolution, self._conversation),
            busy=self._busy,
            error=self._error,
            models=tuple(models),
        )

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register for snapshots. Returns a callable that unsubscribes."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def list_agents(self) -> list[AgentDefinition]:
        try:
            return await self._host.list_agents()
        except HostError as e:
            self._fail(f"Could not list agents: {e}")
            return []

    async def launch(self, agent_id: str | None = None, project_dir: str | None = None) -> AgentSession | None:
        """Launch an agent. Failures end up in `error`, not as exceptions."""
        agent_id = agent_id or self._settings.agent_id
        project_dir = self._settings.project_dir if project_dir is None else project_dir
        self._error = None
        try:
            return await self._store.launch(agent_id, project_dir, self._settings.api_key or None)
        except HostError as e:
            self._fail(f"Launch failed: {e}")
            return None

    async def recover(self, project_dir: str | None = None) -> AgentSession | None:
        """Adopt a live host session for the project, if one exists."""
        project_dir = self._settings.project_dir if project_dir is None else project_dir
        try:
            return await self._store.recover(project_dir)
        except HostError as e:
            self._fail(f"Could not list sessions: {e}")
            return None

    async def stop(self) -> None:
        await self._store.stop()

    def send(self, text: str) -> asyncio.Task | None:
        """Send a prompt without waiting for the host.

        The prompt is echoed locally right away. The returned task completes
        once the host accepted (or refused) it; the reply itself arrives over
        the event channel.
        """
        text = text.strip()
        if not text:
            return None
        session = self._store.session
        if session is None or session.status is not SessionStatus.RUNNING or not self._conversation_id:
            self._fail("Session is not running")
            return None

        self._conversation = append_local_echo(self._conversation, text)
        self._notify()

        model = self._resolution.model if self._resolution else None
        task = asyncio.create_task(
            self._deliver_prompt(session.id, self._conversation_id, text, model, self._epoch),
            name="send-prompt",
        )
        self._track(task)
        return task

    async def set_model(self, provider_id: str, model_id: str) -> bool:
        """Switch the session's model. Returns False (and sets `error`) on failure."""
        session = self._store.session
        if session is None or session.status is not SessionStatus.RUNNING:
            self._fail("Session is not running")
            return False

        model = ModelRef(provider_id=provider_id, model_id=model_id)
        epoch = self._epoch
        try:
            await self._host.update_model(session.id, model)
        except HostError as e:
            self._fail(f"Could not switch model: {e}")
            return False
        if epoch != self._epoch:
            return False

        logger.info("Session %s switched to %s", session.id, model.label)
        self._resolution = (self._resolution or ModelResolution()).with_model(model)
        self._notify()
        return True

    def dismiss_error(self) -> None:
        if self._error is not None:
            self._error = None
            self._notify()

    async def close(self) -> None:
        """Release channel, tasks, poll loop and (if owned) the HTTP client."""
        self._epoch += 1
        await self._store.close()
        await self._channel.close()

        tasks = list(self._tasks)
        if self._resolver_task is not None:
            tasks.append(self._resolver_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._resolver_task = None

        if self._owns_host:
            await self._host.close()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def _on_session_change(self, previous: SessionStatus | None, session: AgentSession | None) -> None:
        logger.debug("Session change: %s -> %s", previous, session.status if session else None)
        if session is not None and session.status is SessionStatus.RUNNING:
            if self._bound_session != session.id:
                await self._bind(session.id)
        elif self._bound_session is not None or session is None:
            await self._unbind(clear=session is None)
        self._notify()

    async def _bind(self, session_id: str) -> None:
        await self._unbind(clear=True)
        epoch = self._epoch
        self._bound_session = session_id
        self._resolver_task = asyncio.create_task(
            self._resolve(session_id, epoch), name=f"resolve-model-{session_id}"
        )

        try:
            conversation_id = await self._host.get_or_create_conversation(session_id)
            if epoch != self._epoch:
                return
            history = await self._host.fetch_messages(session_id, conversation_id)
        except HostError as e:
            if epoch == self._epoch:
                self._fail(f"Could not load conversation: {e}")
            return
        if epoch != self._epoch:
            return

        self._conversation_id = conversation_id
        self._conversation = Conversation.from_history(history)
        logger.info(
            "Session %s bound to conversation %s (%d messages)",
            session_id,
            conversation_id,
            len(self._conversation),
        )

        await self._channel.open(session_id)
        if epoch != self._epoch:
            await self._channel.close()

    async def _unbind(self, clear: bool) -> None:
        """Close the channel and drop per-binding state. Bumps the epoch first."""
        self._epoch += 1
        self._bound_session = None
        self._conversation_id = None
        self._busy = False
        task, self._resolver_task = self._resolver_task, None
        if task is not None and not task.done():
            task.cancel()
        await self._channel.close()
        if clear:
            self._conversation = Conversation()
            self._resolution = None

    async def _resolve(self, session_id: str, epoch: int) -> None:
        try:
            resolution = await self._resolver.resolve(session_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Model resolution for session %s crashed", session_id)
            return
        if epoch != self._epoch:
            return
        self._resolution = resolution
        self._notify()

    async def _deliver_prompt(
        self,
        session_id: str,
        conversation_id: str,
        text: str,
        model: ModelRef | None,
        epoch: int,
    ) -> None:
        try:
            await self._host.send_prompt(session_id, conversation_id, text, model)
        except HostError as e:
            if epoch == self._epoch:
                self._fail(f"Send failed: {e}")
            else:
                logger.warning("Send to closed session %s failed: %s", session_id, e)
            return
        logger.debug("Prompt accepted by session %s (%d chars)", session_id, len(text))

    # ------------------------------------------------------------------
    # Events and notification
    # ------------------------------------------------------------------

    def _on_event(self, event: ConversationEvent) -> None:
        if isinstance(event, SessionActivity):
            if event.busy == self._busy:
                return
            self._busy = event.busy
        else:
            updated = apply_event(self._conversation, event)
            if updated is self._conversation:
                return
            self._conversation = updated
        self._notify()

    def _fail(self, message: str) -> None:
        logger.warning("%s", message)
        self._error = message
        self._notify()

    def _notify(self) -> None:
        if not self._subscribers:
            return
        snapshot = self.snapshot()
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(snapshot)
            except Exception:
                logger.exception("Subscriber %s failed", getattr(subscriber, "__qualname__", subscriber))
                continue
            if inspect.isawaitable(result):
                self._track(asyncio.ensure_future(result))

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task failed: %r", error, exc_info=error)
