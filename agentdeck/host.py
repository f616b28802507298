"""Async HTTP client for the agent host API.

Thin wrappers around one shared httpx.AsyncClient. Non-2xx replies and
transport failures surface as HostError; nothing here retries.

Endpoints:
  /api/agents                                 agent catalog
  /api/agents/sessions                        launch, list, stop
  /api/agents/sessions/{id}/proxy/...         per-session agent API
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from pydantic import ValidationError

from agentdeck.config import Settings
from agentdeck.errors import HostError, LaunchError
from agentdeck.session.schemas import (
    AgentDefinition,
    AgentSession,
    ModelRef,
    ProviderCatalog,
)

logger = logging.getLogger(__name__)

_SESSIONS_PATH = "/api/agents/sessions"


def proxy_path(session_id: str) -> str:
    """Base path of the agent API proxied for one session."""
    return f"{_SESSIONS_PATH}/{session_id}/proxy"


def _unwrap_list(data: Any, *keys: str) -> list[Any]:
    """Accept both paginated ({key: [...]}) and bare-list replies."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip()[:500] or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error") or data.get("message")
        if isinstance(error, list):
            return "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in error)
        if error:
            return str(error)
    return f"HTTP {response.status_code}"


class HostClient:
    """Talks to the agent host on behalf of the session engine."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=settings.host_url,
            timeout=httpx.Timeout(
                connect=settings.request_timeout_connect,
                read=settings.request_timeout_read,
                write=10.0,
                pool=10.0,
            ),
        )

    async def close(self) -> None:
        """Release the HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Agent catalog and session lifecycle
    # ------------------------------------------------------------------

    async def list_agents(self) -> list[AgentDefinition]:
        data = await self._request("GET", "/api/agents")
        return [AgentDefinition.model_validate(a) for a in _unwrap_list(data, "agents")]

    async def launch_session(
        self, agent_id: str, project_dir: str, api_key: str | None = None
    ) -> AgentSession:
        body: dict[str, str] = {"agent_id": agent_id, "project_dir": project_dir}
        if api_key:
            body["api_key"] = api_key
        try:
            data = await self._request("POST", _SESSIONS_PATH, json=body)
            return AgentSession.model_validate(data)
        except HostError as e:
            raise LaunchError(str(e) or "Failed to launch agent", e.status_code) from e
        except ValidationError as e:
            raise LaunchError(f"Unexpected launch reply: {e.error_count()} invalid field(s)") from e

    async def stop_session(self, session_id: str) -> None:
        await self._request("DELETE", _SESSIONS_PATH, params={"id": session_id})

    async def list_sessions(self) -> list[AgentSession]:
        data = await self._request("GET", _SESSIONS_PATH)
        sessions: list[AgentSession] = []
        for raw in _unwrap_list(data, "sessions"):
            try:
                sessions.append(AgentSession.model_validate(raw))
            except ValidationError:
                logger.debug("Skipping malformed session record: %r", raw)
        return sessions

    # ------------------------------------------------------------------
    # Conversations inside a running session
    # ------------------------------------------------------------------

    async def list_conversations(self, session_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"{proxy_path(session_id)}/session")
        return [c for c in _unwrap_list(data, "items", "sessions") if isinstance(c, dict)]

    async def create_conversation(self, session_id: str, model: ModelRef | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if model:
            body["model"] = model.label
        data = await self._request("POST", f"{proxy_path(session_id)}/session", json=body)
        return data if isinstance(data, dict) else {}

    async def get_or_create_conversation(self, session_id: str) -> str:
        """Reuse the first existing conversation, otherwise create one."""
        existing = await self.list_conversations(session_id)
        for conversation in existing:
            if conversation.get("id"):
                return str(conversation["id"])
        created = await self.create_conversation(session_id)
        if not created.get("id"):
            raise HostError("Host did not return a conversation id")
        return str(created["id"])

    async def fetch_messages(self, session_id: str, conversation_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"{proxy_path(session_id)}/session/{conversation_id}/message")
        return [m for m in _unwrap_list(data, "items", "messages") if isinstance(m, dict)]

    async def send_prompt(
        self,
        session_id: str,
        conversation_id: str,
        text: str,
        model: ModelRef | None = None,
    ) -> None:
        """Queue a prompt. The reply arrives later over the event stream."""
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if model:
            body["model"] = {"providerID": model.provider_id, "modelID": model.model_id}
        await self._request(
            "POST", f"{proxy_path(session_id)}/session/{conversation_id}/prompt_async", json=body
        )

    # ------------------------------------------------------------------
    # Model configuration
    # ------------------------------------------------------------------

    async def fetch_config(self, session_id: str) -> dict[str, Any]:
        data = await self._request("GET", f"{proxy_path(session_id)}/config")
        return data if isinstance(data, dict) else {}

    async def fetch_providers(self, session_id: str) -> ProviderCatalog:
        data = await self._request("GET", f"{proxy_path(session_id)}/config/providers")
        try:
            return ProviderCatalog.model_validate(data if isinstance(data, dict) else {})
        except ValidationError as e:
            raise HostError(f"Malformed provider catalog: {e.error_count()} invalid field(s)") from e

    async def update_model(self, session_id: str, model: ModelRef) -> None:
        data = await self._request(
            "PATCH", f"{proxy_path(session_id)}/config", json={"model": {"modelID": model.model_id}}
        )
        if isinstance(data, dict) and data.get("success") is False:
            error = data.get("error")
            if isinstance(error, list):
                detail = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in error)
            else:
                detail = str(error or "Failed to update config")
            raise HostError(detail)

    # ------------------------------------------------------------------
    # Event stream
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def stream_events(self, session_id: str) -> AsyncIterator[httpx.Response]:
        """Open the session's SSE stream. No read timeout: it lives as long as the session."""
        timeout = httpx.Timeout(
            connect=self._settings.request_timeout_connect, read=None, write=10.0, pool=10.0
        )
        async with self._http.stream(
            "GET",
            f"{proxy_path(session_id)}/event",
            headers={"Accept": "text/event-stream"},
            timeout=timeout,
        ) as response:
            if response.status_code != 200:
                body = await response.aread()
                raise HostError(
                    f"Event stream refused: {body.decode(errors='replace')[:200]}",
                    response.status_code,
                )
            yield response

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise HostError(f"Request timed out: {method} {path}") from e
        except httpx.HTTPError as e:
            raise HostError(f"Cannot reach agent host: {e}") from e

        if response.status_code >= 400:
            raise HostError(_error_detail(response), response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise HostError(f"Invalid JSON from {method} {path}") from e
