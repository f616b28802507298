"""Model/context resolution for a running session.

Resolution order for the active model:
  1. the model named by the session config
  2. the preferred_model setting ("provider/model")
  3. the first entry of the provider catalog's default map

The context window comes from the catalog. Anything missing degrades to
"unknown" (None); resolution never fails a session.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentdeck.config import Settings
from agentdeck.conversation.reconciler import Conversation
from agentdeck.errors import HostError
from agentdeck.session.schemas import ModelRef, ProviderCatalog

if TYPE_CHECKING:
    from agentdeck.host import HostClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelResolution:
    """Outcome of one resolution pass."""

    model: ModelRef | None = None
    context_window: int | None = None
    source: str = "none"  # config, preferred, default, selected, none
    catalog: ProviderCatalog = field(default_factory=ProviderCatalog)

    def with_model(self, model: ModelRef, source: str = "selected") -> ModelResolution:
        return ModelResolution(
            model=model,
            context_window=self.catalog.context_window(model.provider_id, model.model_id),
            source=source,
            catalog=self.catalog,
        )


@dataclass(frozen=True)
class SessionHeader:
    """What the session header shows: model label and context utilization."""

    provider_id: str | None = None
    model_id: str | None = None
    utilization: int | None = None  # percent, None when unknown
    source: str | None = None  # "config" before any assistant reply, then "message"

    @property
    def label(self) -> str | None:
        if not self.model_id:
            return None
        return f"{self.provider_id}/{self.model_id}" if self.provider_id else self.model_id


def resolve_model(config: dict[str, Any], catalog: ProviderCatalog, preferred: str = "") -> ModelResolution:
    """Pick the active model and look up its context window."""
    model = ModelRef.parse(config.get("model"))
    source = "config"
    if model is None:
        model, source = ModelRef.parse(preferred), "preferred"
    if model is None:
        model, source = catalog.default_model(), "default"
    if model is None:
        return ModelResolution(catalog=catalog)

    if not model.provider_id:
        # Config named a bare model id; borrow the provider that offers it
        for provider in catalog.providers:
            if model.model_id in provider.models:
                model = ModelRef(provider_id=provider.id, model_id=model.model_id)
                break

    return ModelResolution(
        model=model,
        context_window=catalog.context_window(model.provider_id, model.model_id),
        source=source,
        catalog=catalog,
    )


def context_utilization(input_tokens: int | None, context_window: int | None) -> int | None:
    """Percent of the context window used, rounded half up; None when unknown."""
    if not context_window or context_window <= 0 or not input_tokens or input_tokens <= 0:
        return None
    return math.floor(input_tokens / context_window * 100 + 0.5)


def session_header(resolution: ModelResolution | None, conversation: Conversation) -> SessionHeader:
    """Header label and utilization.

    An assistant message carrying its own model id outranks the resolved
    config: it reflects what actually answered.
    """
    resolution = resolution or ModelResolution()

    answered = conversation.last_assistant(with_model=True)
    if answered is not None:
        provider_id = answered.info.provider_id
        model_id = answered.info.model_id
        source = "message"
        window = resolution.catalog.context_window(provider_id or "", model_id or "")
        if window is None:
            window = resolution.context_window
    elif resolution.model is not None:
        provider_id = resolution.model.provider_id
        model_id = resolution.model.model_id
        source = "config"
        window = resolution.context_window
    else:
        return SessionHeader()

    with_tokens = conversation.last_assistant(with_tokens=True)
    input_tokens = with_tokens.info.tokens.input if with_tokens and with_tokens.info.tokens else None
    return SessionHeader(
        provider_id=provider_id,
        model_id=model_id,
        utilization=context_utilization(input_tokens, window),
        source=source,
    )


class ModelContextResolver:
    """Fetches session config and provider catalog concurrently and resolves the model."""

    def __init__(self, host: HostClient, settings: Settings) -> None:
        self._host = host
        self._settings = settings

    async def resolve(self, session_id: str) -> ModelResolution:
        config, catalog = await asyncio.gather(
            self._host.fetch_config(session_id),
            self._host.fetch_providers(session_id),
            return_exceptions=True,
        )
        if isinstance(config, BaseException):
            self._log_failure("config", session_id, config)
            config = {}
        if isinstance(catalog, BaseException):
            self._log_failure("provider catalog", session_id, catalog)
            catalog = ProviderCatalog()

        resolution = resolve_model(config, catalog, self._settings.preferred_model)
        logger.info(
            "Session %s model: %s (from %s, context window %s)",
            session_id,
            resolution.model.label if resolution.model else "unknown",
            resolution.source,
            resolution.context_window or "unknown",
        )
        return resolution

    @staticmethod
    def _log_failure(what: str, session_id: str, error: BaseException) -> None:
        if isinstance(error, asyncio.CancelledError):
            raise error
        if isinstance(error, HostError):
            logger.warning("Could not fetch %s for session %s: %s", what, session_id, error)
        else:
            logger.error("Unexpected error fetching %s for session %s: %r", what, session_id, error)
