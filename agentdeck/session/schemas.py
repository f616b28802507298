"""Pydantic DTOs for agent sessions and the provider/model catalog.

These mirror the host's JSON replies; unknown fields are ignored.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"
    STOPPED = "stopped"


class _Reply(BaseModel):
    model_config = ConfigDict(
        extra="ignore", populate_by_name=True, frozen=True, protected_namespaces=()
    )


class AgentDefinition(_Reply):
    """Catalog entry for an agent the host knows how to launch."""

    id: str
    name: str = ""
    description: str = ""
    command: str = ""
    installed: bool = False
    headless: bool = False  # can run unattended behind the chat API

    @property
    def launchable(self) -> bool:
        return self.installed and self.headless


class AgentSession(_Reply):
    """One starting/running/errored/stopped agent process on the host."""

    id: str = Field(min_length=1)
    agent_id: str = ""
    agent_name: str = ""
    project_dir: str = ""
    port: int = 0
    created_at: str = ""
    status: SessionStatus = SessionStatus.STARTING
    error: str | None = None

    @property
    def is_live(self) -> bool:
        return self.status in (SessionStatus.STARTING, SessionStatus.RUNNING)


class ModelRef(_Reply):
    """A provider/model pair."""

    provider_id: str
    model_id: str

    @property
    def label(self) -> str:
        return f"{self.provider_id}/{self.model_id}" if self.provider_id else self.model_id

    @classmethod
    def parse(cls, value: Any) -> ModelRef | None:
        """Accept {"providerID", "modelID"} objects or "provider/model" strings."""
        if isinstance(value, dict):
            model_id = value.get("modelID") or value.get("model_id")
            provider_id = value.get("providerID") or value.get("provider_id") or ""
            if model_id:
                return cls(provider_id=provider_id, model_id=model_id)
            return None
        if isinstance(value, str) and value.strip():
            provider_id, sep, model_id = value.strip().partition("/")
            if sep and provider_id and model_id:
                return cls(provider_id=provider_id, model_id=model_id)
        return None


class ModelLimit(_Reply):
    context: int = 0
    output: int = 0


class ModelInfo(_Reply):
    id: str = ""
    name: str = ""
    limit: ModelLimit = Field(default_factory=ModelLimit)


class ProviderInfo(_Reply):
    id: str
    name: str = ""
    models: dict[str, ModelInfo] = Field(default_factory=dict)


class ModelOption(_Reply):
    """One selectable model, flattened out of the catalog."""

    provider_id: str
    provider_name: str
    model_id: str
    model_name: str
    context_window: int | None = None


class ProviderCatalog(_Reply):
    """GET config/providers reply: providers with their models and defaults."""

    providers: list[ProviderInfo] = Field(default_factory=list)
    default: dict[str, str] = Field(default_factory=dict)

    def provider(self, provider_id: str) -> ProviderInfo | None:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def context_window(self, provider_id: str, model_id: str) -> int | None:
        provider = self.provider(provider_id)
        if provider is None:
            return None
        model = provider.models.get(model_id)
        if model is None or model.limit.context <= 0:
            return None
        return model.limit.context

    def default_model(self) -> ModelRef | None:
        """First entry of the default map, if the host offers one."""
        for provider_id, model_id in self.default.items():
            if provider_id and model_id:
                return ModelRef(provider_id=provider_id, model_id=model_id)
        return None

    def available_models(self) -> list[ModelOption]:
        options = [
            ModelOption(
                provider_id=provider.id,
                provider_name=provider.name or provider.id,
                model_id=model.id or key,
                model_name=model.name or model.id or key,
                context_window=model.limit.context or None,
            )
            for provider in self.providers
            for key, model in provider.models.items()
        ]
        options.sort(key=lambda o: (o.provider_name.lower(), o.model_name.lower()))
        return options
