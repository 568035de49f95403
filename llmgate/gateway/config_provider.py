"""Configuration Provider: supplies per-provider connection settings."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from llmgate.core.config import Settings, settings as default_settings
from llmgate.gateway.errors import ConfigurationError
from llmgate.gateway.types import ProviderId, parse_provider_id


@dataclass(frozen=True)
class ProviderSettings:
    """Connection settings for one provider."""

    api_key: str = ""
    base_url: str = ""
    default_model: str = ""
    timeout: float = 60.0
    max_retries: int = 3
    base_retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    extra: Mapping[str, Any] = field(default_factory=dict)


class ConfigurationProvider(Protocol):
    """Narrow interface the gateway uses to read provider configuration."""

    def enabled_providers(self) -> list[ProviderId]: ...

    def default_provider(self) -> ProviderId: ...

    def get_provider_settings(self, provider_id: ProviderId) -> ProviderSettings: ...


DEFAULT_MODELS: dict[ProviderId, str] = {
    ProviderId.OPENAI: "gpt-4o-mini",
    ProviderId.ANTHROPIC: "claude-3-5-haiku-20241022",
    ProviderId.GEMINI: "gemini-2.0-flash",
    ProviderId.OLLAMA: "llama3.2",
    ProviderId.MISTRAL: "mistral-small-latest",
    ProviderId.GROQ: "llama-3.1-8b-instant",
    ProviderId.OPENROUTER: "openai/gpt-4o-mini",
    ProviderId.DEEPSEEK: "deepseek-chat",
}


class SettingsConfigurationProvider:
    """Reads provider settings from the pydantic ``Settings`` object."""

    def __init__(self, cfg: Settings | None = None):
        self._settings = cfg or default_settings

    @property
    def settings(self) -> Settings:
        return self._settings

    def enabled_providers(self) -> list[ProviderId]:
        return [parse_provider_id(p) for p in self._settings.enabled_provider_ids]

    def default_provider(self) -> ProviderId:
        return parse_provider_id(self._settings.default_provider)

    def get_provider_settings(self, provider_id: ProviderId) -> ProviderSettings:
        name = provider_id.value
        extra: dict[str, Any] = {}
        if provider_id == ProviderId.ANTHROPIC:
            extra["anthropic_version"] = self._settings.anthropic_version
        return ProviderSettings(
            api_key=getattr(self._settings, f"{name}_api_key", ""),
            base_url=getattr(self._settings, f"{name}_base_url"),
            default_model=DEFAULT_MODELS[provider_id],
            timeout=self._settings.provider_timeout,
            max_retries=self._settings.provider_max_retries,
            base_retry_delay=self._settings.retry_base_delay,
            max_retry_delay=self._settings.retry_max_delay,
            extra=extra,
        )


class StaticConfigurationProvider:
    """Explicit provider map, handy for embedding hosts and tests."""

    def __init__(
        self,
        providers: Mapping[ProviderId, ProviderSettings],
        default: ProviderId | None = None,
    ):
        if not providers:
            raise ConfigurationError("At least one provider must be configured")
        self._providers = dict(providers)
        self._default = default or next(iter(self._providers))

    def enabled_providers(self) -> list[ProviderId]:
        return list(self._providers)

    def default_provider(self) -> ProviderId:
        return self._default

    def get_provider_settings(self, provider_id: ProviderId) -> ProviderSettings:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ConfigurationError(
                f"Provider {provider_id.value} is not configured", provider=provider_id.value
            ) from None
