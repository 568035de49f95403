from pydantic_settings import BaseSettings, SettingsConfigDict

from llmgate.gateway.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LLMGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Providers
    enabled_providers: str = "openai"  # comma-separated provider ids
    default_provider: str = "openai"
    provider_timeout: float = 60.0
    provider_max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    anthropic_version: str = "2023-06-01"
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    ollama_base_url: str = "http://localhost:11434"
    mistral_api_key: str = ""
    mistral_base_url: str = "https://api.mistral.ai/v1"
    groq_api_key: str = ""
    groq_base_url: str = "https://api.groq.com/openai/v1"
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    deepseek_api_key: str = ""
    deepseek_base_url: str = "https://api.deepseek.com/v1"

    # Gateway aliases, e.g. {"fast-chat": "openai:gpt-4o-mini"}; merged over the built-in table
    model_aliases: dict[str, str] = {}

    # Rate limits: capacity 0 disables the scope kind
    rate_limit_global_capacity: float = 0
    rate_limit_global_refill: float = 0
    rate_limit_provider_capacity: float = 0
    rate_limit_provider_refill: float = 0
    rate_limit_caller_capacity: float = 0
    rate_limit_caller_refill: float = 0
    rate_limit_feature_capacity: float = 0
    rate_limit_feature_refill: float = 0
    rate_limit_window_seconds: float = 0
    rate_limit_window_max: int = 0

    # Quotas, keyed "<scope kind>:<quota type>", e.g. {"caller:cost": 10.0}; 0 = unlimited
    quota_limits: dict[str, float] = {}
    # Period overrides per quota type, e.g. {"cost": "day"}
    quota_periods: dict[str, str] = {}
    quota_thresholds: list[int] = [50, 80, 90, 100]

    # Cache
    cache_enabled: bool = True
    cache_backend: str = "memory"  # memory | redis
    cache_max_entries: int = 10_000
    cache_temperature_ceiling: float = 0.9
    cache_ttl_overrides: dict[str, int] = {}
    cache_single_flight: bool = False
    cache_key_prefix: str = "llmgate:cache:"

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # App
    app_env: str = "development"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Telegram quota notifications
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    @property
    def enabled_provider_ids(self) -> list[str]:
        return [p.strip().lower() for p in self.enabled_providers.split(",") if p.strip()]


settings = Settings()


_KEYLESS_PROVIDERS = {"ollama"}
_QUOTA_SCOPES = {"caller", "group", "site", "global"}
_QUOTA_TYPES = {"requests", "tokens", "cost"}
_QUOTA_PERIODS = {"hour", "day", "week", "month"}


def validate_settings(cfg: Settings | None = None) -> None:
    """Validate critical settings. Called once when the gateway is built."""
    cfg = cfg or settings
    errors: list[str] = []

    providers = cfg.enabled_provider_ids
    if not providers:
        errors.append("ENABLED_PROVIDERS must list at least one provider")

    for provider in providers:
        if provider in _KEYLESS_PROVIDERS:
            continue
        if not hasattr(cfg, f"{provider}_api_key"):
            errors.append(f"Unknown provider '{provider}' in ENABLED_PROVIDERS")
        elif not getattr(cfg, f"{provider}_api_key"):
            errors.append(f"{provider.upper()}_API_KEY must be set")

    if cfg.default_provider.lower() not in providers:
        errors.append(f"DEFAULT_PROVIDER '{cfg.default_provider}' is not enabled")

    if cfg.cache_backend not in ("memory", "redis"):
        errors.append("CACHE_BACKEND must be 'memory' or 'redis'")

    for key, limit in cfg.quota_limits.items():
        scope, _, quota_type = key.partition(":")
        if scope not in _QUOTA_SCOPES or quota_type not in _QUOTA_TYPES:
            errors.append(f"QUOTA_LIMITS key '{key}' must be '<scope>:<type>'")
        if limit < 0:
            errors.append(f"QUOTA_LIMITS['{key}'] must not be negative")

    for quota_type, period in cfg.quota_periods.items():
        if quota_type not in _QUOTA_TYPES or period not in _QUOTA_PERIODS:
            errors.append(f"QUOTA_PERIODS entry '{quota_type}={period}' is invalid")

    for kind in ("global", "provider", "caller", "feature"):
        capacity = getattr(cfg, f"rate_limit_{kind}_capacity")
        refill = getattr(cfg, f"rate_limit_{kind}_refill")
        if capacity > 0 and refill <= 0:
            errors.append(f"RATE_LIMIT_{kind.upper()}_REFILL must be positive when a capacity is set")

    if errors:
        raise ConfigurationError("Configuration errors:\n  - " + "\n  - ".join(errors), problems=errors)
