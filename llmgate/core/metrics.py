"""Prometheus metrics for the gateway."""

from prometheus_client import Counter, Histogram, Info, generate_latest

# --- Metrics ---

APP_INFO = Info("llmgate", "LLM gateway info")
APP_INFO.info({"version": "0.1.0", "name": "llmgate"})

GATEWAY_REQUESTS = Counter(
    "llmgate_requests_total",
    "Total gateway requests",
    ["provider", "operation", "outcome"],
)

CACHE_LOOKUPS = Counter(
    "llmgate_cache_lookups_total",
    "Cache lookups by result",
    ["result"],
)

RATE_LIMIT_DENIALS = Counter(
    "llmgate_rate_limit_denials_total",
    "Local rate limiter denials",
    ["scope_kind"],
)

QUOTA_DENIALS = Counter(
    "llmgate_quota_denials_total",
    "Quota reservation denials",
    ["quota_type", "scope_kind"],
)

PROVIDER_LATENCY = Histogram(
    "llmgate_provider_latency_seconds",
    "Provider call latency in seconds",
    ["provider", "operation"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

TOKENS_USED = Counter(
    "llmgate_tokens_total",
    "Tokens consumed by provider calls",
    ["provider", "kind"],
)


def scope_kind(scope: str) -> str:
    """``caller:alice`` → ``caller``; keeps label cardinality bounded."""
    return scope.split(":", 1)[0] if scope else "unknown"


def metrics_payload() -> bytes:
    """Prometheus exposition payload for the host's /metrics endpoint."""
    return generate_latest()
