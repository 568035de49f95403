"""Typed error taxonomy for the gateway.

Every error carries structured context so callers can decide whether and
when to retry without matching on the message text.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class GatewayError(Exception):
    """Base class for all gateway errors."""

    code = "gateway_error"
    retryable = False

    def __init__(self, message: str, provider: str = "", **context: Any):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.context = context

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.provider:
            d["provider"] = self.provider
        d.update(self.context)
        return d


class ConfigurationError(GatewayError):
    """Unknown provider/alias or missing/invalid credentials. Never retried."""

    code = "configuration_error"


class ProviderConnectionError(GatewayError):
    """Transport failure, timeout, 5xx after retries or a truncated stream."""

    code = "connection_error"
    retryable = True


class MalformedResponseError(GatewayError):
    """Provider returned a success status with an unusable body."""

    code = "malformed_response"

    def __init__(self, message: str, provider: str = "", body_excerpt: str = ""):
        super().__init__(message, provider=provider, body_excerpt=body_excerpt)
        self.body_excerpt = body_excerpt


class ProviderRejected(GatewayError):
    """4xx business error, content policy or unsupported operation."""

    code = "provider_rejected"

    def __init__(
        self,
        message: str,
        provider: str = "",
        status_code: int = 0,
        error_type: str = "",
    ):
        super().__init__(message, provider=provider, status_code=status_code, error_type=error_type)
        self.status_code = status_code
        self.error_type = error_type


class RateLimitExceeded(GatewayError):
    """Local limiter denial or provider 429.

    ``retry_after`` is in seconds; a retry at ``now + retry_after`` is
    expected to be admitted.
    """

    code = "rate_limit_exceeded"
    retryable = True

    def __init__(
        self,
        message: str,
        retry_after: float,
        scope: str,
        limit: float = 0,
        remaining: float = 0,
        provider: str = "",
    ):
        super().__init__(
            message,
            provider=provider,
            scope=scope,
            retry_after=retry_after,
            limit=limit,
            remaining=remaining,
        )
        self.retry_after = retry_after
        self.scope = scope
        self.limit = limit
        self.remaining = remaining


class QuotaExceeded(GatewayError):
    """Quota denial. Not retryable until ``reset_at``."""

    code = "quota_exceeded"

    def __init__(
        self,
        message: str,
        scope: str,
        quota_type: str,
        used: float,
        limit: float,
        reset_at: datetime | None = None,
        requested: float = 0,
    ):
        super().__init__(
            message,
            scope=scope,
            quota_type=quota_type,
            used=used,
            limit=limit,
            requested=requested,
            reset_at=reset_at.isoformat() if reset_at else None,
        )
        self.scope = scope
        self.quota_type = quota_type
        self.used = used
        self.limit = limit
        self.reset_at = reset_at
        self.requested = requested
