"""LLM Gateway — orchestrator integrating all gateway components.

Main entry point for application code. Every call runs the same pipeline:
  1. Rate Limiter admits or denies (global → provider → caller → feature)
  2. Quota Manager reserves requests / tokens / cost
  3. Cache Layer short-circuits on a hit
  4. Provider Adapter dispatches the call
  5. Response Normalizer turns the body into a canonical DTO
  6. Cache Layer stores the result
  7. Usage Tracker records exactly one UsageRecord

Usage:
    gateway = LlmGateway.from_settings()

    response = await gateway.complete(
        Request.chat("fast-chat", [{"role": "user", "content": "hi"}], temperature=0.7),
        CallContext(caller_id="alice"),
    )

    async with await gateway.stream(request, context) as stream:
        async for chunk in stream:
            ...
"""

from __future__ import annotations

import logging
import time
from collections import deque
from contextlib import nullcontext
from dataclasses import replace
from datetime import datetime

import httpx

from llmgate.core.config import Settings, settings as default_settings, validate_settings
from llmgate.core.metrics import PROVIDER_LATENCY
from llmgate.gateway.cache import ResponseCache
from llmgate.gateway.config_provider import ConfigurationProvider, SettingsConfigurationProvider
from llmgate.gateway.errors import ConfigurationError, GatewayError, RateLimitExceeded
from llmgate.gateway.normalizer import ResponseNormalizer
from llmgate.gateway.pricing import estimate_cost, estimate_tokens
from llmgate.gateway.quota import QuotaDenial, QuotaManager, QuotaSubject, QuotaType, Reservation
from llmgate.gateway.rate_limiter import RateLimiter
from llmgate.gateway.streaming import ResponseStream, StreamOutcome
from llmgate.gateway.types import (
    CallContext,
    EmbeddingResult,
    Operation,
    Outcome,
    ProviderId,
    Request,
    RequestState,
    RequestTrace,
    Response,
    TokenUsage,
    parse_provider_id,
)
from llmgate.gateway.usage import UsageTracker
from llmgate.gateway.vendor_adapters import ProviderAdapter, build_adapters
from llmgate.notifications.base import FanOutNotificationSink, LoggingNotificationSink, NotificationSink
from llmgate.notifications.telegram import TelegramNotificationSink

logger = logging.getLogger(__name__)

# Gateway-level aliases: alias → (provider, concrete model)
DEFAULT_MODEL_ALIASES: dict[str, tuple[ProviderId, str]] = {
    "fast-chat": (ProviderId.OPENAI, "gpt-4o-mini"),
    "smart-chat": (ProviderId.OPENAI, "gpt-4o"),
    "embedding": (ProviderId.OPENAI, "text-embedding-3-small"),
    "vision": (ProviderId.OPENAI, "gpt-4o-mini"),
    "claude-fast": (ProviderId.ANTHROPIC, "claude-3-5-haiku-20241022"),
    "claude-smart": (ProviderId.ANTHROPIC, "claude-sonnet-4-20250514"),
    "gemini-fast": (ProviderId.GEMINI, "gemini-2.0-flash"),
    "local-chat": (ProviderId.OLLAMA, "llama3.2"),
}

# Output budget assumed for quota reservations when max_tokens is unset
DEFAULT_OUTPUT_TOKEN_ESTIMATE = 1024

_TRACE_HISTORY = 200


def parse_aliases(raw: dict[str, str]) -> dict[str, tuple[ProviderId, str]]:
    """``{"fast-chat": "openai:gpt-4o-mini"}`` → ``{"fast-chat": (OPENAI, "gpt-4o-mini")}``."""
    aliases = {}
    for alias, target in raw.items():
        provider, sep, model = target.partition(":")
        if not sep or not model:
            raise ConfigurationError(f"Model alias '{alias}' must look like '<provider>:<model>', got '{target}'")
        aliases[alias] = (parse_provider_id(provider), model)
    return aliases


class LlmGateway:
    """Main gateway orchestrator.

    Integrates:
      - RateLimiter: multi-scope admission control
      - QuotaManager: budget reservations
      - ResponseCache: fingerprinted response cache
      - ProviderAdapters: protocol-specific HTTP calls
      - ResponseNormalizer: canonical DTOs
      - UsageTracker: one usage record per call
    """

    def __init__(
        self,
        config: ConfigurationProvider,
        adapters: dict[ProviderId, ProviderAdapter] | None = None,
        rate_limiter: RateLimiter | None = None,
        quota_manager: QuotaManager | None = None,
        cache: ResponseCache | None = None,
        usage_tracker: UsageTracker | None = None,
        normalizer: ResponseNormalizer | None = None,
        aliases: dict[str, tuple[ProviderId, str]] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            config: Configuration Provider supplying per-provider settings
            adapters: Pre-built adapters; built from ``config`` when omitted
            aliases: Extra gateway aliases merged over the built-in table
            transport: httpx transport passed to adapters (tests use MockTransport)
        """
        self.config = config
        self._adapters = adapters if adapters is not None else build_adapters(config, transport=transport)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.quota = quota_manager or QuotaManager()
        self.cache = cache or ResponseCache()
        self.usage = usage_tracker or UsageTracker()
        self.normalizer = normalizer or ResponseNormalizer()
        self.aliases = {**DEFAULT_MODEL_ALIASES, **(aliases or {})}
        self._default_provider = config.default_provider()
        self.traces: deque[RequestTrace] = deque(maxlen=_TRACE_HISTORY)

    @classmethod
    def from_settings(
        cls,
        cfg: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **components,
    ) -> LlmGateway:
        """Build a gateway from pydantic settings, validating them first."""
        cfg = cfg or default_settings
        validate_settings(cfg)

        sinks: list[NotificationSink] = [LoggingNotificationSink()]
        if cfg.telegram_bot_token and cfg.telegram_chat_id:
            sinks.append(TelegramNotificationSink(cfg.telegram_bot_token, cfg.telegram_chat_id))

        components.setdefault("rate_limiter", RateLimiter.from_settings(cfg))
        components.setdefault("quota_manager", QuotaManager.from_settings(cfg, sink=FanOutNotificationSink(sinks)))
        components.setdefault("cache", ResponseCache.from_settings(cfg))
        components.setdefault("aliases", parse_aliases(cfg.model_aliases))
        return cls(SettingsConfigurationProvider(cfg), transport=transport, **components)

    # -- public contract ---------------------------------------------------------

    async def complete(self, request: Request, context: CallContext | None = None) -> Response:
        """Text completion."""
        if request.operation != Operation.COMPLETE:
            request = replace(request, operation=Operation.COMPLETE)
        return await self._execute(request, context or CallContext())

    async def analyze_image(self, request: Request, context: CallContext | None = None) -> Response:
        """Vision call: messages carry the images."""
        if request.operation != Operation.ANALYZE_IMAGE:
            request = replace(request, operation=Operation.ANALYZE_IMAGE)
        return await self._execute(request, context or CallContext())

    async def embed(self, request: Request, context: CallContext | None = None) -> EmbeddingResult:
        if request.operation != Operation.EMBED:
            request = replace(request, operation=Operation.EMBED)
        return await self._execute(request, context or CallContext())

    async def stream(self, request: Request, context: CallContext | None = None) -> ResponseStream:
        """Open a streaming completion.

        Reservations are held until the stream finishes or is closed; the
        usage record is written exactly once at that point.
        """
        if request.operation != Operation.STREAM:
            request = replace(request, operation=Operation.STREAM)
        context = context or CallContext()
        trace = self._new_trace(request)
        request, adapter = self._prepare(request)
        provider = adapter.provider_id
        feature = context.feature_for(Operation.STREAM)

        await self._admit(request, context, trace, feature)
        reservations, prompt_estimate = await self._reserve(request, provider, context, trace, feature)

        trace.advance(RequestState.CACHE_MISS)
        trace.advance(RequestState.DISPATCHED)
        start = time.monotonic()
        try:
            source = await adapter.open_stream(request)
        except GatewayError as e:
            await self._fail(request, context, trace, feature, reservations, e, start)
            raise
        except BaseException:
            await self._release(reservations)
            trace.abort("internal_error")
            raise

        async def on_finish(outcome: StreamOutcome) -> None:
            PROVIDER_LATENCY.labels(provider=provider.value, operation=Operation.STREAM.value).observe(
                time.monotonic() - start
            )
            cost = estimate_cost(provider, request.model, outcome.usage)
            await self._confirm(reservations, outcome.usage, cost)
            if outcome.error is None:
                trace.advance(RequestState.NORMALIZED)
            else:
                trace.abort(outcome.error.code)
            await self.usage.record(
                caller=context.caller_id,
                provider=provider.value,
                model=request.model,
                feature=feature,
                operation=Operation.STREAM.value,
                outcome=Outcome.SUCCESS if outcome.error is None else Outcome.ERROR,
                usage=outcome.usage,
                cost_usd=cost,
                error_code=outcome.error.code if outcome.error else "",
                request_id=request.request_id,
                latency_ms=int((time.monotonic() - start) * 1000),
            )
            trace.advance(RequestState.USAGE_RECORDED)
            if outcome.error is None:
                trace.advance(RequestState.RETURNED)

        return ResponseStream(
            source,
            self.normalizer.stream_parser(provider),
            on_finish,
            prompt_tokens_estimate=prompt_estimate,
            request_id=request.request_id,
        )

    async def usage_report(self, start: datetime, end: datetime, group_by: str = "provider") -> list[dict]:
        """Aggregated usage over [start, end) grouped by provider, feature, model or caller."""
        return await self.usage.report(start, end, group_by)

    def get_status(self) -> dict:
        """Snapshot of providers, rate limits and cache."""
        return {
            "default_provider": self._default_provider.value,
            "providers": [
                {
                    "provider": provider.value,
                    "base_url": adapter.base_url,
                    "default_model": adapter.settings.default_model,
                    "supports_streaming": adapter.supports_streaming,
                    "supports_vision": adapter.supports_vision,
                    "supports_embeddings": adapter.supports_embeddings,
                    "supports_tools": adapter.supports_tools,
                }
                for provider, adapter in self._adapters.items()
            ],
            "aliases": {alias: f"{p.value}:{m}" for alias, (p, m) in self.aliases.items()},
            "rate_limits": self.rate_limiter.get_all_stats(),
            "cache": self.cache.stats(),
        }

    async def aclose(self) -> None:
        await self.cache.aclose()
        await self.quota.aclose()

    async def __aenter__(self) -> LlmGateway:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # -- pipeline ----------------------------------------------------------------

    async def _execute(self, request: Request, context: CallContext) -> Response | EmbeddingResult:
        trace = self._new_trace(request)
        request, adapter = self._prepare(request)
        provider = adapter.provider_id
        operation = request.operation
        feature = context.feature_for(operation)

        await self._admit(request, context, trace, feature)
        reservations, _ = await self._reserve(request, provider, context, trace, feature)

        key = None
        if self.cache.policy.is_cacheable(request, context):
            key = self.cache.key_for(request, provider.value, request.model)

        async with self.cache.flight(key) if key else nullcontext():
            if key:
                cached = await self.cache.get(key)
                if cached is not None:
                    return await self._serve_cached(request, context, trace, feature, reservations, cached)
            trace.advance(RequestState.CACHE_MISS)

            trace.advance(RequestState.DISPATCHED)
            start = time.monotonic()
            try:
                if operation == Operation.EMBED:
                    raw = await adapter.embed(request)
                    result = self.normalizer.normalize_embeddings(provider, raw)
                else:
                    raw = await adapter.dispatch(request)
                    result = self.normalizer.normalize(provider, raw)
            except GatewayError as e:
                await self._fail(request, context, trace, feature, reservations, e, start)
                raise
            except BaseException:
                await self._release(reservations)
                trace.abort("internal_error")
                raise
            latency = time.monotonic() - start
            PROVIDER_LATENCY.labels(provider=provider.value, operation=operation.value).observe(latency)
            trace.advance(RequestState.NORMALIZED)

            if key:
                await self.cache.set(key, result.to_dict(), self.cache.policy.ttl_for(feature))

        cost = estimate_cost(provider, request.model, result.usage)
        await self._confirm(reservations, result.usage, cost)
        await self.usage.record(
            caller=context.caller_id,
            provider=provider.value,
            model=request.model,
            feature=feature,
            operation=operation.value,
            outcome=Outcome.SUCCESS,
            usage=result.usage,
            cost_usd=cost,
            request_id=request.request_id,
            latency_ms=int(latency * 1000),
        )
        trace.advance(RequestState.USAGE_RECORDED)
        trace.advance(RequestState.RETURNED)
        return result

    def _new_trace(self, request: Request) -> RequestTrace:
        trace = RequestTrace(request_id=request.request_id)
        self.traces.append(trace)
        return trace

    def _resolve(self, request: Request) -> tuple[ProviderId, str]:
        """Alias / explicit provider / default provider → (provider, model)."""
        alias = self.aliases.get(request.model)
        if request.provider is not None:
            if alias and alias[0] == request.provider:
                return request.provider, alias[1]
            return request.provider, request.model
        if alias:
            return alias
        return self._default_provider, request.model

    def _prepare(self, request: Request) -> tuple[Request, ProviderAdapter]:
        provider, model = self._resolve(request)
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise ConfigurationError(
                f"Provider {provider.value} is not enabled (model '{request.model}')", provider=provider.value
            )
        model = adapter.resolve_model(model, embedding=request.operation == Operation.EMBED)
        return replace(request, provider=provider, model=model), adapter

    async def _admit(self, request: Request, context: CallContext, trace: RequestTrace, feature: str) -> None:
        provider = request.provider.value if request.provider else ""
        admission = await self.rate_limiter.check(provider=provider, caller=context.caller_id, feature=feature)
        if admission.admitted:
            trace.advance(RequestState.ADMITTED)
            return
        trace.abort("rate_limited")
        await self.usage.record(
            caller=context.caller_id,
            provider=provider,
            model=request.model,
            feature=feature,
            operation=request.operation.value,
            outcome=Outcome.RATE_LIMITED,
            error_code="rate_limit_exceeded",
            request_id=request.request_id,
        )
        raise admission.to_error()

    def _quota_amounts(self, request: Request, provider: ProviderId) -> tuple[dict[QuotaType, float], int]:
        prompt_tokens = estimate_tokens(request.prompt_text())
        if request.operation == Operation.EMBED:
            output_tokens = 0
        else:
            output_tokens = request.max_tokens or DEFAULT_OUTPUT_TOKEN_ESTIMATE
        cost = estimate_cost(provider, request.model, TokenUsage.of(prompt_tokens, output_tokens))
        amounts = {
            QuotaType.REQUESTS: 1.0,
            QuotaType.TOKENS: float(prompt_tokens + output_tokens),
            QuotaType.COST: cost,
        }
        configured = self.quota.configured_types()
        return {t: a for t, a in amounts.items() if t in configured}, prompt_tokens

    async def _reserve(
        self,
        request: Request,
        provider: ProviderId,
        context: CallContext,
        trace: RequestTrace,
        feature: str,
    ) -> tuple[list[Reservation], int]:
        amounts, prompt_tokens = self._quota_amounts(request, provider)
        if not amounts:
            trace.advance(RequestState.QUOTA_RESERVED)
            return [], prompt_tokens

        subject = QuotaSubject(caller_id=context.caller_id, group_id=context.group_id, site_id=context.site_id)
        result = await self.quota.reserve_all(subject, amounts)
        if isinstance(result, QuotaDenial):
            trace.abort("quota_exceeded")
            await self.usage.record(
                caller=context.caller_id,
                provider=provider.value,
                model=request.model,
                feature=feature,
                operation=request.operation.value,
                outcome=Outcome.QUOTA_EXCEEDED,
                error_code="quota_exceeded",
                request_id=request.request_id,
            )
            raise result.to_error()
        trace.advance(RequestState.QUOTA_RESERVED)
        return result, prompt_tokens

    async def _confirm(self, reservations: list[Reservation], usage: TokenUsage, cost: float) -> None:
        actual = {
            QuotaType.REQUESTS: 1.0,
            QuotaType.TOKENS: float(usage.total_tokens),
            QuotaType.COST: cost,
        }
        for reservation in reservations:
            await self.quota.confirm(reservation, actual[reservation.quota_type])

    async def _release(self, reservations: list[Reservation]) -> None:
        for reservation in reservations:
            await self.quota.release(reservation)

    async def _serve_cached(
        self,
        request: Request,
        context: CallContext,
        trace: RequestTrace,
        feature: str,
        reservations: list[Reservation],
        cached: dict,
    ) -> Response | EmbeddingResult:
        trace.advance(RequestState.CACHE_HIT)
        if cached.get("kind") == "embedding":
            result: Response | EmbeddingResult = EmbeddingResult.from_dict(cached, cache_hit=True)
        else:
            result = Response.from_dict(cached, cache_hit=True)

        await self._release(reservations)
        await self.usage.record(
            caller=context.caller_id,
            provider=request.provider.value if request.provider else "",
            model=request.model,
            feature=feature,
            operation=request.operation.value,
            outcome=Outcome.SUCCESS,
            cost_usd=0.0,
            cache_hit=True,
            request_id=request.request_id,
        )
        trace.advance(RequestState.USAGE_RECORDED)
        trace.advance(RequestState.RETURNED)
        return result

    async def _fail(
        self,
        request: Request,
        context: CallContext,
        trace: RequestTrace,
        feature: str,
        reservations: list[Reservation],
        error: GatewayError,
        start: float,
    ) -> None:
        """Release reservations and record the failed call. The caller re-raises."""
        trace.abort(error.code)
        await self._release(reservations)
        outcome = Outcome.RATE_LIMITED if isinstance(error, RateLimitExceeded) else Outcome.ERROR
        await self.usage.record(
            caller=context.caller_id,
            provider=request.provider.value if request.provider else "",
            model=request.model,
            feature=feature,
            operation=request.operation.value,
            outcome=outcome,
            cost_usd=0.0,
            error_code=error.code,
            request_id=request.request_id,
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        trace.advance(RequestState.USAGE_RECORDED)
