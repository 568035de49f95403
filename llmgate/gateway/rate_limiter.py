"""Rate Limiter — token buckets per scope plus an optional global sliding window.

Scopes are checked in cascade order: global → provider → caller → feature.
The first denial short-circuits; tokens already taken from earlier scopes
in the same check are refunded so a denied request costs nothing.

The limiter never sleeps. It returns an ``AdmissionResult`` and leaves the
decision to wait or fail to the caller.

Thread-safe via asyncio.Lock (one lock per scope key, never held across scopes).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from llmgate.core.config import Settings
from llmgate.core.metrics import RATE_LIMIT_DENIALS, scope_kind
from llmgate.gateway.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

SCOPE_KINDS = ("global", "provider", "caller", "feature")
GLOBAL_SCOPE = "global"

# Absorbs float drift so a retry at exactly now + retry_after is admitted
_EPSILON = 1e-9


@dataclass(frozen=True)
class RateLimitRule:
    """Bucket shape: ``capacity`` tokens refilled at ``refill_rate`` tokens/second."""

    capacity: float
    refill_rate: float


@dataclass(frozen=True)
class SlidingWindowRule:
    """At most ``max_requests`` within any trailing ``window_seconds``."""

    max_requests: int
    window_seconds: float


@dataclass(frozen=True)
class AdmissionResult:
    """Outcome of an admission check."""

    admitted: bool
    retry_after: float = 0.0
    scope: str = ""
    limit: float = 0
    remaining: float = 0

    def to_error(self) -> RateLimitExceeded:
        return RateLimitExceeded(
            f"Rate limit exceeded for {self.scope}, retry after {self.retry_after:.2f}s",
            retry_after=self.retry_after,
            scope=self.scope,
            limit=self.limit,
            remaining=self.remaining,
        )


ADMITTED = AdmissionResult(admitted=True)


@dataclass
class _TokenBucket:
    """Token bucket state for a single scope key."""

    capacity: float
    refill_rate: float
    tokens: float
    last_refill: float
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def refill(self, now: float) -> None:
        elapsed = max(now - self.last_refill, 0.0)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = max(now, self.last_refill)

    def try_consume(self, cost: float, now: float) -> float:
        """Consume ``cost`` tokens. Returns 0 on success, else seconds until it would succeed."""
        self.refill(now)
        if self.tokens + _EPSILON >= cost:
            self.tokens = max(self.tokens - cost, 0.0)
            return 0.0
        if self.refill_rate <= 0:
            return float("inf")
        return (cost - self.tokens) / self.refill_rate

    def refund(self, cost: float) -> None:
        self.tokens = min(self.capacity, self.tokens + cost)


@dataclass
class _SlidingWindow:
    """Exact request count over a trailing window."""

    rule: SlidingWindowRule
    timestamps: deque[float] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def _prune(self, now: float) -> None:
        cutoff = now - self.rule.window_seconds
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def try_record(self, now: float) -> float:
        self._prune(now)
        if len(self.timestamps) < self.rule.max_requests:
            self.timestamps.append(now)
            return 0.0
        oldest = self.timestamps[0]
        return max(oldest + self.rule.window_seconds - now, _EPSILON)

    def remove(self, ts: float) -> None:
        try:
            self.timestamps.remove(ts)
        except ValueError:
            pass

    @property
    def count(self) -> int:
        return len(self.timestamps)


class RateLimiter:
    """Multi-scope token bucket limiter.

    Usage:
        limiter = RateLimiter({"caller": RateLimitRule(capacity=3, refill_rate=1)})

        result = await limiter.check(provider="openai", caller="alice", feature="chat")
        if not result.admitted:
            raise result.to_error()
    """

    def __init__(
        self,
        rules: dict[str, RateLimitRule] | None = None,
        overrides: dict[str, RateLimitRule] | None = None,
        window: SlidingWindowRule | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._rules = dict(rules or {})
        unknown = set(self._rules) - set(SCOPE_KINDS)
        if unknown:
            raise ValueError(f"Unknown rate limit scope kinds: {sorted(unknown)}")
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._buckets: dict[str, _TokenBucket] = {}
        self._window = _SlidingWindow(window) if window else None

    @classmethod
    def from_settings(cls, cfg: Settings, clock: Callable[[], float] = time.monotonic) -> RateLimiter:
        rules = {}
        for kind in SCOPE_KINDS:
            capacity = getattr(cfg, f"rate_limit_{kind}_capacity")
            if capacity > 0:
                rules[kind] = RateLimitRule(capacity=capacity, refill_rate=getattr(cfg, f"rate_limit_{kind}_refill"))
        window = None
        if cfg.rate_limit_window_seconds > 0 and cfg.rate_limit_window_max > 0:
            window = SlidingWindowRule(cfg.rate_limit_window_max, cfg.rate_limit_window_seconds)
        return cls(rules=rules, window=window, clock=clock)

    def _rule_for(self, key: str) -> RateLimitRule | None:
        if key in self._overrides:
            return self._overrides[key]
        return self._rules.get(scope_kind(key))

    def _get_bucket(self, key: str, rule: RateLimitRule) -> _TokenBucket:
        """Get or create the bucket for a scope key (created full)."""
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _TokenBucket(
                capacity=rule.capacity,
                refill_rate=rule.refill_rate,
                tokens=rule.capacity,
                last_refill=self._clock(),
            )
            self._buckets[key] = bucket
        return bucket

    async def check(
        self,
        provider: str = "",
        caller: str = "",
        feature: str = "",
        cost: float = 1.0,
    ) -> AdmissionResult:
        """Admit or deny one request across all configured scopes."""
        keys = [GLOBAL_SCOPE]
        keys += [f"{kind}:{value}" for kind, value in (("provider", provider), ("caller", caller), ("feature", feature)) if value]

        taken: list[tuple[_TokenBucket, float]] = []
        window_ts: float | None = None

        for index, key in enumerate(keys):
            rule = self._rule_for(key)
            if rule is not None:
                bucket = self._get_bucket(key, rule)
                async with bucket.lock:
                    retry_after = bucket.try_consume(cost, self._clock())
                    remaining = bucket.tokens
                if retry_after > 0:
                    await self._refund(taken, window_ts)
                    return self._deny(key, retry_after, rule.capacity, remaining)
                taken.append((bucket, cost))

            if index == 0 and self._window is not None:
                async with self._window.lock:
                    now = self._clock()
                    retry_after = self._window.try_record(now)
                if retry_after > 0:
                    await self._refund(taken, None)
                    limit = self._window.rule.max_requests
                    return self._deny(f"{GLOBAL_SCOPE}:window", retry_after, limit, 0)
                window_ts = now

        return ADMITTED

    async def _refund(self, taken: list[tuple[_TokenBucket, float]], window_ts: float | None) -> None:
        for bucket, cost in taken:
            async with bucket.lock:
                bucket.refund(cost)
        if window_ts is not None and self._window is not None:
            async with self._window.lock:
                self._window.remove(window_ts)

    def _deny(self, scope: str, retry_after: float, limit: float, remaining: float) -> AdmissionResult:
        RATE_LIMIT_DENIALS.labels(scope_kind=scope_kind(scope)).inc()
        logger.info("Rate limit denied for %s, retry after %.3fs", scope, retry_after)
        return AdmissionResult(
            admitted=False,
            retry_after=retry_after,
            scope=scope,
            limit=limit,
            remaining=remaining,
        )

    def evict_idle(self, max_idle_seconds: float) -> int:
        """Drop buckets untouched for ``max_idle_seconds``. Returns count evicted."""
        cutoff = self._clock() - max_idle_seconds
        stale = [
            key
            for key, bucket in self._buckets.items()
            if bucket.last_refill < cutoff and not bucket.lock.locked()
        ]
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug("Evicted %d idle rate limit buckets", len(stale))
        return len(stale)

    def get_stats(self, key: str) -> dict | None:
        """Current state of one bucket (refilled to now, not consumed)."""
        bucket = self._buckets.get(key)
        if bucket is None:
            return None
        bucket.refill(self._clock())
        return {
            "scope": key,
            "tokens": round(bucket.tokens, 6),
            "capacity": bucket.capacity,
            "refill_rate": bucket.refill_rate,
        }

    def get_all_stats(self) -> dict:
        stats: dict = {"buckets": [self.get_stats(k) for k in list(self._buckets)]}
        if self._window is not None:
            self._window._prune(self._clock())
            stats["window"] = {
                "count": self._window.count,
                "max_requests": self._window.rule.max_requests,
                "window_seconds": self._window.rule.window_seconds,
            }
        return stats
