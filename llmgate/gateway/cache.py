"""Response cache layer.

Fingerprints canonical requests, decides cacheability and stores normalized
payloads (Response / EmbeddingResult dicts) in a backend.

Two backends:
- In-memory LRU with TTL (default, for dev/testing)
- Redis (for production across processes and restarts)
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from llmgate.core.config import Settings
from llmgate.core.metrics import CACHE_LOOKUPS
from llmgate.gateway.types import CallContext, Operation, Request

logger = logging.getLogger(__name__)

# Keys that change between otherwise identical calls
NON_DETERMINISTIC_KEYS = frozenset(
    {"callback", "stream_callback", "timestamp", "request_id", "timeout", "user_id", "user", "stream"}
)

DAY = 86_400
DEFAULT_TTLS: dict[str, int] = {
    "embeddings": 30 * DAY,
    "vision": 7 * DAY,
    "translation": 30 * DAY,
    "completion": 3600,
    "chat": 300,
}
DEFAULT_TTL = 3600
DEFAULT_TEMPERATURE_CEILING = 0.9


# ---------------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------------


def normalize_text(text: str) -> str:
    """Trim and unify line endings so formatting noise doesn't change the key."""
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def _canonical(value: Any) -> Any:
    """Recursively normalize numbers and text; keys and values are kept as given."""
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return normalize_text(value)
    return value


def _deterministic_options(options: dict) -> dict:
    """Drop volatile keys from the option bag and its ``extra`` mapping.

    Only the top level of each is filtered; nested option values such as a
    JSON schema are hashed exactly.
    """
    kept = {k: v for k, v in options.items() if k not in NON_DETERMINISTIC_KEYS and v is not None}
    extra = kept.get("extra")
    if isinstance(extra, dict):
        kept["extra"] = {k: v for k, v in extra.items() if k not in NON_DETERMINISTIC_KEYS and v is not None}
    return kept


def fingerprint(request: Request, provider: str, model: str) -> str:
    """Deterministic SHA-256 key over operation, provider, model and canonical payload."""
    options = _deterministic_options(request.options.to_dict())
    payload = {
        "operation": request.operation.value,
        "provider": provider,
        "model": model,
        "system": request.system,
        "messages": [m.to_dict() for m in request.messages],
        "input": list(request.input),
        "options": options,
    }
    raw = json.dumps(_canonical(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class CachePolicy:
    """Decides whether a request may be cached and for how long."""

    def __init__(
        self,
        enabled: bool = True,
        temperature_ceiling: float = DEFAULT_TEMPERATURE_CEILING,
        ttl_overrides: dict[str, int] | None = None,
    ):
        self.enabled = enabled
        self.temperature_ceiling = temperature_ceiling
        self.ttls = {**DEFAULT_TTLS, **(ttl_overrides or {})}

    def ttl_for(self, feature: str) -> int:
        return self.ttls.get(feature, DEFAULT_TTL)

    def is_cacheable(self, request: Request, context: CallContext) -> bool:
        if not self.enabled or not context.use_cache:
            return False
        if request.operation == Operation.STREAM:
            return False
        temperature = request.temperature
        if temperature is not None and temperature > self.temperature_ceiling:
            return False
        return self.ttl_for(context.feature_for(request.operation)) > 0


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class CacheBackend(Protocol):
    async def get(self, key: str) -> dict | None: ...

    async def set(self, key: str, value: dict, ttl: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...

    async def aclose(self) -> None: ...


@dataclass
class _Entry:
    value: dict
    expires_at: float
    created_at: float


class InMemoryCacheBackend:
    """Bounded LRU cache with per-entry TTL."""

    def __init__(self, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic):
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> dict | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry.value

    async def set(self, key: str, value: dict, ttl: int) -> None:
        now = self._clock()
        self._entries[key] = _Entry(value=value, expires_at=now + ttl, created_at=now)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> None:
        self._entries.clear()

    async def aclose(self) -> None:
        return None


class RedisCacheBackend:
    """Redis backend: JSON values written with SETEX.

    Redis failures degrade to cache misses; the provider call still happens.
    """

    def __init__(self, redis_url: str = "", key_prefix: str = "llmgate:cache:", client: Any = None):
        self._redis = client or aioredis.from_url(redis_url, decode_responses=True)
        self._prefix = key_prefix

    async def get(self, key: str) -> dict | None:
        try:
            raw = await self._redis.get(self._prefix + key)
        except RedisError as e:
            logger.warning("Redis cache get failed: %s", e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Dropping undecodable cache entry %s", key[:16])
            await self.delete(key)
            return None

    async def set(self, key: str, value: dict, ttl: int) -> None:
        try:
            await self._redis.setex(self._prefix + key, ttl, json.dumps(value, ensure_ascii=False))
        except RedisError as e:
            logger.warning("Redis cache set failed: %s", e)

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._prefix + key)
        except RedisError as e:
            logger.warning("Redis cache delete failed: %s", e)

    async def clear(self) -> None:
        try:
            async for redis_key in self._redis.scan_iter(match=f"{self._prefix}*"):
                await self._redis.delete(redis_key)
        except RedisError as e:
            logger.warning("Redis cache clear failed: %s", e)

    async def aclose(self) -> None:
        await self._redis.aclose()


# ---------------------------------------------------------------------------
# Cache layer
# ---------------------------------------------------------------------------


@dataclass
class _Flight:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


class ResponseCache:
    """Cache layer used by the gateway."""

    def __init__(
        self,
        backend: CacheBackend | None = None,
        policy: CachePolicy | None = None,
        single_flight: bool = False,
    ):
        self.backend = backend or InMemoryCacheBackend()
        self.policy = policy or CachePolicy()
        self.single_flight = single_flight
        self._inflight: dict[str, _Flight] = {}
        self.hits = 0
        self.misses = 0
        self.stores = 0

    @classmethod
    def from_settings(cls, cfg: Settings) -> ResponseCache:
        if cfg.cache_backend == "redis":
            backend: CacheBackend = RedisCacheBackend(cfg.redis_url, key_prefix=cfg.cache_key_prefix)
        else:
            backend = InMemoryCacheBackend(max_entries=cfg.cache_max_entries)
        policy = CachePolicy(
            enabled=cfg.cache_enabled,
            temperature_ceiling=cfg.cache_temperature_ceiling,
            ttl_overrides=cfg.cache_ttl_overrides,
        )
        return cls(backend, policy, single_flight=cfg.cache_single_flight)

    def key_for(self, request: Request, provider: str, model: str) -> str:
        return fingerprint(request, provider, model)

    async def get(self, key: str) -> dict | None:
        value = await self.backend.get(key)
        if value is None:
            self.misses += 1
            CACHE_LOOKUPS.labels(result="miss").inc()
            logger.debug("Cache MISS for key %s", key[:16])
        else:
            self.hits += 1
            CACHE_LOOKUPS.labels(result="hit").inc()
            logger.debug("Cache HIT for key %s", key[:16])
        return value

    async def set(self, key: str, payload: dict, ttl: int) -> None:
        if ttl <= 0:
            return
        await self.backend.set(key, payload, ttl)
        self.stores += 1

    @asynccontextmanager
    async def flight(self, key: str) -> AsyncIterator[None]:
        """Serialize identical misses when single-flight is on; no-op otherwise."""
        if not self.single_flight:
            yield
            return
        entry = self._inflight.get(key)
        if entry is None:
            entry = self._inflight[key] = _Flight()
        entry.waiters += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.waiters -= 1
            if entry.waiters == 0:
                self._inflight.pop(key, None)

    def stats(self) -> dict:
        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stores": self.stores,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
            "backend": type(self.backend).__name__,
            "single_flight": self.single_flight,
        }

    async def aclose(self) -> None:
        await self.backend.aclose()
