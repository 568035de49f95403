"""Usage tracking: one immutable UsageRecord per gateway call.

The tracker is an injected service holding only a handle to a
``UsagePersistence`` collaborator. The in-memory persistence is the
reference implementation used by tests and embedding hosts.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Protocol

from llmgate.core.metrics import GATEWAY_REQUESTS, TOKENS_USED
from llmgate.gateway.pricing import estimate_cost
from llmgate.gateway.types import Outcome, ProviderId, TokenUsage, UsageRecord

logger = logging.getLogger(__name__)

GROUP_BY_FIELDS = ("provider", "feature", "model", "caller", "operation")


class UsagePersistence(Protocol):
    """Append-only sink for usage records."""

    async def append(self, record: UsageRecord) -> None: ...

    async def aggregate(self, start: datetime, end: datetime, group_by: str = "provider") -> list[dict]: ...


class InMemoryUsagePersistence:
    """Keeps records in a list. Not shared across processes."""

    def __init__(self):
        self.records: list[UsageRecord] = []

    async def append(self, record: UsageRecord) -> None:
        self.records.append(record)

    async def aggregate(self, start: datetime, end: datetime, group_by: str = "provider") -> list[dict]:
        """Totals per ``group_by`` value for records in [start, end)."""
        if group_by not in GROUP_BY_FIELDS:
            raise ValueError(f"group_by must be one of {GROUP_BY_FIELDS}, got {group_by!r}")

        buckets: dict[str, dict] = defaultdict(
            lambda: {
                "requests": 0,
                "prompt_tokens": 0,
                "completion_tokens": 0,
                "total_tokens": 0,
                "cost": 0.0,
                "cache_hits": 0,
                "errors": 0,
            }
        )
        for record in self.records:
            if not (start <= record.timestamp < end):
                continue
            row = buckets[getattr(record, group_by)]
            row["requests"] += 1
            row["prompt_tokens"] += record.prompt_tokens
            row["completion_tokens"] += record.completion_tokens
            row["total_tokens"] += record.total_tokens
            row["cost"] += record.cost_usd
            row["cache_hits"] += int(record.cache_hit)
            row["errors"] += int(record.outcome != Outcome.SUCCESS)

        return [
            {"key": key, **row, "cost": round(row["cost"], 8)}
            for key, row in sorted(buckets.items())
        ]


class UsageTracker:
    """Builds and persists usage records, one per call."""

    def __init__(self, persistence: UsagePersistence | None = None):
        self.persistence = persistence or InMemoryUsagePersistence()

    async def record(
        self,
        *,
        caller: str,
        provider: str,
        model: str,
        feature: str,
        operation: str,
        outcome: Outcome,
        usage: TokenUsage | None = None,
        cost_usd: float | None = None,
        cache_hit: bool = False,
        error_code: str = "",
        request_id: str = "",
        latency_ms: int = 0,
    ) -> UsageRecord:
        usage = usage or TokenUsage()
        if cost_usd is None:
            cost_usd = 0.0
            if usage.total_tokens and not cache_hit:
                try:
                    cost_usd = estimate_cost(ProviderId(provider), model, usage)
                except ValueError:
                    cost_usd = 0.0

        record = UsageRecord(
            caller=caller,
            provider=provider,
            model=model,
            feature=feature,
            operation=operation,
            outcome=outcome,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost_usd=cost_usd,
            cache_hit=cache_hit,
            error_code=error_code,
            request_id=request_id,
            latency_ms=latency_ms,
        )
        await self.persistence.append(record)

        GATEWAY_REQUESTS.labels(provider=provider or "none", operation=operation, outcome=outcome.value).inc()
        if not cache_hit and usage.total_tokens:
            TOKENS_USED.labels(provider=provider, kind="prompt").inc(usage.prompt_tokens)
            TOKENS_USED.labels(provider=provider, kind="completion").inc(usage.completion_tokens)

        logger.debug(
            "Usage recorded: %s %s/%s %s tokens=%d cost=%.6f cache_hit=%s",
            caller,
            provider,
            model,
            outcome.value,
            usage.total_tokens,
            cost_usd,
            cache_hit,
        )
        return record

    async def report(self, start: datetime, end: datetime, group_by: str = "provider") -> list[dict]:
        return await self.persistence.aggregate(start, end, group_by)
