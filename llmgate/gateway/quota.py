"""Quota Manager — budget quotas with reserve / confirm / release.

Levels are resolved caller → group → site → global. Every level with a
configured limit must have room for the requested amount; a reservation
either holds all levels or none.

Each (scope, quota type) keeps one row per period. Rows roll over lazily on
first access after the period ends; old rows stay for ``history()``.

Notifications (once per period per row):
  - threshold events at 50/80/90/100 % of the limit
  - one ``exceeded`` event on the first denial
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

from llmgate.core.config import Settings
from llmgate.core.metrics import QUOTA_DENIALS, scope_kind
from llmgate.gateway.errors import QuotaExceeded
from llmgate.notifications.base import close_sink

if TYPE_CHECKING:
    from llmgate.notifications.base import NotificationSink

logger = logging.getLogger(__name__)


class QuotaType(str, Enum):
    REQUESTS = "requests"
    TOKENS = "tokens"
    COST = "cost"


class QuotaLevel(str, Enum):
    CALLER = "caller"
    GROUP = "group"
    SITE = "site"
    GLOBAL = "global"


class QuotaPeriod(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    def window(self, now: datetime) -> tuple[datetime, datetime]:
        """UTC calendar window [start, end) containing ``now``. Weeks start Monday."""
        now = now.astimezone(timezone.utc)
        if self == QuotaPeriod.HOUR:
            start = now.replace(minute=0, second=0, microsecond=0)
            return start, start + timedelta(hours=1)
        day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self == QuotaPeriod.DAY:
            return day, day + timedelta(days=1)
        if self == QuotaPeriod.WEEK:
            start = day - timedelta(days=day.weekday())
            return start, start + timedelta(days=7)
        start = day.replace(day=1)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end


DEFAULT_PERIODS: dict[QuotaType, QuotaPeriod] = {
    QuotaType.REQUESTS: QuotaPeriod.DAY,
    QuotaType.TOKENS: QuotaPeriod.DAY,
    QuotaType.COST: QuotaPeriod.MONTH,
}

DEFAULT_THRESHOLDS = (50, 80, 90, 100)


@dataclass(frozen=True)
class QuotaSubject:
    """Who a reservation is charged to."""

    caller_id: str
    group_id: str | None = None
    site_id: str | None = None

    def scope_keys(self) -> list[tuple[QuotaLevel, str]]:
        keys = [(QuotaLevel.CALLER, f"caller:{self.caller_id}")]
        if self.group_id:
            keys.append((QuotaLevel.GROUP, f"group:{self.group_id}"))
        if self.site_id:
            keys.append((QuotaLevel.SITE, f"site:{self.site_id}"))
        keys.append((QuotaLevel.GLOBAL, "global"))
        return keys


@dataclass(frozen=True)
class QuotaPolicy:
    """A limit for one level and quota type.

    ``scope_id`` narrows the policy to one id (e.g. caller "alice");
    ``None`` applies it to every id at that level.
    """

    level: QuotaLevel
    quota_type: QuotaType
    limit: float
    period: QuotaPeriod | None = None
    scope_id: str | None = None

    @property
    def effective_period(self) -> QuotaPeriod:
        return self.period or DEFAULT_PERIODS[self.quota_type]


@dataclass
class Quota:
    """Usage row for one scope, quota type and period."""

    scope: str
    quota_type: QuotaType
    period: QuotaPeriod
    period_start: datetime
    period_end: datetime
    limit: float
    used: float = 0.0
    reserved: float = 0.0
    exceeded: bool = False
    notified_thresholds: set[int] = field(default_factory=set)
    exceeded_notified: bool = False

    @property
    def available(self) -> float:
        return self.limit - self.used - self.reserved

    @property
    def percent_used(self) -> float:
        return (self.used / self.limit * 100) if self.limit > 0 else 0.0

    def has_room(self, amount: float) -> bool:
        return not self.exceeded and self.available >= amount

    def to_dict(self) -> dict:
        return {
            "scope": self.scope,
            "quota_type": self.quota_type.value,
            "period": self.period.value,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "limit": self.limit,
            "used": round(self.used, 8),
            "reserved": round(self.reserved, 8),
            "available": round(max(self.available, 0.0), 8),
            "percent_used": round(self.percent_used, 2),
            "exceeded": self.exceeded,
        }


class ReservationState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    RELEASED = "released"


@dataclass
class Reservation:
    """Provisional deduction held on one or more quota rows."""

    quota_type: QuotaType
    amount: float
    quotas: list[Quota]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: ReservationState = ReservationState.PENDING


@dataclass(frozen=True)
class QuotaDenial:
    """Why a reservation was refused."""

    scope: str
    quota_type: QuotaType
    used: float
    limit: float
    requested: float
    reset_at: datetime

    def to_error(self) -> QuotaExceeded:
        return QuotaExceeded(
            f"{self.quota_type.value} quota exceeded for {self.scope}: "
            f"used {self.used:g} of {self.limit:g}, requested {self.requested:g}",
            scope=self.scope,
            quota_type=self.quota_type.value,
            used=self.used,
            limit=self.limit,
            reset_at=self.reset_at,
            requested=self.requested,
        )


@dataclass(frozen=True)
class QuotaEvent:
    """Notification payload for threshold crossings and exceeded quotas."""

    kind: str  # "threshold" | "exceeded"
    scope: str
    quota_type: QuotaType
    period: QuotaPeriod
    used: float
    limit: float
    reset_at: datetime
    threshold: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def message(self) -> str:
        if self.kind == "exceeded":
            return (
                f"Quota exceeded: {self.scope} {self.quota_type.value} "
                f"({self.used:g}/{self.limit:g}), resets {self.reset_at:%Y-%m-%d %H:%M} UTC"
            )
        return (
            f"Quota {self.threshold}% reached: {self.scope} {self.quota_type.value} "
            f"({self.used:g}/{self.limit:g}) for this {self.period.value}"
        )

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "scope": self.scope,
            "quota_type": self.quota_type.value,
            "period": self.period.value,
            "threshold": self.threshold,
            "used": self.used,
            "limit": self.limit,
            "reset_at": self.reset_at.isoformat(),
            "timestamp": self.timestamp.isoformat(),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotaManager:
    """Multi-level quota enforcement with reservations.

    Usage:
        manager = QuotaManager([QuotaPolicy(QuotaLevel.CALLER, QuotaType.COST, 10.0)])

        result = await manager.check_and_reserve(subject, QuotaType.COST, 0.25)
        if isinstance(result, QuotaDenial):
            raise result.to_error()
        ...
        await manager.confirm(result, actual_amount=0.18)   # or release(result)
    """

    def __init__(
        self,
        policies: list[QuotaPolicy] | None = None,
        sink: NotificationSink | None = None,
        thresholds: tuple[int, ...] | list[int] = DEFAULT_THRESHOLDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._policies = [p for p in policies or [] if p.limit > 0]  # 0 means unlimited
        self._sink = sink
        self._thresholds = tuple(sorted(thresholds))
        self._clock = clock
        self._rows: dict[tuple[str, QuotaType], list[Quota]] = {}
        self._locks: dict[tuple[str, QuotaType], asyncio.Lock] = {}

    @classmethod
    def from_settings(
        cls,
        cfg: Settings,
        sink: NotificationSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> QuotaManager:
        policies = []
        for key, limit in cfg.quota_limits.items():
            level, _, quota_type = key.partition(":")
            qtype = QuotaType(quota_type)
            period = cfg.quota_periods.get(quota_type)
            policies.append(
                QuotaPolicy(
                    level=QuotaLevel(level),
                    quota_type=qtype,
                    limit=limit,
                    period=QuotaPeriod(period) if period else None,
                )
            )
        return cls(policies, sink=sink, thresholds=cfg.quota_thresholds, clock=clock)

    @property
    def has_policies(self) -> bool:
        return bool(self._policies)

    def configured_types(self) -> set[QuotaType]:
        return {p.quota_type for p in self._policies}

    # -- row management --------------------------------------------------------

    def _policy_for(self, level: QuotaLevel, scope_key: str, quota_type: QuotaType) -> QuotaPolicy | None:
        scope_id = scope_key.split(":", 1)[1] if ":" in scope_key else None
        generic = None
        for policy in self._policies:
            if policy.level != level or policy.quota_type != quota_type:
                continue
            if policy.scope_id is not None and policy.scope_id == scope_id:
                return policy
            if policy.scope_id is None:
                generic = policy
        return generic

    def _lock(self, key: tuple[str, QuotaType]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _current_row(self, scope_key: str, policy: QuotaPolicy) -> Quota:
        """Current-period row, rolling over lazily when the period has ended."""
        now = self._clock()
        rows = self._rows.setdefault((scope_key, policy.quota_type), [])
        if rows and now < rows[-1].period_end:
            return rows[-1]
        start, end = policy.effective_period.window(now)
        row = Quota(
            scope=scope_key,
            quota_type=policy.quota_type,
            period=policy.effective_period,
            period_start=start,
            period_end=end,
            limit=policy.limit,
        )
        if rows:
            logger.info("Quota %s/%s rolled over to %s", scope_key, policy.quota_type.value, start.isoformat())
        rows.append(row)
        return row

    # -- public API ----------------------------------------------------------------

    async def check_and_reserve(
        self,
        subject: QuotaSubject,
        quota_type: QuotaType,
        amount: float,
    ) -> Reservation | QuotaDenial:
        """Reserve ``amount`` at every limited level, or deny without side effects."""
        held: list[Quota] = []

        for level, scope_key in subject.scope_keys():
            policy = self._policy_for(level, scope_key, quota_type)
            if policy is None:
                continue
            async with self._lock((scope_key, quota_type)):
                row = self._current_row(scope_key, policy)
                if row.has_room(amount):
                    row.reserved += amount
                    held.append(row)
                    continue
                denial = QuotaDenial(
                    scope=scope_key,
                    quota_type=quota_type,
                    used=row.used,
                    limit=row.limit,
                    requested=amount,
                    reset_at=row.period_end,
                )
                notify_exceeded = not row.exceeded_notified
                row.exceeded_notified = True

            await self._rollback(held, amount)
            QUOTA_DENIALS.labels(quota_type=quota_type.value, scope_kind=scope_kind(scope_key)).inc()
            logger.warning(
                "Quota denied: %s %s used=%g reserved=%g limit=%g requested=%g",
                scope_key,
                quota_type.value,
                row.used,
                row.reserved,
                row.limit,
                amount,
            )
            if notify_exceeded:
                await self._notify(
                    QuotaEvent(
                        kind="exceeded",
                        scope=scope_key,
                        quota_type=quota_type,
                        period=row.period,
                        used=row.used,
                        limit=row.limit,
                        reset_at=row.period_end,
                    )
                )
            return denial

        return Reservation(quota_type=quota_type, amount=amount, quotas=held)

    async def reserve_all(
        self,
        subject: QuotaSubject,
        amounts: dict[QuotaType, float],
    ) -> list[Reservation] | QuotaDenial:
        """Reserve several quota types together; a denial releases the others."""
        reservations: list[Reservation] = []
        for quota_type, amount in amounts.items():
            result = await self.check_and_reserve(subject, quota_type, amount)
            if isinstance(result, QuotaDenial):
                for reservation in reservations:
                    await self.release(reservation)
                return result
            reservations.append(result)
        return reservations

    async def confirm(self, reservation: Reservation, actual_amount: float | None = None) -> None:
        """Turn a reservation into usage. A second call is a no-op."""
        if reservation.state != ReservationState.PENDING:
            return
        reservation.state = ReservationState.CONFIRMED
        actual = reservation.amount if actual_amount is None else max(actual_amount, 0.0)

        events: list[QuotaEvent] = []
        for row in reservation.quotas:
            async with self._lock((row.scope, row.quota_type)):
                row.reserved = max(row.reserved - reservation.amount, 0.0)
                row.used += actual
                if row.used >= row.limit and not row.exceeded:
                    row.exceeded = True
                    logger.warning("Quota %s/%s reached its limit", row.scope, row.quota_type.value)
                events.extend(self._threshold_events(row))

        for event in events:
            await self._notify(event)

    async def release(self, reservation: Reservation) -> None:
        """Undo a reservation. A second call (or a call after confirm) is a no-op."""
        if reservation.state != ReservationState.PENDING:
            return
        reservation.state = ReservationState.RELEASED
        await self._rollback(reservation.quotas, reservation.amount)

    def status(self, subject: QuotaSubject) -> list[dict]:
        """Current-period snapshot for every limited level and type of ``subject``."""
        snapshot = []
        for level, scope_key in subject.scope_keys():
            for quota_type in QuotaType:
                policy = self._policy_for(level, scope_key, quota_type)
                if policy is not None:
                    snapshot.append(self._current_row(scope_key, policy).to_dict())
        return snapshot

    def history(self, scope_key: str, quota_type: QuotaType | None = None) -> list[Quota]:
        """All retained period rows for a scope, oldest first."""
        rows: list[Quota] = []
        for (key, qtype), period_rows in self._rows.items():
            if key == scope_key and (quota_type is None or qtype == quota_type):
                rows.extend(period_rows)
        return sorted(rows, key=lambda r: (r.quota_type.value, r.period_start))

    # -- internals ---------------------------------------------------------------

    async def _rollback(self, rows: list[Quota], amount: float) -> None:
        for row in rows:
            async with self._lock((row.scope, row.quota_type)):
                row.reserved = max(row.reserved - amount, 0.0)

    def _threshold_events(self, row: Quota) -> list[QuotaEvent]:
        events = []
        percent = row.percent_used
        for threshold in self._thresholds:
            if percent >= threshold and threshold not in row.notified_thresholds:
                row.notified_thresholds.add(threshold)
                events.append(
                    QuotaEvent(
                        kind="threshold",
                        scope=row.scope,
                        quota_type=row.quota_type,
                        period=row.period,
                        used=row.used,
                        limit=row.limit,
                        reset_at=row.period_end,
                        threshold=threshold,
                    )
                )
        return events

    async def aclose(self) -> None:
        """Let the notification sink finish deliveries still in flight."""
        if self._sink is not None:
            await close_sink(self._sink)

    async def _notify(self, event: QuotaEvent) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.notify(event)
        except Exception:
            logger.exception("Quota notification failed for %s", event.scope)
