"""Notification Sink interface and simple in-process sinks."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from llmgate.gateway.quota import QuotaEvent

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(self, event: QuotaEvent) -> None: ...


class LoggingNotificationSink:
    """Writes quota events to the log."""

    async def notify(self, event: QuotaEvent) -> None:
        if event.kind == "exceeded":
            logger.warning(event.message)
        else:
            logger.info(event.message)


class InMemoryNotificationSink:
    """Collects events in a list (tests, dashboards)."""

    def __init__(self):
        self.events: list[QuotaEvent] = []

    async def notify(self, event: QuotaEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: str) -> list[QuotaEvent]:
        return [e for e in self.events if e.kind == kind]


class FanOutNotificationSink:
    """Delivers each event to several sinks in order."""

    def __init__(self, sinks: list[NotificationSink]):
        self.sinks = list(sinks)

    async def notify(self, event: QuotaEvent) -> None:
        for sink in self.sinks:
            await sink.notify(event)

    async def aclose(self) -> None:
        await close_sink(*self.sinks)


async def close_sink(*sinks: NotificationSink) -> None:
    """Close sinks that hold background work; plain sinks have nothing to close."""
    for sink in sinks:
        aclose = getattr(sink, "aclose", None)
        if aclose is not None:
            await aclose()
