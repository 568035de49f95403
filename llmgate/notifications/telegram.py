"""Telegram notification sink for quota events."""

from __future__ import annotations

import asyncio
import html
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from llmgate.gateway.quota import QuotaEvent

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org/bot{token}/sendMessage"


def _split_message(text: str, max_len: int = 4000) -> list[str]:
    """Split long message into chunks at newline boundaries."""
    if len(text) <= max_len:
        return [text]

    chunks = []
    while text:
        if len(text) <= max_len:
            chunks.append(text)
            break
        split_pos = text.rfind("\n", 0, max_len)
        if split_pos == -1:
            split_pos = max_len
        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip("\n")
    return chunks


def _retry_after(resp: httpx.Response) -> float:
    try:
        return float(resp.json().get("parameters", {}).get("retry_after", 5))
    except (ValueError, TypeError, AttributeError):
        return 5.0


async def send_telegram_message(
    text: str,
    bot_token: str,
    chat_id: str,
    parse_mode: str = "HTML",
    transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> bool:
    """Send a message via Telegram Bot API. Splits if too long.

    Returns True when every chunk was accepted.
    """
    if not bot_token or not chat_id:
        logger.info("Telegram: no bot token or chat_id, skipping")
        return False

    url = TELEGRAM_API.format(token=bot_token)
    ok = True

    async with httpx.AsyncClient(timeout=15, transport=transport) as client:
        for chunk in _split_message(text, 4000):
            payload = {"chat_id": chat_id, "text": chunk, "parse_mode": parse_mode}
            try:
                resp = await client.post(url, json=payload)
                if resp.status_code == 429:
                    retry_after = _retry_after(resp)
                    logger.warning("Telegram rate limit, retry after %ds", retry_after)
                    await sleep(retry_after)
                    resp = await client.post(url, json=payload)
                if resp.status_code != 200:
                    logger.error("Telegram send failed (%d): %s", resp.status_code, resp.text)
                    ok = False
            except httpx.HTTPError as e:
                logger.error("Telegram send error: %s", e)
                ok = False
    return ok


def format_quota_event(event: QuotaEvent) -> str:
    """Format a quota event as HTML for Telegram."""
    title = "Quota exceeded" if event.kind == "exceeded" else f"Quota {event.threshold}% reached"
    lines = [
        f"<b>{html.escape(title)}</b>",
        f"Scope: <code>{html.escape(event.scope)}</code>",
        f"Type: {event.quota_type.value} ({event.period.value})",
        f"Used: {event.used:g} / {event.limit:g}",
        f"Resets: {event.reset_at:%Y-%m-%d %H:%M} UTC",
    ]
    return "\n".join(lines)


class TelegramNotificationSink:
    """Sends quota events to a Telegram chat.

    Delivery runs in background tasks owned by the sink, so a slow or
    rate-limited Bot API never holds up the request that crossed a quota.
    ``aclose()`` waits for deliveries still in flight.
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._transport = transport
        self._sleep = sleep
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def notify(self, event: QuotaEvent) -> None:
        task = asyncio.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: QuotaEvent) -> None:
        sent = await send_telegram_message(
            format_quota_event(event),
            self.bot_token,
            self.chat_id,
            transport=self._transport,
            sleep=self._sleep,
        )
        if sent:
            logger.info("Telegram quota notification sent for %s", event.scope)

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending)
