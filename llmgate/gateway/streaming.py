"""Cancellable streaming responses.

A ``ResponseStream`` is an async iterator of ``StreamChunk`` values backed by
one open HTTP response. It finalizes exactly once: on the terminal chunk,
on a stream error, on ``aclose()``, or when the stream object is dropped
without being closed. Finalizing closes the connection and hands the
observed usage to the gateway's callback.

Usage:
    async with await gateway.stream(request, context) as stream:
        async for chunk in stream:
            print(chunk.content, end="")
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from llmgate.gateway.errors import GatewayError, ProviderConnectionError
from llmgate.gateway.normalizer import StreamParser, normalize_chunk
from llmgate.gateway.pricing import estimate_tokens
from llmgate.gateway.types import StreamChunk, TokenUsage
from llmgate.gateway.vendor_adapters import RawChunkSource

logger = logging.getLogger(__name__)

# Settle tasks for dropped streams; held here so they are not collected mid-run
_pending_settles: set[asyncio.Task] = set()


@dataclass(frozen=True)
class StreamOutcome:
    """What a finished stream produced."""

    content: str
    usage: TokenUsage
    usage_estimated: bool
    finish_reason: str | None
    completed: bool
    cancelled: bool = False
    error: GatewayError | None = None


class _StreamState:
    """Connection and accounting state of one stream.

    Kept apart from ``ResponseStream`` so the finalizer can settle it
    without holding a reference to the iterator itself.
    """

    def __init__(
        self,
        source: RawChunkSource,
        parser: StreamParser,
        on_finish: Callable[[StreamOutcome], Awaitable[None]],
        prompt_tokens_estimate: int,
        request_id: str,
    ):
        self.source = source
        self.parser = parser
        self.on_finish = on_finish
        self.prompt_tokens_estimate = prompt_tokens_estimate
        self.request_id = request_id
        self.lines: AsyncIterator[str] | None = None
        self.parts: list[str] = []
        self.finish_reason: str | None = None
        self.finished = False
        self.outcome: StreamOutcome | None = None

    @property
    def content(self) -> str:
        return "".join(self.parts)

    def observed_usage(self) -> tuple[TokenUsage, bool]:
        if self.parser.usage is not None:
            return self.parser.usage, False
        return TokenUsage.of(self.prompt_tokens_estimate, estimate_tokens(self.content)), True

    async def finish(
        self,
        completed: bool,
        cancelled: bool = False,
        error: GatewayError | None = None,
    ) -> None:
        if self.finished:
            return
        self.finished = True

        try:
            if self.lines is not None and hasattr(self.lines, "aclose"):
                await self.lines.aclose()
        finally:
            await self.source.aclose()

        usage, estimated = self.observed_usage()
        self.outcome = StreamOutcome(
            content=self.content,
            usage=usage,
            usage_estimated=estimated,
            finish_reason=self.finish_reason,
            completed=completed,
            cancelled=cancelled,
            error=error,
        )
        await self.on_finish(self.outcome)


def _settle_dropped(state: _StreamState, loop: asyncio.AbstractEventLoop) -> None:
    """Finalizer: a stream collected before finishing is settled as cancelled."""
    if state.finished or loop.is_closed():
        return
    logger.warning("Stream %s dropped without aclose(); settling as cancelled", state.request_id)

    def spawn() -> None:
        task = loop.create_task(state.finish(completed=False, cancelled=True))
        _pending_settles.add(task)
        task.add_done_callback(_pending_settles.discard)

    loop.call_soon_threadsafe(spawn)


class ResponseStream:
    """Async iterator over the chunks of one streamed response."""

    def __init__(
        self,
        source: RawChunkSource,
        parser: StreamParser,
        on_finish: Callable[[StreamOutcome], Awaitable[None]],
        prompt_tokens_estimate: int = 0,
        request_id: str = "",
    ):
        self._state = _StreamState(source, parser, on_finish, prompt_tokens_estimate, request_id)
        self.request_id = request_id
        weakref.finalize(self, _settle_dropped, self._state, asyncio.get_running_loop())

    @property
    def provider(self) -> str:
        return self._state.source.provider.value

    @property
    def model(self) -> str:
        return self._state.source.model

    @property
    def content(self) -> str:
        """Text emitted so far."""
        return self._state.content

    @property
    def finished(self) -> bool:
        return self._state.finished

    @property
    def outcome(self) -> StreamOutcome | None:
        return self._state.outcome

    def __aiter__(self) -> ResponseStream:
        return self

    async def __anext__(self) -> StreamChunk:
        state = self._state
        if state.finished:
            raise StopAsyncIteration
        if state.lines is None:
            state.lines = state.source.aiter_lines()

        while True:
            try:
                line = await state.lines.__anext__()
                chunk = normalize_chunk(state.parser, line)
            except StopAsyncIteration:
                error = ProviderConnectionError(
                    f"Stream from {self.provider} ended before completion",
                    provider=self.provider,
                )
                logger.warning("Stream %s truncated after %d chars", self.request_id, len(state.content))
                await state.finish(completed=False, error=error)
                raise error from None
            except GatewayError as e:
                await state.finish(completed=False, error=e)
                raise
            except asyncio.CancelledError:
                await state.finish(completed=False, cancelled=True)
                raise

            if chunk is None:
                continue
            if chunk.content:
                state.parts.append(chunk.content)
            if chunk.is_complete:
                state.finish_reason = chunk.finish_reason
                await state.finish(completed=True)
            return chunk

    async def aclose(self) -> None:
        """Stop reading and release the connection. Safe to call repeatedly."""
        if not self._state.finished:
            logger.info("Stream %s cancelled by caller", self.request_id)
            await self._state.finish(completed=False, cancelled=True)

    async def __aenter__(self) -> ResponseStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def collect(self) -> str:
        """Drain the stream and return the full text."""
        async for _ in self:
            pass
        return self.content
