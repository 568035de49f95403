"""Response Normalizer — turns provider bodies into canonical DTOs.

Whole responses are dispatched by provider to one of four format parsers:
  - chat-message shaped (OpenAI and compatibles), with legacy ``choices[].text``
  - content-block shaped (Anthropic)
  - candidates/parts shaped (Gemini)
  - Ollama shaped (``message.content`` or ``response``)

Streaming uses one stateful parser per stream. ``feed()`` returns a chunk,
or ``None`` meaning "nothing to emit yet, keep reading". The terminal chunk
is the only one with ``is_complete=True``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from llmgate.gateway.errors import MalformedResponseError, ProviderRejected
from llmgate.gateway.types import (
    EmbeddingResult,
    ProviderId,
    RawProviderResponse,
    Response,
    StreamChunk,
    TokenUsage,
    ToolCall,
)

logger = logging.getLogger(__name__)

_EXCERPT_LEN = 300

# Provider vocabulary → canonical finish reason
_FINISH_REASONS = {
    "stop": "stop",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "eos": "stop",
    "length": "length",
    "max_tokens": "length",
    "model_length": "length",
    "content_filter": "content_filter",
    "safety": "content_filter",
    "recitation": "content_filter",
    "blocklist": "content_filter",
    "prohibited_content": "content_filter",
    "spii": "content_filter",
    "refusal": "content_filter",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "tool_use": "tool_use",
}


def map_finish_reason(value: Any) -> str:
    if not value:
        return "stop"
    raw = str(value).lower()
    return _FINISH_REASONS.get(raw, raw)


def _excerpt(body: Any) -> str:
    try:
        text = json.dumps(body, ensure_ascii=False)
    except (TypeError, ValueError):
        text = str(body)
    return text[:_EXCERPT_LEN]


def _malformed(provider: ProviderId, what: str, body: Any) -> MalformedResponseError:
    logger.warning("Malformed %s response: %s", provider.value, what)
    return MalformedResponseError(
        f"{provider.value} response missing {what}",
        provider=provider.value,
        body_excerpt=_excerpt(body),
    )


def _dig(obj: Any, *path: Any) -> Any:
    """Walk nested dicts/lists, returning None on any missing step."""
    for step in path:
        if isinstance(step, int):
            if not isinstance(obj, list) or len(obj) <= step:
                return None
        elif not isinstance(obj, dict):
            return None
        obj = obj[step] if isinstance(step, int) else obj.get(step)
    return obj


def _metadata(body: dict, raw: RawProviderResponse, **more: Any) -> dict:
    meta: dict[str, Any] = {"latency_ms": raw.latency_ms}
    if body.get("id"):
        meta["id"] = body["id"]
    meta.update({k: v for k, v in more.items() if v is not None})
    return meta


# ---------------------------------------------------------------------------
# Whole-response format parsers
# ---------------------------------------------------------------------------


def _parse_chat_shaped(raw: RawProviderResponse) -> Response:
    body = raw.body
    choice = _dig(body, "choices", 0)
    if not isinstance(choice, dict):
        raise _malformed(raw.provider, "choices[0]", body)

    message = choice.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if content is None and isinstance(choice.get("text"), str):
        # Legacy completions shape
        content = choice["text"]
    tool_calls = tuple(
        ToolCall.of(call.get("id", ""), _dig(call, "function", "name") or "", _dig(call, "function", "arguments"))
        for call in (_dig(message, "tool_calls") or [])
        if isinstance(call, dict)
    )
    if content is None and tool_calls:
        content = ""
    if not isinstance(content, str):
        raise _malformed(raw.provider, "choices[0].message.content", body)

    usage = body.get("usage") or {}
    return Response(
        content=content,
        usage=TokenUsage.of(usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens")),
        finish_reason=map_finish_reason(choice.get("finish_reason")),
        provider=raw.provider.value,
        model=body.get("model") or raw.model,
        metadata=_metadata(body, raw),
        tool_calls=tool_calls,
    )


def _parse_content_blocks(raw: RawProviderResponse) -> Response:
    body = raw.body
    blocks = body.get("content") if isinstance(body, dict) else None
    if not isinstance(blocks, list):
        raise _malformed(raw.provider, "content blocks", body)

    texts = [b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type", "text") == "text"]
    tool_calls = tuple(
        ToolCall.of(b.get("id", ""), b.get("name", ""), b.get("input"))
        for b in blocks
        if isinstance(b, dict) and b.get("type") == "tool_use"
    )
    if not texts and not tool_calls:
        raise _malformed(raw.provider, "content[].text", body)

    usage = body.get("usage") or {}
    return Response(
        content="".join(texts),
        usage=TokenUsage.of(usage.get("input_tokens"), usage.get("output_tokens")),
        finish_reason=map_finish_reason(body.get("stop_reason")),
        provider=raw.provider.value,
        model=body.get("model") or raw.model,
        metadata=_metadata(body, raw),
        tool_calls=tool_calls,
    )


def _parse_candidates(raw: RawProviderResponse) -> Response:
    body = raw.body
    if not isinstance(body, dict):
        raise _malformed(raw.provider, "candidates", body)

    candidate = _dig(body, "candidates", 0)
    if not isinstance(candidate, dict):
        block_reason = _dig(body, "promptFeedback", "blockReason")
        if block_reason:
            logger.warning("Gemini blocked prompt: %s", block_reason)
            raise ProviderRejected(
                f"Prompt blocked by {raw.provider.value}: {block_reason}",
                provider=raw.provider.value,
                status_code=raw.status_code,
                error_type="content_filter",
            )
        raise _malformed(raw.provider, "candidates[0]", body)

    finish_reason = map_finish_reason(candidate.get("finishReason"))
    parts = _dig(candidate, "content", "parts")
    texts = [p["text"] for p in parts or [] if isinstance(p, dict) and isinstance(p.get("text"), str)]
    # Gemini function calls carry no id; the call index stands in for one
    calls = [p["functionCall"] for p in parts or [] if isinstance(p, dict) and isinstance(p.get("functionCall"), dict)]
    tool_calls = tuple(
        ToolCall.of(call.get("id") or f"call_{i}", call.get("name", ""), call.get("args"))
        for i, call in enumerate(calls)
    )
    if tool_calls and finish_reason == "stop":
        finish_reason = "tool_use"
    if not texts and not tool_calls and finish_reason != "content_filter":
        raise _malformed(raw.provider, "candidates[0].content.parts[].text", body)

    usage = body.get("usageMetadata") or {}
    return Response(
        content="".join(texts),
        usage=TokenUsage.of(
            usage.get("promptTokenCount"),
            usage.get("candidatesTokenCount"),
            usage.get("totalTokenCount"),
        ),
        finish_reason=finish_reason,
        provider=raw.provider.value,
        model=body.get("modelVersion") or raw.model,
        metadata=_metadata(body, raw, safety_ratings=candidate.get("safetyRatings")),
        tool_calls=tool_calls,
    )


def _parse_ollama(raw: RawProviderResponse) -> Response:
    body = raw.body
    if not isinstance(body, dict):
        raise _malformed(raw.provider, "message", body)

    content = _dig(body, "message", "content")
    if content is None:
        # /api/generate shape
        content = body.get("response")
    if not isinstance(content, str):
        raise _malformed(raw.provider, "message.content", body)

    return Response(
        content=content,
        usage=TokenUsage.of(body.get("prompt_eval_count"), body.get("eval_count")),
        finish_reason=map_finish_reason(body.get("done_reason")),
        provider=raw.provider.value,
        model=body.get("model") or raw.model,
        metadata=_metadata(body, raw),
    )


_RESPONSE_PARSERS: dict[ProviderId, Callable[[RawProviderResponse], Response]] = {
    ProviderId.OPENAI: _parse_chat_shaped,
    ProviderId.MISTRAL: _parse_chat_shaped,
    ProviderId.GROQ: _parse_chat_shaped,
    ProviderId.OPENROUTER: _parse_chat_shaped,
    ProviderId.DEEPSEEK: _parse_chat_shaped,
    ProviderId.ANTHROPIC: _parse_content_blocks,
    ProviderId.GEMINI: _parse_candidates,
    ProviderId.OLLAMA: _parse_ollama,
}


# ---------------------------------------------------------------------------
# Embedding parsers
# ---------------------------------------------------------------------------


def _vector(values: Any) -> tuple[float, ...]:
    return tuple(float(x) for x in values)


def _parse_embeddings(raw: RawProviderResponse) -> tuple[list[tuple[float, ...]], TokenUsage]:
    body = raw.body
    if not isinstance(body, dict):
        raise _malformed(raw.provider, "embeddings", body)

    # OpenAI-shaped: data[] with index
    if isinstance(body.get("data"), list):
        items = sorted(body["data"], key=lambda d: d.get("index", 0))
        vectors = [_vector(d["embedding"]) for d in items if isinstance(d, dict) and "embedding" in d]
        usage = body.get("usage") or {}
        return vectors, TokenUsage.of(usage.get("prompt_tokens"), 0, usage.get("total_tokens"))

    # Gemini single / batch
    if isinstance(_dig(body, "embedding", "values"), list):
        return [_vector(body["embedding"]["values"])], TokenUsage()
    if isinstance(body.get("embeddings"), list) and body["embeddings"] and isinstance(body["embeddings"][0], dict):
        return [_vector(e.get("values", [])) for e in body["embeddings"]], TokenUsage()

    # Ollama /api/embed (and legacy /api/embeddings)
    if isinstance(body.get("embeddings"), list):
        return [_vector(v) for v in body["embeddings"]], TokenUsage.of(body.get("prompt_eval_count"), 0)
    if isinstance(body.get("embedding"), list):
        return [_vector(body["embedding"])], TokenUsage.of(body.get("prompt_eval_count"), 0)

    raise _malformed(raw.provider, "embedding vectors", body)


# ---------------------------------------------------------------------------
# Streaming parsers
# ---------------------------------------------------------------------------


class StreamParser:
    """Base class for stateful line parsers."""

    def __init__(self, provider: ProviderId):
        self.provider = provider
        self.done = False
        self.usage: TokenUsage | None = None

    def feed(self, line: str) -> StreamChunk | None:
        if self.done:
            return None
        return self._feed(line.strip())

    def _feed(self, line: str) -> StreamChunk | None:
        raise NotImplementedError

    def _decode(self, data: str) -> dict:
        try:
            obj = json.loads(data)
        except ValueError:
            raise _malformed(self.provider, "valid JSON stream frame", data) from None
        if not isinstance(obj, dict):
            raise _malformed(self.provider, "JSON object stream frame", data)
        return obj

    def _raise_stream_error(self, error: Any) -> None:
        message = error.get("message") if isinstance(error, dict) else str(error)
        error_type = str(error.get("type") or error.get("code") or "") if isinstance(error, dict) else ""
        logger.warning("%s stream error: %s", self.provider.value, message)
        raise ProviderRejected(
            f"{self.provider.value} stream error: {message}",
            provider=self.provider.value,
            error_type=error_type or "stream_error",
        )

    def _complete(self, content: str = "", finish_reason: Any = None) -> StreamChunk:
        self.done = True
        return StreamChunk(
            content=content,
            is_complete=True,
            finish_reason=map_finish_reason(finish_reason),
            usage=self.usage,
        )


def _sse_data(line: str) -> str | None:
    """Payload of a ``data:`` line; None for blanks, comments and other fields."""
    if not line or line.startswith(":") or not line.startswith("data:"):
        return None
    return line[len("data:") :].strip()


class ChatStreamParser(StreamParser):
    """OpenAI-style SSE: ``data: {...}`` frames terminated by ``data: [DONE]``."""

    def __init__(self, provider: ProviderId):
        super().__init__(provider)
        self._finish_reason: str | None = None

    def _feed(self, line: str) -> StreamChunk | None:
        data = _sse_data(line)
        if not data:
            return None
        if data == "[DONE]":
            return self._complete(finish_reason=self._finish_reason)

        obj = self._decode(data)
        if obj.get("error"):
            self._raise_stream_error(obj["error"])

        usage = obj.get("usage")
        if usage:
            self.usage = TokenUsage.of(
                usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens")
            )

        choice = _dig(obj, "choices", 0)
        if not isinstance(choice, dict):
            return None
        if choice.get("finish_reason"):
            self._finish_reason = choice["finish_reason"]
        text = _dig(choice, "delta", "content")
        if text is None:
            text = choice.get("text")
        return StreamChunk(content=text) if text else None


class ContentBlockStreamParser(StreamParser):
    """Anthropic SSE: ``event:`` / ``data:`` pairs ending with ``message_stop``."""

    def __init__(self, provider: ProviderId):
        super().__init__(provider)
        self._event = ""
        self._prompt_tokens = 0
        self._completion_tokens = 0
        self._stop_reason: str | None = None

    def _feed(self, line: str) -> StreamChunk | None:
        if line.startswith("event:"):
            self._event = line[len("event:") :].strip()
            return None
        data = _sse_data(line)
        if not data:
            return None

        obj = self._decode(data)
        event = obj.get("type") or self._event

        if event == "error":
            self._raise_stream_error(obj.get("error") or obj)
        if event == "message_start":
            usage = _dig(obj, "message", "usage") or {}
            self._prompt_tokens = int(usage.get("input_tokens") or 0)
            self._completion_tokens = int(usage.get("output_tokens") or 0)
            self._update_usage()
        elif event == "content_block_delta":
            text = _dig(obj, "delta", "text")
            if text:
                return StreamChunk(content=text)
        elif event == "message_delta":
            self._stop_reason = _dig(obj, "delta", "stop_reason") or self._stop_reason
            output_tokens = _dig(obj, "usage", "output_tokens")
            if output_tokens is not None:
                self._completion_tokens = int(output_tokens)
                self._update_usage()
        elif event == "message_stop":
            return self._complete(finish_reason=self._stop_reason)
        return None

    def _update_usage(self) -> None:
        self.usage = TokenUsage.of(self._prompt_tokens, self._completion_tokens)


class CandidatesStreamParser(StreamParser):
    """Gemini ``alt=sse`` stream: every frame is a partial generateContent body."""

    def _feed(self, line: str) -> StreamChunk | None:
        data = _sse_data(line)
        if not data:
            return None

        obj = self._decode(data)
        if obj.get("error"):
            self._raise_stream_error(obj["error"])

        usage = obj.get("usageMetadata")
        if usage:
            self.usage = TokenUsage.of(
                usage.get("promptTokenCount"),
                usage.get("candidatesTokenCount"),
                usage.get("totalTokenCount"),
            )

        candidate = _dig(obj, "candidates", 0) or {}
        parts = _dig(candidate, "content", "parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        if candidate.get("finishReason"):
            return self._complete(text, candidate["finishReason"])
        return StreamChunk(content=text) if text else None


class OllamaStreamParser(StreamParser):
    """Ollama NDJSON: one JSON object per line, last one has ``done: true``."""

    def _feed(self, line: str) -> StreamChunk | None:
        if not line:
            return None

        obj = self._decode(line)
        if obj.get("error"):
            self._raise_stream_error(obj["error"])

        text = _dig(obj, "message", "content")
        if text is None:
            text = obj.get("response", "")
        if obj.get("done"):
            self.usage = TokenUsage.of(obj.get("prompt_eval_count"), obj.get("eval_count"))
            return self._complete(text or "", obj.get("done_reason"))
        return StreamChunk(content=text) if text else None


_STREAM_PARSERS: dict[ProviderId, type[StreamParser]] = {
    ProviderId.OPENAI: ChatStreamParser,
    ProviderId.MISTRAL: ChatStreamParser,
    ProviderId.GROQ: ChatStreamParser,
    ProviderId.OPENROUTER: ChatStreamParser,
    ProviderId.DEEPSEEK: ChatStreamParser,
    ProviderId.ANTHROPIC: ContentBlockStreamParser,
    ProviderId.GEMINI: CandidatesStreamParser,
    ProviderId.OLLAMA: OllamaStreamParser,
}


def normalize_chunk(parser: StreamParser, raw_line: str) -> StreamChunk | None:
    """Feed one raw line; ``None`` means keep reading."""
    return parser.feed(raw_line)


class ResponseNormalizer:
    """Dispatches provider bodies to the matching format parser."""

    def normalize(self, provider_id: ProviderId, raw: RawProviderResponse) -> Response:
        return _RESPONSE_PARSERS[provider_id](raw)

    def normalize_embeddings(self, provider_id: ProviderId, raw: RawProviderResponse) -> EmbeddingResult:
        vectors, usage = _parse_embeddings(raw)
        if not vectors:
            raise _malformed(provider_id, "embedding vectors", raw.body)
        return EmbeddingResult(
            vectors=tuple(vectors),
            usage=usage,
            provider=provider_id.value,
            model=(raw.body.get("model") if isinstance(raw.body, dict) else None) or raw.model,
            metadata={"latency_ms": raw.latency_ms},
        )

    def stream_parser(self, provider_id: ProviderId) -> StreamParser:
        return _STREAM_PARSERS[provider_id](provider_id)
