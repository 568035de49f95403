"""Core types and DTOs for the LLM gateway."""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

from llmgate.gateway.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderId(str, Enum):
    """Supported AI providers."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OLLAMA = "ollama"
    MISTRAL = "mistral"
    GROQ = "groq"
    OPENROUTER = "openrouter"
    DEEPSEEK = "deepseek"


def parse_provider_id(value: str | ProviderId) -> ProviderId:
    """Case-insensitive lookup; unknown ids are a configuration problem."""
    try:
        return ProviderId(str(getattr(value, "value", value)).lower())
    except ValueError:
        raise ConfigurationError(f"Unknown provider: {value}", provider=str(value)) from None


class Operation(str, Enum):
    """Canonical operations exposed by the gateway."""

    COMPLETE = "complete"
    STREAM = "stream"
    EMBED = "embed"
    ANALYZE_IMAGE = "analyzeImage"


class Outcome(str, Enum):
    """Outcome stored on every usage record."""

    SUCCESS = "success"
    ERROR = "error"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"


class RequestState(str, Enum):
    """Lifecycle states of a single gateway request."""

    ADMITTED = "admitted"
    QUOTA_RESERVED = "quota_reserved"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    DISPATCHED = "dispatched"
    NORMALIZED = "normalized"
    USAGE_RECORDED = "usage_recorded"
    RETURNED = "returned"
    ABORTED = "aborted"


# Feature label used when the caller does not supply one
DEFAULT_FEATURES: dict[Operation, str] = {
    Operation.COMPLETE: "completion",
    Operation.STREAM: "chat",
    Operation.EMBED: "embeddings",
    Operation.ANALYZE_IMAGE: "vision",
}


# ---------------------------------------------------------------------------
# Token usage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenUsage:
    """Prompt/completion/total token counts.

    ``total_tokens`` equals prompt + completion unless a provider reported an
    authoritative total, which is then kept as-is.
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        if self.prompt_tokens < 0 or self.completion_tokens < 0 or self.total_tokens < 0:
            raise ValueError("token counts must be non-negative")

    @classmethod
    def of(cls, prompt: Any = 0, completion: Any = 0, total: Any = None) -> TokenUsage:
        """Build usage from possibly-missing provider fields (missing → 0)."""
        prompt_tokens = max(int(prompt or 0), 0)
        completion_tokens = max(int(completion or 0), 0)
        computed = prompt_tokens + completion_tokens
        authoritative = int(total) if total not in (None, "") else 0
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=authoritative if authoritative > 0 else computed,
        )

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


# ---------------------------------------------------------------------------
# Messages & options
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageInput:
    """An image attached to a message: either a URL or base64 data."""

    url: str = ""
    data: str = ""  # base64 payload without the data: prefix
    media_type: str = "image/jpeg"

    @classmethod
    def from_url(cls, url: str) -> ImageInput:
        """Accept plain URLs and ``data:<mime>;base64,<payload>`` URLs."""
        if url.startswith("data:") and ";base64," in url:
            header, payload = url.split(";base64,", 1)
            return cls(data=payload, media_type=header[len("data:") :] or "image/jpeg")
        return cls(url=url)

    @property
    def data_url(self) -> str:
        if self.data:
            return f"data:{self.media_type};base64,{self.data}"
        return self.url


@dataclass(frozen=True)
class Message:
    """A single role-tagged chat message."""

    role: str
    content: str
    images: tuple[ImageInput, ...] = ()

    @classmethod
    def coerce(cls, value: Message | Mapping[str, Any]) -> Message:
        if isinstance(value, Message):
            return value
        images = tuple(
            img if isinstance(img, ImageInput) else ImageInput.from_url(str(img))
            for img in value.get("images", ()) or ()
        )
        return cls(role=str(value.get("role", "user")), content=str(value.get("content") or ""), images=images)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.images:
            d["images"] = [img.data_url for img in self.images]
        return d


def _freeze(extra: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(extra or {}))


class _Options:
    """Shared behavior for the typed option structs."""

    extra: Mapping[str, Any]

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any] | None = None):
        """Split an untyped option bag into known fields and ``extra``."""
        options = dict(options or {})
        known = {f.name for f in fields(cls)} - {"extra"}  # type: ignore[arg-type]
        kwargs = {k: options.pop(k) for k in list(options) if k in known}
        extra = dict(options.pop("extra", None) or {})
        extra.update(options)
        if "stop" in kwargs and kwargs["stop"] is not None:
            stop = kwargs["stop"]
            kwargs["stop"] = (stop,) if isinstance(stop, str) else tuple(stop)
        if kwargs.get("tools") is not None:
            kwargs["tools"] = tuple(dict(tool) for tool in kwargs["tools"])
        return cls(extra=_freeze(extra), **kwargs)

    def to_dict(self) -> dict:
        d = {}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if f.name == "extra":
                d["extra"] = dict(value)
            elif value is not None:
                d[f.name] = [dict(v) if isinstance(v, Mapping) else v for v in value] if isinstance(value, tuple) else value
        return d


@dataclass(frozen=True)
class ChatOptions(_Options):
    """Sampling options for completion/stream calls."""

    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] | None = None
    response_format: str | None = None  # "text" | "json"
    # Function tools in OpenAI shape: {"type": "function", "function": {name, description, parameters}}
    tools: tuple[Mapping[str, Any], ...] | None = None
    tool_choice: str | None = None  # "auto" | "none" | "required" | <function name>
    extra: Mapping[str, Any] = field(default_factory=lambda: _freeze(None))


@dataclass(frozen=True)
class EmbeddingOptions(_Options):
    """Options for embedding calls."""

    dimensions: int | None = None
    encoding_format: str | None = None
    extra: Mapping[str, Any] = field(default_factory=lambda: _freeze(None))

    @property
    def temperature(self) -> float | None:
        return None

    @property
    def max_tokens(self) -> int | None:
        return None


@dataclass(frozen=True)
class VisionOptions(_Options):
    """Options for image analysis calls."""

    detail: str | None = None  # "low" | "high" | "auto"
    max_tokens: int | None = None
    temperature: float | None = None
    extra: Mapping[str, Any] = field(default_factory=lambda: _freeze(None))


# ---------------------------------------------------------------------------
# Request — input to the gateway
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Request:
    """Canonical, immutable request.

    ``model`` may be a concrete provider model name or a gateway alias.
    ``provider`` pins the provider explicitly; otherwise it is resolved from
    the alias table or the configured default.
    """

    operation: Operation = Operation.COMPLETE
    model: str = ""
    messages: tuple[Message, ...] = ()
    system: str | None = None
    options: ChatOptions | EmbeddingOptions | VisionOptions = field(default_factory=ChatOptions)
    input: tuple[str, ...] = ()  # embedding inputs
    provider: ProviderId | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16], compare=False)

    @classmethod
    def chat(
        cls,
        model: str,
        messages: list[Message | Mapping[str, Any]],
        system: str | None = None,
        options: Mapping[str, Any] | None = None,
        stream: bool = False,
        provider: ProviderId | str | None = None,
        **kwargs: Any,
    ) -> Request:
        """Build a completion (or streaming) request from loose arguments.

        Keyword arguments not listed are treated as options, so
        ``Request.chat("fast-chat", msgs, temperature=0.7)`` works.
        """
        merged = {**(options or {}), **kwargs}
        return cls(
            operation=Operation.STREAM if stream else Operation.COMPLETE,
            model=model,
            messages=tuple(Message.coerce(m) for m in messages),
            system=system,
            options=ChatOptions.from_mapping(merged),
            provider=parse_provider_id(provider) if provider else None,
        )

    @classmethod
    def embedding(
        cls,
        model: str,
        input: str | list[str],
        options: Mapping[str, Any] | None = None,
        provider: ProviderId | str | None = None,
        **kwargs: Any,
    ) -> Request:
        texts = (input,) if isinstance(input, str) else tuple(input)
        return cls(
            operation=Operation.EMBED,
            model=model,
            input=texts,
            options=EmbeddingOptions.from_mapping({**(options or {}), **kwargs}),
            provider=parse_provider_id(provider) if provider else None,
        )

    @classmethod
    def vision(
        cls,
        model: str,
        prompt: str,
        images: list[str | ImageInput],
        system: str | None = None,
        options: Mapping[str, Any] | None = None,
        provider: ProviderId | str | None = None,
        **kwargs: Any,
    ) -> Request:
        attached = tuple(img if isinstance(img, ImageInput) else ImageInput.from_url(img) for img in images)
        return cls(
            operation=Operation.ANALYZE_IMAGE,
            model=model,
            messages=(Message(role="user", content=prompt, images=attached),),
            system=system,
            options=VisionOptions.from_mapping({**(options or {}), **kwargs}),
            provider=parse_provider_id(provider) if provider else None,
        )

    @property
    def is_streaming(self) -> bool:
        return self.operation == Operation.STREAM

    @property
    def temperature(self) -> float | None:
        return self.options.temperature

    @property
    def max_tokens(self) -> int | None:
        return self.options.max_tokens

    def prompt_text(self) -> str:
        """All input text, used for token estimation."""
        parts = [self.system or ""]
        parts.extend(m.content for m in self.messages)
        parts.extend(self.input)
        return "\n".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Raw provider output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawProviderResponse:
    """Decoded body of a successful provider call, before normalization."""

    provider: ProviderId
    model: str
    status_code: int
    body: Any
    headers: Mapping[str, str] = field(default_factory=dict)
    latency_ms: int = 0


# ---------------------------------------------------------------------------
# Response — unified DTOs (output of the gateway)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    """A function call requested by the model."""

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    raw_arguments: str = ""  # provider text when it was not a JSON object

    @classmethod
    def of(cls, id: str, name: str, arguments: Any) -> ToolCall:
        """Accept arguments as a mapping or as the JSON text some providers send."""
        if isinstance(arguments, Mapping):
            return cls(id=id, name=name, arguments=dict(arguments))
        if not arguments:
            return cls(id=id, name=name)
        try:
            parsed = json.loads(arguments)
        except (TypeError, ValueError):
            parsed = None
        if not isinstance(parsed, dict):
            return cls(id=id, name=name, raw_arguments=str(arguments))
        return cls(id=id, name=name, arguments=parsed)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}
        if self.raw_arguments:
            d["raw_arguments"] = self.raw_arguments
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ToolCall:
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            arguments=dict(data.get("arguments") or {}),
            raw_arguments=str(data.get("raw_arguments", "")),
        )


@dataclass(frozen=True)
class Response:
    """Normalized response — same structure regardless of provider."""

    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = "stop"
    provider: str = ""
    model: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)
    cache_hit: bool = False
    tool_calls: tuple[ToolCall, ...] = ()

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict for caching/storage."""
        return {
            "kind": "response",
            "content": self.content,
            "usage": self.usage.to_dict(),
            "finish_reason": self.finish_reason,
            "provider": self.provider,
            "model": self.model,
            "metadata": dict(self.metadata),
            "tool_calls": [call.to_dict() for call in self.tool_calls],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], cache_hit: bool = False) -> Response:
        usage = data.get("usage") or {}
        return cls(
            content=data.get("content", ""),
            usage=TokenUsage(**usage),
            finish_reason=data.get("finish_reason", "stop"),
            provider=data.get("provider", ""),
            model=data.get("model", ""),
            metadata=dict(data.get("metadata") or {}),
            cache_hit=cache_hit,
            tool_calls=tuple(ToolCall.from_dict(c) for c in data.get("tool_calls") or ()),
        )


@dataclass(frozen=True)
class EmbeddingResult:
    """Normalized embedding vectors."""

    vectors: tuple[tuple[float, ...], ...]
    usage: TokenUsage = field(default_factory=TokenUsage)
    provider: str = ""
    model: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)
    cache_hit: bool = False

    @property
    def dimensions(self) -> int:
        return len(self.vectors[0]) if self.vectors else 0

    def to_dict(self) -> dict:
        return {
            "kind": "embedding",
            "vectors": [list(v) for v in self.vectors],
            "usage": self.usage.to_dict(),
            "provider": self.provider,
            "model": self.model,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], cache_hit: bool = False) -> EmbeddingResult:
        return cls(
            vectors=tuple(tuple(float(x) for x in v) for v in data.get("vectors", [])),
            usage=TokenUsage(**(data.get("usage") or {})),
            provider=data.get("provider", ""),
            model=data.get("model", ""),
            metadata=dict(data.get("metadata") or {}),
            cache_hit=cache_hit,
        )


@dataclass(frozen=True)
class StreamChunk:
    """One incremental piece of a streamed response."""

    content: str = ""
    is_complete: bool = False
    finish_reason: str | None = None
    usage: TokenUsage | None = None  # only on the terminal chunk


# ---------------------------------------------------------------------------
# Call context & usage record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallContext:
    """Who is calling and for which feature."""

    caller_id: str = "anonymous"
    group_id: str | None = None
    site_id: str | None = None
    feature: str | None = None
    use_cache: bool = True

    def feature_for(self, operation: Operation) -> str:
        return self.feature or DEFAULT_FEATURES[operation]


@dataclass(frozen=True)
class UsageRecord:
    """Immutable usage event, one per gateway call."""

    caller: str
    provider: str
    model: str
    feature: str
    operation: str
    outcome: Outcome
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    cache_hit: bool = False
    error_code: str = ""
    request_id: str = ""
    latency_ms: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        """Serialize to JSON-compatible dict for storage/API."""
        return {
            "caller": self.caller,
            "provider": self.provider,
            "model": self.model,
            "feature": self.feature,
            "operation": self.operation,
            "outcome": self.outcome.value,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost_usd": self.cost_usd,
            "cache_hit": self.cache_hit,
            "error_code": self.error_code,
            "request_id": self.request_id,
            "latency_ms": self.latency_ms,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class RequestTrace:
    """Records the lifecycle transitions of one request."""

    request_id: str
    states: list[RequestState] = field(default_factory=list)
    abort_reason: str = ""

    def advance(self, state: RequestState) -> None:
        self.states.append(state)

    def abort(self, reason: str) -> None:
        self.abort_reason = reason
        self.states.append(RequestState.ABORTED)

    @property
    def current(self) -> RequestState | None:
        return self.states[-1] if self.states else None
