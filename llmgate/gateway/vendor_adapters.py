"""Provider Adapters — protocol-level handling for each AI provider.

Each adapter translates a canonical Request into the provider's HTTP
protocol, sends it, and returns the decoded body untouched. Turning that
body into a Response is the normalizer's job.

Provider-specific behaviors:
  - OpenAI: chat completions, SSE ``data:`` frames ending in ``[DONE]``, embeddings
  - Anthropic: messages API, system prompt outside ``messages``, mandatory max_tokens
  - Gemini: generateContent, API key as ``key`` query param, ``alt=sse`` streaming
  - Ollama: local server, no auth, NDJSON streaming
  - Mistral / Groq / OpenRouter / DeepSeek: OpenAI-compatible variants
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from llmgate.gateway.config_provider import ConfigurationProvider, ProviderSettings
from llmgate.gateway.errors import (
    ConfigurationError,
    GatewayError,
    MalformedResponseError,
    ProviderConnectionError,
    ProviderRejected,
    RateLimitExceeded,
)
from llmgate.gateway.types import (
    ChatOptions,
    ImageInput,
    Message,
    Operation,
    ProviderId,
    RawProviderResponse,
    Request,
)

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 1.0
_BODY_EXCERPT_LEN = 500


def calculate_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter.

    Formula: min(base * 2^attempt + jitter, max_delay)
    Jitter: random(0, base * 0.5)
    """
    exponential = base_delay * (2**attempt)
    jitter = random.uniform(0, base_delay * 0.5)
    return min(exponential + jitter, max_delay)


# ---------------------------------------------------------------------------
# Error body helpers
# ---------------------------------------------------------------------------

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float | None:
    """Parse ``"1s"``, ``"6m0s"``, ``"20ms"`` or a bare number of seconds."""
    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass
    parts = _DURATION_PART.findall(value)
    if not parts:
        return None
    return sum(float(num) * _DURATION_UNITS[unit] for num, unit in parts)


def parse_retry_after(headers: httpx.Headers | dict, body: Any = None, now: datetime | None = None) -> float:
    """Seconds to wait before retrying a 429, from headers or body hints."""
    headers = httpx.Headers(headers)
    now = now or datetime.now(timezone.utc)

    raw = headers.get("retry-after", "").strip()
    if raw:
        try:
            return max(float(raw), 0.0)
        except ValueError:
            pass
        try:
            at = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            at = None
        if at is not None:
            if at.tzinfo is None:
                at = at.replace(tzinfo=timezone.utc)
            return max((at - now).total_seconds(), 0.0)

    resets = [
        parse_duration(value)
        for name, value in headers.items()
        if name.lower().startswith("x-ratelimit-reset")
    ]
    resets = [r for r in resets if r is not None]
    if resets:
        return max(resets)

    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        if error.get("retry_after") is not None:
            try:
                return max(float(error["retry_after"]), 0.0)
            except (TypeError, ValueError):
                pass
        # Gemini: error.details[] → {"@type": "...RetryInfo", "retryDelay": "20s"}
        for detail in error.get("details") or []:
            if isinstance(detail, dict) and str(detail.get("@type", "")).endswith("RetryInfo"):
                seconds = parse_duration(str(detail.get("retryDelay", "")))
                if seconds is not None:
                    return seconds

    return DEFAULT_RETRY_AFTER


def extract_error_message(body: Any) -> str:
    """Provider error bodies: ``error.message``, ``error`` string, ``message`` or ``detail``."""
    if not isinstance(body, dict):
        return ""
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    for key in ("message", "detail"):
        if body.get(key):
            return str(body[key])
    return ""


def extract_error_type(body: Any) -> str:
    """``error.type/code/status``, else a top-level ``type`` other than the bare ``"error"`` tag."""
    if not isinstance(body, dict):
        return ""
    error = body.get("error")
    if isinstance(error, dict):
        for key in ("type", "code", "status"):
            if error.get(key):
                return str(error[key])
    top = body.get("type")
    if top and top != "error":
        return str(top)
    return ""


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Streaming source
# ---------------------------------------------------------------------------


class RawChunkSource:
    """An open streaming HTTP response, read line by line.

    Owns both the response and its client; ``aclose()`` releases the
    connection immediately and is safe to call more than once.
    """

    def __init__(self, provider: ProviderId, model: str, client: httpx.AsyncClient, response: httpx.Response):
        self.provider = provider
        self.model = model
        self._client = client
        self._response = response
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def aiter_lines(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                yield line
        except httpx.TransportError as e:
            raise ProviderConnectionError(
                f"Stream from {self.provider.value} interrupted: {e}", provider=self.provider.value
            ) from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Base class for all provider adapters."""

    provider_id: ProviderId
    requires_api_key = True
    supports_streaming = True
    supports_vision = False
    supports_embeddings = False
    supports_tools = False
    default_embedding_model = ""
    # Provider-level shorthand → concrete model name
    model_aliases: dict[str, str] = {}

    def __init__(
        self,
        settings: ProviderSettings,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.api_key = settings.api_key
        self.base_url = settings.base_url.rstrip("/")
        self._transport = transport
        self._sleep = sleep

    # -- public contract ----------------------------------------------------

    async def dispatch(self, request: Request) -> RawProviderResponse:
        """Send a completion or vision request."""
        self._check_supported(request)
        model = self.resolve_model(request.model)
        url, params = self._chat_endpoint(model, stream=False)
        payload = self._build_chat_payload(request, model, stream=False)
        return await self._post(url, payload, params, model, request.operation)

    async def embed(self, request: Request) -> RawProviderResponse:
        self._check_supported(request)
        model = self.resolve_model(request.model, embedding=True)
        url, params = self._embed_endpoint(model, len(request.input))
        payload = self._build_embed_payload(request, model)
        return await self._post(url, payload, params, model, request.operation)

    async def open_stream(self, request: Request) -> RawChunkSource:
        """Open a streaming response. Streams are never retried."""
        self._check_supported(request)
        model = self.resolve_model(request.model)
        url, params = self._chat_endpoint(model, stream=True)
        payload = self._build_chat_payload(request, model, stream=True)

        client = self._client()
        try:
            http_request = client.build_request(
                "POST",
                url,
                json=payload,
                params=params,
                headers={**self._headers(), "Accept": "text/event-stream"},
            )
            resp = await client.send(http_request, stream=True)
        except httpx.TransportError as e:
            await client.aclose()
            raise self._connection_error(e) from e

        if resp.status_code >= 400:
            try:
                await resp.aread()
                error = self._map_error(resp)
            finally:
                await resp.aclose()
                await client.aclose()
            raise error

        logger.debug("Opened %s stream for model %s", self.provider_id.value, model)
        return RawChunkSource(self.provider_id, model, client, resp)

    def resolve_model(self, model: str, embedding: bool = False) -> str:
        if not model:
            return self.default_embedding_model if embedding else self.settings.default_model
        return self.model_aliases.get(model, model)

    # -- provider-specific hooks ----------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    @abstractmethod
    def _chat_endpoint(self, model: str, stream: bool) -> tuple[str, dict[str, str]]:
        """URL and query params for completion / stream calls."""
        ...

    @abstractmethod
    def _build_chat_payload(self, request: Request, model: str, stream: bool) -> dict:
        ...

    def _embed_endpoint(self, model: str, count: int) -> tuple[str, dict[str, str]]:
        raise NotImplementedError

    def _build_embed_payload(self, request: Request, model: str) -> dict:
        raise NotImplementedError

    # -- transport --------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.timeout, transport=self._transport)

    def _check_supported(self, request: Request) -> None:
        op = request.operation
        has_images = any(m.images for m in request.messages)
        has_tools = bool(getattr(request.options, "tools", None))
        unsupported = (
            (op == Operation.EMBED and not self.supports_embeddings)
            or (op == Operation.STREAM and not self.supports_streaming)
            or ((op == Operation.ANALYZE_IMAGE or has_images) and not self.supports_vision)
        )
        if unsupported or (has_tools and not self.supports_tools):
            what = "tools" if not unsupported else op.value
            raise ProviderRejected(
                f"{self.provider_id.value} does not support {what}",
                provider=self.provider_id.value,
                error_type="unsupported_operation",
            )

    async def _post(
        self,
        url: str,
        payload: dict,
        params: dict[str, str],
        model: str,
        operation: Operation,
    ) -> RawProviderResponse:
        """POST with retries on 5xx / transport errors (dispatch and embed are idempotent)."""
        max_retries = max(self.settings.max_retries, 0)
        attempt = 0

        while True:
            start = time.monotonic()
            try:
                async with self._client() as client:
                    resp = await client.post(url, json=payload, params=params, headers=self._headers())
            except httpx.TransportError as e:
                error: GatewayError = self._connection_error(e)
            else:
                latency_ms = int((time.monotonic() - start) * 1000)
                if resp.status_code < 400:
                    return self._decode(resp, model, latency_ms)
                error = self._map_error(resp)
                if not isinstance(error, ProviderConnectionError):
                    raise error

            if attempt >= max_retries:
                logger.warning(
                    "%s %s failed after %d attempts: %s",
                    self.provider_id.value,
                    operation.value,
                    attempt + 1,
                    error,
                )
                raise error

            delay = calculate_backoff(
                attempt,
                base_delay=self.settings.base_retry_delay,
                max_delay=self.settings.max_retry_delay,
            )
            logger.info(
                "Retry %d/%d for %s %s in %.1fs: %s",
                attempt + 1,
                max_retries,
                self.provider_id.value,
                operation.value,
                delay,
                error,
            )
            await self._sleep(delay)
            attempt += 1

    def _decode(self, resp: httpx.Response, model: str, latency_ms: int) -> RawProviderResponse:
        try:
            body = resp.json()
        except ValueError:
            raise MalformedResponseError(
                f"{self.provider_id.value} returned a non-JSON body",
                provider=self.provider_id.value,
                body_excerpt=resp.text[:_BODY_EXCERPT_LEN],
            ) from None
        return RawProviderResponse(
            provider=self.provider_id,
            model=model,
            status_code=resp.status_code,
            body=body,
            headers=dict(resp.headers),
            latency_ms=latency_ms,
        )

    def _connection_error(self, exc: httpx.TransportError) -> ProviderConnectionError:
        kind = "Timeout" if isinstance(exc, httpx.TimeoutException) else "Transport error"
        return ProviderConnectionError(
            f"{kind} talking to {self.provider_id.value}: {exc}",
            provider=self.provider_id.value,
        )

    def _map_error(self, resp: httpx.Response) -> GatewayError:
        """Translate a non-2xx response into a typed error."""
        body = _safe_json(resp)
        provider = self.provider_id.value
        status = resp.status_code
        message = extract_error_message(body) or resp.text[:200] or resp.reason_phrase

        if status == 429:
            retry_after = parse_retry_after(resp.headers, body)
            logger.warning("Rate limited by %s, retry after %.1fs", provider, retry_after)
            return RateLimitExceeded(
                f"Rate limited by {provider}: {message}",
                retry_after=retry_after,
                scope=f"provider:{provider}",
                provider=provider,
            )
        if status in (401, 403):
            logger.error("Invalid credentials for %s (%d)", provider, status)
            return ConfigurationError(
                f"Invalid credentials for {provider}: {message}", provider=provider, status_code=status
            )
        if 400 <= status < 500:
            logger.warning("%s rejected request (%d): %s", provider, status, message)
            return ProviderRejected(
                f"{provider} rejected request: {message}",
                provider=provider,
                status_code=status,
                error_type=extract_error_type(body),
            )
        return ProviderConnectionError(
            f"{provider} server error {status}: {message}",
            provider=provider,
            status_code=status,
        )


def _set_if(payload: dict, key: str, value: Any) -> None:
    if value is not None:
        payload[key] = value


def _split_system(request: Request) -> tuple[str | None, list[Message]]:
    """Pull system-role messages out and merge them with ``request.system``."""
    system_parts = [request.system] if request.system else []
    rest = []
    for msg in request.messages:
        if msg.role == "system":
            system_parts.append(msg.content)
        else:
            rest.append(msg)
    return ("\n\n".join(system_parts) if system_parts else None), rest


def _function_declaration(tool: dict) -> dict:
    """Function declaration of an OpenAI-shaped tool; bare declarations pass through."""
    fn = tool.get("function", tool)
    return {
        "name": fn.get("name", ""),
        "description": fn.get("description", ""),
        "parameters": fn.get("parameters") or {"type": "object", "properties": {}},
    }


# ---------------------------------------------------------------------------
# OpenAI Adapter (and OpenAI-compatible variants)
# ---------------------------------------------------------------------------


class OpenAIAdapter(ProviderAdapter):
    """OpenAI Chat Completions adapter."""

    provider_id = ProviderId.OPENAI
    supports_vision = True
    supports_embeddings = True
    supports_tools = True
    default_embedding_model = "text-embedding-3-small"
    # Ask for a usage frame at the end of the stream
    stream_usage_option = True
    model_aliases = {
        "gpt4o": "gpt-4o",
        "gpt4o-mini": "gpt-4o-mini",
        "embedding-small": "text-embedding-3-small",
        "embedding-large": "text-embedding-3-large",
    }

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _chat_endpoint(self, model: str, stream: bool) -> tuple[str, dict[str, str]]:
        return f"{self.base_url}/chat/completions", {}

    def _embed_endpoint(self, model: str, count: int) -> tuple[str, dict[str, str]]:
        return f"{self.base_url}/embeddings", {}

    def _message(self, msg: Message, detail: str | None) -> dict:
        if not msg.images:
            return {"role": msg.role, "content": msg.content}
        parts: list[dict] = [{"type": "text", "text": msg.content}]
        for image in msg.images:
            image_url: dict[str, Any] = {"url": image.data_url}
            _set_if(image_url, "detail", detail)
            parts.append({"type": "image_url", "image_url": image_url})
        return {"role": msg.role, "content": parts}

    def _build_chat_payload(self, request: Request, model: str, stream: bool) -> dict:
        opts = request.options
        detail = getattr(opts, "detail", None)
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend(self._message(m, detail) for m in request.messages)

        payload: dict[str, Any] = {"model": model, "messages": messages}
        _set_if(payload, "temperature", opts.temperature)
        _set_if(payload, "max_tokens", opts.max_tokens)
        if isinstance(opts, ChatOptions):
            _set_if(payload, "top_p", opts.top_p)
            _set_if(payload, "frequency_penalty", opts.frequency_penalty)
            _set_if(payload, "presence_penalty", opts.presence_penalty)
            if opts.stop:
                payload["stop"] = list(opts.stop)
            if opts.response_format == "json":
                payload["response_format"] = {"type": "json_object"}
            if opts.tools:
                payload["tools"] = [{"type": "function", "function": _function_declaration(t)} for t in opts.tools]
                _set_if(payload, "tool_choice", opts.tool_choice)
        if stream:
            payload["stream"] = True
            if self.stream_usage_option:
                payload["stream_options"] = {"include_usage": True}
        payload.update(opts.extra)
        return payload

    def _build_embed_payload(self, request: Request, model: str) -> dict:
        opts = request.options
        payload: dict[str, Any] = {"model": model, "input": list(request.input)}
        _set_if(payload, "dimensions", getattr(opts, "dimensions", None))
        _set_if(payload, "encoding_format", getattr(opts, "encoding_format", None))
        payload.update(opts.extra)
        return payload


class MistralAdapter(OpenAIAdapter):
    """Mistral La Plateforme (OpenAI-compatible)."""

    provider_id = ProviderId.MISTRAL
    supports_vision = True
    default_embedding_model = "mistral-embed"
    stream_usage_option = False
    model_aliases = {
        "mistral-small": "mistral-small-latest",
        "mistral-large": "mistral-large-latest",
    }


class GroqAdapter(OpenAIAdapter):
    """Groq (OpenAI-compatible, chat only)."""

    provider_id = ProviderId.GROQ
    supports_vision = False
    supports_embeddings = False
    stream_usage_option = False
    model_aliases = {
        "llama-8b": "llama-3.1-8b-instant",
        "llama-70b": "llama-3.3-70b-versatile",
    }


class OpenRouterAdapter(OpenAIAdapter):
    """OpenRouter (OpenAI-compatible router, optional attribution headers)."""

    provider_id = ProviderId.OPENROUTER
    supports_embeddings = False
    stream_usage_option = False
    model_aliases = {}

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.settings.extra.get("site_url"):
            headers["HTTP-Referer"] = str(self.settings.extra["site_url"])
        if self.settings.extra.get("app_name"):
            headers["X-Title"] = str(self.settings.extra["app_name"])
        return headers


class DeepSeekAdapter(OpenAIAdapter):
    """DeepSeek (OpenAI-compatible, text only)."""

    provider_id = ProviderId.DEEPSEEK
    supports_vision = False
    supports_embeddings = False
    stream_usage_option = True
    model_aliases = {"deepseek-r1": "deepseek-reasoner", "deepseek-v3": "deepseek-chat"}


# ---------------------------------------------------------------------------
# Anthropic Adapter
# ---------------------------------------------------------------------------


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API adapter."""

    provider_id = ProviderId.ANTHROPIC
    supports_vision = True
    supports_tools = True
    default_max_tokens = 4096
    model_aliases = {
        "claude-haiku": "claude-3-5-haiku-20241022",
        "claude-sonnet": "claude-sonnet-4-20250514",
        "claude-opus": "claude-3-opus-20240229",
    }

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": str(self.settings.extra.get("anthropic_version", "2023-06-01")),
            "Content-Type": "application/json",
        }

    def _chat_endpoint(self, model: str, stream: bool) -> tuple[str, dict[str, str]]:
        return f"{self.base_url}/messages", {}

    @staticmethod
    def _image_block(image: ImageInput) -> dict:
        if image.data:
            source = {"type": "base64", "media_type": image.media_type, "data": image.data}
        else:
            source = {"type": "url", "url": image.url}
        return {"type": "image", "source": source}

    @staticmethod
    def _tool_choice(choice: str) -> dict:
        modes = {"auto": {"type": "auto"}, "required": {"type": "any"}, "none": {"type": "none"}}
        return modes.get(choice, {"type": "tool", "name": choice})

    def _message(self, msg: Message) -> dict:
        role = "assistant" if msg.role == "assistant" else "user"
        if not msg.images:
            return {"role": role, "content": msg.content}
        blocks = [self._image_block(img) for img in msg.images]
        blocks.append({"type": "text", "text": msg.content})
        return {"role": role, "content": blocks}

    def _build_chat_payload(self, request: Request, model: str, stream: bool) -> dict:
        opts = request.options
        system, messages = _split_system(request)
        payload: dict[str, Any] = {
            "model": model,
            "messages": [self._message(m) for m in messages],
            "max_tokens": opts.max_tokens or self.default_max_tokens,
        }
        _set_if(payload, "system", system)
        _set_if(payload, "temperature", opts.temperature)
        if isinstance(opts, ChatOptions):
            _set_if(payload, "top_p", opts.top_p)
            _set_if(payload, "top_k", opts.top_k)
            if opts.stop:
                payload["stop_sequences"] = list(opts.stop)
            if opts.tools:
                payload["tools"] = [
                    {"name": fn["name"], "description": fn["description"], "input_schema": fn["parameters"]}
                    for fn in map(_function_declaration, opts.tools)
                ]
                if opts.tool_choice:
                    payload["tool_choice"] = self._tool_choice(opts.tool_choice)
        if stream:
            payload["stream"] = True
        payload.update(opts.extra)
        return payload


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI)
# ---------------------------------------------------------------------------


class GeminiAdapter(ProviderAdapter):
    """Google Gemini adapter."""

    provider_id = ProviderId.GEMINI
    supports_vision = True
    supports_embeddings = True
    supports_tools = True
    default_embedding_model = "text-embedding-004"
    model_aliases = {
        "gemini-flash": "gemini-2.0-flash",
        "gemini-pro": "gemini-1.5-pro",
    }

    def _chat_endpoint(self, model: str, stream: bool) -> tuple[str, dict[str, str]]:
        if stream:
            return f"{self.base_url}/models/{model}:streamGenerateContent", {"key": self.api_key, "alt": "sse"}
        return f"{self.base_url}/models/{model}:generateContent", {"key": self.api_key}

    def _embed_endpoint(self, model: str, count: int) -> tuple[str, dict[str, str]]:
        method = "embedContent" if count == 1 else "batchEmbedContents"
        return f"{self.base_url}/models/{model}:{method}", {"key": self.api_key}

    @staticmethod
    def _calling_config(choice: str) -> dict:
        modes = {"auto": "AUTO", "required": "ANY", "none": "NONE"}
        if choice in modes:
            return {"mode": modes[choice]}
        return {"mode": "ANY", "allowedFunctionNames": [choice]}

    @staticmethod
    def _image_part(image: ImageInput) -> dict:
        if image.data:
            return {"inlineData": {"mimeType": image.media_type, "data": image.data}}
        return {"fileData": {"mimeType": image.media_type, "fileUri": image.url}}

    def _build_chat_payload(self, request: Request, model: str, stream: bool) -> dict:
        opts = request.options
        system, messages = _split_system(request)
        contents = []
        for msg in messages:
            parts: list[dict] = [self._image_part(img) for img in msg.images]
            parts.append({"text": msg.content})
            contents.append({"role": "model" if msg.role == "assistant" else "user", "parts": parts})

        config: dict[str, Any] = {}
        _set_if(config, "temperature", opts.temperature)
        _set_if(config, "maxOutputTokens", opts.max_tokens)
        if isinstance(opts, ChatOptions):
            _set_if(config, "topP", opts.top_p)
            _set_if(config, "topK", opts.top_k)
            if opts.stop:
                config["stopSequences"] = list(opts.stop)
            if opts.response_format == "json":
                config["responseMimeType"] = "application/json"

        payload: dict[str, Any] = {"contents": contents}
        if config:
            payload["generationConfig"] = config
        if isinstance(opts, ChatOptions) and opts.tools:
            payload["tools"] = [{"functionDeclarations": [_function_declaration(t) for t in opts.tools]}]
            if opts.tool_choice:
                payload["toolConfig"] = {"functionCallingConfig": self._calling_config(opts.tool_choice)}
        # System instruction (separate from contents in Gemini API)
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        payload.update(opts.extra)
        return payload

    def _build_embed_payload(self, request: Request, model: str) -> dict:
        dimensions = getattr(request.options, "dimensions", None)

        def one(text: str) -> dict:
            item: dict[str, Any] = {"model": f"models/{model}", "content": {"parts": [{"text": text}]}}
            _set_if(item, "outputDimensionality", dimensions)
            return item

        if len(request.input) == 1:
            return one(request.input[0])
        return {"requests": [one(text) for text in request.input]}


# ---------------------------------------------------------------------------
# Ollama Adapter (local)
# ---------------------------------------------------------------------------


class OllamaAdapter(ProviderAdapter):
    """Ollama local server adapter. No authentication."""

    provider_id = ProviderId.OLLAMA
    requires_api_key = False
    supports_vision = True
    supports_embeddings = True
    default_embedding_model = "nomic-embed-text"
    model_aliases = {"llama": "llama3.2", "llava": "llava:latest"}

    def _chat_endpoint(self, model: str, stream: bool) -> tuple[str, dict[str, str]]:
        return f"{self.base_url}/api/chat", {}

    def _embed_endpoint(self, model: str, count: int) -> tuple[str, dict[str, str]]:
        return f"{self.base_url}/api/embed", {}

    def _message(self, msg: Message) -> dict:
        d: dict[str, Any] = {"role": msg.role, "content": msg.content}
        if msg.images:
            if any(not img.data for img in msg.images):
                raise ProviderRejected(
                    "ollama accepts base64 image data only",
                    provider=self.provider_id.value,
                    error_type="unsupported_image_source",
                )
            d["images"] = [img.data for img in msg.images]
        return d

    def _build_chat_payload(self, request: Request, model: str, stream: bool) -> dict:
        opts = request.options
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend(self._message(m) for m in request.messages)

        options: dict[str, Any] = {}
        _set_if(options, "temperature", opts.temperature)
        _set_if(options, "num_predict", opts.max_tokens)
        if isinstance(opts, ChatOptions):
            _set_if(options, "top_p", opts.top_p)
            _set_if(options, "top_k", opts.top_k)
            if opts.stop:
                options["stop"] = list(opts.stop)

        payload: dict[str, Any] = {"model": model, "messages": messages, "stream": stream}
        if options:
            payload["options"] = options
        if isinstance(opts, ChatOptions) and opts.response_format == "json":
            payload["format"] = "json"
        payload.update(opts.extra)
        return payload

    def _build_embed_payload(self, request: Request, model: str) -> dict:
        payload: dict[str, Any] = {"model": model, "input": list(request.input)}
        payload.update(request.options.extra)
        return payload


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[ProviderId, type[ProviderAdapter]] = {
    ProviderId.OPENAI: OpenAIAdapter,
    ProviderId.ANTHROPIC: AnthropicAdapter,
    ProviderId.GEMINI: GeminiAdapter,
    ProviderId.OLLAMA: OllamaAdapter,
    ProviderId.MISTRAL: MistralAdapter,
    ProviderId.GROQ: GroqAdapter,
    ProviderId.OPENROUTER: OpenRouterAdapter,
    ProviderId.DEEPSEEK: DeepSeekAdapter,
}


def get_adapter(provider_id: ProviderId, settings: ProviderSettings, **kwargs) -> ProviderAdapter:
    """Factory: get the appropriate adapter for a provider."""
    cls = ADAPTER_REGISTRY.get(provider_id)
    if cls is None:
        raise ConfigurationError(f"No adapter registered for provider: {provider_id}")
    if cls.requires_api_key and not settings.api_key:
        raise ConfigurationError(
            f"Missing API key for provider {provider_id.value}", provider=provider_id.value
        )
    return cls(settings, **kwargs)


def build_adapters(
    config: ConfigurationProvider,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[ProviderId, ProviderAdapter]:
    """Resolve every enabled provider to its adapter once, at startup."""
    adapters = {}
    for provider_id in config.enabled_providers():
        adapters[provider_id] = get_adapter(
            provider_id, config.get_provider_settings(provider_id), transport=transport
        )
    logger.info("Provider adapters ready: %s", ", ".join(p.value for p in adapters))
    return adapters
