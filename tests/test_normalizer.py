"""Tests for the response normalizer and streaming parsers."""

from __future__ import annotations

import json

import pytest

from llmgate.gateway.errors import MalformedResponseError, ProviderRejected
from llmgate.gateway.normalizer import (
    ResponseNormalizer,
    map_finish_reason,
    normalize_chunk,
)
from llmgate.gateway.types import ProviderId, RawProviderResponse, Response, TokenUsage


def _raw(provider: ProviderId, body, model: str = "m") -> RawProviderResponse:
    return RawProviderResponse(provider=provider, model=model, status_code=200, body=body, latency_ms=12)


def _feed_all(parser, lines):
    chunks = []
    for line in lines:
        chunk = normalize_chunk(parser, line)
        if chunk is not None:
            chunks.append(chunk)
    return chunks


@pytest.fixture
def normalizer() -> ResponseNormalizer:
    return ResponseNormalizer()


# ==========================================================================
# Test: Whole responses
# ==========================================================================


class TestChatShaped:
    def test_openai_response(self, normalizer):
        body = {
            "id": "abc",
            "model": "gpt-4o-mini-2024-07-18",
            "choices": [{"message": {"role": "assistant", "content": "Hi"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 4, "completion_tokens": 1, "total_tokens": 5},
        }
        resp = normalizer.normalize(ProviderId.OPENAI, _raw(ProviderId.OPENAI, body))
        assert resp.content == "Hi"
        assert resp.usage == TokenUsage(4, 1, 5)
        assert resp.finish_reason == "stop"
        assert resp.provider == "openai"
        assert resp.model == "gpt-4o-mini-2024-07-18"
        assert resp.metadata["id"] == "abc"
        assert resp.cache_hit is False

    def test_legacy_text_shape(self, normalizer):
        body = {"choices": [{"text": "old style", "finish_reason": "length"}]}
        resp = normalizer.normalize(ProviderId.DEEPSEEK, _raw(ProviderId.DEEPSEEK, body))
        assert resp.content == "old style"
        assert resp.finish_reason == "length"
        assert resp.usage == TokenUsage()

    def test_tool_calls_give_empty_content(self, normalizer):
        body = {
            "choices": [
                {"message": {"content": None, "tool_calls": [{"id": "t1"}]}, "finish_reason": "tool_calls"}
            ]
        }
        resp = normalizer.normalize(ProviderId.GROQ, _raw(ProviderId.GROQ, body))
        assert resp.content == ""
        assert resp.finish_reason == "tool_use"

    def test_tool_calls_are_kept(self, normalizer):
        body = {
            "choices": [
                {
                    "message": {
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'},
                            }
                        ],
                    },
                    "finish_reason": "tool_calls",
                }
            ]
        }
        resp = normalizer.normalize(ProviderId.OPENAI, _raw(ProviderId.OPENAI, body))

        assert resp.has_tool_calls
        call = resp.tool_calls[0]
        assert (call.id, call.name, dict(call.arguments)) == ("call_1", "get_weather", {"city": "Paris"})
        restored = Response.from_dict(resp.to_dict())
        assert restored.tool_calls == resp.tool_calls

    def test_unparsable_tool_arguments_kept_raw(self, normalizer):
        body = {
            "choices": [
                {
                    "message": {
                        "content": "",
                        "tool_calls": [{"id": "c", "function": {"name": "f", "arguments": "{not json"}}],
                    }
                }
            ]
        }
        call = normalizer.normalize(ProviderId.OPENAI, _raw(ProviderId.OPENAI, body)).tool_calls[0]
        assert call.arguments == {}
        assert call.raw_arguments == "{not json"

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"choices": []},
            {"choices": [{"message": {"role": "assistant"}}]},
            {"choices": [{"message": {"content": 42}}]},
        ],
    )
    def test_malformed(self, normalizer, body):
        with pytest.raises(MalformedResponseError) as exc_info:
            normalizer.normalize(ProviderId.OPENAI, _raw(ProviderId.OPENAI, body))
        assert exc_info.value.provider == "openai"


class TestContentBlocks:
    def test_anthropic_response(self, normalizer):
        body = {
            "id": "msg_1",
            "model": "claude-3-5-haiku-20241022",
            "content": [{"type": "text", "text": "Hello "}, {"type": "text", "text": "there"}],
            "stop_reason": "max_tokens",
            "usage": {"input_tokens": 10, "output_tokens": 2},
        }
        resp = normalizer.normalize(ProviderId.ANTHROPIC, _raw(ProviderId.ANTHROPIC, body))
        assert resp.content == "Hello there"
        assert resp.finish_reason == "length"
        assert resp.usage == TokenUsage(10, 2, 12)

    def test_tool_use_blocks(self, normalizer):
        body = {
            "content": [
                {"type": "text", "text": "Checking."},
                {"type": "tool_use", "id": "toolu_1", "name": "get_weather", "input": {"city": "Oslo"}},
            ],
            "stop_reason": "tool_use",
        }
        resp = normalizer.normalize(ProviderId.ANTHROPIC, _raw(ProviderId.ANTHROPIC, body))
        assert resp.content == "Checking."
        assert resp.finish_reason == "tool_use"
        assert resp.tool_calls[0].name == "get_weather"
        assert resp.tool_calls[0].arguments == {"city": "Oslo"}

    def test_missing_text_is_malformed(self, normalizer):
        body = {"content": [{"type": "image"}], "stop_reason": "end_turn"}
        with pytest.raises(MalformedResponseError):
            normalizer.normalize(ProviderId.ANTHROPIC, _raw(ProviderId.ANTHROPIC, body))


class TestCandidates:
    def test_gemini_response(self, normalizer):
        body = {
            "candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2, "totalTokenCount": 6},
            "modelVersion": "gemini-2.0-flash-001",
        }
        resp = normalizer.normalize(ProviderId.GEMINI, _raw(ProviderId.GEMINI, body))
        assert resp.content == "ab"
        assert resp.finish_reason == "stop"
        assert resp.usage.total_tokens == 6
        assert resp.model == "gemini-2.0-flash-001"

    def test_safety_stop_without_text(self, normalizer):
        body = {"candidates": [{"finishReason": "SAFETY", "safetyRatings": [{"category": "X"}]}]}
        resp = normalizer.normalize(ProviderId.GEMINI, _raw(ProviderId.GEMINI, body))
        assert resp.content == ""
        assert resp.finish_reason == "content_filter"
        assert resp.metadata["safety_ratings"] == [{"category": "X"}]

    def test_function_call_parts(self, normalizer):
        body = {
            "candidates": [
                {
                    "content": {"parts": [{"functionCall": {"name": "get_weather", "args": {"city": "Rome"}}}]},
                    "finishReason": "STOP",
                }
            ]
        }
        resp = normalizer.normalize(ProviderId.GEMINI, _raw(ProviderId.GEMINI, body))
        assert resp.content == ""
        assert resp.finish_reason == "tool_use"
        assert resp.tool_calls[0].id == "call_0"
        assert resp.tool_calls[0].arguments == {"city": "Rome"}

    def test_blocked_prompt_is_rejected(self, normalizer):
        body = {"promptFeedback": {"blockReason": "SAFETY"}}
        with pytest.raises(ProviderRejected) as exc_info:
            normalizer.normalize(ProviderId.GEMINI, _raw(ProviderId.GEMINI, body))
        assert exc_info.value.error_type == "content_filter"

    def test_no_candidates_is_malformed(self, normalizer):
        with pytest.raises(MalformedResponseError):
            normalizer.normalize(ProviderId.GEMINI, _raw(ProviderId.GEMINI, {"candidates": []}))


class TestOllama:
    def test_chat_shape(self, normalizer):
        body = {"model": "llama3.2", "message": {"content": "yo"}, "prompt_eval_count": 7, "eval_count": 3}
        resp = normalizer.normalize(ProviderId.OLLAMA, _raw(ProviderId.OLLAMA, body))
        assert resp.content == "yo"
        assert resp.usage == TokenUsage(7, 3, 10)
        assert resp.finish_reason == "stop"

    def test_generate_shape(self, normalizer):
        resp = normalizer.normalize(ProviderId.OLLAMA, _raw(ProviderId.OLLAMA, {"response": "gen", "done": True}))
        assert resp.content == "gen"


class TestFinishReasons:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("stop", "stop"),
            ("end_turn", "stop"),
            ("STOP", "stop"),
            ("MAX_TOKENS", "length"),
            ("length", "length"),
            ("SAFETY", "content_filter"),
            ("tool_calls", "tool_use"),
            (None, "stop"),
            ("something_new", "something_new"),
        ],
    )
    def test_mapping(self, raw, expected):
        assert map_finish_reason(raw) == expected


# ==========================================================================
# Test: Embeddings
# ==========================================================================


class TestEmbeddings:
    def test_openai_sorted_by_index(self, normalizer):
        body = {
            "model": "text-embedding-3-small",
            "data": [{"index": 1, "embedding": [2, 2]}, {"index": 0, "embedding": [1, 1]}],
            "usage": {"prompt_tokens": 4, "total_tokens": 4},
        }
        result = normalizer.normalize_embeddings(ProviderId.OPENAI, _raw(ProviderId.OPENAI, body))
        assert result.vectors == ((1.0, 1.0), (2.0, 2.0))
        assert result.usage.prompt_tokens == 4
        assert result.dimensions == 2

    def test_gemini_single_and_batch(self, normalizer):
        single = normalizer.normalize_embeddings(
            ProviderId.GEMINI, _raw(ProviderId.GEMINI, {"embedding": {"values": [0.5]}})
        )
        batch = normalizer.normalize_embeddings(
            ProviderId.GEMINI, _raw(ProviderId.GEMINI, {"embeddings": [{"values": [1]}, {"values": [2]}]})
        )
        assert single.vectors == ((0.5,),)
        assert len(batch.vectors) == 2

    def test_ollama_embed(self, normalizer):
        body = {"embeddings": [[0.1, 0.2]], "prompt_eval_count": 3}
        result = normalizer.normalize_embeddings(ProviderId.OLLAMA, _raw(ProviderId.OLLAMA, body))
        assert result.vectors == ((0.1, 0.2),)
        assert result.usage.prompt_tokens == 3

    def test_empty_is_malformed(self, normalizer):
        with pytest.raises(MalformedResponseError):
            normalizer.normalize_embeddings(ProviderId.OPENAI, _raw(ProviderId.OPENAI, {"data": []}))


# ==========================================================================
# Test: Streaming parsers
# ==========================================================================


class TestChatStream:
    def test_deltas_then_done(self, normalizer):
        parser = normalizer.stream_parser(ProviderId.OPENAI)
        lines = [
            ": keep-alive",
            'data: {"choices":[{"delta":{"role":"assistant"}}]}',
            'data: {"choices":[{"delta":{"content":"Hel"}}]}',
            "",
            'data: {"choices":[{"delta":{"content":"lo"},"finish_reason":"stop"}]}',
            'data: {"choices":[],"usage":{"prompt_tokens":5,"completion_tokens":2,"total_tokens":7}}',
            "data: [DONE]",
        ]
        chunks = _feed_all(parser, lines)

        assert "".join(c.content for c in chunks) == "Hello"
        assert [c.is_complete for c in chunks] == [False, False, True]
        final = chunks[-1]
        assert final.finish_reason == "stop"
        assert final.usage == TokenUsage(5, 2, 7)

    def test_nothing_after_completion(self, normalizer):
        parser = normalizer.stream_parser(ProviderId.OPENAI)
        assert normalize_chunk(parser, "data: [DONE]").is_complete
        assert normalize_chunk(parser, 'data: {"choices":[{"delta":{"content":"late"}}]}') is None

    def test_invalid_json_frame(self, normalizer):
        parser = normalizer.stream_parser(ProviderId.MISTRAL)
        with pytest.raises(MalformedResponseError):
            normalize_chunk(parser, "data: {not json")

    def test_error_frame(self, normalizer):
        parser = normalizer.stream_parser(ProviderId.OPENROUTER)
        with pytest.raises(ProviderRejected) as exc_info:
            normalize_chunk(parser, 'data: {"error":{"message":"upstream died","code":"server_error"}}')
        assert exc_info.value.error_type == "server_error"


class TestContentBlockStream:
    def test_anthropic_event_sequence(self, normalizer):
        parser = normalizer.stream_parser(ProviderId.ANTHROPIC)
        events = [
            ("message_start", {"type": "message_start", "message": {"usage": {"input_tokens": 9, "output_tokens": 1}}}),
            ("content_block_start", {"type": "content_block_start", "index": 0}),
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}}),
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "!"}}),
            ("ping", {"type": "ping"}),
            ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 4}}),
            ("message_stop", {"type": "message_stop"}),
        ]
        lines = []
        for name, data in events:
            lines += [f"event: {name}", f"data: {json.dumps(data)}", ""]

        chunks = _feed_all(parser, lines)

        assert "".join(c.content for c in chunks) == "Hi!"
        assert chunks[-1].is_complete
        assert chunks[-1].finish_reason == "stop"
        assert chunks[-1].usage == TokenUsage(9, 4, 13)

    def test_error_event(self, normalizer):
        parser = normalizer.stream_parser(ProviderId.ANTHROPIC)
        normalize_chunk(parser, "event: error")
        with pytest.raises(ProviderRejected) as exc_info:
            normalize_chunk(parser, 'data: {"type":"error","error":{"type":"overloaded_error","message":"busy"}}')
        assert exc_info.value.error_type == "overloaded_error"


class TestCandidatesStream:
    def test_gemini_frames(self, normalizer):
        parser = normalizer.stream_parser(ProviderId.GEMINI)
        lines = [
            'data: {"candidates":[{"content":{"parts":[{"text":"one "}]}}]}',
            'data: {"candidates":[{"content":{"parts":[{"text":"two"}]},"finishReason":"STOP"}],'
            '"usageMetadata":{"promptTokenCount":2,"candidatesTokenCount":2,"totalTokenCount":4}}',
        ]
        chunks = _feed_all(parser, lines)

        assert [c.content for c in chunks] == ["one ", "two"]
        assert chunks[-1].is_complete
        assert chunks[-1].usage == TokenUsage(2, 2, 4)


class TestOllamaStream:
    def test_ndjson(self, normalizer):
        parser = normalizer.stream_parser(ProviderId.OLLAMA)
        lines = [
            '{"message":{"content":"a"},"done":false}',
            '{"message":{"content":"b"},"done":false}',
            '{"message":{"content":""},"done":true,"done_reason":"length","prompt_eval_count":3,"eval_count":2}',
        ]
        chunks = _feed_all(parser, lines)

        assert "".join(c.content for c in chunks) == "ab"
        assert chunks[-1].is_complete
        assert chunks[-1].finish_reason == "length"
        assert chunks[-1].usage == TokenUsage(3, 2, 5)
