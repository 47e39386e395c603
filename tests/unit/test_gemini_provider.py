from __future__ import annotations

import asyncio
from typing import Any, Callable

import httpx
import orjson
import pytest

from domain.errors import ProviderError, ProviderUnavailableError
from domain.models import CompletionRequest, CompletionResult
from domain.stream import StreamChunk, StreamCompleted, StreamEvent, StreamFailed
from fakes import make_settings
from services.gemini_provider import GeminiProvider, GenerationConfig

Handler = Callable[[httpx.Request], httpx.Response]


def _candidate(*texts: str) -> dict[str, Any]:
    return {"content": {"role": "model", "parts": [{"text": t} for t in texts]}}


def _sse(*payloads: dict[str, Any]) -> bytes:
    return b"".join(b"data: " + orjson.dumps(p) + b"\n\n" for p in payloads)


def _provider(handler: Handler) -> GeminiProvider:
    return GeminiProvider(
        make_settings(gemini_system_instruction="You are a mahjong expert."),
        transport=httpx.MockTransport(handler),
    )


def _ask(handler: Handler, request: CompletionRequest) -> CompletionResult:
    async def scenario() -> CompletionResult:
        provider = _provider(handler)
        await provider.startup()
        try:
            return await provider.ask(request)
        finally:
            await provider.shutdown()

    return asyncio.run(scenario())


def _stream(handler: Handler, request: CompletionRequest) -> list[StreamEvent]:
    async def scenario() -> list[StreamEvent]:
        provider = _provider(handler)
        await provider.startup()
        try:
            async with provider.ask_stream(request) as stream:
                return [event async for event in stream]
        finally:
            await provider.shutdown()

    return asyncio.run(scenario())


def test_ask_sends_context_then_prompt_with_per_call_config() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "candidates": [_candidate("Riichi ", "means...")],
                "usageMetadata": {"totalTokenCount": 42},
            },
        )

    result = _ask(handler, CompletionRequest("What is a riichi?", 500, 0.5, ("hi",)))

    assert result == CompletionResult("Riichi means...", 42, 0.8, result.processing_ms)
    assert result.processing_ms >= 0

    sent = seen[0]
    assert sent.url.path == "/v1beta/models/gemini-2.5-flash:generateContent"
    assert sent.headers["x-goog-api-key"] == "test-key"
    body = orjson.loads(sent.content)
    assert body["contents"][0]["parts"] == [{"text": "hi"}, {"text": "What is a riichi?"}]
    assert body["generationConfig"] == {"temperature": 0.5, "maxOutputTokens": 500}
    assert body["systemInstruction"]["parts"][0]["text"] == "You are a mahjong expert."


def test_ask_without_usage_metadata_reports_zero_tokens() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": [_candidate("ok")]})

    assert _ask(handler, CompletionRequest("q")).tokens_used == 0


def test_ask_with_null_token_count_reports_zero_tokens() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"candidates": [_candidate("ok")], "usageMetadata": {"totalTokenCount": None}},
        )

    assert _ask(handler, CompletionRequest("q")).tokens_used == 0


@pytest.mark.parametrize(
    "body",
    [
        {"candidates": []},
        {},
        {"candidates": [{"content": {"parts": []}}]},
        {"candidates": [{"content": {"parts": [{"inlineData": {}}]}}]},
        {"candidates": ["not a candidate"]},
    ],
)
def test_ask_without_usable_text_is_unavailable(body: dict[str, Any]) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    with pytest.raises(ProviderUnavailableError, match="AI service is unavailable"):
        _ask(handler, CompletionRequest("q"))


def test_ask_http_error_status_is_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"error": {"code": 403, "message": "API key invalid"}})

    with pytest.raises(ProviderError, match="HTTP 403: API key invalid"):
        _ask(handler, CompletionRequest("q"))


def test_ask_transport_failure_is_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError, match="failed to generate content"):
        _ask(handler, CompletionRequest("q"))


def test_ask_before_startup_is_rejected() -> None:
    provider = GeminiProvider(make_settings())
    with pytest.raises(RuntimeError, match="not started"):
        asyncio.run(provider.ask(CompletionRequest("q")))


def test_startup_requires_api_key() -> None:
    provider = GeminiProvider(make_settings(gemini_api_key=""))
    with pytest.raises(ValueError, match="GEMINI_API_KEY"):
        asyncio.run(provider.startup())


def test_stream_emits_chunks_in_order_then_one_completion() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            content=_sse(
                {"candidates": [_candidate("A")]},
                {"candidates": [_candidate("B", "C")]},
            ),
            headers={"content-type": "text/event-stream"},
        )

    events = _stream(handler, CompletionRequest("q"))

    assert [e.result.text for e in events if isinstance(e, StreamChunk)] == ["A", "B", "C"]
    assert all(e.result.tokens_used == 0 for e in events[:-1])
    assert isinstance(events[-1], StreamCompleted)
    assert events[-1].result.text == ""
    assert events[-1].result.confidence == 0.8
    assert seen[0].url.path.endswith(":streamGenerateContent")
    assert seen[0].url.params["alt"] == "sse"


def test_stream_skips_malformed_candidates() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_sse({"candidates": ["not a candidate", _candidate("A")]}),
            headers={"content-type": "text/event-stream"},
        )

    events = _stream(handler, CompletionRequest("q"))

    assert [e.result.text for e in events if isinstance(e, StreamChunk)] == ["A"]
    assert isinstance(events[-1], StreamCompleted)


def test_stream_estimates_tokens_from_emitted_characters() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_sse(
                {"candidates": [_candidate("a" * 25)]},
                {"candidates": [_candidate("b" * 15)]},
            ),
        )

    events = _stream(handler, CompletionRequest("q"))

    assert isinstance(events[-1], StreamCompleted)
    assert events[-1].result.tokens_used == 10


def test_stream_mid_stream_error_ends_without_completion() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_sse(
                {"candidates": [_candidate("A")]},
                {"error": {"code": 500, "message": "backend exploded"}},
                {"candidates": [_candidate("B")]},
            ),
        )

    events = _stream(handler, CompletionRequest("q"))

    assert [type(e) for e in events] == [StreamChunk, StreamFailed]
    assert isinstance(events[-1].error, ProviderError)
    assert "backend exploded" in str(events[-1].error)


def test_stream_http_error_status_fails_stream() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "quota exceeded"}})

    events = _stream(handler, CompletionRequest("q"))

    assert len(events) == 1
    assert isinstance(events[0], StreamFailed)
    assert "quota exceeded" in str(events[0].error)


def test_generation_config_is_built_per_request() -> None:
    first = GenerationConfig.for_request(CompletionRequest("a", 10, 0.1))
    second = GenerationConfig.for_request(CompletionRequest("b", 20, 1.5))
    assert first.to_payload() == {"temperature": 0.1, "maxOutputTokens": 10}
    assert second.to_payload() == {"temperature": 1.5, "maxOutputTokens": 20}
