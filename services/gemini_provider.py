"""
Gemini provider: async client for the Generative Language REST API.

Responsibilities:
    • Assemble the request body (system instruction + context + prompt).
    • Call ``generateContent`` / ``streamGenerateContent`` over HTTPS.
    • Parse candidates, usage metadata and SSE chunks into domain results.

Sampling parameters travel with each call as an immutable
``GenerationConfig``; the shared ``httpx.AsyncClient`` holds no per-call
state.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterable

import httpx
import orjson
import structlog

from core.config import Settings, get_settings
from domain.errors import ProviderError, ProviderUnavailableError
from domain.models import (
    CHARS_PER_TOKEN,
    FIXED_CONFIDENCE,
    CompletionRequest,
    CompletionResult,
)
from domain.ports import AIProvider
from domain.stream import CompletionStream, StreamChunk, StreamCompleted, StreamEvent

logger = structlog.get_logger(__name__)


# ── Per-call configuration ───────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class GenerationConfig:
    """Sampling parameters for exactly one provider call."""

    temperature: float
    max_output_tokens: int

    @classmethod
    def for_request(cls, request: CompletionRequest) -> GenerationConfig:
        return cls(
            temperature=request.temperature,
            max_output_tokens=request.max_output_tokens,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "temperature": self.temperature,
            "maxOutputTokens": self.max_output_tokens,
        }


# ── Response helpers ─────────────────────────────────────────────────


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _candidates(data: dict[str, Any]) -> list[dict[str, Any]]:
    return [c for c in data.get("candidates") or [] if isinstance(c, dict)]


def _text_parts(candidate: dict[str, Any]) -> Iterable[str]:
    """Yield the text parts of one candidate, skipping non-text parts."""
    content = candidate.get("content") or {}
    for part in content.get("parts") or []:
        text = part.get("text")
        if isinstance(text, str):
            yield text


def _error_message(data: Any) -> str | None:
    if isinstance(data, dict) and data.get("error"):
        error = data["error"]
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error)
    return None


def _decode(raw: bytes | str) -> dict[str, Any]:
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise ProviderError(f"undecodable provider response: {exc}") from exc
    if not isinstance(data, dict):
        raise ProviderError("unexpected provider response shape")
    message = _error_message(data)
    if message is not None:
        raise ProviderError(f"provider error: {message}")
    return data


def _raise_for_status(status_code: int, body: bytes) -> None:
    if status_code < 400:
        return
    try:
        message = _error_message(orjson.loads(body))
    except orjson.JSONDecodeError:
        message = None
    detail = message or body[:500].decode("utf-8", errors="replace")
    raise ProviderError(f"provider returned HTTP {status_code}: {detail}")


async def _iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the ``data:`` payload of each server-sent event."""
    buffer: list[str] = []
    async for line in response.aiter_lines():
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer.clear()
            continue
        if line.startswith("data:"):
            buffer.append(line[5:].lstrip())
    if buffer:
        yield "\n".join(buffer)


# ── Provider ─────────────────────────────────────────────────────────


class GeminiProvider(AIProvider):
    """Async Gemini client that communicates over HTTPS."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # -- lifecycle ----------------------------------------------------

    async def startup(self) -> None:
        """Create the shared ``httpx.AsyncClient``."""
        if not self._settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY environment variable is required")
        self._client = httpx.AsyncClient(
            base_url=self._settings.gemini_base_url,
            headers={"x-goog-api-key": self._settings.gemini_api_key},
            timeout=httpx.Timeout(
                connect=10.0,
                read=self._settings.llm_timeout_seconds,
                write=10.0,
                pool=10.0,
            ),
            transport=self._transport,
        )
        logger.info(
            "gemini_provider.started",
            base_url=self._settings.gemini_base_url,
            model=self._settings.gemini_model,
        )

    async def shutdown(self) -> None:
        """Close the HTTP connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("gemini_provider.shutdown")

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GeminiProvider not started, call startup() first")
        return self._client

    # -- request construction -----------------------------------------

    def _endpoint(self, method: str) -> str:
        return f"/v1beta/models/{self._settings.gemini_model}:{method}"

    def build_payload(
        self, request: CompletionRequest, config: GenerationConfig
    ) -> dict[str, Any]:
        """
        Assemble the request body.

        All segments go into a single user turn: prior context first,
        then the prompt.
        """
        payload: dict[str, Any] = {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": segment} for segment in request.segments()],
                }
            ],
            "generationConfig": config.to_payload(),
        }
        if self._settings.gemini_system_instruction:
            payload["systemInstruction"] = {
                "parts": [{"text": self._settings.gemini_system_instruction}]
            }
        return payload

    def _log_request(self, event: str, request: CompletionRequest, config: GenerationConfig) -> None:
        logger.debug(
            event,
            model=self._settings.gemini_model,
            temperature=config.temperature,
            max_tokens=config.max_output_tokens,
            prompt_len=len(request.prompt),
            context_count=len(request.prior_context),
        )

    # -- unary --------------------------------------------------------

    async def ask(self, request: CompletionRequest) -> CompletionResult:
        """Send one ``generateContent`` call and return the parsed result."""
        client = self._require_client()
        config = GenerationConfig.for_request(request)
        payload = self.build_payload(request, config)
        self._log_request("gemini_provider.request", request, config)

        start = time.perf_counter()
        try:
            response = await client.post(self._endpoint("generateContent"), json=payload)
        except httpx.HTTPError as exc:
            logger.error("gemini_provider.request_failed", error=str(exc))
            raise ProviderError(f"failed to generate content: {exc}") from exc

        _raise_for_status(response.status_code, response.content)
        data = _decode(response.content)
        processing_ms = _elapsed_ms(start)

        candidates = _candidates(data)
        if not candidates or not (candidates[0].get("content") or {}).get("parts"):
            logger.error("gemini_provider.empty_response")
            raise ProviderUnavailableError()

        text = "".join(_text_parts(candidates[0]))
        if not text:
            logger.error("gemini_provider.no_text_content")
            raise ProviderUnavailableError()

        usage = data.get("usageMetadata") or {}
        result = CompletionResult(
            text=text,
            tokens_used=int(usage.get("totalTokenCount") or 0),
            confidence=FIXED_CONFIDENCE,
            processing_ms=processing_ms,
        )

        logger.debug(
            "gemini_provider.response",
            response_len=len(result.text),
            tokens_used=result.tokens_used,
            processing_ms=result.processing_ms,
        )
        return result

    # -- streaming ----------------------------------------------------

    def ask_stream(self, request: CompletionRequest) -> CompletionStream:
        return CompletionStream(
            self._generate_stream(request),
            buffer_size=self._settings.stream_buffer_size,
        )

    async def _generate_stream(self, request: CompletionRequest) -> AsyncIterator[StreamEvent]:
        """
        Produce one chunk per text part, then a single completion event.

        Token usage is estimated from the emitted character count.  Any
        error propagates out of the generator and ends the stream without
        a completion event.
        """
        client = self._require_client()
        config = GenerationConfig.for_request(request)
        payload = self.build_payload(request, config)
        self._log_request("gemini_provider.stream_request", request, config)

        start = time.perf_counter()
        total_chars = 0
        try:
            async with client.stream(
                "POST",
                self._endpoint("streamGenerateContent"),
                params={"alt": "sse"},
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    _raise_for_status(response.status_code, await response.aread())

                async for data in _iter_sse_data(response):
                    chunk = _decode(data)
                    for candidate in _candidates(chunk):
                        for text in _text_parts(candidate):
                            total_chars += len(text)
                            yield StreamChunk(CompletionResult(text=text))
        except httpx.HTTPError as exc:
            logger.error("gemini_provider.stream_failed", error=str(exc))
            raise ProviderError(f"failed to get stream response: {exc}") from exc

        processing_ms = _elapsed_ms(start)
        logger.debug(
            "gemini_provider.stream_completed",
            total_response_len=total_chars,
            processing_ms=processing_ms,
        )
        yield StreamCompleted(
            CompletionResult(
                text="",
                tokens_used=total_chars // CHARS_PER_TOKEN,
                confidence=FIXED_CONFIDENCE,
                processing_ms=processing_ms,
            )
        )
