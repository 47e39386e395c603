"""
Transport-agnostic request / response translation.

Both bindings (gRPC and HTTP/JSON) call ``MahjongAIRelay`` and only convert
its wire-neutral dataclasses to their own message types.  Domain errors are
always carried in the payload, never raised to the transport.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator

import structlog

from core.config import Settings, get_settings
from domain.errors import MahjongAIError
from domain.models import DEFAULT_MAX_OUTPUT_TOKENS, DEFAULT_TEMPERATURE
from domain.stream import StreamChunk, StreamCompleted
from services.ai_service import MahjongAIService

logger = structlog.get_logger(__name__)

INVALID_ARGUMENT = "INVALID_ARGUMENT"
INTERNAL_ERROR = "INTERNAL_ERROR"


# ── Wire-neutral messages ────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class AskInput:
    prompt: str
    max_tokens: int = 0
    temperature: float = 0.0
    context: tuple[str, ...] = field(default_factory=tuple)
    request_id: str = ""


@dataclass(frozen=True, slots=True)
class ErrorEnvelope:
    code: str
    message: str
    detail: str


@dataclass(frozen=True, slots=True)
class ResponseMetadata:
    request_id: str
    timestamp: datetime
    processing_time_ms: int
    server_version: str


@dataclass(frozen=True, slots=True)
class AskReply:
    """Exactly one of ``text`` / ``error`` is set."""

    metadata: ResponseMetadata
    text: str | None = None
    error: ErrorEnvelope | None = None
    tokens_used: int = 0
    confidence: float = 0.0


@dataclass(frozen=True, slots=True)
class StreamFrame:
    """One of ``text_chunk`` / ``error`` / ``metadata`` is set."""

    is_final: bool
    text_chunk: str | None = None
    error: ErrorEnvelope | None = None
    metadata: ResponseMetadata | None = None
    tokens_used: int = 0
    confidence: float = 0.0


class HealthStatus(str, enum.Enum):
    SERVING = "SERVING"
    NOT_SERVING = "NOT_SERVING"


@dataclass(frozen=True, slots=True)
class HealthReply:
    status: HealthStatus
    message: str
    timestamp: datetime


EMPTY_PROMPT_ERROR = ErrorEnvelope(
    code=INVALID_ARGUMENT,
    message="prompt cannot be empty",
    detail="The prompt field is required and cannot be empty",
)


# ── Shared helpers ───────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_request_id(candidate: str | None) -> str:
    """Reuse the caller's request id, or mint a new one."""
    return candidate or str(uuid.uuid4())


def apply_binding_defaults(max_tokens: int, temperature: float) -> tuple[int, float]:
    """Replace zero / negative values field by field."""
    if max_tokens <= 0:
        max_tokens = DEFAULT_MAX_OUTPUT_TOKENS
    if temperature <= 0:
        temperature = DEFAULT_TEMPERATURE
    return max_tokens, temperature


def error_envelope(exc: Exception, detail: str) -> ErrorEnvelope:
    """Map a domain error to its envelope; unknown errors are internal."""
    return ErrorEnvelope(
        code=exc.code if isinstance(exc, MahjongAIError) else INTERNAL_ERROR,
        message=str(exc),
        detail=detail,
    )


# ── Relay ────────────────────────────────────────────────────────────


class MahjongAIRelay:
    """Translate wire-neutral requests into ``MahjongAIService`` calls."""

    def __init__(self, service: MahjongAIService, settings: Settings | None = None) -> None:
        self._service = service
        self._settings = settings or get_settings()

    def _metadata(self, request_id: str, processing_time_ms: int) -> ResponseMetadata:
        return ResponseMetadata(
            request_id=request_id,
            timestamp=utcnow(),
            processing_time_ms=processing_time_ms,
            server_version=self._settings.server_version,
        )

    async def ask(self, body: AskInput) -> AskReply:
        """Unary call. Never raises for domain errors."""
        start = time.perf_counter()
        request_id = resolve_request_id(body.request_id)
        log = logger.bind(request_id=request_id)
        log.info("relay.ask.request", prompt_len=len(body.prompt))

        def elapsed_ms() -> int:
            return int((time.perf_counter() - start) * 1000)

        if not body.prompt:
            log.error("relay.ask.empty_prompt")
            return AskReply(
                metadata=self._metadata(request_id, elapsed_ms()),
                error=EMPTY_PROMPT_ERROR,
            )

        max_tokens, temperature = apply_binding_defaults(body.max_tokens, body.temperature)
        try:
            result = await self._service.ask_mahjong_ai(
                body.prompt, max_tokens, temperature, body.context
            )
        except Exception as exc:
            log.error("relay.ask.failed", error=str(exc))
            return AskReply(
                metadata=self._metadata(request_id, elapsed_ms()),
                error=error_envelope(exc, "Failed to process AI request"),
            )

        log.info("relay.ask.succeeded", tokens_used=result.tokens_used)
        return AskReply(
            metadata=self._metadata(request_id, result.processing_ms),
            text=result.text,
            tokens_used=result.tokens_used,
            confidence=result.confidence,
        )

    async def ask_stream(self, body: AskInput) -> AsyncIterator[StreamFrame]:
        """
        Server-streaming call.

        Yields text frames in provider order and exactly one final frame.
        Cancelling the consuming task propagates ``CancelledError`` and
        closes the underlying completion stream.
        """
        request_id = resolve_request_id(body.request_id)
        log = logger.bind(request_id=request_id)
        log.info("relay.stream.request", prompt_len=len(body.prompt))

        if not body.prompt:
            log.error("relay.stream.empty_prompt")
            yield StreamFrame(is_final=True, error=EMPTY_PROMPT_ERROR)
            return

        max_tokens, temperature = apply_binding_defaults(body.max_tokens, body.temperature)
        stream = self._service.ask_mahjong_ai_stream(
            body.prompt, max_tokens, temperature, body.context
        )
        async with stream:
            async for event in stream:
                if isinstance(event, StreamChunk):
                    if event.result.text:
                        yield StreamFrame(is_final=False, text_chunk=event.result.text)
                elif isinstance(event, StreamCompleted):
                    log.info(
                        "relay.stream.completed",
                        tokens_used=event.result.tokens_used,
                        processing_ms=event.result.processing_ms,
                    )
                    yield StreamFrame(
                        is_final=True,
                        metadata=self._metadata(request_id, event.result.processing_ms),
                        tokens_used=event.result.tokens_used,
                        confidence=event.result.confidence,
                    )
                    return
                else:
                    log.error("relay.stream.failed", error=str(event.error))
                    yield StreamFrame(
                        is_final=True,
                        error=error_envelope(
                            event.error, "Failed to process streaming AI request"
                        ),
                    )
                    return

    async def health(self) -> HealthReply:
        """Never raises; failures become ``NOT_SERVING``."""
        try:
            await self._service.health_check()
        except Exception as exc:
            logger.error("relay.health.not_serving", error=str(exc))
            return HealthReply(HealthStatus.NOT_SERVING, str(exc), utcnow())
        return HealthReply(HealthStatus.SERVING, "Service is healthy", utcnow())
