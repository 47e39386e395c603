"""
FastAPI HTTP/JSON transport layer.

Mirrors the gRPC service on Connect-style paths with camelCase JSON:
    • ``POST /mahjong.ai.v1.MahjongAIService/AskMahjongAI``
    • ``POST /mahjong.ai.v1.MahjongAIService/AskMahjongAIStream`` (NDJSON)
    • ``GET|POST /mahjong.ai.v1.MahjongAIService/HealthCheck``
    • ``GET  /health`` (lightweight liveness probe)

Domain errors come back as HTTP 200 with an ``error`` object in the body,
exactly like the gRPC payloads.
"""

from __future__ import annotations

import contextlib
from datetime import datetime
from typing import AsyncIterator

import orjson
import structlog
from fastapi import APIRouter, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.config import get_settings
from transport.relay import (
    AskInput,
    AskReply,
    ErrorEnvelope,
    HealthReply,
    MahjongAIRelay,
    ResponseMetadata,
    StreamFrame,
)

logger = structlog.get_logger(__name__)

router = APIRouter()

SERVICE_PATH = "/mahjong.ai.v1.MahjongAIService"
NDJSON_MEDIA_TYPE = "application/x-ndjson"

# ── Pydantic request / response models (mirror proto schema) ─────────


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestMetadataModel(_CamelModel):
    request_id: str = ""


class AskRequestModel(_CamelModel):
    """Payload accepted by ``AskMahjongAI`` / ``AskMahjongAIStream``.

    ``prompt`` is not length-checked here: an empty prompt must reach the
    relay so it is answered with an ``INVALID_ARGUMENT`` envelope.
    """

    prompt: str = ""
    max_tokens: int = Field(default=0, description="<= 0 means server default")
    temperature: float = Field(default=0.0, description="<= 0 means server default")
    context: list[str] = Field(default_factory=list)
    metadata: RequestMetadataModel | None = None

    def to_input(self) -> AskInput:
        return AskInput(
            prompt=self.prompt,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            context=tuple(self.context),
            request_id=self.metadata.request_id if self.metadata else "",
        )


class ErrorInfoModel(_CamelModel):
    code: str
    message: str
    details: str

    @classmethod
    def from_envelope(cls, error: ErrorEnvelope) -> ErrorInfoModel:
        return cls(code=error.code, message=error.message, details=error.detail)


class ResponseMetadataModel(_CamelModel):
    request_id: str
    timestamp: datetime
    processing_time_ms: int
    server_version: str

    @classmethod
    def from_metadata(cls, metadata: ResponseMetadata) -> ResponseMetadataModel:
        return cls(
            request_id=metadata.request_id,
            timestamp=metadata.timestamp,
            processing_time_ms=metadata.processing_time_ms,
            server_version=metadata.server_version,
        )


class AskResponseModel(_CamelModel):
    """Exactly one of ``response`` / ``error`` is present."""

    response: str | None = None
    error: ErrorInfoModel | None = None
    metadata: ResponseMetadataModel
    tokens_used: int = 0
    confidence: float = 0.0

    @classmethod
    def from_reply(cls, reply: AskReply) -> AskResponseModel:
        return cls(
            response=reply.text,
            error=ErrorInfoModel.from_envelope(reply.error) if reply.error else None,
            metadata=ResponseMetadataModel.from_metadata(reply.metadata),
            tokens_used=reply.tokens_used,
            confidence=reply.confidence,
        )


class StreamResponseModel(_CamelModel):
    text_chunk: str | None = None
    error: ErrorInfoModel | None = None
    metadata: ResponseMetadataModel | None = None
    is_final: bool = False
    tokens_used: int = 0
    confidence: float = 0.0

    @classmethod
    def from_frame(cls, frame: StreamFrame) -> StreamResponseModel:
        return cls(
            text_chunk=frame.text_chunk,
            error=ErrorInfoModel.from_envelope(frame.error) if frame.error else None,
            metadata=(
                ResponseMetadataModel.from_metadata(frame.metadata)
                if frame.metadata
                else None
            ),
            is_final=frame.is_final,
            tokens_used=frame.tokens_used,
            confidence=frame.confidence,
        )


class HealthCheckResponseModel(_CamelModel):
    status: str
    message: str
    timestamp: datetime

    @classmethod
    def from_reply(cls, reply: HealthReply) -> HealthCheckResponseModel:
        return cls(status=reply.status.value, message=reply.message, timestamp=reply.timestamp)


class LivenessResponse(BaseModel):
    status: str = "ok"
    service: str = ""
    version: str = ""


# ── Endpoints ────────────────────────────────────────────────────────

# The relay is injected at startup from ``main.py`` via ``set_relay()``.
# This avoids circular imports and keeps the transport layer decoupled.

_relay: MahjongAIRelay | None = None


def set_relay(relay: MahjongAIRelay | None) -> None:
    """Called once from ``main.py`` during app lifespan."""
    global _relay  # noqa: PLW0603
    _relay = relay


def _require_relay() -> MahjongAIRelay:
    if _relay is None:
        raise HTTPException(status_code=503, detail="Service not initialised")
    return _relay


def _encode_frame(frame: StreamFrame) -> bytes:
    payload = StreamResponseModel.from_frame(frame).model_dump(
        mode="json", by_alias=True, exclude_none=True
    )
    return orjson.dumps(payload) + b"\n"


async def _ndjson(frames: AsyncIterator[StreamFrame]) -> AsyncIterator[bytes]:
    # Client disconnect cancels this generator; aclosing closes the relay.
    async with contextlib.aclosing(frames):
        async for frame in frames:
            yield _encode_frame(frame)


@router.get("/health", response_model=LivenessResponse)
async def health() -> LivenessResponse:
    """Liveness probe; does not call the provider."""
    settings = get_settings()
    return LivenessResponse(
        status="ok",
        service=settings.service_name,
        version=settings.server_version,
    )


@router.post(
    f"{SERVICE_PATH}/AskMahjongAI",
    response_model=AskResponseModel,
    response_model_exclude_none=True,
)
async def ask_mahjong_ai(body: AskRequestModel) -> AskResponseModel:
    """Unary ask. Mirrors the gRPC ``AskMahjongAI`` RPC."""
    relay = _require_relay()
    logger.info("rest.ask.request", prompt_len=len(body.prompt))
    reply = await relay.ask(body.to_input())
    return AskResponseModel.from_reply(reply)


@router.post(f"{SERVICE_PATH}/AskMahjongAIStream")
async def ask_mahjong_ai_stream(body: AskRequestModel) -> StreamingResponse:
    """Server-streaming ask; one JSON frame per line."""
    relay = _require_relay()
    logger.info("rest.stream.request", prompt_len=len(body.prompt))
    return StreamingResponse(
        _ndjson(relay.ask_stream(body.to_input())),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.api_route(
    f"{SERVICE_PATH}/HealthCheck",
    methods=["GET", "POST"],
    response_model=HealthCheckResponseModel,
)
async def health_check() -> HealthCheckResponseModel:
    """Readiness check through the provider."""
    relay = _require_relay()
    logger.info("rest.health_check.request")
    return HealthCheckResponseModel.from_reply(await relay.health())
