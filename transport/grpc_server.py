"""
gRPC transport layer for ``MahjongAIService``.

Delegates all translation logic to ``MahjongAIRelay``; this module only
converts between protobuf messages and the relay's dataclasses.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from concurrent import futures
from typing import AsyncIterator

import structlog
from google.protobuf.timestamp_pb2 import Timestamp
from grpc import aio as grpc_aio
from grpc_reflection.v1alpha import reflection

from core.config import Settings, get_settings
from services.ai_service import MahjongAIService
from services.gemini_provider import GeminiProvider
from transport.relay import (
    AskInput,
    AskReply,
    ErrorEnvelope,
    HealthReply,
    HealthStatus,
    MahjongAIRelay,
    ResponseMetadata,
    StreamFrame,
)

try:
    from transport.proto import mahjong_ai_pb2, mahjong_ai_pb2_grpc
except ImportError as e:
    raise ImportError(
        "gRPC code not generated. Run: python scripts/generate_proto.py"
    ) from e

logger = structlog.get_logger(__name__)

SERVICE_FULL_NAME = mahjong_ai_pb2.DESCRIPTOR.services_by_name["MahjongAIService"].full_name


# ── Message conversion ───────────────────────────────────────────────


def ask_input_from_pb(request: mahjong_ai_pb2.AskMahjongAIRequest) -> AskInput:
    return AskInput(
        prompt=request.prompt,
        max_tokens=request.max_tokens,
        temperature=request.temperature,
        context=tuple(request.context),
        request_id=request.metadata.request_id if request.HasField("metadata") else "",
    )


def _timestamp(metadata: ResponseMetadata) -> Timestamp:
    ts = Timestamp()
    ts.FromDatetime(metadata.timestamp)
    return ts


def _metadata_to_pb(metadata: ResponseMetadata) -> mahjong_ai_pb2.ResponseMetadata:
    return mahjong_ai_pb2.ResponseMetadata(
        request_id=metadata.request_id,
        timestamp=_timestamp(metadata),
        processing_time_ms=metadata.processing_time_ms,
        server_version=metadata.server_version,
    )


def _error_to_pb(error: ErrorEnvelope) -> mahjong_ai_pb2.ErrorInfo:
    return mahjong_ai_pb2.ErrorInfo(
        code=error.code,
        message=error.message,
        details=error.detail,
    )


def ask_reply_to_pb(reply: AskReply) -> mahjong_ai_pb2.AskMahjongAIResponse:
    response = mahjong_ai_pb2.AskMahjongAIResponse(
        metadata=_metadata_to_pb(reply.metadata),
        tokens_used=reply.tokens_used,
        confidence=reply.confidence,
    )
    if reply.error is not None:
        response.error.CopyFrom(_error_to_pb(reply.error))
    else:
        response.response = reply.text or ""
    return response


def stream_frame_to_pb(frame: StreamFrame) -> mahjong_ai_pb2.AskMahjongAIStreamResponse:
    message = mahjong_ai_pb2.AskMahjongAIStreamResponse(is_final=frame.is_final)
    if frame.error is not None:
        message.error.CopyFrom(_error_to_pb(frame.error))
    elif frame.metadata is not None:
        message.metadata.CopyFrom(_metadata_to_pb(frame.metadata))
        message.tokens_used = frame.tokens_used
        message.confidence = frame.confidence
    else:
        message.text_chunk = frame.text_chunk or ""
    return message


_HEALTH_STATUS = {
    HealthStatus.SERVING: mahjong_ai_pb2.HealthCheckResponse.SERVING,
    HealthStatus.NOT_SERVING: mahjong_ai_pb2.HealthCheckResponse.NOT_SERVING,
}


def health_reply_to_pb(reply: HealthReply) -> mahjong_ai_pb2.HealthCheckResponse:
    ts = Timestamp()
    ts.FromDatetime(reply.timestamp)
    return mahjong_ai_pb2.HealthCheckResponse(
        status=_HEALTH_STATUS[reply.status],
        message=reply.message,
        timestamp=ts,
    )


# ── Servicer ─────────────────────────────────────────────────────────


class MahjongAIServicer(mahjong_ai_pb2_grpc.MahjongAIServiceServicer):
    """gRPC servicer that wraps the relay."""

    def __init__(self, relay: MahjongAIRelay) -> None:
        self._relay = relay

    async def AskMahjongAI(
        self,
        request: mahjong_ai_pb2.AskMahjongAIRequest,
        context: grpc_aio.ServicerContext,
    ) -> mahjong_ai_pb2.AskMahjongAIResponse:
        """Handle an ``AskMahjongAI`` RPC call."""
        logger.info("grpc.ask.request", prompt_len=len(request.prompt))
        reply = await self._relay.ask(ask_input_from_pb(request))
        return ask_reply_to_pb(reply)

    async def AskMahjongAIStream(
        self,
        request: mahjong_ai_pb2.AskMahjongAIRequest,
        context: grpc_aio.ServicerContext,
    ) -> AsyncIterator[mahjong_ai_pb2.AskMahjongAIStreamResponse]:
        """
        Handle an ``AskMahjongAIStream`` RPC call.

        Client cancellation cancels this handler; the relay then closes the
        completion stream on its way out.
        """
        logger.info("grpc.stream.request", prompt_len=len(request.prompt))
        async with contextlib.aclosing(
            self._relay.ask_stream(ask_input_from_pb(request))
        ) as frames:
            async for frame in frames:
                yield stream_frame_to_pb(frame)

    async def HealthCheck(
        self,
        request: mahjong_ai_pb2.HealthCheckRequest,
        context: grpc_aio.ServicerContext,
    ) -> mahjong_ai_pb2.HealthCheckResponse:
        logger.info("grpc.health_check.request")
        return health_reply_to_pb(await self._relay.health())


# ── Server ───────────────────────────────────────────────────────────


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops; Ctrl+C still interrupts.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)


def create_server(
    relay: MahjongAIRelay, settings: Settings
) -> tuple[grpc_aio.Server, int]:
    """Build the server and bind its port; returns the bound port."""
    server = grpc_aio.server(
        futures.ThreadPoolExecutor(max_workers=settings.grpc_max_workers),
    )
    mahjong_ai_pb2_grpc.add_MahjongAIServiceServicer_to_server(
        MahjongAIServicer(relay), server
    )
    if settings.grpc_reflection:
        reflection.enable_server_reflection(
            (SERVICE_FULL_NAME, reflection.SERVICE_NAME), server
        )
    port = server.add_insecure_port(f"{settings.grpc_host}:{settings.grpc_port}")
    return server, port


async def serve_grpc() -> None:
    """Boot the async gRPC server and run until SIGINT / SIGTERM."""
    settings = get_settings()

    # Build dependencies
    service = MahjongAIService(GeminiProvider(settings), settings=settings)
    await service.startup()
    try:
        server, port = create_server(MahjongAIRelay(service, settings), settings)
        await server.start()
        logger.info("grpc_server.started", host=settings.grpc_host, port=port)

        stop = asyncio.Event()
        _install_signal_handlers(stop)
        await stop.wait()
        logger.info(
            "grpc_server.stopping",
            grace_seconds=settings.grpc_shutdown_grace_seconds,
        )
        # Stops accepting new calls; in-flight calls get the grace period,
        # then are cancelled.
        await server.stop(settings.grpc_shutdown_grace_seconds)
    finally:
        await service.shutdown()
        logger.info("grpc_server.stopped")
