from __future__ import annotations

import asyncio

import pytest

pytest.importorskip("grpc_tools")

from grpc import aio as grpc_aio  # noqa: E402

import transport.grpc_server as grpc_server  # noqa: E402
from fakes import StubProvider, make_settings  # noqa: E402
from services.ai_service import MahjongAIService  # noqa: E402
from transport.grpc_server import create_server, serve_grpc  # noqa: E402
from transport.proto import mahjong_ai_pb2, mahjong_ai_pb2_grpc  # noqa: E402
from transport.relay import MahjongAIRelay  # noqa: E402


async def _wait_for(predicate, timeout: float = 2.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


def _local_settings():
    return make_settings(grpc_host="127.0.0.1", grpc_port=0, grpc_reflection=False)


def test_unary_call_over_real_server() -> None:
    settings = _local_settings()
    service = MahjongAIService(StubProvider(), settings=settings)

    async def scenario() -> mahjong_ai_pb2.AskMahjongAIResponse:
        server, port = create_server(MahjongAIRelay(service, settings), settings)
        await server.start()
        try:
            async with grpc_aio.insecure_channel(f"127.0.0.1:{port}") as channel:
                stub = mahjong_ai_pb2_grpc.MahjongAIServiceStub(channel)
                return await stub.AskMahjongAI(
                    mahjong_ai_pb2.AskMahjongAIRequest(prompt="What is a riichi?")
                )
        finally:
            await server.stop(None)

    response = asyncio.run(scenario())

    assert response.response == "stub answer"
    assert response.metadata.server_version == "1.0.0"


def test_stop_cancels_in_flight_stream_and_service_releases_provider() -> None:
    provider = StubProvider(chunks=["A"], hang=True)
    settings = _local_settings()
    service = MahjongAIService(provider, settings=settings)

    async def scenario() -> tuple[str, bool]:
        await service.startup()
        server, port = create_server(MahjongAIRelay(service, settings), settings)
        await server.start()
        try:
            async with grpc_aio.insecure_channel(f"127.0.0.1:{port}") as channel:
                stub = mahjong_ai_pb2_grpc.MahjongAIServiceStub(channel)
                call = stub.AskMahjongAIStream(mahjong_ai_pb2.AskMahjongAIRequest(prompt="q"))
                first = await call.read()

                await server.stop(0.2)
                closed = await _wait_for(lambda: provider.stream_closed)
                call.cancel()
                return first.text_chunk, closed
        finally:
            await service.shutdown()

    first_chunk, closed = asyncio.run(scenario())

    assert first_chunk == "A"
    assert closed
    assert provider.started
    assert provider.stopped


def test_serve_releases_provider_when_server_fails_to_start(monkeypatch) -> None:
    provider = StubProvider()

    def failing_create_server(relay, settings):
        raise RuntimeError("Failed to bind to address 127.0.0.1:8080")

    monkeypatch.setattr(grpc_server, "get_settings", _local_settings)
    monkeypatch.setattr(grpc_server, "GeminiProvider", lambda settings: provider)
    monkeypatch.setattr(grpc_server, "create_server", failing_create_server)

    with pytest.raises(RuntimeError, match="Failed to bind"):
        asyncio.run(serve_grpc())

    assert provider.started
    assert provider.stopped
