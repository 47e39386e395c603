"""
FastAPI application entrypoint (HTTP/JSON transport).

Boots the FastAPI server with a managed lifespan that initialises and
tears down the AI service (and therefore the Gemini HTTP client).

Run with::

    uvicorn main:app --host 0.0.0.0 --port 8081
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import Settings, get_settings
from core.logger import configure_logging
from domain.ports import AIProvider
from services.ai_service import MahjongAIService
from services.gemini_provider import GeminiProvider
from transport.relay import MahjongAIRelay
from transport.rest_api import router, set_relay

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage service lifecycle alongside the FastAPI app."""
    settings: Settings = app.state.settings
    provider: AIProvider = app.state.provider or GeminiProvider(settings)

    service = MahjongAIService(provider, settings=settings)
    await service.startup()
    set_relay(MahjongAIRelay(service, settings))

    logger.info(
        "fastapi.lifespan.started",
        service=settings.service_name,
        rest_port=settings.rest_port,
    )

    try:
        yield  # app is running
    finally:
        set_relay(None)
        await service.shutdown()
        logger.info("fastapi.lifespan.shutdown")


def create_app(
    settings: Settings | None = None,
    provider: AIProvider | None = None,
) -> FastAPI:
    """Application factory. ``provider`` defaults to Gemini."""
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=f"{settings.service_name} API",
        version=settings.server_version,
        description="Mahjong AI relay, HTTP/JSON interface",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.provider = provider
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Connect-Protocol-Version", "Authorization"],
        expose_headers=["Connect-Content-Encoding", "Connect-Accept-Encoding"],
    )
    app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    _settings = get_settings()
    uvicorn.run(
        "main:app",
        host=_settings.rest_host,
        port=_settings.rest_port,
        log_level=_settings.log_level.lower(),
    )
