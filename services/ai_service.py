"""
Mahjong AI service, the single entry point both transports call.

Wires together:
    • request building / validation  (``domain.models``)
    • the AI provider                 (abstract ``AIProvider``)
    • MLflow tracking

No transport concerns live here.
"""

from __future__ import annotations

from typing import Sequence

import structlog

from core.config import Settings, get_settings
from core.tracking import track_generation
from domain.errors import ValidationError
from domain.models import CompletionResult, build_request
from domain.ports import AIProvider
from domain.stream import CompletionStream

logger = structlog.get_logger(__name__)


class MahjongAIService:
    """Validates requests, delegates to the provider and logs the outcome."""

    def __init__(self, provider: AIProvider, settings: Settings | None = None) -> None:
        self._provider = provider
        self._settings = settings or get_settings()

    # -- lifecycle helpers (called from entrypoints) -------------------

    async def startup(self) -> None:
        await self._provider.startup()
        logger.info("ai_service.started")

    async def shutdown(self) -> None:
        await self._provider.shutdown()
        logger.info("ai_service.shutdown")

    # -- unary --------------------------------------------------------

    async def ask_mahjong_ai(
        self,
        prompt: str,
        max_tokens: int = 0,
        temperature: float = 0.0,
        context: Sequence[str] = (),
    ) -> CompletionResult:
        """
        Build, validate and send one completion request.

        Validation and provider errors propagate unmodified.
        """
        logger.info(
            "ai_service.ask.request",
            prompt_len=len(prompt),
            max_tokens=max_tokens,
            temperature=temperature,
            context_count=len(context),
        )

        request = build_request(prompt, max_tokens, temperature, context)
        try:
            request.validate()
        except ValidationError as exc:
            logger.error("ai_service.ask.invalid_request", error=str(exc))
            raise

        try:
            async with track_generation(
                model_name=self._settings.gemini_model,
                temperature=request.temperature,
                max_tokens=request.max_output_tokens,
                context_count=len(request.prior_context),
                prompt=request.prompt,
                settings=self._settings,
            ) as bag:
                result = await self._provider.ask(request)
                bag["output"] = result.text
                bag["tokens_used"] = result.tokens_used
        except Exception as exc:
            logger.error("ai_service.ask.failed", error=str(exc))
            raise

        logger.info(
            "ai_service.ask.response",
            response_len=len(result.text),
            tokens_used=result.tokens_used,
            confidence=result.confidence,
        )
        return result

    # -- streaming ----------------------------------------------------

    def ask_mahjong_ai_stream(
        self,
        prompt: str,
        max_tokens: int = 0,
        temperature: float = 0.0,
        context: Sequence[str] = (),
    ) -> CompletionStream:
        """
        Return the provider's stream for a valid request.

        An invalid request yields a stream whose only event is the
        validation failure; the provider is never called.
        """
        logger.info(
            "ai_service.stream.request",
            prompt_len=len(prompt),
            max_tokens=max_tokens,
            temperature=temperature,
            context_count=len(context),
        )

        request = build_request(prompt, max_tokens, temperature, context)
        try:
            request.validate()
        except ValidationError as exc:
            logger.error("ai_service.stream.invalid_request", error=str(exc))
            return CompletionStream.failed(exc)

        return self._provider.ask_stream(request)

    # -- health -------------------------------------------------------

    async def health_check(self) -> None:
        logger.info("ai_service.health_check.request")
        try:
            await self._provider.health_check()
        except Exception as exc:
            logger.error("ai_service.health_check.failed", error=str(exc))
            raise
        logger.info("ai_service.health_check.passed")
