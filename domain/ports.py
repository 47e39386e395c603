"""
AI provider port.

The application service depends ONLY on this abstraction; concrete
providers live in ``services/``.
"""

from __future__ import annotations

import abc

from domain.errors import ProviderError
from domain.models import CompletionRequest, CompletionResult
from domain.stream import CompletionStream

HEALTH_CHECK_PROMPT = "Hello"


class AIProvider(abc.ABC):
    """
    Abstract generative-language provider.

    Implementations must:
        • raise ``ProviderUnavailableError`` when the provider answers with
          no usable text, and ``ProviderError`` for transport / protocol
          failures;
        • keep sampling parameters per call (no shared session state).
    """

    async def startup(self) -> None:  # noqa: B027 - optional hook
        """Acquire connections. Default: nothing to do."""

    async def shutdown(self) -> None:  # noqa: B027 - optional hook
        """Release connections. Default: nothing to do."""

    @abc.abstractmethod
    async def ask(self, request: CompletionRequest) -> CompletionResult:
        """Return the full completion for *request*."""
        ...

    @abc.abstractmethod
    def ask_stream(self, request: CompletionRequest) -> CompletionStream:
        """Return a stream of chunks ending in one terminal event."""
        ...

    async def health_check(self) -> None:
        """Issue a trivial ``ask``; any failure means unhealthy."""
        try:
            await self.ask(CompletionRequest.with_defaults(HEALTH_CHECK_PROMPT))
        except Exception as exc:
            raise ProviderError(f"health check failed: {exc}") from exc
