"""
Streaming completion events and the stream that carries them.

A ``CompletionStream`` owns one producer task per call.  The producer drains
an async iterator of events (usually a provider's async generator) into a
bounded queue; the consumer iterates the stream.  Guarantees:

    • events arrive in production order;
    • exactly one terminal event (``StreamCompleted`` or ``StreamFailed``)
      is delivered, and it is always the last one;
    • an exception raised by the source becomes a ``StreamFailed`` event;
    • ``aclose()`` cancels and awaits the producer, so a producer blocked on
      a full queue never outlives an abandoned consumer.

Consumers should use ``async with stream:`` so ``aclose()`` runs even when
the consuming task is cancelled.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, ClassVar, Union

import structlog

from domain.errors import ProviderError
from domain.models import CompletionResult

logger = structlog.get_logger(__name__)

DEFAULT_BUFFER_SIZE = 8


# ── Events ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class StreamChunk:
    """A partial piece of generated text."""

    result: CompletionResult
    terminal: ClassVar[bool] = False


@dataclass(frozen=True, slots=True)
class StreamCompleted:
    """Aggregate usage and timing; carries no text."""

    result: CompletionResult
    terminal: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class StreamFailed:
    error: Exception
    terminal: ClassVar[bool] = True


StreamEvent = Union[StreamChunk, StreamCompleted, StreamFailed]


# ── Stream ───────────────────────────────────────────────────────────


class CompletionStream:
    """Async-iterable of ``StreamEvent`` backed by a producer task."""

    def __init__(
        self,
        source: AsyncIterator[StreamEvent] | None = None,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self._source = source
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=buffer_size)
        self._producer: asyncio.Task[None] | None = None
        self._finished = False

    @classmethod
    def failed(cls, error: Exception) -> CompletionStream:
        """A stream whose only event is ``StreamFailed(error)``. Starts no task."""
        stream = cls(buffer_size=1)
        stream._queue.put_nowait(StreamFailed(error))
        return stream

    # -- producer -----------------------------------------------------

    def _ensure_started(self) -> None:
        if self._source is None or self._producer is not None:
            return
        self._producer = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        source = self._source
        if source is None:
            return
        try:
            async for event in source:
                await self._queue.put(event)
                if event.terminal:
                    return
            await self._queue.put(
                StreamFailed(ProviderError("stream ended without a final result"))
            )
        except asyncio.CancelledError:
            logger.debug("completion_stream.producer_cancelled")
            raise
        except Exception as exc:
            logger.warning("completion_stream.producer_failed", error=str(exc))
            await self._queue.put(StreamFailed(exc))
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

    # -- consumer -----------------------------------------------------

    def __aiter__(self) -> CompletionStream:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        self._ensure_started()
        event = await self._queue.get()
        if event.terminal:
            self._finished = True
        return event

    async def aclose(self) -> None:
        """Stop iteration and reap the producer task."""
        self._finished = True
        producer, self._producer = self._producer, None
        if producer is None:
            return
        if not producer.done():
            producer.cancel()
        # ``wait`` never re-raises the producer's CancelledError, but does
        # propagate cancellation of the caller.
        await asyncio.wait({producer})

    async def __aenter__(self) -> CompletionStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
