from __future__ import annotations

import asyncio
from typing import AsyncIterator

from domain.errors import ProviderError
from domain.models import CompletionResult
from domain.stream import (
    CompletionStream,
    StreamChunk,
    StreamCompleted,
    StreamEvent,
    StreamFailed,
)


async def _collect(stream: CompletionStream) -> list[StreamEvent]:
    async with stream:
        return [event async for event in stream]


def test_events_arrive_in_order_and_stop_after_terminal() -> None:
    async def source() -> AsyncIterator[StreamEvent]:
        for text in ("A", "B", "C"):
            yield StreamChunk(CompletionResult(text=text))
        yield StreamCompleted(CompletionResult("", tokens_used=0))
        yield StreamChunk(CompletionResult(text="never delivered"))

    events = asyncio.run(_collect(CompletionStream(source(), buffer_size=1)))

    assert [type(e) for e in events] == [StreamChunk, StreamChunk, StreamChunk, StreamCompleted]
    assert [e.result.text for e in events[:3]] == ["A", "B", "C"]


def test_source_exception_becomes_single_failed_event() -> None:
    async def source() -> AsyncIterator[StreamEvent]:
        yield StreamChunk(CompletionResult(text="A"))
        raise ProviderError("connection reset")

    events = asyncio.run(_collect(CompletionStream(source())))

    assert isinstance(events[0], StreamChunk)
    assert isinstance(events[-1], StreamFailed)
    assert str(events[-1].error) == "connection reset"
    assert len(events) == 2


def test_source_ending_without_terminal_event_is_reported_as_failure() -> None:
    async def source() -> AsyncIterator[StreamEvent]:
        yield StreamChunk(CompletionResult(text="A"))

    events = asyncio.run(_collect(CompletionStream(source())))

    assert isinstance(events[-1], StreamFailed)
    assert isinstance(events[-1].error, ProviderError)


def test_failed_stream_yields_only_the_error() -> None:
    error = ValueError("bad request")

    async def scenario() -> tuple[list[StreamEvent], CompletionStream]:
        stream = CompletionStream.failed(error)
        return await _collect(stream), stream

    events, stream = asyncio.run(scenario())

    assert events == [StreamFailed(error)]
    assert stream._producer is None


def test_stream_without_source_never_starts_a_producer() -> None:
    async def scenario() -> CompletionStream:
        stream = CompletionStream()
        stream._ensure_started()
        await stream.aclose()
        return stream

    stream = asyncio.run(scenario())

    assert stream._producer is None


def test_closing_early_reaps_a_producer_blocked_on_a_full_buffer() -> None:
    closed = []

    async def endless() -> AsyncIterator[StreamEvent]:
        try:
            while True:
                yield StreamChunk(CompletionResult(text="x"))
        finally:
            closed.append(True)

    async def scenario() -> tuple[StreamEvent, asyncio.Task[None]]:
        stream = CompletionStream(endless(), buffer_size=1)
        first = await stream.__anext__()
        producer = stream._producer
        assert producer is not None
        # Let the producer fill the buffer and block on the next put.
        await asyncio.sleep(0.01)
        await asyncio.wait_for(stream.aclose(), timeout=1)
        return first, producer

    first, producer = asyncio.run(scenario())

    assert first.result.text == "x"
    assert producer.done()
    assert closed == [True]


def test_iterating_after_close_stops_immediately() -> None:
    async def source() -> AsyncIterator[StreamEvent]:
        yield StreamChunk(CompletionResult(text="A"))
        yield StreamCompleted(CompletionResult(""))

    async def scenario() -> list[StreamEvent]:
        stream = CompletionStream(source())
        await stream.aclose()
        return [event async for event in stream]

    assert asyncio.run(scenario()) == []
