"""Tests for stream events and the producer/consumer channel."""

import asyncio
import json

import pytest

from agentflow.core import events
from agentflow.core.errors import ConnectorError
from agentflow.core.events import (
    EventChannel,
    EventType,
)
from agentflow.core.schema import ToolProtocol


def test_to_sse_frame() -> None:
    """Events encode as one ``event:``/``data:`` frame."""

    frame = events.tool_start("c1", ToolProtocol.LOCAL, "weatherApi_get", {"city": "서울"}).to_sse()

    head, data, blank = frame.split("\n", 2)
    assert head == "event: tool_start"
    assert json.loads(data[len("data: "):]) == {
        "toolCallId": "c1",
        "protocol": "LOCAL",
        "toolName": "weatherApi_get",
        "toolArgs": {"city": "서울"},
    }
    assert blank == "\n"


@pytest.mark.asyncio
async def test_channel_delivers_in_order() -> None:
    async def producer():
        for word in ("a", "b", "c"):
            yield events.text_chunk(word)

    received = [e.data["delta"] async for e in EventChannel(producer(), maxsize=1)]

    assert received == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_channel_turns_failure_into_error_event() -> None:
    """An exception escaping the producer arrives as the final ``error`` event."""

    async def producer():
        yield events.text_chunk("partial")
        raise ConnectorError("peer vanished")

    received = [e async for e in EventChannel(producer())]

    assert [e.event for e in received] == [EventType.TEXT_CHUNK, EventType.ERROR]
    assert received[-1].data == {"message": "peer vanished", "kind": "connector"}


@pytest.mark.asyncio
async def test_channel_close_cancels_producer() -> None:
    """Leaving the consumer loop early cancels the producer task."""

    finished = asyncio.Event()

    async def producer():
        try:
            while True:
                yield events.text_chunk(".")
                await asyncio.sleep(0)
        finally:
            finished.set()

    stream = EventChannel(producer(), maxsize=2).__aiter__()
    await stream.__anext__()
    await stream.aclose()

    assert finished.is_set()


def test_interrupt_flag_stays_off_the_wire() -> None:
    event = events.task_status("c1", "t1", "canceled", interrupt=True)

    assert event.interrupt
    assert "interrupt" not in event.to_sse()
