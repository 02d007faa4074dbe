"""
Typed events streamed from the query engine to its caller.

Every event is a :class:`StreamEvent` with an ``event`` name and a JSON-serialisable ``data``
payload.  The helpers below are the only place event payload keys are spelled out.
"""

import asyncio
import json
import logging
from contextlib import aclosing
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Dict,
)

from pydantic import (
    BaseModel,
    Field,
)

from agentflow.core.schema import ToolProtocol

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Names of the events in the outbound stream."""

    TEXT_CHUNK = "text_chunk"
    TOOL_START = "tool_start"
    TOOL_OUTPUT = "tool_output"
    TASK_STATUS = "task_status"
    INTENT_PROCESS = "intent_process"
    THINKING_PROCESS = "thinking_process"
    THREAD_ID = "thread_id"
    ERROR = "error"


class StreamEvent(BaseModel):
    """One element of the ordered, append-only event stream."""

    event: EventType
    data: Dict[str, Any] = Field(default_factory=dict)
    interrupt: bool = False
    """In-process marker: the user canceled the exchange.  Not part of the wire frame."""

    def to_sse(self) -> str:
        """Encode as a Server-Sent Events frame."""
        return f"event: {self.event.value}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------
def text_chunk(delta: str) -> StreamEvent:
    return StreamEvent(event=EventType.TEXT_CHUNK, data={"delta": delta})


def tool_start(
    tool_call_id: str, protocol: ToolProtocol, tool_name: str, tool_args: Any
) -> StreamEvent:
    return StreamEvent(
        event=EventType.TOOL_START,
        data={
            "toolCallId": tool_call_id,
            "protocol": protocol.value,
            "toolName": tool_name,
            "toolArgs": tool_args,
        },
    )


def tool_output(tool_call_id: str, protocol: ToolProtocol, tool_name: str, result: str) -> StreamEvent:
    return StreamEvent(
        event=EventType.TOOL_OUTPUT,
        data={
            "toolCallId": tool_call_id,
            "protocol": protocol.value,
            "toolName": tool_name,
            "result": result,
        },
    )


def task_status(
    tool_call_id: str, task_id: str | None, state: str, interrupt: bool = False
) -> StreamEvent:
    return StreamEvent(
        event=EventType.TASK_STATUS,
        data={"toolCallId": tool_call_id, "taskId": task_id, "state": state},
        interrupt=interrupt,
    )


def intent_process(subquery: str, action_plan: str | None) -> StreamEvent:
    return StreamEvent(
        event=EventType.INTENT_PROCESS,
        data={"subquery": subquery, "actionPlan": action_plan or ""},
    )


def thinking_process(title: str, description: str) -> StreamEvent:
    return StreamEvent(
        event=EventType.THINKING_PROCESS, data={"title": title, "description": description}
    )


def thread_id(thread_id_: str, title: str) -> StreamEvent:
    return StreamEvent(event=EventType.THREAD_ID, data={"threadId": thread_id_, "title": title})


def error(message: str, kind: str = "internal") -> StreamEvent:
    return StreamEvent(event=EventType.ERROR, data={"message": message, "kind": kind})


# ---------------------------------------------------------------------------
# Producer / consumer channel
# ---------------------------------------------------------------------------
_END = object()


class EventChannel:
    """
    Bounded queue between an event producer (the engine) and a consumer (the transport).

    The producer runs in its own task and blocks when the consumer falls ``maxsize`` events behind.
    Leaving the ``async for`` early, or calling :meth:`aclose`, cancels the producer task.  An
    exception escaping the producer is delivered as a final ``error`` event.
    """

    def __init__(self, producer: AsyncIterator[StreamEvent], maxsize: int = 64):
        self._producer = producer
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None

    async def _pump(self) -> None:
        try:
            async with aclosing(self._producer) as producer:
                async for event in producer:
                    await self._queue.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Event producer failed")
            await self._queue.put(error(str(exc) or "Stream failed", getattr(exc, "kind", "internal")))
        await self._queue.put(_END)

    def start(self) -> None:
        """Start the producer task (idempotent)."""
        if self._task is None:
            self._task = asyncio.create_task(self._pump())

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        self.start()
        try:
            while True:
                item = await self._queue.get()
                if item is _END:
                    break
                yield item
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Cancel the producer if it is still running."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
