"""
Shared test doubles.

- ``ScriptedModel`` replays canned completions and records every request.
- ``FakeLocal`` is a LOCAL provider with in-process tools.
- ``FakeAgent`` is a remote A2A agent served through ``httpx.MockTransport``; ``provider()``
  returns a real ``A2AToolProvider`` wired to it.
"""

import json
from typing import (
    Any,
    Callable,
    Dict,
    List,
)

import httpx
import pytest

from agentflow.agent.model_interface import (
    ModelBackend,
    ModelHub,
)
from agentflow.core.errors import ToolExecutionError
from agentflow.core.schema import (
    Delta,
    FetchResponse,
    FunctionDelta,
    StreamChunk,
    ToolCallDelta,
    ToolDescriptor,
    ToolProtocol,
)
from agentflow.tools import format_local_result
from agentflow.tools.a2a_connector import A2AToolProvider
from agentflow.tools.task_tracker import TaskTracker


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------
def text(*parts: str) -> List[StreamChunk]:
    """A streamed text answer."""
    return [StreamChunk(delta=Delta(content=p)) for p in parts]


def call(name: str, arguments: str = "{}", index: int = 0, call_id: str | None = None) -> List[StreamChunk]:
    """A streamed tool call: name fragment first, then the argument fragments."""
    call_id = call_id or f"call_{name}_{index}"
    half = len(arguments) // 2
    return [
        StreamChunk(
            delta=Delta(
                tool_calls=[ToolCallDelta(index=index, id=call_id, function=FunctionDelta(name=name))]
            )
        ),
        StreamChunk(
            delta=Delta(
                tool_calls=[ToolCallDelta(index=index, function=FunctionDelta(arguments=arguments[:half]))]
            )
        ),
        StreamChunk(
            delta=Delta(
                tool_calls=[ToolCallDelta(index=index, function=FunctionDelta(arguments=arguments[half:]))]
            )
        ),
    ]


class ScriptedModel(ModelBackend):
    """Backend that replays ``fetches`` and ``streams`` in order."""

    def __init__(self, fetches: List[Any] | None = None, streams: List[Any] | None = None):
        self.fetches = list(fetches or [])
        self.streams = list(streams or [])
        self.fetch_calls: List[List[Dict[str, Any]]] = []
        self.stream_calls: List[Dict[str, Any]] = []

    async def fetch(self, messages, options=None) -> FetchResponse:
        self.fetch_calls.append(list(messages))
        item = self.fetches.pop(0)
        if isinstance(item, Exception):
            raise item
        return FetchResponse(content=item)

    async def fetch_stream_with_context_message(self, messages, functions, options=None):
        self.stream_calls.append({"messages": list(messages), "functions": functions})
        item = self.streams.pop(0)
        if isinstance(item, Exception):
            raise item
        for chunk in item:
            yield chunk

    def declared(self, round_no: int) -> List[str]:
        """Tool names declared to the model in stream call *round_no*."""
        return [f["function"]["name"] for f in self.stream_calls[round_no]["functions"]]


def hub_with(model: ModelBackend, **named: ModelBackend) -> ModelHub:
    hub = ModelHub()
    hub.add("default", model, default=True)
    for name, backend in named.items():
        hub.add(name, backend)
    return hub


# ---------------------------------------------------------------------------
# LOCAL provider
# ---------------------------------------------------------------------------
class FakeLocal:
    """LOCAL provider whose tools are plain callables keyed by full tool name."""

    def __init__(self, tools: Dict[str, Callable[..., Any]]):
        self.tools = tools
        self.calls: List[tuple[str, Dict[str, Any]]] = []

    async def get_tools(self) -> List[ToolDescriptor]:
        return [
            ToolDescriptor(
                tool_name=name,
                protocol=ToolProtocol.LOCAL,
                connector_name=name.split("_", 1)[0],
                description=f"{name} tool",
            )
            for name in self.tools
        ]

    async def use_tool(self, descriptor: ToolDescriptor, args: Dict[str, Any]) -> str:
        self.calls.append((descriptor.tool_name, args))
        try:
            result = self.tools[descriptor.tool_name](**args)
        except Exception as exc:  # noqa: BLE001
            raise ToolExecutionError(f"Tool '{descriptor.tool_name}' raised an error: {exc}") from exc
        return format_local_result(descriptor.tool_name, args, json.dumps(result))


# ---------------------------------------------------------------------------
# REMOTE agent
# ---------------------------------------------------------------------------
def task_event(task_id: str, state: str = "submitted", context_id: str = "ctx") -> Dict[str, Any]:
    return {"kind": "task", "id": task_id, "contextId": context_id, "status": {"state": state}}


def status_event(
    task_id: str, state: str, message: str | None = None, final: bool = False
) -> Dict[str, Any]:
    status: Dict[str, Any] = {"state": state}
    if message is not None:
        status["message"] = {"kind": "message", "role": "agent", "parts": [{"kind": "text", "text": message}]}
    return {"kind": "status-update", "taskId": task_id, "contextId": "ctx", "status": status, "final": final}


def message_event(message: str, task_id: str | None = None) -> Dict[str, Any]:
    event: Dict[str, Any] = {"kind": "message", "role": "agent", "parts": [{"kind": "text", "text": message}]}
    if task_id:
        event["taskId"] = task_id
    return event


def sse_body(results: List[Dict[str, Any]]) -> str:
    return "".join(
        f"data: {json.dumps({'jsonrpc': '2.0', 'id': '1', 'result': r})}\n\n" for r in results
    )


class FakeAgent:
    """A2A agent at ``url`` answering each ``message/stream`` with the next scripted exchange."""

    def __init__(
        self,
        name: str = "Notes Agent",
        url: str = "http://notes.test",
        exchanges: List[List[Dict[str, Any]]] | None = None,
        legacy_card: bool = False,
        stream_status: int = 200,
    ):
        self.name = name
        self.url = url
        self.exchanges = list(exchanges or [])
        self.legacy_card = legacy_card
        self.stream_status = stream_status
        self.requests: List[Dict[str, Any]] = []
        self.card_requests: List[str] = []

    def card(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": "Reads and summarizes the user's notes",
            "url": self.url,
            "skills": [{"id": "summarize", "name": "Summarize notes"}],
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.card_requests.append(request.url.path)
            if self.legacy_card and request.url.path == "/.well-known/agent-card.json":
                return httpx.Response(404)
            return httpx.Response(200, json=self.card())

        body = json.loads(request.content)
        self.requests.append(body)
        if body["method"] == "tasks/cancel":
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "result": task_event(body["params"]["id"], "canceled")}
            )
        if self.stream_status != 200:
            return httpx.Response(self.stream_status, text="agent exploded")
        return httpx.Response(
            200,
            text=sse_body(self.exchanges.pop(0)),
            headers={"content-type": "text/event-stream"},
        )

    def provider(self, tracker: TaskTracker | None = None) -> A2AToolProvider:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return A2AToolProvider([self.url], tracker=tracker, client=client)

    def sent(self, method: str = "message/stream") -> List[Dict[str, Any]]:
        return [r for r in self.requests if r["method"] == method]


@pytest.fixture
def weather_local() -> FakeLocal:
    return FakeLocal({"weatherApi_get": lambda city="Seoul": {"city": city, "sky": "sunny"}})
