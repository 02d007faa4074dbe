"""End-to-end tests of the query engine: routing, fulfillment, aggregation and persistence."""

import json

import pytest

from agentflow.agent.agent_loop import (
    DEFAULT_TITLE,
    QueryEngine,
    build_engine,
)
from agentflow.agent.tool_executor import Toolset
from agentflow.config import (
    Settings,
    settings,
)
from agentflow.core.events import EventType
from agentflow.core.schema import (
    Intent,
    MessageRole,
)
from agentflow.memory.jsonl_store import JsonlThreadMemory
from agentflow.memory.memory_store import InMemoryMemory
from conftest import (
    FakeAgent,
    FakeLocal,
    ScriptedModel,
    call,
    hub_with,
    status_event,
    task_event,
    text,
)

WEATHER = Intent(name="weather", description="Weather lookups")
NOTES = Intent(name="notes", description="Reading the user's notes")
QUERY = "Tell me the weather and summarize my notes"


def _routing(*pairs: tuple[str, str], needs_aggregation: bool = True) -> str:
    return json.dumps(
        {
            "needsAggregation": needs_aggregation,
            "subqueries": [
                {"subquery": subquery, "intentName": name, "actionPlan": f"Handle {name}."}
                for subquery, name in pairs
            ],
        }
    )


def _engine(model, local=None, remote=None, intents=(WEATHER, NOTES), **kwargs) -> QueryEngine:
    return QueryEngine(hub_with(model), InMemoryMemory(intents=intents), Toolset(local, remote), **kwargs)


async def _collect(engine: QueryEngine, query: str = QUERY, thread_id: str | None = None):
    return [e async for e in engine.stream_query(query, "u1", thread_id)]


def _names(events):
    return [e.event.value for e in events]


@pytest.mark.asyncio
async def test_weather_and_notes(weather_local: FakeLocal) -> None:
    """Two subqueries over LOCAL and REMOTE tools end in one aggregated answer."""

    agent = FakeAgent(
        exchanges=[
            [
                task_event("t1", "submitted"),
                status_event("t1", "working", "Reading notes"),
                status_event("t1", "completed", "2 notes: A, B", final=True),
            ]
        ]
    )
    model = ScriptedModel(
        fetches=[
            "Weather and notes",
            _routing(("What is the weather?", "weather"), ("Summarize my notes", "notes")),
        ],
        streams=[
            call("weatherApi_get", '{"city": "Seoul"}'),
            text("It is sunny."),
            call("Notes-Agent", '{"query": "Summarize my notes"}'),
            text("You have 2 notes."),
            text("Sunny, ", "and 2 notes."),
        ],
    )
    engine = _engine(model, weather_local, agent.provider())

    events = await _collect(engine)

    assert _names(events) == [
        "thread_id",
        "intent_process",
        "tool_start",
        "tool_output",
        "intent_process",
        "tool_start",
        "task_status",
        "task_status",
        "task_status",
        "tool_output",
        "thinking_process",
        "text_chunk",
        "text_chunk",
    ]
    assert events[0].data["title"] == "Weather and notes"
    assert [e.data["subquery"] for e in events if e.event is EventType.INTENT_PROCESS] == [
        "What is the weather?",
        "Summarize my notes",
    ]
    assert [e.data["state"] for e in events if e.event is EventType.TASK_STATUS] == [
        "submitted",
        "working",
        "completed",
    ]
    assert "".join(e.data["delta"] for e in events if e.event is EventType.TEXT_CHUNK) == (
        "Sunny, and 2 notes."
    )

    # the notes subquery sees the weather answer as context
    notes_round = model.stream_calls[2]["messages"]
    assert {"role": "assistant", "content": "It is sunny."} in notes_round

    thread = await engine.memory.threads.get_thread("u1", events[0].data["threadId"])
    assert [(m.role, m.text) for m in thread.messages] == [
        (MessageRole.USER, QUERY),
        (MessageRole.MODEL, "Sunny, and 2 notes."),
    ]
    assert not any(m.is_thinking for m in thread.messages)


@pytest.mark.asyncio
async def test_independent_answers_skip_aggregation() -> None:
    """needs_aggregation False streams only the last subquery's text."""

    model = ScriptedModel(
        fetches=["Two things", _routing(("First", "weather"), ("Second", "notes"), needs_aggregation=False)],
        streams=[text("A"), text("B")],
    )
    engine = _engine(model)

    events = await _collect(engine, "First and second")

    assert [e.data for e in events if e.event is EventType.TEXT_CHUNK] == [{"delta": "B"}]
    assert EventType.THINKING_PROCESS not in [e.event for e in events]
    thread = await engine.memory.threads.get_thread("u1", events[0].data["threadId"])
    assert thread.messages[-1].text == "B"


@pytest.mark.asyncio
async def test_decide_mode_asks_the_aggregator() -> None:
    """In decide mode the routed flag is ignored and the aggregator decides."""

    model = ScriptedModel(
        fetches=[
            "Two things",
            _routing(("First", "weather"), ("Second", "notes"), needs_aggregation=False),
            json.dumps({"needsAggregation": True, "reason": "both matter"}),
        ],
        streams=[text("A"), text("B"), text("A and B")],
    )
    engine = _engine(model, aggregation_mode="decide")

    events = await _collect(engine, "First and second")

    assert len(model.fetch_calls) == 3
    assert [e.data["delta"] for e in events if e.event is EventType.TEXT_CHUNK] == ["A and B"]


@pytest.mark.asyncio
async def test_single_intent_streams_directly() -> None:
    """An unrouted query streams its text as it arrives."""

    model = ScriptedModel(fetches=["Greeting"], streams=[text("Hel", "lo!")])
    engine = _engine(model, intents=())

    events = await _collect(engine, "hi")

    assert _names(events) == ["thread_id", "intent_process", "text_chunk", "text_chunk"]
    assert events[1].data == {"subquery": "hi", "actionPlan": ""}


@pytest.mark.asyncio
async def test_answer_round_trips_verbatim() -> None:
    """The final text is what the next query sees as the assistant's turn."""

    answer = 'Line one\n  "quoted" **bold** - ✓'
    model = ScriptedModel(fetches=["Chat"], streams=[text(answer), text("ok")])
    engine = _engine(model, intents=())

    first = await _collect(engine, "first question")
    thread_id = first[0].data["threadId"]
    second = await _collect(engine, "second question", thread_id)

    assert EventType.THREAD_ID not in [e.event for e in second]
    messages = model.stream_calls[1]["messages"]
    assert messages[1:3] == [
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": answer},
    ]
    assert messages[-1] == {"role": "user", "content": "second question"}


@pytest.mark.asyncio
async def test_new_thread_uses_given_id_and_title_fallback() -> None:
    """A missing thread is created under the requested id; a failing title call gives the default."""

    model = ScriptedModel(fetches=[RuntimeError("no title")], streams=[text("ok")])
    engine = _engine(model, intents=())

    events = await _collect(engine, "hello", thread_id="th-42")

    assert events[0].data == {"threadId": "th-42", "title": DEFAULT_TITLE}
    assert await engine.memory.threads.get_thread("u1", "th-42") is not None


@pytest.mark.asyncio
async def test_title_is_at_most_five_words() -> None:
    model = ScriptedModel(fetches=['"One two three four five six seven"'])

    assert await _engine(model).generate_title("long") == "One two three four five"


@pytest.mark.asyncio
async def test_cancel_stops_remaining_work() -> None:
    """Cancelling the open remote task ends the query after a ``canceled`` status."""

    agent = FakeAgent(
        exchanges=[
            [
                task_event("t1", "submitted"),
                status_event("t1", "working", "Reading"),
                status_event("t1", "completed", "too late", final=True),
            ]
        ]
    )
    model = ScriptedModel(
        fetches=["Notes", _routing(("Summarize my notes", "notes"), ("What is the weather?", "weather"))],
        streams=[text("Checking notes.") + call("Notes-Agent", '{"query": "notes"}')],
    )
    engine = _engine(model, remote=agent.provider())

    events = []
    async for event in engine.stream_query(QUERY, "u1", "th-c"):
        events.append(event)
        if event.event is EventType.TASK_STATUS and event.data["state"] == "submitted":
            assert engine.cancel_thread("th-c") == "t1"

    assert _names(events) == ["thread_id", "intent_process", "tool_start", "task_status", "task_status"]
    assert events[-1].data["state"] == "canceled"
    assert events[-1].data["taskId"] == "t1"
    assert events[-1].interrupt
    assert agent.sent("tasks/cancel")[0]["params"] == {"id": "t1"}
    assert engine.toolset.remote.tracker.current("th-c") is None
    assert not engine.toolset.remote.tracker.is_canceled("t1")

    # nothing reached the caller, so nothing is remembered as the answer
    thread = await engine.memory.threads.get_thread("u1", "th-c")
    assert [(m.role, m.text) for m in thread.messages] == [(MessageRole.USER, QUERY), (MessageRole.MODEL, "")]


@pytest.mark.asyncio
async def test_agent_reported_cancel_keeps_going() -> None:
    """A task the agent cancels on its own is an ordinary result; only user cancels stop the query."""

    agent = FakeAgent(
        exchanges=[[task_event("t1"), status_event("t1", "canceled", "agent gave up", final=True)]]
    )
    model = ScriptedModel(
        fetches=["Notes"],
        streams=[call("Notes-Agent", '{"query": "notes"}'), text("The notes agent gave up.")],
    )
    engine = _engine(model, remote=agent.provider(), intents=())

    events = await _collect(engine, "summarize my notes", "th-a")

    assert _names(events) == [
        "thread_id",
        "intent_process",
        "tool_start",
        "task_status",
        "task_status",
        "tool_output",
        "text_chunk",
    ]
    assert events[4].data["state"] == "canceled"
    assert not events[4].interrupt
    assert "agent gave up" in events[5].data["result"]
    assert len(model.stream_calls) == 2
    assert agent.sent("tasks/cancel") == []
    thread = await engine.memory.threads.get_thread("u1", "th-a")
    assert thread.messages[-1].text == "The notes agent gave up."


@pytest.mark.asyncio
async def test_failure_ends_with_error_event(weather_local: FakeLocal) -> None:
    """An engine failure becomes one final ``error`` event carrying its kind."""

    model = ScriptedModel(fetches=["Loop"], streams=[call("weatherApi_get"), call("weatherApi_get")])
    engine = _engine(model, weather_local, intents=(), max_tool_iterations=1)

    events = await _collect(engine, "weather forever")

    assert events[-1].event is EventType.ERROR
    assert events[-1].data["kind"] == "tool_loop_exceeded"
    assert [e.event for e in events].count(EventType.ERROR) == 1


def test_cancel_without_remote_provider() -> None:
    engine = _engine(ScriptedModel())

    engine.cancel_task("t1")
    assert engine.cancel_thread("th") is None


def test_build_engine_from_settings(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    """The factory wires the configured backends, memories and providers."""

    monkeypatch.setattr(settings, "MODEL", "openai")
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
    intents_file = tmp_path / "intents.json"
    intents_file.write_text(json.dumps([{"name": "weather", "description": "Weather lookups"}]))
    cfg = Settings(
        DATA_DIR=str(tmp_path),
        MEMORY_BACKEND="jsonl",
        INTENTS_PATH=str(intents_file),
        A2A_PEERS=["http://notes.test/"],
        AGGREGATION_MODE="decide",
    )

    engine, local = build_engine(cfg)

    assert isinstance(engine.memory.threads, JsonlThreadMemory)
    assert (tmp_path / "threads.jsonl").exists()
    assert engine.models.names()[0] == "openai"
    assert engine.aggregation_mode == "decide"
    assert engine.toolset.local is local
    assert engine.router.intent_memory is engine.memory.intents
