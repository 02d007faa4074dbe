"""Tests for the in-process and JSON-lines memories."""

import asyncio
import json

import pytest

from agentflow.core.schema import (
    Intent,
    Message,
    MessageRole,
    ThreadType,
)
from agentflow.memory import jsonl_store
from agentflow.memory.jsonl_store import JsonlThreadMemory
from agentflow.memory.memory_store import (
    InMemoryIntentMemory,
    InMemoryThreadMemory,
)


@pytest.mark.asyncio
async def test_intent_catalog_from_file(tmp_path) -> None:
    path = tmp_path / "intents.json"
    path.write_text(
        json.dumps(
            [
                {"intent_id": "w", "name": "weather", "description": "Weather lookups", "model": "fast"},
                {"name": "notes", "description": "Notes"},
            ]
        )
    )
    memory = InMemoryIntentMemory.from_file(path)

    assert [i.name for i in await memory.list_intents()] == ["weather", "notes"]
    assert (await memory.get_intent("w")).model == "fast"
    assert (await memory.get_intent_by_name("notes")).description == "Notes"

    await memory.save_intent(Intent(intent_id="w", name="weather", description="Forecasts"))
    assert (await memory.get_intent("w")).description == "Forecasts"
    await memory.delete_intent("w")
    assert await memory.get_intent_by_name("weather") is None
    assert await InMemoryIntentMemory.from_file(tmp_path / "missing.json").list_intents() == []


@pytest.mark.asyncio
async def test_in_memory_threads_are_copied() -> None:
    """Mutating a loaded thread does not touch the stored one."""

    memory = InMemoryThreadMemory()
    await memory.create_thread(ThreadType.CHAT, "u1", "t1", "Hello")
    await memory.add_messages_to_thread("u1", "t1", [Message.text_message(MessageRole.USER, "hi")])

    loaded = await memory.get_thread("u1", "t1")
    loaded.messages.append(Message.text_message(MessageRole.MODEL, "scratch", {"is_thinking": True}))

    assert [m.text for m in (await memory.get_thread("u1", "t1")).messages] == ["hi"]
    assert (await memory.list_threads("u1"))[0].messages == []
    assert await memory.list_threads("u2") == []
    with pytest.raises(KeyError):
        await memory.add_messages_to_thread("u1", "nope", [])


@pytest.mark.asyncio
async def test_jsonl_threads_survive_reload(tmp_path) -> None:
    """A new store on the same file sees earlier threads and messages; corrupt lines are skipped."""

    path = tmp_path / "data" / "threads.jsonl"
    store = JsonlThreadMemory(path)
    store.init()
    await store.create_thread(ThreadType.CHAT, "u1", "t1", "Weather")
    await store.add_messages_to_thread(
        "u1",
        "t1",
        [
            Message.text_message(MessageRole.USER, "weather?", timestamp=1),
            Message.text_message(MessageRole.MODEL, "Sunny ☀", timestamp=2),
        ],
    )
    with path.open("a", encoding="utf-8") as f:
        f.write("{broken\n")

    reopened = JsonlThreadMemory(path)
    thread = await reopened.get_thread("u1", "t1")

    assert thread.title == "Weather"
    assert [(m.role, m.text) for m in thread.ordered_messages()] == [
        (MessageRole.USER, "weather?"),
        (MessageRole.MODEL, "Sunny ☀"),
    ]
    assert [t.thread_id for t in await reopened.list_threads("u1")] == ["t1"]
    again = await reopened.create_thread(ThreadType.CHAT, "u1", "t1", "Other")
    assert again.title == "Weather"


@pytest.mark.asyncio
async def test_jsonl_file_access_is_async(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reads and appends go through aiofiles; concurrent writers never interleave records."""

    opened = []
    real_open = jsonl_store.aiofiles.open

    def tracking_open(path, mode="r", *args, **kwargs):
        opened.append(mode)
        return real_open(path, mode, *args, **kwargs)

    monkeypatch.setattr(jsonl_store.aiofiles, "open", tracking_open)
    store = JsonlThreadMemory(tmp_path / "threads.jsonl")
    store.init()
    await store.create_thread(ThreadType.CHAT, "u1", "t1", "Notes")

    await asyncio.gather(
        *(
            store.add_messages_to_thread("u1", "t1", [Message.text_message(MessageRole.USER, f"m{i}", timestamp=i)])
            for i in range(5)
        )
    )
    thread = await store.get_thread("u1", "t1")

    assert sorted(m.text for m in thread.messages) == ["m0", "m1", "m2", "m3", "m4"]
    assert opened.count("a") == 6
    assert "r" in opened
    lines = (tmp_path / "threads.jsonl").read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["op"] for line in lines] == ["thread"] + ["message"] * 5
