"""Thread memory persisted as a flat JSON-lines log, one record per line."""

import asyncio
import json
import logging
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Sequence,
)

import aiofiles

from agentflow.core.schema import (
    Message,
    Thread,
    ThreadType,
)
from agentflow.memory.memory_store import ThreadMemory

logger = logging.getLogger(__name__)


class JsonlThreadMemory(ThreadMemory):
    """
    Append-only thread log.

    Two record kinds are written: ``{"op": "thread", "thread": {...}}`` when a thread is created
    and ``{"op": "message", "user_id", "thread_id", "message": {...}}`` per persisted message.
    Threads are rebuilt by replaying the log on read.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def init(self) -> None:
        """Ensure the log file exists."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        if not self._path.exists():
            self._path.touch()

    async def _append(self, records: List[Dict[str, Any]]) -> None:
        async with aiofiles.open(self._path, "a", encoding="utf-8") as f:
            await f.write("".join(json.dumps(record, ensure_ascii=False) + "\n" for record in records))

    async def _replay(self) -> Dict[tuple[str, str], Thread]:
        threads: Dict[tuple[str, str], Thread] = {}
        if not self._path.exists():
            return threads
        async with aiofiles.open(self._path, "r", encoding="utf-8") as f:
            lines = await f.readlines()
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping corrupt line %d in %s", lineno, self._path)
                continue
            if record.get("op") == "thread":
                thread = Thread.model_validate(record["thread"])
                threads.setdefault((thread.user_id, thread.thread_id), thread)
            elif record.get("op") == "message":
                thread = threads.get((record["user_id"], record["thread_id"]))
                if thread is not None:
                    thread.messages.append(Message.model_validate(record["message"]))
        return threads

    async def get_thread(self, user_id: str, thread_id: str) -> Thread | None:
        async with self._lock:
            return (await self._replay()).get((user_id, thread_id))

    async def create_thread(
        self, thread_type: ThreadType, user_id: str, thread_id: str, title: str
    ) -> Thread:
        async with self._lock:
            existing = (await self._replay()).get((user_id, thread_id))
            if existing is not None:
                return existing
            thread = Thread(user_id=user_id, thread_id=thread_id, type=thread_type, title=title)
            await self._append([{"op": "thread", "thread": thread.model_dump(mode="json")}])
            return thread

    async def add_messages_to_thread(
        self, user_id: str, thread_id: str, messages: Sequence[Message]
    ) -> None:
        async with self._lock:
            await self._append(
                [
                    {
                        "op": "message",
                        "user_id": user_id,
                        "thread_id": thread_id,
                        "message": m.model_dump(mode="json"),
                    }
                    for m in messages
                ]
            )

    async def list_threads(self, user_id: str) -> List[Thread]:
        async with self._lock:
            threads = await self._replay()
        return [
            t.model_copy(update={"messages": []})
            for (owner, _), t in threads.items()
            if owner == user_id
        ]
