"""
Memory collaborators consumed by the query engine.

Three narrow interfaces: the intent catalog, the agent-level prompt and conversation threads.
:class:`Memory` bundles one of each.  :class:`InMemoryMemory` keeps everything in process dicts;
its catalog can be seeded from a JSON file (a list of intent objects).
"""

import asyncio
import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from pathlib import Path
from typing import (
    Dict,
    List,
    Sequence,
)

from agentflow.core.schema import (
    Intent,
    Message,
    Thread,
    ThreadType,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------
class IntentMemory(ABC):
    """Intent catalog."""

    @abstractmethod
    async def get_intent(self, intent_id: str) -> Intent | None: ...

    @abstractmethod
    async def get_intent_by_name(self, name: str) -> Intent | None: ...

    @abstractmethod
    async def list_intents(self) -> List[Intent]: ...

    @abstractmethod
    async def save_intent(self, intent: Intent) -> None: ...

    @abstractmethod
    async def delete_intent(self, intent_id: str) -> None: ...


class AgentMemory(ABC):
    """Agent-level configuration."""

    @abstractmethod
    async def get_agent_prompt(self) -> str: ...

    @abstractmethod
    async def set_agent_prompt(self, prompt: str) -> None: ...


class ThreadMemory(ABC):
    """Conversation threads, keyed by (user_id, thread_id)."""

    @abstractmethod
    async def get_thread(self, user_id: str, thread_id: str) -> Thread | None: ...

    @abstractmethod
    async def create_thread(
        self, thread_type: ThreadType, user_id: str, thread_id: str, title: str
    ) -> Thread: ...

    @abstractmethod
    async def add_messages_to_thread(
        self, user_id: str, thread_id: str, messages: Sequence[Message]
    ) -> None: ...

    @abstractmethod
    async def list_threads(self, user_id: str) -> List[Thread]:
        """Threads of *user_id*, without their messages."""


class Memory:
    """Bundle of the three memories handed to the engine."""

    def __init__(
        self,
        intents: IntentMemory | None = None,
        agent: AgentMemory | None = None,
        threads: ThreadMemory | None = None,
    ):
        self.intents = intents
        self.agent = agent
        self.threads = threads

    async def connect(self) -> None:
        logger.info(
            "Memory ready (intents=%s, agent=%s, threads=%s)",
            type(self.intents).__name__,
            type(self.agent).__name__,
            type(self.threads).__name__,
        )

    async def disconnect(self) -> None:
        logger.info("Memory disconnected")


# ---------------------------------------------------------------------------
# In-process implementation
# ---------------------------------------------------------------------------
class InMemoryIntentMemory(IntentMemory):
    def __init__(self, intents: Sequence[Intent] = ()):
        self._intents: Dict[str, Intent] = {i.intent_id: i for i in intents}

    @classmethod
    def from_file(cls, path: str | Path) -> "InMemoryIntentMemory":
        """Seed the catalog from a JSON list; a missing file gives an empty catalog."""
        path = Path(path)
        if not path.exists():
            logger.warning("Intent catalog %s not found, starting empty", path)
            return cls()
        raw = json.loads(path.read_text(encoding="utf-8"))
        return cls([Intent.model_validate(item) for item in raw])

    async def get_intent(self, intent_id: str) -> Intent | None:
        return self._intents.get(intent_id)

    async def get_intent_by_name(self, name: str) -> Intent | None:
        for intent in self._intents.values():
            if intent.name == name:
                return intent
        return None

    async def list_intents(self) -> List[Intent]:
        return list(self._intents.values())

    async def save_intent(self, intent: Intent) -> None:
        self._intents[intent.intent_id] = intent

    async def delete_intent(self, intent_id: str) -> None:
        self._intents.pop(intent_id, None)


class InMemoryAgentMemory(AgentMemory):
    def __init__(self, prompt: str = ""):
        self._prompt = prompt

    async def get_agent_prompt(self) -> str:
        return self._prompt

    async def set_agent_prompt(self, prompt: str) -> None:
        self._prompt = prompt


class InMemoryThreadMemory(ThreadMemory):
    def __init__(self) -> None:
        self._threads: Dict[tuple[str, str], Thread] = {}
        self._lock = asyncio.Lock()

    async def get_thread(self, user_id: str, thread_id: str) -> Thread | None:
        thread = self._threads.get((user_id, thread_id))
        # Callers mutate the returned thread; hand out a copy
        return thread.model_copy(deep=True) if thread else None

    async def create_thread(
        self, thread_type: ThreadType, user_id: str, thread_id: str, title: str
    ) -> Thread:
        async with self._lock:
            thread = self._threads.setdefault(
                (user_id, thread_id),
                Thread(user_id=user_id, thread_id=thread_id, type=thread_type, title=title),
            )
        return thread.model_copy(deep=True)

    async def add_messages_to_thread(
        self, user_id: str, thread_id: str, messages: Sequence[Message]
    ) -> None:
        async with self._lock:
            thread = self._threads.get((user_id, thread_id))
            if thread is None:
                raise KeyError(f"Thread {thread_id} of user {user_id} does not exist")
            thread.messages.extend(m.model_copy(deep=True) for m in messages)

    async def list_threads(self, user_id: str) -> List[Thread]:
        return [
            t.model_copy(update={"messages": []})
            for (owner, _), t in self._threads.items()
            if owner == user_id
        ]


class InMemoryMemory(Memory):
    """All three memories held in process."""

    def __init__(
        self,
        intents: Sequence[Intent] = (),
        agent_prompt: str = "",
        threads: ThreadMemory | None = None,
    ):
        super().__init__(
            intents=InMemoryIntentMemory(intents),
            agent=InMemoryAgentMemory(agent_prompt),
            threads=threads or InMemoryThreadMemory(),
        )
