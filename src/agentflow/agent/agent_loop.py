"""Main orchestration loop for agentflow: router, fulfillment per subquery, aggregation."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import aclosing
from pathlib import Path
from typing import (
    AsyncIterator,
    List,
    Sequence,
)

from agentflow.agent.aggregator import ResultAggregator
from agentflow.agent.fulfillment import FulfillmentLoop
from agentflow.agent.intent_router import IntentRouter
from agentflow.agent.model_interface import ModelHub
from agentflow.agent.tool_executor import Toolset
from agentflow.common import today_line
from agentflow.config import (
    Settings,
    settings,
)
from agentflow.core import events
from agentflow.core.events import (
    EventType,
    StreamEvent,
)
from agentflow.core.schema import (
    FulfillmentResult,
    Message,
    MessageRole,
    Thread,
    ThreadType,
    TriggeredIntent,
    now_ms,
)
from agentflow.memory.jsonl_store import JsonlThreadMemory
from agentflow.memory.memory_store import (
    InMemoryAgentMemory,
    InMemoryIntentMemory,
    InMemoryThreadMemory,
    Memory,
)
from agentflow.tools.a2a_connector import A2AToolProvider
from agentflow.tools.mcp_connector import (
    MCPToolProvider,
    load_mcp_config,
)

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"

TITLE_PROMPT = """You are a helpful assistant that generates titles for conversations.
Please analyze the user's query and create a concise title that accurately reflects the conversation's core topic.
The title must be no more than 5 words long.
Respond with only the title. Do not include any punctuation or extra explanations.
Always respond in the same language as the user's input."""


# ---------------------------------------------------------------------------
# Query engine
# ---------------------------------------------------------------------------
class QueryEngine:
    """
    Public entry point of the fulfillment engine.

    A query is routed into subqueries, each subquery runs through the fulfillment loop in order
    and, when several answers must be merged, the aggregator writes the final text.  Everything
    reaches the caller as one ordered stream of :class:`~agentflow.core.events.StreamEvent`.
    """

    def __init__(
        self,
        models: ModelHub,
        memory: Memory,
        toolset: Toolset,
        multi_intent: bool = True,
        aggregation_mode: str = "routed",
        max_tool_iterations: int = 16,
        agent_name: str = "agentflow",
    ):
        self.models = models
        self.memory = memory
        self.toolset = toolset
        self.aggregation_mode = aggregation_mode
        self.router = IntentRouter(models, memory.intents, multi_intent=multi_intent)
        self.loop = FulfillmentLoop(
            models, toolset, agent_memory=memory.agent, max_iterations=max_tool_iterations
        )
        self.aggregator = ResultAggregator(models, agent_name=agent_name)

    # ------------------------------------------------------------------
    # Multiplexing
    # ------------------------------------------------------------------
    async def fulfill_intents(
        self,
        intents: Sequence[TriggeredIntent],
        thread: Thread,
        original_query: str,
        needs_aggregation: bool | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Fulfill *intents* in order and stream their events.

        Only the last subquery's text reaches the caller, and not even that one when the
        aggregator writes the final answer.  Exactly the text the caller received is appended to
        the thread, once.
        """
        started = time.monotonic()
        logger.info("Stream session started thread=%s intents=%d", thread.thread_id, len(intents))

        aggregate = len(intents) > 1 and needs_aggregation is not False
        results: List[FulfillmentResult] = []
        answer = ""
        emitted = ""
        canceled = False

        for i, triggered in enumerate(intents):
            is_last = i == len(intents) - 1
            logger.info(
                "Process query: %s (%s)",
                triggered.subquery,
                triggered.intent.name if triggered.intent else None,
            )
            self._add_thinking(thread, answer, triggered)
            yield events.intent_process(triggered.subquery, triggered.action_plan)

            answer = ""
            stream = self.loop.fulfill(triggered.subquery, thread, triggered.intent)
            async with aclosing(stream):
                async for event in stream:
                    if event.event is EventType.TEXT_CHUNK:
                        answer += event.data["delta"]
                        if not is_last or aggregate:
                            continue
                        emitted += event.data["delta"]
                    elif event.interrupt:
                        canceled = True
                    yield event

            results.append(
                FulfillmentResult(
                    subquery=triggered.subquery,
                    intent_name=triggered.intent.name if triggered.intent else None,
                    response=answer,
                )
            )
            if canceled:
                logger.info("Remote task canceled, skipping remaining subqueries")
                break

        if aggregate and not canceled:
            async for event in self.aggregator.aggregate(original_query, results, needs_aggregation):
                if event.event is EventType.TEXT_CHUNK:
                    emitted += event.data["delta"]
                yield event

        await self._save_messages(thread, [Message.text_message(MessageRole.MODEL, emitted)])
        logger.info(
            "Stream session completed thread=%s duration=%.0fms",
            thread.thread_id,
            (time.monotonic() - started) * 1000,
        )

    @staticmethod
    def _add_thinking(thread: Thread, previous_answer: str, triggered: TriggeredIntent) -> None:
        # inference-only context for the next subquery, never persisted
        if previous_answer:
            thread.messages.append(
                Message.text_message(MessageRole.MODEL, previous_answer, {"is_thinking": True})
            )
        thread.messages.append(
            Message.text_message(
                MessageRole.MODEL,
                triggered.subquery,
                {
                    "subquery": triggered.subquery,
                    "is_thinking": True,
                    "action_plan": triggered.action_plan,
                },
            )
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def stream_query(
        self,
        query: str,
        user_id: str,
        thread_id: str | None = None,
        thread_type: ThreadType = ThreadType.CHAT,
    ) -> AsyncIterator[StreamEvent]:
        """Answer *query* on behalf of *user_id*; failures end the stream with one ``error``."""
        try:
            async for event in self._stream_query(query, user_id, thread_id, thread_type):
                yield event
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Query failed")
            yield events.error(str(exc) or type(exc).__name__, getattr(exc, "kind", "internal"))

    async def _stream_query(
        self, query: str, user_id: str, thread_id: str | None, thread_type: ThreadType
    ) -> AsyncIterator[StreamEvent]:
        started = now_ms()
        thread = await self._load_thread(user_id, thread_id)
        if thread is None:
            title = await self.generate_title(query)
            thread = await self._create_thread(thread_type, user_id, thread_id or str(uuid.uuid4()), title)
            yield events.thread_id(thread.thread_id, thread.title)

        user_message = Message.text_message(MessageRole.USER, query, timestamp=started)
        await self._save_messages(thread, [user_message], keep_in_thread=False)

        trigger = await self.router.route(query, thread)
        needs_aggregation = trigger.needs_aggregation if self.aggregation_mode == "routed" else None
        async for event in self.fulfill_intents(trigger.intents, thread, query, needs_aggregation):
            yield event
        thread.messages.append(user_message)

    async def generate_title(self, query: str) -> str:
        """A title of at most five words for a new thread."""
        model = self.models.get()
        messages = model.generate_messages(query=query, system_prompt=f"{today_line()}\n{TITLE_PROMPT}")
        try:
            response = await model.fetch(messages)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Error generating title for %r", query)
            return DEFAULT_TITLE
        title = (response.content or "").strip().strip("\"'")
        return " ".join(title.split()[:5]) or DEFAULT_TITLE

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel_task(self, task_id: str) -> None:
        """Cancel a remote task; the running exchange stops at its next inbound event."""
        if self.toolset.remote is None:
            return
        self.toolset.remote.tracker.cancel(task_id)

    def cancel_thread(self, thread_id: str) -> str | None:
        """Cancel the open remote task of *thread_id*, returning its id."""
        if self.toolset.remote is None:
            return None
        return self.toolset.remote.tracker.cancel_thread(thread_id)

    # ------------------------------------------------------------------
    # Thread memory helpers
    # ------------------------------------------------------------------
    async def _load_thread(self, user_id: str, thread_id: str | None) -> Thread | None:
        if thread_id is None or self.memory.threads is None:
            return None
        return await self.memory.threads.get_thread(user_id, thread_id)

    async def _create_thread(
        self, thread_type: ThreadType, user_id: str, thread_id: str, title: str
    ) -> Thread:
        if self.memory.threads is None:
            return Thread(user_id=user_id, thread_id=thread_id, type=thread_type, title=title)
        return await self.memory.threads.create_thread(thread_type, user_id, thread_id, title)

    async def _save_messages(
        self, thread: Thread, messages: List[Message], keep_in_thread: bool = True
    ) -> None:
        """Append to the in-memory thread and persist; persistence errors are logged only."""
        if keep_in_thread:
            thread.messages.extend(messages)
        if self.memory.threads is None:
            return
        try:
            await self.memory.threads.add_messages_to_thread(thread.user_id, thread.thread_id, messages)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Error adding message to thread %s", thread.thread_id)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------
def build_engine(cfg: Settings = settings) -> tuple[QueryEngine, MCPToolProvider]:
    """Wire an engine from settings.  The MCP provider is returned so the caller can connect it."""
    intents = (
        InMemoryIntentMemory.from_file(cfg.INTENTS_PATH) if cfg.INTENTS_PATH else InMemoryIntentMemory()
    )
    if cfg.MEMORY_BACKEND == "jsonl":
        threads = JsonlThreadMemory(Path(cfg.DATA_DIR) / "threads.jsonl")
        threads.init()
    else:
        threads = InMemoryThreadMemory()
    memory = Memory(intents=intents, agent=InMemoryAgentMemory(cfg.AGENT_PROMPT), threads=threads)

    local = MCPToolProvider(load_mcp_config(cfg.MCP_CONFIG_PATH))
    remote = A2AToolProvider(cfg.A2A_PEERS, timeout=cfg.A2A_TIMEOUT)
    engine = QueryEngine(
        ModelHub.from_settings(),
        memory,
        Toolset(local=local, remote=remote),
        multi_intent=cfg.MULTI_INTENT,
        aggregation_mode=cfg.AGGREGATION_MODE,
        max_tool_iterations=cfg.MAX_TOOL_ITERATIONS,
        agent_name=cfg.AGENT_NAME,
    )
    return engine, local
