"""
REMOTE tool provider: other agents reached over the A2A protocol.

Each peer URL is discovered through its agent card and exposed as one tool named after the agent.
Calls use JSON-RPC ``message/stream``; the response is a Server-Sent Events stream of task,
message and status-update events, which are fed through the
:class:`~agentflow.tools.task_tracker.TaskTracker` so that follow-up calls on the same thread
continue the open remote task.
"""

import json
import logging
import re
import uuid
from contextlib import aclosing
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
)

import httpx
from pydantic import (
    BaseModel,
    Field,
)

from agentflow.agent.tool_executor import (
    Toolset,
    execute_tool,
)
from agentflow.core.errors import ConnectorError
from agentflow.core.schema import (
    ThreadType,
    ToolDescriptor,
    ToolProtocol,
)
from agentflow.tools.task_tracker import (
    RemoteEvent,
    TaskTracker,
)

logger = logging.getLogger(__name__)

CARD_PATHS = ("/.well-known/agent-card.json", "/.well-known/agent.json")

QUERY_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "The request to send to the agent, in natural language.",
        }
    },
    "required": ["query"],
}


class AgentCard(BaseModel):
    """The subset of an A2A agent card used to build a tool."""

    name: str
    description: str = ""
    url: str | None = None
    skills: List[Dict[str, Any]] = Field(default_factory=list)


class A2APeer(BaseModel):
    url: str
    card: AgentCard
    enabled: bool = True

    @property
    def endpoint(self) -> str:
        return self.card.url or self.url


def tool_name_for(card: AgentCard) -> str:
    """Function-name-safe tool name for an agent."""
    return re.sub(r"[^A-Za-z0-9_-]", "", card.name.replace(" ", "-")) or "agent"


class A2AToolProvider:
    """Discovers A2A peers and streams messages to them."""

    def __init__(
        self,
        peers: List[str] | None = None,
        tracker: TaskTracker | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ):
        self.tracker = tracker or TaskTracker()
        self.agent_id = str(uuid.uuid4())
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._peers: Dict[str, A2APeer | None] = {url.rstrip("/"): None for url in peers or []}

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    async def fetch_agent_card(self, url: str) -> AgentCard:
        """Fetch the agent card of *url*, trying the current well-known path first."""
        last_error: Exception | None = None
        for path in CARD_PATHS:
            try:
                resp = await self._client.get(url + path)
                resp.raise_for_status()
                return AgentCard.model_validate(resp.json())
            except (httpx.HTTPError, ValueError) as exc:
                last_error = exc
        raise ConnectorError(f"No agent card at {url}: {last_error}")

    async def get_tools(self) -> List[ToolDescriptor]:
        """One descriptor per reachable, enabled peer.  Unreachable peers are retried next call."""
        tools: List[ToolDescriptor] = []
        for url, peer in list(self._peers.items()):
            if peer is None:
                try:
                    card = await self.fetch_agent_card(url)
                except ConnectorError as exc:
                    logger.warning("A2A peer %s not responding: %s", url, exc)
                    continue
                peer = A2APeer(url=url, card=card)
                self._peers[url] = peer
            if not peer.enabled:
                continue
            tools.append(self._descriptor(peer))
        return tools

    @staticmethod
    def _descriptor(peer: A2APeer) -> ToolDescriptor:
        description = peer.card.description
        skills = [s.get("name") or s.get("id") for s in peer.card.skills]
        if skills:
            description += f"\nSkills: {', '.join(s for s in skills if s)}"
        return ToolDescriptor(
            tool_name=tool_name_for(peer.card),
            protocol=ToolProtocol.REMOTE,
            connector_name=peer.url,
            description=description.strip(),
            input_schema=QUERY_SCHEMA,
        )

    def disable(self, connector_name: str) -> None:
        """Take a peer out of service for the rest of the process lifetime."""
        peer = self._peers.get(connector_name)
        if peer is not None and peer.enabled:
            logger.warning("Disabling A2A peer %s", connector_name)
            peer.enabled = False

    def _peer(self, descriptor: ToolDescriptor) -> A2APeer:
        peer = self._peers.get(descriptor.connector_name)
        if peer is None or not peer.enabled:
            raise ConnectorError(f"A2A peer {descriptor.connector_name} is not available")
        return peer

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------
    def message_payload(self, query: str, thread_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messageId": str(uuid.uuid4()),
            "kind": "message",
            "role": "user",
            "metadata": {"agentId": self.agent_id, "type": ThreadType.CHAT.value},
            "parts": [{"kind": "text", "text": query}],
            "contextId": thread_id,
        }
        current = self.tracker.current(thread_id)
        if current is not None:
            payload["taskId"] = current.task_id
        return payload

    async def stream_message(
        self, descriptor: ToolDescriptor, query: str, thread_id: str
    ) -> AsyncIterator[RemoteEvent]:
        """
        Send *query* and yield every inbound event after the tracker has observed it.

        Raises
        ------
        ConnectorError
            On transport failures and JSON-RPC errors.
        """
        peer = self._peer(descriptor)
        request = {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": "message/stream",
            "params": {"message": self.message_payload(query, thread_id)},
        }
        try:
            async with self._client.stream(
                "POST", peer.endpoint, json=request, headers={"Accept": "text/event-stream"}
            ) as resp:
                resp.raise_for_status()
                async for data in _sse_data(resp):
                    envelope = json.loads(data)
                    if not isinstance(envelope, dict):
                        raise ConnectorError(f"Malformed event from agent {descriptor.tool_name}: {data}")
                    if envelope.get("error"):
                        error = envelope["error"]
                        message = error.get("message") if isinstance(error, dict) else error
                        raise ConnectorError(f"A2A error from {descriptor.tool_name}: {message}")
                    yield self.tracker.observe(thread_id, envelope.get("result") or {})
        except httpx.HTTPError as exc:
            raise ConnectorError(f"Error communicating with agent {descriptor.tool_name}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConnectorError(f"Malformed event from agent {descriptor.tool_name}: {exc}") from exc

    async def use_tool(self, descriptor: ToolDescriptor, query: str, thread_id: str) -> str:
        """Run one full exchange through the REMOTE dispatcher and return its result text."""
        result = ""
        updates = execute_tool(Toolset(remote=self), descriptor, {"query": query}, thread_id, query)
        async with aclosing(updates):
            async for update in updates:
                if update.is_result:
                    result = update.result or ""
        return result

    async def cancel(self, descriptor: ToolDescriptor, task_id: str) -> None:
        """Ask the remote agent to cancel *task_id*; errors are logged only."""
        peer = self._peers.get(descriptor.connector_name)
        if peer is None:
            return
        request = {
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": "tasks/cancel",
            "params": {"id": task_id},
        }
        try:
            resp = await self._client.post(peer.endpoint, json=request)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Failed to cancel remote task %s: %s", task_id, exc)

    async def aclose(self) -> None:
        await self._client.aclose()


async def _sse_data(resp: httpx.Response) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each Server-Sent Event in *resp*."""
    lines: List[str] = []
    async for line in resp.aiter_lines():
        if not line:
            if lines:
                yield "\n".join(lines)
                lines = []
            continue
        if line.startswith("data:"):
            lines.append(line[5:].lstrip())
    if lines:
        yield "\n".join(lines)
