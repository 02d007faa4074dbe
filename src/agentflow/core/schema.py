"""
Schema definitions shared by the router, the fulfillment loop, the connectors and the memory layer.

These data models serve as the contract between the model backends, the query engine and the tool
connectors.  We keep them separate from runtime logic so they can be imported anywhere without
side-effects.
"""

import time
import uuid
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Threads and messages
# ---------------------------------------------------------------------------
class MessageRole(str, Enum):
    """Roles for participants in a conversation."""

    USER = "USER"
    MODEL = "MODEL"
    SYSTEM = "SYSTEM"


class ThreadType(str, Enum):
    """Kind of conversation a thread holds."""

    CHAT = "CHAT"
    WORKFLOW = "WORKFLOW"


class MessageContent(BaseModel):
    """Multi-part message body; only ``text`` parts are produced by the engine."""

    type: str = "text"
    parts: List[str] = Field(default_factory=list)


class Message(BaseModel):
    """A single message in a thread."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    timestamp: int = Field(default_factory=now_ms)
    content: MessageContent
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def text_message(
        cls,
        role: MessageRole,
        text: str,
        metadata: Dict[str, Any] | None = None,
        timestamp: int | None = None,
    ) -> "Message":
        """Build a single-part text message."""
        return cls(
            role=role,
            content=MessageContent(parts=[text]),
            metadata=metadata or {},
            timestamp=timestamp if timestamp is not None else now_ms(),
        )

    @property
    def text(self) -> str:
        """The message text; a single-part message is returned verbatim."""
        return " ".join(self.content.parts)

    @property
    def is_thinking(self) -> bool:
        """True for inference-only scratch messages that are never persisted."""
        return bool(self.metadata.get("is_thinking"))


class Thread(BaseModel):
    """A conversation owned by one user."""

    user_id: str
    thread_id: str
    type: ThreadType = ThreadType.CHAT
    title: str = ""
    messages: List[Message] = Field(default_factory=list)

    def ordered_messages(self) -> List[Message]:
        """Messages sorted by timestamp (stable for equal timestamps)."""
        return sorted(self.messages, key=lambda m: m.timestamp)


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------
class Intent(BaseModel):
    """A named capability from the intent catalog."""

    model_config = ConfigDict(frozen=True)

    intent_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str
    prompt: Optional[str] = None  # Appended to the fulfillment system prompt
    model: Optional[str] = None  # Name of a backend registered in the model hub


class TriggeredIntent(BaseModel):
    """One subquery to fulfill, with the catalog entry it matched (if any)."""

    subquery: str
    intent: Optional[Intent] = None
    action_plan: Optional[str] = None


class IntentTriggerResult(BaseModel):
    """Output of the intent router."""

    intents: List[TriggeredIntent] = Field(..., min_length=1)
    needs_aggregation: bool = False

    @model_validator(mode="after")
    def _single_intent_never_aggregates(self) -> "IntentTriggerResult":
        if len(self.intents) == 1:
            self.needs_aggregation = False
        return self

    @classmethod
    def passthrough(cls, query: str) -> "IntentTriggerResult":
        """The degraded result: the whole query, unmatched, no aggregation."""
        return cls(intents=[TriggeredIntent(subquery=query)], needs_aggregation=False)


class FulfillmentResult(BaseModel):
    """Final text produced for one TriggeredIntent."""

    subquery: str
    intent_name: Optional[str] = None
    response: str


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------
class ToolProtocol(str, Enum):
    """Tool protocol families."""

    LOCAL = "LOCAL"  # MCP tool hosted by a locally spawned helper process
    REMOTE = "REMOTE"  # A2A agent reached over its task-oriented RPC protocol


class ToolDescriptor(BaseModel):
    """Protocol-agnostic description of a tool the model can call."""

    tool_name: str
    protocol: ToolProtocol
    connector_name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class FunctionDelta(BaseModel):
    """Partial function call inside a streamed tool-call delta."""

    name: Optional[str] = None
    arguments: Optional[str] = None


class ToolCallDelta(BaseModel):
    """A streamed fragment of the tool call at position ``index``."""

    index: int
    id: Optional[str] = None
    function: FunctionDelta = Field(default_factory=FunctionDelta)


class Delta(BaseModel):
    """Content of one streamed chunk."""

    content: Optional[str] = None
    tool_calls: Optional[List[ToolCallDelta]] = None


class StreamChunk(BaseModel):
    """One element of a model backend's streamed response."""

    delta: Delta = Field(default_factory=Delta)


class ToolCallAccumulator(BaseModel):
    """Reassembles one tool call from its streamed fragments."""

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""

    def apply(self, delta: ToolCallDelta) -> "ToolCallAccumulator":
        """Merge *delta* in place; id and name overwrite, argument fragments concatenate."""
        if delta.id:
            self.id = delta.id
        if delta.function.name:
            self.name = delta.function.name
        if delta.function.arguments:
            self.arguments += delta.function.arguments
        return self


class ToolCall(BaseModel):
    """A complete tool call returned by a non-streaming fetch."""

    id: str = ""
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class FetchResponse(BaseModel):
    """Response from a single-shot model call."""

    content: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)


class ModelOptions(BaseModel):
    """Per-call overrides for a model backend."""

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    json_mode: bool = False
