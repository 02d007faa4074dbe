"""
Model backend interface for agentflow.

This module is the only place that *directly* calls an LLM.  Everything else (router, fulfillment
loop, aggregator) stays model-agnostic and speaks in terms of :class:`ModelBackend`.

We support two back-ends out of the box:

1. **OpenAI** chat completions (also any OpenAI-compatible endpoint via ``OPENAI_BASE_URL``).
2. **Anthropic** messages API.

Both normalise their streamed output to :class:`~agentflow.core.schema.StreamChunk`, whose shape
follows the OpenAI delta format.  Additional providers can be added by subclassing
:class:`ModelBackend` and registering via :func:`register_model`.
"""

import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Sequence,
    Type,
)

from agentflow.config import settings
from agentflow.core.errors import ModelBackendError
from agentflow.core.schema import (
    Delta,
    FetchResponse,
    FunctionDelta,
    MessageRole,
    ModelOptions,
    StreamChunk,
    Thread,
    ToolCall,
    ToolCallDelta,
    ToolDescriptor,
)

logger = logging.getLogger(__name__)

MessageType = Dict[str, Any]
FunctionType = Dict[str, Any]

_ROLE_MAP = {
    MessageRole.USER: "user",
    MessageRole.MODEL: "assistant",
    MessageRole.SYSTEM: "system",
}


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_MODEL_REGISTRY: dict[str, Type["ModelBackend"]] = {}


def register_model(name: str) -> Callable:
    """Decorator to register a backend class under *name*."""

    def wrapper(cls: Type["ModelBackend"]) -> Type["ModelBackend"]:
        _MODEL_REGISTRY[name] = cls
        return cls

    return wrapper


def load_model(name: str | None = None) -> "ModelBackend":
    """
    Factory that returns an instantiated backend.

    Fallback order:
    1. *name* arg
    2. ``settings.MODEL`` env option
    3. default: ``"openai"``
    """

    target = name or getattr(settings, "MODEL", "openai")
    cls = _MODEL_REGISTRY.get(target.lower())
    if cls is None:
        raise ModelBackendError(f"Model backend '{target}' is not registered.")
    return cls()


class ModelHub:
    """Named backend instances with a default, resolved per intent via its model hint."""

    def __init__(self) -> None:
        self._models: Dict[str, ModelBackend] = {}
        self._default: str | None = None

    def add(self, name: str, model: "ModelBackend", default: bool = False) -> None:
        """Register *model* as *name*; the first one added becomes the default."""
        self._models[name] = model
        if default or self._default is None:
            self._default = name

    def get(self, name: str | None = None) -> "ModelBackend":
        """Return the backend called *name*, or the default when it is unknown or omitted."""
        if self._default is None:
            raise ModelBackendError("No default model")
        if name and name in self._models:
            return self._models[name]
        if name:
            logger.debug("Model '%s' not in hub, using default '%s'", name, self._default)
        return self._models[self._default]

    def names(self) -> List[str]:
        return list(self._models)

    @classmethod
    def from_settings(cls) -> "ModelHub":
        """Instantiate every backend whose API key is configured, ``settings.MODEL`` as default."""
        hub = cls()
        configured = {
            "openai": settings.OPENAI_API_KEY or settings.OPENAI_BASE_URL,
            "anthropic": settings.ANTHROPIC_API_KEY,
        }
        for name, available in configured.items():
            if available or name == settings.MODEL:
                hub.add(name, load_model(name), default=name == settings.MODEL)
        return hub


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class ModelBackend(ABC):
    """Abstract backend that formats history and talks to one provider."""

    def generate_messages(
        self,
        query: str,
        thread: Thread | None = None,
        system_prompt: str | None = None,
    ) -> List[MessageType]:
        """Build provider messages from the thread history followed by *query*."""
        messages: List[MessageType] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if thread is not None:
            for message in thread.ordered_messages():
                messages.append({"role": _ROLE_MAP[message.role], "content": message.text})
        messages.append({"role": "user", "content": query})
        return messages

    def append_messages(self, messages: List[MessageType], text: str) -> None:
        """Append a tool result as the next user turn."""
        messages.append({"role": "user", "content": text})

    def convert_tools_to_functions(self, tools: Sequence[ToolDescriptor]) -> List[FunctionType]:
        """Provider-native declarations for *tools* (OpenAI function format by default)."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.tool_name,
                    "description": tool.description,
                    "parameters": tool.input_schema,
                },
            }
            for tool in tools
        ]

    @abstractmethod
    async def fetch(
        self, messages: List[MessageType], options: ModelOptions | None = None
    ) -> FetchResponse:
        """Single completion without tools."""

    @abstractmethod
    def fetch_stream_with_context_message(
        self,
        messages: List[MessageType],
        functions: List[FunctionType],
        options: ModelOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Streamed completion; *functions* come from :meth:`convert_tools_to_functions`."""


# ---------------------------------------------------------------------------
# Concrete backends
# ---------------------------------------------------------------------------
@register_model("openai")
class OpenAIModel(ModelBackend):
    """OpenAI chat-completions backend."""

    def __init__(self, model: str | None = None, client: Any = None):
        self.model = model or settings.OPENAI_MODEL
        if client is None:
            import openai  # pylint: disable=import-outside-toplevel

            client = openai.AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY, base_url=settings.OPENAI_BASE_URL
            )
        self._client = client

    def _request(self, messages: List[MessageType], options: ModelOptions | None) -> Dict[str, Any]:
        options = options or ModelOptions()
        request: Dict[str, Any] = {"model": self.model, "messages": messages}
        if options.temperature is not None:
            request["temperature"] = options.temperature
        if options.max_tokens is not None:
            request["max_tokens"] = options.max_tokens
        if options.json_mode:
            request["response_format"] = {"type": "json_object"}
        return request

    async def fetch(
        self, messages: List[MessageType], options: ModelOptions | None = None
    ) -> FetchResponse:
        try:
            resp = await self._client.chat.completions.create(**self._request(messages, options))
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("OpenAI fetch error: %s", str(exc))
            raise ModelBackendError(f"Error calling OpenAI: {exc}") from exc

        message = resp.choices[0].message
        tool_calls = []
        for call in message.tool_calls or []:
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError:
                arguments = {}
            tool_calls.append(ToolCall(id=call.id, name=call.function.name, arguments=arguments))
        logger.debug("OpenAI response: %s", message.content)
        return FetchResponse(content=message.content, tool_calls=tool_calls)

    async def fetch_stream_with_context_message(
        self,
        messages: List[MessageType],
        functions: List[FunctionType],
        options: ModelOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        request = self._request(messages, options)
        request["stream"] = True
        if functions:
            request["tools"] = functions
        try:
            stream = await self._client.chat.completions.create(**request)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("OpenAI stream error: %s", str(exc))
            raise ModelBackendError(f"Error calling OpenAI: {exc}") from exc

        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            tool_calls = None
            if delta.tool_calls:
                tool_calls = [
                    ToolCallDelta(
                        index=call.index,
                        id=call.id,
                        function=FunctionDelta(
                            name=call.function.name if call.function else None,
                            arguments=call.function.arguments if call.function else None,
                        ),
                    )
                    for call in delta.tool_calls
                ]
            if delta.content or tool_calls:
                yield StreamChunk(delta=Delta(content=delta.content, tool_calls=tool_calls))


@register_model("anthropic")
class AnthropicModel(ModelBackend):
    """Anthropic messages backend; tool-use blocks are re-shaped into OpenAI-style deltas."""

    def __init__(self, model: str | None = None, client: Any = None):
        self.model = model or settings.ANTHROPIC_MODEL
        if client is None:
            import anthropic  # pylint: disable=import-outside-toplevel

            client = anthropic.AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)
        self._client = client

    def convert_tools_to_functions(self, tools: Sequence[ToolDescriptor]) -> List[FunctionType]:
        return [
            {
                "name": tool.tool_name,
                "description": tool.description,
                "input_schema": tool.input_schema,
            }
            for tool in tools
        ]

    def _request(self, messages: List[MessageType], options: ModelOptions | None) -> Dict[str, Any]:
        options = options or ModelOptions()
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns: List[MessageType] = []
        for message in messages:
            if message["role"] == "system":
                continue
            # Anthropic rejects consecutive turns from the same role
            if turns and turns[-1]["role"] == message["role"]:
                turns[-1] = {
                    "role": message["role"],
                    "content": f"{turns[-1]['content']}\n\n{message['content']}",
                }
            else:
                turns.append({"role": message["role"], "content": message["content"]})
        if options.json_mode:
            system += "\n\nRespond with a single JSON document and nothing else."
        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": options.max_tokens or 8192,
            "messages": turns,
        }
        if system.strip():
            request["system"] = system.strip()
        if options.temperature is not None:
            request["temperature"] = options.temperature
        return request

    async def fetch(
        self, messages: List[MessageType], options: ModelOptions | None = None
    ) -> FetchResponse:
        try:
            response = await self._client.messages.create(**self._request(messages, options))
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Anthropic fetch error: %s", str(exc))
            raise ModelBackendError(f"Error calling Anthropic: {exc}") from exc

        texts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input)))
        content = "".join(texts) or None
        logger.debug("Anthropic response: %s", content)
        return FetchResponse(content=content, tool_calls=tool_calls)

    async def fetch_stream_with_context_message(
        self,
        messages: List[MessageType],
        functions: List[FunctionType],
        options: ModelOptions | None = None,
    ) -> AsyncIterator[StreamChunk]:
        request = self._request(messages, options)
        if functions:
            request["tools"] = functions
        request["stream"] = True
        try:
            stream = await self._client.messages.create(**request)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Anthropic stream error: %s", str(exc))
            raise ModelBackendError(f"Error calling Anthropic: {exc}") from exc

        # content-block index -> tool-call index
        tool_positions: Dict[int, int] = {}
        async for event in stream:
            if event.type == "content_block_start" and event.content_block.type == "tool_use":
                position = len(tool_positions)
                tool_positions[event.index] = position
                yield StreamChunk(
                    delta=Delta(
                        tool_calls=[
                            ToolCallDelta(
                                index=position,
                                id=event.content_block.id,
                                function=FunctionDelta(name=event.content_block.name),
                            )
                        ]
                    )
                )
            elif event.type == "content_block_delta":
                if event.delta.type == "text_delta":
                    yield StreamChunk(delta=Delta(content=event.delta.text))
                elif event.delta.type == "input_json_delta" and event.index in tool_positions:
                    yield StreamChunk(
                        delta=Delta(
                            tool_calls=[
                                ToolCallDelta(
                                    index=tool_positions[event.index],
                                    function=FunctionDelta(arguments=event.delta.partial_json),
                                )
                            ]
                        )
                    )
