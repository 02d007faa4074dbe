"""
The per-subquery tool-calling loop.

One call to :meth:`FulfillmentLoop.fulfill` streams a completion, runs every tool call the model
asked for, feeds the results back and repeats until the model answers without tool calls.
"""

import json
import logging
import uuid
from contextlib import aclosing
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
)

from agentflow.agent.model_interface import ModelHub
from agentflow.agent.tool_executor import (
    Toolset,
    execute_tool,
)
from agentflow.common import today_line
from agentflow.core import events
from agentflow.core.errors import (
    ToolLoopExceeded,
    ToolResolutionError,
)
from agentflow.core.events import StreamEvent
from agentflow.core.schema import (
    Intent,
    Thread,
    ToolCallAccumulator,
    ToolDescriptor,
    ToolProtocol,
)
from agentflow.memory.memory_store import AgentMemory

logger = logging.getLogger(__name__)

TOOL_INSTRUCTIONS = """You are a highly sophisticated automated agent that can answer user queries by utilizing various tools and resources.

There is a selection of tools that let you perform actions or retrieve helpful context to answer the user's question.
You can call tools repeatedly to take actions or gather as much context as needed until you have completed the task fully.

Don't give up unless you are sure the request cannot be fulfilled with the tools you have.
It's YOUR RESPONSIBILITY to make sure that you have done all you can to collect necessary context.

If you are not sure about content or context pertaining to the user's request, use your tools to read data and gather the relevant information: do NOT guess or make up an answer.
Be THOROUGH when gathering information. Make sure you have the FULL picture before replying. Use additional tool calls or clarifying questions as needed.

Don't try to answer the user's question directly.
First break down the user's request into smaller concepts and think about the kinds of tools and queries you need to grasp each concept.

There are two <tool_type> for tools: MCP_Tool and A2A_Tool.
The tool type can be identified by the presence of "[Bot Called <tool_type> with args <tool_args>]" at the beginning of the tool result message.
After executing a tool, a final response message must be written.

Refer to the usage instructions below for each <tool_type>.

<MCP_Tool>
   Use MCP tools through tools.
   MCP tool names are structured as follows:
     {MCP_NAME}_{TOOL_NAME}
     For example, tool names for the "notionApi" mcp would be:
       notionApi_API-post-search

   Separate rules can be specified under <{MCP_NAME}> for each MCP_NAME.
</MCP_Tool>

<A2A_Tool>
   A2A_Tool is a tool that sends queries to Agents with different information than mine and receives answers. The Agent that provided the answer must be clearly indicated.
   Results from A2A_Tool are text generated after thorough consideration by the requested Agent, and are complete outputs that cannot be further developed.
   There is no need to supplement the content with the same question or use new tools.
</A2A_Tool>"""


def decode_arguments(call: ToolCallAccumulator) -> Dict[str, Any]:
    """Arguments of *call* as a dict; malformed JSON becomes ``{}``."""
    if not call.arguments.strip():
        return {}
    try:
        args = json.loads(call.arguments)
    except json.JSONDecodeError:
        logger.warning("Malformed arguments for tool '%s': %r", call.name, call.arguments)
        return {}
    if not isinstance(args, dict):
        logger.warning("Non-object arguments for tool '%s': %r", call.name, call.arguments)
        return {}
    return args


class FulfillmentLoop:
    """Runs the tool-calling loop for one subquery at a time."""

    def __init__(
        self,
        models: ModelHub,
        toolset: Toolset,
        agent_memory: AgentMemory | None = None,
        max_iterations: int = 16,
    ):
        self.models = models
        self.toolset = toolset
        self.agent_memory = agent_memory
        self.max_iterations = max_iterations

    async def system_prompt(self, intent: Intent | None = None) -> str:
        """Date line, tool instructions, agent prompt, intent prompt."""
        agent_prompt = await self.agent_memory.get_agent_prompt() if self.agent_memory else ""
        intent_prompt = intent.prompt if intent and intent.prompt else ""
        return f"{today_line()}\n{TOOL_INSTRUCTIONS}\n\n{agent_prompt}\n\n{intent_prompt}".strip()

    async def fulfill(
        self, subquery: str, thread: Thread, intent: Intent | None = None
    ) -> AsyncIterator[StreamEvent]:
        """
        Fulfill *subquery* and stream its events.

        Text deltas are yielded as they arrive.  Each tool call produces ``tool_start``, any
        ``task_status`` updates and ``tool_output``.  A remote task canceled on request ends the
        loop right after its ``canceled`` status, which is flagged as an interrupt.

        Raises
        ------
        ToolResolutionError
            If the model calls a tool that was not declared to it.
        ToolLoopExceeded
            If the model is still calling tools after ``max_iterations`` round trips.
        """
        model = self.models.get(intent.model if intent else None)
        messages = model.generate_messages(
            query=subquery, thread=thread, system_prompt=await self.system_prompt(intent)
        )
        tools: List[ToolDescriptor] = await self.toolset.get_tools()
        logger.debug(
            "Fulfillment start thread=%s intent=%s tools=%s",
            thread.thread_id,
            intent.name if intent else None,
            [t.tool_name for t in tools],
        )

        rounds = 0
        calls_made = 0
        while True:
            rounds += 1
            if rounds > self.max_iterations:
                raise ToolLoopExceeded(self.max_iterations, subquery)

            declared = {tool.tool_name: tool for tool in tools}
            accumulators: Dict[int, ToolCallAccumulator] = {}
            stream = model.fetch_stream_with_context_message(
                messages, model.convert_tools_to_functions(tools)
            )
            async for chunk in stream:
                if chunk.delta.tool_calls:
                    for delta in chunk.delta.tool_calls:
                        accumulators.setdefault(
                            delta.index, ToolCallAccumulator(index=delta.index)
                        ).apply(delta)
                if chunk.delta.content:
                    yield events.text_chunk(chunk.delta.content)

            if not accumulators:
                break

            for index in sorted(accumulators):
                call = accumulators[index]
                descriptor = declared.get(call.name)
                if descriptor is None:
                    raise ToolResolutionError(f"Model called undeclared tool '{call.name}'")
                if descriptor.protocol is ToolProtocol.REMOTE and descriptor in tools:
                    # one exchange per remote agent per fulfillment
                    tools.remove(descriptor)

                args = decode_arguments(call)
                tool_call_id = call.id or str(uuid.uuid4())
                logger.info("%s tool call: %s", descriptor.protocol.value, descriptor.tool_name)
                yield events.tool_start(tool_call_id, descriptor.protocol, descriptor.tool_name, args)

                result = ""
                updates = execute_tool(self.toolset, descriptor, args, thread.thread_id, subquery)
                async with aclosing(updates):
                    async for update in updates:
                        if update.is_result:
                            result = update.result or ""
                            continue
                        yield events.task_status(
                            tool_call_id, update.task_id, update.state or "", interrupt=update.stopped
                        )
                        if update.stopped:
                            logger.info("Fulfillment of %r stopped by cancellation", subquery)
                            return

                yield events.tool_output(tool_call_id, descriptor.protocol, descriptor.tool_name, result)
                logger.debug("Tool result: %s", result)
                model.append_messages(messages, result)
                calls_made += 1

        logger.debug(
            "Fulfillment completed thread=%s tool_calls=%d rounds=%d",
            thread.thread_id,
            calls_made,
            rounds,
        )
