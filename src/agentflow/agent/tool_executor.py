"""Dispatches tool calls through ``agentflow.tools.DISPATCH_TABLE`` and wraps errors."""

import logging
from contextlib import aclosing
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
)

from agentflow.core.errors import (
    AgentflowError,
    ToolExecutionError,
)
from agentflow.core.schema import (
    ToolDescriptor,
    ToolProtocol,
)
from agentflow.tools import (
    CANCELED,
    DISPATCH_TABLE,
    ToolUpdate,
    format_local_result,
    format_remote_result,
    register_dispatcher,
)

logger = logging.getLogger(__name__)


class Toolset:
    """The LOCAL and REMOTE providers available to one engine."""

    def __init__(self, local: Any = None, remote: Any = None):
        self.local = local
        self.remote = remote

    async def get_tools(self) -> List[ToolDescriptor]:
        """Fresh descriptor list: LOCAL tools first, then REMOTE agents."""
        tools: List[ToolDescriptor] = []
        if self.local is not None:
            tools.extend(await self.local.get_tools())
        if self.remote is not None:
            tools.extend(await self.remote.get_tools())
        return tools


# ---------------------------------------------------------------------------
# Dispatchers
# ---------------------------------------------------------------------------
@register_dispatcher(ToolProtocol.LOCAL)
async def dispatch_local(
    toolset: Toolset, descriptor: ToolDescriptor, args: Dict[str, Any], thread_id: str, subquery: str
) -> AsyncIterator[ToolUpdate]:
    if toolset.local is None:
        raise ToolExecutionError(f"No LOCAL provider for tool '{descriptor.tool_name}'.")
    yield ToolUpdate(result=await toolset.local.use_tool(descriptor, args))


@register_dispatcher(ToolProtocol.REMOTE)
async def dispatch_remote(
    toolset: Toolset, descriptor: ToolDescriptor, args: Dict[str, Any], thread_id: str, subquery: str
) -> AsyncIterator[ToolUpdate]:
    """
    Stream one exchange with a remote agent.

    Every task state reported by the agent is forwarded.  After each inbound event the
    cancellation set is consulted; a task canceled on request ends the exchange with a
    ``stopped`` update and no result.  A ``canceled`` state reported by the agent itself is just
    another status, and its text still becomes the result.
    """
    remote = toolset.remote
    if remote is None:
        raise ToolExecutionError(f"No REMOTE provider for tool '{descriptor.tool_name}'.")
    tracker = remote.tracker
    query = args.get("query") or subquery
    texts: List[str] = []
    task_id: str | None = None

    async with tracker.session(thread_id):
        async with aclosing(remote.stream_message(descriptor, query, thread_id)) as events:
            async for event in events:
                task_id = event.task_id or task_id
                if event.text:
                    texts.append(event.text)
                if event.state:
                    yield ToolUpdate(task_id=task_id, state=event.state)
                if tracker.is_canceled(task_id):
                    logger.info("Remote task %s canceled", task_id)
                    await remote.cancel(descriptor, task_id)
                    tracker.finish_cancel(thread_id, task_id)
                    yield ToolUpdate(task_id=task_id, state=CANCELED, stopped=True)
                    return

    yield ToolUpdate(task_id=task_id, result=format_remote_result(descriptor.tool_name, "\n".join(texts)))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def failure_text(descriptor: ToolDescriptor, args: Dict[str, Any], exc: Exception) -> str:
    """Tool-result text reporting *exc* to the model."""
    if descriptor.protocol is ToolProtocol.REMOTE:
        return format_remote_result(descriptor.tool_name, str(exc))
    return format_local_result(descriptor.tool_name, args, str(exc))


async def execute_tool(
    toolset: Toolset,
    descriptor: ToolDescriptor,
    args: Dict[str, Any] | None = None,
    thread_id: str = "",
    subquery: str = "",
) -> AsyncIterator[ToolUpdate]:
    """
    Look up the dispatcher for *descriptor* and stream its updates.

    Parameters
    ----------
    toolset:
        Providers the dispatchers call into.
    descriptor:
        The tool being called.
    args:
        Decoded tool-call arguments.  If *None*, an empty dict is assumed.
    thread_id, subquery:
        Conversation context; REMOTE calls use them for task continuity and as the fallback
        query text.

    Yields
    ------
    ToolUpdate
        Status updates, then one result.  A failing tool yields its failure text as the result
        and, for REMOTE tools, disables that connector.

    Raises
    ------
    ToolExecutionError
        If no dispatcher is registered for the descriptor's protocol.
    """

    if args is None:
        args = {}

    dispatcher = DISPATCH_TABLE.get(descriptor.protocol)
    if dispatcher is None:
        raise ToolExecutionError(f"No dispatcher for protocol '{descriptor.protocol.value}'.")

    logger.debug("Executing tool '%s' with args=%s", descriptor.tool_name, args)
    try:
        async with aclosing(dispatcher(toolset, descriptor, args, thread_id, subquery)) as updates:
            async for update in updates:
                yield update
    except AgentflowError as exc:
        logger.exception("Error in tool '%s'", descriptor.tool_name)
        yield _failed(toolset, descriptor, args, exc)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error in tool '%s'", descriptor.tool_name)
        error = ToolExecutionError(f"Tool '{descriptor.tool_name}' raised an error: {exc}")
        yield _failed(toolset, descriptor, args, error)


def _failed(
    toolset: Toolset, descriptor: ToolDescriptor, args: Dict[str, Any], exc: Exception
) -> ToolUpdate:
    if descriptor.protocol is ToolProtocol.REMOTE and toolset.remote is not None:
        toolset.remote.disable(descriptor.connector_name)
    return ToolUpdate(result=failure_text(descriptor, args, exc))
