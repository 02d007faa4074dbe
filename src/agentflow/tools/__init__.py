"""
Protocol dispatch table for agentflow.

Every tool the model can call is a :class:`~agentflow.core.schema.ToolDescriptor` tagged with a
:class:`~agentflow.core.schema.ToolProtocol`.  Invocation goes through one table that maps the
protocol tag to a dispatcher; the connectors themselves stay swappable.

A dispatcher is an async generator registered like this:

    @register_dispatcher(ToolProtocol.LOCAL)
    async def dispatch_local(toolset, descriptor, args, thread_id, subquery):
        yield ToolUpdate(result=...)

It yields zero or more status updates followed by exactly one result, or stops after a
``stopped`` update when the user canceled the remote task.
"""

import json
import logging
from typing import (
    Any,
    Callable,
    Dict,
    Optional,
)

from pydantic import BaseModel

from agentflow.core.schema import ToolProtocol

logger = logging.getLogger(__name__)

DISPATCH_TABLE: Dict[ToolProtocol, Callable] = {}
"""Protocol tag -> dispatcher."""


def register_dispatcher(protocol: ToolProtocol) -> Callable:
    """
    Register the dispatcher for *protocol*.

    Parameters
    ----------
    protocol: ToolProtocol
        The protocol tag.  Only one dispatcher may be registered per protocol.
    Returns
    -------
    Callable
        A decorator that registers the function for the given protocol.
    Raises
    ------
    ValueError
        If a dispatcher for the protocol is already registered.
    """
    if protocol in DISPATCH_TABLE:
        raise ValueError(f"Dispatcher for '{protocol.value}' is already registered.")
    logger.debug("Registering dispatcher for '%s'", protocol.value)

    def wrapper(fn: Callable) -> Callable:
        DISPATCH_TABLE[protocol] = fn
        return fn

    return wrapper


class ToolUpdate(BaseModel):
    """One step of a tool invocation: a remote task state change or the final text result."""

    task_id: Optional[str] = None
    state: Optional[str] = None
    result: Optional[str] = None
    stopped: bool = False
    """Set only when a cancel request ended the exchange, not when the agent reports ``canceled``."""

    @property
    def is_result(self) -> bool:
        return self.result is not None


CANCELED = "canceled"


def format_local_result(tool_name: str, args: Dict[str, Any], body: str) -> str:
    """Result text for a LOCAL tool call, as shown to the model."""
    return f"[Bot Called Tool {tool_name} with args {json.dumps(args, ensure_ascii=False)}]\n{body}"


def format_remote_result(tool_name: str, body: str) -> str:
    """Result text for a REMOTE agent call, as shown to the model."""
    return f"[Bot Called A2A Tool {tool_name}]\n{body}"
