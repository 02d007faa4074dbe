"""
LOCAL tool provider backed by Model Context Protocol servers.

Servers are configured as a JSON mapping (optionally nested under ``"mcpServers"``)::

    {
      "weatherApi": {"type": "stdio", "command": "python", "args": ["-m", "weather_server"]},
      "notion": {"type": "streamable_http", "url": "http://localhost:3000/mcp"}
    }

Every tool a server lists is exposed as ``"<server>_<tool>"``.  All sessions share one
:class:`~contextlib.AsyncExitStack` so :meth:`MCPToolProvider.cleanup` closes them together.
"""

import json
import logging
import os
from contextlib import AsyncExitStack
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
)

import httpx
from mcp import (
    ClientSession,
    StdioServerParameters,
)
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamable_http_client

from agentflow.core.errors import ToolExecutionError
from agentflow.core.schema import (
    ToolDescriptor,
    ToolProtocol,
)
from agentflow.tools import format_local_result

logger = logging.getLogger(__name__)


def load_mcp_config(path: str | None) -> Dict[str, Dict[str, Any]]:
    """Read server definitions from *path*; a missing path yields no servers."""
    if not path:
        return {}
    config_path = Path(path)
    if not config_path.exists():
        logger.warning("MCP config %s not found", config_path)
        return {}
    data = json.loads(config_path.read_text(encoding="utf-8"))
    return data.get("mcpServers", data)


class MCPToolProvider:
    """Connects to the configured MCP servers and invokes their tools."""

    def __init__(self, servers: Dict[str, Dict[str, Any]] | None = None):
        self.servers = servers or {}
        self._sessions: Dict[str, ClientSession] = {}
        self._tools: Dict[str, List[ToolDescriptor]] = {}
        self._stack: AsyncExitStack | None = None

    async def connect(self) -> None:
        """Open a session per configured server.  Failures are logged and the server skipped."""
        if self._stack is None:
            self._stack = AsyncExitStack()
        for name, conf in self.servers.items():
            if name in self._sessions:
                continue
            try:
                session = await self._open_session(name, conf)
                listed = await session.list_tools()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Failed to connect to MCP server %s", name)
                continue
            self._sessions[name] = session
            self._tools[name] = [
                ToolDescriptor(
                    tool_name=f"{name}_{tool.name}",
                    protocol=ToolProtocol.LOCAL,
                    connector_name=name,
                    description=tool.description or "",
                    input_schema=tool.inputSchema or {"type": "object", "properties": {}},
                )
                for tool in listed.tools
            ]
            logger.info("Connected to MCP server %s with %d tools", name, len(self._tools[name]))

    async def _open_session(self, name: str, conf: Dict[str, Any]) -> ClientSession:
        assert self._stack is not None
        transport = conf.get("type", "stdio" if "command" in conf else "streamable_http")
        if transport == "stdio":
            params = StdioServerParameters(
                command=conf["command"],
                args=conf.get("args", []),
                env={**os.environ, **conf["env"]} if conf.get("env") else None,
            )
            read, write = await self._stack.enter_async_context(stdio_client(params))
        elif transport == "sse":
            read, write = await self._stack.enter_async_context(
                sse_client(conf["url"], headers=conf.get("headers"))
            )
        elif transport in ("streamable_http", "http"):
            http_client = await self._stack.enter_async_context(
                httpx.AsyncClient(headers=conf.get("headers"), timeout=httpx.Timeout(30.0))
            )
            read, write, _ = await self._stack.enter_async_context(
                streamable_http_client(conf["url"], http_client=http_client)
            )
        else:
            raise ValueError(f"Unknown MCP transport '{transport}' for server {name}")
        session = await self._stack.enter_async_context(ClientSession(read, write))
        await session.initialize()
        return session

    async def get_tools(self) -> List[ToolDescriptor]:
        return [tool for tools in self._tools.values() for tool in tools]

    async def use_tool(self, descriptor: ToolDescriptor, args: Dict[str, Any]) -> str:
        """
        Call *descriptor* with *args* and render the result for the model.

        Raises
        ------
        ToolExecutionError
            If the server is not connected or the call fails.
        """
        session = self._sessions.get(descriptor.connector_name)
        if session is None:
            raise ToolExecutionError(f"MCP server '{descriptor.connector_name}' is not connected.")

        tool_name = descriptor.tool_name[len(descriptor.connector_name) + 1 :]
        try:
            logger.debug("Calling MCP tool '%s' with args=%s", descriptor.tool_name, args)
            result = await session.call_tool(tool_name, arguments=args)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("MCP tool '%s' raised an error", descriptor.tool_name)
            raise ToolExecutionError(f"Tool '{descriptor.tool_name}' raised an error: {exc}") from exc

        if result.isError:
            logger.warning("MCP tool '%s' reported an error", descriptor.tool_name)
        content = [block.model_dump(exclude_none=True) for block in result.content]
        return format_local_result(
            descriptor.tool_name, args, json.dumps(content, indent=2, ensure_ascii=False)
        )

    async def cleanup(self) -> None:
        """Close every session and helper process."""
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
        self._sessions.clear()
        self._tools.clear()
