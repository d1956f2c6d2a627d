"""
mcp_tools.py - MCP tool servers over stdio

Servers are configured in config.json:

    "mcp_servers": {"fetch": {"command": "uvx mcp-server-fetch", "env": {...}}}

Every operation opens a short session with the MCP SDK:

    stdio_client(server) -> ClientSession -> initialize -> call_tool / list_tools

The SDK answers server-side requests (ping and friends) while a call is in
flight. Tool listings are cached for the system prompt. Only the
use_mcp_tool path reaches call(). Every failure surfaces as a
ToolExecutionError so the model sees it as a tool result.
"""

import asyncio
import logging
import os
import shlex
import threading
from datetime import timedelta

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from .errors import ToolExecutionError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120


def _leaf(exc: BaseException) -> BaseException:
    # anyio task groups wrap failures in exception groups
    while getattr(exc, "exceptions", None):
        exc = exc.exceptions[0]
    return exc


def _text(result) -> str:
    return "".join(c.text for c in result.content if getattr(c, "type", None) == "text")


class McpClients:
    """MCP servers keyed by name, reached through the official SDK."""

    def __init__(self, servers: dict = None, timeout: float = DEFAULT_TIMEOUT):
        self.servers = dict(servers or {})
        self.timeout = timedelta(seconds=timeout)
        self._tools: dict[str, list] = {}
        self._lock = threading.Lock()

    def _params(self, name: str) -> StdioServerParameters:
        entry = self.servers.get(name)
        if entry is None:
            raise ToolExecutionError(f"MCP server not found in config: {name}")
        if isinstance(entry, str):
            entry = {"command": entry}
        argv = shlex.split(entry.get("command", ""))
        if not argv:
            raise ToolExecutionError(f"MCP server '{name}' has no command")
        return StdioServerParameters(command=argv[0], args=argv[1:],
                                     env={**os.environ, **(entry.get("env") or {})})

    async def _session(self, name: str, params: StdioServerParameters, method: str, *args):
        connected = False
        try:
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write, read_timeout_seconds=self.timeout) as session:
                    await session.initialize()
                    connected = True
                    return await getattr(session, method)(*args)
        except Exception as e:
            cause = _leaf(e)
            if not connected:
                raise ToolExecutionError(f"failed to connect to MCP server '{name}': {cause}") from e
            raise ToolExecutionError(f"MCP server '{name}' failed: {cause}") from e

    def _run(self, name: str, method: str, *args):
        params = self._params(name)
        logger.debug("MCP %s on %s", method, name)
        return asyncio.run(self._session(name, params, method, *args))

    def call(self, server: str, tool: str, arguments: dict = None) -> str:
        result = self._run(server, "call_tool", tool, arguments or {})
        text = _text(result)
        if result.isError:
            raise ToolExecutionError(f"MCP tool returned an error: {text}" if text else "MCP tool returned an error")
        return text or "(no text output from MCP tool)"

    def list_tools(self, server: str) -> list:
        with self._lock:
            cached = self._tools.get(server)
        if cached is not None:
            return cached
        tools = self._run(server, "list_tools").tools
        with self._lock:
            self._tools[server] = tools
        return tools

    def describe(self) -> str:
        """Server and tool summary for the system prompt. Empty when none are configured."""
        if not self.servers:
            return ""
        lines = ["The following MCP servers are available:"]
        for name in self.servers:
            try:
                tools = self.list_tools(name)
            except ToolExecutionError as e:
                lines.append(f"- Server Name: '{name}' (connection failed: {e})")
                continue
            lines.append(f"- Server Name: '{name}'")
            for t in tools:
                lines.append(f"    - {t.name}: {t.description or ''}")
        lines.append("Call them with use_mcp_tool, passing server_name from the list above.")
        return "\n".join(lines)

    def close_all(self):
        with self._lock:
            self._tools.clear()
