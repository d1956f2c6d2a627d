"""
Tests for the MCP client against small stdio servers run with this interpreter.
"""
import os
import shlex
import sys
import tempfile
import threading
import time
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from tests.helpers import run_tests

import pytest

from rewind_agent.errors import ToolExecutionError
from rewind_agent.mcp_tools import McpClients

ECHO_SERVER = r'''
from mcp.server.fastmcp import FastMCP

server = FastMCP("echo")


@server.tool()
def echo(text: str = "") -> str:
    """Echo text back"""
    return text


@server.tool()
def fail() -> str:
    """Always fails"""
    raise ValueError("boom")


server.run()
'''

# Line-level server that pings the client before answering tools/call and
# only answers once the ping has been acknowledged.
PING_SERVER = r'''
import json, sys

def send(msg):
    print(json.dumps(msg), flush=True)

lines = iter(sys.stdin)
for line in lines:
    msg = json.loads(line)
    if "id" not in msg or "method" not in msg:
        continue
    method = msg["method"]
    if method == "initialize":
        send({"jsonrpc": "2.0", "id": msg["id"], "result": {
            "protocolVersion": "2024-11-05", "capabilities": {"tools": {}},
            "serverInfo": {"name": "pinger", "version": "1"}}})
    elif method == "tools/list":
        send({"jsonrpc": "2.0", "id": msg["id"], "result": {"tools": [
            {"name": "slow", "description": "Pings first", "inputSchema": {"type": "object"}}]}})
    elif method == "tools/call":
        send({"jsonrpc": "2.0", "id": "srv-1", "method": "ping"})
        for reply in lines:
            if json.loads(reply).get("id") == "srv-1":
                break
        send({"jsonrpc": "2.0", "id": msg["id"], "result": {
            "content": [{"type": "text", "text": "pong acknowledged"}], "isError": False}})
    else:
        send({"jsonrpc": "2.0", "id": msg["id"], "result": {}})
'''


def _clients(tmpdir, source=ECHO_SERVER, name="echo", timeout=30):
    script = Path(tmpdir) / f"{name}_server.py"
    script.write_text(source)
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    return McpClients({name: {"command": command}}, timeout=timeout)


def test_call_tool():
    with tempfile.TemporaryDirectory() as tmpdir:
        clients = _clients(tmpdir)
        assert clients.call("echo", "echo", {"text": "hello"}) == "hello"
        assert clients.call("echo", "echo", {}) == "(no text output from MCP tool)"
    print("PASS: test_call_tool")


def test_tool_errors_surface():
    with tempfile.TemporaryDirectory() as tmpdir:
        clients = _clients(tmpdir)
        with pytest.raises(ToolExecutionError) as exc:
            clients.call("echo", "fail")
        assert str(exc.value).startswith("MCP tool returned an error")
        assert "boom" in str(exc.value)
        with pytest.raises(ToolExecutionError):
            clients.call("echo", "missing")
    print("PASS: test_tool_errors_surface")


def test_describe_lists_tools():
    with tempfile.TemporaryDirectory() as tmpdir:
        clients = _clients(tmpdir)
        text = clients.describe()
        assert "- Server Name: 'echo'" in text
        assert "    - echo: Echo text back" in text
        assert "    - fail: Always fails" in text
        assert clients.list_tools("echo") is clients.list_tools("echo")
        clients.close_all()
    assert McpClients().describe() == ""
    print("PASS: test_describe_lists_tools")


def test_server_ping_during_call():
    with tempfile.TemporaryDirectory() as tmpdir:
        clients = _clients(tmpdir, PING_SERVER, name="pinger", timeout=10)
        result = {}

        def worker():
            try:
                result["text"] = clients.call("pinger", "slow", {})
            except ToolExecutionError as e:
                result["error"] = str(e)

        t = threading.Thread(target=worker, daemon=True)
        start = time.time()
        t.start()
        t.join(timeout=15)
        assert not t.is_alive(), "call blocked on the server's ping"
        assert result == {"text": "pong acknowledged"}
        assert time.time() - start < 15
    print("PASS: test_server_ping_during_call")


def test_unknown_and_broken_servers():
    clients = McpClients({"ghost": {"command": "definitely-not-a-real-binary-xyz"}, "empty": {"command": ""}})
    with pytest.raises(ToolExecutionError) as exc:
        clients.call("nope", "tool")
    assert "not found in config" in str(exc.value)
    with pytest.raises(ToolExecutionError) as exc:
        clients.call("ghost", "tool")
    assert "failed to connect" in str(exc.value)
    with pytest.raises(ToolExecutionError) as exc:
        clients.call("empty", "tool")
    assert "has no command" in str(exc.value)
    assert "connection failed" in clients.describe()
    print("PASS: test_unknown_and_broken_servers")


if __name__ == "__main__":
    sys.exit(0 if run_tests([
        test_call_tool,
        test_tool_errors_surface,
        test_describe_lists_tools,
        test_server_ping_during_call,
        test_unknown_and_broken_servers,
    ]) else 1)
