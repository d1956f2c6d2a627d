"""
handlers.py - Tool handlers shared by the main loop and sub-agents

Dispatch is a name -> handler table. A call only runs when its name is both
registered and in the permitted set (the tools actually offered this turn):

    ToolCall(name, arguments)
        |
        +-- not permitted / not registered -> "Unsupported tool: <name>"
        +-- bad JSON                       -> "Failed to parse arguments: ..."
        +-- handler raises                 -> "Tool execution error: ..."
        +-- ok                             -> handler output
"""

import logging
import platform
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .config import Config
from .errors import ToolArgumentError, ToolExecutionError, UnsupportedToolError
from .executor import BackgroundManager, confirm_and_execute
from .store import TodoStore

logger = logging.getLogger(__name__)

MAX_PROGRESS_CHARS = 200


@dataclass
class Runtime:
    """Everything a handler may touch. One per AgentLoop, shared with its sub-agents."""
    config: Config
    background: BackgroundManager
    todos: TodoStore
    input_fn: object = input
    output_fn: object = print
    interactive: bool = True
    workdir: Path = field(default=None)

    def __post_init__(self):
        if self.workdir is None:
            self.workdir = self.config.workdir


def system_info(workdir) -> str:
    distro = platform.platform() if sys.platform != "win32" else "Windows"
    now = datetime.now().strftime("%a, %d %b %Y %H:%M:%S")
    return (f"OS: {sys.platform}, Architecture: {platform.machine()}, Platform: {distro}, "
            f"CWD: {workdir}, Time: {now}")


def lookup(name: str, handlers: dict, permitted):
    if name not in permitted or name not in handlers:
        raise UnsupportedToolError(name)
    return handlers[name]


def run_tool(call, handlers: dict, permitted) -> str:
    try:
        handler = lookup(call.name, handlers, permitted)
    except UnsupportedToolError:
        return f"Unsupported tool: {call.name}"
    try:
        args = call.parse_arguments()
    except ToolArgumentError as e:
        return f"Failed to parse arguments: {e}"
    try:
        output = handler(**args)
    except ToolExecutionError as e:
        output = f"Tool execution error: {e}"
        if e.output:
            output += f"\n{e.output}"
    except Exception as e:
        logger.debug("Tool %s failed", call.name, exc_info=True)
        output = f"Tool execution error: {e}"
    return str(output)


def progress(rt: Runtime, name: str, output: str, prefix: str = ""):
    rt.output_fn(f"{prefix}> {name}: {str(output)[:MAX_PROGRESS_CHARS]}")


def base_handlers(rt: Runtime, conversation) -> dict:
    """Command and todo tools. This is the whole table a sub-agent gets."""
    return {
        "execute_command": lambda **kw: confirm_and_execute(
            kw["command"], rt.config.operation_mode, rt.config.execution_mode,
            background=rt.background, cwd=rt.workdir, input_fn=rt.input_fn, output_fn=rt.output_fn),
        "list_background_commands": lambda **kw: rt.background.list_text(),
        "get_background_logs": lambda **kw: rt.background.logs(int(kw["pid"])) or "(no output yet)",
        "kill_background_command": lambda **kw: rt.background.kill(int(kw["pid"])),
        "create_todo": lambda **kw: rt.todos.create(conversation.id, kw["task"]),
        "update_todo": lambda **kw: rt.todos.update(conversation.id, kw["id"], kw["status"]),
        "get_todo_list": lambda **kw: rt.todos.render(conversation.id),
        "get_current_task": lambda **kw: rt.todos.current(conversation.id),
        "clear_todo": lambda **kw: rt.todos.clear(conversation.id),
    }
