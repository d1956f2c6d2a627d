"""
tools.py - Tool catalogue

Schemas use the completion API's native shape: name, description,
input_schema. Mode tagging lives here too; policy.py only applies it.

    +--------------------------+--------+--------+-----------+
    | tool                     | Plan   | Build  | dangerous |
    +--------------------------+--------+--------+-----------+
    | execute_command          |   -    |   x    |     x     |
    | kill_background_command  |   -    |   x    |     x     |
    | create_agent_definition  |   -    |   x    |           |
    | spawn_agent              |   x    |   x    |     x     |
    | use_mcp_tool             |   x    |   x    |     x     |
    | suggest_plan             |   x    |   -    |           |
    | everything else          |   x    |   x    |           |
    +--------------------------+--------+--------+-----------+
"""

SPAWN_TOOL_NAME = "spawn_agent"

BUILD_MODE_TOOLS = frozenset({"execute_command", "kill_background_command", "create_agent_definition"})
PLAN_MODE_TOOLS = frozenset({"suggest_plan"})
NOTE_TOOLS = frozenset({"create_note", "update_note", "delete_note"})

# Auto-checkpoint before any of these run
DANGEROUS_TOOLS = frozenset({"execute_command", SPAWN_TOOL_NAME, "use_mcp_tool", "kill_background_command"})


def _schema(properties: dict = None, required: list = None) -> dict:
    schema = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return schema


COMMAND_TOOLS = [
    {"name": "execute_command", "description": "Execute a shell command and return its combined output.",
     "input_schema": _schema({"command": {"type": "string"}}, ["command"])},
    {"name": "list_background_commands", "description": "List background commands and their status.",
     "input_schema": _schema()},
    {"name": "get_background_logs", "description": "Get the captured output of a background command.",
     "input_schema": _schema({"pid": {"type": "integer"}}, ["pid"])},
    {"name": "kill_background_command", "description": "Kill a running background command.",
     "input_schema": _schema({"pid": {"type": "integer"}}, ["pid"])},
]

TODO_TOOLS = [
    {"name": "create_todo", "description": "Create a new todo item.",
     "input_schema": _schema({"task": {"type": "string"}}, ["task"])},
    {"name": "update_todo", "description": "Update a todo item's status.",
     "input_schema": _schema({"id": {"type": "integer"},
                              "status": {"type": "string", "enum": ["pending", "in-progress", "completed"]}},
                             ["id", "status"])},
    {"name": "get_todo_list", "description": "Get the current list of todo items.",
     "input_schema": _schema()},
    {"name": "get_current_task", "description": "Get the todo item currently in progress.",
     "input_schema": _schema()},
    {"name": "clear_todo", "description": "Delete every item of the todo list.",
     "input_schema": _schema()},
]

SPAWN_TOOL = {
    "name": SPAWN_TOOL_NAME,
    "description": "Spawn a sub-agent with a fresh context to perform a task and return its final answer. "
                   "Several spawn_agent calls in one turn run in parallel.",
    "input_schema": _schema({"task": {"type": "string"},
                             "agent": {"type": "string", "description": "Optional saved agent definition name"}},
                            ["task"]),
}

MAIN_TOOLS = [
    {"name": "use_mcp_tool", "description": "Call a tool on a configured MCP server.",
     "input_schema": _schema({"server_name": {"type": "string"}, "tool_name": {"type": "string"},
                              "arguments": {"type": "object"}},
                             ["server_name", "tool_name"])},
    {"name": "create_checkpoint", "description": "Snapshot files and conversation so they can be restored later.",
     "input_schema": _schema({"name": {"type": "string"}})},
    {"name": "list_checkpoints", "description": "List checkpoints for this conversation.",
     "input_schema": _schema()},
    {"name": "create_agent_definition", "description": "Save a reusable task-specific agent (persona + tool policy).",
     "input_schema": _schema({"name": {"type": "string"}, "description": {"type": "string"},
                              "system_prompt": {"type": "string"},
                              "model": {"type": "string"}, "temperature": {"type": "number"},
                              "max_tokens": {"type": "integer"},
                              "allowed_tools": {"type": "array", "items": {"type": "string"}},
                              "denied_tools": {"type": "array", "items": {"type": "string"}}},
                             ["name", "system_prompt"])},
    {"name": "suggest_plan", "description": "Propose a plan to the user for approval before building.",
     "input_schema": _schema({"name": {"type": "string"}, "description": {"type": "string"}},
                             ["name", "description"])},
    {"name": "create_note", "description": "Save a named note. Notes are shown in the system prompt of every "
                                           "new conversation in this project.",
     "input_schema": _schema({"name": {"type": "string"}, "content": {"type": "string"}}, ["name", "content"])},
    {"name": "update_note", "description": "Replace the content of an existing note.",
     "input_schema": _schema({"name": {"type": "string"}, "content": {"type": "string"}}, ["name", "content"])},
    {"name": "delete_note", "description": "Delete a note.",
     "input_schema": _schema({"name": {"type": "string"}}, ["name"])},
    {"name": "name_session", "description": "Give this session a short descriptive name (e.g. 'fix-login-bug').",
     "input_schema": _schema({"name": {"type": "string"}}, ["name"])},
]

# Sub-agents get commands and todos, never spawn_agent
SUBAGENT_TOOLS = COMMAND_TOOLS + TODO_TOOLS


def skill_tools(skills: list) -> list:
    return [{"name": s.name, "description": s.description, "input_schema": s.parameters} for s in skills]


def all_tools(skills: list = (), include_spawn: bool = True) -> list:
    """Full tool set before mode and agent-policy filtering."""
    tools = COMMAND_TOOLS + TODO_TOOLS + MAIN_TOOLS
    if include_spawn:
        tools = tools + [SPAWN_TOOL]
    return tools + skill_tools(skills)


def tool_names(tools: list) -> list:
    return [t["name"] for t in tools]
