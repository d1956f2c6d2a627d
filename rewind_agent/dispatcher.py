"""
dispatcher.py - The agentic loop

    run_cycle(conversation)
        |
        v
    [tokens > 75% of context?] --yes--> compress, return "compressed"
        |
        v
    complete(messages, offered tools) --error--> return "error"
        |
        v
    append assistant message, add usage
        |
        v
    [tool calls?] --no--> return "done"
        |
        v
    for each call, in order:
        loop detection -> auto-checkpoint (dangerous tools) -> handler
        spawn_agent calls run on daemon threads, the rest run here
        |
        v
    join, append one tool message per call in call order
    (+ corrective note if a loop was caught)
    (+ hidden reminder while background commands run)
        |
        +-----> back to the top

The offered tool set is recomputed every turn, so a plan approved through
suggest_plan switches the very next request to Build tools.
"""

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass

from .agents import AgentStore
from .checkpoint import CheckpointManager
from .completion import SamplingConfig
from .compression import compress, needs_compression
from .config import OperationMode, save_config
from .errors import CheckpointError, CompletionError
from .executor import BackgroundManager, prompt_lock, run_command
from .handlers import Runtime, base_handlers, progress, run_tool, system_info
from .mcp_tools import McpClients
from .messages import Conversation, Message
from .policy import filter_tools
from .store import NoteStore, SessionStore, TodoStore
from .subagent import SubAgentSpawner
from .tools import BUILD_MODE_TOOLS, DANGEROUS_TOOLS, NOTE_TOOLS, SPAWN_TOOL_NAME, all_tools, tool_names

logger = logging.getLogger(__name__)

AGENTS_FILE = "AGENTS.md"

BASE_PROMPT = """You are an autonomous coding agent working in {workdir}.

Use execute_command for shell tasks; chain steps with && when they belong together.
Long-running commands (servers, watchers) belong in the background: check them with
get_background_logs and stop them with kill_background_command.
Use the todo tools to plan multi-step work and notes for project facts worth keeping
across conversations. Use spawn_agent to delegate independent subtasks; several
spawn_agent calls in one turn run in parallel.
Your file changes are checkpointed automatically before risky tools run."""

PLAN_NOTE = ("You are in Plan mode: you cannot execute commands. Investigate, then call "
             "suggest_plan with a concrete plan for the user to approve.")
BUILD_NOTE = "You are in Build mode: implement the task."

LOOP_NOTE = ("You called {name} with identical arguments {count} times in a row and the last call was "
             "skipped. Change your approach: inspect the previous results, try different arguments, "
             "or explain to the user what is blocking you.")

BACKGROUND_REMINDER = ("Background commands are still running (PIDs: {pids}). Check them with "
                       "get_background_logs and stop them with kill_background_command when they are "
                       "no longer needed.")


@dataclass
class CycleResult:
    status: str
    message: Message | None = None
    error: str | None = None


class AgentLoop:
    def __init__(self, config, completion, checkpoints: CheckpointManager = None,
                 background: BackgroundManager = None, todos: TodoStore = None,
                 agents: AgentStore = None, mcp: McpClients = None,
                 notes: NoteStore = None, sessions: SessionStore = None,
                 input_fn=input, output_fn=print, interactive: bool = True):
        self.config = config
        self.completion = completion
        self.checkpoints = checkpoints
        self.agents = agents
        self.sessions = sessions
        self.mcp = mcp or McpClients(config.mcp_servers)
        self.notes = notes or NoteStore(config.workdir / ".rewind" / "notes")
        self.rt = Runtime(config=config, background=background or BackgroundManager(),
                          todos=todos or TodoStore(config.home / "todos"),
                          input_fn=input_fn, output_fn=output_fn, interactive=interactive)
        self.spawner = SubAgentSpawner(self.rt, completion, agents)
        # conversation id -> [last (name, arguments), consecutive count]
        self._repeats: dict[str, list] = {}

    @property
    def background(self) -> BackgroundManager:
        return self.rt.background

    # -- prompt & tools --

    def project_instructions(self) -> str:
        """Contents of AGENTS.md in the working directory, or ""."""
        path = self.rt.workdir / AGENTS_FILE
        try:
            return path.read_text().strip()
        except FileNotFoundError:
            return ""
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", path, e)
            return ""

    def system_prompt(self, agent_def=None) -> str:
        parts = [system_info(self.rt.workdir), BASE_PROMPT.format(workdir=self.rt.workdir)]
        instructions = self.project_instructions()
        if instructions:
            parts.insert(0, instructions)
        parts.append(PLAN_NOTE if self.config.operation_mode == OperationMode.PLAN else BUILD_NOTE)
        if agent_def is not None:
            parts.append(f"=== Task-Specific Agent: {agent_def.name} ===\n{agent_def.system_prompt}")
        notes = self.notes.prompt_section()
        if notes:
            parts.append(notes)
        mcp_info = self.mcp.describe()
        if mcp_info:
            parts.append(mcp_info)
        return "\n\n".join(parts)

    def new_conversation(self, id: str = "main", agent_def=None) -> Conversation:
        return Conversation(id=id, agent_def=agent_def, messages=[Message.system(self.system_prompt(agent_def))])

    def refresh_system_prompt(self, conversation):
        """Rebuild the leading system message after notes or the agent definition change."""
        messages = conversation.snapshot()
        prompt = Message.system(self.system_prompt(conversation.agent_def))
        if messages and messages[0].role == "system":
            messages[0] = prompt
        else:
            messages.insert(0, prompt)
        conversation.replace(messages)

    def offered_tools(self, conversation) -> list:
        skills = self.config.skills
        tools = all_tools(skills, include_spawn=self.config.subagents_enabled)
        build_only = BUILD_MODE_TOOLS | {s.name for s in skills}
        return filter_tools(tools, self.config.operation_mode, conversation.agent_def, build_only=build_only)

    def handlers(self, conversation) -> dict:
        table = base_handlers(self.rt, conversation)
        table.update({
            SPAWN_TOOL_NAME: lambda **kw: self.spawner.spawn(kw["task"], kw.get("agent")),
            "use_mcp_tool": lambda **kw: self.mcp.call(kw["server_name"], kw["tool_name"], kw.get("arguments")),
            "create_checkpoint": lambda **kw: self._create_checkpoint(conversation, kw.get("name")),
            "list_checkpoints": lambda **kw: self.require_checkpoints().format_list(conversation.id),
            "create_agent_definition": lambda **kw: self._require_agents().create_from_args(kw),
            "suggest_plan": lambda **kw: self._suggest_plan(kw["name"], kw["description"]),
            "create_note": lambda **kw: self.notes.create(kw["name"], kw["content"]),
            "update_note": lambda **kw: self.notes.update(kw["name"], kw["content"]),
            "delete_note": lambda **kw: self.notes.delete(kw["name"]),
            "name_session": lambda **kw: self.name_session(conversation, kw["name"]),
        })
        for skill in self.config.skills:
            table[skill.name] = lambda _skill=skill, **kw: self._run_skill(_skill, kw)
        return table

    # -- handlers needing loop state --

    def require_checkpoints(self) -> CheckpointManager:
        if self.checkpoints is None:
            raise CheckpointError("checkpoints are disabled")
        return self.checkpoints

    def _require_agents(self) -> AgentStore:
        if self.agents is None:
            raise ValueError("agent definitions are not available")
        return self.agents

    def _create_checkpoint(self, conversation, name=None) -> str:
        cp = self.require_checkpoints().create(conversation, name=name)
        return f"Checkpoint created: {cp.id} ({cp.name})"

    def restore_checkpoint(self, conversation, checkpoint_id: str):
        report = self.require_checkpoints().restore(conversation, checkpoint_id)
        self.reset_loop_state(conversation.id)
        return report

    def name_session(self, conversation, name: str) -> str:
        """Rename the conversation. Saved session, todos and checkpoints follow it."""
        new_id = re.sub(r"[\s/\\]+", "-", (name or "").strip()).replace("..", "-")
        if not new_id:
            raise ValueError("session name cannot be empty")
        old_id = conversation.id
        if new_id == old_id:
            return f"Session is already named '{new_id}'."
        if self.sessions is not None and self.sessions.exists(new_id):
            raise ValueError(f"session '{new_id}' already exists")
        if self.checkpoints is not None:
            self.checkpoints.rename(old_id, new_id)
        if self.sessions is not None:
            self.sessions.rename(old_id, new_id)
        self.rt.todos.rename(old_id, new_id)
        if old_id in self._repeats:
            self._repeats[new_id] = self._repeats.pop(old_id)
        conversation.id = new_id
        return f"Session renamed from '{old_id}' to '{new_id}'."

    def _run_skill(self, skill, args: dict) -> str:
        env = {**os.environ, "SKILL_ARGS": json.dumps(args)}
        return run_command(skill.command, cwd=self.rt.workdir, env=env)

    def _suggest_plan(self, name: str, description: str) -> str:
        if not self.rt.interactive:
            return "Plan rejected: no user is available to approve plans in pipeline mode."
        with prompt_lock:
            self.rt.output_fn(f"\nSuggested Plan: {name}\n{description}")
            try:
                answer = self.rt.input_fn("Approve this plan? [y/N]: ")
            except EOFError:
                answer = ""
        if answer.strip().lower() not in ("y", "yes"):
            return "Plan rejected by user. Ask what should change before suggesting a new plan."

        self.config.operation_mode = OperationMode.BUILD
        try:
            save_config(self.config)
        except OSError as e:
            logger.warning("Error saving config: %s", e)

        plans_dir = self.rt.workdir / ".rewind" / "plans"
        plans_dir.mkdir(parents=True, exist_ok=True)
        safe = re.sub(r"[^a-z0-9_-]+", "_", name.lower()).strip("_") or "plan"
        path = plans_dir / f"plan_{time.strftime('%Y%m%d_%H%M%S')}_{safe}.md"
        path.write_text(f"# {name}\n\n{description}\n")
        return f"Plan approved by user. Switching to build mode to implement the plan...\nPlan saved to {path}"

    # -- compression --

    def compress(self, conversation) -> str:
        summary = compress(conversation, self.completion.summarize,
                           system_prompt=self.system_prompt(conversation.agent_def),
                           transcript_dir=self.config.home / "transcripts")
        self.reset_loop_state(conversation.id)
        return summary

    def reset_loop_state(self, conversation_id: str):
        self._repeats.pop(conversation_id, None)

    # -- dispatch --

    def _check_repeat(self, conversation, call) -> int:
        state = self._repeats.setdefault(conversation.id, [None, 0])
        if state[0] == call.signature:
            state[1] += 1
        else:
            state[0], state[1] = call.signature, 1
        return state[1]

    def _auto_checkpoint(self, conversation, call) -> str | None:
        """Return a refusal text when strict checkpoints are on and the checkpoint failed."""
        if self.checkpoints is None:
            return None
        try:
            self.checkpoints.create(conversation, name=f"Auto-checkpoint before {call.name}", is_auto=True)
        except (CheckpointError, OSError) as e:
            logger.warning("Auto-checkpoint before %s failed: %s", call.name, e)
            if self.config.strict_checkpoints:
                return f"Tool execution error: auto-checkpoint failed, refusing to run {call.name}: {e}"
        return None

    def _run_spawn(self, slots: list, i: int, call, handlers: dict, permitted):
        slots[i] = run_tool(call, handlers, permitted)

    def dispatch(self, conversation, calls: list, permitted: set, handlers: dict) -> tuple:
        """Run every call. Return (tool messages in call order, corrective note or None)."""
        slots = [None] * len(calls)
        corrective = None
        threshold = self.config.loop_detection_threshold
        # Daemon threads: an interrupt must not wait for sub-agents to finish
        spawned = {}
        for i, call in enumerate(calls):
            count = self._check_repeat(conversation, call)
            if count > threshold:
                slots[i] = (f"Skipped: {call.name} was called with identical arguments "
                            f"{count} times in a row.")
                corrective = LOOP_NOTE.format(name=call.name, count=count)
                logger.warning("Loop detected: %s repeated %d times", call.name, count)
                continue

            if call.name in DANGEROUS_TOOLS and call.name in permitted:
                refusal = self._auto_checkpoint(conversation, call)
                if refusal:
                    slots[i] = refusal
                    continue

            if call.name == SPAWN_TOOL_NAME:
                t = threading.Thread(target=self._run_spawn, args=(slots, i, call, handlers, permitted),
                                     name=f"spawn-{i}", daemon=True)
                t.start()
                spawned[i] = t
            else:
                slots[i] = run_tool(call, handlers, permitted)
                progress(self.rt, call.name, slots[i])

        for i, t in spawned.items():
            t.join()
            if slots[i] is None:
                slots[i] = "Tool execution error: sub-agent exited without a result"
            progress(self.rt, calls[i].name, slots[i])

        if any(call.name in NOTE_TOOLS for call in calls):
            self.refresh_system_prompt(conversation)
        conversation.stats.tool_calls += len(calls)
        return [Message.tool(call.id, out) for call, out in zip(calls, slots)], corrective

    def run_cycle(self, conversation) -> CycleResult:
        conversation.drop_hidden()
        while True:
            if needs_compression(conversation.stats, self.config):
                self.rt.output_fn("[auto-compact triggered]")
                try:
                    self.compress(conversation)
                except (CompletionError, ValueError) as e:
                    logger.error("Compression failed: %s", e)
                    return CycleResult("error", error=f"compression failed: {e}")
                return CycleResult("compressed")

            tools = self.offered_tools(conversation)
            permitted = set(tool_names(tools))
            sampling = SamplingConfig.from_config(self.config, conversation.agent_def)
            try:
                completion = self.completion.complete(conversation.snapshot(), tools, sampling)
            except CompletionError as e:
                logger.error("Completion failed: %s", e)
                return CycleResult("error", error=str(e))

            msg = completion.message
            conversation.append(msg)
            conversation.stats.add_usage(completion.usage)
            if not msg.tool_calls:
                return CycleResult("done", message=msg)
            if msg.content:
                self.rt.output_fn(msg.content)

            results, corrective = self.dispatch(conversation, msg.tool_calls, permitted,
                                                self.handlers(conversation))
            conversation.extend(results)
            if corrective:
                conversation.append(Message.system(corrective))

            conversation.drop_hidden()
            if self.background.has_running():
                pids = ", ".join(str(p) for p in self.background.running_pids())
                conversation.append(Message.system(BACKGROUND_REMINDER.format(pids=pids), hidden=True))
