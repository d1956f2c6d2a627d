"""
cli.py - Command line entry point

    rewind-agent "fix the failing test"   one-shot run in YOLO mode, prints the answer
    rewind-agent                          interactive REPL
    rewind-agent --resume <session-id>    REPL on a saved session

Slash commands in the REPL:

    /plan /build          operation mode (persisted)
    /ask /yolo            execution mode (persisted)
    /checkpoint [name]    snapshot files + conversation
    /checkpoints          list snapshots
    /restore <id>         roll files and conversation back
    /delete <id>          drop a checkpoint record
    /compress /bg /todos /clear /agents /agent <name> /sessions /save /help /quit

In both modes Ctrl-C or SIGTERM saves the session (one-shot runs as
run-<timestamp>) and warns about background commands that are still running
before exiting.
"""

import argparse
import logging
import os
import signal
import sys
import time
from pathlib import Path

from .agents import AgentStore
from .checkpoint import CheckpointManager
from .completion import AnthropicCompletionService
from .config import ExecutionMode, OperationMode, load_config, save_config
from .dispatcher import AgentLoop
from .errors import AgentError
from .messages import Message
from .store import SessionStore

logger = logging.getLogger(__name__)

HELP = """Commands:
  /plan                 switch to Plan mode (no command execution)
  /build                switch to Build mode
  /ask                  confirm every command before it runs
  /yolo                 run commands without confirmation
  /compress             summarize the conversation to free context
  /checkpoint [name]    create a checkpoint
  /checkpoints          list checkpoints
  /restore <id>         restore files and conversation from a checkpoint
  /delete <id>          delete a checkpoint
  /bg                   list background commands
  /todos                show the todo list
  /clear                start a fresh conversation (checkpoints are kept)
  /agents               list agent definitions
  /agent <name>         switch to a saved agent definition
  /sessions             list saved sessions
  /save                 save the session
  /quit                 save and exit"""

CONTINUE_PROMPT = "Continue with the task from the summary above."


def setup_logging():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING").upper(),
                        format="%(levelname)s %(name)s: %(message)s")


def build_loop(config, interactive: bool = True, sessions: SessionStore = None) -> AgentLoop:
    completion = AnthropicCompletionService(config)
    checkpoints = CheckpointManager(config.home / "checkpoints", config.workdir,
                                    summarizer=completion.summarize, retention=config.checkpoint_retention)
    agents = AgentStore(config.home / "agents")
    return AgentLoop(config, completion, checkpoints=checkpoints, agents=agents, sessions=sessions,
                     interactive=interactive)


def save_session(loop: AgentLoop, sessions: SessionStore, conversation, out=None):
    """Best-effort save on the way out, plus a warning for background commands left running."""
    out = out or sys.stdout
    try:
        path = sessions.save(conversation)
        print(f"\nSession saved to {path}", file=out)
    except OSError as e:
        logger.warning("Failed to save session: %s", e)
    running = loop.background.running_pids()
    if running:
        logger.warning("Abandoning %d running background command(s): PIDs %s",
                       len(running), ", ".join(map(str, running)))
        print(f"Warning: background commands still running (PIDs: {', '.join(map(str, running))})", file=out)


def run_once(loop: AgentLoop, task: str, sessions: SessionStore = None, session_id: str = None) -> int:
    """Pipeline mode: drive the task to a final answer without asking anything."""
    conversation = loop.new_conversation(session_id or f"run-{time.strftime('%Y%m%d_%H%M%S')}")
    conversation.append(Message.user(task))
    try:
        while True:
            result = loop.run_cycle(conversation)
            if result.status == "compressed":
                conversation.append(Message.user(f"{CONTINUE_PROMPT}\n\nOriginal task: {task}"))
                continue
            if result.status == "error":
                print(f"Error: {result.error}", file=sys.stderr)
                return 1
            print(result.message.content or "")
            return 0
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130
    finally:
        if sessions is not None:
            save_session(loop, sessions, conversation, out=sys.stderr)


class Repl:
    def __init__(self, loop: AgentLoop, sessions: SessionStore, conversation):
        self.loop = loop
        self.sessions = sessions
        self.conversation = conversation

    @property
    def config(self):
        return self.loop.config

    def _set_mode(self, operation: OperationMode = None, execution: ExecutionMode = None):
        if operation is not None:
            self.config.operation_mode = operation
        if execution is not None:
            self.config.execution_mode = execution
        try:
            save_config(self.config)
        except OSError as e:
            logger.warning("Error saving config: %s", e)
        print(f"Mode: {self.config.operation_mode.value} / {self.config.execution_mode.value}")

    def _switch_agent(self, name: str):
        if self.loop.agents is None:
            print("Agent definitions are not available.")
            return
        try:
            definition = self.loop.agents.load(name)
        except (FileNotFoundError, ValueError) as e:
            print(f"Error: {e}")
            return
        self.conversation.agent_def = definition
        self.loop.refresh_system_prompt(self.conversation)
        print(f"Switched to agent '{definition.name}'")

    def handle_command(self, line: str) -> bool:
        """Run one slash command. False means quit."""
        cmd, _, arg = line.strip().partition(" ")
        arg = arg.strip()
        checkpoints = self.loop.require_checkpoints
        try:
            if cmd in ("/quit", "/exit"):
                return False
            elif cmd == "/help":
                print(HELP)
            elif cmd == "/plan":
                self._set_mode(operation=OperationMode.PLAN)
            elif cmd == "/build":
                self._set_mode(operation=OperationMode.BUILD)
            elif cmd == "/ask":
                self._set_mode(execution=ExecutionMode.ASK)
            elif cmd == "/yolo":
                self._set_mode(execution=ExecutionMode.YOLO)
            elif cmd == "/compress":
                print("[manual compact]")
                self.loop.compress(self.conversation)
                print("Context compressed.")
            elif cmd == "/checkpoint":
                cp = checkpoints().create(self.conversation, name=arg or None)
                print(f"Checkpoint created: {cp.id} ({cp.name})")
            elif cmd == "/checkpoints":
                print(checkpoints().format_list(self.conversation.id))
            elif cmd == "/restore":
                if not arg:
                    print("Usage: /restore <checkpoint-id>")
                    return True
                report = self.loop.restore_checkpoint(self.conversation, arg)
                for w in report.warnings:
                    print(f"Warning: {w}")
                if report.dropped_pending_call:
                    print("Note: Reverted pending tool call from conversation history.")
                print(f"Restored checkpoint {report.checkpoint.id} ({report.checkpoint.name})")
            elif cmd == "/delete":
                if not arg:
                    print("Usage: /delete <checkpoint-id>")
                    return True
                checkpoints().delete(self.conversation.id, arg)
                print(f"Deleted checkpoint {arg}")
            elif cmd == "/bg":
                print(self.loop.background.list_text())
            elif cmd == "/todos":
                todos = self.loop.rt.todos
                print(todos.render(self.conversation.id))
                print(f"Current: {todos.current(self.conversation.id)}")
            elif cmd == "/clear":
                self.loop.rt.todos.clear(self.conversation.id)
                self.conversation = self.loop.new_conversation(self.conversation.id, self.conversation.agent_def)
                print("Conversation cleared.")
            elif cmd == "/agents":
                print(self.loop.agents.format_list() if self.loop.agents else "No agent store.")
            elif cmd == "/agent":
                if not arg:
                    print("Usage: /agent <name>")
                    return True
                self._switch_agent(arg)
            elif cmd == "/sessions":
                saved = self.sessions.list()
                if not saved:
                    print("No saved sessions.")
                for s in saved:
                    print(f"  - {s['id']} ({s['messages']} messages, updated {s['updated_at']})")
            elif cmd == "/save":
                path = self.sessions.save(self.conversation)
                print(f"Session saved to {path}")
            else:
                print(f"Unknown command: {cmd}. Type /help for commands.")
        except (AgentError, ValueError, OSError) as e:
            print(f"Error: {e}")
        return True

    def run(self):
        while True:
            try:
                query = input(f"\033[36mrewind [{self.config.operation_mode.value}] >> \033[0m")
            except EOFError:
                break
            if not query.strip():
                continue
            if query.strip().startswith("/"):
                if not self.handle_command(query):
                    break
                continue
            self.conversation.append(Message.user(query))
            result = self.loop.run_cycle(self.conversation)
            if result.status == "done":
                print(result.message.content or "")
            elif result.status == "compressed":
                print("Context was compressed. Send your next message to continue.")
            else:
                print(f"Error: {result.error}")
            print()

    def shutdown(self):
        save_session(self.loop, self.sessions, self.conversation)
        self.loop.mcp.close_all()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rewind-agent",
                                     description="Coding agent with checkpoint and rollback")
    parser.add_argument("--cwd", dest="working_directory", help="Working directory for commands and checkpoints")
    parser.add_argument("--resume", metavar="SESSION_ID", help="Resume a saved session in the REPL")
    parser.add_argument("task", nargs="*", help="Run this task once in YOLO mode and exit")
    return parser


def _terminate(signum, frame):
    raise SystemExit(128 + signum)


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    workdir = Path(args.working_directory).expanduser().resolve() if args.working_directory else None
    config = load_config(workdir=workdir)
    sessions = SessionStore(config.home / "sessions")
    signal.signal(signal.SIGTERM, _terminate)

    if args.task:
        config.execution_mode = ExecutionMode.YOLO
        loop = build_loop(config, interactive=False, sessions=sessions)
        try:
            return run_once(loop, " ".join(args.task), sessions)
        finally:
            loop.mcp.close_all()

    loop = build_loop(config, sessions=sessions)
    if args.resume:
        try:
            conversation, agent_name = sessions.load(args.resume)
        except FileNotFoundError as e:
            print(f"Error: {e}")
            return 1
        if agent_name:
            try:
                conversation.agent_def = loop.agents.load(agent_name)
            except FileNotFoundError:
                logger.warning("Agent '%s' from the session no longer exists", agent_name)
        print(f"Resumed session {conversation.id} ({len(conversation)} messages)")
    else:
        conversation = loop.new_conversation()

    repl = Repl(loop, sessions, conversation)
    print("rewind-agent. Type /help for commands.")
    try:
        repl.run()
    except KeyboardInterrupt:
        pass
    finally:
        repl.shutdown()
    return 0
