"""
Tests for the command line: argument parsing, one-shot runs and REPL
slash commands. The completion service is always a FakeCompletion.
"""
import contextlib
import io
import json
import os
import shutil
import signal
import sys
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from tests.helpers import FakeCompletion, call, make_config, quiet, run_tests, tool_turn

import pytest

from rewind_agent.agents import AgentDefinition, AgentStore
from rewind_agent.checkpoint import CheckpointManager
from rewind_agent.cli import Repl, _terminate, build_parser, run_once
from rewind_agent.completion import Completion
from rewind_agent.config import ExecutionMode, OperationMode
from rewind_agent.dispatcher import AgentLoop
from rewind_agent.errors import CompletionError
from rewind_agent.messages import Message, Usage
from rewind_agent.store import SessionStore


def _repl(tmpdir, fake=None, checkpoints=False):
    config = make_config(tmpdir)
    manager = None
    if checkpoints:
        manager = CheckpointManager(config.home / "checkpoints", config.workdir)
    loop = AgentLoop(config, fake or FakeCompletion([]), checkpoints=manager,
                     agents=AgentStore(config.home / "agents"), output_fn=quiet)
    return Repl(loop, SessionStore(config.home / "sessions"), loop.new_conversation())


def _captured(fn, *args):
    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        result = fn(*args)
    return result, buf.getvalue()


def test_parser():
    args = build_parser().parse_args(["--cwd", "/tmp/project", "fix", "the", "test"])
    assert args.working_directory == "/tmp/project"
    assert args.task == ["fix", "the", "test"]
    assert build_parser().parse_args([]).task == []
    assert build_parser().parse_args(["--resume", "main"]).resume == "main"
    print("PASS: test_parser")


def test_run_once_prints_answer():
    with tempfile.TemporaryDirectory() as tmpdir:
        fake = FakeCompletion([Message.assistant("All done.")])
        loop = AgentLoop(make_config(tmpdir), fake, output_fn=quiet, interactive=False)
        code, out = _captured(run_once, loop, "say done")
        assert code == 0
        assert out.strip() == "All done."
        assert fake.calls[0]["messages"][-1].content == "say done"
    print("PASS: test_run_once_prints_answer")


def test_run_once_continues_after_compression():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = make_config(tmpdir, context_length=100)
        heavy = Completion(message=tool_turn(call("get_todo_list")), usage=Usage(prompt_tokens=90))
        fake = FakeCompletion([heavy, Message.assistant("finished")])
        loop = AgentLoop(config, fake, output_fn=quiet, interactive=False)

        code, out = _captured(run_once, loop, "long task")
        assert code == 0 and out.strip() == "finished"
        assert len(fake.summaries) == 1
        resumed = fake.calls[1]["messages"]
        assert "Previous conversation context:" in resumed[0].content
        assert resumed[-1].content.endswith("Original task: long task")
    print("PASS: test_run_once_continues_after_compression")


def test_run_once_reports_errors():
    with tempfile.TemporaryDirectory() as tmpdir:
        loop = AgentLoop(make_config(tmpdir), FakeCompletion([CompletionError("rate limited")]),
                         output_fn=quiet, interactive=False)
        err = io.StringIO()
        with contextlib.redirect_stderr(err), contextlib.redirect_stdout(io.StringIO()):
            code = run_once(loop, "anything")
        assert code == 1
        assert "rate limited" in err.getvalue()
    print("PASS: test_run_once_reports_errors")


def test_mode_commands_persist():
    with tempfile.TemporaryDirectory() as tmpdir:
        repl = _repl(tmpdir)
        keep_going, out = _captured(repl.handle_command, "/plan")
        assert keep_going is True
        assert "Mode: plan / yolo" in out
        _captured(repl.handle_command, "/ask")
        saved = json.loads(repl.config.config_path.read_text())
        assert saved["operation_mode"] == "plan" and saved["execution_mode"] == "ask"
        assert repl.config.operation_mode == OperationMode.PLAN
        assert repl.config.execution_mode == ExecutionMode.ASK
    print("PASS: test_mode_commands_persist")


def test_quit_help_and_unknown():
    with tempfile.TemporaryDirectory() as tmpdir:
        repl = _repl(tmpdir)
        assert _captured(repl.handle_command, "/quit")[0] is False
        assert _captured(repl.handle_command, "/exit")[0] is False
        assert "/restore <id>" in _captured(repl.handle_command, "/help")[1]
        assert "Unknown command: /nope" in _captured(repl.handle_command, "/nope")[1]
        assert "Usage: /restore" in _captured(repl.handle_command, "/restore")[1]
    print("PASS: test_quit_help_and_unknown")


def test_agent_switch_replaces_system_prompt():
    with tempfile.TemporaryDirectory() as tmpdir:
        repl = _repl(tmpdir)
        repl.loop.agents.save(AgentDefinition(name="docs", system_prompt="Write documentation only."))
        _, out = _captured(repl.handle_command, "/agent docs")
        assert "Switched to agent 'docs'" in out
        assert repl.conversation.agent_def.name == "docs"
        first = repl.conversation.messages[0]
        assert first.role == "system" and "Write documentation only." in first.content
        assert sum(1 for m in repl.conversation.messages if m.role == "system") == 1
        assert "Error:" in _captured(repl.handle_command, "/agent missing")[1]
    print("PASS: test_agent_switch_replaces_system_prompt")


def test_save_and_shutdown():
    with tempfile.TemporaryDirectory() as tmpdir:
        repl = _repl(tmpdir)
        repl.conversation.append(Message.user("remember me"))
        _, out = _captured(repl.handle_command, "/save")
        assert "Session saved to" in out
        conv, _ = repl.sessions.load("main")
        assert conv.messages[-1].content == "remember me"

        pid = repl.loop.background.launch("sleep 5") if sys.platform != "win32" else None
        try:
            _, out = _captured(repl.shutdown)
            if pid is not None:
                assert f"PIDs: {pid}" in out
        finally:
            if pid is not None:
                repl.loop.background.kill(pid)
    print("PASS: test_save_and_shutdown")


@pytest.mark.skipif(shutil.which("git") is None, reason="git CLI required")
def test_checkpoint_and_restore_commands():
    with tempfile.TemporaryDirectory() as tmpdir:
        repl = _repl(tmpdir, checkpoints=True)
        work = repl.config.workdir
        (work / "notes.txt").write_text("original")
        _, out = _captured(repl.handle_command, "/checkpoint clean state")
        assert "Checkpoint created:" in out and "(clean state)" in out
        cp_id = out.split("Checkpoint created: ")[1].split(" ")[0]

        (work / "notes.txt").write_text("changed")
        repl.conversation.append(Message.user("later"))
        repl.loop._repeats["main"] = [("get_todo_list", "{}"), 3]
        assert cp_id in _captured(repl.handle_command, "/checkpoints")[1]

        _, out = _captured(repl.handle_command, f"/restore {cp_id}")
        assert f"Restored checkpoint {cp_id}" in out
        assert (work / "notes.txt").read_text() == "original"
        assert repl.conversation.last.role == "system"
        assert "main" not in repl.loop._repeats

        _, out = _captured(repl.handle_command, f"/delete {cp_id}")
        assert f"Deleted checkpoint {cp_id}" in out
        assert cp_id not in _captured(repl.handle_command, "/checkpoints")[1]

        assert "Error:" in _captured(repl.handle_command, "/restore 19990101_000000_000000")[1]
    print("PASS: test_checkpoint_and_restore_commands")


def test_todos_clear_and_sessions():
    with tempfile.TemporaryDirectory() as tmpdir:
        repl = _repl(tmpdir)
        todos = repl.loop.rt.todos
        todos.create("main", "write docs")
        todos.update("main", 1, "in-progress")
        _, out = _captured(repl.handle_command, "/todos")
        assert "[>] #1: write docs" in out and "Current: write docs" in out

        repl.conversation.append(Message.user("old context"))
        old = repl.conversation
        _captured(repl.handle_command, "/clear")
        assert repl.conversation is not old
        assert [m.role for m in repl.conversation.messages] == ["system"]
        assert todos.items("main") == []

        assert "No saved sessions." in _captured(repl.handle_command, "/sessions")[1]
        _captured(repl.handle_command, "/save")
        assert "  - main (1 messages" in _captured(repl.handle_command, "/sessions")[1]
    print("PASS: test_todos_clear_and_sessions")


def test_checkpoint_commands_without_manager():
    with tempfile.TemporaryDirectory() as tmpdir:
        repl = _repl(tmpdir)
        assert "Error: checkpoints are disabled" in _captured(repl.handle_command, "/checkpoints")[1]
    print("PASS: test_checkpoint_commands_without_manager")


def test_run_once_saves_session_on_interrupt():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = make_config(tmpdir)
        fake = FakeCompletion([tool_turn(call("create_todo", {"task": "step one"})), KeyboardInterrupt()])
        loop = AgentLoop(config, fake, output_fn=quiet, interactive=False)
        sessions = SessionStore(config.home / "sessions")
        pid = loop.background.launch("sleep 5")
        err = io.StringIO()
        try:
            with contextlib.redirect_stderr(err), contextlib.redirect_stdout(io.StringIO()):
                code = run_once(loop, "long job", sessions, session_id="job")
        finally:
            loop.background.kill(pid)
        assert code == 130
        assert "Session saved to" in err.getvalue()
        assert f"PIDs: {pid}" in err.getvalue()
        conv, _ = sessions.load("job")
        assert conv.messages[1].content == "long job"
        assert conv.messages[-1].role == "tool"
    print("PASS: test_run_once_saves_session_on_interrupt")


def test_run_once_saves_session_on_terminate():
    """SIGTERM arrives as SystemExit from _terminate; the session is still written."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config = make_config(tmpdir)
        loop = AgentLoop(config, FakeCompletion([SystemExit(128 + signal.SIGTERM)]),
                         output_fn=quiet, interactive=False)
        sessions = SessionStore(config.home / "sessions")
        with contextlib.redirect_stderr(io.StringIO()), pytest.raises(SystemExit) as exc:
            run_once(loop, "doomed", sessions)
        assert exc.value.code == 128 + signal.SIGTERM
        saved = sessions.list()
        assert len(saved) == 1 and saved[0]["id"].startswith("run-")

        with pytest.raises(SystemExit) as exc:
            _terminate(signal.SIGTERM, None)
        assert exc.value.code == 128 + signal.SIGTERM
    print("PASS: test_run_once_saves_session_on_terminate")


if __name__ == "__main__":
    sys.exit(0 if run_tests([
        test_parser,
        test_run_once_prints_answer,
        test_run_once_continues_after_compression,
        test_run_once_reports_errors,
        test_mode_commands_persist,
        test_quit_help_and_unknown,
        test_agent_switch_replaces_system_prompt,
        test_save_and_shutdown,
        test_checkpoint_and_restore_commands,
        test_todos_clear_and_sessions,
        test_checkpoint_commands_without_manager,
        test_run_once_saves_session_on_interrupt,
        test_run_once_saves_session_on_terminate,
    ]) else 1)
