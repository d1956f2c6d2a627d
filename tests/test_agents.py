"""
Tests for saved agent definitions.
"""
import json
import os
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from tests.helpers import run_tests

import pytest

from rewind_agent.agents import BUILTIN_AGENT, AgentDefinition, AgentStore, sanitize_name


def test_save_and_load():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = AgentStore(Path(tmpdir) / "agents")
        saved = store.save(AgentDefinition(name="reviewer", system_prompt="Review diffs.", description="Reviews",
                                           temperature=0.3, denied_tools=["execute_command"]))
        assert saved.created_at and saved.updated_at

        loaded = store.load("reviewer")
        assert loaded.system_prompt == "Review diffs."
        assert loaded.temperature == 0.3
        assert loaded.denied_tools == ["execute_command"]
        assert loaded.model is None
    print("PASS: test_save_and_load")


def test_resave_keeps_created_at():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = AgentStore(Path(tmpdir) / "agents")
        first = store.save(AgentDefinition(name="a", system_prompt="one", created_at="2020-01-01T00:00:00"))
        assert first.created_at == "2020-01-01T00:00:00"
        again = store.load("a")
        again.system_prompt = "two"
        store.save(again)
        assert store.load("a").created_at == "2020-01-01T00:00:00"
        assert store.load("a").system_prompt == "two"
    print("PASS: test_resave_keeps_created_at")


def test_names_are_sanitized():
    assert sanitize_name(" my agent ") == "my-agent"
    assert "/" not in sanitize_name("../../etc/passwd")
    with pytest.raises(ValueError):
        sanitize_name("   ")
    with tempfile.TemporaryDirectory() as tmpdir:
        store = AgentStore(Path(tmpdir) / "agents")
        store.save(AgentDefinition(name="../escape", system_prompt="p"))
        assert [p.parent for p in (Path(tmpdir) / "agents").glob("*.json")] == [Path(tmpdir) / "agents"]
    print("PASS: test_names_are_sanitized")


def test_builtin_default():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = AgentStore(Path(tmpdir) / "agents")
        assert store.load(BUILTIN_AGENT).name == BUILTIN_AGENT
        with pytest.raises(ValueError):
            store.save(AgentDefinition(name=BUILTIN_AGENT, system_prompt="override"))
        with pytest.raises(ValueError):
            store.delete(BUILTIN_AGENT)
        assert [d.name for d in store.list_all()] == [BUILTIN_AGENT]
    print("PASS: test_builtin_default")


def test_rejects_empty_prompt():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = AgentStore(Path(tmpdir) / "agents")
        with pytest.raises(ValueError):
            store.save(AgentDefinition(name="blank", system_prompt="  "))
    print("PASS: test_rejects_empty_prompt")


def test_delete_and_missing():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = AgentStore(Path(tmpdir) / "agents")
        store.save(AgentDefinition(name="gone", system_prompt="p"))
        store.delete("gone")
        with pytest.raises(FileNotFoundError):
            store.load("gone")
        with pytest.raises(FileNotFoundError):
            store.delete("gone")
    print("PASS: test_delete_and_missing")


def test_list_skips_unreadable_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        agents_dir = Path(tmpdir) / "agents"
        store = AgentStore(agents_dir)
        store.save(AgentDefinition(name="good", system_prompt="p", description="Works"))
        (agents_dir / "broken.json").write_text("{not json")
        names = [d.name for d in store.list_all()]
        assert names == [BUILTIN_AGENT, "good"]
        text = store.format_list()
        assert "  - good: Works (updated: " in text
        assert "  - default: Built-in default agent with full tool access (built-in)" in text
    print("PASS: test_list_skips_unreadable_files")


def test_create_from_args_reports_conflict():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = AgentStore(Path(tmpdir) / "agents")
        out = store.create_from_args({"name": "mixed", "system_prompt": "p",
                                      "allowed_tools": ["get_todo_list"], "denied_tools": ["get_todo_list"]})
        assert out.startswith("Agent definition 'mixed' saved.")
        assert "Warning:" in out and "whitelist" in out
        data = json.loads((Path(tmpdir) / "agents" / "mixed.json").read_text())
        assert data["allowed_tools"] == ["get_todo_list"]
    print("PASS: test_create_from_args_reports_conflict")


def test_from_dict_ignores_unknown_keys():
    d = AgentDefinition.from_dict({"name": "x", "system_prompt": "p", "colour": "blue"})
    assert d.name == "x" and not hasattr(d, "colour")
    print("PASS: test_from_dict_ignores_unknown_keys")


if __name__ == "__main__":
    sys.exit(0 if run_tests([
        test_save_and_load,
        test_resave_keeps_created_at,
        test_names_are_sanitized,
        test_builtin_default,
        test_rejects_empty_prompt,
        test_delete_and_missing,
        test_list_skips_unreadable_files,
        test_create_from_args_reports_conflict,
        test_from_dict_ignores_unknown_keys,
    ]) else 1)
