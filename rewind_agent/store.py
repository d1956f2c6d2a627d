"""
store.py - Todo lists, notes and saved sessions

All are plain JSON documents, rewritten whole on every change:

    <home>/todos/<conversation_id>.json      {"todos": [...], "next_id": n}
    <home>/sessions/<conversation_id>.json   messages + counters + agent name
    <workdir>/.rewind/notes/<name>.json      {"name", "content", timestamps}

Notes belong to the project, not the conversation: every conversation started
in the same working directory sees them in its system prompt.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path

from .config import write_json_atomic
from .messages import Conversation, Message, RunStats

logger = logging.getLogger(__name__)

TODO_STATUSES = ("pending", "in-progress", "completed")
TODO_MARKERS = {"pending": "[ ]", "in-progress": "[>]", "completed": "[x]"}


def _safe_id(id: str) -> str:
    for bad in ("/", "\\", ".."):
        id = id.replace(bad, "_")
    return id


# -- Todos: structured state the model writes to --

class TodoStore:
    def __init__(self, todos_dir: Path):
        self.dir = todos_dir
        self._lock = threading.Lock()

    def _path(self, agent_id: str) -> Path:
        return self.dir / f"{_safe_id(agent_id)}.json"

    def _load(self, agent_id: str) -> dict:
        path = self._path(agent_id)
        if not path.exists():
            return {"agent_id": agent_id, "todos": [], "next_id": 1}
        return json.loads(path.read_text())

    def _save(self, agent_id: str, data: dict):
        write_json_atomic(self._path(agent_id), data)

    def create(self, agent_id: str, task: str) -> str:
        task = (task or "").strip()
        if not task:
            raise ValueError("task cannot be empty")
        with self._lock:
            data = self._load(agent_id)
            item = {"id": data["next_id"], "task": task, "status": "pending"}
            data["todos"].append(item)
            data["next_id"] += 1
            self._save(agent_id, data)
        return f"Created todo #{item['id']}: {task}"

    def update(self, agent_id: str, todo_id: int, status: str) -> str:
        if status not in TODO_STATUSES:
            raise ValueError(f"invalid status '{status}'; use one of {', '.join(TODO_STATUSES)}")
        with self._lock:
            data = self._load(agent_id)
            for item in data["todos"]:
                if item["id"] == int(todo_id):
                    item["status"] = status
                    self._save(agent_id, data)
                    return f"Updated todo #{item['id']} to {status}"
        raise ValueError(f"todo #{todo_id} not found")

    def items(self, agent_id: str) -> list:
        with self._lock:
            return list(self._load(agent_id)["todos"])

    def render(self, agent_id: str) -> str:
        items = self.items(agent_id)
        if not items:
            return "No todos."
        lines = [f"{TODO_MARKERS.get(t['status'], '[?]')} #{t['id']}: {t['task']}" for t in items]
        done = sum(1 for t in items if t["status"] == "completed")
        lines.append(f"\n({done}/{len(items)} completed)")
        return "\n".join(lines)

    def current(self, agent_id: str) -> str:
        for t in self.items(agent_id):
            if t["status"] == "in-progress":
                return t["task"]
        return "No task in progress."

    def clear(self, agent_id: str) -> str:
        with self._lock:
            path = self._path(agent_id)
            if path.exists():
                path.unlink()
        return "Todo list cleared."

    def rename(self, old_id: str, new_id: str):
        with self._lock:
            if not self._path(old_id).exists():
                return
            data = self._load(old_id)
            data["agent_id"] = new_id
            self._save(new_id, data)
            self._path(old_id).unlink()


# -- Notes: long-lived project knowledge --

class NoteStore:
    def __init__(self, notes_dir: Path):
        self.dir = notes_dir
        self._lock = threading.Lock()

    def _path(self, name: str) -> Path:
        return self.dir / f"{_safe_id(name)}.json"

    @staticmethod
    def _check(name: str, content: str = None):
        if not (name or "").strip():
            raise ValueError("note name cannot be empty")
        if content is not None and not content.strip():
            raise ValueError("note content cannot be empty")

    def create(self, name: str, content: str) -> str:
        self._check(name, content)
        with self._lock:
            path = self._path(name)
            if path.exists():
                raise ValueError(f"note '{name}' already exists, use update_note to modify it")
            now = datetime.now().isoformat(timespec="seconds")
            write_json_atomic(path, {"name": name, "content": content, "created_at": now, "updated_at": now})
        return f"Note '{name}' created successfully."

    def update(self, name: str, content: str) -> str:
        self._check(name, content)
        with self._lock:
            path = self._path(name)
            if not path.exists():
                raise ValueError(f"note '{name}' not found")
            data = json.loads(path.read_text())
            data["content"] = content
            data["updated_at"] = datetime.now().isoformat(timespec="seconds")
            write_json_atomic(path, data)
        return f"Note '{name}' updated successfully."

    def delete(self, name: str) -> str:
        self._check(name)
        with self._lock:
            path = self._path(name)
            if not path.exists():
                raise ValueError(f"note '{name}' not found")
            path.unlink()
        return f"Note '{name}' deleted successfully."

    def list(self) -> list:
        """All readable notes, oldest first."""
        if not self.dir.exists():
            return []
        notes = []
        for f in self.dir.glob("*.json"):
            try:
                notes.append(json.loads(f.read_text()))
            except json.JSONDecodeError as e:
                logger.warning("Skipping unreadable note %s: %s", f, e)
        notes.sort(key=lambda n: (n.get("created_at", ""), n.get("name", "")))
        return notes

    def prompt_section(self) -> str:
        notes = self.list()
        if not notes:
            return ""
        blocks = [f"[{n.get('name')}]\n{n.get('content', '')}" for n in notes]
        return "=== Agent Notes ===\n\n" + "\n\n".join(blocks)


# -- Sessions --

class SessionStore:
    def __init__(self, sessions_dir: Path):
        self.dir = sessions_dir

    def _path(self, id: str) -> Path:
        return self.dir / f"{_safe_id(id)}.json"

    def save(self, conversation: Conversation) -> Path:
        path = self._path(conversation.id)
        now = datetime.now().isoformat(timespec="seconds")
        created = now
        if path.exists():
            try:
                created = json.loads(path.read_text()).get("created_at", now)
            except json.JSONDecodeError:
                pass
        stats = conversation.stats
        data = {
            "id": conversation.id,
            "messages": [m.to_dict() for m in conversation.snapshot() if not m.hidden],
            "agent_def_name": conversation.agent_def.name if conversation.agent_def else None,
            "created_at": created,
            "updated_at": now,
            "total_tokens": stats.total_tokens,
            "prompt_tokens": stats.prompt_tokens,
            "completion_tokens": stats.completion_tokens,
            "tool_calls": stats.tool_calls,
        }
        return write_json_atomic(path, data)

    def load(self, id: str) -> tuple:
        """Return (conversation, agent_def_name). Raise FileNotFoundError for an unknown session."""
        path = self._path(id)
        if not path.exists():
            raise FileNotFoundError(f"session '{id}' not found")
        data = json.loads(path.read_text())
        stats = RunStats(prompt_tokens=data.get("prompt_tokens", 0),
                         completion_tokens=data.get("completion_tokens", 0),
                         total_tokens=data.get("total_tokens", 0),
                         tool_calls=data.get("tool_calls", 0))
        conv = Conversation(id=data["id"], messages=[Message.from_dict(m) for m in data.get("messages", [])],
                            stats=stats)
        return conv, data.get("agent_def_name")

    def list(self) -> list:
        """Session summaries, most recently updated first."""
        if not self.dir.exists():
            return []
        out = []
        for f in self.dir.glob("*.json"):
            try:
                data = json.loads(f.read_text())
            except json.JSONDecodeError as e:
                logger.warning("Skipping unreadable session %s: %s", f, e)
                continue
            out.append({"id": data.get("id", f.stem), "updated_at": data.get("updated_at", ""),
                        "messages": len(data.get("messages", []))})
        out.sort(key=lambda s: s["updated_at"], reverse=True)
        return out

    def delete(self, id: str):
        path = self._path(id)
        if not path.exists():
            raise FileNotFoundError(f"session '{id}' not found")
        path.unlink()

    def exists(self, id: str) -> bool:
        return self._path(id).exists()

    def rename(self, old_id: str, new_id: str):
        """Move a saved session to a new id. A session never saved is left alone."""
        new_path = self._path(new_id)
        if new_path.exists():
            raise ValueError(f"session '{new_id}' already exists")
        old_path = self._path(old_id)
        if not old_path.exists():
            return
        data = json.loads(old_path.read_text())
        data["id"] = new_id
        write_json_atomic(new_path, data)
        old_path.unlink()
