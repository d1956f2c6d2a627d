"""
agents.py - Saved agent definitions

An agent definition is a persona (system prompt, optional model overrides)
plus a tool policy. One JSON file per agent under <home>/agents/. The
built-in "default" agent needs no file and cannot be deleted.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path

from .config import write_json_atomic
from .policy import policy_conflict

logger = logging.getLogger(__name__)

BUILTIN_AGENT = "default"

DEFAULT_AGENT_PROMPT = """You are the built-in "default" task-specific agent.

Behavior:
- Be direct and technical.
- When writing code, prefer correct, minimal changes.
- If command execution is available, propose safe commands and explain briefly.
- Respect tool constraints imposed by the system (Plan vs Build, confirmation mode)."""


@dataclass
class AgentDefinition:
    name: str
    system_prompt: str
    description: str = ""
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    allowed_tools: list = field(default_factory=list)
    denied_tools: list = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "AgentDefinition":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def sanitize_name(name: str) -> str:
    s = (name or "").strip()
    if not s:
        raise ValueError("agent name cannot be empty")
    for bad in (" ", "/", "\\", ".."):
        s = s.replace(bad, "-")
    return s


def builtin_definition() -> AgentDefinition:
    return AgentDefinition(name=BUILTIN_AGENT, description="Built-in default agent with full tool access",
                           system_prompt=DEFAULT_AGENT_PROMPT)


class AgentStore:
    def __init__(self, agents_dir: Path):
        self.dir = agents_dir

    def _path(self, name: str) -> Path:
        return self.dir / f"{sanitize_name(name)}.json"

    def save(self, definition: AgentDefinition) -> AgentDefinition:
        definition.name = sanitize_name(definition.name)
        if definition.name == BUILTIN_AGENT:
            raise ValueError(f"'{BUILTIN_AGENT}' is a reserved agent name")
        if not definition.system_prompt.strip():
            raise ValueError("system_prompt cannot be empty")
        conflict = policy_conflict(definition)
        if conflict:
            logger.warning(conflict)
        now = datetime.now().isoformat(timespec="seconds")
        definition.created_at = definition.created_at or now
        definition.updated_at = now
        write_json_atomic(self._path(definition.name), asdict(definition))
        return definition

    def load(self, name: str) -> AgentDefinition:
        """Raise FileNotFoundError for an unknown name."""
        path = self._path(name)
        if not path.exists():
            if sanitize_name(name) == BUILTIN_AGENT:
                return builtin_definition()
            raise FileNotFoundError(f"agent '{name}' not found")
        return AgentDefinition.from_dict(json.loads(path.read_text()))

    def delete(self, name: str):
        if sanitize_name(name) == BUILTIN_AGENT:
            raise ValueError(f"cannot delete built-in agent '{BUILTIN_AGENT}'")
        path = self._path(name)
        if not path.exists():
            raise FileNotFoundError(f"agent '{name}' not found")
        path.unlink()

    def list_all(self) -> list:
        defs = [builtin_definition()]
        if self.dir.exists():
            saved = []
            for f in self.dir.glob("*.json"):
                if f.stem == BUILTIN_AGENT:
                    continue
                try:
                    saved.append(AgentDefinition.from_dict(json.loads(f.read_text())))
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning("Skipping unreadable agent file %s: %s", f, e)
            saved.sort(key=lambda d: d.updated_at, reverse=True)
            defs.extend(saved)
        return defs

    def format_list(self) -> str:
        lines = ["Agents:"]
        for d in self.list_all():
            desc = d.description.strip() or "(no description)"
            suffix = "(built-in)" if d.name == BUILTIN_AGENT else f"(updated: {d.updated_at})"
            lines.append(f"  - {d.name}: {desc} {suffix}")
        return "\n".join(lines)

    def create_from_args(self, args: dict) -> str:
        """Handler body for the create_agent_definition tool."""
        definition = AgentDefinition(
            name=args.get("name", ""),
            system_prompt=args.get("system_prompt", ""),
            description=args.get("description", ""),
            model=args.get("model"),
            temperature=args.get("temperature"),
            max_tokens=args.get("max_tokens"),
            allowed_tools=list(args.get("allowed_tools") or []),
            denied_tools=list(args.get("denied_tools") or []),
        )
        saved = self.save(definition)
        out = f"Agent definition '{saved.name}' saved."
        conflict = policy_conflict(saved)
        if conflict:
            out += f"\nWarning: {conflict}"
        return out
