"""
messages.py - Conversation model

    Conversation
    +-----------------------------------------------+
    | id            "main" or uuid4 for sub-agents  |
    | messages      [system, user, assistant, tool] |
    | agent_def     optional persona + tool policy  |
    | stats         tokens + tool calls (per run)   |
    +-----------------------------------------------+

Pairing rule: every role="tool" message carries a tool_call_id that was issued
by an earlier assistant message. Compression and checkpoint restore must never
leave a tool call without its result (or a result without its call).
"""

import json
import threading
import uuid
from dataclasses import dataclass, field

from .errors import ToolArgumentError


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def parse_arguments(self) -> dict:
        """Decode the raw JSON payload. Empty payloads count as {}."""
        raw = self.arguments.strip() if self.arguments else ""
        if not raw:
            return {}
        try:
            args = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ToolArgumentError(str(e)) from e
        if not isinstance(args, dict):
            raise ToolArgumentError(f"expected a JSON object, got {type(args).__name__}")
        return args

    @property
    def signature(self) -> tuple:
        return (self.name, self.arguments)

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        return cls(id=data["id"], name=data["name"], arguments=data.get("arguments") or "{}")


@dataclass
class Message:
    role: str
    content: str | None = None
    tool_calls: list = field(default_factory=list)
    tool_call_id: str | None = None
    # Reminders the model sees but the user never does
    hidden: bool = False

    @classmethod
    def system(cls, content: str, hidden: bool = False) -> "Message":
        return cls(role="system", content=content, hidden=hidden)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str = None, tool_calls: list = None) -> "Message":
        return cls(role="assistant", content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role="tool", content=content, tool_call_id=tool_call_id)

    @property
    def has_pending_calls(self) -> bool:
        return self.role == "assistant" and bool(self.tool_calls)

    def to_dict(self) -> dict:
        data = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.hidden:
            data["hidden"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            role=data["role"],
            content=data.get("content"),
            tool_calls=[ToolCall.from_dict(tc) for tc in data.get("tool_calls") or []],
            tool_call_id=data.get("tool_call_id"),
            hidden=bool(data.get("hidden", False)),
        )


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class RunStats:
    """Token and tool-call counters owned by one conversation."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    tool_calls: int = 0

    def add_usage(self, usage: Usage):
        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        self.total_tokens += usage.total_tokens

    def reset(self):
        self.prompt_tokens = self.completion_tokens = self.total_tokens = 0


class Conversation:
    """
    Ordered messages plus the run's counters. All mutation goes through
    the methods below, which serialize on the conversation's own lock.
    """

    def __init__(self, id: str = None, messages: list = None, agent_def=None,
                 stats: RunStats = None):
        self.id = id or str(uuid.uuid4())
        self.messages = list(messages or [])
        self.agent_def = agent_def
        self.stats = stats or RunStats()
        self._lock = threading.Lock()

    def append(self, message: Message):
        with self._lock:
            self.messages.append(message)

    def extend(self, messages: list):
        with self._lock:
            self.messages.extend(messages)

    def snapshot(self) -> list:
        with self._lock:
            return list(self.messages)

    def replace(self, messages: list):
        with self._lock:
            self.messages = list(messages)

    def drop_hidden(self):
        """Remove stale hidden reminders before the next one is added."""
        with self._lock:
            self.messages = [m for m in self.messages if not m.hidden]

    @property
    def last(self) -> Message | None:
        with self._lock:
            return self.messages[-1] if self.messages else None

    def __len__(self):
        return len(self.messages)


def unanswered_calls(messages: list) -> list:
    """Tool calls in `messages` that have no matching tool result."""
    answered = {m.tool_call_id for m in messages if m.role == "tool"}
    pending = []
    for m in messages:
        if m.role == "assistant":
            pending.extend(tc for tc in m.tool_calls if tc.id not in answered)
    return pending
