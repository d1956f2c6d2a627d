"""
completion.py - Completion service

The loop talks to the model through one call:

    complete(messages, tools, sampling) -> Completion(message, usage)

AnthropicCompletionService maps the runtime's message model onto the
Messages API:

    runtime                            Messages API
    -------                            ------------
    leading system messages      ->    system="..."
    later / hidden system msgs   ->    user text "[System note] ..."
    assistant + tool_calls       ->    assistant [text, tool_use...]
    run of tool messages         ->    one user [tool_result...]
    consecutive same role        ->    merged into one message

summarize() is the cheap side channel used by context compression and
checkpoint commit messages. It uses MINI_MODEL_ID when set.
"""

import json
import logging
from dataclasses import dataclass
from typing import Protocol

import anthropic

from .config import COMPRESSION_MAX_TOKENS
from .errors import CompletionError, ToolArgumentError
from .messages import Message, ToolCall, Usage

logger = logging.getLogger(__name__)


@dataclass
class SamplingConfig:
    model: str
    temperature: float
    max_tokens: int

    @classmethod
    def from_config(cls, config, agent_def=None) -> "SamplingConfig":
        """Global settings, overridden field by field by the agent definition."""
        sampling = cls(model=config.model, temperature=config.temperature, max_tokens=config.max_tokens)
        if agent_def is not None:
            if agent_def.model:
                sampling.model = agent_def.model
            if agent_def.temperature is not None:
                sampling.temperature = agent_def.temperature
            if agent_def.max_tokens:
                sampling.max_tokens = agent_def.max_tokens
        return sampling


@dataclass
class Completion:
    message: Message
    usage: Usage


class CompletionService(Protocol):
    def complete(self, messages: list, tools: list, sampling: SamplingConfig) -> Completion:
        ...

    def summarize(self, prompt: str, max_tokens: int = COMPRESSION_MAX_TOKENS) -> str:
        ...


# -- Message conversion --

def _blocks(content) -> list:
    if isinstance(content, list):
        return content
    return [{"type": "text", "text": content}]


def _append(out: list, role: str, content):
    """Append, merging with the previous message when the role repeats."""
    if out and out[-1]["role"] == role:
        out[-1]["content"] = _blocks(out[-1]["content"]) + _blocks(content)
    else:
        out.append({"role": role, "content": content})


def to_anthropic(messages: list) -> tuple:
    """Return (system_text, api_messages)."""
    system_parts = []
    out = []
    for m in messages:
        if m.role == "system":
            if not out and not m.hidden:
                system_parts.append(m.content or "")
            else:
                _append(out, "user", f"[System note] {m.content or ''}")
        elif m.role == "user":
            _append(out, "user", m.content or "")
        elif m.role == "assistant":
            blocks = []
            if m.content:
                blocks.append({"type": "text", "text": m.content})
            for tc in m.tool_calls:
                try:
                    args = tc.parse_arguments()
                except ToolArgumentError:
                    args = {}
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": args})
            if blocks:
                _append(out, "assistant", blocks)
        elif m.role == "tool":
            _append(out, "user", [{"type": "tool_result", "tool_use_id": m.tool_call_id,
                                   "content": m.content or ""}])
        else:
            logger.warning("Dropping message with unknown role %r", m.role)
    return "\n\n".join(p for p in system_parts if p), out


def from_anthropic(response) -> Completion:
    texts = []
    calls = []
    for block in response.content:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use":
            calls.append(ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input)))
    usage = Usage()
    if getattr(response, "usage", None) is not None:
        usage = Usage(prompt_tokens=response.usage.input_tokens or 0,
                      completion_tokens=response.usage.output_tokens or 0)
    content = "\n".join(t for t in texts if t) or None
    return Completion(message=Message.assistant(content, calls), usage=usage)


class AnthropicCompletionService:
    def __init__(self, config, client=None):
        self.config = config
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = anthropic.Anthropic(api_key=self.config.api_key, base_url=self.config.base_url)
        return self._client

    def complete(self, messages: list, tools: list, sampling: SamplingConfig) -> Completion:
        system, api_messages = to_anthropic(messages)
        kwargs = {"model": sampling.model, "messages": api_messages,
                  "max_tokens": sampling.max_tokens, "temperature": sampling.temperature}
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools
        try:
            response = self.client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise CompletionError(f"completion request failed: {e}") from e
        return from_anthropic(response)

    def summarize(self, prompt: str, max_tokens: int = COMPRESSION_MAX_TOKENS) -> str:
        model = self.config.mini_model or self.config.model
        try:
            response = self.client.messages.create(
                model=model, max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            raise CompletionError(f"summary request failed: {e}") from e
        return "".join(b.text for b in response.content if b.type == "text").strip()
