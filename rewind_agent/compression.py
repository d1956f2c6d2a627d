"""
compression.py - Context compression

When the run's cumulative token count passes 75% of the context window,
the whole non-system history is summarized and the conversation restarts
from a single system message:

    [system, user, assistant, tool, ..., user, assistant]
                         |
                   summarize(prompt)            (mini model if configured)
                         v
    [system: <base prompt> + "Previous conversation context: <summary>"]

Counters go back to zero. The full transcript is written to disk first, so
nothing is lost for good. Because no assistant/tool messages survive, the
call/result pairing cannot break.
"""

import json
import logging
import time
from pathlib import Path

from .config import COMPRESSION_MAX_TOKENS
from .messages import Message

logger = logging.getLogger(__name__)

COMPRESSION_PROMPT = ("Compress the following conversation into a brief summary, preserving key "
                      "details and context: what was done, the current state, and open decisions.\n\n")

# Per-message cap inside the summary prompt
MAX_CHARS_PER_MESSAGE = 2000


def needs_compression(stats, config) -> bool:
    return config.auto_compress and stats.total_tokens > config.compress_threshold


def build_prompt(messages: list) -> str:
    lines = [COMPRESSION_PROMPT]
    for m in messages:
        if m.role == "system":
            continue
        text = (m.content or "")[:MAX_CHARS_PER_MESSAGE]
        if m.role == "user":
            lines.append(f"User: {text}")
        elif m.role == "assistant":
            calls = ", ".join(tc.name for tc in m.tool_calls)
            lines.append(f"Assistant: {text}" + (f" [called: {calls}]" if calls else ""))
        elif m.role == "tool":
            lines.append(f"Tool result: {text}")
    lines.append("\nBrief summary:")
    return "\n".join(lines)


def save_transcript(conversation, transcript_dir: Path) -> Path:
    transcript_dir.mkdir(parents=True, exist_ok=True)
    path = transcript_dir / f"{conversation.id}_{int(time.time())}.jsonl"
    with open(path, "w") as f:
        for m in conversation.snapshot():
            f.write(json.dumps(m.to_dict(), default=str) + "\n")
    return path


def compress(conversation, summarizer, system_prompt: str = "", transcript_dir: Path = None) -> str:
    """
    Replace the conversation with one summary system message and reset its
    counters. Returns the summary. Raises ValueError when there is nothing to
    compress; summarizer errors propagate and leave the conversation as is.
    """
    history = [m for m in conversation.snapshot() if m.role != "system"]
    if not history:
        raise ValueError("not enough messages to compress")

    summary = summarizer(build_prompt(history), COMPRESSION_MAX_TOKENS)
    if not summary:
        raise ValueError("summarizer returned an empty summary")

    if transcript_dir is not None:
        path = save_transcript(conversation, transcript_dir)
        logger.info("Transcript saved to %s", path)

    content = f"Previous conversation context:\n\n{summary}"
    if system_prompt:
        content = f"{system_prompt}\n\n{content}"
    conversation.replace([Message.system(content)])
    conversation.stats.reset()
    return summary
