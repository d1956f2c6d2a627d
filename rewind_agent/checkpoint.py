"""
checkpoint.py - Dual-layer checkpoints and rollback

A checkpoint freezes three things at once:

    files         shadow git commit of the working directory
    system        docker image of the container (only when running in one)
    conversation  copy of the messages and token counters

    <root>/
      shadow_git/<agent_id>/            bare repo, work tree = workdir
      metadata/<agent_id>/<id>.json     one immutable record per checkpoint

Create:   commit files -> (docker commit) -> write record -> prune autos
Restore:  load record -> restore files -> image warnings -> swap conversation

Restoring files happens first: if it fails, the conversation is left alone.
A restored conversation that ends with an assistant turn whose tool calls
never got results loses that turn, so the model is back to the moment just
before it decided to act.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .config import AUTO_CHECKPOINT_RETENTION, write_json_atomic
from .errors import CheckpointError
from .messages import Message, RunStats
from .shadow_git import ShadowGit
from .system_snapshot import SystemSnapshotter, relaunch_hint

logger = logging.getLogger(__name__)

ID_FORMAT = "%Y%m%d_%H%M%S_%f"


@dataclass
class Checkpoint:
    id: str
    name: str
    created_at: str
    agent_id: str
    messages: list = field(default_factory=list)
    total_tokens: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    git_commit: str = ""
    image_id: str | None = None
    is_auto: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "created_at": self.created_at,
            "agent_id": self.agent_id, "messages": [m.to_dict() for m in self.messages],
            "total_tokens": self.total_tokens, "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens, "git_commit": self.git_commit,
            "image_id": self.image_id, "is_auto": self.is_auto,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        return cls(
            id=data["id"], name=data.get("name", ""), created_at=data.get("created_at", ""),
            agent_id=data.get("agent_id", ""),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            total_tokens=data.get("total_tokens", 0), prompt_tokens=data.get("prompt_tokens", 0),
            completion_tokens=data.get("completion_tokens", 0),
            git_commit=data.get("git_commit", ""), image_id=data.get("image_id"),
            is_auto=bool(data.get("is_auto", False)),
        )


@dataclass
class RestoreReport:
    checkpoint: Checkpoint
    warnings: list = field(default_factory=list)
    dropped_pending_call: bool = False


class CheckpointManager:
    """
    Checkpoints for every conversation that runs in one working directory.

    The lock covers metadata writes, deletes and pruning. Git and docker run
    outside it.
    """

    def __init__(self, root: Path, workdir: Path, summarizer=None, snapshotter: SystemSnapshotter = None,
                 retention: int = AUTO_CHECKPOINT_RETENTION):
        self.root = Path(root)
        self.workdir = Path(workdir)
        self.summarizer = summarizer
        self.snapshotter = snapshotter or SystemSnapshotter()
        self.retention = retention
        self._lock = threading.Lock()

    def _meta_dir(self, agent_id: str) -> Path:
        return self.root / "metadata" / agent_id

    def _record_path(self, agent_id: str, checkpoint_id: str) -> Path:
        return self._meta_dir(agent_id) / f"{checkpoint_id}.json"

    def shadow(self, agent_id: str) -> ShadowGit:
        return ShadowGit(self.root / "shadow_git" / agent_id, self.workdir)

    # -- create --

    def create(self, conversation, name: str = None, is_auto: bool = False) -> Checkpoint:
        agent_id = conversation.id
        now = datetime.now()
        name = name or f"Checkpoint {now.strftime('%Y-%m-%d %H:%M:%S')}"

        # Manual checkpoints are named by the user; autos get a generated message when possible
        message = None if is_auto and self.summarizer else f"Checkpoint: {name}"
        commit = self.shadow(agent_id).commit(message=message, summarizer=self.summarizer,
                                              fallback=f"Checkpoint: {name}")

        image_id = self.snapshotter.commit(agent_id)

        stats = conversation.stats
        with self._lock:
            checkpoint_id = now.strftime(ID_FORMAT)
            while self._record_path(agent_id, checkpoint_id).exists():
                now = datetime.now()
                checkpoint_id = now.strftime(ID_FORMAT)
            cp = Checkpoint(
                id=checkpoint_id, name=name, created_at=now.isoformat(), agent_id=agent_id,
                messages=conversation.snapshot(), total_tokens=stats.total_tokens,
                prompt_tokens=stats.prompt_tokens, completion_tokens=stats.completion_tokens,
                git_commit=commit, image_id=image_id, is_auto=is_auto,
            )
            write_json_atomic(self._record_path(agent_id, checkpoint_id), cp.to_dict())
            if is_auto:
                self._prune_locked(agent_id, self.retention)
        logger.info("Checkpoint %s created (%s)", cp.id, name)
        return cp

    # -- query --

    def list(self, agent_id: str) -> list:
        """All checkpoints of one conversation, newest first."""
        meta = self._meta_dir(agent_id)
        if not meta.exists():
            return []
        out = []
        for f in meta.glob("*.json"):
            try:
                out.append(Checkpoint.from_dict(json.loads(f.read_text())))
            except (json.JSONDecodeError, KeyError, OSError) as e:
                logger.warning("Skipping unreadable checkpoint %s: %s", f, e)
        out.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return out

    def get(self, agent_id: str, checkpoint_id: str) -> Checkpoint:
        path = self._record_path(agent_id, checkpoint_id)
        try:
            return Checkpoint.from_dict(json.loads(path.read_text()))
        except FileNotFoundError:
            raise CheckpointError(f"checkpoint {checkpoint_id} not found") from None
        except (json.JSONDecodeError, KeyError) as e:
            raise CheckpointError(f"checkpoint {checkpoint_id} is corrupt: {e}") from e

    def format_list(self, agent_id: str) -> str:
        cps = self.list(agent_id)
        if not cps:
            return "No checkpoints found."
        lines = ["Checkpoints:"]
        for cp in cps:
            kind = "auto" if cp.is_auto else "manual"
            extra = f" | image: {cp.image_id}" if cp.image_id else ""
            lines.append(f"- {cp.id} | {cp.name} ({kind}) | {len(cp.messages)} messages{extra}")
        return "\n".join(lines)

    # -- delete / prune --

    def delete(self, agent_id: str, checkpoint_id: str):
        with self._lock:
            path = self._record_path(agent_id, checkpoint_id)
            if not path.exists():
                raise CheckpointError(f"checkpoint {checkpoint_id} not found")
            path.unlink()

    def prune_auto(self, agent_id: str, keep: int = None) -> int:
        with self._lock:
            return self._prune_locked(agent_id, self.retention if keep is None else keep)

    def _prune_locked(self, agent_id: str, keep: int) -> int:
        autos = [cp for cp in self.list(agent_id) if cp.is_auto]
        removed = 0
        for cp in autos[keep:]:
            try:
                self._record_path(agent_id, cp.id).unlink()
                removed += 1
            except FileNotFoundError:
                pass
        if removed:
            logger.debug("Pruned %d auto-checkpoints for %s", removed, agent_id)
        return removed

    def rename(self, old_id: str, new_id: str):
        """Re-home a conversation's shadow repo and records under a new id."""
        with self._lock:
            targets = [(self._meta_dir(old_id), self._meta_dir(new_id)),
                       (self.root / "shadow_git" / old_id, self.root / "shadow_git" / new_id)]
            if any(dst.exists() for src, dst in targets if src.exists()):
                raise CheckpointError(f"checkpoints for '{new_id}' already exist")
            for src, dst in targets:
                if src.exists():
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    src.rename(dst)
            for f in self._meta_dir(new_id).glob("*.json"):
                data = json.loads(f.read_text())
                data["agent_id"] = new_id
                write_json_atomic(f, data)

    # -- restore --

    def restore(self, conversation, checkpoint_id: str) -> RestoreReport:
        cp = self.get(conversation.id, checkpoint_id)
        report = RestoreReport(checkpoint=cp)

        if cp.git_commit:
            try:
                self.shadow(conversation.id).restore(cp.git_commit)
            except CheckpointError as e:
                raise CheckpointError(f"failed to restore files: {e}") from e

        if cp.image_id:
            report.warnings.append(
                f"This checkpoint includes a system snapshot (image {cp.image_id}). Files and "
                f"conversation are restored, but system changes need a restart from that image: "
                f"{relaunch_hint(cp.image_id)}")
        elif self.snapshotter.in_container:
            report.warnings.append("This checkpoint has no system snapshot. "
                                   "Installed packages and other system changes are not reverted.")
        for w in report.warnings:
            logger.warning(w)

        messages = list(cp.messages)
        if messages and messages[-1].has_pending_calls:
            messages.pop()
            report.dropped_pending_call = True
        conversation.replace(messages)
        conversation.stats = RunStats(prompt_tokens=cp.prompt_tokens, completion_tokens=cp.completion_tokens,
                                      total_tokens=cp.total_tokens, tool_calls=conversation.stats.tool_calls)
        logger.info("Restored checkpoint %s", cp.id)
        return report
