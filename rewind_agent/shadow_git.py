"""
shadow_git.py - Private file history for checkpoints

A bare repository under <home>/checkpoints/shadow_git/<agent_id>, driven
with --git-dir/--work-tree so the user's own .git is never read or written.

    commit()   add -A  ->  (unchanged? reuse HEAD)  ->  commit --allow-empty
    restore()  checkout -f <hash>  ->  clean -fd

Every checkpoint commit also gets a keep-ref (refs/rewind/<hash>): after a
restore HEAD moves back, and later commits fork from there, so without the
ref the abandoned line would be garbage-collectable.
"""

import logging
import subprocess
from pathlib import Path

from .errors import CheckpointError

logger = logging.getLogger(__name__)

MAX_DIFF_CHARS = 4000
DEFAULT_MESSAGE = "Checkpoint: Auto-generated"

COMMIT_PROMPT = """Generate a concise, conventional commit message for the following changes.
- Format: <type>: <subject>
- Keep it under 70 characters if possible.
- Return ONLY the commit message.

Changes:
"""

GIT_IDENTITY = ["-c", "user.name=rewind-agent", "-c", "user.email=rewind-agent@localhost",
                "-c", "gc.auto=0", "-c", "commit.gpgsign=false"]


class ShadowGit:
    def __init__(self, repo_dir: Path, work_tree: Path):
        self.repo_dir = Path(repo_dir)
        self.work_tree = Path(work_tree)

    def _run_git(self, *args, check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["git", *GIT_IDENTITY, f"--git-dir={self.repo_dir}", f"--work-tree={self.work_tree}", *args]
        try:
            r = subprocess.run(cmd, cwd=self.work_tree, capture_output=True, text=True, errors="replace")
        except OSError as e:
            raise CheckpointError(f"git is not available: {e}") from e
        if check and r.returncode != 0:
            msg = (r.stderr or r.stdout).strip()
            raise CheckpointError(f"git {args[0]} failed: {msg}")
        return r

    @property
    def initialized(self) -> bool:
        return (self.repo_dir / "HEAD").exists()

    def init(self):
        if self.initialized:
            return
        self.repo_dir.mkdir(parents=True, exist_ok=True)
        try:
            r = subprocess.run(["git", f"--git-dir={self.repo_dir}", "init", "--bare"],
                               capture_output=True, text=True)
        except OSError as e:
            raise CheckpointError(f"git is not available: {e}") from e
        if r.returncode != 0:
            raise CheckpointError(f"git init failed: {(r.stderr or r.stdout).strip()}")
        exclude = self.repo_dir / "info" / "exclude"
        exclude.parent.mkdir(parents=True, exist_ok=True)
        exclude.write_text(".git/\n.rewind/\n")
        logger.debug("Initialized shadow repository at %s", self.repo_dir)

    def current_hash(self) -> str | None:
        r = self._run_git("rev-parse", "--verify", "-q", "HEAD", check=False)
        return r.stdout.strip() if r.returncode == 0 and r.stdout.strip() else None

    def staged_diff(self) -> str:
        diff = self._run_git("diff", "--cached").stdout
        if len(diff) > MAX_DIFF_CHARS:
            diff = diff[:MAX_DIFF_CHARS] + "\n... (truncated)"
        return diff

    def generate_message(self, summarizer) -> str | None:
        """Ask the summarizer for a commit message. None on any failure."""
        try:
            msg = summarizer(COMMIT_PROMPT + self.staged_diff())
        except Exception as e:
            logger.warning("Commit message generation failed: %s", e)
            return None
        msg = (msg or "").strip()
        return msg.splitlines()[0] if msg else None

    def commit(self, message: str = None, summarizer=None, fallback: str = DEFAULT_MESSAGE) -> str:
        """Snapshot the whole work tree and return the commit hash."""
        self.init()
        self._run_git("add", "-A", ".")
        head = self.current_hash()
        if head and self._run_git("diff", "--cached", "--quiet", check=False).returncode == 0:
            return head

        if not message:
            message = (self.generate_message(summarizer) if summarizer else None) or fallback
        self._run_git("commit", "--allow-empty", "--no-verify", "-q", "-m", message)
        new_hash = self.current_hash()
        if not new_hash:
            raise CheckpointError("commit produced no HEAD")
        self._run_git("update-ref", f"refs/rewind/{new_hash}", new_hash)
        return new_hash

    def restore(self, commit: str):
        """Make the work tree match `commit` exactly, untracked files included."""
        if not self.initialized:
            raise CheckpointError(f"shadow repository {self.repo_dir} does not exist")
        self._run_git("checkout", "-q", "-f", "--detach", commit)
        self._run_git("clean", "-f", "-d", "-q")
