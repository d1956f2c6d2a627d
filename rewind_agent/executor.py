"""
executor.py - Shell execution, foreground and background

    execute_command
          |
          v
    [Plan mode?] --yes--> error: blocked
          |
          v
    [Ask mode?] --yes--> prompt: y=foreground / b=background / N
          |                      |            |             |
          v                      v            v             v
    run_command()          run_command()   launch()    "not executed"

Background processes live in BackgroundManager until removed explicitly:

    launch("npm run dev") -> pid 1
        Popen(sh -c ..., stdout=PIPE, stderr=STDOUT)
        reader thread: copy output -> entry.output, then wait()
    logs(1)   -> everything captured so far (also after exit)
    kill(1)   -> "Process 1 killed" / "Process already finished"
"""

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field

from .config import ExecutionMode, OperationMode
from .errors import ProcessNotFound, ToolExecutionError

logger = logging.getLogger(__name__)

NOT_EXECUTED = "Command not executed by user."

# One console prompt at a time, even with parallel sub-agents
prompt_lock = threading.Lock()


def shell_argv(command: str) -> list:
    if sys.platform == "win32":
        return ["pwsh", "-Command", command]
    return ["sh", "-c", command]


def run_command(command: str, cwd=None, timeout: float = None, env: dict = None) -> str:
    """Run in the foreground. Non-zero exit raises ToolExecutionError carrying the output."""
    try:
        r = subprocess.run(shell_argv(command), cwd=cwd, env=env, stdout=subprocess.PIPE,
                           stderr=subprocess.STDOUT, text=True, errors="replace", timeout=timeout)
    except subprocess.TimeoutExpired as e:
        out = e.output or ""
        if isinstance(out, bytes):
            out = out.decode(errors="replace")
        raise ToolExecutionError(f"command timed out after {timeout}s", output=out) from e
    except OSError as e:
        raise ToolExecutionError(f"failed to start command: {e}") from e
    if r.returncode != 0:
        raise ToolExecutionError(f"command exited with status {r.returncode}", output=r.stdout)
    return r.stdout


def confirm_and_execute(command: str, operation_mode: OperationMode, execution_mode: ExecutionMode,
                        background=None, cwd=None, input_fn=input, output_fn=print) -> str:
    if operation_mode == OperationMode.PLAN:
        raise ToolExecutionError("command execution is blocked in Plan mode. "
                                 "Switch to Build mode to execute commands")
    if execution_mode == ExecutionMode.YOLO:
        return run_command(command, cwd=cwd)

    with prompt_lock:
        output_fn(f"\033[36m$ {command}\033[0m")
        try:
            answer = input_fn("Execute? [y=foreground/b=background/N]: ")
        except EOFError:
            answer = ""
    answer = answer.strip().lower()
    if answer in ("y", "yes"):
        return run_command(command, cwd=cwd)
    if answer in ("b", "bg", "background") and background is not None:
        pid = background.launch(command, cwd=cwd)
        return f"Background command started with PID: {pid}"
    return NOT_EXECUTED


# -- Background processes --

@dataclass
class BackgroundProcess:
    pid: int
    command: str
    started_at: float
    popen: subprocess.Popen = field(repr=False)
    output: list = field(default_factory=list, repr=False)
    returncode: int | None = None

    @property
    def running(self) -> bool:
        return self.returncode is None

    @property
    def status(self) -> str:
        if self.running:
            return "Running"
        return f"Finished (Exit Code: {self.returncode})"


class BackgroundManager:
    """Registry of detached shell commands. One lock guards the whole map."""

    def __init__(self):
        self._procs: dict[int, BackgroundProcess] = {}
        self._lock = threading.Lock()
        self._next_pid = 1

    def launch(self, command: str, cwd=None) -> int:
        popen = subprocess.Popen(
            shell_argv(command), cwd=cwd, stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
            text=True, errors="replace", bufsize=1,
            start_new_session=(sys.platform != "win32"),
        )
        with self._lock:
            pid = self._next_pid
            self._next_pid += 1
            proc = BackgroundProcess(pid=pid, command=command, started_at=time.time(), popen=popen)
            self._procs[pid] = proc
        threading.Thread(target=self._supervise, args=(proc,), daemon=True).start()
        logger.info("Background command %d started: %s", pid, command)
        return pid

    def _supervise(self, proc: BackgroundProcess):
        """Drain output, then reap. The entry stays registered for logs()."""
        for line in proc.popen.stdout:
            with self._lock:
                proc.output.append(line)
        proc.popen.stdout.close()
        code = proc.popen.wait()
        with self._lock:
            proc.returncode = code

    def _get(self, pid: int) -> BackgroundProcess:
        proc = self._procs.get(pid)
        if proc is None:
            raise ProcessNotFound(f"background process with PID {pid} not found")
        return proc

    def kill(self, pid: int) -> str:
        with self._lock:
            proc = self._get(pid)
            running = proc.running
        if not running or proc.popen.poll() is not None:
            return "Process already finished"
        try:
            if sys.platform != "win32":
                os.killpg(proc.popen.pid, signal.SIGKILL)
            else:
                proc.popen.kill()
        except ProcessLookupError:
            return "Process already finished"
        return f"Process {pid} killed"

    def logs(self, pid: int) -> str:
        with self._lock:
            return "".join(self._get(pid).output)

    def get(self, pid: int) -> BackgroundProcess:
        with self._lock:
            return self._get(pid)

    def list(self) -> list:
        with self._lock:
            return [
                {"pid": p.pid, "command": p.command, "started_at": p.started_at,
                 "running": p.running, "returncode": p.returncode, "status": p.status}
                for p in sorted(self._procs.values(), key=lambda p: p.pid)
            ]

    def list_text(self) -> str:
        entries = self.list()
        if not entries:
            return "No background commands running."
        lines = ["Background Commands:"]
        for e in entries:
            lines.append(f"- PID: {e['pid']} | Command: {e['command']} | Status: {e['status']}")
        return "\n".join(lines)

    def has_running(self) -> bool:
        with self._lock:
            return any(p.running for p in self._procs.values())

    def running_pids(self):
        with self._lock:
            return [p.pid for p in self._procs.values() if p.running]

    def remove(self, pid: int):
        """Forget a finished process and its logs."""
        with self._lock:
            proc = self._get(pid)
            if proc.running:
                raise ToolExecutionError(f"process {pid} is still running; kill it first")
            del self._procs[pid]
