"""
Shared test helpers for rewind-agent.

No test talks to a real model: FakeCompletion plays the completion service
from a script (a list of replies) or a responder function.
"""
import contextlib
import json
import os
import sys
import threading
import time
import traceback
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rewind_agent.completion import Completion
from rewind_agent.config import Config, ExecutionMode, OperationMode
from rewind_agent.messages import Message, ToolCall, Usage


class FakeCompletion:
    """
    Scripted completion service.

    Script entries are consumed in order; each is a Message, a Completion, an
    Exception (raised), or a callable(messages, tools) returning one of those.
    Once the script is empty the responder (if any) answers.
    """

    def __init__(self, script=None, responder=None, usage=None, summary="Summary of earlier work."):
        self.script = list(script or [])
        self.responder = responder
        self.usage = usage or Usage(prompt_tokens=10, completion_tokens=5)
        self.summary = summary
        self.calls = []
        self.summaries = []
        self._lock = threading.Lock()

    def complete(self, messages, tools, sampling):
        with self._lock:
            self.calls.append({"messages": list(messages), "tools": [t["name"] for t in tools],
                               "sampling": sampling})
            item = self.script.pop(0) if self.script else self.responder
        if item is None:
            raise AssertionError("FakeCompletion script exhausted")
        if callable(item) and not isinstance(item, (Message, Completion, BaseException)):
            item = item(messages, tools)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, Completion):
            return item
        return Completion(message=item, usage=self.usage)

    def summarize(self, prompt, max_tokens=1500):
        self.summaries.append(prompt)
        return self.summary


def call(name, args=None, id=None):
    """Build a ToolCall with JSON-encoded arguments."""
    return ToolCall(id=id or f"call_{name}_{time.monotonic_ns()}", name=name,
                    arguments=json.dumps(args or {}))


def tool_turn(*calls, content=None):
    return Message.assistant(content, list(calls))


def make_config(root, **overrides) -> Config:
    root = Path(root)
    workdir = root / "work"
    workdir.mkdir(parents=True, exist_ok=True)
    config = Config(home=root / "home", workdir=workdir, operation_mode=OperationMode.BUILD,
                    execution_mode=ExecutionMode.YOLO)
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def quiet(*args, **kwargs):
    pass


def wait_until(predicate, timeout=5.0, interval=0.02) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@contextlib.contextmanager
def env(**values):
    """Temporarily set (or, with None, unset) environment variables."""
    saved = {k: os.environ.get(k) for k in values}
    try:
        for k, v in values.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v
        yield
    finally:
        for k, v in saved.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def run_tests(tests) -> bool:
    """Run test functions outside pytest. A test fails by raising."""
    failed = []
    for test_fn in tests:
        print(f"\n{'='*50}\nRunning: {test_fn.__name__}\n{'='*50}")
        try:
            test_fn()
        except Exception as e:
            print(f"FAILED: {e}")
            traceback.print_exc()
            failed.append(test_fn.__name__)
    print(f"\n{'='*50}")
    print(f"Results: {len(tests) - len(failed)}/{len(tests)} passed")
    print('='*50)
    if failed:
        print(f"FAILED: {failed}")
    return not failed
