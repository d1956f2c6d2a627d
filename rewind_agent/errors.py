"""
errors.py - Exception hierarchy

Tool-level errors never unwind the agent loop: the dispatcher turns them into
tool-result text so the model can react. Only infrastructure errors
(CompletionError, a CheckpointError raised by an explicit user command) end
the current cycle.
"""


class AgentError(Exception):
    """Base class for every error raised by rewind-agent."""


class ToolArgumentError(AgentError):
    """The model sent a tool-call payload that could not be parsed."""


class ToolExecutionError(AgentError):
    """A tool ran and failed. `output` keeps whatever it printed."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class UnsupportedToolError(AgentError):
    pass


class ProcessNotFound(AgentError, KeyError):
    def __str__(self):
        return self.args[0] if self.args else "process not found"


class CheckpointError(AgentError):
    pass


class SubAgentError(AgentError):
    pass


class CompletionError(AgentError):
    """The completion service could not produce a turn."""
