"""rewind-agent: a coding agent that can rewind files and conversation to checkpoints."""

__version__ = "0.1.0"
