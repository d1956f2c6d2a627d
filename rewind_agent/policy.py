"""
policy.py - Which tools the model is offered

    full tool set
         |
         v
    [mode filter]      Plan drops build-only tools, Build drops plan-only tools
         |
         v
    [agent policy]     allowed_tools -> whitelist (default deny)
         |             denied_tools  -> blacklist (default allow)
         v             neither       -> unchanged
    offered tool set

Filtering happens before the request is sent, so a forbidden tool is simply
never offered. Order is preserved.
"""

import logging
import warnings

from .config import OperationMode
from .tools import BUILD_MODE_TOOLS, PLAN_MODE_TOOLS

logger = logging.getLogger(__name__)


class ToolPolicyWarning(UserWarning):
    """An agent definition sets both allowed_tools and denied_tools."""


def filter_by_mode(tools: list, mode: OperationMode, build_only=BUILD_MODE_TOOLS,
                   plan_only=PLAN_MODE_TOOLS) -> list:
    if mode == OperationMode.PLAN:
        return [t for t in tools if t["name"] not in build_only]
    if mode == OperationMode.BUILD:
        return [t for t in tools if t["name"] not in plan_only]
    return list(tools)


def policy_conflict(agent_def) -> str | None:
    """Return a warning text when both lists are set, else None."""
    if agent_def is None or not (agent_def.allowed_tools and agent_def.denied_tools):
        return None
    return (f"Agent '{agent_def.name}' sets both allowed_tools and denied_tools; "
            "using allowed_tools (whitelist mode)")


def filter_by_agent_policy(tools: list, agent_def) -> list:
    if agent_def is None:
        return list(tools)
    if agent_def.allowed_tools:
        conflict = policy_conflict(agent_def)
        if conflict:
            logger.warning(conflict)
            warnings.warn(conflict, ToolPolicyWarning, stacklevel=3)
        allowed = set(agent_def.allowed_tools)
        return [t for t in tools if t["name"] in allowed]
    if agent_def.denied_tools:
        denied = set(agent_def.denied_tools)
        return [t for t in tools if t["name"] not in denied]
    return list(tools)


def filter_tools(tools: list, mode: OperationMode, agent_def=None, build_only=BUILD_MODE_TOOLS) -> list:
    return filter_by_agent_policy(filter_by_mode(tools, mode, build_only=build_only), agent_def)
