"""
subagent.py - Sub-agents with a fresh context

    Parent agent                     Sub-agent
    +------------------+             +------------------+
    | messages=[...]   |             | messages=[       |
    |                  |  dispatch   |   system, task]  | <-- fresh
    | tool: spawn_agent| ----------> |                  |
    |   task="..."     |             | while tool_calls:|
    |                  |  result     |   run commands   |
    |   result = "..." | <---------- |   and todos      |
    +------------------+             | return last text |
                                     +------------------+

The parent only ever sees the final text. Sub-agents are offered command
and todo tools, filtered by the current mode and the chosen agent
definition. They can never spawn further sub-agents.
"""

import logging
import uuid

from .agents import AgentStore
from .completion import SamplingConfig
from .errors import CompletionError, SubAgentError
from .handlers import Runtime, base_handlers, progress, run_tool, system_info
from .messages import Conversation, Message
from .policy import filter_tools
from .tools import SUBAGENT_TOOLS, tool_names

logger = logging.getLogger(__name__)

SUBAGENT_PROMPT = ("You are a sub-agent tasked with completing a specific goal. You have access to the "
                   "'execute_command' and todo list management tools. Plan your steps and execute them "
                   "sequentially. When you have finished the task, output the final result as a single response.")


class SubAgentSpawner:
    def __init__(self, runtime: Runtime, completion, agents: AgentStore = None):
        self.rt = runtime
        self.completion = completion
        self.agents = agents

    def _definition(self, agent_name: str):
        if not (agent_name or "").strip():
            return None
        if self.agents is None:
            raise SubAgentError(f"failed to load agent '{agent_name}' for sub-agent: no agent store")
        try:
            return self.agents.load(agent_name)
        except (FileNotFoundError, ValueError) as e:
            raise SubAgentError(f"failed to load agent '{agent_name}' for sub-agent: {e}") from e

    def system_prompt(self, definition=None) -> str:
        info = system_info(self.rt.workdir)
        if definition is None:
            return f"{info}\n\n{SUBAGENT_PROMPT}"
        return (f"{info}\n\n=== Task-Specific Agent: {definition.name} ===\n"
                f"{definition.system_prompt}\n\n{SUBAGENT_PROMPT}")

    def spawn(self, task: str, agent_name: str = None) -> str:
        """Run `task` to completion in a fresh conversation and return the final text."""
        if not (task or "").strip():
            raise SubAgentError("sub-agent task cannot be empty")
        definition = self._definition(agent_name)
        conv = Conversation(id=str(uuid.uuid4()), agent_def=definition,
                            messages=[Message.system(self.system_prompt(definition)), Message.user(task)])

        config = self.rt.config
        tools = filter_tools(SUBAGENT_TOOLS, config.operation_mode, definition)
        permitted = set(tool_names(tools))
        handlers = base_handlers(self.rt, conv)
        sampling = SamplingConfig.from_config(config, definition)
        max_iterations = config.max_subagent_iterations
        label = f"[sub:{definition.name}] " if definition else "[sub] "
        logger.info("Sub-agent %s started: %s", conv.id, task[:80])

        for _ in range(max_iterations):
            try:
                completion = self.completion.complete(conv.snapshot(), tools, sampling)
            except CompletionError as e:
                raise SubAgentError(f"sub-agent API request failed: {e}") from e
            if completion is None or completion.message is None:
                raise SubAgentError("sub-agent received an empty response from the API")

            msg = completion.message
            conv.append(msg)
            conv.stats.add_usage(completion.usage)
            if not msg.tool_calls:
                if msg.content:
                    return msg.content
                raise SubAgentError("sub-agent finished without providing a result")

            results = []
            for call in msg.tool_calls:
                output = run_tool(call, handlers, permitted)
                progress(self.rt, call.name, output, prefix=label)
                results.append(Message.tool(call.id, output))
            conv.extend(results)
            conv.stats.tool_calls += len(results)

        raise SubAgentError(f"sub-agent exceeded maximum iterations ({max_iterations})")
