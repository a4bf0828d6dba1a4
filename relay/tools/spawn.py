"""Delegation tool: hands a goal to a subagent and reports its answer."""

from typing import Any, Dict, Iterable

from relay.agents.subagent_manager import SubagentManager
from relay.capabilities.base import ToolCapability, ToolContext, optional_string, require_string
from relay.core.exceptions import ToolExecutionError
from relay.domain.models import SubagentTask


class SpawnTool(ToolCapability):
    name = "spawn"
    description = (
        "Spawn a subagent to handle a task in the background with its own context "
        "and a restricted tool set. Use this for complex or time-consuming tasks "
        "that can run independently. The subagent's final answer is returned as "
        "this tool's result."
    )

    def __init__(self, manager: SubagentManager, allowed_tools: Iterable[str], timeout: float = 600.0):
        self.manager = manager
        self.allowed_tools = frozenset(allowed_tools)
        self.timeout = timeout

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "task": {"type": "string", "description": "The task for the subagent to complete"},
                "label": {"type": "string", "description": "Optional short label for the task (for display)"},
            },
            "required": ["task"],
        }

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        task = SubagentTask(
            parent_conversation=context.conversation_id,
            depth=context.depth + 1,
            restricted_tool_set=self.allowed_tools,
            goal_prompt=require_string(arguments, "task"),
            label=optional_string(arguments, "label", ""),
            origin_channel=context.channel,
            origin_chat_identity=context.chat_identity,
        )
        outcome = await self.manager.run(task)
        if not outcome.succeeded:
            raise ToolExecutionError(f"Subagent '{task.display_label}' failed: {outcome.reason}")
        return f"## Subagent Result\n**Task**: {task.display_label}\n\n{outcome.content}"
