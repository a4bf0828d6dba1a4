"""System-instruction composer."""

import platform
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from relay.domain.models import Conversation, SubagentTask
from relay.memory.workspace import WorkspaceMemory

BOOTSTRAP_FILES = ["AGENTS.md", "SOUL.md", "USER.md", "TOOLS.md", "IDENTITY.md"]
SECTION_SEPARATOR = "\n\n---\n\n"


class PromptComposer:
    """Builds the static system instructions for one conversation."""

    def __init__(
        self,
        workspace: Path,
        agent_name: str = "relay",
        workspace_memory: Optional[WorkspaceMemory] = None,
    ):
        self.workspace = workspace
        self.agent_name = agent_name
        self.workspace_memory = workspace_memory or WorkspaceMemory(workspace)

    def identity(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now().astimezone()
        workspace = str(self.workspace.expanduser())
        return (
            f"# {self.agent_name}\n\n"
            f"You are {self.agent_name}, a helpful AI assistant with access to tools for "
            "reading and writing files, running commands, searching the web and "
            "delegating background work to subagents.\n\n"
            f"## Current Time\n{now.strftime('%Y-%m-%d %H:%M (%A) %Z')}\n\n"
            f"## Runtime\n{platform.system()} {platform.machine()}, Python {platform.python_version()}\n\n"
            f"## Workspace\nYour workspace is at: {workspace}\n"
            f"- Long-term memory: {workspace}/memory/MEMORY.md\n"
            f"- Daily notes: {workspace}/memory/YYYY-MM-DD.md\n"
            f"- Custom skills: {workspace}/skills/{{skill-name}}/SKILL.md\n\n"
            "Reply directly with text for conversation. Only use tools when they help. "
            "When you learn something worth remembering, write it to memory/MEMORY.md."
        )

    def bootstrap(self) -> str:
        parts = []
        for filename in BOOTSTRAP_FILES:
            path = self.workspace / filename
            if path.is_file():
                content = path.read_text(encoding="utf-8").strip()
                if content:
                    parts.append(f"## {filename}\n\n{content}")
        return "\n\n".join(parts)

    def compose(self, conversation: Conversation, now: Optional[datetime] = None) -> str:
        parts: List[str] = [self.identity(now)]

        bootstrap = self.bootstrap()
        if bootstrap:
            parts.append(bootstrap)

        memory = self.workspace_memory.get_memory_context()
        if memory:
            parts.append(memory)

        parts.append(
            f"## Current Session\nChannel: {conversation.channel}\n"
            f"Chat ID: {conversation.chat_identity}"
        )
        return SECTION_SEPARATOR.join(parts)


def subagent_instructions(task: SubagentTask, workspace: Path, now: Optional[datetime] = None) -> str:
    """System instructions for a nested loop working on one delegated goal."""
    now = now or datetime.now().astimezone()
    return (
        "# Subagent\n\n"
        "You are a subagent spawned by the main agent to complete a specific task.\n\n"
        f"## Your Task\n{task.goal_prompt}\n\n"
        "## Rules\n"
        "1. Stay focused - complete only the assigned task, nothing else\n"
        "2. Your final response will be reported back to the main agent\n"
        "3. Do not initiate conversations or take on side tasks\n"
        "4. Be concise but informative in your findings\n\n"
        f"## Current Time\n{now.strftime('%Y-%m-%d %H:%M (%A) %Z')}\n\n"
        f"## Workspace\nYour workspace is at: {workspace.expanduser()}\n\n"
        "When you have completed the task, provide a clear summary of what you found or did."
    )
