"""
Runtime wiring.

Builds the immutable tool registry, the provider, the stores, the
subagent manager and the dispatcher from one Settings instance.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog

from relay.agents.dispatcher import ConversationDispatcher
from relay.agents.loop import AgentLoop
from relay.agents.subagent_manager import OverflowPolicy, SubagentManager
from relay.capabilities.registry import ToolRegistry, ToolRegistryBuilder
from relay.context.builder import ContextBuilder
from relay.context.prompt import PromptComposer, subagent_instructions
from relay.context.skills import SkillsLoader
from relay.core.config import Settings
from relay.core.exceptions import ConfigurationError
from relay.core.policies import LoopLimits
from relay.domain.models import SubagentTask
from relay.interfaces.llm import LLMInterface
from relay.llm.openai_client import OpenAICompatibleClient
from relay.memory.store import MemoryStore
from relay.memory.workspace import WorkspaceMemory
from relay.sessions.manager import SessionManager
from relay.tools.calculator import CalculatorTool
from relay.tools.filesystem import EditFileTool, ListDirTool, ReadFileTool, WriteFileTool
from relay.tools.shell import ExecTool
from relay.tools.spawn import SpawnTool
from relay.tools.web import WebFetchTool, WebSearchTool

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    provider: LLMInterface
    registry: ToolRegistry
    memory: MemoryStore
    sessions: SessionManager
    subagents: SubagentManager
    loop: AgentLoop
    dispatcher: ConversationDispatcher

    async def aclose(self) -> None:
        await self.dispatcher.shutdown()
        await self.subagents.cancel_all()
        await self.provider.aclose()


def build_registry(settings: Settings, subagents: SubagentManager) -> ToolRegistry:
    workspace = settings.workspace_path
    allowed_dir = workspace if settings.RESTRICT_TO_WORKSPACE else None
    builder = ToolRegistryBuilder()
    builder.register(ReadFileTool(workspace, allowed_dir))
    builder.register(WriteFileTool(workspace, allowed_dir))
    builder.register(EditFileTool(workspace, allowed_dir))
    builder.register(ListDirTool(workspace, allowed_dir))
    builder.register(ExecTool(
        working_dir=workspace,
        timeout_seconds=settings.EXEC_TIMEOUT,
        restrict_to_workspace=settings.RESTRICT_TO_WORKSPACE,
    ))
    builder.register(CalculatorTool())
    builder.register(WebSearchTool(api_key=settings.BRAVE_API_KEY))
    builder.register(WebFetchTool())
    builder.register(SpawnTool(subagents, settings.SUBAGENT_TOOLS, timeout=settings.SUBAGENT_TIMEOUT))
    return builder.build()


def build_runtime(
    settings: Settings,
    provider: Optional[LLMInterface] = None,
    data_dir: Optional[Path] = None,
) -> Runtime:
    """Wire every component; ``provider`` overrides the HTTP client (tests)."""
    workspace = settings.workspace_path
    data_dir = data_dir or settings.data_path
    workspace.mkdir(parents=True, exist_ok=True)

    if provider is None:
        if not settings.LLM_API_KEY:
            raise ConfigurationError("LLM_API_KEY is not configured")
        provider = OpenAICompatibleClient(
            api_key=settings.LLM_API_KEY,
            api_base=settings.LLM_API_BASE,
            timeout=settings.MODEL_CALL_TIMEOUT,
        )

    memory = MemoryStore(
        data_dir / "memory",
        scope_cap=settings.MEMORY_SCOPE_CAP,
        retention_turns=settings.MEMORY_RETENTION_TURNS,
        max_cached_scopes=settings.CACHED_CONVERSATIONS,
    )
    sessions = SessionManager(data_dir / "sessions", max_cached=settings.CACHED_CONVERSATIONS)
    skills = SkillsLoader(workspace)
    composer = PromptComposer(workspace, settings.AGENT_NAME, WorkspaceMemory(workspace))

    registry: Optional[ToolRegistry] = None

    def subagent_loop(task: SubagentTask) -> AgentLoop:
        builder = ContextBuilder(lambda _: subagent_instructions(task, workspace), settings.HISTORY_LIMIT)
        return AgentLoop(
            provider=provider,
            registry=registry.restricted(task.restricted_tool_set),
            context_builder=builder,
            model=settings.LLM_MODEL,
            limits=LoopLimits.from_settings(settings, max_turns=settings.SUBAGENT_MAX_TURNS),
            max_tokens=settings.LLM_MAX_TOKENS,
            temperature=settings.LLM_TEMPERATURE,
            depth=task.depth,
        )

    subagents = SubagentManager(
        subagent_loop,
        max_depth=settings.SUBAGENT_MAX_DEPTH,
        max_concurrent=settings.SUBAGENT_CONCURRENCY_LIMIT,
        overflow_policy=OverflowPolicy(settings.SUBAGENT_OVERFLOW_POLICY),
    )
    registry = build_registry(settings, subagents)

    loop = AgentLoop(
        provider=provider,
        registry=registry,
        context_builder=ContextBuilder(composer.compose, settings.HISTORY_LIMIT),
        model=settings.LLM_MODEL,
        limits=LoopLimits.from_settings(settings),
        memory=memory,
        skill_hints=skills.skill_hints,
        max_tokens=settings.LLM_MAX_TOKENS,
        temperature=settings.LLM_TEMPERATURE,
    )
    dispatcher = ConversationDispatcher(loop, sessions, shutdown_grace=settings.SHUTDOWN_GRACE)

    logger.info(
        "Runtime ready",
        model=settings.LLM_MODEL,
        tools=registry.names,
        workspace=str(workspace),
        data_dir=str(data_dir),
    )
    return Runtime(
        settings=settings,
        provider=provider,
        registry=registry,
        memory=memory,
        sessions=sessions,
        subagents=subagents,
        loop=loop,
        dispatcher=dispatcher,
    )
