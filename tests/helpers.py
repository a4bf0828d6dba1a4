"""Shared test doubles: a scripted model provider and small tools."""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from relay.agents.loop import AgentLoop
from relay.capabilities.base import ToolCapability, ToolContext
from relay.capabilities.registry import ToolRegistry, ToolRegistryBuilder
from relay.context.builder import ContextBuilder
from relay.core.policies import LoopLimits, RetryPolicy, TimeoutPolicy
from relay.domain.models import ToolCall
from relay.interfaces.llm import LLMInterface, ModelRequest, ModelResponse
from relay.memory.store import MemoryStore

Step = Union[ModelResponse, Callable[[ModelRequest], Any]]


class ScriptedProvider(LLMInterface):
    """Returns queued responses in order and records every request."""

    def __init__(self, responses: Sequence[Step] = ()):
        self.responses: List[Step] = list(responses)
        self.requests: List[ModelRequest] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def complete(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        if not self.responses:
            return ModelResponse(content="(script exhausted)")
        step = self.responses.pop(0)
        if callable(step):
            step = step(request)
            if inspect.isawaitable(step):
                step = await step
        return step


def text(content: str) -> ModelResponse:
    return ModelResponse(content=content)


def call(call_id: str, name: str, **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


def tool_calls(*calls: ToolCall, content: str = "") -> ModelResponse:
    return ModelResponse(content=content, tool_calls=tuple(calls))


def transient(message: str = "overloaded") -> ModelResponse:
    return ModelResponse.failed(message, transient=True, status_code=503)


def fatal(message: str = "invalid api key") -> ModelResponse:
    return ModelResponse.failed(message, transient=False, status_code=401)


class EchoTool(ToolCapability):
    name = "echo"
    description = "Echo the text back"

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        }

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        return arguments["text"]


class SleepTool(ToolCapability):
    """Sleeps for ``delay`` seconds, recording start/finish order."""

    description = "Sleep then answer"

    def __init__(self, name: str = "sleep", delay: float = 0.0, output: str = "slept", log: Optional[list] = None):
        self.name = name
        self.delay = delay
        self.output = output
        self.log = log if log is not None else []
        self.cancelled = False

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        self.log.append(("start", self.name))
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        self.log.append(("finish", self.name))
        return self.output


class FailingTool(ToolCapability):
    name = "explode"
    description = "Always raises"

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        raise RuntimeError("kaboom")


def make_registry(*tools: ToolCapability) -> ToolRegistry:
    builder = ToolRegistryBuilder()
    for tool in tools:
        builder.register(tool)
    return builder.build()


def fast_limits(**overrides) -> LoopLimits:
    """Limits with zero backoff and short timeouts."""
    values = dict(
        max_turns=5,
        tool_concurrency=4,
        context_budget=20000,
        retry=RetryPolicy(retries=2, backoff=0.0),
        timeouts=TimeoutPolicy(model_call=2.0, tool=2.0),
    )
    values.update(overrides)
    return LoopLimits(**values)


def make_loop(
    provider: LLMInterface,
    registry: Optional[ToolRegistry] = None,
    limits: Optional[LoopLimits] = None,
    memory: Optional[MemoryStore] = None,
    instructions: str = "You are a test agent.",
    depth: int = 0,
) -> AgentLoop:
    return AgentLoop(
        provider=provider,
        registry=registry or make_registry(),
        context_builder=ContextBuilder(lambda _: instructions),
        model="test-model",
        limits=limits or fast_limits(),
        memory=memory,
        depth=depth,
    )
