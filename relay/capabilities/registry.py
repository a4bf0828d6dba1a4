"""
Tool Registry

Maps tool names to capabilities. Built once at startup through
ToolRegistryBuilder and immutable afterwards, so concurrently running
conversations share it without locking.
"""

import asyncio
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog

from relay.capabilities.base import ToolCapability, ToolContext
from relay.capabilities.validation import validate_arguments
from relay.core.exceptions import (
    ToolArgumentError,
    ToolError,
    ToolExecutionError,
    ToolNotFound,
    ToolTimeout,
)
from relay.domain.models import ToolCall, ToolResult

logger = structlog.get_logger(__name__)


class ToolRegistryBuilder:
    """Collects capabilities before the registry is frozen."""

    def __init__(self):
        self._tools: Dict[str, ToolCapability] = {}

    def register(self, tool: ToolCapability) -> "ToolRegistryBuilder":
        if not tool.name:
            raise ValueError(f"{type(tool).__name__} has no name")
        if tool.name in self._tools:
            logger.warning("Overwriting existing tool", tool_name=tool.name)
        self._tools[tool.name] = tool
        logger.debug("Tool registered", tool_name=tool.name)
        return self

    def build(self) -> "ToolRegistry":
        return ToolRegistry(self._tools)


class ToolRegistry:
    """Immutable name -> capability table with uniform error handling."""

    def __init__(self, tools: Mapping[str, ToolCapability]):
        self._tools: Mapping[str, ToolCapability] = MappingProxyType(dict(tools))

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return sorted(self._tools)

    def resolve(self, name: str) -> ToolCapability:
        """O(1) lookup; raises ToolNotFound."""
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFound(f"Tool '{name}' not found") from None

    def definitions(self) -> List[Dict[str, Any]]:
        """Tool schemas for the model call, in name order."""
        return [self._tools[name].to_definition() for name in self.names]

    def restricted(self, allowed: Iterable[str]) -> "ToolRegistry":
        """A new registry limited to the allow-list."""
        allowed = set(allowed)
        unknown = allowed - set(self._tools)
        if unknown:
            logger.warning("Allow-list names unknown tools", tools=sorted(unknown))
        return ToolRegistry({n: t for n, t in self._tools.items() if n in allowed})

    async def execute(
        self,
        call: ToolCall,
        context: ToolContext,
        default_timeout: Optional[float] = None,
    ) -> ToolResult:
        """
        Execute one tool call, always producing exactly one ToolResult.

        Unknown tools, invalid arguments, exceptions and timeouts become
        error results instead of propagating.

        Args:
            call: The model-issued call
            context: Conversation and depth of the calling loop
            default_timeout: Deadline when the tool declares none

        Returns:
            ToolResult whose call_id matches ``call.id``
        """
        try:
            tool = self.resolve(call.name)
            validate_arguments(tool.parameters, call.arguments)
        except (ToolNotFound, ToolArgumentError) as e:
            logger.warning(
                "Tool call rejected",
                tool=call.name,
                call_id=call.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return ToolResult.failure(call.id, e, tool_name=call.name)

        timeout = tool.timeout if tool.timeout is not None else default_timeout
        try:
            output = str(await asyncio.wait_for(tool.execute(call.arguments, context), timeout))
        except asyncio.TimeoutError:
            error = ToolTimeout(f"Tool '{call.name}' timed out after {timeout}s")
            logger.warning("Tool timed out", tool=call.name, call_id=call.id, timeout=timeout)
            return ToolResult.failure(call.id, error, tool_name=call.name)
        except Exception as e:
            error = e if isinstance(e, ToolError) else ToolExecutionError(
                f"Error executing {call.name}: {e}"
            )
            logger.warning(
                "Tool execution failed",
                tool=call.name,
                call_id=call.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return ToolResult.failure(call.id, error, tool_name=call.name)

        logger.debug("Tool executed", tool=call.name, call_id=call.id, output_chars=len(output))
        return ToolResult(call_id=call.id, output=output, tool_name=call.name)
