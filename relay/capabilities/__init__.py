"""
Tool capabilities and the registry that dispatches to them.

Usage:
    from relay.capabilities import ToolRegistryBuilder
    from relay.tools.calculator import CalculatorTool

    registry = ToolRegistryBuilder().register(CalculatorTool()).build()
    result = await registry.execute(call, context)
"""

from relay.capabilities.base import ToolCapability, ToolContext
from relay.capabilities.registry import ToolRegistry, ToolRegistryBuilder

__all__ = [
    "ToolCapability",
    "ToolContext",
    "ToolRegistry",
    "ToolRegistryBuilder",
]
