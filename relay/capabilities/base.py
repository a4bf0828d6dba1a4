"""
Tool capability contract.

A capability is a named unit of work with a JSON-schema argument
declaration. Side effects (filesystem, processes, network, delegation) are
the capability's own business; the registry only invokes it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ToolContext:
    """Per-call execution context handed to every capability."""
    conversation_id: str
    channel: str = "cli"
    chat_identity: str = "direct"
    depth: int = 0  # nesting level of the calling loop (0 = top level)


class ToolCapability(ABC):
    """Base class for tools the model may call."""

    name: str = ""
    description: str = ""
    # Per-call deadline override; None means the loop's default tool timeout.
    timeout: Optional[float] = None

    @property
    def parameters(self) -> Dict[str, Any]:
        """JSON schema of the accepted arguments."""
        return {"type": "object", "properties": {}, "required": []}

    @abstractmethod
    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        """Run the tool. Raise to report failure; the registry converts it."""
        pass

    def to_definition(self) -> Dict[str, Any]:
        """OpenAI function-calling definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def require_string(arguments: Dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str):
        raise ValueError(f"Missing required parameter: {key}")
    return value


def optional_string(arguments: Dict[str, Any], key: str, default: Optional[str] = None) -> Optional[str]:
    value = arguments.get(key)
    return value if isinstance(value, str) else default


def optional_int(arguments: Dict[str, Any], key: str, default: Optional[int] = None) -> Optional[int]:
    value = arguments.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value
