from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from relay.core.exceptions import FatalProviderError, ProviderError, TransientProviderError
from relay.domain.models import Message, ToolCall


@dataclass(frozen=True)
class ModelError:
    """Provider failure returned as data, classified for the agent loop."""
    message: str
    transient: bool = False
    status_code: Optional[int] = None

    def to_exception(self) -> ProviderError:
        error_cls = TransientProviderError if self.transient else FatalProviderError
        return error_cls(self.message, status_code=self.status_code)


@dataclass
class ModelRequest:
    """One model call: ordered messages plus the declared tool schemas"""
    messages: List[Message]
    tools: List[Dict[str, Any]]
    model: str
    max_tokens: int = 8192
    temperature: float = 0.7


@dataclass
class ModelResponse:
    """Standard response format from a model call"""
    content: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    error: Optional[ModelError] = None
    finish_reason: Optional[str] = None
    usage: Optional[Dict[str, int]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    @classmethod
    def failed(cls, message: str, transient: bool, status_code: Optional[int] = None) -> "ModelResponse":
        return cls(error=ModelError(message=message, transient=transient, status_code=status_code))


class LLMInterface(ABC):
    """Abstract interface for model-call providers.

    Implementations must not raise for provider failures; they return a
    ModelResponse whose ``error`` is set instead.
    """

    @abstractmethod
    async def complete(self, request: ModelRequest) -> ModelResponse:
        """Issue one model call"""
        pass

    async def aclose(self) -> None:
        """Release transport resources"""
        pass
