"""
Domain models for the orchestration engine.

Messages, tool calls and tool results are immutable once created; a
Conversation only ever grows by appending to its history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def conversation_key(channel: str, chat_identity: str) -> str:
    """Conversation id derived from channel and chat identity."""
    return f"{channel}:{chat_identity}"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class AgentLoopState(str, Enum):
    BUILDING_CONTEXT = "building_context"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentLoopState.DONE, AgentLoopState.FAILED)


@dataclass(frozen=True)
class ToolCall:
    """One invocation request issued by the model."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(id=data["id"], name=data["name"], arguments=data.get("arguments") or {})


@dataclass(frozen=True)
class ToolResult:
    """Outcome of exactly one ToolCall."""
    call_id: str
    output: str
    is_error: bool = False
    tool_name: Optional[str] = None
    error_type: Optional[str] = None  # exception class name when is_error

    @classmethod
    def failure(
        cls,
        call_id: str,
        error: Exception,
        tool_name: Optional[str] = None,
    ) -> "ToolResult":
        return cls(
            call_id=call_id,
            output=f"Error: {error}",
            is_error=True,
            tool_name=tool_name,
            error_type=type(error).__name__,
        )


@dataclass(frozen=True)
class Message:
    role: Role
    content: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_result_id: Optional[str] = None
    name: Optional[str] = None  # tool name for tool messages

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: Tuple[ToolCall, ...] = ()) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, result: ToolResult) -> "Message":
        return cls(
            role=Role.TOOL,
            content=result.output,
            tool_result_id=result.call_id,
            name=result.tool_name,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_result_id is not None:
            data["tool_result_id"] = self.tool_result_id
        if self.name is not None:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=Role(data["role"]),
            content=data.get("content") or "",
            tool_calls=tuple(ToolCall.from_dict(c) for c in data.get("tool_calls") or ()),
            tool_result_id=data.get("tool_result_id"),
            name=data.get("name"),
        )


@dataclass
class Conversation:
    """Ordered, append-only history of one channel + chat identity."""
    channel: str
    chat_identity: str
    history: List[Message] = field(default_factory=list)
    turn_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return conversation_key(self.channel, self.chat_identity)

    def append(self, message: Message) -> None:
        self.history.append(message)
        self.updated_at = utcnow()


@dataclass(frozen=True)
class MemoryRecord:
    conversation_scope: str
    value: str
    key: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    turn: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.conversation_scope,
            "key": self.key,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "turn": self.turn,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryRecord":
        return cls(
            conversation_scope=data["scope"],
            key=data.get("key"),
            value=data["value"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            turn=data.get("turn", 0),
        )


@dataclass(frozen=True)
class SubagentTask:
    """A delegated goal; ``depth`` is the nesting level of the loop it creates."""
    parent_conversation: str
    depth: int
    restricted_tool_set: FrozenSet[str]
    goal_prompt: str
    label: str = ""
    origin_channel: str = "system"
    origin_chat_identity: str = ""

    @property
    def display_label(self) -> str:
        if self.label:
            return self.label
        if len(self.goal_prompt) > 30:
            return self.goal_prompt[:30] + "…"
        return self.goal_prompt


@dataclass(frozen=True)
class InboundMessage:
    channel: str
    chat_identity: str
    sender: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def conversation_id(self) -> str:
        return conversation_key(self.channel, self.chat_identity)


@dataclass(frozen=True)
class OutboundMessage:
    channel: str
    chat_identity: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
