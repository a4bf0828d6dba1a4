"""
Context Builder

Assembles the bounded message sequence handed to a model call:

1. system instructions plus skill hints (always first, never dropped)
2. memory records, in the order the store ranked them
3. conversation history, oldest first

The current exchange (the latest user message and everything after it) is
mandatory alongside the instructions. Older history is kept in whole
exchanges, newest first, until the budget runs out, so an assistant
tool-call message is never separated from its tool results.
"""

import json
from typing import Callable, List, Sequence

import structlog

from relay.core.exceptions import ContextBudgetExceeded
from relay.domain.models import Conversation, MemoryRecord, Message, Role

logger = structlog.get_logger(__name__)

MESSAGE_OVERHEAD = 4
MEMORY_HEADER = "# Relevant Memory\n"


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return len(text) // 4


def message_size(message: Message) -> int:
    size = estimate_tokens(message.content) + MESSAGE_OVERHEAD
    for call in message.tool_calls:
        size += estimate_tokens(call.name + json.dumps(call.arguments, ensure_ascii=False))
    return size


def context_size(messages: Sequence[Message]) -> int:
    return sum(message_size(m) for m in messages)


def format_memory_line(record: MemoryRecord) -> str:
    label = f"{record.key}: " if record.key else ""
    return f"- [{record.timestamp.strftime('%Y-%m-%d %H:%M')}] {label}{record.value}"


def split_exchanges(messages: Sequence[Message]) -> List[List[Message]]:
    """Group messages into exchanges, each starting at a user message."""
    exchanges: List[List[Message]] = []
    for message in messages:
        if message.role == Role.USER or not exchanges:
            exchanges.append([message])
        else:
            exchanges[-1].append(message)
    return exchanges


class ContextBuilder:
    """
    Args:
        instructions: Produces the static system instructions for a conversation
        history_limit: Maximum number of older history messages considered
    """

    def __init__(self, instructions: Callable[[Conversation], str], history_limit: int = 50):
        self.instructions = instructions
        self.history_limit = history_limit

    def build(
        self,
        conversation: Conversation,
        memory_snapshot: Sequence[MemoryRecord],
        skill_hints: Sequence[str],
        budget: int,
    ) -> List[Message]:
        """
        Build the ordered message sequence for the next model call.

        Raises:
            ContextBudgetExceeded: If the instructions and the current exchange
                alone do not fit ``budget``
        """
        system_text = "\n\n---\n\n".join([self.instructions(conversation), *[h for h in skill_hints if h]])
        system = Message.system(system_text)

        history = conversation.history
        last_user = max((i for i, m in enumerate(history) if m.role == Role.USER), default=None)
        if last_user is None:
            older, current = list(history), []
        else:
            older, current = list(history[:last_user]), list(history[last_user:])

        used = message_size(system) + context_size(current)
        if used > budget:
            raise ContextBudgetExceeded(
                f"System instructions and current turn need ~{used} tokens; budget is {budget}"
            )

        memory_message = None
        lines: List[str] = []
        for record in memory_snapshot:
            candidate = Message.system(MEMORY_HEADER + "\n".join(lines + [format_memory_line(record)]))
            if used + message_size(candidate) > budget:
                break
            lines.append(format_memory_line(record))
            memory_message = candidate
        if memory_message is not None:
            used += message_size(memory_message)

        window = older[-self.history_limit:] if self.history_limit else []
        # A window cut mid-exchange would start on orphaned assistant/tool messages.
        exchanges = [e for e in split_exchanges(window) if e[0].role == Role.USER]
        kept: List[List[Message]] = []
        for exchange in reversed(exchanges):
            size = context_size(exchange)
            if used + size > budget:
                break
            kept.insert(0, exchange)
            used += size
        dropped = len(exchanges) - len(kept)

        if dropped or len(lines) < len(memory_snapshot):
            logger.debug(
                "Context truncated",
                conversation_id=conversation.id,
                dropped_exchanges=dropped,
                memory_included=len(lines),
                memory_available=len(memory_snapshot),
                estimated_tokens=used,
                budget=budget,
            )

        messages = [system]
        if memory_message is not None:
            messages.append(memory_message)
        for exchange in kept:
            messages.extend(exchange)
        messages.extend(current)
        return messages
