"""
Conversation dispatcher.

Owns the per-conversation execution slots: one inbound-to-outbound cycle
per conversation at a time, while different conversations run
concurrently. A message arriving for a busy conversation waits its turn;
``asyncio.Lock`` wakes waiters in FIFO order, so arrival order is kept.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Optional, Set

import structlog

from relay.agents.loop import AgentLoop, LoopOutcome
from relay.bus.queue import MessageBus
from relay.domain.models import Conversation, InboundMessage, OutboundMessage
from relay.sessions.manager import SessionManager

logger = structlog.get_logger(__name__)


@dataclass
class _Slot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ConversationDispatcher:
    """Turns inbound messages into exactly one outbound message each."""

    def __init__(self, loop: AgentLoop, sessions: SessionManager, shutdown_grace: float = 30.0):
        self.loop = loop
        self.sessions = sessions
        self.shutdown_grace = shutdown_grace
        self._slots: Dict[str, _Slot] = {}
        self._active: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    @property
    def active_count(self) -> int:
        return len(self._active)

    @asynccontextmanager
    async def _slot(self, key: str):
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = _Slot()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                self._slots.pop(key, None)

    async def handle(self, inbound: InboundMessage) -> OutboundMessage:
        """Run one full cycle for ``inbound`` inside its conversation's slot."""
        task = asyncio.current_task()
        tracked = task is not None and task not in self._active
        if tracked:
            self._active.add(task)
        try:
            async with self._slot(inbound.conversation_id):
                outcome = await self._run_cycle(inbound)
        finally:
            if tracked:
                self._active.discard(task)
        return self._outbound(inbound, outcome)

    async def _run_cycle(self, inbound: InboundMessage) -> LoopOutcome:
        try:
            conversation = self.sessions.get_or_create(inbound.channel, inbound.chat_identity)
        except Exception as e:
            logger.error(
                "Failed to load session",
                conversation_id=inbound.conversation_id,
                error=str(e),
                exc_info=True,
            )
            return LoopOutcome.failed(e)

        logger.info(
            "Processing message",
            conversation_id=conversation.id,
            sender=inbound.sender,
            chars=len(inbound.content),
        )
        try:
            return await self.loop.run(conversation, inbound.content, stop_event=self._stopping)
        finally:
            await self._persist(conversation)

    @staticmethod
    def _outbound(inbound: InboundMessage, outcome: LoopOutcome) -> OutboundMessage:
        return OutboundMessage(
            channel=inbound.channel,
            chat_identity=inbound.chat_identity,
            content=outcome.content,
            metadata={"state": outcome.state.value, "turns": outcome.turns},
        )

    async def _persist(self, conversation: Conversation) -> None:
        try:
            await self.sessions.save(conversation)
        except Exception as e:
            logger.error("Failed to persist session", conversation_id=conversation.id, error=str(e), exc_info=True)

    async def process_direct(self, content: str, chat_identity: str = "direct", channel: str = "cli") -> str:
        """Convenience entry for the CLI: one message in, answer text out."""
        outbound = await self.handle(
            InboundMessage(channel=channel, chat_identity=chat_identity, sender="user", content=content)
        )
        return outbound.content

    async def _serve_one(self, bus: MessageBus, inbound: InboundMessage) -> None:
        try:
            outbound = await self.handle(inbound)
        except Exception as e:
            logger.error(
                "Cycle crashed",
                conversation_id=inbound.conversation_id,
                error=str(e),
                exc_info=True,
            )
            outbound = self._outbound(inbound, LoopOutcome.failed(e))
        await bus.publish_outbound(outbound)

    async def serve(self, bus: MessageBus, poll_interval: float = 0.5) -> None:
        """Consume the bus until ``shutdown`` is called."""
        logger.info("Dispatcher started")
        tasks: Set[asyncio.Task] = set()
        while not self._stopping.is_set():
            inbound = await bus.consume_inbound(timeout=poll_interval)
            if inbound is None:
                continue
            task = asyncio.create_task(self._serve_one(bus, inbound))
            # Tracked until the outbound message is published.
            self._active.add(task)
            tasks.add(task)
            task.add_done_callback(self._active.discard)
            task.add_done_callback(tasks.discard)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Dispatcher stopped")

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """
        Stop intake and let running loops stop at their next turn boundary.

        Tool executions already in flight finish or hit their own timeout;
        cycles still running after ``grace`` seconds are cancelled.
        """
        grace = self.shutdown_grace if grace is None else grace
        self._stopping.set()
        pending = {t for t in self._active if t is not asyncio.current_task()}
        logger.info("Dispatcher shutting down", in_flight=len(pending), grace=grace)
        if not pending:
            return
        done, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            logger.warning("Cancelling cycle after shutdown grace period")
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
