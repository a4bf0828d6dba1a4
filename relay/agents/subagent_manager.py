"""
Subagent Manager

Runs delegated goals in nested, depth-limited agent loops with a
restricted tool set and a fresh conversation.

Enforces:
- Depth limit: a task whose depth exceeds ``max_depth`` is rejected before
  any loop is created
- Concurrency cap across the process, with a fail-fast (default) or
  blocking overflow policy
- Cancellation of a single subagent, reported as a Cancelled outcome
  rather than disappearing
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog

from relay.agents.loop import AgentLoop, LoopOutcome
from relay.core.exceptions import (
    Cancelled,
    SubagentCapacityExceeded,
    SubagentDepthExceeded,
    SubagentNotFound,
)
from relay.domain.models import AgentLoopState, Conversation, SubagentTask

logger = structlog.get_logger(__name__)


class OverflowPolicy(str, Enum):
    """What spawn does when every subagent slot is taken."""
    FAIL_FAST = "fail_fast"  # raise SubagentCapacityExceeded (retryable)
    BLOCK = "block"          # wait for a slot


class SubagentStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SubagentInfo:
    """Tracking entry for one spawned subagent."""
    id: str
    task: SubagentTask
    handle: Optional[asyncio.Task] = None
    status: SubagentStatus = SubagentStatus.RUNNING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cancel_requested: bool = False


class SubagentManager:
    """
    Spawns and tracks nested agent loops.

    The tracking registry is shared by every conversation in the process and
    is guarded by its own lock.

    Args:
        loop_factory: Builds the nested AgentLoop for a task (restricted tools,
            depth already applied)
        max_depth: Deepest nesting level a subagent may run at
        max_concurrent: Simultaneously running subagents across the process
        overflow_policy: Behaviour when ``max_concurrent`` is reached
    """

    def __init__(
        self,
        loop_factory: Callable[[SubagentTask], AgentLoop],
        max_depth: int = 1,
        max_concurrent: int = 4,
        overflow_policy: OverflowPolicy = OverflowPolicy.FAIL_FAST,
    ):
        self._loop_factory = loop_factory
        self.max_depth = max_depth
        self.max_concurrent = max_concurrent
        self.overflow_policy = OverflowPolicy(overflow_policy)
        self._slots = asyncio.Semaphore(max_concurrent)
        self._subagents: Dict[str, SubagentInfo] = {}
        self._lock = asyncio.Lock()

        logger.info(
            "SubagentManager initialized",
            max_depth=max_depth,
            max_concurrent=max_concurrent,
            overflow_policy=self.overflow_policy.value,
        )

    @property
    def running_count(self) -> int:
        return sum(1 for info in self._subagents.values() if info.status == SubagentStatus.RUNNING)

    @property
    def count(self) -> int:
        return len(self._subagents)

    def running(self) -> List[SubagentInfo]:
        return [info for info in self._subagents.values() if info.status == SubagentStatus.RUNNING]

    def get_info(self, subagent_id: str) -> Optional[SubagentInfo]:
        return self._subagents.get(subagent_id)

    async def spawn(self, task: SubagentTask) -> str:
        """
        Start a nested loop for ``task``.

        Returns:
            The subagent id (8 hex characters)

        Raises:
            SubagentDepthExceeded: ``task.depth`` is beyond ``max_depth``
            SubagentCapacityExceeded: All slots busy under the fail-fast policy
        """
        if task.depth > self.max_depth:
            logger.warning(
                "Subagent depth limit reached",
                parent=task.parent_conversation,
                depth=task.depth,
                max_depth=self.max_depth,
            )
            raise SubagentDepthExceeded(
                f"Subagent depth limit reached (max {self.max_depth}); handle this task directly"
            )

        if self.overflow_policy == OverflowPolicy.FAIL_FAST and self._slots.locked():
            raise SubagentCapacityExceeded(
                f"Maximum concurrent subagents ({self.max_concurrent}) running; retry later"
            )
        await self._slots.acquire()

        try:
            subagent_id = uuid.uuid4().hex[:8]
            loop = self._loop_factory(task)
            info = SubagentInfo(id=subagent_id, task=task)
            async with self._lock:
                self._subagents[subagent_id] = info
                info.handle = asyncio.create_task(self._execute(info, loop))
        except BaseException:
            self._slots.release()
            raise
        info.handle.add_done_callback(lambda _: self._slots.release())

        logger.info(
            "Sub-agent spawned",
            subagent_id=subagent_id,
            label=task.display_label,
            parent=task.parent_conversation,
            depth=task.depth,
            running=self.running_count,
        )
        return subagent_id

    async def _execute(self, info: SubagentInfo, loop: AgentLoop) -> LoopOutcome:
        conversation = Conversation(channel="subagent", chat_identity=info.id)
        try:
            outcome = await loop.run(conversation, info.task.goal_prompt)
        except asyncio.CancelledError:
            if not info.cancel_requested:
                raise
            outcome = LoopOutcome.failed(Cancelled(f"Subagent {info.id} was cancelled"))
        info.status = self._status_for(outcome)
        return outcome

    @staticmethod
    def _status_for(outcome: LoopOutcome) -> SubagentStatus:
        if outcome.state == AgentLoopState.DONE:
            return SubagentStatus.COMPLETED
        if isinstance(outcome.error, Cancelled):
            return SubagentStatus.CANCELLED
        return SubagentStatus.FAILED

    async def wait(self, subagent_id: str) -> LoopOutcome:
        """Wait for a subagent to finish, then drop it from the registry."""
        info = self._subagents.get(subagent_id)
        if info is None:
            raise SubagentNotFound(f"No subagent with id {subagent_id}")

        try:
            outcome = await info.handle
        except asyncio.CancelledError:
            current = asyncio.current_task()
            own_cancel = current is not None and current.cancelling() > 0
            if own_cancel or not (info.cancel_requested and info.handle.cancelled()):
                raise
            # Cancelled before the nested loop got to run.
            outcome = LoopOutcome.failed(Cancelled(f"Subagent {subagent_id} was cancelled"))
            info.status = SubagentStatus.CANCELLED
        finally:
            async with self._lock:
                self._subagents.pop(subagent_id, None)

        logger.info(
            "Sub-agent finished",
            subagent_id=subagent_id,
            status=info.status.value,
            reason=outcome.reason,
            turns=outcome.turns,
        )
        return outcome

    async def run(self, task: SubagentTask) -> LoopOutcome:
        """Spawn and wait."""
        subagent_id = await self.spawn(task)
        return await self.wait(subagent_id)

    async def cancel(self, subagent_id: str) -> bool:
        """Request cancellation; the waiter still receives a Cancelled outcome."""
        async with self._lock:
            info = self._subagents.get(subagent_id)
            if info is None or info.handle is None or info.handle.done():
                return False
            info.cancel_requested = True
            info.handle.cancel()
        logger.info("Sub-agent cancellation requested", subagent_id=subagent_id)
        return True

    async def cancel_all(self) -> int:
        cancelled = 0
        for subagent_id in list(self._subagents):
            if await self.cancel(subagent_id):
                cancelled += 1
        return cancelled
