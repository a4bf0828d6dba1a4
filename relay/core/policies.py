"""
Retry, timeout and limit policies.

Call sites receive these structs instead of reading settings directly, so
tests can tighten them (zero backoff, short timeouts) without touching the
environment.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Optional, TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from relay.core.exceptions import TransientProviderError

if TYPE_CHECKING:
    from relay.core.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient provider errors."""
    retries: int = 3
    backoff: float = 1.0
    multiplier: float = 2.0
    max_backoff: float = 30.0

    def retrying(
        self,
        stop_event: Optional[asyncio.Event] = None,
        before_sleep: Optional[Callable[[RetryCallState], None]] = None,
    ) -> AsyncRetrying:
        """
        Retry controller for one model call.

        Only TransientProviderError is retried; anything else propagates from
        the first attempt. Once attempts run out (or ``stop_event`` is set)
        the last transient error is re-raised as is.
        """
        stop = stop_after_attempt(self.retries + 1)
        if stop_event is not None:
            stop = stop | stop_when_event_set(stop_event)
        return AsyncRetrying(
            stop=stop,
            wait=wait_exponential(multiplier=self.backoff, exp_base=self.multiplier, max=self.max_backoff),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=before_sleep,
            reraise=True,
        )


@dataclass(frozen=True)
class TimeoutPolicy:
    """Independent deadlines for model calls and tool executions."""
    model_call: float = 120.0
    tool: float = 60.0


@dataclass(frozen=True)
class LoopLimits:
    """Everything an AgentLoop instance is bounded by."""
    max_turns: int = 20
    tool_concurrency: int = 4
    context_budget: int = 24000
    history_limit: int = 50
    memory_search_limit: int = 5
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeouts: TimeoutPolicy = field(default_factory=TimeoutPolicy)

    @classmethod
    def from_settings(cls, settings: "Settings", max_turns: int = None) -> "LoopLimits":
        return cls(
            max_turns=max_turns or settings.MAX_TURNS,
            tool_concurrency=settings.TOOL_CONCURRENCY_LIMIT,
            context_budget=settings.CONTEXT_BUDGET,
            history_limit=settings.HISTORY_LIMIT,
            memory_search_limit=settings.MEMORY_SEARCH_LIMIT,
            retry=RetryPolicy(
                retries=settings.RETRY_COUNT,
                backoff=settings.RETRY_BACKOFF,
                max_backoff=settings.RETRY_BACKOFF_MAX,
            ),
            timeouts=TimeoutPolicy(
                model_call=settings.MODEL_CALL_TIMEOUT,
                tool=settings.TOOL_TIMEOUT,
            ),
        )
