"""
Agent Loop

State machine turning one user message into one final answer:

    BUILDING_CONTEXT -> AWAITING_MODEL -> EXECUTING_TOOLS -> BUILDING_CONTEXT ...
                                       -> FINALIZING -> DONE
    any state -> FAILED

Termination is guaranteed by the turn cap; resource use is bounded by the
context budget, the tool worker limit and per-call timeouts. Tool failures
never fail the loop; provider, context and turn-bound failures always do.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import structlog
from tenacity import RetryCallState

from relay.capabilities.base import ToolContext
from relay.capabilities.registry import ToolRegistry
from relay.context.builder import ContextBuilder
from relay.core.exceptions import (
    Cancelled,
    ContractViolation,
    MaxTurnsExceeded,
    RelayException,
    TransientProviderError,
)
from relay.core.policies import LoopLimits
from relay.domain.models import (
    AgentLoopState,
    Conversation,
    MemoryRecord,
    Message,
    ToolCall,
    ToolResult,
)
from relay.interfaces.llm import LLMInterface, ModelRequest, ModelResponse
from relay.memory.store import MemoryStore

logger = structlog.get_logger(__name__)

FAILURE_NOTICE = "Sorry, I couldn't complete that request. Please try again later."
EMPTY_ANSWER = "I've completed processing but have no response to give."


@dataclass
class LoopOutcome:
    """Terminal result of one loop run."""
    state: AgentLoopState
    content: str
    turns: int = 0
    error: Optional[Exception] = None
    transitions: List[AgentLoopState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == AgentLoopState.DONE

    @property
    def reason(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None

    @classmethod
    def failed(cls, error: Exception, turns: int = 0) -> "LoopOutcome":
        return cls(
            state=AgentLoopState.FAILED,
            content=FAILURE_NOTICE,
            turns=turns,
            error=error,
            transitions=[AgentLoopState.FAILED],
        )


def check_call_ids(calls: Sequence[ToolCall]) -> None:
    seen = set()
    for call in calls:
        if call.id in seen:
            raise ContractViolation(f"Duplicate tool call id '{call.id}' in one response")
        seen.add(call.id)


class AgentLoop:
    """
    One configured loop; ``run`` may be called for many conversations.

    Args:
        provider: Model-call capability
        registry: Tools offered to the model
        context_builder: Builds the bounded context for each model call
        model: Model identifier sent with every request
        limits: Turn cap, worker limit, budget, retry and timeout policies
        memory: Memory store read for snapshots and written at turn boundaries
        skill_hints: Produces skill hints appended to the system instructions
        depth: Nesting level (0 for top-level loops, >0 inside subagents)
    """

    def __init__(
        self,
        provider: LLMInterface,
        registry: ToolRegistry,
        context_builder: ContextBuilder,
        model: str,
        limits: Optional[LoopLimits] = None,
        memory: Optional[MemoryStore] = None,
        skill_hints: Optional[Callable[[], List[str]]] = None,
        max_tokens: int = 8192,
        temperature: float = 0.7,
        depth: int = 0,
    ):
        self.provider = provider
        self.registry = registry
        self.context_builder = context_builder
        self.model = model
        self.limits = limits or LoopLimits()
        self.memory = memory
        self.skill_hints = skill_hints
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.depth = depth

    async def run(
        self,
        conversation: Conversation,
        content: str,
        stop_event: Optional[asyncio.Event] = None,
    ) -> LoopOutcome:
        """
        Drive one inbound message to a terminal state.

        The user message and every assistant/tool message produced along the
        way are appended to ``conversation``; results of completed tool
        batches stay in history even when the loop fails afterwards.

        Args:
            conversation: History owned by the caller for the whole run
            content: The inbound user text
            stop_event: When set, the loop stops at the next turn boundary
                or instead of retrying a failed model call

        Returns:
            LoopOutcome in DONE or FAILED state
        """
        log = logger.bind(conversation_id=conversation.id, depth=self.depth)
        conversation.append(Message.user(content))

        state = AgentLoopState.BUILDING_CONTEXT
        transitions = [state]
        turn = 1
        completed_turns = 0
        messages: List[Message] = []
        response: Optional[ModelResponse] = None
        answer = ""
        error: Optional[Exception] = None

        while not state.is_terminal:
            previous = state
            try:
                if state == AgentLoopState.BUILDING_CONTEXT:
                    if stop_event is not None and stop_event.is_set():
                        raise Cancelled("Loop stopped before completion")
                    messages = await self._build_context(conversation, content)
                    state = AgentLoopState.AWAITING_MODEL

                elif state == AgentLoopState.AWAITING_MODEL:
                    response = await self._call_model(messages, log, stop_event)
                    if response.tool_calls:
                        check_call_ids(response.tool_calls)
                        if response.content:
                            log.debug("Discarding text that accompanied tool calls", chars=len(response.content))
                        state = AgentLoopState.EXECUTING_TOOLS
                    else:
                        state = AgentLoopState.FINALIZING

                elif state == AgentLoopState.EXECUTING_TOOLS:
                    calls = response.tool_calls
                    conversation.append(Message.assistant("", calls))
                    results = await self._execute_tools(calls, conversation)
                    for result in results:
                        conversation.append(Message.tool(result))
                    conversation.turn_count += 1
                    completed_turns += 1
                    turn += 1
                    if turn > self.limits.max_turns:
                        raise MaxTurnsExceeded(f"Exceeded {self.limits.max_turns} turns")
                    state = AgentLoopState.BUILDING_CONTEXT

                elif state == AgentLoopState.FINALIZING:
                    answer = response.content or EMPTY_ANSWER
                    # A failed memory write leaves neither records nor the answer in history.
                    await self._remember(conversation, content, answer, conversation.turn_count + 1)
                    conversation.append(Message.assistant(answer))
                    conversation.turn_count += 1
                    completed_turns += 1
                    state = AgentLoopState.DONE

            except RelayException as e:
                error = e
                state = AgentLoopState.FAILED
            except Exception as e:
                log.error("Unexpected error in agent loop", state=state.value, error=str(e), exc_info=True)
                error = e
                state = AgentLoopState.FAILED

            transitions.append(state)
            log.debug("Loop transition", from_state=previous.value, to_state=state.value, turn=turn)

        if state == AgentLoopState.FAILED:
            log.error(
                "Agent loop failed",
                reason=type(error).__name__,
                error=str(error),
                turns=completed_turns,
            )
            return LoopOutcome(
                state=state,
                content=FAILURE_NOTICE,
                turns=completed_turns,
                error=error,
                transitions=transitions,
            )

        log.info("Agent loop done", turns=completed_turns, answer_chars=len(answer))
        return LoopOutcome(state=state, content=answer, turns=completed_turns, transitions=transitions)

    async def _build_context(self, conversation: Conversation, query: str) -> List[Message]:
        snapshot: List[MemoryRecord] = []
        if self.memory is not None:
            snapshot = await self.memory.search(conversation.id, query, self.limits.memory_search_limit)
        hints = self.skill_hints() if self.skill_hints is not None else []
        return self.context_builder.build(conversation, snapshot, hints, self.limits.context_budget)

    async def _call_model(
        self,
        messages: List[Message],
        log,
        stop_event: Optional[asyncio.Event] = None,
    ) -> ModelResponse:
        """One model call with bounded exponential backoff on transient errors."""
        request = ModelRequest(
            messages=messages,
            tools=self.registry.definitions(),
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

        def log_retry(retry_state: RetryCallState) -> None:
            log.warning(
                "Transient provider error, retrying",
                attempt=retry_state.attempt_number,
                delay=retry_state.next_action.sleep,
                error=str(retry_state.outcome.exception()),
            )

        try:
            async for attempt in self.limits.retry.retrying(stop_event, before_sleep=log_retry):
                with attempt:
                    response = await self._attempt_model_call(request)
        except TransientProviderError as e:
            if stop_event is not None and stop_event.is_set():
                raise Cancelled("Loop stopped while retrying the model call") from e
            raise
        return response

    async def _attempt_model_call(self, request: ModelRequest) -> ModelResponse:
        try:
            response = await asyncio.wait_for(
                self.provider.complete(request), self.limits.timeouts.model_call
            )
        except asyncio.TimeoutError:
            response = ModelResponse.failed(
                f"Model call timed out after {self.limits.timeouts.model_call}s", transient=True
            )
        if response.error is not None:
            raise response.error.to_exception()
        return response

    async def _execute_tools(self, calls: Sequence[ToolCall], conversation: Conversation) -> List[ToolResult]:
        """Run calls concurrently; results come back in issue order."""
        semaphore = asyncio.Semaphore(self.limits.tool_concurrency)
        context = ToolContext(
            conversation_id=conversation.id,
            channel=conversation.channel,
            chat_identity=conversation.chat_identity,
            depth=self.depth,
        )

        async def run_one(call: ToolCall) -> ToolResult:
            async with semaphore:
                return await self.registry.execute(call, context, default_timeout=self.limits.timeouts.tool)

        results = await asyncio.gather(*(run_one(call) for call in calls))
        for call, result in zip(calls, results):
            if result.call_id != call.id:
                raise ContractViolation(f"Result for '{result.call_id}' does not match call '{call.id}'")
        return list(results)

    async def _remember(self, conversation: Conversation, question: str, answer: str, turn: int) -> None:
        if self.memory is None:
            return
        scope = conversation.id
        await self.memory.put_many([
            MemoryRecord(conversation_scope=scope, key="user", value=question, turn=turn),
            MemoryRecord(conversation_scope=scope, key="assistant", value=answer, turn=turn),
        ])
