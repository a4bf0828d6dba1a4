"""
Unit tests for the AgentLoop state machine.

Covers:
1. Plain-text answers finish in a single turn
2. Concurrent tool execution with results appended in issue order
3. Provider error classification (fatal, transient, timeout)
4. Termination bounds (turn cap, duplicate ids, context budget)
5. Tool failures degrading to error results
6. Cooperative stop and memory writes
"""

import asyncio
from pathlib import Path
from typing import Any, Dict

import pytest

from relay.agents.loop import EMPTY_ANSWER, FAILURE_NOTICE
from relay.capabilities.base import ToolCapability, ToolContext
from relay.core.policies import TimeoutPolicy
from relay.domain.models import AgentLoopState, Role
from relay.memory.store import MemoryStore
from relay.tools.calculator import CalculatorTool
from tests.helpers import (
    EchoTool,
    FailingTool,
    ScriptedProvider,
    SleepTool,
    call,
    fast_limits,
    fatal,
    make_loop,
    make_registry,
    text,
    tool_calls,
    transient,
)


# ─── Helpers ────────────────────────────────────────────────────────────

class ListFilesTool(ToolCapability):
    """Counts directory entries; slower than the calculator on purpose."""

    name = "list_files"
    description = "List files in a directory"

    def __init__(self, log):
        self.log = log

    @property
    def parameters(self) -> Dict[str, Any]:
        return {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]}

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        self.log.append("list_files:start")
        await asyncio.sleep(0.05)
        self.log.append("list_files:finish")
        return f"{len(list(Path(arguments['path']).iterdir()))} files found"


class BarrierTool(ToolCapability):
    """Only returns once every BarrierTool sharing ``barrier`` is running."""

    description = "Waits for its siblings"

    def __init__(self, name, barrier):
        self.name = name
        self.barrier = barrier

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        self.barrier["arrived"] += 1
        if self.barrier["arrived"] == self.barrier["expected"]:
            self.barrier["event"].set()
        await asyncio.wait_for(self.barrier["event"].wait(), timeout=1.0)
        return self.name


class CountingTool(ToolCapability):
    name = "count"
    description = "Tracks how many instances run at once"

    def __init__(self):
        self.active = 0
        self.peak = 0

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.02)
        self.active -= 1
        return "ok"


def tool_messages(conversation):
    return [m for m in conversation.history if m.role == Role.TOOL]


# ─── 1. Plain text ──────────────────────────────────────────────────────

class TestPlainAnswer:

    @pytest.mark.asyncio
    async def test_text_response_finishes_in_one_turn(self, conversation):
        """A response without tool calls goes straight to Finalizing and Done."""
        provider = ScriptedProvider([text("Hello there!")])
        outcome = await make_loop(provider).run(conversation, "hi")

        assert outcome.state == AgentLoopState.DONE
        assert outcome.content == "Hello there!"
        assert outcome.turns == 1
        assert provider.calls == 1
        assert outcome.transitions == [
            AgentLoopState.BUILDING_CONTEXT,
            AgentLoopState.AWAITING_MODEL,
            AgentLoopState.FINALIZING,
            AgentLoopState.DONE,
        ]

    @pytest.mark.asyncio
    async def test_history_holds_user_and_answer(self, conversation):
        provider = ScriptedProvider([text("pong")])
        await make_loop(provider).run(conversation, "ping")

        assert [(m.role, m.content) for m in conversation.history] == [
            (Role.USER, "ping"),
            (Role.ASSISTANT, "pong"),
        ]
        assert conversation.turn_count == 1

    @pytest.mark.asyncio
    async def test_empty_tool_call_list_is_no_tool_calls(self, conversation):
        provider = ScriptedProvider([tool_calls(content="just text")])
        outcome = await make_loop(provider).run(conversation, "hi")

        assert outcome.state == AgentLoopState.DONE
        assert outcome.content == "just text"
        assert AgentLoopState.EXECUTING_TOOLS not in outcome.transitions

    @pytest.mark.asyncio
    async def test_empty_answer_gets_fallback_text(self, conversation):
        provider = ScriptedProvider([text("")])
        outcome = await make_loop(provider).run(conversation, "hi")

        assert outcome.state == AgentLoopState.DONE
        assert outcome.content == EMPTY_ANSWER

    @pytest.mark.asyncio
    async def test_system_instructions_come_first(self, conversation):
        provider = ScriptedProvider([text("ok")])
        await make_loop(provider, instructions="Be brief.").run(conversation, "hi")

        request = provider.requests[0]
        assert request.messages[0].role == Role.SYSTEM
        assert request.messages[0].content.startswith("Be brief.")
        assert request.messages[-1].content == "hi"
        assert request.model == "test-model"


# ─── 2. Tool execution ──────────────────────────────────────────────────

class TestToolExecution:

    @pytest.mark.asyncio
    async def test_calculator_and_list_files_scenario(self, conversation, tmp_path):
        """Two tool calls run, results land in issue order, second call answers."""
        for name in ("a.txt", "b.txt", "c.txt"):
            (tmp_path / name).write_text("x")
        log = []
        registry = make_registry(CalculatorTool(), ListFilesTool(log))
        provider = ScriptedProvider([
            tool_calls(
                call("call_1", "calculator", expression="2+2"),
                call("call_2", "list_files", path=str(tmp_path)),
            ),
            text("4; 3 files found"),
        ])

        outcome = await make_loop(provider, registry).run(
            conversation, "compute 2+2 and list files in a given directory"
        )

        assert outcome.state == AgentLoopState.DONE
        assert outcome.content == "4; 3 files found"
        results = tool_messages(conversation)
        assert [m.tool_result_id for m in results] == ["call_1", "call_2"]
        assert results[0].content == "4"
        assert results[1].content == "3 files found"
        assert outcome.turns == 2

        # The second model call saw both results.
        second = provider.requests[1].messages
        assert [m.tool_result_id for m in second if m.role == Role.TOOL] == ["call_1", "call_2"]

    @pytest.mark.asyncio
    async def test_tools_run_concurrently(self, conversation):
        barrier = {"arrived": 0, "expected": 2, "event": asyncio.Event()}
        registry = make_registry(BarrierTool("left", barrier), BarrierTool("right", barrier))
        provider = ScriptedProvider([
            tool_calls(call("1", "left"), call("2", "right")),
            text("done"),
        ])

        outcome = await make_loop(provider, registry).run(conversation, "go")

        assert outcome.state == AgentLoopState.DONE
        assert [m.content for m in tool_messages(conversation)] == ["left", "right"]
        assert not any(m.content.startswith("Error") for m in tool_messages(conversation))

    @pytest.mark.asyncio
    async def test_results_follow_issue_order_not_completion_order(self, conversation):
        log = []
        registry = make_registry(
            SleepTool("slow", delay=0.1, output="slow result", log=log),
            SleepTool("fast", delay=0.0, output="fast result", log=log),
        )
        provider = ScriptedProvider([
            tool_calls(call("a", "slow"), call("b", "fast")),
            text("done"),
        ])

        await make_loop(provider, registry).run(conversation, "go")

        assert log.index(("finish", "fast")) < log.index(("finish", "slow"))
        assert [m.tool_result_id for m in tool_messages(conversation)] == ["a", "b"]
        assert [m.content for m in tool_messages(conversation)] == ["slow result", "fast result"]

    @pytest.mark.asyncio
    async def test_worker_limit_bounds_concurrency(self, conversation):
        counter = CountingTool()
        provider = ScriptedProvider([
            tool_calls(*[call(str(i), "count") for i in range(6)]),
            text("done"),
        ])
        loop = make_loop(provider, make_registry(counter), limits=fast_limits(tool_concurrency=2))

        await loop.run(conversation, "go")

        assert counter.peak == 2
        assert len(tool_messages(conversation)) == 6

    @pytest.mark.asyncio
    async def test_tool_calls_win_over_text(self, conversation):
        """Text next to tool calls is not sent as a premature answer."""
        provider = ScriptedProvider([
            tool_calls(call("1", "echo", text="hi"), content="Let me check..."),
            text("final"),
        ])
        outcome = await make_loop(provider, make_registry(EchoTool())).run(conversation, "go")

        assert outcome.content == "final"
        assert provider.calls == 2
        assert all(m.content != "Let me check..." for m in conversation.history)

    @pytest.mark.asyncio
    async def test_tool_timeout_yields_error_and_turn_continues(self, conversation):
        registry = make_registry(SleepTool("hang", delay=10))
        provider = ScriptedProvider([
            tool_calls(call("1", "hang")),
            text("gave up waiting"),
        ])
        limits = fast_limits(timeouts=TimeoutPolicy(model_call=2.0, tool=0.05))

        outcome = await make_loop(provider, registry, limits=limits).run(conversation, "go")

        assert outcome.state == AgentLoopState.DONE
        assert outcome.content == "gave up waiting"
        [result] = tool_messages(conversation)
        assert "timed out" in result.content

    @pytest.mark.asyncio
    async def test_unknown_tool_and_bad_arguments_become_results(self, conversation):
        provider = ScriptedProvider([
            tool_calls(
                call("1", "missing_tool"),
                call("2", "echo"),
                call("3", "echo", text=42),
                call("4", "explode"),
            ),
            text("handled"),
        ])
        registry = make_registry(EchoTool(), FailingTool())

        outcome = await make_loop(provider, registry).run(conversation, "go")

        assert outcome.state == AgentLoopState.DONE
        contents = [m.content for m in tool_messages(conversation)]
        assert "not found" in contents[0]
        assert "'text' is a required property" in contents[1]
        assert "text: 42 is not of type 'string'" in contents[2]
        assert "kaboom" in contents[3]


# ─── 3. Provider errors ─────────────────────────────────────────────────

class TestProviderErrors:

    @pytest.mark.asyncio
    async def test_fatal_error_fails_without_retry(self, conversation):
        provider = ScriptedProvider([fatal(), text("never used")])
        outcome = await make_loop(provider).run(conversation, "hi")

        assert outcome.state == AgentLoopState.FAILED
        assert outcome.reason == "FatalProviderError"
        assert outcome.content == FAILURE_NOTICE
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_failure_notice_hides_internal_detail(self, conversation):
        provider = ScriptedProvider([fatal("secret backend detail")])
        outcome = await make_loop(provider).run(conversation, "hi")

        assert "secret backend detail" not in outcome.content
        assert "secret backend detail" in str(outcome.error)

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, conversation):
        provider = ScriptedProvider([transient(), transient(), text("recovered")])
        outcome = await make_loop(provider).run(conversation, "hi")

        assert outcome.state == AgentLoopState.DONE
        assert outcome.content == "recovered"
        assert provider.calls == 3

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_retries(self, conversation):
        provider = ScriptedProvider([transient()] * 5)
        outcome = await make_loop(provider).run(conversation, "hi")

        assert outcome.state == AgentLoopState.FAILED
        assert outcome.reason == "TransientProviderError"
        assert provider.calls == 3  # first attempt + 2 retries

    @pytest.mark.asyncio
    async def test_model_call_timeout_counts_as_transient(self, conversation):
        async def hang(request):
            await asyncio.sleep(10)

        provider = ScriptedProvider([hang, text("second try")])
        limits = fast_limits(timeouts=TimeoutPolicy(model_call=0.05, tool=1.0))

        outcome = await make_loop(provider, limits=limits).run(conversation, "hi")

        assert outcome.state == AgentLoopState.DONE
        assert outcome.content == "second try"
        assert provider.calls == 2


# ─── 4. Termination bounds ──────────────────────────────────────────────

class TestTermination:

    @pytest.mark.asyncio
    async def test_max_turns_exceeded(self, conversation):
        """A model that never stops calling tools is cut off at the turn cap."""
        provider = ScriptedProvider([
            (lambda request, i=i: tool_calls(call(f"c{i}", "echo", text="again")))
            for i in range(10)
        ])
        loop = make_loop(provider, make_registry(EchoTool()), limits=fast_limits(max_turns=3))

        outcome = await loop.run(conversation, "loop forever")

        assert outcome.state == AgentLoopState.FAILED
        assert outcome.reason == "MaxTurnsExceeded"
        assert provider.calls == 3
        # Results of every executed batch were committed before failing.
        assert len(tool_messages(conversation)) == 3

    @pytest.mark.asyncio
    async def test_duplicate_call_ids_fail_immediately(self, conversation):
        echo_log = []

        class RecordingEcho(EchoTool):
            async def execute(self, arguments, context):
                echo_log.append(arguments["text"])
                return arguments["text"]

        provider = ScriptedProvider([
            tool_calls(call("same", "echo", text="a"), call("same", "echo", text="b")),
        ])
        outcome = await make_loop(provider, make_registry(RecordingEcho())).run(conversation, "go")

        assert outcome.state == AgentLoopState.FAILED
        assert outcome.reason == "ContractViolation"
        assert echo_log == []

    @pytest.mark.asyncio
    async def test_context_budget_exceeded_fails(self, conversation):
        provider = ScriptedProvider([text("unused")])
        loop = make_loop(provider, limits=fast_limits(context_budget=10), instructions="x" * 400)

        outcome = await loop.run(conversation, "hi")

        assert outcome.state == AgentLoopState.FAILED
        assert outcome.reason == "ContextBudgetExceeded"
        assert provider.calls == 0
        assert outcome.transitions == [AgentLoopState.BUILDING_CONTEXT, AgentLoopState.FAILED]

    @pytest.mark.asyncio
    async def test_stop_event_stops_at_turn_boundary(self, conversation):
        stop = asyncio.Event()

        def stop_after_tools(request):
            stop.set()
            return tool_calls(call("1", "echo", text="committed"))

        provider = ScriptedProvider([stop_after_tools, text("never")])
        outcome = await make_loop(provider, make_registry(EchoTool())).run(conversation, "go", stop_event=stop)

        assert outcome.state == AgentLoopState.FAILED
        assert outcome.reason == "Cancelled"
        assert [m.content for m in tool_messages(conversation)] == ["committed"]
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_stop_event_ends_transient_retries(self, conversation):
        stop = asyncio.Event()

        def overloaded_then_stop(request):
            stop.set()
            return transient()

        provider = ScriptedProvider([overloaded_then_stop, text("never")])
        outcome = await make_loop(provider).run(conversation, "hi", stop_event=stop)

        assert outcome.state == AgentLoopState.FAILED
        assert outcome.reason == "Cancelled"
        assert provider.calls == 1


# ─── 5. Memory ──────────────────────────────────────────────────────────

class TestMemory:

    @pytest.mark.asyncio
    async def test_answer_written_to_memory(self, conversation, tmp_path):
        store = MemoryStore(tmp_path / "memory")
        provider = ScriptedProvider([text("Paris")])

        await make_loop(provider, memory=store).run(conversation, "capital of France?")

        records = await store.records(conversation.id)
        assert [(r.key, r.value) for r in records] == [
            ("user", "capital of France?"),
            ("assistant", "Paris"),
        ]

    @pytest.mark.asyncio
    async def test_memory_snapshot_reaches_model(self, conversation, tmp_path):
        store = MemoryStore(tmp_path / "memory")
        provider = ScriptedProvider([text("Paris"), text("Still Paris")])
        loop = make_loop(provider, memory=store)

        await loop.run(conversation, "capital of France?")
        await loop.run(conversation, "remind me about France")

        memory_messages = [
            m for m in provider.requests[1].messages
            if m.role == Role.SYSTEM and "Relevant Memory" in m.content
        ]
        assert memory_messages
        assert "Paris" in memory_messages[0].content

    @pytest.mark.asyncio
    async def test_failed_cycle_writes_no_memory(self, conversation, tmp_path):
        store = MemoryStore(tmp_path / "memory")
        provider = ScriptedProvider([fatal()])

        await make_loop(provider, memory=store).run(conversation, "hi")

        assert await store.count(conversation.id) == 0

    @pytest.mark.asyncio
    async def test_failed_memory_write_keeps_answer_out_of_history(self, conversation):
        class BrokenDisk(MemoryStore):
            async def put_many(self, records):
                raise OSError("disk full")

        store = BrokenDisk()
        provider = ScriptedProvider([text("Paris")])

        outcome = await make_loop(provider, memory=store).run(conversation, "capital of France?")

        assert outcome.state == AgentLoopState.FAILED
        assert outcome.reason == "OSError"
        assert outcome.content == FAILURE_NOTICE
        assert [m.role for m in conversation.history] == [Role.USER]
        assert conversation.turn_count == 0
        assert await store.count(conversation.id) == 0
