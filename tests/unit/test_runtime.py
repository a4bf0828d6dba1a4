"""Tests for runtime wiring."""

import pytest
import pytest_asyncio

from relay.core.config import DEFAULT_SUBAGENT_TOOLS
from relay.core.exceptions import ConfigurationError
from relay.domain.models import Role
from relay.runtime import build_runtime
from tests.helpers import ScriptedProvider, call, text, tool_calls


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest_asyncio.fixture
async def runtime(test_settings, provider):
    runtime = build_runtime(test_settings, provider=provider)
    yield runtime
    await runtime.aclose()


@pytest.mark.asyncio
async def test_registry_has_every_tool(runtime, test_settings):
    assert runtime.registry.names == sorted(DEFAULT_SUBAGENT_TOOLS + ["spawn"])
    assert runtime.subagents.max_depth == test_settings.SUBAGENT_MAX_DEPTH
    assert test_settings.workspace_path.is_dir()


def test_missing_api_key_rejected(test_settings):
    test_settings.LLM_API_KEY = None

    with pytest.raises(ConfigurationError):
        build_runtime(test_settings)


@pytest.mark.asyncio
async def test_spawn_runs_restricted_subagent(runtime, provider):
    provider.responses.extend([
        tool_calls(call("s1", "spawn", task="count to three", label="counter")),
        text("one two three"),
        text("The subagent counted: one two three"),
    ])

    reply = await runtime.dispatcher.process_direct("please delegate counting")

    assert reply == "The subagent counted: one two three"
    subagent_request = provider.requests[1]
    assert subagent_request.messages[0].content.startswith("# Subagent")
    assert "spawn" not in [d["function"]["name"] for d in subagent_request.tools]

    conversation = runtime.sessions.get_or_create("cli", "direct")
    [result] = [m for m in conversation.history if m.role == Role.TOOL]
    assert result.content == "## Subagent Result\n**Task**: counter\n\none two three"
    assert runtime.subagents.count == 0


@pytest.mark.asyncio
async def test_memory_persisted_under_data_dir(runtime, provider, test_settings):
    provider.responses.append(text("noted"))

    await runtime.dispatcher.process_direct("my name is Ada")

    assert await runtime.memory.count("cli:direct") == 2
    assert list((test_settings.data_path / "memory").glob("*.jsonl"))
    assert (test_settings.data_path / "sessions" / "cli_direct.jsonl").exists()
