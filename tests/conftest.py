"""Test configuration and fixtures."""

import pytest
import structlog

from relay.core.config import Settings
from relay.domain.models import Conversation


@pytest.fixture(autouse=True)
def configure_structlog():
    """Keep log output readable in test runs."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def conversation():
    return Conversation(channel="test", chat_identity="chat-1")


@pytest.fixture
def test_settings(tmp_path):
    """Settings isolated from the environment's .env file."""
    return Settings(
        _env_file=None,
        WORKSPACE_DIR=str(tmp_path / "workspace"),
        DATA_DIR=str(tmp_path / "data"),
        RETRY_BACKOFF=0.0,
        LLM_API_KEY="test-key",
    )
