from pydantic_settings import BaseSettings
from pydantic import ConfigDict, computed_field, field_validator
from typing import List, Optional
from pathlib import Path


DEFAULT_SUBAGENT_TOOLS = [
    "read_file",
    "write_file",
    "edit_file",
    "list_dir",
    "exec",
    "calculator",
    "web_search",
    "web_fetch",
]


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "relay"
    AGENT_NAME: str = "relay"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"  # console | json

    # Agent loop
    MAX_TURNS: int = 20
    TOOL_TIMEOUT: float = 60.0
    MODEL_CALL_TIMEOUT: float = 120.0
    TOOL_CONCURRENCY_LIMIT: int = 4
    CONTEXT_BUDGET: int = 24000  # estimated tokens
    HISTORY_LIMIT: int = 50

    # Provider retries
    RETRY_COUNT: int = 3
    RETRY_BACKOFF: float = 1.0
    RETRY_BACKOFF_MAX: float = 30.0

    # Subagents
    SUBAGENT_MAX_DEPTH: int = 1
    SUBAGENT_CONCURRENCY_LIMIT: int = 4
    SUBAGENT_OVERFLOW_POLICY: str = "fail_fast"  # fail_fast | block
    SUBAGENT_MAX_TURNS: int = 15
    SUBAGENT_TIMEOUT: float = 600.0
    SUBAGENT_TOOLS: List[str] = DEFAULT_SUBAGENT_TOOLS

    # LLM provider (OpenAI-compatible)
    LLM_API_BASE: str = "https://openrouter.ai/api/v1"
    LLM_API_KEY: Optional[str] = None
    LLM_MODEL: str = "anthropic/claude-sonnet-4"
    LLM_MAX_TOKENS: int = 8192
    LLM_TEMPERATURE: float = 0.7

    # Workspace and storage
    WORKSPACE_DIR: str = "~/.relay/workspace"
    DATA_DIR: str = "~/.relay"
    RESTRICT_TO_WORKSPACE: bool = False

    # Tools
    EXEC_TIMEOUT: float = 60.0
    BRAVE_API_KEY: Optional[str] = None

    # Memory
    MEMORY_SCOPE_CAP: int = 500
    MEMORY_RETENTION_TURNS: int = 10
    MEMORY_SEARCH_LIMIT: int = 5

    # Runtime
    BUS_BUFFER_SIZE: int = 100
    SHUTDOWN_GRACE: float = 30.0
    CACHED_CONVERSATIONS: int = 256  # sessions and memory scopes kept loaded

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="allow"
    )

    @field_validator(
        "MAX_TURNS",
        "TOOL_CONCURRENCY_LIMIT",
        "CONTEXT_BUDGET",
        "SUBAGENT_CONCURRENCY_LIMIT",
        "SUBAGENT_MAX_TURNS",
        "MEMORY_SCOPE_CAP",
        "MEMORY_SEARCH_LIMIT",
        "BUS_BUFFER_SIZE",
        "CACHED_CONVERSATIONS",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("SUBAGENT_MAX_DEPTH", "RETRY_COUNT", "MEMORY_RETENTION_TURNS")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("TOOL_TIMEOUT", "MODEL_CALL_TIMEOUT", "SUBAGENT_TIMEOUT", "EXEC_TIMEOUT")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout must be positive")
        return value

    @field_validator("SUBAGENT_OVERFLOW_POLICY")
    @classmethod
    def _overflow_policy(cls, value: str) -> str:
        if value not in ("fail_fast", "block"):
            raise ValueError("must be 'fail_fast' or 'block'")
        return value

    @field_validator("LOG_FORMAT")
    @classmethod
    def _log_format(cls, value: str) -> str:
        if value not in ("console", "json"):
            raise ValueError("must be 'console' or 'json'")
        return value

    @computed_field
    @property
    def workspace_path(self) -> Path:
        return Path(self.WORKSPACE_DIR).expanduser()

    @computed_field
    @property
    def data_path(self) -> Path:
        return Path(self.DATA_DIR).expanduser()
