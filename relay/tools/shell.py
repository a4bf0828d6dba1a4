"""
Command execution tool.

Commands are split with shlex and started with create_subprocess_exec, so
no shell interprets them. A deny list rejects destructive commands before
anything runs; on timeout the whole process group is killed.
"""

import asyncio
import os
import re
import shlex
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from relay.capabilities.base import ToolCapability, ToolContext, optional_string, require_string
from relay.core.exceptions import ToolExecutionError
from relay.tools.filesystem import resolve_path

logger = structlog.get_logger(__name__)

MAX_OUTPUT_LEN = 10000


@dataclass
class CommandResult:
    """Result of a command execution"""
    stdout: str
    stderr: str
    return_code: int
    duration_seconds: float
    timed_out: bool = False

    def render(self) -> str:
        parts = []
        if self.stdout:
            parts.append(self.stdout)
        if self.stderr.strip():
            parts.append(f"STDERR:\n{self.stderr}")
        if self.timed_out:
            parts.append(f"Command timed out after {self.duration_seconds:.1f}s")
        elif self.return_code != 0:
            parts.append(f"\nExit code: {self.return_code}")

        output = "\n".join(parts) if parts else "(no output)"
        if len(output) > MAX_OUTPUT_LEN:
            extra = len(output) - MAX_OUTPUT_LEN
            output = output[:MAX_OUTPUT_LEN] + f"\n... (truncated, {extra} more chars)"
        return output


class ExecTool(ToolCapability):
    """Run a command and return its combined output."""

    name = "exec"
    description = (
        "Execute a command and return its output. The command is not run "
        "through a shell, so pipes and redirection are unavailable. Use with caution."
    )

    DEFAULT_DENY_PATTERNS = [
        r"\brm\s+-[rf]{1,2}\b",
        r"\bdel\s+/[fq]\b",
        r"\brmdir\s+/s\b",
        r"\b(format|mkfs|diskpart)\b",
        r"\bdd\s+if=",
        r">\s*/dev/sd",
        r"\b(shutdown|reboot|poweroff)\b",
        r":\(\)\s*\{.*\};\s*:",
    ]

    def __init__(
        self,
        working_dir: Optional[Path] = None,
        timeout_seconds: float = 60.0,
        restrict_to_workspace: bool = False,
        deny_patterns: Optional[List[str]] = None,
        allowed_commands: Optional[List[str]] = None,
    ):
        self.working_dir = working_dir
        self.timeout_seconds = timeout_seconds
        self.restrict_to_workspace = restrict_to_workspace
        self.deny_patterns = [
            re.compile(p, re.IGNORECASE) for p in (deny_patterns or self.DEFAULT_DENY_PATTERNS)
        ]
        self.allowed_commands = allowed_commands
        # Leave headroom so the process timeout fires before the registry's.
        self.timeout = timeout_seconds + 5

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The command to execute"},
                "working_dir": {
                    "type": "string",
                    "description": "Optional working directory for the command",
                },
            },
            "required": ["command"],
        }

    def _validate_command(self, command: str) -> List[str]:
        for pattern in self.deny_patterns:
            if pattern.search(command):
                raise ToolExecutionError("Command blocked by safety guard (dangerous pattern detected)")

        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise ToolExecutionError(f"Could not parse command: {e}") from e
        if not argv:
            raise ToolExecutionError("Empty command is not allowed")
        if self.allowed_commands is not None and argv[0] not in self.allowed_commands:
            raise ToolExecutionError(f"Command '{argv[0]}' not in allowed list")

        if self.restrict_to_workspace and self.working_dir is not None:
            for arg in argv[1:]:
                if "../" in arg or arg.startswith("/"):
                    resolve_path(arg, self.working_dir, self.working_dir)
        return argv

    async def run(self, command: str, working_dir: Optional[Path] = None) -> CommandResult:
        argv = self._validate_command(command)
        cwd = working_dir or self.working_dir or Path.cwd()
        cwd.mkdir(parents=True, exist_ok=True)

        start_time = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                start_new_session=os.name != "nt",
            )
        except FileNotFoundError as e:
            raise ToolExecutionError(f"Command not found: {argv[0]}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
            timed_out = False
        except asyncio.TimeoutError:
            self._kill(process)
            stdout, stderr = await process.communicate()
            timed_out = True
        except asyncio.CancelledError:
            self._kill(process)
            raise

        return CommandResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            return_code=process.returncode if process.returncode is not None else -1,
            duration_seconds=time.monotonic() - start_time,
            timed_out=timed_out,
        )

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            if os.name != "nt":
                os.killpg(os.getpgid(process.pid), signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            pass

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        command = require_string(arguments, "command")
        working_dir = optional_string(arguments, "working_dir")
        cwd = None
        if working_dir:
            allowed = self.working_dir if self.restrict_to_workspace else None
            cwd = resolve_path(working_dir, self.working_dir, allowed)

        logger.info("Executing command", command=command, conversation_id=context.conversation_id)
        result = await self.run(command, cwd)
        return result.render()
