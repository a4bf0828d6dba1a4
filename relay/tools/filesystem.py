"""
Filesystem tools: read, write, edit and list.

Paths expand ``~``; relative paths resolve against the workspace. When an
allowed directory is configured, every resolved path must stay inside it.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from relay.capabilities.base import ToolCapability, ToolContext, require_string
from relay.core.exceptions import ToolExecutionError

logger = structlog.get_logger(__name__)


def resolve_path(path: str, workspace: Optional[Path] = None, allowed_dir: Optional[Path] = None) -> Path:
    resolved = Path(path).expanduser()
    if not resolved.is_absolute() and workspace is not None:
        resolved = workspace / resolved
    resolved = resolved.resolve()

    if allowed_dir is not None:
        root = allowed_dir.expanduser().resolve()
        if resolved != root and root not in resolved.parents:
            raise ToolExecutionError(f"Access denied: path {path} is outside allowed directory")
    return resolved


class _FilesystemTool(ToolCapability):
    def __init__(self, workspace: Optional[Path] = None, allowed_dir: Optional[Path] = None):
        self.workspace = workspace
        self.allowed_dir = allowed_dir

    def _resolve(self, path: str) -> Path:
        return resolve_path(path, self.workspace, self.allowed_dir)


class ReadFileTool(_FilesystemTool):
    name = "read_file"
    description = "Read the contents of a file at the given path."

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to read"},
            },
            "required": ["path"],
        }

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        path = self._resolve(require_string(arguments, "path"))
        if not path.exists():
            raise ToolExecutionError(f"File not found: {path}")
        if not path.is_file():
            raise ToolExecutionError(f"Not a file: {path}")
        return path.read_text(encoding="utf-8", errors="replace")


class WriteFileTool(_FilesystemTool):
    name = "write_file"
    description = "Write content to a file at the given path. Creates parent directories if needed."

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to write to"},
                "content": {"type": "string", "description": "The content to write"},
            },
            "required": ["path", "content"],
        }

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        path = self._resolve(require_string(arguments, "path"))
        content = require_string(arguments, "content")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info("File written", path=str(path), bytes=len(content.encode("utf-8")))
        return f"Successfully wrote {len(content)} characters to {path}"


class EditFileTool(_FilesystemTool):
    name = "edit_file"
    description = (
        "Edit a file by replacing old_text with new_text. "
        "The old_text must appear exactly once in the file."
    )

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The file path to edit"},
                "old_text": {"type": "string", "description": "The exact text to find and replace"},
                "new_text": {"type": "string", "description": "The text to replace with"},
            },
            "required": ["path", "old_text", "new_text"],
        }

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        path = self._resolve(require_string(arguments, "path"))
        old_text = require_string(arguments, "old_text")
        new_text = require_string(arguments, "new_text")
        if not path.is_file():
            raise ToolExecutionError(f"File not found: {path}")

        content = path.read_text(encoding="utf-8")
        occurrences = content.count(old_text)
        if occurrences == 0:
            raise ToolExecutionError("old_text not found in file. Make sure it matches exactly.")
        if occurrences > 1:
            raise ToolExecutionError(
                f"old_text appears {occurrences} times. Please provide more context to make it unique."
            )

        path.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
        return f"Successfully edited {path}"


class ListDirTool(_FilesystemTool):
    name = "list_dir"
    description = "List the contents of a directory."

    @property
    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The directory path to list"},
            },
            "required": ["path"],
        }

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> str:
        path = self._resolve(require_string(arguments, "path"))
        if not path.exists():
            raise ToolExecutionError(f"Directory not found: {path}")
        if not path.is_dir():
            raise ToolExecutionError(f"Not a directory: {path}")

        entries = []
        for entry in sorted(path.iterdir(), key=lambda p: p.name):
            prefix = "📁 " if entry.is_dir() else "📄 "
            entries.append(prefix + entry.name)
        if not entries:
            return f"Directory {path} is empty"
        return "\n".join(entries)
