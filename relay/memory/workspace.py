"""
Workspace memory files.

Long-term facts live in ``memory/MEMORY.md``; day-to-day notes go to
``memory/YYYY-MM-DD.md``. Both are plain markdown the agent can also edit
with the filesystem tools.
"""

from datetime import date, timedelta
from pathlib import Path
from typing import List, Optional

import structlog

logger = structlog.get_logger(__name__)


class WorkspaceMemory:
    """Markdown memory files under ``<workspace>/memory``."""

    def __init__(self, workspace: Path):
        self.memory_dir = workspace / "memory"
        self.memory_file = self.memory_dir / "MEMORY.md"

    def _ensure_dir(self) -> None:
        self.memory_dir.mkdir(parents=True, exist_ok=True)

    def today_file(self, today: Optional[date] = None) -> Path:
        return self.memory_dir / f"{(today or date.today()).isoformat()}.md"

    def read_today(self, today: Optional[date] = None) -> str:
        path = self.today_file(today)
        return path.read_text(encoding="utf-8") if path.exists() else ""

    def append_today(self, content: str, today: Optional[date] = None) -> None:
        self._ensure_dir()
        path = self.today_file(today)
        if path.exists():
            text = path.read_text(encoding="utf-8") + "\n" + content
        else:
            text = f"# {(today or date.today()).isoformat()}\n\n{content}"
        path.write_text(text, encoding="utf-8")

    def read_long_term(self) -> str:
        return self.memory_file.read_text(encoding="utf-8") if self.memory_file.exists() else ""

    def write_long_term(self, content: str) -> None:
        self._ensure_dir()
        self.memory_file.write_text(content, encoding="utf-8")

    def list_memory_files(self) -> List[Path]:
        """Daily note files, newest first."""
        if not self.memory_dir.exists():
            return []
        files = [
            p for p in self.memory_dir.glob("????-??-??.md")
            if p.is_file()
        ]
        return sorted(files, key=lambda p: p.name, reverse=True)

    def get_recent_memories(self, days: int = 7, today: Optional[date] = None) -> str:
        today = today or date.today()
        parts = []
        for offset in range(days):
            path = self.today_file(today - timedelta(days=offset))
            if path.exists():
                parts.append(path.read_text(encoding="utf-8"))
        return "\n\n---\n\n".join(parts)

    def get_memory_context(self, today: Optional[date] = None) -> str:
        """Markdown block for the system prompt; empty when nothing is stored."""
        parts = []
        long_term = self.read_long_term()
        if long_term:
            parts.append(f"## Long-term Memory\n\n{long_term}")
        notes = self.read_today(today)
        if notes:
            day = (today or date.today()).isoformat()
            parts.append(f"## Today's Notes ({day})\n\n{notes}")
        if not parts:
            return ""
        return "# Memory\n\n" + "\n\n".join(parts)
