"""
Conversation persistence.

Each conversation is stored as ``<sessions_dir>/<channel>_<chat>.jsonl``:
a metadata line followed by one message per line. Saves rewrite the file
through a temp file and ``os.replace``, so a crash never leaves a
half-written session.
"""

import asyncio
import json
import os
import re
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from relay.domain.models import Conversation, Message, conversation_key

logger = structlog.get_logger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.@+-]")


def session_filename(key: str) -> str:
    return _UNSAFE.sub("_", key.replace(":", "_", 1)) + ".jsonl"


class SessionManager:
    """
    Loads, caches and persists conversations.

    Args:
        sessions_dir: Directory for the JSONL files; None keeps sessions in process
        max_cached: Conversations kept in process (least recently used are
            dropped and reloaded from disk on demand); unbounded without ``sessions_dir``
    """

    def __init__(self, sessions_dir: Optional[Path] = None, max_cached: int = 256):
        self.sessions_dir = sessions_dir
        self.max_cached = max_cached
        self._cache: "OrderedDict[str, Conversation]" = OrderedDict()
        if sessions_dir is not None:
            sessions_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.sessions_dir / session_filename(key)

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    def _remember(self, conversation: Conversation) -> None:
        self._cache[conversation.id] = conversation
        self._cache.move_to_end(conversation.id)
        # Without a directory the cache is the only copy.
        if self.sessions_dir is None:
            return
        while len(self._cache) > self.max_cached:
            self._cache.popitem(last=False)

    def get_or_create(self, channel: str, chat_identity: str) -> Conversation:
        key = conversation_key(channel, chat_identity)
        conversation = self._cache.get(key)
        if conversation is None:
            conversation = self._load(channel, chat_identity) or Conversation(
                channel=channel, chat_identity=chat_identity
            )
        self._remember(conversation)
        return conversation

    def _load(self, channel: str, chat_identity: str) -> Optional[Conversation]:
        if self.sessions_dir is None:
            return None
        path = self._path(conversation_key(channel, chat_identity))
        if not path.exists():
            return None

        conversation = Conversation(channel=channel, chat_identity=chat_identity)
        with open(path, "rb") as f:
            for line_no, raw in enumerate(f, start=1):
                try:
                    line = raw.decode("utf-8")
                    if not line.strip():
                        continue
                    data = json.loads(line)
                    if data.get("_type") == "metadata":
                        conversation.created_at = datetime.fromisoformat(data["created_at"])
                        conversation.updated_at = datetime.fromisoformat(data["updated_at"])
                        conversation.turn_count = data.get("turn_count", 0)
                        conversation.metadata = data.get("metadata") or {}
                    else:
                        conversation.history.append(Message.from_dict(data))
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    logger.warning("Skipping unreadable session line", path=str(path), line=line_no, error=str(e))

        logger.debug("Session loaded", key=conversation.id, messages=len(conversation.history))
        return conversation

    def _write(self, conversation: Conversation) -> None:
        path = self._path(conversation.id)
        tmp = path.with_suffix(".jsonl.tmp")
        header = {
            "_type": "metadata",
            "key": conversation.id,
            "created_at": conversation.created_at.isoformat(),
            "updated_at": conversation.updated_at.isoformat(),
            "turn_count": conversation.turn_count,
            "metadata": conversation.metadata,
        }
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(json.dumps(header, ensure_ascii=False) + "\n")
            for message in conversation.history:
                f.write(json.dumps(message.to_dict(), ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    async def save(self, conversation: Conversation) -> None:
        self._remember(conversation)
        if self.sessions_dir is None:
            return
        await asyncio.to_thread(self._write, conversation)

    def clear(self, channel: str, chat_identity: str) -> Conversation:
        """Replace the conversation with an empty one (persisted on next save)."""
        conversation = Conversation(channel=channel, chat_identity=chat_identity)
        self._remember(conversation)
        return conversation

    def delete(self, key: str) -> bool:
        self._cache.pop(key, None)
        if self.sessions_dir is None:
            return False
        path = self._path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Stored sessions, most recently updated first."""
        if self.sessions_dir is None:
            return []
        sessions = []
        for path in self.sessions_dir.glob("*.jsonl"):
            with open(path, "rb") as f:
                first = f.readline()
            try:
                header = json.loads(first.decode("utf-8"))
            except ValueError:
                continue
            if not isinstance(header, dict) or header.get("_type") != "metadata":
                continue
            sessions.append({
                "key": header.get("key", path.stem),
                "created_at": header.get("created_at"),
                "updated_at": header.get("updated_at"),
                "turn_count": header.get("turn_count", 0),
                "path": str(path),
            })
        return sorted(sessions, key=lambda s: s["updated_at"] or "", reverse=True)
