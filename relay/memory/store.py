"""
Memory Store

Append-only record log per conversation scope with a keyword + recency
index. Each scope persists to its own JSONL file; a record reaches memory
only after its line has been flushed and fsynced, so a crash leaves either
the whole record or nothing. Unreadable lines (torn writes, invalid UTF-8)
are skipped on load.
"""

import asyncio
import hashlib
import json
import os
import re
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

import structlog

from relay.domain.models import MemoryRecord

logger = structlog.get_logger(__name__)

_WORD = re.compile(r"\w+")
_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def tokenize(text: str) -> Set[str]:
    return {w for w in _WORD.findall(text.lower()) if len(w) > 1}


@dataclass
class _ScopeLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class MemoryStore:
    """
    Durable, scope-partitioned memory.

    Args:
        root: Directory for the JSONL logs; None keeps everything in process
        scope_cap: Maximum records kept per scope before eviction
        retention_turns: Records from this many most recent turns are never evicted
        max_cached_scopes: Scopes kept loaded in process (least recently used
            are dropped and reloaded from disk on demand); unbounded without ``root``
    """

    def __init__(
        self,
        root: Optional[Path] = None,
        scope_cap: int = 500,
        retention_turns: int = 10,
        max_cached_scopes: int = 256,
    ):
        self.root = root
        self.scope_cap = scope_cap
        self.retention_turns = retention_turns
        self.max_cached_scopes = max_cached_scopes
        self._records: "OrderedDict[str, List[MemoryRecord]]" = OrderedDict()
        self._locks: Dict[str, _ScopeLock] = {}
        if root is not None:
            root.mkdir(parents=True, exist_ok=True)

    @property
    def cached_scopes(self) -> int:
        return len(self._records)

    @asynccontextmanager
    async def _locked(self, scope: str):
        entry = self._locks.get(scope)
        if entry is None:
            entry = self._locks[scope] = _ScopeLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(scope, None)

    def _path(self, scope: str) -> Path:
        digest = hashlib.sha1(scope.encode("utf-8")).hexdigest()[:8]
        return self.root / f"{_UNSAFE.sub('_', scope)}-{digest}.jsonl"

    def _load(self, scope: str) -> List[MemoryRecord]:
        if scope in self._records:
            self._records.move_to_end(scope)
            return self._records[scope]

        records: List[MemoryRecord] = []
        if self.root is not None and self._path(scope).exists():
            with open(self._path(scope), "rb") as f:
                for line_no, raw in enumerate(f, start=1):
                    try:
                        line = raw.decode("utf-8")
                        if not line.strip():
                            continue
                        records.append(MemoryRecord.from_dict(json.loads(line)))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning("Skipping unreadable memory line", scope=scope, line=line_no, error=str(e))
        self._records[scope] = records
        self._trim_cache()
        return records

    def _trim_cache(self) -> None:
        # Without a root the cache is the only copy.
        if self.root is None:
            return
        while len(self._records) > self.max_cached_scopes:
            scope, _ = self._records.popitem(last=False)
            logger.debug("Memory scope unloaded", scope=scope)

    @staticmethod
    def _append_lines(path: Path, lines: str) -> None:
        with open(path, "a", encoding="utf-8") as f:
            f.write(lines)
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _rewrite(path: Path, records: List[MemoryRecord]) -> None:
        tmp = path.with_suffix(".jsonl.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    async def put(self, record: MemoryRecord) -> MemoryRecord:
        """Append a record; on failure nothing is stored."""
        await self.put_many([record])
        return record

    async def put_many(self, records: Sequence[MemoryRecord]) -> None:
        """
        Append records of one scope in a single write.

        Either every record is committed or none is.
        """
        if not records:
            return
        scope = records[0].conversation_scope
        if any(r.conversation_scope != scope for r in records):
            raise ValueError("put_many records must share one scope")
        lines = "".join(json.dumps(r.to_dict(), ensure_ascii=False) + "\n" for r in records)

        async with self._locked(scope):
            stored = self._load(scope)
            if self.root is not None:
                await asyncio.to_thread(self._append_lines, self._path(scope), lines)
            stored.extend(records)
            if len(stored) > self.scope_cap:
                try:
                    await self._evict(scope, stored)
                except OSError as e:
                    # The records themselves are committed; compaction retries on the next put.
                    logger.error("Memory compaction failed", scope=scope, error=str(e))

        logger.debug("Memory records stored", scope=scope, count=len(records), turn=records[-1].turn)

    async def _evict(self, scope: str, records: List[MemoryRecord]) -> None:
        latest_turn = max(r.turn for r in records)
        protected_from = latest_turn - self.retention_turns + 1
        excess = len(records) - self.scope_cap

        kept: List[MemoryRecord] = []
        evicted = 0
        for record in records:
            if evicted < excess and record.turn < protected_from:
                evicted += 1
                continue
            kept.append(record)

        if not evicted:
            return
        if self.root is not None:
            await asyncio.to_thread(self._rewrite, self._path(scope), kept)
        records[:] = kept
        logger.info("Memory evicted", scope=scope, evicted=evicted, remaining=len(kept))

    async def search(self, scope: str, query: str, limit: int = 5) -> List[MemoryRecord]:
        """
        Records ranked by keyword overlap, then recency.

        Records without any overlap follow the matches, newest first, so an
        empty query returns the most recent records.
        """
        if limit <= 0:
            return []
        async with self._locked(scope):
            records = list(self._load(scope))

        terms = tokenize(query)
        scored = []
        for position, record in enumerate(records):
            score = len(terms & tokenize(f"{record.key or ''} {record.value}")) if terms else 0
            scored.append((score, position, record))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [record for _, _, record in scored[:limit]]

    async def records(self, scope: str) -> List[MemoryRecord]:
        """All stored records of a scope, oldest first."""
        async with self._locked(scope):
            return list(self._load(scope))

    async def count(self, scope: str) -> int:
        return len(await self.records(scope))
