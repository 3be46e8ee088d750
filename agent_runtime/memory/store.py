"""
Memory Store — session-scoped interaction log.

Entries are appended as the agent works (inputs, outputs, state, system
notes) and rendered back into a token-budgeted text block for planning.

Behavioral Contract:
- Append-only per session, oldest entries evicted beyond max_entries
- Token counts are estimates (ceil(len / 4)), computed at write time
- get_context never returns text whose estimate exceeds the budget
"""

import json
import math
import threading
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from pydantic import TypeAdapter

from agent_runtime.errors import FatalConfigurationError
from agent_runtime.models.memory import MemoryEntry, MemoryFilter, MemorySummary, MemoryType
from agent_runtime.persistence.jsonfile import read_json, write_json_atomic

logger = structlog.get_logger(__name__)

_ENTRIES = TypeAdapter(List[MemoryEntry])
_SEPARATOR = "\n\n"


def content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, indent=2, default=str)


def estimate_tokens(content: Any) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(content_text(content)) / 4)


def format_entry(entry: MemoryEntry) -> str:
    return f"[{entry.timestamp.isoformat()}] [{entry.type.value.upper()}]\n{content_text(entry.content)}"


def apply_filter(entries: List[MemoryEntry], memory_filter: Optional[MemoryFilter]) -> List[MemoryEntry]:
    if memory_filter is None:
        return list(entries)
    result = [
        e for e in entries
        if (memory_filter.type is None or e.type == memory_filter.type)
        and (memory_filter.since is None or e.timestamp >= memory_filter.since)
        and (memory_filter.until is None or e.timestamp <= memory_filter.until)
    ]
    if memory_filter.limit is not None:
        result = result[-memory_filter.limit:] if memory_filter.limit > 0 else []
    return result


class MemoryBackend(ABC):
    """Storage for one list of entries per session."""

    @abstractmethod
    def load(self, session_id: str) -> List[MemoryEntry]: ...

    @abstractmethod
    def save(self, session_id: str, entries: List[MemoryEntry]) -> None: ...

    @abstractmethod
    def clear(self, session_id: str) -> None: ...


class InMemoryMemoryBackend(MemoryBackend):

    def __init__(self):
        self._sessions: Dict[str, List[MemoryEntry]] = {}

    def load(self, session_id: str) -> List[MemoryEntry]:
        return list(self._sessions.get(session_id, []))

    def save(self, session_id: str, entries: List[MemoryEntry]) -> None:
        self._sessions[session_id] = list(entries)

    def clear(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)


class FileMemoryBackend(MemoryBackend):
    """One `<session_id>.json` array per session under `base_path`."""

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self.base_path / f"{session_id}.json"

    def load(self, session_id: str) -> List[MemoryEntry]:
        return _ENTRIES.validate_python(read_json(self._path(session_id), []))

    def save(self, session_id: str, entries: List[MemoryEntry]) -> None:
        write_json_atomic(self._path(session_id), _ENTRIES.dump_python(entries, mode="json"))

    def clear(self, session_id: str) -> None:
        self._path(session_id).unlink(missing_ok=True)


class MemoryStore:
    """Session memory with token-budgeted context rendering."""

    def __init__(
        self,
        backend: Optional[MemoryBackend] = None,
        session_id: Optional[str] = None,
        max_entries: int = 100,
        max_tokens: int = 4000,
    ):
        self.backend = backend or InMemoryMemoryBackend()
        self.session_id = session_id or f"session_{uuid4().hex[:12]}"
        self.max_entries = max_entries
        self.max_tokens = max_tokens
        self._lock = threading.Lock()

    def add_memory(
        self,
        memory_type: MemoryType,
        content: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        entry = MemoryEntry(
            id=f"mem_{uuid4().hex[:12]}",
            session_id=self.session_id,
            type=memory_type,
            content=content,
            timestamp=datetime.now(timezone.utc),
            tokens=estimate_tokens(content),
            metadata=metadata,
        )
        with self._lock:
            entries = self.backend.load(self.session_id)
            entries.append(entry)
            if len(entries) > self.max_entries:
                evicted = len(entries) - self.max_entries
                entries = entries[evicted:]
                logger.debug("memory_evicted", session_id=self.session_id, count=evicted)
            self.backend.save(self.session_id, entries)
        return entry.id

    def add_input(self, content: Any, metadata: Optional[Dict[str, Any]] = None) -> str:
        return self.add_memory(MemoryType.INPUT, content, metadata)

    def add_output(self, content: Any, metadata: Optional[Dict[str, Any]] = None) -> str:
        return self.add_memory(MemoryType.OUTPUT, content, metadata)

    def add_state(self, content: Any, metadata: Optional[Dict[str, Any]] = None) -> str:
        return self.add_memory(MemoryType.STATE, content, metadata)

    def add_system(self, content: Any, metadata: Optional[Dict[str, Any]] = None) -> str:
        return self.add_memory(MemoryType.SYSTEM, content, metadata)

    def get_history(self, memory_filter: Optional[MemoryFilter] = None) -> List[MemoryEntry]:
        return apply_filter(self.backend.load(self.session_id), memory_filter)

    def get_recent(self, limit: int = 10) -> List[MemoryEntry]:
        return self.get_history(MemoryFilter(limit=limit))

    def get_by_type(self, memory_type: MemoryType, limit: Optional[int] = None) -> List[MemoryEntry]:
        return self.get_history(MemoryFilter(type=memory_type, limit=limit))

    def get_context(self, max_tokens: Optional[int] = None) -> str:
        """
        Render the most recent entries that fit in `max_tokens`, oldest first.

        Walks backwards from the newest entry and stops at the first one that
        would push the rendered text over budget.
        """
        budget = self.max_tokens if max_tokens is None else max_tokens
        parts: List[str] = []
        for entry in reversed(self.backend.load(self.session_id)):
            candidate = [format_entry(entry)] + parts
            if estimate_tokens(_SEPARATOR.join(candidate)) > budget:
                break
            parts = candidate
        return _SEPARATOR.join(parts)

    def summarize(self) -> MemorySummary:
        entries = self.backend.load(self.session_id)
        counts = Counter(e.type.value for e in entries)
        return MemorySummary(
            session_id=self.session_id,
            total_entries=len(entries),
            total_tokens=sum(
                e.tokens if e.tokens is not None else estimate_tokens(e.content)
                for e in entries
            ),
            counts_by_type=dict(counts),
            first_timestamp=entries[0].timestamp if entries else None,
            last_timestamp=entries[-1].timestamp if entries else None,
        )

    def clear(self) -> None:
        with self._lock:
            self.backend.clear(self.session_id)

    def count(self) -> int:
        return len(self.backend.load(self.session_id))


def create_memory_backend(backend: str, path: Optional[str] = None) -> MemoryBackend:
    if backend == "file":
        if not path:
            raise FatalConfigurationError("File memory backend requires a path")
        return FileMemoryBackend(path)
    return InMemoryMemoryBackend()
