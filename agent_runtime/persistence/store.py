"""
Persistence — durable record of trigger events and execution attempts.

Behavioral Contract:
- EventEntries are never mutated after save
- An ActionEntry is saved pending and completed exactly once
- The file backend rewrites its JSON arrays atomically on every mutation,
  so a crash never leaves a partially written file behind
- A mutation whose write fails leaves the in-memory log unchanged
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from pydantic import TypeAdapter

from agent_runtime.errors import FatalConfigurationError, ValidationError
from agent_runtime.models.action import Action, ExecutionResult
from agent_runtime.models.storage import (
    ActionEntry,
    ActionStatus,
    EventEntry,
    History,
    HistoryFilter,
)
from agent_runtime.persistence.jsonfile import read_json, write_json_atomic

logger = structlog.get_logger(__name__)

_EVENTS = TypeAdapter(List[EventEntry])
_ACTIONS = TypeAdapter(List[ActionEntry])


def _apply(entries: List[Any], history_filter: Optional[HistoryFilter]) -> List[Any]:
    if history_filter is None:
        return list(entries)
    result = [e for e in entries if history_filter.matches(e)]
    if history_filter.limit is not None:
        result = result[-history_filter.limit:] if history_filter.limit > 0 else []
    return result


class Persistence(ABC):
    """
    Event and action log for one agent.

    Subclasses keep `_events` / `_actions` in memory and decide how (and
    whether) to write them through in `_commit`.
    """

    def __init__(self, agent_id: Optional[str] = None):
        self.agent_id = agent_id
        self._events: List[EventEntry] = []
        self._actions: List[ActionEntry] = []
        self._lock = threading.Lock()

    @abstractmethod
    def _commit(
        self,
        events: Optional[List[EventEntry]] = None,
        actions: Optional[List[ActionEntry]] = None,
    ) -> None:
        """
        Write through the candidate collections. Caller holds the lock and
        adopts the candidates only if this returns.
        """

    def save_event(self, event: Any, metadata: Optional[Dict[str, Any]] = None) -> EventEntry:
        entry = EventEntry(
            id=f"evt_{uuid4().hex[:12]}",
            event=event,
            timestamp=datetime.now(timezone.utc),
            agent_id=self.agent_id,
            metadata=metadata,
        )
        with self._lock:
            events = self._events + [entry]
            self._commit(events=events)
            self._events = events
        return entry

    def save_action(
        self,
        action: Action,
        result: Optional[ExecutionResult] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ActionEntry:
        """Record an execution attempt. Pending unless a result is given."""
        entry = ActionEntry(
            id=f"act_{uuid4().hex[:12]}",
            action=action,
            timestamp=datetime.now(timezone.utc),
            agent_id=self.agent_id,
            metadata=metadata,
        )
        if result is not None:
            entry.complete(result)
        with self._lock:
            actions = self._actions + [entry]
            self._commit(actions=actions)
            self._actions = actions
        return entry

    def complete_action(self, entry_id: str, result: ExecutionResult) -> ActionEntry:
        """Move a pending entry to its terminal status."""
        with self._lock:
            index = next(
                (i for i, a in enumerate(self._actions) if a.id == entry_id), None
            )
            if index is None:
                raise ValidationError(f"Unknown action entry: {entry_id}")
            entry = self._actions[index].model_copy(deep=True)
            entry.complete(result)
            actions = list(self._actions)
            actions[index] = entry
            self._commit(actions=actions)
            self._actions = actions
        return entry

    def get_history(self) -> History:
        with self._lock:
            return History(events=list(self._events), actions=list(self._actions))

    def get_events(self, history_filter: Optional[HistoryFilter] = None) -> List[EventEntry]:
        with self._lock:
            return _apply(self._events, history_filter)

    def get_actions(self, history_filter: Optional[HistoryFilter] = None) -> List[ActionEntry]:
        with self._lock:
            return _apply(self._actions, history_filter)

    def get_recent_actions(self, limit: int = 10) -> List[ActionEntry]:
        return self.get_actions(HistoryFilter(limit=limit))

    def size(self) -> Dict[str, int]:
        with self._lock:
            return {"events": len(self._events), "actions": len(self._actions)}

    def clear(self) -> None:
        with self._lock:
            self._commit(events=[], actions=[])
            self._events = []
            self._actions = []

    def flush(self) -> None:
        with self._lock:
            self._commit(events=self._events, actions=self._actions)


class InMemoryPersistence(Persistence):
    """Process-lifetime storage. Nothing survives a restart."""

    def _commit(
        self,
        events: Optional[List[EventEntry]] = None,
        actions: Optional[List[ActionEntry]] = None,
    ) -> None:
        pass


class FilePersistence(Persistence):
    """`events.json` and `actions.json` under `directory`."""

    def __init__(self, directory: str, agent_id: Optional[str] = None):
        super().__init__(agent_id=agent_id)
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.events_path = self.directory / "events.json"
        self.actions_path = self.directory / "actions.json"
        self._events = _EVENTS.validate_python(read_json(self.events_path, []))
        self._actions = _ACTIONS.validate_python(read_json(self.actions_path, []))
        logger.info(
            "persistence_loaded",
            directory=str(self.directory),
            events=len(self._events),
            actions=len(self._actions),
        )

    def _commit(
        self,
        events: Optional[List[EventEntry]] = None,
        actions: Optional[List[ActionEntry]] = None,
    ) -> None:
        # Serialize both before writing either
        writes = []
        if events is not None:
            writes.append((self.events_path, _serialize(_EVENTS, events)))
        if actions is not None:
            writes.append((self.actions_path, _serialize(_ACTIONS, actions)))
        for path, data in writes:
            write_json_atomic(path, data)


def _serialize(adapter: TypeAdapter, entries: List[Any]) -> Any:
    try:
        return adapter.dump_python(entries, mode="json")
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Record is not JSON serializable: {e}") from e


def create_persistence(
    backend: str = "memory",
    path: Optional[str] = None,
    agent_id: Optional[str] = None,
) -> Persistence:
    if backend == "file":
        if not path:
            raise FatalConfigurationError("File persistence requires a directory")
        return FilePersistence(path, agent_id=agent_id)
    return InMemoryPersistence(agent_id=agent_id)


def pending_actions(persistence: Persistence) -> List[ActionEntry]:
    return persistence.get_actions(HistoryFilter(status=ActionStatus.PENDING))
