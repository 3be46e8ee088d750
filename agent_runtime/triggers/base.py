"""
Trigger contract — sources of events that wake the agent.

A trigger is started with a callback and invokes it once per firing with
a JSON-like payload. Callbacks may be plain functions or coroutines.
"""

import inspect
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from agent_runtime.errors import TriggerError

logger = structlog.get_logger(__name__)

TriggerCallback = Callable[[Dict[str, Any]], Any]
StatusListener = Callable[["Trigger", "TriggerStatus"], Any]


class TriggerStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    EXHAUSTED = "exhausted"     # Finished on its own (e.g. max executions reached)
    ERROR = "error"


async def invoke_callback(callback: TriggerCallback, payload: Dict[str, Any]) -> Any:
    result = callback(payload)
    if inspect.isawaitable(result):
        result = await result
    return result


class Trigger(ABC):

    trigger_type = "trigger"

    def __init__(self):
        self.status = TriggerStatus.IDLE
        self._callback: Optional[TriggerCallback] = None
        self._status_listeners: List[StatusListener] = []

    def is_running(self) -> bool:
        return self.status == TriggerStatus.RUNNING

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    async def start(self, callback: TriggerCallback) -> None:
        if self.is_running():
            raise TriggerError(f"{self.trigger_type} trigger is already running")
        self._callback = callback
        try:
            await self._start(callback)
        except Exception as e:
            self._set_status(TriggerStatus.ERROR)
            raise TriggerError(f"Failed to start {self.trigger_type} trigger: {e}") from e
        self._set_status(TriggerStatus.RUNNING)

    async def stop(self) -> None:
        """Idempotent; an exhausted trigger keeps its status."""
        if self.status in (TriggerStatus.IDLE, TriggerStatus.STOPPED):
            return
        await self._stop()
        if self.status != TriggerStatus.EXHAUSTED:
            self._set_status(TriggerStatus.STOPPED)

    def describe(self) -> Dict[str, Any]:
        return {"type": self.trigger_type, "status": self.status.value}

    @abstractmethod
    async def _start(self, callback: TriggerCallback) -> None: ...

    @abstractmethod
    async def _stop(self) -> None: ...

    def _set_status(self, status: TriggerStatus) -> None:
        if status == self.status:
            return
        self.status = status
        for listener in list(self._status_listeners):
            listener(self, status)
