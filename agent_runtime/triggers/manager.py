"""
Trigger Manager — registry of an agent's triggers and their lifecycle.

Behavioral Contract:
- A registration fires only while enabled and only when all of its
  conditions match the payload
- Manual firing requires a known, enabled registration and bypasses conditions
- `last_triggered_at` moves on every firing that reaches the callback
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

import structlog

from agent_runtime.conditions import Condition, all_match
from agent_runtime.errors import TriggerError
from agent_runtime.triggers.base import Trigger, invoke_callback

logger = structlog.get_logger(__name__)


class TriggerRegistration:
    """A trigger plus the goal its events should be planned against."""

    def __init__(
        self,
        trigger_id: str,
        trigger: Trigger,
        goal: Optional[Any] = None,
        enabled: bool = True,
        conditions: Optional[Sequence[Condition]] = None,
    ):
        self.id = trigger_id
        self.trigger = trigger
        self.goal = goal
        self.enabled = enabled
        self.conditions: List[Condition] = list(conditions or [])
        self.last_triggered_at: Optional[datetime] = None

    def accepts(self, payload: Any) -> bool:
        return all_match(self.conditions, payload)

    def describe(self) -> Dict[str, Any]:
        return dict(
            self.trigger.describe(),
            id=self.id,
            enabled=self.enabled,
            goal=self.goal,
            conditions=[c.model_dump(mode="json") for c in self.conditions],
            last_triggered_at=(
                self.last_triggered_at.isoformat() if self.last_triggered_at else None
            ),
        )


RegistrationCallback = Callable[[TriggerRegistration, Dict[str, Any]], Any]


class TriggerManager:

    def __init__(self):
        self._registrations: Dict[str, TriggerRegistration] = {}
        self._callback: Optional[RegistrationCallback] = None

    @property
    def count(self) -> int:
        return len(self._registrations)

    def register(
        self,
        trigger: Trigger,
        trigger_id: Optional[str] = None,
        goal: Optional[Any] = None,
        enabled: bool = True,
        conditions: Optional[Sequence[Condition]] = None,
    ) -> str:
        trigger_id = trigger_id or f"trg_{uuid4().hex[:12]}"
        if trigger_id in self._registrations:
            raise TriggerError(f"Trigger {trigger_id} is already registered")
        self._registrations[trigger_id] = TriggerRegistration(
            trigger_id, trigger, goal, enabled, conditions
        )
        return trigger_id

    async def unregister(self, trigger_id: str) -> bool:
        registration = self._registrations.pop(trigger_id, None)
        if registration is None:
            return False
        await registration.trigger.stop()
        return True

    async def enable(self, trigger_id: str) -> None:
        registration = self._get_or_raise(trigger_id)
        registration.enabled = True
        if self._callback is not None and not registration.trigger.is_running():
            await self._start(registration)

    async def disable(self, trigger_id: str) -> None:
        """Stop without unregistering."""
        registration = self._get_or_raise(trigger_id)
        registration.enabled = False
        await registration.trigger.stop()

    async def fire(self, trigger_id: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """Fire a registration by hand, as if its trigger had produced `payload`."""
        registration = self._get_or_raise(trigger_id)
        if not registration.enabled:
            raise TriggerError(f"Trigger is disabled: {trigger_id}")
        if self._callback is None:
            raise TriggerError("Triggers are not running")
        return await self._dispatch(registration, payload or {})

    async def start_all(self, callback: RegistrationCallback) -> None:
        """Start every enabled trigger. Failures are logged, not fatal."""
        self._callback = callback
        for registration in list(self._registrations.values()):
            if registration.enabled and not registration.trigger.is_running():
                try:
                    await self._start(registration)
                except TriggerError as e:
                    logger.error("trigger_start_failed", trigger_id=registration.id, error=str(e))

    async def stop_all(self) -> None:
        self._callback = None
        for registration in list(self._registrations.values()):
            await registration.trigger.stop()

    async def cleanup(self) -> None:
        await self.stop_all()
        self._registrations.clear()

    def get(self, trigger_id: str) -> Optional[TriggerRegistration]:
        return self._registrations.get(trigger_id)

    def list(self) -> List[TriggerRegistration]:
        return list(self._registrations.values())

    async def _start(self, registration: TriggerRegistration) -> None:
        async def on_fire(payload: Dict[str, Any]) -> Any:
            if not registration.enabled:
                return None
            if not registration.accepts(payload):
                logger.debug("trigger_conditions_unmet", trigger_id=registration.id)
                return None
            return await self._dispatch(registration, payload)

        await registration.trigger.start(on_fire)
        logger.info(
            "trigger_started", trigger_id=registration.id, type=registration.trigger.trigger_type
        )

    async def _dispatch(self, registration: TriggerRegistration, payload: Dict[str, Any]) -> Any:
        callback = self._callback
        if callback is None:
            return None
        registration.last_triggered_at = datetime.now(timezone.utc)
        return await invoke_callback(lambda p: callback(registration, p), payload)

    def _get_or_raise(self, trigger_id: str) -> TriggerRegistration:
        registration = self._registrations.get(trigger_id)
        if registration is None:
            raise TriggerError(f"Unknown trigger: {trigger_id}")
        return registration
