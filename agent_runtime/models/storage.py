"""Persistence records — inbound events and execution attempts."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from agent_runtime.errors import ValidationError
from agent_runtime.models.action import Action, ExecutionResult


class ActionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class EventEntry(BaseModel):
    """One trigger firing. Never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str
    event: Any
    timestamp: datetime
    agent_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ActionEntry(BaseModel):
    """
    One action submitted to the executor.

    Created pending; completed exactly once with its terminal result.
    """

    id: str
    action: Action
    result: Optional[ExecutionResult] = None
    status: ActionStatus = ActionStatus.PENDING
    timestamp: datetime
    agent_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def complete(self, result: ExecutionResult) -> None:
        if self.status != ActionStatus.PENDING:
            raise ValidationError(
                f"Action entry {self.id} already completed with status {self.status.value}"
            )
        self.result = result
        self.status = ActionStatus.SUCCESS if result.success else ActionStatus.FAILED


class HistoryFilter(BaseModel):
    """Time-range / status / agent filter for history queries."""

    since: Optional[datetime] = None
    until: Optional[datetime] = None
    status: Optional[ActionStatus] = None   # Applies to actions only
    agent_id: Optional[str] = None
    limit: Optional[int] = None             # Keep the most recent N

    def matches(self, entry: Any) -> bool:
        if self.since and entry.timestamp < self.since:
            return False
        if self.until and entry.timestamp > self.until:
            return False
        if self.agent_id and entry.agent_id != self.agent_id:
            return False
        if self.status and getattr(entry, "status", None) != self.status:
            return False
        return True


class History(BaseModel):
    events: List[EventEntry] = []
    actions: List[ActionEntry] = []
