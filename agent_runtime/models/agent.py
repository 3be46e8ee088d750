"""Agent lifecycle state and context records."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from agent_runtime.models.action import ActionPlan, ExecutionResult
from agent_runtime.models.policy import PolicyDecision
from agent_runtime.models.storage import ActionEntry


class AgentState(str, Enum):
    CREATED = "created"
    REGISTERED = "registered"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    TERMINATED = "terminated"       # Absorbing


class ChainState(BaseModel):
    """Snapshot of chain state taken by the Context Builder."""

    block_number: int
    gas_price: int                  # wei
    chain_id: int
    timestamp: datetime


class AgentContext(BaseModel):
    """Everything the planner sees about the agent's situation."""

    agent: Dict[str, Any] = {}
    chain_state: Optional[ChainState] = None
    recent_actions: List[ActionEntry] = []
    memory: str = ""
    timestamp: datetime
    metadata: Dict[str, Any] = {}


class TriggerEvent(BaseModel):
    """A trigger firing queued for the agent's pipeline."""

    payload: Any
    goal: Optional[Any] = None
    trigger_id: Optional[str] = None
    received_at: datetime


class PendingApproval(BaseModel):
    """A planned action held back because the policy requires approval."""

    id: str
    plan: ActionPlan
    decision: PolicyDecision
    event_id: Optional[str] = None
    created_at: datetime


class PipelineOutcome(BaseModel):
    """What one run of the event pipeline did."""

    event_id: Optional[str] = None
    trigger_id: Optional[str] = None
    goal: Optional[Any] = None
    plans: List[ActionPlan] = []
    approved: List[ActionPlan] = []
    rejected: List[PolicyDecision] = []
    skipped: List[ActionPlan] = []          # Depended on a rejected or held step
    pending_approval: List[PendingApproval] = []
    action_entry_ids: List[str] = []
    results: List[ExecutionResult] = []
    success: bool = False
    error: Optional[str] = None
    error_type: Optional[str] = None
    raw_response: Optional[str] = None
