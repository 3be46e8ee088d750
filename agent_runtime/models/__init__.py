"""Agent runtime data models."""

from agent_runtime.models.action import (
    Action,
    ActionPlan,
    ExecutionResult,
    typed_params,
)
from agent_runtime.models.agent import (
    AgentContext,
    AgentState,
    ChainState,
    PendingApproval,
    PipelineOutcome,
    TriggerEvent,
)
from agent_runtime.models.memory import (
    MemoryEntry,
    MemoryFilter,
    MemorySummary,
    MemoryType,
)
from agent_runtime.models.policy import (
    AccessCondition,
    AccessConditionType,
    AccessEffect,
    AccessRequest,
    AccessRule,
    Policy,
    PolicyDecision,
    PolicyRule,
    PolicyVerdict,
    RateLimit,
)
from agent_runtime.models.storage import (
    ActionEntry,
    ActionStatus,
    EventEntry,
    History,
    HistoryFilter,
)

__all__ = [
    "AccessCondition",
    "AccessConditionType",
    "AccessEffect",
    "AccessRequest",
    "AccessRule",
    "Action",
    "ActionEntry",
    "ActionPlan",
    "ActionStatus",
    "AgentContext",
    "AgentState",
    "ChainState",
    "EventEntry",
    "ExecutionResult",
    "History",
    "HistoryFilter",
    "MemoryEntry",
    "MemoryFilter",
    "MemorySummary",
    "MemoryType",
    "PendingApproval",
    "PipelineOutcome",
    "Policy",
    "PolicyDecision",
    "PolicyRule",
    "PolicyVerdict",
    "RateLimit",
    "TriggerEvent",
    "typed_params",
]
