"""Operational policy and the decisions the Policy Engine returns."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from agent_runtime.conditions import ConditionOperator


class PolicyVerdict(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING_APPROVAL = "pending_approval"


class PolicyRule(str, Enum):
    """Machine-readable name of the guard that produced a verdict."""
    ALLOW_LIST = "allow_list"
    BLOCK_LIST = "block_list"
    INVALID_AMOUNT = "invalid_amount"
    MIN_TRANSFER_AMOUNT = "min_transfer_amount"
    MAX_TRANSFER_AMOUNT = "max_transfer_amount"
    RATE_LIMIT = "rate_limit"
    REQUIRE_APPROVAL = "require_approval"


class RateLimit(BaseModel):
    max_actions: int = Field(ge=1)
    window_ms: int = Field(ge=1)


class Policy(BaseModel):
    """
    Guardrail configuration owned by one Agent.

    Amounts are in ether units, gas in gas units. Unset fields disable the
    corresponding guard.
    """

    max_gas_limit: Optional[int] = None
    max_retries: Optional[int] = None
    max_transfer_amount: Optional[Decimal] = None
    min_transfer_amount: Optional[Decimal] = None
    allowed_actions: Optional[Set[str]] = None
    blocked_actions: Optional[Set[str]] = None
    rate_limit: Optional[RateLimit] = None
    require_approval: bool = False


class PolicyDecision(BaseModel):
    """The Policy Engine's ruling on one action."""

    action_type: str
    verdict: PolicyVerdict
    rule: Optional[PolicyRule] = None       # Set when not approved
    detail: Optional[str] = None            # Human-readable

    @property
    def approved(self) -> bool:
        return self.verdict == PolicyVerdict.APPROVED


# --- Access control ---

class AccessEffect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class AccessConditionType(str, Enum):
    ROLE = "role"           # value names a role the actor must hold
    ADDRESS = "address"     # compares the lowercased actor address
    AMOUNT = "amount"       # compares params.amount (0 when absent)
    TIME = "time"           # compares the request time in epoch milliseconds
    CUSTOM = "custom"       # compares the dotted `field` of the request


class AccessCondition(BaseModel):
    type: AccessConditionType
    operator: ConditionOperator = ConditionOperator.EQ
    field: Optional[str] = None
    value: Any = None


class AccessRule(BaseModel):
    """Allows or denies an action ("*" for any) to actors matching all conditions."""

    id: str
    name: str
    action: str
    effect: AccessEffect = AccessEffect.ALLOW
    conditions: List[AccessCondition] = Field(default_factory=list)
    priority: int = 0               # Higher is evaluated first
    enabled: bool = True
    created_at: datetime


class AccessRequest(BaseModel):
    actor: str
    action: str
    resource: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int                  # Epoch milliseconds
