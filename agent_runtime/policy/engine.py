"""
Policy Engine — guardrails evaluated before execution.

Guard order (each check short-circuits on rejection):
  1. Allow / block list (block list wins on conflict)
  2. Amount bounds, params.amount within [min, max]
  3. Rate limit, a sliding window per action type
  4. Approval requirement, flagged pending_approval and never executed

Behavioral Contract:
- Rule evaluation is stateless apart from the rate-limit windows
- Windows are pruned lazily on every check (no background timer)
- Window read-modify-write happens under a lock, so increments are never lost
- `override_action` is the soft "cap" path; callers choose it or hard rejection

Access control is separate from the guards: rules and roles decide whether
an actor (an event sender) may request an action at all. Highest priority
rule whose conditions match wins; no matching rule means deny.
"""

import threading
import time
from collections import deque
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Set, Union
from uuid import uuid4

import structlog

from agent_runtime.conditions import compare, field_value
from agent_runtime.errors import PolicyRejectionError, ValidationError
from agent_runtime.models.action import Action, ActionPlan
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
)

logger = structlog.get_logger(__name__)

AnyAction = Union[Action, ActionPlan]


def _parse_amount(value: Any) -> Optional[Decimal]:
    """Parse an amount param; None when it is not a finite number."""
    if isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _check_action_lists(policy: Policy, action_type: str) -> Optional[PolicyDecision]:
    if policy.blocked_actions and action_type in policy.blocked_actions:
        return _reject(action_type, PolicyRule.BLOCK_LIST, f"{action_type} is blocked")
    if policy.allowed_actions is not None and action_type not in policy.allowed_actions:
        return _reject(action_type, PolicyRule.ALLOW_LIST, f"{action_type} is not allowed")
    return None


def _check_amount_bounds(policy: Policy, action: AnyAction) -> Optional[PolicyDecision]:
    if "amount" not in action.params or action.params["amount"] is None:
        return None

    amount = _parse_amount(action.params["amount"])
    if amount is None:
        return _reject(
            action.type,
            PolicyRule.INVALID_AMOUNT,
            f"Amount {action.params['amount']!r} is not a number",
        )
    if policy.min_transfer_amount is not None and amount < policy.min_transfer_amount:
        return _reject(
            action.type,
            PolicyRule.MIN_TRANSFER_AMOUNT,
            f"Amount {amount} is below minimum {policy.min_transfer_amount}",
        )
    if policy.max_transfer_amount is not None and amount > policy.max_transfer_amount:
        return _reject(
            action.type,
            PolicyRule.MAX_TRANSFER_AMOUNT,
            f"Amount {amount} exceeds maximum {policy.max_transfer_amount}",
        )
    return None


def _reject(action_type: str, rule: PolicyRule, detail: str) -> PolicyDecision:
    return PolicyDecision(
        action_type=action_type,
        verdict=PolicyVerdict.REJECTED,
        rule=rule,
        detail=detail,
    )


def _cap(value: Any, ceiling: Decimal) -> Any:
    """Return `ceiling` in the same representation as `value`."""
    if isinstance(value, str):
        return str(ceiling)
    if isinstance(value, int) and ceiling == ceiling.to_integral_value():
        return int(ceiling)
    if isinstance(value, Decimal):
        return ceiling
    return float(ceiling)


class PolicyEngine:
    """
    Evaluates actions against one Agent's Policy.

    `clock` returns monotonic seconds and is injectable for tests.
    """

    def __init__(
        self,
        policy: Optional[Policy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or Policy()
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._rules: Dict[str, AccessRule] = {}
        self._roles: Dict[str, Set[str]] = {}

    def evaluate(self, action: AnyAction) -> PolicyDecision:
        """
        Run all guards in order. An approved action is recorded in its
        rate-limit window as part of the same locked section.
        """
        policy = self.policy

        decision = _check_action_lists(policy, action.type)
        if decision is None:
            decision = _check_amount_bounds(policy, action)

        if decision is None:
            with self._lock:
                decision = self._check_rate_limit(action.type)
                if decision is None and policy.require_approval:
                    decision = PolicyDecision(
                        action_type=action.type,
                        verdict=PolicyVerdict.PENDING_APPROVAL,
                        rule=PolicyRule.REQUIRE_APPROVAL,
                        detail="Policy requires manual approval",
                    )
                if decision is None:
                    self._record(action.type)
                    decision = PolicyDecision(
                        action_type=action.type, verdict=PolicyVerdict.APPROVED
                    )

        if decision.verdict != PolicyVerdict.APPROVED:
            logger.info(
                "policy_decision",
                action_type=action.type,
                verdict=decision.verdict.value,
                rule=decision.rule.value if decision.rule else None,
                detail=decision.detail,
            )
        return decision

    def should_execute(self, action: AnyAction) -> bool:
        return self.evaluate(action).approved

    def enforce(self, action: AnyAction) -> PolicyDecision:
        """Like `evaluate`, but raise PolicyRejectionError unless approved."""
        decision = self.evaluate(action)
        if not decision.approved:
            raise PolicyRejectionError(action.type, decision.rule.value, decision.detail)
        return decision

    def should_delay(self, action: AnyAction) -> Union[float, bool]:
        """
        Milliseconds until the oldest timestamp in the action type's window
        expires, or False when the action is not rate limited right now.
        """
        rate_limit = self.policy.rate_limit
        if rate_limit is None:
            return False

        with self._lock:
            window = self._prune(action.type)
            if len(window) < rate_limit.max_actions:
                return False
            remaining = window[0] + rate_limit.window_ms / 1000.0 - self._clock()

        if remaining <= 0:
            return False
        return remaining * 1000.0

    def override_action(self, action: AnyAction) -> AnyAction:
        """Clamp amount and gas limit to the configured maxima."""
        policy = self.policy
        params = dict(action.params)

        if policy.max_transfer_amount is not None and params.get("amount") is not None:
            amount = _parse_amount(params["amount"])
            if amount is not None and amount > policy.max_transfer_amount:
                params["amount"] = _cap(params["amount"], policy.max_transfer_amount)

        if policy.max_gas_limit is not None and params.get("gas_limit") is not None:
            gas_limit = _parse_amount(params["gas_limit"])
            if gas_limit is not None and gas_limit > policy.max_gas_limit:
                params["gas_limit"] = _cap(params["gas_limit"], Decimal(policy.max_gas_limit))

        if params == action.params:
            return action

        logger.info("policy_override", action_type=action.type, params=params)
        return action.model_copy(update={"params": params})

    def update_policy(self, **changes: Any) -> Policy:
        """Replace policy fields; validation runs on the merged policy."""
        self.policy = Policy.model_validate({**self.policy.model_dump(), **changes})
        return self.policy

    def recent_count(self, action_type: str) -> int:
        with self._lock:
            return len(self._prune(action_type))

    def reset_rate_limits(self) -> None:
        with self._lock:
            self._windows.clear()

    # --- Access control ---

    @property
    def has_access_rules(self) -> bool:
        return bool(self._rules)

    def add_rule(
        self,
        name: str,
        action: str,
        effect: AccessEffect = AccessEffect.ALLOW,
        conditions: Optional[Sequence[AccessCondition]] = None,
        priority: int = 0,
        enabled: bool = True,
    ) -> str:
        rule = AccessRule(
            id=f"rule_{uuid4().hex[:12]}",
            name=name,
            action=action,
            effect=effect,
            conditions=list(conditions or []),
            priority=priority,
            enabled=enabled,
            created_at=datetime.now(timezone.utc),
        )
        self._rules[rule.id] = rule
        return rule.id

    def remove_rule(self, rule_id: str) -> bool:
        return self._rules.pop(rule_id, None) is not None

    def get_rule(self, rule_id: str) -> Optional[AccessRule]:
        return self._rules.get(rule_id)

    def list_rules(self) -> List[AccessRule]:
        return list(self._rules.values())

    def enable_rule(self, rule_id: str) -> None:
        self._rule_or_raise(rule_id).enabled = True

    def disable_rule(self, rule_id: str) -> None:
        self._rule_or_raise(rule_id).enabled = False

    def clear_rules(self) -> None:
        self._rules.clear()

    def assign_role(self, role: str, address: str) -> None:
        self._roles.setdefault(role, set()).add(address.lower())

    def revoke_role(self, role: str, address: str) -> None:
        self._roles.get(role, set()).discard(address.lower())

    def has_role(self, role: str, address: str) -> bool:
        return address.lower() in self._roles.get(role, set())

    def roles(self) -> Dict[str, List[str]]:
        return {role: sorted(addresses) for role, addresses in self._roles.items()}

    def clear_roles(self) -> None:
        self._roles.clear()

    def check_access(self, request: AccessRequest) -> bool:
        applicable = [
            r for r in self._rules.values()
            if r.enabled and (r.action == request.action or "*" in (r.action, request.action))
        ]
        # Stable sort keeps insertion order among equal priorities
        for rule in sorted(applicable, key=lambda r: -r.priority):
            if all(self._condition_holds(c, request) for c in rule.conditions):
                return rule.effect == AccessEffect.ALLOW
        return False

    def check_permission(
        self, address: str, action: str, params: Optional[Dict[str, Any]] = None
    ) -> bool:
        allowed = self.check_access(AccessRequest(
            actor=address,
            action=action,
            params=params or {},
            timestamp=int(time.time() * 1000),
        ))
        if not allowed:
            logger.info("permission_denied", actor=address, action=action)
        return allowed

    def _condition_holds(self, condition: AccessCondition, request: AccessRequest) -> bool:
        if condition.type == AccessConditionType.ROLE:
            return self.has_role(str(condition.value), request.actor)
        if condition.type == AccessConditionType.ADDRESS:
            actual = request.actor.lower()
        elif condition.type == AccessConditionType.AMOUNT:
            actual = _parse_amount(request.params.get("amount") or 0)
        elif condition.type == AccessConditionType.TIME:
            actual = request.timestamp
        else:
            if not condition.field:
                return False
            actual = field_value(request, condition.field)
        return compare(condition.operator, actual, condition.value)

    def _rule_or_raise(self, rule_id: str) -> AccessRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise ValidationError(f"Unknown access rule: {rule_id}")
        return rule

    # --- Rate-limit window (caller holds the lock) ---

    def _check_rate_limit(self, action_type: str) -> Optional[PolicyDecision]:
        rate_limit = self.policy.rate_limit
        if rate_limit is None:
            return None
        window = self._prune(action_type)
        if len(window) >= rate_limit.max_actions:
            return _reject(
                action_type,
                PolicyRule.RATE_LIMIT,
                f"{len(window)} {action_type} actions within {rate_limit.window_ms}ms "
                f"(max {rate_limit.max_actions})",
            )
        return None

    def _record(self, action_type: str) -> None:
        if self.policy.rate_limit is None:
            return
        self._windows.setdefault(action_type, deque()).append(self._clock())

    def _prune(self, action_type: str) -> Deque[float]:
        window = self._windows.setdefault(action_type, deque())
        rate_limit = self.policy.rate_limit
        if rate_limit is None:
            window.clear()
            return window
        cutoff = self._clock() - rate_limit.window_ms / 1000.0
        while window and window[0] <= cutoff:
            window.popleft()
        return window
