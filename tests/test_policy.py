"""Tests for the Policy Engine."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from agent_runtime.errors import PolicyRejectionError, ValidationError
from agent_runtime.models.action import Action, ActionPlan
from agent_runtime.models.policy import (
    AccessCondition,
    AccessEffect,
    AccessRequest,
    Policy,
    PolicyRule,
    PolicyVerdict,
    RateLimit,
)
from agent_runtime.policy.engine import PolicyEngine

RECIPIENT = "0x" + "ab" * 20
OPERATOR = "0x" + "0e" * 20
STRANGER = "0x" + "05" * 20


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _transfer(amount) -> Action:
    return Action(type="execute_transfer", params={"to": RECIPIENT, "amount": amount})


class TestActionLists:
    def test_allow_list_rejects_unlisted(self):
        engine = PolicyEngine(Policy(allowed_actions={"validate_address"}))
        decision = engine.evaluate(_transfer("1"))
        assert decision.verdict == PolicyVerdict.REJECTED
        assert decision.rule == PolicyRule.ALLOW_LIST

    def test_block_list_wins_over_allow_list(self):
        engine = PolicyEngine(Policy(
            allowed_actions={"execute_transfer"},
            blocked_actions={"execute_transfer"},
        ))
        decision = engine.evaluate(_transfer("1"))
        assert decision.rule == PolicyRule.BLOCK_LIST

    def test_no_lists_approves(self):
        engine = PolicyEngine()
        assert engine.should_execute(_transfer("1")) is True


class TestAmountBounds:
    def test_over_max_rejected_and_override_caps(self):
        engine = PolicyEngine(Policy(max_transfer_amount=10))
        action = _transfer(15)

        assert engine.should_execute(action) is False

        capped = engine.override_action(action)
        assert capped.params["amount"] == 10
        assert isinstance(capped.params["amount"], int)
        assert engine.should_execute(capped) is True

    def test_override_preserves_string_amounts(self):
        engine = PolicyEngine(Policy(max_transfer_amount=Decimal("2.5")))
        capped = engine.override_action(_transfer("7"))
        assert capped.params["amount"] == "2.5"

    def test_override_leaves_compliant_action_untouched(self):
        engine = PolicyEngine(Policy(max_transfer_amount=10))
        action = _transfer("3")
        assert engine.override_action(action) is action

    def test_override_caps_gas_limit(self):
        engine = PolicyEngine(Policy(max_gas_limit=100_000))
        plan = ActionPlan(
            type="call_contract",
            params={"contract": RECIPIENT, "method": "ping", "gas_limit": 500_000},
            reason="ping",
        )
        capped = engine.override_action(plan)
        assert capped.params["gas_limit"] == 100_000
        assert capped.reason == "ping"

    def test_below_min_rejected(self):
        engine = PolicyEngine(Policy(min_transfer_amount=Decimal("0.01")))
        decision = engine.evaluate(_transfer("0.001"))
        assert decision.rule == PolicyRule.MIN_TRANSFER_AMOUNT

    def test_unparsable_amount_rejected(self):
        engine = PolicyEngine(Policy(max_transfer_amount=10))
        decision = engine.evaluate(_transfer("lots"))
        assert decision.verdict == PolicyVerdict.REJECTED
        assert decision.rule == PolicyRule.INVALID_AMOUNT

    def test_enforce_raises_with_rule(self):
        engine = PolicyEngine(Policy(max_transfer_amount=1))
        with pytest.raises(PolicyRejectionError) as exc_info:
            engine.enforce(_transfer("2"))
        assert exc_info.value.rule == "max_transfer_amount"

    def test_update_policy(self):
        engine = PolicyEngine(Policy(max_transfer_amount=10))
        engine.update_policy(max_transfer_amount=Decimal("20"))
        assert engine.should_execute(_transfer("15")) is True


class TestRateLimit:
    def _engine(self, clock, max_actions=2, window_ms=1000) -> PolicyEngine:
        return PolicyEngine(
            Policy(rate_limit=RateLimit(max_actions=max_actions, window_ms=window_ms)),
            clock=clock,
        )

    def test_window_blocks_then_expires(self):
        clock = FakeClock()
        engine = self._engine(clock)

        assert engine.should_execute(_transfer("1")) is True
        assert engine.should_execute(_transfer("1")) is True
        decision = engine.evaluate(_transfer("1"))
        assert decision.rule == PolicyRule.RATE_LIMIT

        clock.advance(1.0)
        assert engine.should_execute(_transfer("1")) is True

    def test_limits_are_per_action_type(self):
        clock = FakeClock()
        engine = self._engine(clock, max_actions=1)

        assert engine.should_execute(_transfer("1")) is True
        assert engine.should_execute(Action(type="validate_address", params={})) is True
        assert engine.should_execute(_transfer("1")) is False

    def test_rejected_actions_do_not_consume_budget(self):
        clock = FakeClock()
        engine = PolicyEngine(
            Policy(
                max_transfer_amount=1,
                rate_limit=RateLimit(max_actions=1, window_ms=1000),
            ),
            clock=clock,
        )
        assert engine.should_execute(_transfer("5")) is False
        assert engine.recent_count("execute_transfer") == 0
        assert engine.should_execute(_transfer("1")) is True

    def test_should_delay_reports_remaining_window(self):
        clock = FakeClock()
        engine = self._engine(clock, max_actions=1, window_ms=1000)

        assert engine.should_delay(_transfer("1")) is False
        engine.evaluate(_transfer("1"))
        clock.advance(0.25)

        assert engine.should_delay(_transfer("1")) == pytest.approx(750.0)

    def test_reset_rate_limits(self):
        engine = self._engine(FakeClock(), max_actions=1)
        engine.evaluate(_transfer("1"))
        engine.reset_rate_limits()
        assert engine.should_execute(_transfer("1")) is True

    def test_concurrent_evaluations_never_exceed_limit(self):
        engine = self._engine(FakeClock(), max_actions=10)

        with ThreadPoolExecutor(max_workers=8) as pool:
            verdicts = list(pool.map(lambda _: engine.should_execute(_transfer("1")), range(50)))

        assert verdicts.count(True) == 10
        assert engine.recent_count("execute_transfer") == 10


class TestApproval:
    def test_require_approval_flags_pending(self):
        engine = PolicyEngine(Policy(require_approval=True))
        decision = engine.evaluate(_transfer("1"))
        assert decision.verdict == PolicyVerdict.PENDING_APPROVAL
        assert decision.rule == PolicyRule.REQUIRE_APPROVAL
        assert decision.approved is False


class TestAccessControl:
    def test_no_rules_denies(self):
        engine = PolicyEngine()
        assert engine.has_access_rules is False
        assert engine.check_permission(OPERATOR, "execute") is False

    def test_role_rule(self):
        engine = PolicyEngine()
        engine.add_rule(
            "operators execute",
            "execute",
            conditions=[AccessCondition(type="role", value="operator")],
        )
        engine.assign_role("operator", "0x" + "0E" * 20)

        assert engine.check_permission(OPERATOR, "execute") is True
        assert engine.check_permission(STRANGER, "execute") is False
        assert engine.check_permission(OPERATOR, "withdraw") is False
        assert engine.roles() == {"operator": [OPERATOR.lower()]}

        engine.revoke_role("operator", OPERATOR)
        assert engine.check_permission(OPERATOR, "execute") is False

    def test_higher_priority_deny_wins(self):
        engine = PolicyEngine()
        engine.add_rule("anyone", "*")
        engine.add_rule(
            "no stranger",
            "execute",
            effect=AccessEffect.DENY,
            conditions=[AccessCondition(type="address", value=STRANGER.lower())],
            priority=10,
        )

        assert engine.check_permission(OPERATOR, "execute") is True
        assert engine.check_permission(STRANGER, "execute") is False
        assert engine.check_permission(STRANGER, "transfer") is True

    def test_amount_and_custom_conditions(self):
        engine = PolicyEngine()
        engine.add_rule(
            "small transfers",
            "transfer",
            conditions=[
                AccessCondition(type="amount", operator="lte", value=5),
                AccessCondition(
                    type="custom", field="params.memo", operator="contains", value="payroll"
                ),
            ],
        )

        assert engine.check_permission(OPERATOR, "transfer", {"amount": "5", "memo": "payroll"})
        assert not engine.check_permission(OPERATOR, "transfer", {"amount": 6, "memo": "payroll"})
        assert not engine.check_permission(OPERATOR, "transfer", {"amount": 1, "memo": "gift"})

    def test_time_condition(self):
        engine = PolicyEngine()
        engine.add_rule(
            "before cutoff",
            "execute",
            conditions=[AccessCondition(type="time", operator="lt", value=2_000)],
        )
        early = AccessRequest(actor=OPERATOR, action="execute", timestamp=1_000)
        late = AccessRequest(actor=OPERATOR, action="execute", timestamp=3_000)
        assert engine.check_access(early) is True
        assert engine.check_access(late) is False

    def test_disabled_rules_are_skipped(self):
        engine = PolicyEngine()
        rule_id = engine.add_rule("anyone", "execute")
        engine.disable_rule(rule_id)
        assert engine.check_permission(OPERATOR, "execute") is False

        engine.enable_rule(rule_id)
        assert engine.check_permission(OPERATOR, "execute") is True
        assert engine.get_rule(rule_id).name == "anyone"

        assert engine.remove_rule(rule_id) is True
        assert engine.remove_rule(rule_id) is False
        with pytest.raises(ValidationError):
            engine.enable_rule(rule_id)
