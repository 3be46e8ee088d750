"""Tests for the rule and generative planners."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from agent_runtime.config import GenerativePlannerConfig
from agent_runtime.errors import GenerationError, PlanningError, UnsupportedGoalError
from agent_runtime.llm.mock import MockGenerationService
from agent_runtime.models.agent import AgentContext
from agent_runtime.planner.generative import GenerativePlanner, extract_json
from agent_runtime.planner.rules import RulePlanner

RECIPIENT = "0x" + "ab" * 20
TOKEN_A = "0x" + "0a" * 20
TOKEN_B = "0x" + "0b" * 20
ROUTER = "0x" + "0c" * 20


def _plan(planner, goal, context=None):
    return asyncio.run(planner.plan(goal, context))


def _valid_actions() -> list:
    return [
        {"type": "check_balance", "params": {"amount": "1"}, "reason": "Check funds"},
        {
            "type": "execute_transfer",
            "params": {"to": RECIPIENT, "amount": "1"},
            "reason": "Send funds",
            "dependencies": [0],
        },
    ]


def _generative(responses, strict=True) -> GenerativePlanner:
    return GenerativePlanner(
        MockGenerationService(responses=responses),
        GenerativePlannerConfig(strict_validation=strict),
    )


class TestRulePlanner:
    def test_transfer_decomposition(self):
        plans = _plan(RulePlanner(), {"type": "transfer", "to": RECIPIENT, "amount": "1.5"})

        assert [p.type for p in plans] == [
            "validate_address",
            "check_balance",
            "execute_transfer",
        ]
        assert [p.id for p in plans] == ["step-1", "step-2", "step-3"]
        assert plans[0].dependencies == []
        assert plans[1].dependencies == ["step-1"]
        assert plans[2].dependencies == ["step-2"]
        assert plans[0].params == {"address": RECIPIENT}
        assert plans[1].params == {"amount": "1.5"}
        assert plans[2].params == {"to": RECIPIENT, "amount": "1.5"}
        assert all(p.reason for p in plans)

    def test_goal_data_nested_and_json_string(self):
        goal = {"type": "transfer", "data": {"to": RECIPIENT, "amount": "2"}}
        nested = _plan(RulePlanner(), goal)
        from_json = _plan(RulePlanner(), json.dumps(goal))
        assert [p.model_dump() for p in nested] == [p.model_dump() for p in from_json]

    def test_swap_decomposition(self):
        plans = _plan(RulePlanner(), {
            "type": "swap",
            "token_in": TOKEN_A,
            "token_out": TOKEN_B,
            "amount_in": "5",
            "router": ROUTER,
        })
        assert [p.type for p in plans] == ["get_quote", "approve_token", "execute_swap"]
        assert plans[1].params["spender"] == ROUTER

    def test_contract_call_decomposition(self):
        plans = _plan(RulePlanner(), {
            "type": "contract_call",
            "contract": TOKEN_A,
            "method": "mint",
            "args": [1],
        })
        assert [p.type for p in plans] == ["validate_contract", "estimate_gas", "call_contract"]

    def test_deploy_decomposition(self):
        plans = _plan(RulePlanner(), {"type": "deploy_contract", "bytecode": "0x6080"})
        assert [p.type for p in plans] == [
            "compile_contract",
            "estimate_deployment_gas",
            "deploy_contract",
        ]

    def test_unknown_goal_type(self):
        with pytest.raises(UnsupportedGoalError):
            _plan(RulePlanner(), {"type": "stake", "amount": "1"})

    def test_unsupported_shapes_are_planning_errors(self):
        for goal in ("send money to bob", {"to": RECIPIENT}, {"type": "transfer"}):
            with pytest.raises(PlanningError):
                _plan(RulePlanner(), goal)

    def test_deterministic(self):
        goal = {"type": "transfer", "to": RECIPIENT, "amount": "1"}
        assert _plan(RulePlanner(), goal) == _plan(RulePlanner(), goal)


class TestGenerativePlanner:
    def test_parses_list_and_normalizes_ids(self):
        planner = _generative([json.dumps(_valid_actions())])
        plans = _plan(planner, "Send 1 to Bob")

        assert [p.type for p in plans] == ["check_balance", "execute_transfer"]
        assert [p.id for p in plans] == ["0", "1"]
        assert plans[1].dependencies == ["0"]

    def test_accepts_fenced_actions_object(self):
        content = "Here you go:\n```json\n" + json.dumps({"actions": _valid_actions()}) + "\n```"
        plans = _plan(_generative([content]), "Send 1 to Bob")
        assert len(plans) == 2

    def test_extract_json_without_fence(self):
        assert extract_json("  [1, 2]  ") == "[1, 2]"

    def test_strict_rejects_whole_batch(self):
        actions = _valid_actions() + [{"type": "execute_transfer", "params": {"to": RECIPIENT}}]
        content = json.dumps(actions)
        with pytest.raises(PlanningError) as exc_info:
            _plan(_generative([content], strict=True), "Send")
        assert exc_info.value.raw_response == content

    def test_lenient_drops_invalid_elements(self):
        actions = [
            {"type": "check_balance", "params": {}, "reason": ""},
            "not an object",
            {"type": "validate_address", "params": {"address": RECIPIENT}, "reason": "Check"},
        ]
        plans = _plan(_generative([json.dumps(actions)], strict=False), "Check")
        assert [p.type for p in plans] == ["validate_address"]
        assert plans[0].id == "2"

    def test_lenient_with_nothing_valid_fails(self):
        content = json.dumps([{"type": "check_balance"}])
        with pytest.raises(PlanningError):
            _plan(_generative([content], strict=False), "Check")

    def test_empty_plan_is_an_error(self):
        with pytest.raises(PlanningError):
            _plan(_generative(["[]"]), "Nothing")

    def test_malformed_json_keeps_raw_response(self):
        with pytest.raises(PlanningError) as exc_info:
            _plan(_generative(["I would transfer the funds."]), "Send")
        assert exc_info.value.raw_response == "I would transfer the funds."

    def test_generation_failure_wrapped(self):
        with pytest.raises(PlanningError):
            _plan(_generative([GenerationError("rate limited")]), "Send")

    def test_prompt_and_options(self):
        service = MockGenerationService(responses=[json.dumps(_valid_actions())])
        planner = GenerativePlanner(service, GenerativePlannerConfig(temperature=0.1))
        context = AgentContext(
            agent={"name": "treasurer", "description": "Pays invoices", "capabilities": []},
            memory="paid invoice 12",
            timestamp=datetime.now(timezone.utc),
        )
        _plan(planner, {"type": "pay", "invoice": 13}, context)

        prompt, options = service.calls[0]
        assert '"invoice": 13' in prompt
        assert "=== Agent Info ===" in prompt
        assert "paid invoice 12" in prompt
        assert "execute_transfer" in prompt
        assert options.json_output is True
        assert options.temperature == 0.1
