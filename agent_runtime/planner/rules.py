"""
Rule Planner — deterministic goal decomposition.

Each supported goal type maps to a fixed three-step plan whose steps are
chained by dependencies (step-2 depends on step-1, step-3 on step-2).
Planning is pure: no I/O, same goal in, same plan out.
"""

import json
from typing import Any, Callable, Dict, List, Tuple

from agent_runtime.errors import UnsupportedGoalError
from agent_runtime.models.action import ActionPlan

# (action type, params, reason) triples, in execution order
Steps = List[Tuple[str, Dict[str, Any], str]]


def _require(data: Dict[str, Any], goal_type: str, *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise UnsupportedGoalError(
            f"{goal_type} goal is missing required field(s): {', '.join(missing)}"
        )


def _transfer_steps(data: Dict[str, Any]) -> Steps:
    _require(data, "transfer", "to", "amount")
    return [
        ("validate_address", {"address": data["to"]}, "Validate recipient address"),
        ("check_balance", {"amount": data["amount"]}, "Check sufficient balance"),
        (
            "execute_transfer",
            {"to": data["to"], "amount": data["amount"]},
            "Execute the transfer",
        ),
    ]


def _swap_steps(data: Dict[str, Any]) -> Steps:
    _require(data, "swap", "token_in", "token_out", "amount_in")
    quote = {
        "token_in": data["token_in"],
        "token_out": data["token_out"],
        "amount_in": data["amount_in"],
    }
    approve = {"token": data["token_in"], "amount": data["amount_in"]}
    swap = dict(quote, amount_out_min=data.get("amount_out_min", 0))
    if data.get("router"):
        quote["router"] = approve["spender"] = swap["router"] = data["router"]
    return [
        ("get_quote", quote, "Get swap quote"),
        ("approve_token", approve, "Approve token spending"),
        ("execute_swap", swap, "Execute the swap"),
    ]


def _contract_call_steps(data: Dict[str, Any]) -> Steps:
    _require(data, "contract_call", "contract", "method")
    args = list(data.get("args") or [])
    call = {"contract": data["contract"], "method": data["method"], "args": args}
    if data.get("abi"):
        call["abi"] = data["abi"]
    if data.get("value") is not None:
        call["value"] = data["value"]
    return [
        ("validate_contract", {"address": data["contract"]}, "Validate contract exists"),
        (
            "estimate_gas",
            {"contract": data["contract"], "method": data["method"], "args": args},
            "Estimate gas cost",
        ),
        ("call_contract", call, "Execute contract call"),
    ]


def _deploy_steps(data: Dict[str, Any]) -> Steps:
    _require(data, "deploy_contract", "bytecode")
    compile_params = {"bytecode": data["bytecode"]}
    if data.get("source"):
        compile_params["source"] = data["source"]
    return [
        ("compile_contract", compile_params, "Compile contract"),
        ("estimate_deployment_gas", {"bytecode": data["bytecode"]}, "Estimate deployment gas"),
        (
            "deploy_contract",
            {"bytecode": data["bytecode"], "args": list(data.get("args") or [])},
            "Deploy contract",
        ),
    ]


class RulePlanner:
    """
    Fixed decompositions for the built-in goal types.

    Goals are dicts (or JSON strings) carrying a `type` and their fields
    either inline or under `data`.
    """

    def __init__(self):
        self._rules: Dict[str, Callable[[Dict[str, Any]], Steps]] = {
            "transfer": _transfer_steps,
            "swap": _swap_steps,
            "contract_call": _contract_call_steps,
            "deploy_contract": _deploy_steps,
        }

    @property
    def goal_types(self) -> List[str]:
        return list(self._rules)

    async def plan(self, goal: Any, context: Any = None) -> List[ActionPlan]:
        return self.decompose(goal)

    def decompose(self, goal: Any) -> List[ActionPlan]:
        goal = self._parse_goal(goal)
        goal_type = goal.get("type")
        rule = self._rules.get(goal_type)
        if rule is None:
            raise UnsupportedGoalError(f"Unsupported goal type: {goal_type!r}")

        data = goal.get("data")
        if not isinstance(data, dict):
            data = {k: v for k, v in goal.items() if k != "type"}

        plans = []
        for index, (action_type, params, reason) in enumerate(rule(data), start=1):
            plans.append(
                ActionPlan(
                    id=f"step-{index}",
                    type=action_type,
                    params=params,
                    reason=reason,
                    dependencies=[f"step-{index - 1}"] if index > 1 else [],
                    metadata={"goal_type": goal_type},
                )
            )
        return plans

    def _parse_goal(self, goal: Any) -> Dict[str, Any]:
        if isinstance(goal, str):
            try:
                goal = json.loads(goal)
            except json.JSONDecodeError as e:
                raise UnsupportedGoalError(
                    "Rule planner goals must be JSON objects with a 'type'"
                ) from e
        if not isinstance(goal, dict) or "type" not in goal:
            raise UnsupportedGoalError(
                "Rule planner goals must be objects with a 'type'"
            )
        return goal
