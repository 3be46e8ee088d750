"""Planner contract. Planners turn a goal plus context into ordered ActionPlans."""

from typing import Any, List, Protocol

from agent_runtime.models.action import ActionPlan


class Planner(Protocol):
    """
    Pluggable planning backend.

    Raises PlanningError when no plan can be produced.
    """

    async def plan(self, goal: Any, context: Any = None) -> List[ActionPlan]: ...
