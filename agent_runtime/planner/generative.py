"""
Generative Planner — goal decomposition via a text generation service.

The model is asked for a JSON list of action plans. The response is
treated as untrusted input: fences are stripped, JSON is parsed, and every
element is validated as an ActionPlan before anything reaches the executor.

Behavioral Contract:
- strict_validation=True: any invalid element fails the whole batch
- strict_validation=False: invalid elements are dropped and logged
- An empty plan is always a PlanningError
- PlanningError carries the raw model output for diagnosis
"""

import json
import re
from typing import Any, Dict, List, Optional, Sequence

import structlog
from pydantic import ValidationError as PydanticValidationError

from agent_runtime.config import GenerativePlannerConfig
from agent_runtime.errors import GenerationError, PlanningError
from agent_runtime.llm.service import GenerationOptions, GenerationService
from agent_runtime.memory.context import format_context
from agent_runtime.models.action import ACTION_PARAMS, ActionPlan
from agent_runtime.models.agent import AgentContext

logger = structlog.get_logger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

DEFAULT_SYSTEM_PROMPT = """You are an autonomous on-chain agent planner. Break the goal down into
executable actions, in the order they must run.

Each action is an object with:
- type: one of the available action types
- params: the action parameters as an object
- reason: a short explanation of why the action is needed
- id: optional step identifier
- dependencies: optional list of ids (or indices) of earlier steps it depends on

Only include necessary actions."""

_EXAMPLE = """[
  {"id": "0", "type": "check_balance", "params": {"amount": "1.0"},
   "reason": "Verify sufficient balance before transfer"},
  {"id": "1", "type": "execute_transfer", "params": {"to": "0x...", "amount": "1.0"},
   "reason": "Send the funds", "dependencies": ["0"]}
]"""


def extract_json(content: str) -> str:
    """Return the JSON payload of a response, unwrapping markdown fences."""
    text = content.strip()
    match = _FENCE.search(text)
    if match:
        text = match.group(1).strip()
    return text


def _normalize(element: Dict[str, Any], index: int) -> Dict[str, Any]:
    normalized = dict(element)
    if normalized.get("id") in (None, ""):
        normalized["id"] = str(index)
    else:
        normalized["id"] = str(normalized["id"])
    dependencies = normalized.get("dependencies")
    if dependencies is None:
        normalized["dependencies"] = []
    elif isinstance(dependencies, list):
        normalized["dependencies"] = [
            str(d) if isinstance(d, int) and not isinstance(d, bool) else d
            for d in dependencies
        ]
    return normalized


def parse_action_plans(content: str, strict: bool = True) -> List[ActionPlan]:
    """
    Parse model output into validated ActionPlans.

    Raises PlanningError (with `raw_response`) on malformed JSON, on any
    invalid element in strict mode, or when no valid plan remains.
    """
    try:
        parsed = json.loads(extract_json(content))
    except json.JSONDecodeError as e:
        raise PlanningError(f"Plan is not valid JSON: {e}", raw_response=content) from e

    if isinstance(parsed, dict) and "actions" in parsed:
        parsed = parsed["actions"]
    if isinstance(parsed, dict):
        parsed = [parsed]
    if not isinstance(parsed, list):
        raise PlanningError(
            f"Expected a list of actions, got {type(parsed).__name__}",
            raw_response=content,
        )

    plans: List[ActionPlan] = []
    for index, element in enumerate(parsed):
        try:
            if not isinstance(element, dict):
                raise PlanningError(f"Action {index} is not an object")
            plans.append(ActionPlan.model_validate(_normalize(element, index)))
        except (PydanticValidationError, PlanningError) as e:
            if strict:
                raise PlanningError(
                    f"Invalid action at index {index}: {e}", raw_response=content
                ) from e
            logger.warning("plan_element_dropped", index=index, error=str(e))

    if not plans:
        raise PlanningError("Planner produced no valid actions", raw_response=content)
    return plans


class GenerativePlanner:
    """Plans goals by prompting a GenerationService."""

    def __init__(
        self,
        service: GenerationService,
        config: Optional[GenerativePlannerConfig] = None,
        action_types: Optional[Sequence[str]] = None,
    ):
        self.service = service
        self.config = config or GenerativePlannerConfig()
        self.action_types = list(action_types or ACTION_PARAMS)

    def build_prompt(self, goal: Any, context: Any = None) -> str:
        goal_text = goal if isinstance(goal, str) else json.dumps(goal, default=str)
        sections = [
            self.config.system_prompt or DEFAULT_SYSTEM_PROMPT,
            "Available action types: " + ", ".join(self.action_types),
            f"Goal: {goal_text}",
        ]

        if isinstance(context, AgentContext):
            sections.append("Context:\n" + format_context(context))
        elif context:
            sections.append("Context:\n" + json.dumps(context, indent=2, default=str))

        if self.config.request_structured:
            sections.append(
                'Respond with a JSON object of the form {"actions": [...]}, '
                "no prose. Example actions:\n" + _EXAMPLE
            )
        else:
            sections.append("Respond with a JSON array of actions. Example:\n" + _EXAMPLE)
        return "\n\n".join(sections)

    async def plan(self, goal: Any, context: Any = None) -> List[ActionPlan]:
        prompt = self.build_prompt(goal, context)
        options = GenerationOptions(
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            timeout_ms=self.config.timeout_ms,
            json_output=self.config.request_structured,
        )

        try:
            result = await self.service.generate(prompt, options)
        except GenerationError as e:
            raise PlanningError(f"Generation failed: {e}") from e

        plans = parse_action_plans(result.content, strict=self.config.strict_validation)
        logger.info("plan_generated", steps=len(plans), model=result.model)
        return plans
