"""
Error taxonomy for the agent runtime.

Everything below the Agent boundary raises one of these typed errors so the
boundary can decide what is retryable and what must be surfaced.
"""

import asyncio
from typing import Optional


class AgentRuntimeError(Exception):
    """Base class for all runtime errors."""
    pass


class ValidationError(AgentRuntimeError):
    """Malformed Action, ActionPlan or action parameters. Never retried."""
    pass


class UnknownActionTypeError(ValidationError):
    """No handler is registered for the requested action type."""

    def __init__(self, action_type: str):
        super().__init__(f"No handler registered for action type: {action_type}")
        self.action_type = action_type


class PlanOrderError(ValidationError):
    """A sequential batch references a dependency that has not run yet."""

    def __init__(self, step_id: str, dependency: str):
        super().__init__(
            f"Step {step_id} depends on {dependency}, which does not precede it in the batch"
        )
        self.step_id = step_id
        self.dependency = dependency


class DependencyFailedError(ValidationError):
    """A step was skipped because a step it depends on did not succeed."""

    def __init__(self, step_id: str, dependency: str):
        super().__init__(f"Step {step_id} skipped: dependency {dependency} did not succeed")
        self.step_id = step_id
        self.dependency = dependency


class DryRunViolationError(ValidationError):
    """A handler tried to mutate chain state during a dry run."""

    def __init__(self, method: str):
        super().__init__(f"Dry run blocked chain client call: {method}")
        self.method = method


class PolicyRejectionError(AgentRuntimeError):
    """An action was blocked by a policy guard."""

    def __init__(self, action_type: str, rule: str, detail: Optional[str] = None):
        message = f"Action {action_type} rejected by policy rule '{rule}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.action_type = action_type
        self.rule = rule
        self.detail = detail


class TransientExecutionError(AgentRuntimeError):
    """Network, RPC or other transient failure. Retried by the executor."""
    pass


class ExecutionTimeoutError(TransientExecutionError):
    """A single action attempt exceeded the executor timeout."""

    def __init__(self, action_type: str, timeout_ms: int):
        super().__init__(f"Action {action_type} timed out after {timeout_ms}ms")
        self.action_type = action_type
        self.timeout_ms = timeout_ms


class PlanningError(AgentRuntimeError):
    """No plan could be produced. Keeps the raw upstream response for diagnosis."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response


class UnsupportedGoalError(PlanningError):
    """The rule planner does not recognise the goal shape."""
    pass


class GenerationError(AgentRuntimeError):
    """The generation service failed to produce a completion."""
    pass


class FatalConfigurationError(AgentRuntimeError):
    """Missing signer, disconnected chain client, missing registry and similar."""
    pass


class InvalidStateTransitionError(AgentRuntimeError):
    """The agent lifecycle does not allow the requested transition."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition agent from {current} to {target}")
        self.current = current
        self.target = target


class TriggerError(AgentRuntimeError):
    """A trigger could not be started."""
    pass


def is_retryable(exc: BaseException) -> bool:
    """Only transient failures (network, timeout, chain hiccups) are retried."""
    if isinstance(exc, (ValidationError, PolicyRejectionError, PlanningError)):
        return False
    return isinstance(
        exc, (TransientExecutionError, ConnectionError, asyncio.TimeoutError, TimeoutError)
    )
