"""
Executor — dispatches actions to registered handlers.

Behavioral Contract:
- Unknown action types produce a failed result and are never retried
- Only retryable errors are retried, with capped exponential backoff
- Every attempt is bounded by the configured timeout
- Dry-run never calls a state-mutating handler; every dry-run result says so
- Dry-run handlers see a chain client that refuses to send transactions
- Sequential batches validate dependency order before executing anything
- A step whose dependency did not succeed is skipped with a failed result
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import structlog

from agent_runtime.chain.client import ReadOnlyChainClient
from agent_runtime.config import ExecutorConfig
from agent_runtime.errors import (
    DependencyFailedError,
    ExecutionTimeoutError,
    PlanOrderError,
    UnknownActionTypeError,
    ValidationError,
    is_retryable,
)
from agent_runtime.execution.handlers import BUILTIN_HANDLERS
from agent_runtime.models.action import (
    ACTION_PARAMS,
    Action,
    ActionPlan,
    ExecutionResult,
    typed_params,
)

logger = structlog.get_logger(__name__)

AnyAction = Union[Action, ActionPlan]
Handler = Callable[[Dict[str, Any], "ExecutionContext"], Awaitable[Any]]


class ExecutionContext:
    """What a handler may see besides its params."""

    def __init__(
        self,
        action_type: str,
        chain_client: Any = None,
        dry_run: bool = False,
        attempt: int = 0,
        agent_id: Optional[str] = None,
        confirmations: int = 1,
    ):
        self.action_type = action_type
        self.chain_client = chain_client
        self.dry_run = dry_run
        self.attempt = attempt
        self.agent_id = agent_id
        self.confirmations = confirmations


class HandlerSpec:
    def __init__(self, handler: Handler, mutates_state: bool = False):
        self.handler = handler
        self.mutates_state = mutates_state


class Executor:
    """
    Runs actions against the chain client with retry, timeout and dry-run.

    `sleep` is injectable so tests do not wait out real backoff delays.
    """

    def __init__(
        self,
        chain_client: Any = None,
        config: Optional[ExecutorConfig] = None,
        agent_id: Optional[str] = None,
        register_builtins: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.chain_client = chain_client
        self.config = config or ExecutorConfig()
        self.agent_id = agent_id
        self._sleep = sleep
        self._handlers: Dict[str, HandlerSpec] = {}
        if register_builtins:
            for action_type, (handler, mutates_state) in BUILTIN_HANDLERS.items():
                self.register_handler(action_type, handler, mutates_state)

    def register_handler(
        self, action_type: str, handler: Handler, mutates_state: bool = False
    ) -> None:
        """Register (or replace) the handler for an action type."""
        self._handlers[action_type] = HandlerSpec(handler, mutates_state)

    def has_handler(self, action_type: str) -> bool:
        return action_type in self._handlers

    def handler_types(self) -> List[str]:
        return sorted(self._handlers)

    def is_mutating(self, action_type: str) -> bool:
        spec = self._handlers.get(action_type)
        return spec is not None and spec.mutates_state

    async def execute(self, action: AnyAction) -> ExecutionResult:
        start = time.monotonic()
        dry_run = self.config.dry_run
        spec = self._handlers.get(action.type)

        if spec is None:
            error = UnknownActionTypeError(action.type)
            logger.warning("unknown_action_type", action_type=action.type)
            return ExecutionResult(
                success=False,
                error=str(error),
                error_type=type(error).__name__,
                duration_ms=_elapsed_ms(start),
                dry_run=dry_run,
            )

        if dry_run and spec.mutates_state:
            return self._simulate(action, start)

        chain_client = self.chain_client
        if dry_run and chain_client is not None:
            chain_client = ReadOnlyChainClient(chain_client)

        max_retries = self.config.max_retries
        attempt = 0
        while True:
            ctx = ExecutionContext(
                action_type=action.type,
                chain_client=chain_client,
                dry_run=dry_run,
                attempt=attempt,
                agent_id=self.agent_id,
                confirmations=self.config.confirmations,
            )
            try:
                data = await self._attempt(spec, action, ctx)
            except Exception as e:
                if attempt < max_retries and is_retryable(e):
                    delay_ms = min(
                        self.config.retry_delay_ms * (2 ** attempt),
                        self.config.max_retry_delay_ms,
                    )
                    logger.info(
                        "action_retry",
                        action_type=action.type,
                        attempt=attempt + 1,
                        delay_ms=delay_ms,
                        error=str(e),
                    )
                    attempt += 1
                    await self._sleep(delay_ms / 1000.0)
                    continue

                logger.warning(
                    "action_failed",
                    action_type=action.type,
                    retries=attempt,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                return ExecutionResult(
                    success=False,
                    error=str(e),
                    error_type=type(e).__name__,
                    duration_ms=_elapsed_ms(start),
                    retry_count=attempt,
                    dry_run=dry_run,
                )

            tx_hash = data.get("tx_hash") if isinstance(data, dict) else None
            logger.info(
                "action_executed",
                action_type=action.type,
                tx_hash=tx_hash,
                retries=attempt,
            )
            return ExecutionResult(
                success=True,
                tx_hash=tx_hash,
                duration_ms=_elapsed_ms(start),
                retry_count=attempt,
                dry_run=dry_run,
                data=data,
            )

    async def execute_all(self, actions: Sequence[AnyAction]) -> List[ExecutionResult]:
        """
        Execute a batch. Results keep input order.

        Sequential mode may return fewer results than actions when it stops
        at the first failure.
        """
        if not actions:
            return []

        has_dependencies = any(getattr(a, "dependencies", None) for a in actions)
        if not self.config.enable_parallel or has_dependencies:
            return await self._execute_sequential(actions)
        return await self._execute_parallel(actions)

    async def _attempt(
        self, spec: HandlerSpec, action: AnyAction, ctx: ExecutionContext
    ) -> Any:
        timeout_ms = self.config.timeout_ms
        try:
            return await asyncio.wait_for(
                spec.handler(dict(action.params), ctx), timeout=timeout_ms / 1000.0
            )
        except asyncio.TimeoutError as e:
            raise ExecutionTimeoutError(action.type, timeout_ms) from e

    def _simulate(self, action: AnyAction, start: float) -> ExecutionResult:
        if action.type in ACTION_PARAMS:
            try:
                typed_params(action.type, action.params)
            except ValidationError as e:
                return ExecutionResult(
                    success=False,
                    error=str(e),
                    error_type=type(e).__name__,
                    duration_ms=_elapsed_ms(start),
                    dry_run=True,
                )

        logger.info("action_simulated", action_type=action.type)
        return ExecutionResult(
            success=True,
            duration_ms=_elapsed_ms(start),
            dry_run=True,
            data={
                "simulated": True,
                "action_type": action.type,
                "params": dict(action.params),
            },
        )

    async def _execute_sequential(self, actions: Sequence[AnyAction]) -> List[ExecutionResult]:
        seen = set()
        for action in actions:
            step_id = getattr(action, "id", None)
            for dependency in getattr(action, "dependencies", None) or []:
                if dependency not in seen:
                    raise PlanOrderError(step_id or action.type, dependency)
            if step_id is not None:
                seen.add(step_id)

        results = []
        succeeded = set()
        for action in actions:
            step_id = getattr(action, "id", None)
            failed_dependency = next(
                (d for d in getattr(action, "dependencies", None) or [] if d not in succeeded),
                None,
            )
            if failed_dependency is not None:
                result = self._skip(action, failed_dependency)
            else:
                result = await self.execute(action)
            results.append(result)
            if result.success and step_id is not None:
                succeeded.add(step_id)
            if not result.success and self.config.stop_on_failure:
                logger.info(
                    "batch_stopped",
                    failed_action=action.type,
                    skipped=len(actions) - len(results),
                )
                break
        return results

    def _skip(self, action: AnyAction, dependency: str) -> ExecutionResult:
        error = DependencyFailedError(getattr(action, "id", None) or action.type, dependency)
        logger.info("action_skipped", action_type=action.type, dependency=dependency)
        return ExecutionResult(
            success=False,
            error=str(error),
            error_type=type(error).__name__,
            dry_run=self.config.dry_run,
        )

    async def _execute_parallel(self, actions: Sequence[AnyAction]) -> List[ExecutionResult]:
        semaphore = asyncio.Semaphore(self.config.max_concurrent)

        async def run(action: AnyAction) -> ExecutionResult:
            async with semaphore:
                return await self.execute(action)

        return list(await asyncio.gather(*(run(a) for a in actions)))


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
