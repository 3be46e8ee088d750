"""
Agent Orchestrator — lifecycle state machine and the event pipeline.

  event → persist → memory → context → plan → policy → execute → record

Triggers only enqueue. A single consumer task drains the bounded queue, so
pipeline runs never overlap and a burst of events cannot exhaust memory.

Behavioral Contract:
- Lifecycle moves only along the transition table; terminated is absorbing
- Every pipeline failure is caught, logged and emitted; the agent keeps running
- Every ActionEntry saved pending is completed exactly once
- Actions rejected by policy, and the steps that depend on them, never execute
- Once access rules exist, events from a sender without execute permission
  are recorded and dropped before planning
"""

import asyncio
import contextlib
import inspect
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set
from uuid import uuid4

import structlog

from agent_runtime.conditions import Condition
from agent_runtime.config import AgentConfig, PolicyMode, StorageBackend
from agent_runtime.errors import (
    FatalConfigurationError,
    InvalidStateTransitionError,
    PlanningError,
)
from agent_runtime.execution.executor import Executor
from agent_runtime.memory.context import ContextBuilder
from agent_runtime.memory.store import MemoryStore, create_memory_backend
from agent_runtime.models.action import ActionPlan, ExecutionResult
from agent_runtime.models.agent import (
    AgentState,
    PendingApproval,
    PipelineOutcome,
    TriggerEvent,
)
from agent_runtime.models.policy import PolicyVerdict
from agent_runtime.models.storage import History, HistoryFilter
from agent_runtime.persistence.store import Persistence, create_persistence, pending_actions
from agent_runtime.planner.base import Planner
from agent_runtime.policy.engine import PolicyEngine
from agent_runtime.triggers.base import Trigger
from agent_runtime.triggers.manager import TriggerManager, TriggerRegistration

logger = structlog.get_logger(__name__)

_TRANSITIONS: Dict[AgentState, Set[AgentState]] = {
    AgentState.CREATED: {AgentState.REGISTERED},
    AgentState.REGISTERED: {AgentState.ACTIVE, AgentState.STOPPED},
    AgentState.ACTIVE: {AgentState.PAUSED, AgentState.STOPPED},
    AgentState.PAUSED: {AgentState.ACTIVE, AgentState.STOPPED},
    AgentState.STOPPED: {AgentState.TERMINATED},
    AgentState.TERMINATED: set(),
}

EVENT_NAMES = frozenset({
    "started",
    "stopped",
    "paused",
    "resumed",
    "terminated",
    "event_received",
    "event_dropped",
    "plan_created",
    "action_rejected",
    "approval_required",
    "actions_executed",
    "error",
})

NOT_EXECUTED = "not executed"
EXECUTE_PERMISSION = "execute"

EventListener = Callable[[Any], Any]


def _event_sender(payload: Any) -> Optional[str]:
    """`sender` at the top of the payload or of a webhook body."""
    if not isinstance(payload, dict):
        return None
    sender = payload.get("sender")
    if sender is None and isinstance(payload.get("body"), dict):
        sender = payload["body"].get("sender")
    return str(sender) if sender is not None else None


class Agent:
    """One autonomous agent: triggers in, planned and policed actions out."""

    def __init__(
        self,
        config: AgentConfig,
        planner: Planner,
        executor: Optional[Executor] = None,
        policy: Optional[PolicyEngine] = None,
        chain_client: Any = None,
        registry: Any = None,
        persistence: Optional[Persistence] = None,
        memory: Optional[MemoryStore] = None,
        context_builder: Optional[ContextBuilder] = None,
    ):
        self.config = config
        self.planner = planner
        self.chain_client = chain_client
        self.registry = registry
        self.executor = executor or Executor(chain_client, config.executor)
        self.policy = policy or PolicyEngine()
        self.persistence = persistence or create_persistence(
            config.storage_backend.value,
            str(config.resolved_storage_path())
            if config.storage_backend == StorageBackend.FILE else None,
        )
        self.memory = memory or MemoryStore(
            create_memory_backend(
                config.memory_backend.value,
                str(config.resolved_memory_path())
                if config.memory_backend == StorageBackend.FILE else None,
            ),
            max_entries=config.memory_max_entries,
            max_tokens=config.memory_max_tokens,
        )
        self.context_builder = context_builder or ContextBuilder(
            config,
            chain_client=chain_client,
            persistence=self.persistence,
            memory=self.memory,
            options=config.context,
        )
        self.triggers = TriggerManager()

        self.state = AgentState.CREATED
        self.agent_id: Optional[str] = None
        self.pending_approvals: List[PendingApproval] = []
        self.started_at: Optional[datetime] = None
        self.processed_count = 0
        self.dropped_count = 0

        self._listeners: Dict[str, List[EventListener]] = {}
        self._listener_tasks: Set[asyncio.Future] = set()
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._resumed: Optional[asyncio.Event] = None
        self._pipeline_lock = asyncio.Lock()
        self._accepting = False
        self._log = logger.bind(agent=config.name)

    # --- Lifecycle ---

    async def register(self) -> str:
        """Register with the on-chain registry: created → registered."""
        self._check_transition(AgentState.REGISTERED)
        if self.registry is None:
            raise FatalConfigurationError("Agent registration requires a registry")
        if self.chain_client is not None:
            if not self.chain_client.is_connected():
                raise FatalConfigurationError("Chain client is not connected")
            if not await self.chain_client.get_signer_address():
                raise FatalConfigurationError("Chain client has no signer configured")

        self.agent_id = await self.registry.register_agent(
            self.config.name, self.config.description, list(self.config.capabilities)
        )
        self.executor.agent_id = self.agent_id
        self.persistence.agent_id = self.agent_id
        self._log = self._log.bind(agent_id=self.agent_id)
        self._transition(AgentState.REGISTERED)
        return self.agent_id

    async def start(self) -> None:
        """registered → active: start the consumer and every enabled trigger."""
        if self.state != AgentState.REGISTERED:
            raise InvalidStateTransitionError(self.state.value, AgentState.ACTIVE.value)

        self._queue = asyncio.Queue(maxsize=self.config.queue_size)
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._accepting = True
        self._consumer = asyncio.create_task(self._consume())
        self.started_at = datetime.now(timezone.utc)
        self._transition(AgentState.ACTIVE)

        await self.triggers.start_all(self._on_trigger)
        await self._emit("started", {"agent_id": self.agent_id})

    async def pause(self) -> None:
        """Events are dropped (or held, with queue_while_paused) until resumed."""
        self._transition(AgentState.PAUSED)
        if self._resumed is not None:
            self._resumed.clear()
        await self._emit("paused", {"agent_id": self.agent_id})

    async def resume(self) -> None:
        if self.state != AgentState.PAUSED:
            raise InvalidStateTransitionError(self.state.value, AgentState.ACTIVE.value)
        self._transition(AgentState.ACTIVE)
        if self._resumed is not None:
            self._resumed.set()
        await self._emit("resumed", {"agent_id": self.agent_id})

    async def stop(self) -> None:
        """
        Stop accepting events, stop triggers, let the in-flight pipeline run
        finish, drop whatever is still queued, flush persistence.
        """
        self._check_transition(AgentState.STOPPED)
        self._accepting = False
        await self.triggers.cleanup()

        dropped = self._drain_queue()
        if dropped:
            self.dropped_count += dropped
            self._log.warning("queued_events_dropped", count=dropped, reason="stopping")

        async with self._pipeline_lock:
            consumer, self._consumer = self._consumer, None
            if consumer is not None:
                consumer.cancel()
        if consumer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await consumer

        self.persistence.flush()
        self._transition(AgentState.STOPPED)
        await self._emit("stopped", {"agent_id": self.agent_id, "dropped": dropped})

    async def terminate(self) -> None:
        """Stop if needed, deactivate in the registry, and never run again."""
        if self.state in (AgentState.REGISTERED, AgentState.ACTIVE, AgentState.PAUSED):
            await self.stop()
        self._check_transition(AgentState.TERMINATED)

        if self.registry is not None and self.agent_id is not None:
            await self.registry.deactivate_agent(self.agent_id)
        self._transition(AgentState.TERMINATED)
        await self._emit("terminated", {"agent_id": self.agent_id})

    # --- Triggers ---

    def register_trigger(
        self,
        trigger: Trigger,
        goal: Optional[Any] = None,
        trigger_id: Optional[str] = None,
        enabled: bool = True,
        conditions: Optional[Sequence[Condition]] = None,
    ) -> str:
        return self.triggers.register(
            trigger, trigger_id=trigger_id, goal=goal, enabled=enabled, conditions=conditions
        )

    async def enable_trigger(self, trigger_id: str) -> None:
        await self.triggers.enable(trigger_id)

    async def disable_trigger(self, trigger_id: str) -> None:
        await self.triggers.disable(trigger_id)

    async def fire_trigger(self, trigger_id: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Fire a registered trigger by hand; its event is queued like any other."""
        await self.triggers.fire(trigger_id, data)

    def submit(
        self,
        payload: Any,
        goal: Optional[Any] = None,
        trigger_id: Optional[str] = None,
    ) -> bool:
        """Enqueue an event for the pipeline. Returns False when it was dropped."""
        reason = None
        if not self._accepting or self._queue is None:
            reason = "not_running"
        elif self.state == AgentState.PAUSED and not self.config.queue_while_paused:
            reason = "paused"

        if reason is None:
            event = TriggerEvent(
                payload=payload,
                goal=goal,
                trigger_id=trigger_id,
                received_at=datetime.now(timezone.utc),
            )
            try:
                self._queue.put_nowait(event)
                return True
            except asyncio.QueueFull:
                reason = "queue_full"

        self.dropped_count += 1
        self._log.warning("event_dropped", reason=reason, trigger_id=trigger_id)
        self._emit_nowait("event_dropped", {"reason": reason, "trigger_id": trigger_id})
        return False

    async def _on_trigger(self, registration: TriggerRegistration, payload: Any) -> None:
        self.submit(payload, goal=registration.goal, trigger_id=registration.id)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._resumed.wait()
                async with self._pipeline_lock:
                    if not self._accepting:
                        continue
                    await self._run_pipeline(event.payload, event.goal, event.trigger_id)
            finally:
                self._queue.task_done()

    def _drain_queue(self) -> int:
        dropped = 0
        while self._queue is not None and not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        return dropped

    # --- Pipeline ---

    async def process_event(
        self,
        payload: Any,
        goal: Optional[Any] = None,
        trigger_id: Optional[str] = None,
    ) -> PipelineOutcome:
        """Run one pipeline pass now, serialized with queued events."""
        async with self._pipeline_lock:
            return await self._run_pipeline(payload, goal, trigger_id)

    async def _run_pipeline(
        self,
        payload: Any,
        goal: Optional[Any],
        trigger_id: Optional[str],
    ) -> PipelineOutcome:
        outcome = PipelineOutcome(trigger_id=trigger_id)
        self.processed_count += 1
        try:
            event_entry = self.persistence.save_event(payload, {"trigger_id": trigger_id})
            outcome.event_id = event_entry.id
            await self._emit("event_received", event_entry)

            sender = _event_sender(payload)
            if (
                sender is not None
                and self.policy.has_access_rules
                and not self.policy.check_permission(sender, EXECUTE_PERMISSION)
            ):
                outcome.success = False
                outcome.error = f"Sender {sender} lacks {EXECUTE_PERMISSION} permission"
                outcome.error_type = "PermissionDenied"
                self.dropped_count += 1
                self._log.warning("event_dropped", reason="permission_denied", sender=sender)
                await self._emit("event_dropped", {
                    "reason": "permission_denied",
                    "trigger_id": trigger_id,
                    "sender": sender,
                })
                return outcome

            self.memory.add_input(payload, {"event_id": event_entry.id, "trigger_id": trigger_id})

            outcome.goal = self._resolve_goal(payload, goal)
            context = await self.context_builder.build(
                metadata={"event_id": event_entry.id, "trigger_id": trigger_id}
            )
            outcome.plans = await self.planner.plan(outcome.goal, context)
            self._log.info("plan_created", event_id=event_entry.id, steps=len(outcome.plans))
            await self._emit("plan_created", outcome.plans)

            outcome.approved = await self._apply_policy(outcome)
            if outcome.approved:
                outcome.results = await self._execute(outcome)
                await self._emit("actions_executed", outcome.results)

            # Held, rejected or skipped steps leave plans without a result
            outcome.success = (
                len(outcome.results) == len(outcome.plans)
                and all(r.success for r in outcome.results)
            )
            self._remember(outcome)
        except Exception as e:
            outcome.success = False
            outcome.error = str(e)
            outcome.error_type = type(e).__name__
            if isinstance(e, PlanningError):
                outcome.raw_response = e.raw_response
            self._log.error(
                "pipeline_failed",
                event_id=outcome.event_id,
                error_type=outcome.error_type,
                error=outcome.error,
            )
            await self._emit("error", {
                "event_id": outcome.event_id,
                "error": outcome.error,
                "error_type": outcome.error_type,
                "raw_response": outcome.raw_response,
            })
        return outcome

    def _resolve_goal(self, payload: Any, goal: Optional[Any]) -> Any:
        """Payload goal, then trigger goal, then configured default."""
        if isinstance(payload, dict):
            if payload.get("goal") is not None:
                return payload["goal"]
            body = payload.get("body")
            if isinstance(body, dict) and body.get("goal") is not None:
                return body["goal"]
        if goal is not None:
            return goal
        if self.config.goal is not None:
            return self.config.goal
        raise PlanningError("No goal in the event, the trigger or the agent config")

    async def _apply_policy(self, outcome: PipelineOutcome) -> List[ActionPlan]:
        approved: List[ActionPlan] = []
        held: Set[str] = set()

        for plan in outcome.plans:
            if any(d in held for d in plan.dependencies):
                outcome.skipped.append(plan)
                if plan.id is not None:
                    held.add(plan.id)
                self._log.info("action_skipped", step_id=plan.id, action_type=plan.type)
                continue

            candidate = plan
            if self.config.policy_mode == PolicyMode.OVERRIDE:
                candidate = self.policy.override_action(plan)

            if self.config.delay_on_rate_limit:
                delay_ms = self.policy.should_delay(candidate)
                if delay_ms:
                    self._log.info("rate_limit_wait", action_type=candidate.type, delay_ms=delay_ms)
                    await asyncio.sleep(delay_ms / 1000.0)

            decision = self.policy.evaluate(candidate)
            if decision.verdict == PolicyVerdict.APPROVED:
                approved.append(candidate)
                continue

            if plan.id is not None:
                held.add(plan.id)
            if decision.verdict == PolicyVerdict.PENDING_APPROVAL:
                approval = PendingApproval(
                    id=f"apr_{uuid4().hex[:12]}",
                    plan=candidate,
                    decision=decision,
                    event_id=outcome.event_id,
                    created_at=datetime.now(timezone.utc),
                )
                self.pending_approvals.append(approval)
                outcome.pending_approval.append(approval)
                await self._emit("approval_required", approval)
            else:
                outcome.rejected.append(decision)
                await self._emit("action_rejected", decision)

        return approved

    async def _execute(self, outcome: PipelineOutcome) -> List[ExecutionResult]:
        entries = [
            self.persistence.save_action(
                plan.to_action(),
                metadata={
                    "event_id": outcome.event_id,
                    "step_id": plan.id,
                    "reason": plan.reason,
                },
            )
            for plan in outcome.approved
        ]
        outcome.action_entry_ids = [e.id for e in entries]

        try:
            results = await self.executor.execute_all(outcome.approved)
        except Exception as e:
            failure = self._unexecuted_result(str(e), type(e).__name__)
            for entry in entries:
                self.persistence.complete_action(entry.id, failure)
            raise

        for index, entry in enumerate(entries):
            if index < len(results):
                self.persistence.complete_action(entry.id, results[index])
            else:
                self.persistence.complete_action(entry.id, self._unexecuted_result())
        return results

    def _unexecuted_result(
        self, error: str = NOT_EXECUTED, error_type: str = "NotExecuted"
    ) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            error=error,
            error_type=error_type,
            dry_run=self.config.executor.dry_run,
        )

    def _remember(self, outcome: PipelineOutcome) -> None:
        self.memory.add_output(
            {
                "event_id": outcome.event_id,
                "goal": outcome.goal,
                "success": outcome.success,
                "results": [
                    {
                        "type": plan.type,
                        "success": result.success,
                        "tx_hash": result.tx_hash,
                        "error": result.error,
                    }
                    for plan, result in zip(outcome.approved, outcome.results)
                ],
                "rejected": [d.action_type for d in outcome.rejected],
                "pending_approval": [a.plan.type for a in outcome.pending_approval],
            },
            {"event_id": outcome.event_id},
        )

    # --- Approvals ---

    async def resolve_approval(
        self, approval_id: str, approve: bool
    ) -> Optional[ExecutionResult]:
        """
        Execute (approve=True) or discard a held action. Approved actions
        bypass the approval guard but not the executor's own checks.
        """
        approval = next((a for a in self.pending_approvals if a.id == approval_id), None)
        if approval is None:
            return None
        self.pending_approvals.remove(approval)

        if not approve:
            self._log.info("approval_rejected", approval_id=approval_id)
            return None

        async with self._pipeline_lock:
            entry = self.persistence.save_action(
                approval.plan.to_action(),
                metadata={"event_id": approval.event_id, "approval_id": approval_id},
            )
            result = await self.executor.execute(approval.plan)
            self.persistence.complete_action(entry.id, result)
        self._log.info("approval_executed", approval_id=approval_id, success=result.success)
        return result

    # --- Observation ---

    def on(self, event_name: str, listener: EventListener) -> None:
        if event_name not in EVENT_NAMES:
            raise ValueError(f"Unknown agent event: {event_name}")
        self._listeners.setdefault(event_name, []).append(listener)

    def off(self, event_name: str, listener: EventListener) -> None:
        listeners = self._listeners.get(event_name, [])
        self._listeners[event_name] = [fn for fn in listeners if fn != listener]

    def status(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "name": self.config.name,
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "dry_run": self.config.executor.dry_run,
            "queue_depth": self._queue.qsize() if self._queue is not None else 0,
            "processed": self.processed_count,
            "dropped": self.dropped_count,
            "pending_approvals": len(self.pending_approvals),
            "pending_actions": len(pending_actions(self.persistence)),
            "storage": self.persistence.size(),
            "triggers": [r.describe() for r in self.triggers.list()],
        }

    def history(self, history_filter: Optional[HistoryFilter] = None) -> History:
        if history_filter is None:
            return self.persistence.get_history()
        return History(
            events=self.persistence.get_events(history_filter),
            actions=self.persistence.get_actions(history_filter),
        )

    # --- Internals ---

    def _check_transition(self, target: AgentState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(self.state.value, target.value)

    def _transition(self, target: AgentState) -> None:
        self._check_transition(target)
        previous, self.state = self.state, target
        self._log.info("agent_state_changed", previous=previous.value, state=target.value)

    async def _emit(self, event_name: str, data: Any) -> None:
        for listener in list(self._listeners.get(event_name, [])):
            try:
                result = listener(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._log.error("listener_failed", event_name=event_name, error=str(e))

    def _emit_nowait(self, event_name: str, data: Any) -> None:
        for listener in list(self._listeners.get(event_name, [])):
            try:
                result = listener(data)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(
                        lambda t, name=event_name: self._on_listener_done(name, t)
                    )
            except Exception as e:
                self._log.error("listener_failed", event_name=event_name, error=str(e))

    def _on_listener_done(self, event_name: str, task: asyncio.Future) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._log.error("listener_failed", event_name=event_name, error=str(task.exception()))
