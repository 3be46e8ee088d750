"""Interval trigger — fires on a fixed period."""

import asyncio
import contextlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from agent_runtime.triggers.base import (
    Trigger,
    TriggerCallback,
    TriggerStatus,
    invoke_callback,
)

logger = structlog.get_logger(__name__)


class IntervalTrigger(Trigger):
    """
    The next tick is scheduled only after the previous callback completes,
    so firings never overlap. Drift is not corrected.
    """

    trigger_type = "interval"

    def __init__(
        self,
        interval_ms: int,
        start_immediately: bool = False,
        max_executions: Optional[int] = None,
    ):
        super().__init__()
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if max_executions is not None and max_executions < 1:
            raise ValueError("max_executions must be at least 1")
        self.interval_ms = interval_ms
        self.start_immediately = start_immediately
        self.max_executions = max_executions
        self.execution_count = 0
        self._task: Optional[asyncio.Task] = None

    async def _start(self, callback: TriggerCallback) -> None:
        self.execution_count = 0
        self._task = asyncio.create_task(self._run(callback))

    async def _stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def describe(self) -> Dict[str, Any]:
        return dict(
            super().describe(),
            interval_ms=self.interval_ms,
            execution_count=self.execution_count,
            max_executions=self.max_executions,
        )

    async def _run(self, callback: TriggerCallback) -> None:
        interval = self.interval_ms / 1000.0
        if not self.start_immediately:
            await asyncio.sleep(interval)

        while True:
            self.execution_count += 1
            payload = {
                "execution": self.execution_count,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            try:
                await invoke_callback(callback, payload)
            except Exception as e:
                logger.error(
                    "interval_callback_failed",
                    execution=self.execution_count,
                    error=str(e),
                )

            if self.max_executions is not None and self.execution_count >= self.max_executions:
                logger.info("interval_trigger_exhausted", executions=self.execution_count)
                self._set_status(TriggerStatus.EXHAUSTED)
                return
            await asyncio.sleep(interval)
