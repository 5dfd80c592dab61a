"""
Flight Orchestrator - Side-Effect Dispatcher

Executes the activities workflows schedule. Workflow code never calls an
activity directly: it emits ScheduleActivity, the runtime records the
decision, and the dispatcher runs the registered implementation with a
start-to-close timeout and bounded retry. The outcome (success or final
failure) is returned, never raised, and the runtime records it in the
history before the workflow sees it. On replay the recorded outcome is
reused and the implementation is not called again.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from engine.context import ScheduleActivity
from engine.errors import NonRetryableActivityError
from engine.logging import StructuredLogger
from engine.retry import RetryPolicy, call_with_retry

logger = logging.getLogger("flight_orchestrator.dispatcher")

ActivityFn = Callable[..., Any]


class ActivityRegistry:
    """Name -> implementation."""

    def __init__(self):
        self._activities: dict[str, ActivityFn] = {}
        self._lock = threading.Lock()

    def register(self, name: str, fn: ActivityFn) -> None:
        with self._lock:
            self._activities[name] = fn

    def get(self, name: str) -> ActivityFn:
        with self._lock:
            fn = self._activities.get(name)
        if fn is None:
            raise NonRetryableActivityError(f"No activity registered as '{name}'", name=name)
        return fn

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._activities)


@dataclass
class ActivityOutcome:
    activity_id: str
    name: str
    ok: bool
    result: Any = None
    error: str = ""
    attempts: int = 0


class Dispatcher:
    """Runs ScheduleActivity decisions against an ActivityRegistry."""

    def __init__(
        self,
        registry: ActivityRegistry,
        policy: RetryPolicy | None = None,
        timeout_seconds: float | None = 10.0,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self.sleep_fn = sleep_fn

    def execute(self, action: ScheduleActivity,
                slog: StructuredLogger | None = None) -> ActivityOutcome:
        try:
            fn = self.registry.get(action.name)
        except NonRetryableActivityError as e:
            logger.error("%s", e)
            return ActivityOutcome(action.activity_id, action.name, ok=False,
                                   error=str(e), attempts=0)

        result = call_with_retry(
            fn,
            action.args,
            policy=self.policy,
            timeout=self.timeout_seconds,
            name=action.name,
            sleep_fn=self.sleep_fn,
        )
        if slog is not None:
            slog.on_activity_end(action.name, result.ok, result.attempts,
                                 result.total_latency, result.error)
        return ActivityOutcome(
            activity_id=action.activity_id,
            name=action.name,
            ok=result.ok,
            result=result.value if result.ok else None,
            error="" if result.ok else f"{result.error_type}: {result.error}",
            attempts=result.attempts,
        )
