"""
Flight Orchestrator - Workflow Contract

A workflow is a pure state machine:

    step(state, input, ctx) -> (new_state, [actions])

Inputs are everything the outside world tells the workflow (start, timer
fire, signal, activity outcome, child outcome). Actions are everything
the workflow asks the outside world to do (run an activity, start a
timer, start or signal a child, complete). The runtime logs every input
before acting on the decisions it produced, and replay feeds the logged
inputs back through `step` to rebuild the exact same state.

Workflow code may only read time, randomness and ids from its
WorkflowContext. All three are derived from the logged history, so a
replayed step sees the same values as the original step.
"""

from __future__ import annotations

import abc
import hashlib
import json
import random
import uuid
from dataclasses import dataclass, field
from typing import Any, Union

from engine.history import EventType, HistoryEvent
from engine.logging import ReplayAwareLogger, get_logger


# ═══════════════════════════════════════════════════════════════════
# Inputs
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Started:
    input: dict[str, Any]
    at: float = 0.0


@dataclass(frozen=True)
class TimerFired:
    timer_id: str
    at: float = 0.0


@dataclass(frozen=True)
class SignalDelivered:
    signal_id: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    at: float = 0.0


@dataclass(frozen=True)
class ActivityResolved:
    activity_id: str
    name: str
    ok: bool
    result: Any = None
    error: str = ""
    attempts: int = 1
    at: float = 0.0


@dataclass(frozen=True)
class ChildResolved:
    child_id: str
    ok: bool
    result: Any = None
    error: str = ""
    at: float = 0.0


WorkflowInput = Union[Started, TimerFired, SignalDelivered, ActivityResolved, ChildResolved]


def input_to_event(inp: WorkflowInput) -> tuple[EventType, dict[str, Any]]:
    """History event recorded for an input."""
    if isinstance(inp, Started):
        return EventType.EXECUTION_STARTED, {"input": inp.input, "at": inp.at}
    if isinstance(inp, TimerFired):
        return EventType.TIMER_FIRED, {"timer_id": inp.timer_id, "at": inp.at}
    if isinstance(inp, SignalDelivered):
        return EventType.SIGNAL_APPLIED, {
            "signal_id": inp.signal_id, "name": inp.name,
            "payload": inp.payload, "at": inp.at,
        }
    if isinstance(inp, ActivityResolved):
        event_type = EventType.ACTIVITY_COMPLETED if inp.ok else EventType.ACTIVITY_FAILED
        return event_type, {
            "activity_id": inp.activity_id, "name": inp.name,
            "result": inp.result, "error": inp.error,
            "attempts": inp.attempts, "at": inp.at,
        }
    if isinstance(inp, ChildResolved):
        return EventType.CHILD_COMPLETED, {
            "child_id": inp.child_id, "ok": inp.ok,
            "result": inp.result, "error": inp.error, "at": inp.at,
        }
    raise TypeError(f"Not a workflow input: {inp!r}")


def input_from_event(event: HistoryEvent) -> WorkflowInput | None:
    """Rebuild the input a history event records, or None for decision events."""
    p = event.payload
    t = event.event_type
    if t == EventType.EXECUTION_STARTED:
        return Started(input=p["input"], at=p["at"])
    if t == EventType.TIMER_FIRED:
        return TimerFired(timer_id=p["timer_id"], at=p["at"])
    if t == EventType.SIGNAL_APPLIED:
        return SignalDelivered(signal_id=p["signal_id"], name=p["name"],
                               payload=p.get("payload") or {}, at=p["at"])
    if t in (EventType.ACTIVITY_COMPLETED, EventType.ACTIVITY_FAILED):
        return ActivityResolved(
            activity_id=p["activity_id"], name=p["name"],
            ok=t == EventType.ACTIVITY_COMPLETED,
            result=p.get("result"), error=p.get("error", ""),
            attempts=p.get("attempts", 1), at=p["at"],
        )
    if t == EventType.CHILD_COMPLETED:
        return ChildResolved(child_id=p["child_id"], ok=p["ok"],
                             result=p.get("result"), error=p.get("error", ""),
                             at=p["at"])
    return None


# ═══════════════════════════════════════════════════════════════════
# Actions
# ═══════════════════════════════════════════════════════════════════

class Action:
    """A decision produced by a workflow step."""
    event_type: EventType

    def to_payload(self) -> dict[str, Any]:
        raise NotImplementedError

    def matches(self, event: HistoryEvent) -> bool:
        """True if `event` is the history record of this decision."""
        if event.event_type != self.event_type:
            return False
        expected = json.loads(json.dumps(self.to_payload()))
        return all(event.payload.get(k) == v for k, v in expected.items())


@dataclass(frozen=True)
class ScheduleActivity(Action):
    activity_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    event_type = EventType.ACTIVITY_SCHEDULED

    def to_payload(self):
        return {"activity_id": self.activity_id, "name": self.name, "args": self.args}


@dataclass(frozen=True)
class StartTimer(Action):
    timer_id: str
    seconds: float
    fire_at: float
    event_type = EventType.TIMER_STARTED

    def to_payload(self):
        return {"timer_id": self.timer_id, "seconds": self.seconds, "fire_at": self.fire_at}


@dataclass(frozen=True)
class StartChild(Action):
    child_id: str
    workflow_type: str
    input: dict[str, Any] = field(default_factory=dict)
    event_type = EventType.CHILD_STARTED

    def to_payload(self):
        return {"child_id": self.child_id, "workflow_type": self.workflow_type,
                "input": self.input}


@dataclass(frozen=True)
class SignalChild(Action):
    child_id: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    event_type = EventType.CHILD_SIGNALED

    def to_payload(self):
        return {"child_id": self.child_id, "name": self.name, "payload": self.payload}


@dataclass(frozen=True)
class CompleteWorkflow(Action):
    result: Any = None
    event_type = EventType.EXECUTION_COMPLETED

    def to_payload(self):
        return {"result": self.result}


def action_from_event(event: HistoryEvent) -> Action | None:
    """Rebuild the decision a history event records, or None for inputs."""
    p = event.payload
    t = event.event_type
    if t == EventType.ACTIVITY_SCHEDULED:
        return ScheduleActivity(p["activity_id"], p["name"], p.get("args") or {})
    if t == EventType.TIMER_STARTED:
        return StartTimer(p["timer_id"], p["seconds"], p["fire_at"])
    if t == EventType.CHILD_STARTED:
        return StartChild(p["child_id"], p["workflow_type"], p.get("input") or {})
    if t == EventType.CHILD_SIGNALED:
        return SignalChild(p["child_id"], p["name"], p.get("payload") or {})
    if t == EventType.EXECUTION_COMPLETED:
        return CompleteWorkflow(p.get("result"))
    return None


# ═══════════════════════════════════════════════════════════════════
# Workflow Context
# ═══════════════════════════════════════════════════════════════════

class WorkflowContext:
    """
    Deterministic services for one workflow step.

    now():     the logical time of the input being processed
    random():  RNG seeded from (run_id, step_index)
    uuid4():   ids drawn from that RNG
    log:       a logger that stays silent during replay
    """

    def __init__(
        self,
        instance_id: str,
        run_id: str,
        step_index: int,
        now: float,
        is_replaying: bool = False,
        config: dict[str, Any] | None = None,
    ):
        self.instance_id = instance_id
        self.run_id = run_id
        self.step_index = step_index
        self._now = now
        self.is_replaying = is_replaying
        self.config = config or {}
        seed = hashlib.sha256(f"{run_id}:{step_index}".encode()).digest()
        self._rng = random.Random(int.from_bytes(seed[:8], "big"))
        self._seq = 0
        self.log = ReplayAwareLogger(
            get_logger("workflow"), lambda: self.is_replaying, instance_id)

    def now(self) -> float:
        return self._now

    def random(self) -> random.Random:
        return self._rng

    def uuid4(self) -> str:
        return str(uuid.UUID(int=self._rng.getrandbits(128), version=4))

    def next_id(self, prefix: str) -> str:
        """Ids unique within the run: <prefix>-<step>-<n>."""
        self._seq += 1
        return f"{prefix}-{self.step_index}-{self._seq}"


# ═══════════════════════════════════════════════════════════════════
# Workflow Machine
# ═══════════════════════════════════════════════════════════════════

class WorkflowMachine(abc.ABC):
    """Pure workflow definition registered with the runtime."""

    workflow_type: str = ""

    def validate_input(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate and enrich the start input at admission. The returned
        dict is what gets logged in `execution_started`."""
        return dict(data)

    def validate_signal(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Validate a signal before it is accepted. Raise InvalidArgument."""
        return dict(payload)

    @abc.abstractmethod
    def initial_state(self, data: dict[str, Any]) -> Any: ...

    @abc.abstractmethod
    def step(self, state: Any, inp: WorkflowInput,
             ctx: WorkflowContext) -> tuple[Any, list[Action]]: ...

    @abc.abstractmethod
    def query(self, state: Any, kind: str) -> Any:
        """Read-only view of the state. Raise InvalidArgument for unknown kinds."""
