"""
Flight Orchestrator - Deterministic Replay

Rebuilds a workflow instance from its durable history by folding every
logged input back through the machine's `step`. Each decision the step
produces must match the next decision recorded in the log; a mismatch
means the workflow code is no longer deterministic with respect to its
history and raises DeterminismViolation.

Besides the state, replay reports what was left open when the worker
stopped, so the runtime can resume at the last suspension point:

  - decisions produced but never recorded (crash between input and decision)
  - activities scheduled but never resolved (re-executed, at-least-once)
  - timers started but never fired (re-armed at their original deadline)
  - children started but never resolved
  - signals accepted but never applied (re-posted to the mailbox)

Usage:
    from engine.replay import replay_history

    outcome = replay_history(machine, log.events(run_id))
    outcome.state        # identical to the pre-crash state
    outcome.unconfirmed  # decisions still to execute
"""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any

from engine.context import (
    Action,
    ActivityResolved,
    ChildResolved,
    CompleteWorkflow,
    ScheduleActivity,
    SignalDelivered,
    StartChild,
    StartTimer,
    TimerFired,
    WorkflowContext,
    WorkflowMachine,
    action_from_event,
    input_from_event,
    Started,
)
from engine.errors import DeterminismViolation
from engine.history import EventType, HistoryEvent
from engine.mailbox import Envelope

logger = logging.getLogger("flight_orchestrator.replay")


@dataclass
class ReplayOutcome:
    """State and open work of a run rebuilt from its history."""
    state: Any = None
    step_index: int = 0
    events_replayed: int = 0
    completed: bool = False
    result: Any = None
    unconfirmed: list[Action] = field(default_factory=list)
    activities: dict[str, ScheduleActivity] = field(default_factory=dict)
    timers: dict[str, StartTimer] = field(default_factory=dict)
    children: dict[str, tuple[StartChild, str]] = field(default_factory=dict)
    unapplied_signals: list[Envelope] = field(default_factory=list)

    @property
    def pending(self) -> int:
        return (len(self.unconfirmed) + len(self.activities) + len(self.timers)
                + len(self.children) + len(self.unapplied_signals))


def replay_history(
    machine: WorkflowMachine,
    events: list[HistoryEvent],
    instance_id: str = "",
    config: dict[str, Any] | None = None,
) -> ReplayOutcome:
    """
    Fold a run's history through `machine`.

    Raises:
        DeterminismViolation: the machine produced decisions that differ
            from the recorded ones, or the history is malformed.
    """
    outcome = ReplayOutcome()
    if not events:
        return outcome
    if events[0].event_type != EventType.EXECUTION_STARTED:
        raise DeterminismViolation(
            f"History must begin with execution_started, got {events[0].event_type.value}",
            run_id=events[0].run_id,
        )

    run_id = events[0].run_id
    expected: deque[Action] = deque()
    received: OrderedDict[str, Envelope] = OrderedDict()

    for event in events:
        outcome.events_replayed += 1

        if event.event_type == EventType.SIGNAL_RECEIVED:
            env = Envelope.from_dict(event.payload)
            received[env.signal_id] = env
            continue

        inp = input_from_event(event)
        if inp is not None:
            if outcome.completed:
                raise DeterminismViolation(
                    f"Input {event.event_type.value} recorded after completion",
                    run_id=run_id, seq=event.seq,
                )
            if expected:
                raise DeterminismViolation(
                    f"Workflow produced {type(expected[0]).__name__} which the history "
                    f"does not record before seq {event.seq}",
                    run_id=run_id, seq=event.seq,
                )
            _resolve(outcome, inp, received)
            if isinstance(inp, Started):
                outcome.state = machine.initial_state(inp.input)
            ctx = WorkflowContext(
                instance_id=instance_id,
                run_id=run_id,
                step_index=outcome.step_index,
                now=inp.at,
                is_replaying=True,
                config=config,
            )
            outcome.state, actions = machine.step(outcome.state, inp, ctx)
            outcome.step_index += 1
            expected.extend(actions)
            continue

        recorded = action_from_event(event)
        if recorded is None:
            continue
        if not expected:
            raise DeterminismViolation(
                f"History records {event.event_type.value} at seq {event.seq} "
                f"but the workflow made no such decision",
                run_id=run_id, seq=event.seq,
            )
        action = expected.popleft()
        if not action.matches(event):
            raise DeterminismViolation(
                f"Decision mismatch at seq {event.seq}: workflow produced "
                f"{action.to_payload()!r}, history records {event.payload!r}",
                run_id=run_id, seq=event.seq,
            )
        _track(outcome, action, event)

    outcome.unconfirmed = list(expected)
    outcome.unapplied_signals = list(received.values())
    logger.debug(
        "Replayed %s: %d events, %d steps, %d open items",
        run_id, outcome.events_replayed, outcome.step_index, outcome.pending,
    )
    return outcome


def _resolve(outcome: ReplayOutcome, inp, received: OrderedDict):
    """Close the open item an input resolves."""
    if isinstance(inp, TimerFired):
        outcome.timers.pop(inp.timer_id, None)
    elif isinstance(inp, ActivityResolved):
        outcome.activities.pop(inp.activity_id, None)
    elif isinstance(inp, ChildResolved):
        outcome.children.pop(inp.child_id, None)
    elif isinstance(inp, SignalDelivered):
        received.pop(inp.signal_id, None)


def _track(outcome: ReplayOutcome, action: Action, event: HistoryEvent):
    """Open the item a confirmed decision starts."""
    if isinstance(action, ScheduleActivity):
        outcome.activities[action.activity_id] = action
    elif isinstance(action, StartTimer):
        outcome.timers[action.timer_id] = action
    elif isinstance(action, StartChild):
        outcome.children[action.child_id] = (action, event.payload.get("run_id", ""))
    elif isinstance(action, CompleteWorkflow):
        outcome.completed = True
        outcome.result = event.payload.get("result")
