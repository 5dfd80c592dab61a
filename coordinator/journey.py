"""
Flight Orchestrator - Multi-Leg Journey

Runs a journey's legs one after another, each as a child flight workflow
keyed flight-<number>-<date>:

  for each leg i:
    cancelled?          -> legs i.. are CANCELLED, journey ends
    start child, wait for its terminal phase
    child CANCELLED     -> legs i+1.. are CANCELLED, journey ends
    otherwise           -> carry the aircraft onto leg i+1, turnaround

A child whose start or execution fails counts as CANCELLED.

Children are abandoned when the journey ends: a flight already launched
keeps running. With `cancel_active_leg` enabled, cancel_journey is also
forwarded to the running leg as a flight cancel.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from coordinator.flight import FLIGHT_WORKFLOW
from coordinator.types import (
    JOURNEY_QUERIES,
    Flight,
    Phase,
    QueryKind,
    SignalName,
    validate_journey,
    validate_signal_payload,
)
from engine.context import (
    Action,
    ChildResolved,
    CompleteWorkflow,
    SignalChild,
    SignalDelivered,
    StartChild,
    Started,
    StartTimer,
    TimerFired,
    WorkflowContext,
    WorkflowInput,
    WorkflowMachine,
)
from engine.errors import InvalidArgument
from engine.registry import flight_instance_id

JOURNEY_WORKFLOW = "journey"


@dataclass(frozen=True)
class JourneyState:
    journey_id: str
    legs: tuple[Flight, ...]
    current_leg: int = 0
    turnaround_seconds: float = 1.0
    cancel_active_leg: bool = False
    cancelled: bool = False
    cancel_reason: str = ""
    awaiting_child: str = ""
    awaiting_timer: str = ""
    finished: bool = False


class JourneyMachine(WorkflowMachine):
    workflow_type = JOURNEY_WORKFLOW

    def __init__(self, turnaround_seconds: float = 1.0, cancel_active_leg: bool = False):
        self.turnaround_seconds = turnaround_seconds
        self.cancel_active_leg = cancel_active_leg

    def validate_input(self, data: dict[str, Any]) -> dict[str, Any]:
        journey = validate_journey(data.get("journey_id", ""), data.get("legs") or [])
        return {
            "journey_id": journey.journey_id,
            "legs": [leg.to_dict() for leg in journey.legs],
            "turnaround_seconds": float(data.get("turnaround_seconds", self.turnaround_seconds)),
            "cancel_active_leg": bool(data.get("cancel_active_leg", self.cancel_active_leg)),
        }

    def validate_signal(self, name, payload):
        if name != SignalName.CANCEL_JOURNEY.value:
            raise InvalidArgument(f"Journey workflows do not accept signal '{name}'")
        return validate_signal_payload(name, payload)

    def initial_state(self, data: dict[str, Any]) -> JourneyState:
        legs = tuple(
            Flight.from_dict(d).with_phase(Phase.SCHEDULED) for d in data.get("legs", [])
        )
        return JourneyState(
            journey_id=data.get("journey_id", ""),
            legs=legs,
            turnaround_seconds=float(data.get("turnaround_seconds", 1.0)),
            cancel_active_leg=bool(data.get("cancel_active_leg", False)),
        )

    # ─── Step ────────────────────────────────────────────────────────

    def step(self, state: JourneyState, inp: WorkflowInput,
             ctx: WorkflowContext) -> tuple[JourneyState, list[Action]]:
        if state.finished:
            return state, []
        if isinstance(inp, Started):
            ctx.log.info("Journey %s starting with %d leg(s)", state.journey_id, len(state.legs))
            return self._launch(state, 0, ctx)
        if isinstance(inp, SignalDelivered):
            return self._apply_cancel(state, inp, ctx)
        if isinstance(inp, ChildResolved) and inp.child_id == state.awaiting_child:
            return self._leg_finished(replace(state, awaiting_child=""), inp, ctx)
        if isinstance(inp, TimerFired) and inp.timer_id == state.awaiting_timer:
            return self._launch(replace(state, awaiting_timer=""), state.current_leg + 1, ctx)
        return state, []

    def _apply_cancel(self, state: JourneyState, inp: SignalDelivered,
                      ctx: WorkflowContext) -> tuple[JourneyState, list[Action]]:
        if inp.name != SignalName.CANCEL_JOURNEY.value or state.cancelled:
            return state, []
        reason = inp.payload["reason"]
        ctx.log.info("Journey %s cancellation requested: %s", state.journey_id, reason)
        state = replace(state, cancelled=True, cancel_reason=reason)
        actions: list[Action] = []
        if state.cancel_active_leg and state.awaiting_child:
            actions.append(SignalChild(state.awaiting_child, SignalName.CANCEL.value,
                                       {"reason": f"Journey cancelled: {reason}"}))
        return state, actions

    def _launch(self, state: JourneyState, index: int,
                ctx: WorkflowContext) -> tuple[JourneyState, list[Action]]:
        if state.cancelled:
            ctx.log.info("Journey %s cancelled before leg %d", state.journey_id, index)
            state = self._cancel_from(replace(state, current_leg=min(index, len(state.legs) - 1)), index)
            return self._finish(state)

        leg = state.legs[index]
        child_id = flight_instance_id(leg.flight_number, leg.flight_date)
        ctx.log.info("Journey %s leg %d: starting %s", state.journey_id, index, child_id)
        start = StartChild(child_id, FLIGHT_WORKFLOW,
                           {"flight": replace(leg, phase=None).to_dict()})
        return replace(state, current_leg=index, awaiting_child=child_id), [start]

    def _leg_finished(self, state: JourneyState, inp: ChildResolved,
                      ctx: WorkflowContext) -> tuple[JourneyState, list[Action]]:
        index = state.current_leg
        legs = list(state.legs)

        if not inp.ok:
            ctx.log.warning("Journey %s leg %d failed: %s", state.journey_id, index, inp.error)
            legs[index] = legs[index].with_phase(Phase.CANCELLED)
            state = self._cancel_from(replace(state, legs=tuple(legs)), index + 1)
            return self._finish(state)

        finished = Flight.from_dict(inp.result or {})
        legs[index] = finished
        if finished.phase == Phase.CANCELLED:
            ctx.log.info("Journey %s leg %d was cancelled; cancelling remaining legs",
                         state.journey_id, index)
            state = self._cancel_from(replace(state, legs=tuple(legs)), index + 1)
            return self._finish(state)

        if index + 1 >= len(legs):
            return self._finish(replace(state, legs=tuple(legs)))

        if finished.aircraft:
            legs[index + 1] = replace(legs[index + 1], aircraft=finished.aircraft)
        timer_id = ctx.next_id("turnaround")
        seconds = state.turnaround_seconds
        state = replace(state, legs=tuple(legs), awaiting_timer=timer_id)
        return state, [StartTimer(timer_id, seconds, ctx.now() + seconds)]

    @staticmethod
    def _cancel_from(state: JourneyState, index: int) -> JourneyState:
        legs = tuple(
            leg.with_phase(Phase.CANCELLED) if i >= index else leg
            for i, leg in enumerate(state.legs)
        )
        return replace(state, legs=legs)

    @staticmethod
    def _finish(state: JourneyState) -> tuple[JourneyState, list[Action]]:
        state = replace(state, finished=True)
        return state, [CompleteWorkflow([leg.to_dict() for leg in state.legs])]

    # ─── Queries ─────────────────────────────────────────────────────

    def query(self, state: JourneyState, kind: str) -> Any:
        if kind == QueryKind.JOURNEY_STATUS.value:
            return [leg.to_dict() for leg in state.legs]
        if kind == QueryKind.CURRENT_LEG_INDEX.value:
            return state.current_leg
        known = ", ".join(q.value for q in JOURNEY_QUERIES)
        raise InvalidArgument(f"Unknown journey query '{kind}' (expected one of: {known})")
