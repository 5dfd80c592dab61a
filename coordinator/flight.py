"""
Flight Orchestrator - Flight State Machine

Walks one flight through SCHEDULED -> BOARDING -> DEPARTED -> IN_FLIGHT
-> LANDED -> COMPLETED, sleeping a configured duration in each phase.

Per phase P:
  1. enter P (signals accepted so far are already applied)
  2. publish and persist the transition (previous -> P)
  3. start the phase timer and suspend
  4. on wake, if cancel is latched: publish (P -> CANCELLED) and finish

Signals while suspended:
  announce_delay  overwrites the delay (last wins)
  change_gate     overwrites the gate (last wins)
  cancel          latches; the first reason is kept

Publishing and persisting are activities: a terminal failure of either
is logged and the flight moves on.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from coordinator.timing import TimingConfig, describe_duration, resolve_timing
from coordinator.types import (
    FLIGHT_QUERIES,
    FLIGHT_SIGNALS,
    TRANSITION_EVENT_TYPE,
    Flight,
    Phase,
    QueryKind,
    SignalName,
    Transition,
    validate_flight,
    validate_signal_payload,
)
from engine.context import (
    Action,
    ActivityResolved,
    CompleteWorkflow,
    ScheduleActivity,
    SignalDelivered,
    Started,
    StartTimer,
    TimerFired,
    WorkflowContext,
    WorkflowInput,
    WorkflowMachine,
)
from engine.errors import InvalidArgument

FLIGHT_WORKFLOW = "flight"
PUBLISH_ACTIVITY = "publish_transition_event"
PERSIST_ACTIVITY = "persist_transition"


@dataclass(frozen=True)
class FlightState:
    flight: Flight
    phase_seconds: dict[str, float] = field(default_factory=dict)
    utc_offset_minutes: int = 0
    cancelled: bool = False
    cancel_reason: str = ""
    awaiting_timer: str = ""
    transitions_emitted: int = 0


class FlightMachine(WorkflowMachine):
    workflow_type = FLIGHT_WORKFLOW

    def __init__(self, timing: TimingConfig | None = None):
        self.timing = timing or TimingConfig()

    # ─── Admission ───────────────────────────────────────────────────

    def validate_input(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Accepts {"flight": {...}} or a bare flight dict. Resolves phase
        durations and the local UTC offset once, so both are fixed in
        the history.
        """
        raw = data.get("flight", data) if isinstance(data, dict) else data
        flight = validate_flight(raw)
        timing = data.get("timing") if isinstance(data, dict) else None
        if not timing:
            timing = resolve_timing(flight, self.timing)
        offset = data.get("utc_offset_minutes") if isinstance(data, dict) else None
        if offset is None:
            local_offset = datetime.now().astimezone().utcoffset() or timedelta(0)
            offset = int(local_offset.total_seconds() // 60)
        return {
            "flight": flight.to_dict(),
            "timing": timing,
            "utc_offset_minutes": offset,
        }

    def validate_signal(self, name, payload):
        if name not in {s.value for s in FLIGHT_SIGNALS}:
            raise InvalidArgument(f"Flight workflows do not accept signal '{name}'")
        return validate_signal_payload(name, payload)

    def initial_state(self, data: dict[str, Any]) -> FlightState:
        return FlightState(
            flight=Flight.from_dict(data["flight"]),
            phase_seconds=dict((data.get("timing") or {}).get("seconds") or {}),
            utc_offset_minutes=int(data.get("utc_offset_minutes", 0)),
        )

    # ─── Step ────────────────────────────────────────────────────────

    def step(self, state: FlightState, inp: WorkflowInput,
             ctx: WorkflowContext) -> tuple[FlightState, list[Action]]:
        if isinstance(inp, Started):
            return self._enter(state, Phase.SCHEDULED, ctx)
        if isinstance(inp, SignalDelivered):
            return self._apply_signal(state, inp, ctx), []
        if isinstance(inp, TimerFired):
            if inp.timer_id != state.awaiting_timer:
                return state, []
            state = replace(state, awaiting_timer="")
            if state.cancelled:
                return self._cancel(state, ctx)
            return self._enter(state, state.flight.phase.successor(), ctx)
        if isinstance(inp, ActivityResolved):
            if not inp.ok:
                ctx.log.warning("%s failed after %d attempt(s): %s; continuing",
                                inp.name, inp.attempts, inp.error)
            return state, []
        return state, []

    def _apply_signal(self, state: FlightState, inp: SignalDelivered,
                      ctx: WorkflowContext) -> FlightState:
        flight = state.flight
        if inp.name == SignalName.ANNOUNCE_DELAY.value:
            ctx.log.info("Delay announced for %s: %d minutes",
                         flight.flight_number, inp.payload["minutes"])
            return replace(state, flight=replace(flight, delay_minutes=inp.payload["minutes"]))
        if inp.name == SignalName.CHANGE_GATE.value:
            ctx.log.info("Gate change for %s: %s -> %s",
                         flight.flight_number, flight.gate, inp.payload["new_gate"])
            return replace(state, flight=replace(flight, gate=inp.payload["new_gate"]))
        if inp.name == SignalName.CANCEL.value:
            if state.cancelled:
                return state
            ctx.log.info("Cancellation requested for %s: %s",
                         flight.flight_number, inp.payload["reason"])
            return replace(state, cancelled=True, cancel_reason=inp.payload["reason"])
        return state

    def _enter(self, state: FlightState, phase: Phase,
               ctx: WorkflowContext) -> tuple[FlightState, list[Action]]:
        previous = state.flight.phase
        state = replace(state, flight=state.flight.with_phase(phase))
        actions = self._emit(state, previous, phase, ctx)
        state = replace(state, transitions_emitted=state.transitions_emitted + 1)

        if phase == Phase.COMPLETED:
            ctx.log.info("Flight %s completed", state.flight.flight_number)
            actions.append(CompleteWorkflow(state.flight.to_dict()))
            return state, actions

        seconds = state.phase_seconds.get(phase.value, 60.0)
        timer_id = ctx.next_id(f"phase-{phase.value.lower()}")
        ctx.log.info("%s in %s for %s", state.flight.flight_number, phase.value,
                     describe_duration(seconds))
        actions.append(StartTimer(timer_id, seconds, ctx.now() + seconds))
        return replace(state, awaiting_timer=timer_id), actions

    def _cancel(self, state: FlightState,
                ctx: WorkflowContext) -> tuple[FlightState, list[Action]]:
        previous = state.flight.phase
        state = replace(state, flight=state.flight.with_phase(Phase.CANCELLED))
        actions = self._emit(state, previous, Phase.CANCELLED, ctx,
                             reason=state.cancel_reason)
        ctx.log.info("Flight %s cancelled in %s: %s",
                     state.flight.flight_number, previous.value, state.cancel_reason)
        actions.append(CompleteWorkflow(state.flight.to_dict()))
        return replace(state, transitions_emitted=state.transitions_emitted + 1), actions

    def _emit(self, state: FlightState, previous: Phase | None, new: Phase,
              ctx: WorkflowContext, reason: str = "") -> list[Action]:
        """Publish and persist activities for one transition."""
        flight = state.flight
        tz = timezone(timedelta(minutes=state.utc_offset_minutes))
        timestamp = datetime.fromtimestamp(ctx.now(), tz).replace(tzinfo=None).isoformat()
        previous_value = previous.value if previous else None
        note = f"Flight transitioned from {previous_value} to {new.value}"
        if reason:
            note = f"{note}: {reason}"
        transition = Transition(
            transition_id=ctx.uuid4(),
            flight_number=flight.flight_number,
            flight_date=flight.flight_date,
            from_phase=previous_value,
            to_phase=new.value,
            timestamp=timestamp,
            gate=flight.gate or "",
            delay_minutes=flight.delay_minutes,
            aircraft=flight.aircraft,
            event_type=TRANSITION_EVENT_TYPE,
            note=note,
        )
        return [
            ScheduleActivity(ctx.next_id("publish"), PUBLISH_ACTIVITY, {
                "flight_number": flight.flight_number,
                "previous_state": previous_value,
                "new_state": new.value,
                "timestamp": timestamp,
                "gate": transition.gate,
                "delay": flight.delay_minutes,
            }),
            ScheduleActivity(ctx.next_id("persist"), PERSIST_ACTIVITY, {
                "transition": transition.to_dict(),
            }),
        ]

    # ─── Queries ─────────────────────────────────────────────────────

    def query(self, state: FlightState, kind: str) -> Any:
        if kind == QueryKind.CURRENT_PHASE.value:
            phase = state.flight.phase
            return phase.value if phase else None
        if kind == QueryKind.FLIGHT_DETAILS.value:
            return state.flight.to_dict()
        if kind == QueryKind.DELAY_MINUTES.value:
            return state.flight.delay_minutes
        known = ", ".join(q.value for q in FLIGHT_QUERIES)
        raise InvalidArgument(f"Unknown flight query '{kind}' (expected one of: {known})")
