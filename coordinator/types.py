"""
Flight Orchestrator - Domain Type Definitions

Flights, phases, transitions, signal and query names. Everything here is
plain data: frozen dataclasses that serialize to JSON-safe dicts so they
can travel through the durable history unchanged.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime
from typing import Any

from engine.errors import InvalidArgument, InvalidFlight


# ─── Phases ─────────────────────────────────────────────────────────

class Phase(str, enum.Enum):
    """Flight lifecycle phases. The first six are totally ordered."""
    SCHEDULED = "SCHEDULED"
    BOARDING = "BOARDING"
    DEPARTED = "DEPARTED"
    IN_FLIGHT = "IN_FLIGHT"
    LANDED = "LANDED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETED, Phase.CANCELLED)

    def successor(self) -> Phase | None:
        """Next phase on the happy path; None for terminal phases."""
        if self.is_terminal:
            return None
        return PHASE_ORDER[PHASE_ORDER.index(self) + 1]


PHASE_ORDER = [
    Phase.SCHEDULED,
    Phase.BOARDING,
    Phase.DEPARTED,
    Phase.IN_FLIGHT,
    Phase.LANDED,
    Phase.COMPLETED,
]


# ─── Signals & Queries ──────────────────────────────────────────────

class SignalName(str, enum.Enum):
    ANNOUNCE_DELAY = "announce_delay"
    CHANGE_GATE = "change_gate"
    CANCEL = "cancel"
    CANCEL_JOURNEY = "cancel_journey"


class QueryKind(str, enum.Enum):
    CURRENT_PHASE = "current_phase"
    FLIGHT_DETAILS = "flight_details"
    DELAY_MINUTES = "delay_minutes"
    JOURNEY_STATUS = "journey_status"
    CURRENT_LEG_INDEX = "current_leg_index"


FLIGHT_SIGNALS = (SignalName.ANNOUNCE_DELAY, SignalName.CHANGE_GATE, SignalName.CANCEL)
FLIGHT_QUERIES = (QueryKind.CURRENT_PHASE, QueryKind.FLIGHT_DETAILS, QueryKind.DELAY_MINUTES)
JOURNEY_QUERIES = (QueryKind.JOURNEY_STATUS, QueryKind.CURRENT_LEG_INDEX)


def validate_signal_payload(name: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Normalize a signal payload. Raises InvalidArgument."""
    if name == SignalName.ANNOUNCE_DELAY.value:
        minutes = payload.get("minutes")
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 1:
            raise InvalidArgument("announce_delay requires an integer 'minutes' >= 1",
                                  minutes=minutes)
        return {"minutes": minutes}
    if name == SignalName.CHANGE_GATE.value:
        gate = payload.get("new_gate", payload.get("gate"))
        if not isinstance(gate, str) or not gate.strip():
            raise InvalidArgument("change_gate requires a non-empty 'new_gate'")
        return {"new_gate": gate.strip()}
    if name in (SignalName.CANCEL.value, SignalName.CANCEL_JOURNEY.value):
        reason = payload.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            raise InvalidArgument(f"{name} requires a non-empty 'reason'")
        return {"reason": reason.strip()}
    raise InvalidArgument(f"Unknown signal: {name}")


# ─── Flight ─────────────────────────────────────────────────────────

# Accepted aliases for camelCase payloads (HTTP clients, journey files)
_FLIGHT_ALIASES = {
    "flightNumber": "flight_number",
    "flightDate": "flight_date",
    "scheduledDeparture": "scheduled_departure",
    "scheduledArrival": "scheduled_arrival",
    "currentState": "phase",
    "delay": "delay_minutes",
    "delayMinutes": "delay_minutes",
    "demoMode": "demo_mode",
    "previousFlightNumber": "previous_flight_number",
    "nextFlightNumber": "next_flight_number",
}


@dataclass(frozen=True)
class Flight:
    """The instance payload of a flight workflow."""
    flight_number: str
    flight_date: str                        # ISO date
    origin: str
    destination: str
    scheduled_departure: str | None = None  # ISO datetime
    scheduled_arrival: str | None = None
    gate: str | None = None
    aircraft: str | None = None
    phase: Phase | None = None
    delay_minutes: int = 0
    demo_mode: bool = False
    previous_flight_number: str | None = None
    next_flight_number: str | None = None

    def with_phase(self, phase: Phase) -> Flight:
        return replace(self, phase=phase)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["phase"] = self.phase.value if self.phase else None
        return d

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Flight:
        """Build a Flight without validation (history and query paths)."""
        d = _normalize_keys(data)
        phase = d.get("phase")
        return Flight(
            flight_number=d.get("flight_number", ""),
            flight_date=str(d.get("flight_date", "")),
            origin=d.get("origin", ""),
            destination=d.get("destination", ""),
            scheduled_departure=d.get("scheduled_departure"),
            scheduled_arrival=d.get("scheduled_arrival"),
            gate=d.get("gate"),
            aircraft=d.get("aircraft"),
            phase=Phase(phase) if phase else None,
            delay_minutes=int(d.get("delay_minutes") or 0),
            demo_mode=bool(d.get("demo_mode", False)),
            previous_flight_number=d.get("previous_flight_number"),
            next_flight_number=d.get("next_flight_number"),
        )


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    return {_FLIGHT_ALIASES.get(k, k): v for k, v in data.items()}


def _parse_datetime(value: Any, field_name: str, errors: list[str]) -> str | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromisoformat(str(value)).isoformat()
    except ValueError:
        errors.append(f"{field_name} must be an ISO-8601 datetime")
        return None


def validate_flight(data: dict[str, Any]) -> Flight:
    """
    Validate an admission payload and return a normalized Flight.

    Raises:
        InvalidFlight: listing every missing or malformed attribute
    """
    if not isinstance(data, dict):
        raise InvalidFlight("flight must be an object")
    d = _normalize_keys(data)
    errors = []

    number = d.get("flight_number")
    if not isinstance(number, str) or not number.strip():
        errors.append("flight_number is required")
    elif any(c.isspace() for c in number.strip()):
        errors.append("flight_number must not contain whitespace")

    flight_date = d.get("flight_date")
    if flight_date in (None, ""):
        errors.append("flight_date is required")
    else:
        try:
            flight_date = date.fromisoformat(str(flight_date)).isoformat()
        except ValueError:
            errors.append("flight_date must be an ISO date (YYYY-MM-DD)")

    for key in ("origin", "destination"):
        value = d.get(key)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"{key} is required")

    departure = _parse_datetime(d.get("scheduled_departure"), "scheduled_departure", errors)
    arrival = _parse_datetime(d.get("scheduled_arrival"), "scheduled_arrival", errors)
    if departure and arrival:
        dep, arr = datetime.fromisoformat(departure), datetime.fromisoformat(arrival)
        if (dep.tzinfo is None) != (arr.tzinfo is None):
            errors.append("scheduled_departure and scheduled_arrival must both "
                          "carry a UTC offset or both omit it")
        elif arr < dep:
            errors.append("scheduled_arrival must not be before scheduled_departure")

    delay = d.get("delay_minutes") or 0
    if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
        errors.append("delay_minutes must be a non-negative integer")

    if errors:
        raise InvalidFlight("; ".join(errors), errors=errors)

    return Flight(
        flight_number=number.strip(),
        flight_date=flight_date,
        origin=d["origin"].strip(),
        destination=d["destination"].strip(),
        scheduled_departure=departure,
        scheduled_arrival=arrival,
        gate=(d.get("gate") or None),
        aircraft=(d.get("aircraft") or None),
        phase=None,
        delay_minutes=delay,
        demo_mode=bool(d.get("demo_mode", False)),
        previous_flight_number=d.get("previous_flight_number") or None,
        next_flight_number=d.get("next_flight_number") or None,
    )


# ─── Transitions ────────────────────────────────────────────────────

TRANSITION_EVENT_TYPE = "STATE_TRANSITION"


@dataclass(frozen=True)
class Transition:
    """One phase change of one flight."""
    transition_id: str
    flight_number: str
    flight_date: str
    from_phase: str | None
    to_phase: str
    timestamp: str                 # ISO-8601 local time
    gate: str = ""
    delay_minutes: int = 0
    aircraft: str | None = None
    event_type: str = TRANSITION_EVENT_TYPE
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Transition:
        return Transition(**{k: d.get(k) for k in Transition.__dataclass_fields__
                             if k in d})


def transition_event_record(
    flight_number: str,
    previous_state: str | None,
    new_state: str,
    timestamp: str,
    gate: str,
    delay: int,
) -> dict[str, Any]:
    """Wire record published on the event bus, keyed by flight number."""
    return {
        "flightNumber": flight_number,
        "previousState": previous_state,
        "newState": new_state,
        "timestamp": timestamp,
        "gate": gate,
        "delay": delay,
    }


# ─── Journeys ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class JourneyRequest:
    """A validated multi-leg journey: ordered, non-empty, linked legs."""
    journey_id: str
    legs: tuple[Flight, ...] = field(default_factory=tuple)


def validate_journey(journey_id: str, flights: list[dict[str, Any]]) -> JourneyRequest:
    """Validate every leg and fill previous/next flight linkage."""
    if not isinstance(journey_id, str) or not journey_id.strip():
        raise InvalidArgument("journey_id is required")
    if not isinstance(flights, list) or not flights:
        raise InvalidArgument("a journey needs at least one flight")

    legs = []
    for i, raw in enumerate(flights):
        try:
            legs.append(validate_flight(raw))
        except InvalidFlight as e:
            raise InvalidFlight(f"leg {i}: {e}", leg=i, **e.detail) from e

    linked = []
    for i, leg in enumerate(legs):
        linked.append(replace(
            leg,
            previous_flight_number=legs[i - 1].flight_number if i > 0 else None,
            next_flight_number=legs[i + 1].flight_number if i + 1 < len(legs) else None,
        ))
    return JourneyRequest(journey_id=journey_id.strip(), legs=tuple(linked))
