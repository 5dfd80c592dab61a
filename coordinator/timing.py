"""
Flight Orchestrator - Phase Timing

How long a flight sleeps in each phase.

Three modes:
  realtime     base minutes per phase
  demo_scaled  base minutes * 60 / speed factor, floored at min_seconds
  fixed_demo   the same fixed number of seconds for every phase

Demo mode is selected by the flight's demo_mode flag or by a flight
number starting with the demo prefix ("DEMO").

Durations are resolved once, at admission, and logged with the start
event. A config change therefore never changes the timers of a running
flight, in this worker or after a restart.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from coordinator.types import Flight, Phase

REALTIME = "realtime"
DEMO_SCALED = "demo_scaled"
FIXED_DEMO = "fixed_demo"


def _default_base_minutes() -> dict[str, float]:
    return {
        Phase.SCHEDULED.value: 1,
        Phase.BOARDING.value: 1,
        Phase.DEPARTED.value: 1,
        Phase.LANDED.value: 1,
    }


@dataclass
class TimingConfig:
    base_minutes: dict[str, float] = field(default_factory=_default_base_minutes)
    default_in_flight_minutes: float = 120
    derive_in_flight_from_schedule: bool = True
    demo_speed_factor: float = 1200
    demo_style: str = "scaled"          # scaled | fixed
    fixed_demo_seconds: float = 2.0
    demo_prefix: str = "DEMO"
    min_seconds: float = 1.0

    @staticmethod
    def from_dict(d: dict[str, Any] | None) -> TimingConfig:
        d = d or {}
        base = _default_base_minutes()
        base.update({k.upper(): float(v) for k, v in (d.get("base_minutes") or {}).items()})
        return TimingConfig(
            base_minutes=base,
            default_in_flight_minutes=float(d.get("default_in_flight_minutes", 120)),
            derive_in_flight_from_schedule=bool(d.get("derive_in_flight_from_schedule", True)),
            demo_speed_factor=float(d.get("demo_speed_factor", 1200)),
            demo_style=str(d.get("demo_style", "scaled")),
            fixed_demo_seconds=float(d.get("fixed_demo_seconds", 2.0)),
            demo_prefix=str(d.get("demo_prefix", "DEMO")),
            min_seconds=float(d.get("min_seconds", 1.0)),
        )


def is_demo(flight: Flight, cfg: TimingConfig) -> bool:
    return flight.demo_mode or (
        bool(cfg.demo_prefix) and flight.flight_number.startswith(cfg.demo_prefix))


def timing_mode(flight: Flight, cfg: TimingConfig) -> str:
    if not is_demo(flight, cfg):
        return REALTIME
    return FIXED_DEMO if cfg.demo_style == "fixed" else DEMO_SCALED


def in_flight_minutes(flight: Flight, cfg: TimingConfig) -> float:
    """Scheduled block time when enabled and positive, else the default."""
    if (cfg.derive_in_flight_from_schedule
            and flight.scheduled_departure and flight.scheduled_arrival):
        departure = datetime.fromisoformat(flight.scheduled_departure)
        arrival = datetime.fromisoformat(flight.scheduled_arrival)
        # validate_flight rejects mixed offsets; histories recorded earlier may not
        if (departure.tzinfo is None) == (arrival.tzinfo is None):
            minutes = (arrival - departure).total_seconds() // 60
            if minutes > 0:
                return minutes
    return cfg.default_in_flight_minutes


def _to_seconds(minutes: float, mode: str, cfg: TimingConfig) -> float:
    if mode == REALTIME:
        return minutes * 60
    if mode == FIXED_DEMO:
        return cfg.fixed_demo_seconds
    return max(cfg.min_seconds, math.floor(minutes * 60 / cfg.demo_speed_factor))


def resolve_timing(flight: Flight, cfg: TimingConfig) -> dict[str, Any]:
    """
    Seconds to sleep in every non-terminal phase.

    Returns:
        {"mode": "demo_scaled", "seconds": {"SCHEDULED": 1, ..., "IN_FLIGHT": 6}}
    """
    mode = timing_mode(flight, cfg)
    seconds = {}
    for phase in (Phase.SCHEDULED, Phase.BOARDING, Phase.DEPARTED, Phase.IN_FLIGHT, Phase.LANDED):
        if phase == Phase.IN_FLIGHT:
            minutes = in_flight_minutes(flight, cfg)
        else:
            minutes = cfg.base_minutes.get(phase.value, 1)
        seconds[phase.value] = float(_to_seconds(minutes, mode, cfg))
    return {"mode": mode, "seconds": seconds}


def describe_duration(seconds: float) -> str:
    """Human form for log lines: '2m 0s' or '6s'."""
    if seconds >= 60:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{seconds:g}s"
