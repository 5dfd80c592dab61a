"""
Flight Orchestrator - API Models

Request/response dataclasses for the API server.
No FastAPI dependency, so server and tests share them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any


@dataclass
class StartJourneyRequest:
    """POST /api/flights/journey request body."""
    journey_id: str
    flights: list[dict[str, Any]] = field(default_factory=list)

    @staticmethod
    def from_body(body: dict[str, Any]) -> StartJourneyRequest:
        return StartJourneyRequest(
            journey_id=body.get("journey_id", body.get("journeyId", "")),
            flights=body.get("flights", body.get("legs", [])),
        )

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.journey_id or not isinstance(self.journey_id, str):
            errors.append("journey_id is required and must be a string")
        if not isinstance(self.flights, list) or not self.flights:
            errors.append("flights is required and must be a non-empty list")
        elif not all(isinstance(f, dict) for f in self.flights):
            errors.append("every flight must be an object")
        return errors


@dataclass
class AnnounceDelayRequest:
    """POST /api/flights/{number}/delay body."""
    minutes: Any = None

    def validate(self) -> list[str]:
        if isinstance(self.minutes, bool) or not isinstance(self.minutes, int) or self.minutes < 1:
            return ["minutes is required and must be an integer >= 1"]
        return []


@dataclass
class ChangeGateRequest:
    """POST /api/flights/{number}/gate body."""
    new_gate: Any = None

    def validate(self) -> list[str]:
        if not isinstance(self.new_gate, str) or not self.new_gate.strip():
            return ["new_gate is required and must be a non-empty string"]
        return []


@dataclass
class CancelRequest:
    """POST /api/flights/{number}/cancel and /api/journeys/{id}/cancel body."""
    reason: Any = None

    def validate(self) -> list[str]:
        if not isinstance(self.reason, str) or not self.reason.strip():
            return ["reason is required and must be a non-empty string"]
        return []


@dataclass
class StartResponse:
    """Returned on successful admission."""
    instance_id: str
    message: str
    flight_number: str | None = None
    journey_id: str | None = None
    number_of_legs: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class SignalResponse:
    instance_id: str
    signal: str
    signal_id: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FlightStateResponse:
    """GET /api/flights/{number}/state response."""
    flight_number: str
    current_state: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ErrorResponse:
    error: str
    message: str
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
