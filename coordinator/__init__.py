"""
Flight Orchestrator - Coordinator

Flight and journey workflows on top of the durable workflow engine,
plus the admission/control surface used by the HTTP layer and CLI.

Usage:
    from coordinator.runtime import Coordinator

    coord = Coordinator()
    instance_id = coord.start_flight({
        "flight_number": "AA1234", "flight_date": "2026-01-27",
        "origin": "ORD", "destination": "DFW", "gate": "B12",
    })
    coord.announce_delay(instance_id, 45)
    result = coord.wait(instance_id)
"""

from coordinator.types import (
    Flight,
    Phase,
    QueryKind,
    SignalName,
    Transition,
)
from coordinator.config import OrchestratorConfig
from coordinator.runtime import Coordinator

__all__ = [
    "Coordinator",
    "OrchestratorConfig",
    "Flight",
    "Phase",
    "QueryKind",
    "SignalName",
    "Transition",
]
