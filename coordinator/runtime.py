"""
Flight Orchestrator - Coordinator

The admission and control surface the HTTP layer and CLI talk to:

    start_flight(flight) -> instance_id
    start_journey(journey_id, flights) -> instance_id
    signal(instance_id, name, payload)
    query(instance_id, kind)

plus operational reads (history, transitions, active flights, stats) and
worker control (recover, restart_worker).

Wires the engine together from one OrchestratorConfig: durable log,
dispatcher with the transition activities, timer service and the
WorkflowRuntime hosting the flight and journey machines.
"""

from __future__ import annotations

import logging
import sys
import time
from typing import Any, Callable

from coordinator.activities import (
    EventPublisher,
    InMemoryEventBus,
    InMemoryTransitionStore,
    RedisStreamPublisher,
    SQLiteTransitionStore,
    TransitionStore,
    build_activities,
)
from coordinator.config import OrchestratorConfig
from coordinator.flight import FLIGHT_WORKFLOW, FlightMachine
from coordinator.journey import JOURNEY_WORKFLOW, JourneyMachine
from coordinator.timing import is_demo
from coordinator.types import Flight, QueryKind, SignalName, validate_flight, validate_journey
from engine.dispatcher import Dispatcher
from engine.errors import InstanceNotFound
from engine.history import DurableLog, InMemoryDurableLog, RunStatus, SQLiteDurableLog
from engine.registry import flight_instance_id, journey_instance_id
from engine.runtime import WorkflowRuntime, create_executor
from engine.timers import ManualTimerService, ThreadedTimerService, TimerService

logger = logging.getLogger("flight_orchestrator.coordinator")

# HTTP/CLI spellings accepted for signal names
_SIGNAL_ALIASES = {
    "cancel_flight": SignalName.CANCEL.value,
    "announceDelay": SignalName.ANNOUNCE_DELAY.value,
    "changeGate": SignalName.CHANGE_GATE.value,
    "cancelFlight": SignalName.CANCEL.value,
    "cancelJourney": SignalName.CANCEL_JOURNEY.value,
}


def build_publisher(cfg: OrchestratorConfig) -> EventPublisher:
    if cfg.event_bus.backend == "redis":
        return RedisStreamPublisher(cfg.event_bus.redis_url, cfg.event_bus.stream)
    return InMemoryEventBus(cfg.event_bus.stream)


def build_store(cfg: OrchestratorConfig) -> TransitionStore:
    if cfg.transition_store.backend == "sqlite":
        return SQLiteTransitionStore(cfg.transition_store.path)
    return InMemoryTransitionStore()


def build_log(cfg: OrchestratorConfig) -> DurableLog:
    if cfg.runtime.db_path:
        return SQLiteDurableLog(cfg.runtime.db_path)
    return InMemoryDurableLog()


def _drain_timeout(cfg: OrchestratorConfig) -> float:
    """Longest a single activity call can take, retries included."""
    retry = cfg.dispatcher.retry
    attempts = max(1, retry.max_attempts)
    return cfg.dispatcher.timeout_seconds * attempts + retry.backoff_max * (attempts - 1)


class Coordinator:
    """
    Flight Orchestrator coordinator.

    Every collaborator can be injected; anything not given is built from
    `config`. Tests pass an InMemoryDurableLog, a ManualTimerService and
    recorders for the bus and store.
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        log: DurableLog | None = None,
        timers: TimerService | None = None,
        publisher: EventPublisher | None = None,
        store: TransitionStore | None = None,
        executor: Any = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        recover: bool = True,
        verbose: bool = False,
    ):
        self.config = config or OrchestratorConfig()
        cfg = self.config
        self.verbose = verbose

        self.log = log or build_log(cfg)
        self.publisher = publisher or build_publisher(cfg)
        self.store = store or build_store(cfg)
        self.activities = build_activities(self.publisher, self.store)
        self.dispatcher = Dispatcher(
            self.activities,
            policy=cfg.dispatcher.retry,
            timeout_seconds=cfg.dispatcher.timeout_seconds,
            sleep_fn=sleep_fn,
        )
        self.timers = timers or ThreadedTimerService()

        if executor is None:
            mode = cfg.runtime.executor
            if isinstance(self.timers, ManualTimerService):
                mode = "inline"
            executor = create_executor(mode, cfg.runtime.worker_threads)

        self.runtime = WorkflowRuntime(
            log=self.log,
            dispatcher=self.dispatcher,
            timers=self.timers,
            machines=[
                FlightMachine(cfg.timing),
                JourneyMachine(cfg.journey.turnaround_seconds, cfg.journey.cancel_active_leg),
            ],
            executor=executor,
            strict_determinism=cfg.runtime.strict_determinism,
            config=cfg.raw,
            completed_retention=cfg.runtime.completed_retention,
            drain_timeout=_drain_timeout(cfg),
        )
        if recover:
            self.recover()

    # ─── Admission ───────────────────────────────────────────────────

    def start_flight(self, flight: dict[str, Any]) -> str:
        """
        Start a flight workflow. Returns flight-<number>-<date>.

        Raises:
            InvalidFlight, InstanceAlreadyRunning
        """
        validated = validate_flight(flight)
        instance_id = flight_instance_id(validated.flight_number, validated.flight_date)
        self.runtime.start(FLIGHT_WORKFLOW, instance_id, {"flight": validated.to_dict()})
        self._log(f"started {instance_id}")
        return instance_id

    def start_journey(self, journey_id: str, flights: list[dict[str, Any]]) -> str:
        """
        Start a multi-leg journey. Legs are linked (previous/next flight
        numbers) before the journey starts. Returns journey-<id>.

        Raises:
            InvalidArgument, InvalidFlight, InstanceAlreadyRunning
        """
        journey = validate_journey(journey_id, flights)
        instance_id = journey_instance_id(journey.journey_id)
        self.runtime.start(JOURNEY_WORKFLOW, instance_id, {
            "journey_id": journey.journey_id,
            "legs": [leg.to_dict() for leg in journey.legs],
        })
        self._log(f"started {instance_id} ({len(journey.legs)} legs)")
        return instance_id

    # ─── Signals ─────────────────────────────────────────────────────

    def signal(self, instance_id: str, name: str, payload: dict[str, Any] | None = None) -> str:
        """
        Raises:
            InstanceNotFound, InstanceTerminal, InvalidArgument
        """
        name = _SIGNAL_ALIASES.get(name, name)
        return self.runtime.signal(instance_id, name, payload or {})

    def announce_delay(self, instance_id: str, minutes: int) -> str:
        return self.signal(instance_id, SignalName.ANNOUNCE_DELAY.value, {"minutes": minutes})

    def change_gate(self, instance_id: str, new_gate: str) -> str:
        return self.signal(instance_id, SignalName.CHANGE_GATE.value, {"new_gate": new_gate})

    def cancel_flight(self, instance_id: str, reason: str) -> str:
        return self.signal(instance_id, SignalName.CANCEL.value, {"reason": reason})

    def cancel_journey(self, instance_id: str, reason: str) -> str:
        return self.signal(instance_id, SignalName.CANCEL_JOURNEY.value, {"reason": reason})

    # ─── Reads ───────────────────────────────────────────────────────

    def query(self, instance_id: str, kind: str | QueryKind) -> Any:
        if isinstance(kind, QueryKind):
            kind = kind.value
        return self.runtime.query(instance_id, kind)

    def wait(self, instance_id: str, timeout: float | None = None) -> Any:
        return self.runtime.wait(instance_id, timeout)

    def status(self, instance_id: str) -> str:
        """running | completed | halted (InstanceNotFound if unknown)."""
        instance = self.runtime.registry.get(instance_id)
        if instance is not None:
            return instance.status
        run = self.log.latest_run(instance_id)
        if run is None:
            raise InstanceNotFound(instance_id)
        return run.status.value

    def history(self, instance_id: str) -> list[dict[str, Any]]:
        """Audit view of the latest run's durable history."""
        return [
            {
                "seq": e.seq,
                "event_type": e.event_type.value,
                "payload": e.payload,
                "recorded_at": e.recorded_at,
                "run_id": e.run_id,
            }
            for e in self.runtime.history(instance_id)
        ]

    def transitions(self, flight_number: str, flight_date: str | None = None) -> list[dict[str, Any]]:
        return [t.to_dict() for t in self.store.list(flight_number, flight_date)]

    def active_flights(self) -> list[dict[str, Any]]:
        """Running flight instances with their live projection."""
        now = time.time()
        flights = []
        for instance in self.runtime.instances():
            if instance.workflow_type != FLIGHT_WORKFLOW or instance.completed:
                continue
            details = Flight.from_dict(self.query(instance.instance_id, QueryKind.FLIGHT_DETAILS))
            flights.append({
                "instance_id": instance.instance_id,
                "flight_number": details.flight_number,
                "flight_date": details.flight_date,
                "origin": details.origin,
                "destination": details.destination,
                "phase": details.phase.value if details.phase else None,
                "gate": details.gate,
                "delay_minutes": details.delay_minutes,
                "demo_mode": is_demo(details, self.config.timing),
                "status": instance.status,
                "started_at": instance.started_at,
                "elapsed_seconds": round(now - instance.started_at, 1),
            })
        flights.sort(key=lambda f: f["started_at"])
        return flights

    def stats(self) -> dict[str, Any]:
        stats = self.log.stats()
        live = [i for i in self.runtime.instances() if not i.completed]
        stats["loaded_instances"] = len(self.runtime.instances())
        stats["live_instances"] = len(live)
        stats["halted_instances"] = sum(1 for i in live if i.halted)
        stats["armed_timers"] = self.timers.pending()
        return stats

    # ─── Worker Control ──────────────────────────────────────────────

    def recover(self) -> list[str]:
        """Resume every running instance found in the durable log."""
        recovered = self.runtime.recover()
        if recovered:
            self._log(f"recovered {len(recovered)} instance(s)")
        return recovered

    def restart_worker(self) -> list[str]:
        """
        Drop all in-memory workflow state and rebuild it from the durable
        log, as a crashed and restarted worker would.
        """
        running = len(self.log.list_runs(status=RunStatus.RUNNING, limit=1_000_000))
        logger.info("Restarting worker (%d running instance(s))", running)
        self.runtime.reset()
        return self.recover()

    def shutdown(self) -> None:
        self.runtime.shutdown()
        self.publisher.close()
        self.store.close()
        self.log.close()

    # ─── Logging ─────────────────────────────────────────────────────

    def _log(self, msg: str):
        logger.info(msg)
        if self.verbose:
            print(f"  [coord] {msg}", file=sys.stderr, flush=True)
