"""
Flight Orchestrator - Worker Restart & Replay Tests

A "crash" is simulated by abandoning a Coordinator (or resetting its
runtime) and building the instance again from the same durable log.

Tests:
  - Restart mid-flight: no transition re-emitted, no phase re-entered
  - Rebuilt state equals the pre-crash state
  - Activities scheduled but never resolved are re-executed
  - Signals accepted but never applied are applied after restart
  - Journeys and their running leg both resume
  - An activity running at restart is recorded once, not executed again
  - SQLite log survives a new connection
  - Changed workflow code halts the instance with a determinism violation
"""

import os
import shutil
import sys
import tempfile
import threading
import time
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from coordinator.activities import InMemoryEventBus, InMemoryTransitionStore
from coordinator.config import OrchestratorConfig
from coordinator.flight import FlightMachine
from coordinator.runtime import Coordinator
from coordinator.types import QueryKind
from engine.errors import InstanceHalted
from engine.history import EventType, InMemoryDurableLog, RunStatus, SQLiteDurableLog
from engine.runtime import InlineExecutor, PoolExecutor
from engine.timers import ManualTimerService

HAPPY_PATH = [
    (None, "SCHEDULED"),
    ("SCHEDULED", "BOARDING"),
    ("BOARDING", "DEPARTED"),
    ("DEPARTED", "IN_FLIGHT"),
    ("IN_FLIGHT", "LANDED"),
    ("LANDED", "COMPLETED"),
]


class CrashingExecutor(InlineExecutor):
    """Inline executor that silently drops work once `crashed` is set,
    or drops every activity run when `drop_activities` is set."""

    def __init__(self, drop_activities=False):
        super().__init__()
        self.crashed = False
        self.drop_activities = drop_activities

    def submit(self, fn, *args):
        if self.crashed:
            return
        if self.drop_activities and getattr(fn, "__name__", "") == "_run_activities":
            return
        super().submit(fn, *args)


class Worker:
    """One coordinator process over a shared log, bus, store and clock."""

    def __init__(self, log, bus, store, clock=None, executor=None, config=None, recover=True):
        self.timers = ManualTimerService(clock)
        self.coord = Coordinator(
            config=config or OrchestratorConfig(),
            log=log,
            timers=self.timers,
            publisher=bus,
            store=store,
            executor=executor,
            sleep_fn=lambda s: None,
            recover=recover,
        )


def flight(number):
    return {
        "flight_number": number,
        "flight_date": "2026-01-27",
        "origin": "ORD",
        "destination": "DFW",
        "gate": "B12",
        "aircraft": "N500XX",
    }


def edges(bus, number):
    return [(r["previousState"], r["newState"]) for r in bus.records_for(number)]


class TestRestartMidFlight(unittest.TestCase):

    def setUp(self):
        self.log = InMemoryDurableLog()
        self.bus = InMemoryEventBus()
        self.store = InMemoryTransitionStore()

    def test_restart_worker_in_place(self):
        w = Worker(self.log, self.bus, self.store)
        iid = w.coord.start_flight(flight("RS100"))
        w.timers.advance(120)
        self.assertEqual(len(self.bus.records_for("RS100")), 3)

        recovered = w.coord.restart_worker()
        self.assertEqual(recovered, [iid])
        self.assertEqual(len(self.bus.records_for("RS100")), 3)

        w.timers.run_until_idle()
        self.assertEqual(edges(self.bus, "RS100"), HAPPY_PATH)
        self.assertEqual(w.coord.wait(iid, timeout=0)["phase"], "COMPLETED")
        self.assertEqual(len(self.store.list("RS100")), 6)

    def test_new_worker_on_same_log(self):
        a = Worker(self.log, self.bus, self.store)
        iid = a.coord.start_flight(flight("RS101"))
        a.coord.announce_delay(iid, 20)
        a.timers.advance(60 + 60 + 30)
        before = a.coord.query(iid, QueryKind.FLIGHT_DETAILS)

        # Worker A dies; its timers never fire again
        b = Worker(self.log, self.bus, self.store, clock=a.timers.clock)
        self.assertEqual(b.coord.query(iid, QueryKind.FLIGHT_DETAILS), before)
        self.assertEqual(len(self.bus.records_for("RS101")), 3)

        b.timers.run_until_idle()
        self.assertEqual(edges(self.bus, "RS101"), HAPPY_PATH)
        result = b.coord.wait(iid, timeout=0)
        self.assertEqual(result["delay_minutes"], 20)
        self.assertEqual(result["aircraft"], "N500XX")

    def test_timer_deadline_preserved(self):
        a = Worker(self.log, self.bus, self.store)
        iid = a.coord.start_flight(flight("RS102"))
        a.timers.advance(40)

        b = Worker(self.log, self.bus, self.store, clock=a.timers.clock)
        b.timers.advance(19)
        self.assertEqual(b.coord.query(iid, QueryKind.CURRENT_PHASE), "SCHEDULED")
        b.timers.advance(1)
        self.assertEqual(b.coord.query(iid, QueryKind.CURRENT_PHASE), "BOARDING")

    def test_history_not_rewritten(self):
        w = Worker(self.log, self.bus, self.store)
        iid = w.coord.start_flight(flight("RS103"))
        w.timers.advance(60)
        before = [(e["seq"], e["event_type"]) for e in w.coord.history(iid)]
        w.coord.restart_worker()
        after = [(e["seq"], e["event_type"]) for e in w.coord.history(iid)]
        self.assertEqual(after, before)

    def test_completed_runs_not_recovered(self):
        w = Worker(self.log, self.bus, self.store)
        w.coord.start_flight(flight("RS104"))
        w.timers.run_until_idle()
        self.assertEqual(w.coord.restart_worker(), [])

    def test_repeated_restarts(self):
        w = Worker(self.log, self.bus, self.store)
        iid = w.coord.start_flight(flight("RS105"))
        for _ in range(5):
            w.timers.advance(60)
            w.coord.restart_worker()
        w.timers.run_until_idle()
        self.assertEqual(edges(self.bus, "RS105"), HAPPY_PATH)
        self.assertEqual(w.coord.status(iid), "completed")


class TestOpenWorkAfterCrash(unittest.TestCase):

    def setUp(self):
        self.log = InMemoryDurableLog()
        self.bus = InMemoryEventBus()
        self.store = InMemoryTransitionStore()

    def test_unresolved_activities_reexecuted(self):
        a = Worker(self.log, self.bus, self.store,
                   executor=CrashingExecutor(drop_activities=True))
        iid = a.coord.start_flight(flight("RS200"))
        self.assertEqual(self.bus.records_for("RS200"), [])
        scheduled = [e for e in a.coord.history(iid) if e["event_type"] == "activity_scheduled"]
        self.assertEqual(len(scheduled), 2)

        b = Worker(self.log, self.bus, self.store, clock=a.timers.clock)
        self.assertEqual(edges(self.bus, "RS200"), HAPPY_PATH[:1])
        b.timers.run_until_idle()
        self.assertEqual(edges(self.bus, "RS200"), HAPPY_PATH)

    def test_unapplied_signal_applied_after_restart(self):
        executor = CrashingExecutor()
        a = Worker(self.log, self.bus, self.store, executor=executor)
        iid = a.coord.start_flight(flight("RS201"))
        executor.crashed = True
        a.coord.announce_delay(iid, 30)
        types = [e["event_type"] for e in a.coord.history(iid)]
        self.assertIn("signal_received", types)
        self.assertNotIn("signal_applied", types)

        b = Worker(self.log, self.bus, self.store, clock=a.timers.clock)
        self.assertEqual(b.coord.query(iid, QueryKind.DELAY_MINUTES), 30)
        b.timers.run_until_idle()
        types = [e["event_type"] for e in b.coord.history(iid)]
        self.assertEqual(types.count("signal_applied"), 1)
        self.assertEqual(self.bus.records_for("RS201")[1]["delay"], 30)

    def test_crash_before_first_decision(self):
        executor = CrashingExecutor()
        executor.crashed = True
        a = Worker(self.log, self.bus, self.store, executor=executor)
        iid = a.coord.start_flight(flight("RS202"))
        self.assertEqual(a.coord.history(iid), [])

        b = Worker(self.log, self.bus, self.store, clock=a.timers.clock)
        self.assertEqual(b.coord.status(iid), "completed")
        self.assertIsNone(b.coord.wait(iid, timeout=0))


class TestJourneyRecovery(unittest.TestCase):

    def test_journey_resumes_with_running_leg(self):
        log = InMemoryDurableLog()
        bus = InMemoryEventBus()
        store = InMemoryTransitionStore()
        a = Worker(log, bus, store)
        flights = [
            {"flight_number": "JR100", "flight_date": "2026-01-27",
             "origin": "ORD", "destination": "DFW", "aircraft": "N1"},
            {"flight_number": "JR200", "flight_date": "2026-01-27",
             "origin": "DFW", "destination": "LAX"},
        ]
        iid = a.coord.start_journey("J-R1", flights)
        a.timers.advance(7440 + 1 + 200)    # leg 1 in progress

        b = Worker(log, bus, store, clock=a.timers.clock)
        self.assertEqual(sorted(b.coord.recover()), [])
        self.assertEqual(b.coord.query(iid, QueryKind.CURRENT_LEG_INDEX), 1)
        b.timers.run_until_idle()

        result = b.coord.wait(iid, timeout=0)
        self.assertEqual([leg["phase"] for leg in result], ["COMPLETED", "COMPLETED"])
        self.assertEqual(result[1]["aircraft"], "N1")
        self.assertEqual(edges(bus, "JR100"), HAPPY_PATH)
        self.assertEqual(edges(bus, "JR200"), HAPPY_PATH)

    def test_restart_during_turnaround(self):
        log = InMemoryDurableLog()
        bus = InMemoryEventBus()
        w = Worker(log, bus, InMemoryTransitionStore())
        flights = [
            {"flight_number": "JR300", "flight_date": "2026-01-27", "origin": "A", "destination": "B"},
            {"flight_number": "JR400", "flight_date": "2026-01-27", "origin": "B", "destination": "C"},
        ]
        iid = w.coord.start_journey("J-R2", flights)
        w.timers.advance(7440)
        w.coord.restart_worker()
        w.timers.run_until_idle()
        self.assertEqual([leg["phase"] for leg in w.coord.wait(iid, timeout=0)],
                         ["COMPLETED", "COMPLETED"])
        self.assertEqual(len(bus.records_for("JR400")), 6)


class TestSQLiteRestart(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "orchestrator.db")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_flight_survives_process_restart(self):
        bus = InMemoryEventBus()
        store = InMemoryTransitionStore()
        log_a = SQLiteDurableLog(self.path)
        a = Worker(log_a, bus, store)
        iid = a.coord.start_flight(flight("SQ100"))
        a.coord.change_gate(iid, "C7")
        a.timers.advance(180)
        log_a.close()

        log_b = SQLiteDurableLog(self.path)
        b = Worker(log_b, bus, store, clock=a.timers.clock)
        self.assertEqual(b.coord.query(iid, QueryKind.CURRENT_PHASE), "IN_FLIGHT")
        b.timers.run_until_idle()

        self.assertEqual(edges(bus, "SQ100"), HAPPY_PATH)
        self.assertEqual(b.coord.wait(iid, timeout=0)["gate"], "C7")
        run = log_b.latest_run(iid)
        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertEqual(run.result["phase"], "COMPLETED")
        log_b.close()


class GatedBus(InMemoryEventBus):
    """Bus whose publish blocks until `release` is set."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def publish(self, key, record):
        self.entered.set()
        self.release.wait(5)
        return super().publish(key, record)


class TestRestartDuringActivity(unittest.TestCase):

    def test_running_publish_recorded_not_repeated(self):
        bus = GatedBus()
        store = InMemoryTransitionStore()
        w = Worker(InMemoryDurableLog(), bus, store, executor=PoolExecutor(max_workers=4))
        self.addCleanup(w.coord.shutdown)
        iid = w.coord.start_flight(flight("RS300"))
        self.assertTrue(bus.entered.wait(5))

        releaser = threading.Timer(0.1, bus.release.set)
        releaser.start()
        self.addCleanup(releaser.cancel)
        self.assertEqual(w.coord.restart_worker(), [iid])

        deadline = time.monotonic() + 5
        while not store.list("RS300") and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(len(store.list("RS300")), 1)
        self.assertEqual(len(bus.records_for("RS300")), 1)
        resolved = [e for e in w.coord.history(iid)
                    if e["event_type"] == EventType.ACTIVITY_COMPLETED.value]
        self.assertEqual([e["payload"]["name"] for e in resolved][0], "publish_transition_event")


class ShortFlightMachine(FlightMachine):
    """Newer code that no longer persists transitions."""

    def _emit(self, state, previous, new, ctx, reason=""):
        return super()._emit(state, previous, new, ctx, reason)[:1]


class TestDeterminismViolation(unittest.TestCase):

    def test_changed_code_halts_instance(self):
        log = InMemoryDurableLog()
        bus = InMemoryEventBus()
        store = InMemoryTransitionStore()
        a = Worker(log, bus, store)
        iid = a.coord.start_flight(flight("DV100"))
        a.timers.advance(60)

        b = Worker(log, bus, store, clock=a.timers.clock, recover=False)
        b.coord.runtime.register_machine(ShortFlightMachine(b.coord.config.timing))
        b.coord.recover()

        self.assertEqual(b.coord.status(iid), "halted")
        with self.assertRaises(InstanceHalted):
            b.coord.wait(iid, timeout=0)
        with self.assertRaises(InstanceHalted):
            b.coord.announce_delay(iid, 5)
        b.timers.run_until_idle()
        self.assertEqual(len(bus.records_for("DV100")), 2)

    def test_config_change_does_not_break_replay(self):
        log = InMemoryDurableLog()
        bus = InMemoryEventBus()
        store = InMemoryTransitionStore()
        a = Worker(log, bus, store)
        iid = a.coord.start_flight(flight("DV101"))
        a.timers.advance(60)

        config = OrchestratorConfig()
        config.timing.base_minutes["BOARDING"] = 30
        b = Worker(log, bus, store, clock=a.timers.clock, config=config)
        self.assertEqual(b.coord.status(iid), "running")
        b.timers.advance(60)
        self.assertEqual(b.coord.query(iid, QueryKind.CURRENT_PHASE), "DEPARTED")

    def test_recorded_timer_payloads_checked(self):
        log = InMemoryDurableLog()
        a = Worker(log, InMemoryEventBus(), InMemoryTransitionStore())
        iid = a.coord.start_flight(flight("DV102"))
        run_id = log.latest_run(iid).run_id
        timer = next(e for e in log.events(run_id) if e.event_type == EventType.TIMER_STARTED)
        timer.payload["seconds"] = 5

        b = Worker(log, InMemoryEventBus(), InMemoryTransitionStore(), clock=a.timers.clock)
        self.assertEqual(b.coord.status(iid), "halted")
        self.assertEqual(b.coord.stats()["halted_instances"], 1)


if __name__ == "__main__":
    unittest.main()
