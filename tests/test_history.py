"""
Flight Orchestrator - Durable Log Tests

Tests both backends against the same contract:
  - Dense, 1-based sequence numbers per run
  - At most one RUNNING run per instance id
  - A completed instance id can run again
  - Payloads come back as plain JSON
  - Run listing, latest run, stats
  - SQLite survives a new connection
"""

import os
import shutil
import tempfile
import unittest

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.errors import DurableLogUnavailable, InstanceAlreadyRunning
from engine.history import (
    EventType,
    InMemoryDurableLog,
    RunRecord,
    RunStatus,
    SQLiteDurableLog,
)


class DurableLogContract:
    """Mixin: subclasses provide make_log()."""

    def setUp(self):
        self.log = self.make_log()

    def tearDown(self):
        self.log.close()

    def test_sequence_dense(self):
        run = RunRecord.create("flight-AA1-2026-01-27", "flight")
        self.log.create_run(run)
        for i in range(3):
            self.log.append(run.run_id, EventType.TIMER_STARTED, {"n": i})
        events = self.log.events(run.run_id)
        self.assertEqual([e.seq for e in events], [1, 2, 3])
        self.assertEqual([e.payload["n"] for e in events], [0, 1, 2])
        self.assertEqual(events[0].event_type, EventType.TIMER_STARTED)

    def test_single_running_run(self):
        self.log.create_run(RunRecord.create("flight-AA2-2026-01-27", "flight"))
        with self.assertRaises(InstanceAlreadyRunning):
            self.log.create_run(RunRecord.create("flight-AA2-2026-01-27", "flight"))

    def test_rerun_after_completion(self):
        first = RunRecord.create("flight-AA3-2026-01-27", "flight")
        self.log.create_run(first)
        self.log.complete_run(first.run_id, {"phase": "COMPLETED"})
        second = RunRecord.create("flight-AA3-2026-01-27", "flight")
        second.created_at = first.created_at + 1
        self.log.create_run(second)
        self.assertEqual(self.log.latest_run("flight-AA3-2026-01-27").run_id, second.run_id)

    def test_complete_run_result(self):
        run = RunRecord.create("journey-J1", "journey")
        self.log.create_run(run)
        self.log.complete_run(run.run_id, [{"phase": "COMPLETED"}])
        stored = self.log.get_run(run.run_id)
        self.assertEqual(stored.status, RunStatus.COMPLETED)
        self.assertFalse(stored.is_running)
        self.assertEqual(stored.result, [{"phase": "COMPLETED"}])

    def test_payload_is_json(self):
        run = RunRecord.create("flight-AA4-2026-01-27", "flight")
        self.log.create_run(run)
        event = self.log.append(run.run_id, EventType.SIGNAL_RECEIVED,
                                {"signal_id": "s1", "tuple": (1, 2)})
        self.assertEqual(event.payload["tuple"], [1, 2])
        self.assertEqual(self.log.events(run.run_id)[0].payload["tuple"], [1, 2])

    def test_list_runs_filters(self):
        a = RunRecord.create("flight-A-2026-01-27", "flight")
        b = RunRecord.create("journey-B", "journey")
        self.log.create_run(a)
        self.log.create_run(b)
        self.log.complete_run(a.run_id, None)
        running = self.log.list_runs(status=RunStatus.RUNNING)
        self.assertEqual([r.run_id for r in running], [b.run_id])
        flights = self.log.list_runs(workflow_type="flight")
        self.assertEqual([r.run_id for r in flights], [a.run_id])

    def test_parent_linkage(self):
        child = RunRecord.create("flight-C-2026-01-27", "flight",
                                 parent_instance_id="journey-J", parent_run_id="run_parent")
        self.log.create_run(child)
        stored = self.log.get_run(child.run_id)
        self.assertEqual(stored.parent_instance_id, "journey-J")
        self.assertEqual(stored.parent_run_id, "run_parent")

    def test_unknown_instance(self):
        self.assertIsNone(self.log.latest_run("flight-NOPE-2026-01-27"))
        self.assertIsNone(self.log.get_run("run_missing"))
        self.assertEqual(self.log.events("run_missing"), [])

    def test_stats(self):
        run = RunRecord.create("flight-S-2026-01-27", "flight")
        self.log.create_run(run)
        self.log.append(run.run_id, EventType.EXECUTION_STARTED, {})
        self.log.append(run.run_id, EventType.TIMER_STARTED, {})
        stats = self.log.stats()
        self.assertEqual(stats["runs"], {"running": 1})
        self.assertEqual(stats["workflows"], {"flight": 1})
        self.assertEqual(stats["history_events"], 2)


class TestInMemoryDurableLog(DurableLogContract, unittest.TestCase):

    def make_log(self):
        return InMemoryDurableLog()

    def test_append_unknown_run(self):
        with self.assertRaises(DurableLogUnavailable):
            self.log.append("run_missing", EventType.TIMER_FIRED, {})


class TestSQLiteDurableLog(DurableLogContract, unittest.TestCase):

    def make_log(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "history.db")
        return SQLiteDurableLog(self.path)

    def tearDown(self):
        super().tearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_reopen(self):
        run = RunRecord.create("flight-R-2026-01-27", "flight")
        self.log.create_run(run)
        self.log.append(run.run_id, EventType.EXECUTION_STARTED, {"input": {"x": 1}})
        self.log.close()

        self.log = SQLiteDurableLog(self.path)
        latest = self.log.latest_run("flight-R-2026-01-27")
        self.assertTrue(latest.is_running)
        events = self.log.events(run.run_id)
        self.assertEqual(events[0].payload, {"input": {"x": 1}})
        self.assertEqual(events[0].seq, 1)


if __name__ == "__main__":
    unittest.main()
