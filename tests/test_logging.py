"""
Flight Orchestrator - Structured Logging Tests

Tests:
  - test_json_parseable - every log line is valid JSON
  - test_entry_schema - service fields and logger name present
  - test_structured_fields - instance_id / run_id / workflow carried
  - test_level_filtering - warnings still pass at WARNING, info does not
  - test_exception_fields - exc_info becomes exception.type / message
  - test_replay_silence - workflow logger is silent while replaying
  - test_runtime_logs_once - a restarted worker does not re-log transitions
"""

import io
import json
import logging
import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.logging import (
    JSONFormatter,
    ReplayAwareLogger,
    StructuredLogger,
    configure_logging,
    get_logger,
)


def _capture(level="DEBUG"):
    buf = io.StringIO()
    configure_logging(level=level, stream=buf)
    return buf


def _lines(buf):
    buf.seek(0)
    return [json.loads(line) for line in buf.read().splitlines() if line.strip()]


class TestJSONFormatter(unittest.TestCase):

    def tearDown(self):
        configure_logging(level="WARNING")

    def test_json_parseable(self):
        buf = _capture()
        get_logger("test").info("hello %s", "world")
        get_logger("test").debug("detail")
        lines = _lines(buf)
        self.assertEqual([l["message"] for l in lines], ["hello world", "detail"])

    def test_entry_schema(self):
        buf = _capture()
        get_logger("runtime").warning("careful")
        entry = _lines(buf)[0]
        for key in ("timestamp", "level", "logger", "message", "service.name", "service.version"):
            self.assertIn(key, entry)
        self.assertEqual(entry["logger"], "flight_orchestrator.runtime")
        self.assertEqual(entry["level"], "WARNING")

    def test_exception_fields(self):
        record = logging.LogRecord("x", logging.ERROR, "", 0, "failed", (), None)
        try:
            raise ValueError("bad gate")
        except ValueError:
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        self.assertEqual(entry["exception.type"], "ValueError")
        self.assertEqual(entry["exception.message"], "bad gate")

    def test_level_filtering(self):
        buf = _capture(level="WARNING")
        get_logger("test").info("quiet")
        get_logger("test").warning("loud")
        self.assertEqual([l["message"] for l in _lines(buf)], ["loud"])


class TestStructuredLogger(unittest.TestCase):

    def tearDown(self):
        configure_logging(level="WARNING")

    def test_structured_fields(self):
        buf = _capture()
        slog = StructuredLogger("flight", "flight-AA1-2026-01-27", "run_abc")
        slog.on_workflow_start()
        slog.on_signal_applied("announce_delay", {"minutes": 10})
        entries = _lines(buf)
        self.assertEqual([e["action"] for e in entries], ["workflow_start", "signal_applied"])
        for e in entries:
            self.assertEqual(e["instance_id"], "flight-AA1-2026-01-27")
            self.assertEqual(e["run_id"], "run_abc")
            self.assertEqual(e["workflow"], "flight")
        self.assertEqual(entries[1]["payload"], {"minutes": 10})

    def test_activity_failure_is_warning(self):
        buf = _capture()
        StructuredLogger("flight").on_activity_end("publish", False, 3, 0.25, "refused")
        entry = _lines(buf)[0]
        self.assertEqual(entry["level"], "WARNING")
        self.assertEqual(entry["attempts"], 3)
        self.assertEqual(entry["latency_ms"], 250.0)
        self.assertEqual(entry["error"], "refused")

    def test_halted_is_error(self):
        buf = _capture()
        StructuredLogger("flight").on_instance_halted("decision mismatch")
        self.assertEqual(_lines(buf)[0]["level"], "ERROR")

    def test_disabled_level_skips_record(self):
        buf = _capture(level="ERROR")
        StructuredLogger("flight").on_workflow_end("completed", 1.0)
        self.assertEqual(_lines(buf), [])


class TestReplayAwareLogger(unittest.TestCase):

    def tearDown(self):
        configure_logging(level="WARNING")

    def test_replay_silence(self):
        buf = _capture()
        replaying = [True]
        log = ReplayAwareLogger(get_logger("workflow"), lambda: replaying[0], "flight-X")
        log.info("entered %s", "BOARDING")
        replaying[0] = False
        log.info("entered %s", "DEPARTED")
        self.assertEqual([l["message"] for l in _lines(buf)], ["[flight-X] entered DEPARTED"])

    def test_runtime_logs_once(self):
        from coordinator.activities import InMemoryEventBus, InMemoryTransitionStore
        from coordinator.runtime import Coordinator
        from engine.history import InMemoryDurableLog
        from engine.timers import ManualTimerService

        buf = _capture(level="INFO")
        coord = Coordinator(log=InMemoryDurableLog(), timers=ManualTimerService(),
                            publisher=InMemoryEventBus(), store=InMemoryTransitionStore(),
                            sleep_fn=lambda s: None)
        coord.start_flight({"flight_number": "LG1", "flight_date": "2026-01-27",
                            "origin": "ORD", "destination": "DFW"})
        coord.restart_worker()

        messages = [l["message"] for l in _lines(buf) if l["logger"] == "flight_orchestrator.workflow"]
        self.assertEqual(sum("LG1 in SCHEDULED" in m for m in messages), 1)


if __name__ == "__main__":
    unittest.main()
