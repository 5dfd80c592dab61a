"""
Flight Orchestrator - Timer Service & Mailbox Tests

Tests:
  - Manual timers fire in deadline order with the clock at each deadline
  - Cancel and re-arm by key
  - Chained timers armed from a callback fire within one advance
  - run_until_idle drains everything
  - Threaded timers fire on the wall clock
  - Mailbox is FIFO and drains once
"""

import os
import sys
import threading
import time
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.mailbox import Envelope, SignalMailbox
from engine.timers import ManualTimerService, ThreadedTimerService, VirtualClock


class TestVirtualClock(unittest.TestCase):

    def test_set_never_moves_backwards(self):
        clock = VirtualClock(start=100.0)
        clock.set(50.0)
        self.assertEqual(clock.now(), 100.0)
        clock.set(150.0)
        clock.advance(10)
        self.assertEqual(clock.now(), 160.0)

    def test_default_epoch(self):
        self.assertEqual(VirtualClock().now(), 1_767_225_600.0)


class TestManualTimers(unittest.TestCase):

    def setUp(self):
        self.timers = ManualTimerService(VirtualClock(start=0.0))
        self.fired = []

    def record(self, name):
        return lambda: self.fired.append((name, self.timers.clock.now()))

    def test_deadline_order(self):
        self.timers.schedule("b", 20, self.record("b"))
        self.timers.schedule("a", 10, self.record("a"))
        self.timers.schedule("c", 30, self.record("c"))
        self.assertEqual(self.timers.advance(25), 2)
        self.assertEqual(self.fired, [("a", 10), ("b", 20)])
        self.assertEqual(self.timers.clock.now(), 25)
        self.assertEqual(self.timers.pending(), 1)

    def test_not_due(self):
        self.timers.schedule("a", 10, self.record("a"))
        self.assertEqual(self.timers.advance(9.5), 0)
        self.assertEqual(self.timers.next_deadline(), 10)

    def test_cancel(self):
        self.timers.schedule("a", 10, self.record("a"))
        self.timers.cancel("a")
        self.timers.cancel("missing")
        self.assertEqual(self.timers.advance(100), 0)
        self.assertIsNone(self.timers.next_deadline())

    def test_rearm_replaces(self):
        self.timers.schedule("a", 10, self.record("first"))
        self.timers.schedule("a", 40, self.record("second"))
        self.assertEqual(self.timers.pending(), 1)
        self.timers.advance(50)
        self.assertEqual(self.fired, [("second", 40)])

    def test_chained_within_one_advance(self):
        def first():
            self.fired.append(("first", self.timers.clock.now()))
            self.timers.schedule("second", self.timers.clock.now() + 5, self.record("second"))

        self.timers.schedule("first", 10, first)
        self.timers.advance(20)
        self.assertEqual(self.fired, [("first", 10), ("second", 15)])

    def test_run_until_idle(self):
        for i in range(5):
            self.timers.schedule(f"t{i}", 100 * (i + 1), self.record(f"t{i}"))
        self.assertEqual(self.timers.run_until_idle(), 5)
        self.assertEqual(self.timers.clock.now(), 500)

    def test_past_deadline_fires_immediately(self):
        self.timers.clock.set(100)
        self.timers.schedule("late", 50, self.record("late"))
        self.assertEqual(self.timers.advance(0), 1)
        self.assertEqual(self.fired, [("late", 100)])


class TestThreadedTimers(unittest.TestCase):

    def setUp(self):
        self.timers = ThreadedTimerService()

    def tearDown(self):
        self.timers.shutdown()

    def test_fires(self):
        done = threading.Event()
        self.timers.schedule("t", time.time() + 0.05, done.set)
        self.assertTrue(done.wait(timeout=2))
        self.assertEqual(self.timers.pending(), 0)

    def test_cancel(self):
        done = threading.Event()
        self.timers.schedule("t", time.time() + 0.2, done.set)
        self.timers.cancel("t")
        self.assertFalse(done.wait(timeout=0.4))

    def test_failing_callback_does_not_stop_thread(self):
        done = threading.Event()

        def boom():
            raise RuntimeError("boom")

        with self.assertLogs("flight_orchestrator.timers", level="ERROR"):
            self.timers.schedule("bad", time.time(), boom)
            self.timers.schedule("good", time.time() + 0.05, done.set)
            self.assertTrue(done.wait(timeout=2))


class TestSignalMailbox(unittest.TestCase):

    def test_fifo_drain(self):
        box = SignalMailbox()
        box.post(Envelope("s1", "announce_delay", {"minutes": 10}))
        box.post(Envelope("s2", "change_gate", {"new_gate": "C7"}))
        self.assertEqual(len(box), 2)
        self.assertEqual([e.signal_id for e in box.peek()], ["s1", "s2"])
        self.assertEqual([e.signal_id for e in box.drain()], ["s1", "s2"])
        self.assertEqual(box.drain(), [])

    def test_envelope_dict(self):
        env = Envelope("s1", "cancel", {"reason": "Wx"}, accepted_at=12.5)
        self.assertEqual(Envelope.from_dict(env.to_dict()), env)


if __name__ == "__main__":
    unittest.main()
