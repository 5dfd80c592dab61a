"""
Flight Orchestrator - Instance Registry & Error Hierarchy Tests
"""

import os
import sys
import unittest
from dataclasses import dataclass

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from engine.errors import (
    ActivityError,
    ActivityTimeout,
    DeterminismViolation,
    DurableLogUnavailable,
    InstanceAlreadyRunning,
    InstanceHalted,
    InstanceLifecycleError,
    InvalidArgument,
    InvalidFlight,
    NonRetryableActivityError,
    OrchestratorError,
    Severity,
)
from engine.registry import InstanceRegistry, flight_instance_id, journey_instance_id


@dataclass
class FakeInstance:
    name: str
    is_live: bool = True


class TestInstanceIds(unittest.TestCase):

    def test_flight(self):
        self.assertEqual(flight_instance_id("AA100", "2026-01-27"), "flight-AA100-2026-01-27")

    def test_journey(self):
        self.assertEqual(journey_instance_id("J-001"), "journey-J-001")


class TestInstanceRegistry(unittest.TestCase):

    def setUp(self):
        self.registry = InstanceRegistry()

    def test_register_and_get(self):
        inst = FakeInstance("a")
        self.registry.register("flight-A", inst)
        self.assertIs(self.registry.get("flight-A"), inst)
        self.assertIn("flight-A", self.registry)
        self.assertIsNone(self.registry.get("flight-B"))

    def test_live_id_rejected(self):
        self.registry.register("flight-A", FakeInstance("a"))
        with self.assertRaises(InstanceAlreadyRunning) as ctx:
            self.registry.register("flight-A", FakeInstance("b"))
        self.assertEqual(ctx.exception.instance_id, "flight-A")

    def test_finished_id_replaced(self):
        self.registry.register("flight-A", FakeInstance("a", is_live=False))
        self.registry.register("flight-A", FakeInstance("b"))
        self.assertEqual(self.registry.get("flight-A").name, "b")
        self.assertEqual(len(self.registry), 1)

    def test_discard_only_same_instance(self):
        old = FakeInstance("a", is_live=False)
        self.registry.register("flight-A", old)
        new = FakeInstance("b")
        self.registry.register("flight-A", new)
        self.assertFalse(self.registry.discard("flight-A", old))
        self.assertIs(self.registry.get("flight-A"), new)
        self.assertTrue(self.registry.discard("flight-A", new))
        self.assertNotIn("flight-A", self.registry)

    def test_clear(self):
        self.registry.register("x", FakeInstance("x"))
        self.registry.register("y", FakeInstance("y"))
        self.assertEqual(len(self.registry.clear()), 2)
        self.assertEqual(self.registry.values(), [])


class TestErrorHierarchy(unittest.TestCase):

    def test_validation(self):
        self.assertTrue(issubclass(InvalidFlight, InvalidArgument))
        self.assertFalse(InvalidArgument.retryable)
        self.assertEqual(InvalidArgument.severity, Severity.LOW)

    def test_detail_kwargs(self):
        e = InvalidFlight("leg 1: origin is required", leg=1)
        self.assertEqual(e.detail, {"leg": 1})
        self.assertEqual(str(e), "leg 1: origin is required")

    def test_lifecycle_message(self):
        e = InstanceHalted("flight-A")
        self.assertIsInstance(e, InstanceLifecycleError)
        self.assertEqual(str(e), "InstanceHalted: flight-A")

    def test_activity_retryability(self):
        self.assertTrue(ActivityError.retryable)
        self.assertTrue(issubclass(ActivityTimeout, TimeoutError))
        self.assertFalse(NonRetryableActivityError.retryable)

    def test_runtime_errors(self):
        self.assertEqual(DeterminismViolation.severity, Severity.CRITICAL)
        self.assertTrue(DurableLogUnavailable.retryable)
        for cls in (DeterminismViolation, DurableLogUnavailable, ActivityError):
            self.assertTrue(issubclass(cls, OrchestratorError))


if __name__ == "__main__":
    unittest.main()
