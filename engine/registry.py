"""
Flight Orchestrator - Instance Registry

In-memory index of the instances a runtime is driving, keyed by instance
id. Recently completed instances stay registered (until evicted by the
runtime or replaced by a new run of the same id) so they remain queryable
without replaying their history.
The durable log is the authority on liveness; this registry only mirrors
it for the current process.
"""

from __future__ import annotations

import threading
from typing import Generic, TypeVar

from engine.errors import InstanceAlreadyRunning

T = TypeVar("T")


def flight_instance_id(flight_number: str, flight_date: str) -> str:
    """Registry key of a flight: flight-<number>-<ISO date>."""
    return f"flight-{flight_number}-{flight_date}"


def journey_instance_id(journey_id: str) -> str:
    """Registry key of a multi-leg journey: journey-<id>."""
    return f"journey-{journey_id}"


class InstanceRegistry(Generic[T]):
    """Thread-safe instance_id -> instance map with a liveness check."""

    def __init__(self):
        self._instances: dict[str, T] = {}
        self._lock = threading.Lock()

    def register(self, instance_id: str, instance: T) -> None:
        """Register an instance. Raises InstanceAlreadyRunning if a live
        instance already holds the id."""
        with self._lock:
            existing = self._instances.get(instance_id)
            if existing is not None and getattr(existing, "is_live", False):
                raise InstanceAlreadyRunning(instance_id)
            self._instances[instance_id] = instance

    def get(self, instance_id: str) -> T | None:
        with self._lock:
            return self._instances.get(instance_id)

    def remove(self, instance_id: str) -> None:
        with self._lock:
            self._instances.pop(instance_id, None)

    def discard(self, instance_id: str, instance: T) -> bool:
        """Remove `instance` only if it still holds the id."""
        with self._lock:
            if self._instances.get(instance_id) is not instance:
                return False
            del self._instances[instance_id]
            return True

    def values(self) -> list[T]:
        with self._lock:
            return list(self._instances.values())

    def clear(self) -> list[T]:
        with self._lock:
            items = list(self._instances.values())
            self._instances.clear()
        return items

    def __contains__(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self._instances

    def __len__(self) -> int:
        with self._lock:
            return len(self._instances)
