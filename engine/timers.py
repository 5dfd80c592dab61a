"""
Flight Orchestrator - Timer Service

Clocks and durable-timer delivery.

Workflow code never sleeps. It emits a StartTimer action carrying an
absolute `fire_at`; the runtime logs `timer_started` and arms the timer
here. When the deadline passes the service invokes the runtime callback,
which logs `timer_fired` and wakes the instance.

  - SystemClock + ThreadedTimerService: production, wall-clock delivery
  - VirtualClock + ManualTimerService:  tests, time skipping on demand
"""

from __future__ import annotations

import abc
import heapq
import itertools
import logging
import threading
import time
from typing import Callable

logger = logging.getLogger("flight_orchestrator.timers")

TimerCallback = Callable[[], None]


# ═══════════════════════════════════════════════════════════════════
# Clocks
# ═══════════════════════════════════════════════════════════════════

class Clock(abc.ABC):
    """Epoch seconds as a float."""

    @abc.abstractmethod
    def now(self) -> float: ...


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


class VirtualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_767_225_600.0):  # 2026-01-01T00:00:00Z
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def set(self, t: float) -> None:
        with self._lock:
            if t > self._now:
                self._now = t

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds


# ═══════════════════════════════════════════════════════════════════
# Timer Services
# ═══════════════════════════════════════════════════════════════════

class TimerService(abc.ABC):
    """Delivers a callback once `fire_at` has passed on the service clock."""

    def __init__(self, clock: Clock):
        self.clock = clock

    @abc.abstractmethod
    def schedule(self, key: str, fire_at: float, callback: TimerCallback) -> None:
        """Arm a timer. Re-arming an existing key replaces it."""

    @abc.abstractmethod
    def cancel(self, key: str) -> None: ...

    @abc.abstractmethod
    def pending(self) -> int: ...

    def shutdown(self) -> None:
        pass


class _TimerHeap:
    """Deadline-ordered heap with lazy deletion by key."""

    def __init__(self):
        self._heap: list[tuple[float, int, str]] = []
        self._live: dict[str, tuple[float, int, TimerCallback]] = {}
        self._counter = itertools.count()

    def push(self, key: str, fire_at: float, callback: TimerCallback):
        seq = next(self._counter)
        self._live[key] = (fire_at, seq, callback)
        heapq.heappush(self._heap, (fire_at, seq, key))

    def remove(self, key: str):
        self._live.pop(key, None)

    def peek_deadline(self) -> float | None:
        self._discard_stale()
        return self._heap[0][0] if self._heap else None

    def pop_due(self, now: float) -> tuple[str, float, TimerCallback] | None:
        self._discard_stale()
        if not self._heap or self._heap[0][0] > now:
            return None
        fire_at, _seq, key = heapq.heappop(self._heap)
        _, _, callback = self._live.pop(key)
        return key, fire_at, callback

    def _discard_stale(self):
        while self._heap:
            fire_at, seq, key = self._heap[0]
            live = self._live.get(key)
            if live is not None and live[1] == seq:
                return
            heapq.heappop(self._heap)

    def __len__(self):
        return len(self._live)


class ThreadedTimerService(TimerService):
    """Daemon thread that sleeps until the earliest deadline."""

    def __init__(self, clock: Clock | None = None):
        super().__init__(clock or SystemClock())
        self._timers = _TimerHeap()
        self._cond = threading.Condition()
        self._stopped = False
        self._thread = threading.Thread(
            target=self._run, name="fo-timers", daemon=True)
        self._thread.start()

    def schedule(self, key, fire_at, callback):
        with self._cond:
            self._timers.push(key, fire_at, callback)
            self._cond.notify()

    def cancel(self, key):
        with self._cond:
            self._timers.remove(key)
            self._cond.notify()

    def pending(self):
        with self._cond:
            return len(self._timers)

    def _run(self):
        while True:
            with self._cond:
                if self._stopped:
                    return
                deadline = self._timers.peek_deadline()
                now = self.clock.now()
                if deadline is None:
                    self._cond.wait()
                    continue
                if deadline > now:
                    self._cond.wait(timeout=deadline - now)
                    continue
                key, _fire_at, callback = self._timers.pop_due(now)
            try:
                callback()
            except Exception:
                logger.exception("Timer callback failed: %s", key)

    def shutdown(self):
        with self._cond:
            self._stopped = True
            self._cond.notify()
        self._thread.join(timeout=2)


class ManualTimerService(TimerService):
    """
    Timers fire only when the test moves time forward. Each due timer is
    delivered with the virtual clock set to its own deadline, in deadline
    order, so `advance(3600)` replays an hour of a flight in microseconds.
    """

    def __init__(self, clock: VirtualClock | None = None):
        super().__init__(clock or VirtualClock())
        self._timers = _TimerHeap()
        self._lock = threading.RLock()

    def schedule(self, key, fire_at, callback):
        with self._lock:
            self._timers.push(key, fire_at, callback)

    def cancel(self, key):
        with self._lock:
            self._timers.remove(key)

    def pending(self):
        with self._lock:
            return len(self._timers)

    def next_deadline(self) -> float | None:
        with self._lock:
            return self._timers.peek_deadline()

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing every timer that comes due. Returns
        the number of timers fired."""
        target = self.clock.now() + seconds
        fired = 0
        while True:
            with self._lock:
                due = self._timers.pop_due(target)
            if due is None:
                break
            _key, fire_at, callback = due
            self.clock.set(fire_at)
            callback()
            fired += 1
        self.clock.set(target)
        return fired

    def run_until_idle(self, max_timers: int = 10_000) -> int:
        """Fire timers in deadline order until none remain armed."""
        fired = 0
        while fired < max_timers:
            deadline = self.next_deadline()
            if deadline is None:
                break
            fired += self.advance(max(0.0, deadline - self.clock.now()))
        return fired
