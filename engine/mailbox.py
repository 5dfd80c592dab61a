"""
Flight Orchestrator - Signal Mailbox

FIFO queue of accepted-but-not-yet-applied signals, one per instance.
A signal lands here only after its `signal_received` event is durable; the
runtime drains the mailbox at the next suspension boundary and logs one
`signal_applied` event per drained envelope.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Envelope:
    """One accepted signal. `signal_id` is unique within the instance."""
    signal_id: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    accepted_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "name": self.name,
            "payload": dict(self.payload),
            "accepted_at": self.accepted_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Envelope:
        return Envelope(
            signal_id=d["signal_id"],
            name=d["name"],
            payload=dict(d.get("payload") or {}),
            accepted_at=d.get("accepted_at", 0.0),
        )


class SignalMailbox:
    """Thread-safe FIFO of envelopes for one instance."""

    def __init__(self):
        self._queue: deque[Envelope] = deque()
        self._lock = threading.Lock()

    def post(self, envelope: Envelope) -> None:
        with self._lock:
            self._queue.append(envelope)

    def drain(self) -> list[Envelope]:
        """Remove and return every pending envelope in arrival order."""
        with self._lock:
            items = list(self._queue)
            self._queue.clear()
        return items

    def peek(self) -> list[Envelope]:
        """Pending envelopes without removing them."""
        with self._lock:
            return list(self._queue)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)
