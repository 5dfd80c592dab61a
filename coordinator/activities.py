"""
Flight Orchestrator - Transition Side Effects

The two activities flight workflows schedule, plus the systems behind
them:

  publish_transition_event  -> EventPublisher (in-memory bus or Redis Streams)
  persist_transition        -> TransitionStore (in-memory or SQLite)

Both receivers tolerate duplicates: the dispatcher may retry a call that
actually succeeded, and a restarted worker re-executes activities whose
outcome never reached the history. The SQLite store keys rows on the
transition id, so a retried persist writes a single row.
"""

from __future__ import annotations

import abc
import json
import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import Any

from coordinator.flight import PERSIST_ACTIVITY, PUBLISH_ACTIVITY
from coordinator.types import Transition, transition_event_record
from engine.dispatcher import ActivityRegistry
from engine.errors import ActivityError

logger = logging.getLogger("flight_orchestrator.activities")

DEFAULT_STREAM = "flight-state-changes"


# ═══════════════════════════════════════════════════════════════════
# Event Bus
# ═══════════════════════════════════════════════════════════════════

class EventPublisher(abc.ABC):
    """Publishes one record per transition, partitioned by flight number."""

    @abc.abstractmethod
    def publish(self, key: str, record: dict[str, Any]) -> str:
        """Publish and return a message id."""

    def close(self) -> None:
        pass


class InMemoryEventBus(EventPublisher):
    """Process-local bus. Keeps every published record in order."""

    def __init__(self, stream: str = DEFAULT_STREAM):
        self.stream = stream
        self.published: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def publish(self, key, record):
        with self._lock:
            self.published.append((key, dict(record)))
            message_id = f"{self.stream}-{len(self.published)}"
        logger.debug("Published %s -> %s on %s", key, record.get("newState"), self.stream)
        return message_id

    def records_for(self, flight_number: str) -> list[dict[str, Any]]:
        with self._lock:
            return [r for k, r in self.published if k == flight_number]


class RedisStreamPublisher(EventPublisher):
    """
    Appends records to a Redis Stream with XADD. The flight number is
    written as the `key` field so consumers can partition on it.
    """

    def __init__(self, url: str = "", stream: str = DEFAULT_STREAM,
                 maxlen: int | None = 100_000, client: Any = None):
        if client is None:
            import redis
            client = redis.Redis.from_url(
                url or os.environ.get("REDIS_URL", "redis://localhost:6379"),
                socket_timeout=5,
            )
        self.client = client
        self.stream = stream
        self.maxlen = maxlen

    def publish(self, key, record):
        fields = {"key": key, "value": json.dumps(record)}
        message_id = self.client.xadd(
            self.stream, fields, maxlen=self.maxlen, approximate=True)
        if isinstance(message_id, bytes):
            message_id = message_id.decode()
        return message_id

    def close(self):
        self.client.close()


# ═══════════════════════════════════════════════════════════════════
# Transition Store
# ═══════════════════════════════════════════════════════════════════

class TransitionStore(abc.ABC):
    """Transition history, ordered by timestamp per flight."""

    @abc.abstractmethod
    def save(self, transition: Transition) -> bool:
        """Store a transition. Returns False if its id was already stored."""

    @abc.abstractmethod
    def list(self, flight_number: str, flight_date: str | None = None) -> list[Transition]: ...

    def close(self) -> None:
        pass


class InMemoryTransitionStore(TransitionStore):

    def __init__(self):
        self._rows: dict[str, Transition] = {}
        self._lock = threading.Lock()

    def save(self, transition):
        with self._lock:
            if transition.transition_id in self._rows:
                return False
            self._rows[transition.transition_id] = transition
            return True

    def list(self, flight_number, flight_date=None):
        with self._lock:
            rows = [
                t for t in self._rows.values()
                if t.flight_number == flight_number
                and (flight_date is None or t.flight_date == flight_date)
            ]
        return sorted(rows, key=lambda t: t.timestamp)

    def __len__(self):
        with self._lock:
            return len(self._rows)


class SQLiteTransitionStore(TransitionStore):

    def __init__(self, db_path: str | Path = "transitions.db"):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS flight_state_transitions (
                transition_id TEXT PRIMARY KEY,
                flight_number TEXT NOT NULL,
                flight_date TEXT NOT NULL,
                from_phase TEXT,
                to_phase TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                gate TEXT DEFAULT '',
                delay_minutes INTEGER DEFAULT 0,
                aircraft TEXT,
                event_type TEXT NOT NULL,
                note TEXT DEFAULT ''
            );

            CREATE INDEX IF NOT EXISTS idx_transitions_flight
                ON flight_state_transitions(flight_number, flight_date, timestamp);
        """)
        self.conn.commit()

    def save(self, transition):
        with self._lock:
            try:
                self.conn.execute("""
                    INSERT INTO flight_state_transitions
                    (transition_id, flight_number, flight_date, from_phase, to_phase,
                     timestamp, gate, delay_minutes, aircraft, event_type, note)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    transition.transition_id, transition.flight_number,
                    transition.flight_date, transition.from_phase, transition.to_phase,
                    transition.timestamp, transition.gate, transition.delay_minutes,
                    transition.aircraft, transition.event_type, transition.note,
                ))
                self.conn.commit()
                return True
            except sqlite3.IntegrityError:
                self.conn.rollback()
                return False
            except sqlite3.Error as e:
                self.conn.rollback()
                raise ActivityError(f"transition store unavailable: {e}") from e

    def list(self, flight_number, flight_date=None):
        query = "SELECT * FROM flight_state_transitions WHERE flight_number = ?"
        params: list[Any] = [flight_number]
        if flight_date:
            query += " AND flight_date = ?"
            params.append(flight_date)
        query += " ORDER BY timestamp, rowid"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [Transition.from_dict(dict(r)) for r in rows]

    def close(self):
        with self._lock:
            self.conn.close()


# ═══════════════════════════════════════════════════════════════════
# Activity Registration
# ═══════════════════════════════════════════════════════════════════

def build_activities(
    publisher: EventPublisher,
    store: TransitionStore,
    registry: ActivityRegistry | None = None,
) -> ActivityRegistry:
    """Register the transition activities against the given receivers."""
    registry = registry or ActivityRegistry()

    def publish_transition_event(flight_number, previous_state, new_state,
                                 timestamp, gate, delay):
        record = transition_event_record(
            flight_number, previous_state, new_state, timestamp, gate, delay)
        message_id = publisher.publish(flight_number, record)
        logger.info("Published transition %s -> %s for %s",
                    previous_state, new_state, flight_number)
        return {"message_id": message_id}

    def persist_transition(transition):
        inserted = store.save(Transition.from_dict(transition))
        if not inserted:
            logger.debug("Transition %s already stored", transition.get("transition_id"))
        return {"inserted": inserted}

    registry.register(PUBLISH_ACTIVITY, publish_transition_event)
    registry.register(PERSIST_ACTIVITY, persist_transition)
    return registry
