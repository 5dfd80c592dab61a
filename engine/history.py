"""
Flight Orchestrator - Durable Log

Append-only history of every decision a workflow instance makes, plus the
run registry that maps an instance id to its executions. Replaying the
history of a run reconstructs the instance exactly (see engine/replay.py).

Two implementations share one interface:
  - InMemoryDurableLog: tests and single-process demos
  - SQLiteDurableLog:   survives process restarts

A run is one execution of an instance id. At most one run per instance id
may be RUNNING at a time; the SQLite backend enforces this with a partial
unique index.
"""

from __future__ import annotations

import abc
import enum
import json
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from engine.errors import DurableLogUnavailable, InstanceAlreadyRunning


class EventType(str, enum.Enum):
    """History event kinds. Inputs to a workflow are marked (in)."""
    EXECUTION_STARTED = "execution_started"      # (in)
    SIGNAL_RECEIVED = "signal_received"
    SIGNAL_APPLIED = "signal_applied"            # (in)
    ACTIVITY_SCHEDULED = "activity_scheduled"
    ACTIVITY_COMPLETED = "activity_completed"    # (in)
    ACTIVITY_FAILED = "activity_failed"          # (in)
    TIMER_STARTED = "timer_started"
    TIMER_FIRED = "timer_fired"                  # (in)
    CHILD_STARTED = "child_started"
    CHILD_COMPLETED = "child_completed"          # (in)
    CHILD_SIGNALED = "child_signaled"
    EXECUTION_COMPLETED = "execution_completed"


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass
class HistoryEvent:
    """One entry in a run's history. `seq` is dense and starts at 1."""
    run_id: str
    seq: int
    event_type: EventType
    payload: dict[str, Any]
    recorded_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "seq": self.seq,
            "event_type": self.event_type.value,
            "payload": self.payload,
            "recorded_at": self.recorded_at,
        }


@dataclass
class RunRecord:
    """Registry entry for one execution of an instance id."""
    run_id: str
    instance_id: str
    workflow_type: str
    status: RunStatus
    created_at: float
    updated_at: float
    parent_instance_id: str = ""
    parent_run_id: str = ""
    result: Any = None

    @staticmethod
    def create(
        instance_id: str,
        workflow_type: str,
        run_id: str = "",
        parent_instance_id: str = "",
        parent_run_id: str = "",
    ) -> RunRecord:
        now = time.time()
        return RunRecord(
            run_id=run_id or f"run_{uuid.uuid4().hex[:12]}",
            instance_id=instance_id,
            workflow_type=workflow_type,
            status=RunStatus.RUNNING,
            created_at=now,
            updated_at=now,
            parent_instance_id=parent_instance_id,
            parent_run_id=parent_run_id,
        )

    @property
    def is_running(self) -> bool:
        return self.status == RunStatus.RUNNING


class DurableLog(abc.ABC):
    """Per-run append-only history plus the run registry."""

    @abc.abstractmethod
    def create_run(self, run: RunRecord) -> None:
        """Register a new run. Raises InstanceAlreadyRunning if a run of
        the same instance id is still RUNNING."""

    @abc.abstractmethod
    def append(self, run_id: str, event_type: EventType,
               payload: dict[str, Any]) -> HistoryEvent:
        """Append one event and return it with its assigned sequence."""

    @abc.abstractmethod
    def events(self, run_id: str) -> list[HistoryEvent]:
        """Full history of a run in sequence order."""

    @abc.abstractmethod
    def complete_run(self, run_id: str, result: Any) -> None:
        """Mark a run COMPLETED with its final result."""

    @abc.abstractmethod
    def get_run(self, run_id: str) -> RunRecord | None: ...

    @abc.abstractmethod
    def latest_run(self, instance_id: str) -> RunRecord | None:
        """Most recent run of an instance id (live or terminated)."""

    @abc.abstractmethod
    def list_runs(
        self,
        status: RunStatus | None = None,
        workflow_type: str | None = None,
        limit: int = 500,
    ) -> list[RunRecord]: ...

    def stats(self) -> dict[str, Any]:
        runs = self.list_runs(limit=100_000)
        by_status: dict[str, int] = {}
        by_type: dict[str, int] = {}
        events = 0
        for r in runs:
            by_status[r.status.value] = by_status.get(r.status.value, 0) + 1
            by_type[r.workflow_type] = by_type.get(r.workflow_type, 0) + 1
            events += len(self.events(r.run_id))
        return {"runs": by_status, "workflows": by_type, "history_events": events}

    def close(self) -> None:
        pass


# ═══════════════════════════════════════════════════════════════════
# In-Memory Durable Log
# ═══════════════════════════════════════════════════════════════════

class InMemoryDurableLog(DurableLog):
    """
    Process-local log. Outlives a WorkflowRuntime, so tests simulate a
    worker restart by building a second runtime over the same log.
    """

    def __init__(self):
        self._runs: dict[str, RunRecord] = {}
        self._history: dict[str, list[HistoryEvent]] = {}
        self._lock = threading.Lock()

    def create_run(self, run: RunRecord) -> None:
        with self._lock:
            for existing in self._runs.values():
                if existing.instance_id == run.instance_id and existing.is_running:
                    raise InstanceAlreadyRunning(run.instance_id)
            self._runs[run.run_id] = run
            self._history[run.run_id] = []

    def append(self, run_id, event_type, payload):
        with self._lock:
            if run_id not in self._history:
                raise DurableLogUnavailable(f"Unknown run: {run_id}", run_id=run_id)
            history = self._history[run_id]
            # Round-trip through JSON so replay sees exactly what a
            # persistent backend would hand back.
            event = HistoryEvent(
                run_id=run_id,
                seq=len(history) + 1,
                event_type=event_type,
                payload=json.loads(json.dumps(payload)),
                recorded_at=time.time(),
            )
            history.append(event)
            self._runs[run_id].updated_at = event.recorded_at
            return event

    def events(self, run_id):
        with self._lock:
            return list(self._history.get(run_id, []))

    def complete_run(self, run_id, result):
        with self._lock:
            run = self._runs[run_id]
            run.status = RunStatus.COMPLETED
            run.result = json.loads(json.dumps(result))
            run.updated_at = time.time()

    def get_run(self, run_id):
        with self._lock:
            return self._runs.get(run_id)

    def latest_run(self, instance_id):
        with self._lock:
            candidates = [r for r in self._runs.values() if r.instance_id == instance_id]
        if not candidates:
            return None
        return max(candidates, key=lambda r: r.created_at)

    def list_runs(self, status=None, workflow_type=None, limit=500):
        with self._lock:
            runs = list(self._runs.values())
        if status:
            runs = [r for r in runs if r.status == status]
        if workflow_type:
            runs = [r for r in runs if r.workflow_type == workflow_type]
        runs.sort(key=lambda r: r.created_at)
        return runs[:limit]


# ═══════════════════════════════════════════════════════════════════
# SQLite Durable Log
# ═══════════════════════════════════════════════════════════════════

class SQLiteDurableLog(DurableLog):
    """SQLite-backed durable log. One connection shared under a lock."""

    def __init__(self, db_path: str | Path = "orchestrator.db"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()

    def _create_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                workflow_type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'running',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                parent_instance_id TEXT DEFAULT '',
                parent_run_id TEXT DEFAULT '',
                result TEXT
            );

            CREATE TABLE IF NOT EXISTS history (
                run_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                recorded_at REAL NOT NULL,
                PRIMARY KEY (run_id, seq)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_live
                ON runs(instance_id) WHERE status = 'running';
            CREATE INDEX IF NOT EXISTS idx_runs_instance ON runs(instance_id);
            CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
        """)
        self.conn.commit()

    def _guard(self, fn, *args):
        """Run a DB operation, mapping driver failures to DurableLogUnavailable."""
        with self._lock:
            try:
                return fn(*args)
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as e:
                self.conn.rollback()
                raise DurableLogUnavailable(str(e), db_path=self.db_path) from e

    # ─── Runs ────────────────────────────────────────────────────────

    def create_run(self, run: RunRecord) -> None:
        def _insert():
            self.conn.execute("""
                INSERT INTO runs
                (run_id, instance_id, workflow_type, status, created_at,
                 updated_at, parent_instance_id, parent_run_id, result)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                run.run_id, run.instance_id, run.workflow_type,
                run.status.value, run.created_at, run.updated_at,
                run.parent_instance_id, run.parent_run_id, None,
            ))
            self.conn.commit()
        try:
            self._guard(_insert)
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            raise InstanceAlreadyRunning(run.instance_id) from e

    def complete_run(self, run_id, result):
        def _update():
            self.conn.execute(
                "UPDATE runs SET status = ?, result = ?, updated_at = ? WHERE run_id = ?",
                (RunStatus.COMPLETED.value, json.dumps(result), time.time(), run_id),
            )
            self.conn.commit()
        self._guard(_update)

    def get_run(self, run_id):
        row = self._guard(lambda: self.conn.execute(
            "SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone())
        return self._row_to_run(row) if row else None

    def latest_run(self, instance_id):
        row = self._guard(lambda: self.conn.execute(
            "SELECT * FROM runs WHERE instance_id = ? ORDER BY created_at DESC LIMIT 1",
            (instance_id,)).fetchone())
        return self._row_to_run(row) if row else None

    def list_runs(self, status=None, workflow_type=None, limit=500):
        query = "SELECT * FROM runs WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status.value)
        if workflow_type:
            query += " AND workflow_type = ?"
            params.append(workflow_type)
        query += " ORDER BY created_at LIMIT ?"
        params.append(limit)
        rows = self._guard(lambda: self.conn.execute(query, params).fetchall())
        return [self._row_to_run(r) for r in rows]

    def _row_to_run(self, row) -> RunRecord:
        return RunRecord(
            run_id=row["run_id"],
            instance_id=row["instance_id"],
            workflow_type=row["workflow_type"],
            status=RunStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            parent_instance_id=row["parent_instance_id"] or "",
            parent_run_id=row["parent_run_id"] or "",
            result=json.loads(row["result"]) if row["result"] else None,
        )

    # ─── History ─────────────────────────────────────────────────────

    def append(self, run_id, event_type, payload):
        def _insert():
            row = self.conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS last FROM history WHERE run_id = ?",
                (run_id,),
            ).fetchone()
            seq = row["last"] + 1
            recorded_at = time.time()
            body = json.dumps(payload)
            self.conn.execute(
                "INSERT INTO history (run_id, seq, event_type, payload, recorded_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (run_id, seq, event_type.value, body, recorded_at),
            )
            self.conn.execute(
                "UPDATE runs SET updated_at = ? WHERE run_id = ?",
                (recorded_at, run_id),
            )
            self.conn.commit()
            return HistoryEvent(run_id, seq, event_type, json.loads(body), recorded_at)
        return self._guard(_insert)

    def events(self, run_id):
        rows = self._guard(lambda: self.conn.execute(
            "SELECT * FROM history WHERE run_id = ? ORDER BY seq", (run_id,)).fetchall())
        return [
            HistoryEvent(
                run_id=r["run_id"],
                seq=r["seq"],
                event_type=EventType(r["event_type"]),
                payload=json.loads(r["payload"]),
                recorded_at=r["recorded_at"],
            )
            for r in rows
        ]

    def stats(self):
        def _query():
            runs = self.conn.execute(
                "SELECT status, COUNT(*) AS cnt FROM runs GROUP BY status").fetchall()
            types = self.conn.execute(
                "SELECT workflow_type, COUNT(*) AS cnt FROM runs GROUP BY workflow_type").fetchall()
            events = self.conn.execute("SELECT COUNT(*) AS cnt FROM history").fetchone()["cnt"]
            return {
                "runs": {r["status"]: r["cnt"] for r in runs},
                "workflows": {r["workflow_type"]: r["cnt"] for r in types},
                "history_events": events,
            }
        return self._guard(_query)

    def close(self):
        with self._lock:
            self.conn.close()
