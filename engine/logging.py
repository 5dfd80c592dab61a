"""
Flight Orchestrator - Structured Logging

JSON line logging for the runtime and the coordinator. Every structured
entry carries instance_id / run_id / workflow so the log of one flight can
be pulled out of a busy worker.

Usage:
    from engine.logging import StructuredLogger, configure_logging

    configure_logging(level="INFO")
    slog = StructuredLogger(workflow="flight", instance_id="flight-UA100-2026-01-01")
    slog.on_workflow_start()

Inside a workflow step use the ReplayAwareLogger handed out by the
WorkflowContext: it stays silent while history is being replayed, so a
restarted worker does not print every transition a second time.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Callable


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "flight_orchestrator"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("FO_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

ROOT_LOGGER = "flight_orchestrator"


def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "flight_orchestrator",
) -> logging.Logger:
    """
    Configure the flight_orchestrator logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid duplicate handlers on reconfigure
    logger.handlers.clear()
    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the flight_orchestrator namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Structured Logger
# ═══════════════════════════════════════════════════════════════════

class StructuredLogger:
    """
    Emits one structured record per runtime event of a workflow instance.
    """

    def __init__(self, workflow: str = "", instance_id: str = "", run_id: str = ""):
        self.workflow = workflow
        self.instance_id = instance_id
        self.run_id = run_id
        self._logger = get_logger("trace")

    def _base_fields(self) -> dict[str, Any]:
        return {
            "workflow": self.workflow,
            "instance_id": self.instance_id,
            "run_id": self.run_id,
        }

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def on_workflow_start(self, replayed: bool = False) -> None:
        self._emit(logging.INFO, "workflow_start", replayed=replayed)

    def on_signal_applied(self, name: str, payload: dict) -> None:
        self._emit(logging.INFO, "signal_applied", signal=name, payload=payload)

    def on_activity_end(self, activity: str, ok: bool, attempts: int,
                        elapsed: float, error: str = "") -> None:
        fields = {
            "activity": activity,
            "ok": ok,
            "attempts": attempts,
            "latency_ms": round(elapsed * 1000, 1),
        }
        if error:
            fields["error"] = error[:500]
        self._emit(logging.INFO if ok else logging.WARNING, "activity_end", **fields)

    def on_instance_recovered(self, events_replayed: int, pending: int) -> None:
        self._emit(
            logging.INFO, "instance_recovered",
            events_replayed=events_replayed,
            pending_actions=pending,
        )

    def on_instance_halted(self, reason: str) -> None:
        self._emit(logging.ERROR, "instance_halted", reason=reason[:500])

    def on_workflow_end(self, status: str, elapsed_s: float) -> None:
        self._emit(
            logging.INFO, "workflow_end",
            status=status,
            elapsed_s=round(elapsed_s, 2),
        )


# ═══════════════════════════════════════════════════════════════════
# Replay-Aware Logger
# ═══════════════════════════════════════════════════════════════════

class ReplayAwareLogger:
    """
    Logger for workflow code. Drops records while `is_replaying()` is true.
    """

    def __init__(self, logger: logging.Logger, is_replaying: Callable[[], bool],
                 instance_id: str = ""):
        self._logger = logger
        self._is_replaying = is_replaying
        self.instance_id = instance_id

    def _log(self, level: int, msg: str, *args):
        if self._is_replaying():
            return
        if self.instance_id:
            msg = f"[{self.instance_id}] {msg}"
        self._logger.log(level, msg, *args)

    def debug(self, msg: str, *args):
        self._log(logging.DEBUG, msg, *args)

    def info(self, msg: str, *args):
        self._log(logging.INFO, msg, *args)

    def warning(self, msg: str, *args):
        self._log(logging.WARNING, msg, *args)

    def error(self, msg: str, *args):
        self._log(logging.ERROR, msg, *args)
