"""
Flight Orchestrator - Typed Configuration

One configuration record threaded into the Coordinator at construction.
Built from the merged dict engine.config.load_config() returns, so every
field can be set in config/orchestrator.yaml, an environment overlay, or
an FO_ variable (FO_JOURNEY_TURNAROUND_SECONDS=5).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from coordinator.timing import TimingConfig
from engine.config import DEFAULT_BASE_PATH, load_config
from engine.retry import RetryPolicy, retry_policy_from_config


@dataclass
class DispatcherConfig:
    timeout_seconds: float = 10.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class JourneyConfig:
    turnaround_seconds: float = 1.0
    cancel_active_leg: bool = False


@dataclass
class RuntimeConfig:
    db_path: str = ""                 # empty = in-memory durable log
    executor: str = "thread"          # thread | inline
    worker_threads: int = 8
    strict_determinism: bool = False
    completed_retention: int = 1000  # completed instances kept in memory


@dataclass
class EventBusConfig:
    backend: str = "memory"           # memory | redis
    redis_url: str = "redis://localhost:6379"
    stream: str = "flight-state-changes"


@dataclass
class TransitionStoreConfig:
    backend: str = "memory"           # memory | sqlite
    path: str = "transitions.db"


@dataclass
class OrchestratorConfig:
    timing: TimingConfig = field(default_factory=TimingConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    journey: JourneyConfig = field(default_factory=JourneyConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    event_bus: EventBusConfig = field(default_factory=EventBusConfig)
    transition_store: TransitionStoreConfig = field(default_factory=TransitionStoreConfig)
    log_level: str = "INFO"
    raw: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(cfg: dict[str, Any]) -> OrchestratorConfig:
        d = cfg.get("dispatcher") or {}
        j = cfg.get("journey") or {}
        r = cfg.get("runtime") or {}
        b = cfg.get("event_bus") or {}
        s = cfg.get("transition_store") or {}
        return OrchestratorConfig(
            timing=TimingConfig.from_dict(cfg.get("timing")),
            dispatcher=DispatcherConfig(
                timeout_seconds=float(d.get("timeout_seconds", 10.0)),
                retry=retry_policy_from_config(d.get("retry")),
            ),
            journey=JourneyConfig(
                turnaround_seconds=float(j.get("turnaround_seconds", 1.0)),
                cancel_active_leg=bool(j.get("cancel_active_leg", False)),
            ),
            runtime=RuntimeConfig(
                db_path=str(r.get("db_path") or ""),
                executor=str(r.get("executor", "thread")),
                worker_threads=int(r.get("worker_threads", 8)),
                strict_determinism=bool(r.get("strict_determinism", False)),
                completed_retention=int(r.get("completed_retention", 1000)),
            ),
            event_bus=EventBusConfig(
                backend=str(b.get("backend", "memory")),
                redis_url=str(b.get("redis_url", "redis://localhost:6379")),
                stream=str(b.get("stream", "flight-state-changes")),
            ),
            transition_store=TransitionStoreConfig(
                backend=str(s.get("backend", "memory")),
                path=str(s.get("path", "transitions.db")),
            ),
            log_level=str((cfg.get("logging") or {}).get("level", "INFO")),
            raw=cfg,
        )

    @staticmethod
    def load(base_path: str = DEFAULT_BASE_PATH, env: str = "") -> OrchestratorConfig:
        return OrchestratorConfig.from_dict(load_config(base_path=base_path, env=env))
