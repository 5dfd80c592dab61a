"""
Flight Orchestrator - Engine Package

Durable workflow engine: history, timers, mailbox, dispatcher, replay
and the runtime that drives pure workflow machines.

  - engine.history:    DurableLog, InMemoryDurableLog, SQLiteDurableLog
  - engine.context:    workflow inputs/actions, WorkflowContext, WorkflowMachine
  - engine.runtime:    WorkflowRuntime
  - engine.replay:     replay_history
  - engine.timers:     clocks and timer services
  - engine.dispatcher: ActivityRegistry, Dispatcher
"""

from engine.errors import (
    OrchestratorError,
    InvalidArgument,
    InvalidFlight,
    InstanceAlreadyRunning,
    InstanceNotFound,
    InstanceTerminal,
    InstanceHalted,
    DeterminismViolation,
    DurableLogUnavailable,
)
