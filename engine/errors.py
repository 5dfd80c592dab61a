"""
Flight Orchestrator - Structured Exception Hierarchy

Typed errors so callers can tell apart:
- Validation failures -> rejected at admission, never reach a workflow
- Lifecycle failures  -> already running / not found / terminal
- Activity failures   -> retried by the dispatcher, then surfaced to the workflow
- Runtime failures    -> determinism violations and durable log outages halt
                         the instance until recovery

Each error carries: severity, retryable flag and a free-form detail dict.
"""

from __future__ import annotations
from enum import Enum


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ═══════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════

class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""
    severity: Severity = Severity.MEDIUM
    retryable: bool = False

    def __init__(self, message: str = "", **kwargs):
        self.detail = kwargs
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# Validation Errors - rejected at the admission boundary
# ═══════════════════════════════════════════════════════════════

class InvalidArgument(OrchestratorError):
    """A request, signal or query carried an invalid argument."""
    severity = Severity.LOW


class InvalidFlight(InvalidArgument):
    """A flight payload is missing required attributes."""
    pass


# ═══════════════════════════════════════════════════════════════
# Instance Lifecycle Errors - surfaced to the caller
# ═══════════════════════════════════════════════════════════════

class InstanceLifecycleError(OrchestratorError):
    """Base for errors about an instance's lifecycle state."""

    def __init__(self, instance_id: str, message: str = "", **kwargs):
        self.instance_id = instance_id
        super().__init__(message or f"{type(self).__name__}: {instance_id}", **kwargs)


class InstanceAlreadyRunning(InstanceLifecycleError):
    """A live execution already exists for this identity."""
    pass


class InstanceNotFound(InstanceLifecycleError):
    """No live or terminated execution exists for this identity."""
    pass


class InstanceTerminal(InstanceLifecycleError):
    """Signal sent to an instance that has already terminated."""
    pass


class InstanceHalted(InstanceLifecycleError):
    """The runtime halted the instance; it resumes only after recovery."""
    severity = Severity.HIGH


# ═══════════════════════════════════════════════════════════════
# Activity Errors - raised by side-effect implementations
# ═══════════════════════════════════════════════════════════════

class ActivityError(OrchestratorError):
    """A side-effect call failed."""
    retryable = True


class ActivityTimeout(ActivityError, TimeoutError):
    """A side-effect call exceeded its start-to-close timeout."""
    pass


class NonRetryableActivityError(ActivityError):
    """A side-effect call failed in a way retries cannot fix."""
    retryable = False


# ═══════════════════════════════════════════════════════════════
# Runtime Errors - halt the instance
# ═══════════════════════════════════════════════════════════════

class DeterminismViolation(OrchestratorError):
    """A workflow step did not reproduce the same decisions."""
    severity = Severity.CRITICAL


class DurableLogUnavailable(OrchestratorError):
    """The durable log could not be read or appended."""
    severity = Severity.CRITICAL
    retryable = True
