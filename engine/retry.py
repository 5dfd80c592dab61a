"""
Flight Orchestrator - Activity Retry with Backoff

Wraps side-effect calls with:
  - A start-to-close timeout per attempt
  - Bounded retry on transient failures (timeouts, connection errors,
    ActivityError with retryable=True)
  - Exponential backoff with jitter between attempts
  - An attempt log for the durable history

Usage:
    from engine.retry import call_with_retry, RetryPolicy

    result = call_with_retry(publish, kwargs, RetryPolicy(max_attempts=5),
                             timeout=10.0, name="publish_transition_event")
    if not result.ok:
        ...  # result.error holds the final failure
"""

from __future__ import annotations

import concurrent.futures
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from engine.errors import ActivityTimeout, OrchestratorError

logger = logging.getLogger("flight_orchestrator.retry")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Retry behaviour for one activity call."""
    max_attempts: int = 3
    backoff_base: float = 0.5       # seconds; delay = base * 2^attempt + jitter
    backoff_max: float = 10.0       # cap on delay between retries
    jitter: float = 0.2             # +/-20% randomization on backoff

    retryable_exceptions: tuple = (
        TimeoutError,
        ConnectionError,
        OSError,
    )


DEFAULT_POLICY = RetryPolicy()


def retry_policy_from_config(cfg: dict[str, Any] | None) -> RetryPolicy:
    """
    Build a policy from the `dispatcher.retry` config section.

        dispatcher:
          retry:
            max_attempts: 3
            backoff_base: 0.5
            backoff_max: 10.0
            jitter: 0.2
    """
    cfg = cfg or {}
    return RetryPolicy(
        max_attempts=int(cfg.get("max_attempts", DEFAULT_POLICY.max_attempts)),
        backoff_base=float(cfg.get("backoff_base", DEFAULT_POLICY.backoff_base)),
        backoff_max=float(cfg.get("backoff_max", DEFAULT_POLICY.backoff_max)),
        jitter=float(cfg.get("jitter", DEFAULT_POLICY.jitter)),
    )


# ═══════════════════════════════════════════════════════════════════
# Retry Result
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryResult:
    """Outcome of an activity call with retry. Never raises."""
    ok: bool
    value: Any = None
    error: str = ""
    error_type: str = ""
    attempts: int = 0
    total_latency: float = 0.0
    attempt_log: list[dict[str, Any]] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

def _is_retryable(error: Exception, policy: RetryPolicy) -> bool:
    """Determine if an exception is retryable."""
    if isinstance(error, OrchestratorError):
        return error.retryable
    if isinstance(error, policy.retryable_exceptions):
        return True

    err_str = str(error).lower()
    if any(term in err_str for term in ["timeout", "timed out", "connection", "unavailable"]):
        return True
    return False


def _calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Calculate backoff delay with jitter."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    actual = capped + random.uniform(-jitter_range, jitter_range)
    return max(0.0, actual)


_timeout_pool = concurrent.futures.ThreadPoolExecutor(
    max_workers=16, thread_name_prefix="fo-activity")


def _call_once(fn: Callable[..., Any], kwargs: dict[str, Any], timeout: float | None) -> Any:
    if not timeout:
        return fn(**kwargs)
    future = _timeout_pool.submit(fn, **kwargs)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        # The worker thread cannot be interrupted; its result is discarded.
        future.cancel()
        raise ActivityTimeout(f"exceeded start-to-close timeout of {timeout}s")


def call_with_retry(
    fn: Callable[..., Any],
    kwargs: dict[str, Any],
    policy: RetryPolicy | None = None,
    timeout: float | None = None,
    name: str = "",
    sleep_fn: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """
    Call `fn(**kwargs)` with per-attempt timeout and bounded retry.

    Args:
        fn:        The side-effect implementation
        kwargs:    Keyword arguments (already JSON-safe, as logged)
        policy:    RetryPolicy (or default)
        timeout:   Start-to-close timeout per attempt in seconds (None = no limit)
        name:      Activity name for logging
        sleep_fn:  Sleep function (injectable for testing)

    Returns:
        RetryResult; the final failure is reported, never raised.
    """
    if policy is None:
        policy = DEFAULT_POLICY

    attempt_log = []
    total_t0 = time.time()
    last_error: Exception | None = None
    attempts = 0

    for attempt in range(max(1, policy.max_attempts)):
        attempts = attempt + 1
        entry: dict[str, Any] = {"attempt": attempts, "activity": name}
        t0 = time.time()
        try:
            value = _call_once(fn, kwargs, timeout)
            entry["latency_s"] = round(time.time() - t0, 3)
            entry["status"] = "success"
            attempt_log.append(entry)
            logger.debug("Activity %s succeeded (attempt %d)", name, attempts)
            return RetryResult(
                ok=True,
                value=value,
                attempts=attempts,
                total_latency=time.time() - total_t0,
                attempt_log=attempt_log,
            )
        except Exception as e:
            entry["latency_s"] = round(time.time() - t0, 3)
            entry["error"] = str(e)[:200]
            last_error = e

            if not _is_retryable(e, policy):
                entry["status"] = "non_retryable"
                attempt_log.append(entry)
                logger.error("Activity %s non-retryable error: %s", name, str(e)[:100])
                break

            entry["status"] = "retryable_error"
            attempt_log.append(entry)
            logger.warning(
                "Activity %s retryable error (attempt %d/%d): %s",
                name, attempts, policy.max_attempts, str(e)[:100],
            )
            if attempt < policy.max_attempts - 1:
                delay = _calculate_backoff(attempt, policy)
                entry["backoff_s"] = round(delay, 3)
                sleep_fn(delay)

    logger.error("Activity %s failed after %d attempt(s)", name, attempts)
    return RetryResult(
        ok=False,
        error=str(last_error),
        error_type=type(last_error).__name__,
        attempts=attempts,
        total_latency=time.time() - total_t0,
        attempt_log=attempt_log,
    )
