"""
Flight Orchestrator - Workflow Runtime

Drives workflow machines against the durable log.

Every instance is a single logical thread of control: at most one driver
holds its lock, and the driver processes one input at a time. For each
input it

  1. runs the machine's step with a deterministic WorkflowContext
  2. appends the input event to the history
  3. appends and executes each decision the step produced

External stimuli (timer fires, activity outcomes, child outcomes) are
queued on the instance inbox and only enter the history when the driver
processes them, so history order is step order. Signals are logged on
arrival (`signal_received`) and applied by the driver at the next
suspension boundary (`signal_applied`), before any other queued input.

Executors:
  - inline: every task runs on the caller's thread, queued trampoline
            style (tests; combine with ManualTimerService)
  - thread: ThreadPoolExecutor with bounded concurrency (production)

Recovery rebuilds every RUNNING run from its history (engine/replay.py)
and resumes it at its last suspension point.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from engine.context import (
    Action,
    ActivityResolved,
    ChildResolved,
    CompleteWorkflow,
    ScheduleActivity,
    SignalChild,
    SignalDelivered,
    StartChild,
    Started,
    StartTimer,
    TimerFired,
    WorkflowContext,
    WorkflowInput,
    WorkflowMachine,
    input_to_event,
)
from engine.dispatcher import Dispatcher
from engine.errors import (
    DeterminismViolation,
    InstanceAlreadyRunning,
    InstanceHalted,
    InstanceLifecycleError,
    InstanceNotFound,
    InstanceTerminal,
    InvalidArgument,
)
from engine.history import DurableLog, EventType, HistoryEvent, RunRecord, RunStatus
from engine.logging import StructuredLogger
from engine.mailbox import Envelope, SignalMailbox
from engine.registry import InstanceRegistry
from engine.replay import ReplayOutcome, replay_history
from engine.timers import ManualTimerService, TimerService

logger = logging.getLogger("flight_orchestrator.runtime")


# ═══════════════════════════════════════════════════════════════════
# Executors
# ═══════════════════════════════════════════════════════════════════

class InlineExecutor:
    """
    Runs work on the submitting thread. A task submitted while another
    task is running on the same thread is queued behind it, so drivers
    never re-enter each other.
    """

    def __init__(self):
        self._local = threading.local()

    def submit(self, fn: Callable, *args) -> None:
        queue = getattr(self._local, "queue", None)
        if queue is not None:
            queue.append((fn, args))
            return
        queue = self._local.queue = deque([(fn, args)])
        try:
            while queue:
                task, task_args = queue.popleft()
                try:
                    task(*task_args)
                except Exception:
                    logger.exception("Inline task failed")
        finally:
            self._local.queue = None

    def shutdown(self, wait: bool = True) -> None:
        pass


class PoolExecutor:
    """ThreadPoolExecutor with logged task failures."""

    def __init__(self, max_workers: int = 4):
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="fo-worker")

    def submit(self, fn: Callable, *args) -> None:
        future = self._pool.submit(fn, *args)
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future):
        error = future.exception()
        if error is not None:
            logger.error("Worker task failed: %s", error, exc_info=error)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


def create_executor(mode: str = "thread", worker_threads: int = 4):
    """inline | thread"""
    if mode == "inline":
        return InlineExecutor()
    if mode == "thread":
        return PoolExecutor(max_workers=worker_threads)
    raise ValueError(f"Unknown executor mode: {mode}")


# ═══════════════════════════════════════════════════════════════════
# Instance
# ═══════════════════════════════════════════════════════════════════

@dataclass(eq=False)
class Instance:
    """In-memory state of one run. Mutated only by the holder of `lock`."""
    instance_id: str
    run_id: str
    workflow_type: str
    machine: WorkflowMachine
    input: dict[str, Any] = field(default_factory=dict)
    parent_instance_id: str = ""
    parent_run_id: str = ""
    started_at: float = field(default_factory=time.time)

    state: Any = None
    step_index: int = 0
    completed: bool = False
    result: Any = None
    halted: str = ""
    detached: bool = False

    # Open work
    activities: dict[str, ScheduleActivity] = field(default_factory=dict)
    timers: dict[str, StartTimer] = field(default_factory=dict)
    children: dict[str, str] = field(default_factory=dict)   # child_id -> run_id

    mailbox: SignalMailbox = field(default_factory=SignalMailbox)
    inbox: deque = field(default_factory=deque)
    activity_queue: deque = field(default_factory=deque)
    activity_running: bool = False
    activity_idle: threading.Event = field(default_factory=threading.Event)
    draining: bool = False
    drive_queued: bool = False

    lock: threading.RLock = field(default_factory=threading.RLock)
    signal_lock: threading.Lock = field(default_factory=threading.Lock)
    flag_lock: threading.Lock = field(default_factory=threading.Lock)
    done: threading.Event = field(default_factory=threading.Event)
    slog: StructuredLogger | None = None

    def __post_init__(self):
        self.activity_idle.set()
        if self.slog is None:
            self.slog = StructuredLogger(self.workflow_type, self.instance_id, self.run_id)

    @property
    def is_live(self) -> bool:
        return not self.completed

    @property
    def status(self) -> str:
        if self.completed:
            return "completed"
        if self.halted:
            return "halted"
        return "running"

    def current_state(self) -> Any:
        if self.state is None:
            return self.machine.initial_state(self.input)
        return self.state


# ═══════════════════════════════════════════════════════════════════
# Runtime
# ═══════════════════════════════════════════════════════════════════

class WorkflowRuntime:
    """
    Hosts workflow instances: start, signal, query, wait, recover.

    Args:
        log:                 Durable log shared across restarts
        dispatcher:          Activity dispatcher
        timers:              Timer service (its clock is the runtime clock)
        machines:            Workflow definitions to host
        executor:            InlineExecutor / PoolExecutor (default: inline
                             for a ManualTimerService, otherwise a pool)
        strict_determinism:  Run every step twice and reject divergence
        config:              Exposed to workflow steps as ctx.config
        completed_retention: Completed instances kept in memory; older
                             ones are answered from the durable log
        drain_timeout:       Seconds reset() waits for running activities
    """

    def __init__(
        self,
        log: DurableLog,
        dispatcher: Dispatcher,
        timers: TimerService,
        machines: list[WorkflowMachine] | None = None,
        executor: Any = None,
        worker_threads: int = 4,
        strict_determinism: bool = False,
        config: dict[str, Any] | None = None,
        completed_retention: int = 1000,
        drain_timeout: float = 30.0,
    ):
        self.log = log
        self.dispatcher = dispatcher
        self.timers = timers
        self.clock = timers.clock
        if executor is None:
            mode = "inline" if isinstance(timers, ManualTimerService) else "thread"
            executor = create_executor(mode, worker_threads)
        self.executor = executor
        self.strict_determinism = strict_determinism
        self.config = config or {}
        self.registry: InstanceRegistry[Instance] = InstanceRegistry()
        self.completed_retention = max(0, completed_retention)
        self.drain_timeout = drain_timeout
        self._retained: deque[Instance] = deque()
        self._retained_lock = threading.Lock()
        self.machines: dict[str, WorkflowMachine] = {}
        for m in machines or []:
            self.register_machine(m)

    def register_machine(self, machine: WorkflowMachine) -> None:
        self.machines[machine.workflow_type] = machine

    def _machine(self, workflow_type: str) -> WorkflowMachine:
        machine = self.machines.get(workflow_type)
        if machine is None:
            raise InvalidArgument(f"Unknown workflow type: {workflow_type}")
        return machine

    # ─── Admission ───────────────────────────────────────────────────

    def start(
        self,
        workflow_type: str,
        instance_id: str,
        data: dict[str, Any],
        parent_instance_id: str = "",
        parent_run_id: str = "",
        run_id: str = "",
    ) -> str:
        """
        Start a new run of `instance_id`. Returns the run id.

        Raises:
            InvalidArgument: the input failed validation
            InstanceAlreadyRunning: a live run holds the id
        """
        machine = self._machine(workflow_type)
        data = machine.validate_input(data)

        existing = self.registry.get(instance_id)
        if existing is not None and existing.is_live:
            raise InstanceAlreadyRunning(instance_id)

        run = RunRecord.create(
            instance_id, workflow_type, run_id=run_id,
            parent_instance_id=parent_instance_id, parent_run_id=parent_run_id,
        )
        self.log.create_run(run)

        instance = Instance(
            instance_id=instance_id,
            run_id=run.run_id,
            workflow_type=workflow_type,
            machine=machine,
            input=data,
            parent_instance_id=parent_instance_id,
            parent_run_id=parent_run_id,
            started_at=run.created_at,
        )
        self.registry.register(instance_id, instance)
        instance.slog.on_workflow_start()
        self._deliver(instance, Started(input=data, at=self.clock.now()))
        return run.run_id

    def signal(self, instance_id: str, name: str,
               payload: dict[str, Any] | None = None) -> str:
        """
        Durably accept a signal. Returns the signal id.

        Raises:
            InstanceNotFound, InstanceTerminal, InstanceHalted, InvalidArgument
        """
        instance = self._loaded(instance_id)
        if instance.completed:
            raise InstanceTerminal(instance_id)
        if instance.halted:
            raise InstanceHalted(instance_id, instance.halted)
        payload = instance.machine.validate_signal(name, dict(payload or {}))

        with instance.signal_lock:
            if instance.completed:
                raise InstanceTerminal(instance_id)
            env = Envelope(
                signal_id=f"sig_{uuid.uuid4().hex[:12]}",
                name=name,
                payload=payload,
                accepted_at=self.clock.now(),
            )
            self.log.append(instance.run_id, EventType.SIGNAL_RECEIVED, env.to_dict())
            instance.mailbox.post(env)
        logger.debug("Signal %s accepted for %s", name, instance_id)
        self._schedule_drive(instance)
        return env.signal_id

    def _loaded(self, instance_id: str) -> Instance:
        instance = self.registry.get(instance_id)
        if instance is not None:
            return instance
        run = self.log.latest_run(instance_id)
        if run is None:
            raise InstanceNotFound(instance_id)
        if not run.is_running:
            raise InstanceTerminal(instance_id)
        raise InstanceNotFound(
            instance_id, f"{instance_id} is not loaded by this worker; run recover()")

    # ─── Queries ─────────────────────────────────────────────────────

    def query(self, instance_id: str, kind: str) -> Any:
        """
        Read-only view of an instance. Reflects every signal accepted
        before the call, including ones not yet applied. Never writes to
        the history.
        """
        instance = self.registry.get(instance_id)
        if instance is None:
            return self._query_from_log(instance_id, kind)

        with instance.lock:
            state = instance.current_state()
            if not instance.completed:
                for i, env in enumerate(instance.mailbox.peek()):
                    ctx = WorkflowContext(
                        instance_id, instance.run_id, instance.step_index + i,
                        now=self.clock.now(), is_replaying=True, config=self.config,
                    )
                    state, _ = instance.machine.step(
                        state, SignalDelivered(env.signal_id, env.name, env.payload,
                                               at=ctx.now()), ctx)
            return instance.machine.query(state, kind)

    def _query_from_log(self, instance_id: str, kind: str) -> Any:
        run = self.log.latest_run(instance_id)
        if run is None:
            raise InstanceNotFound(instance_id)
        machine = self._machine(run.workflow_type)
        outcome = replay_history(machine, self.log.events(run.run_id),
                                 instance_id, self.config)
        return machine.query(outcome.state, kind)

    def wait(self, instance_id: str, timeout: float | None = None) -> Any:
        """
        Block until the instance completes and return its result.

        Raises:
            TimeoutError, InstanceHalted, InstanceNotFound
        """
        instance = self.registry.get(instance_id)
        if instance is None:
            run = self.log.latest_run(instance_id)
            if run is None:
                raise InstanceNotFound(instance_id)
            if run.status == RunStatus.COMPLETED:
                return run.result
            raise InstanceNotFound(
                instance_id, f"{instance_id} is not loaded by this worker; run recover()")
        if not instance.done.wait(timeout):
            raise TimeoutError(f"{instance_id} did not complete within {timeout}s")
        if instance.halted:
            raise InstanceHalted(instance_id, instance.halted)
        return instance.result

    def history(self, instance_id: str) -> list[HistoryEvent]:
        run = self.log.latest_run(instance_id)
        if run is None:
            raise InstanceNotFound(instance_id)
        return self.log.events(run.run_id)

    def instances(self) -> list[Instance]:
        return self.registry.values()

    # ─── Driver ──────────────────────────────────────────────────────

    def _deliver(self, instance: Instance, inp: WorkflowInput) -> None:
        if instance.detached:
            return
        instance.inbox.append(inp)
        self._schedule_drive(instance)

    def _schedule_drive(self, instance: Instance) -> None:
        with instance.flag_lock:
            if instance.drive_queued:
                return
            instance.drive_queued = True
        self.executor.submit(self._drive, instance)

    def _drive(self, instance: Instance) -> None:
        with instance.lock:
            with instance.flag_lock:
                instance.drive_queued = False
            if instance.detached or instance.completed or instance.halted:
                return
            try:
                self._drive_locked(instance)
            except Exception as e:
                if not isinstance(e, InstanceLifecycleError):
                    logger.exception("Instance %s failed", instance.instance_id)
                self._halt(instance, e)

    def _drive_locked(self, instance: Instance) -> None:
        while not instance.completed and not instance.detached:
            if instance.step_index > 0:
                for env in instance.mailbox.drain():
                    self._apply(instance, SignalDelivered(env.signal_id, env.name, env.payload))
                    if instance.completed:
                        return
            if instance.inbox:
                self._apply(instance, instance.inbox.popleft())
                continue
            if instance.step_index > 0 and len(instance.mailbox):
                continue
            return

    def _accepts(self, instance: Instance, inp: WorkflowInput) -> bool:
        """Drop duplicate or stale deliveries."""
        if isinstance(inp, Started):
            return instance.step_index == 0
        if instance.step_index == 0:
            return False
        if isinstance(inp, TimerFired):
            return inp.timer_id in instance.timers
        if isinstance(inp, ActivityResolved):
            return inp.activity_id in instance.activities
        if isinstance(inp, ChildResolved):
            return inp.child_id in instance.children
        return True

    def _apply(self, instance: Instance, inp: WorkflowInput) -> None:
        if not self._accepts(instance, inp):
            logger.debug("Ignoring stale %s for %s", type(inp).__name__, instance.instance_id)
            return
        if not isinstance(inp, (Started, TimerFired)):
            inp = dataclasses.replace(inp, at=self.clock.now())

        machine = instance.machine
        state = machine.initial_state(inp.input) if isinstance(inp, Started) else instance.state
        ctx = WorkflowContext(instance.instance_id, instance.run_id, instance.step_index,
                              now=inp.at, config=self.config)
        new_state, actions = machine.step(state, inp, ctx)

        if self.strict_determinism:
            check = WorkflowContext(instance.instance_id, instance.run_id, instance.step_index,
                                    now=inp.at, is_replaying=True, config=self.config)
            check_state, check_actions = machine.step(state, inp, check)
            if (check_state != new_state
                    or [a.to_payload() for a in check_actions] != [a.to_payload() for a in actions]):
                raise DeterminismViolation(
                    f"Step {instance.step_index} of {instance.instance_id} is not deterministic",
                    run_id=instance.run_id,
                )

        event_type, payload = input_to_event(inp)
        self.log.append(instance.run_id, event_type, payload)
        instance.state = new_state
        instance.step_index += 1
        self._close_open_item(instance, inp)
        if isinstance(inp, SignalDelivered):
            instance.slog.on_signal_applied(inp.name, inp.payload)

        for action in actions:
            self._execute(instance, action)

    def _close_open_item(self, instance: Instance, inp: WorkflowInput) -> None:
        if isinstance(inp, TimerFired):
            instance.timers.pop(inp.timer_id, None)
        elif isinstance(inp, ActivityResolved):
            instance.activities.pop(inp.activity_id, None)
        elif isinstance(inp, ChildResolved):
            instance.children.pop(inp.child_id, None)

    # ─── Decisions ───────────────────────────────────────────────────

    def _execute(self, instance: Instance, action: Action) -> None:
        """Record one decision in the history, then carry it out."""
        if isinstance(action, StartChild):
            child_run_id = f"run_{uuid.uuid4().hex[:12]}"
            self.log.append(instance.run_id, EventType.CHILD_STARTED,
                            {**action.to_payload(), "run_id": child_run_id})
            instance.children[action.child_id] = child_run_id
            self._start_child(instance, action, child_run_id)
            return

        self.log.append(instance.run_id, action.event_type, action.to_payload())

        if isinstance(action, ScheduleActivity):
            instance.activities[action.activity_id] = action
            self._enqueue_activity(instance, action)
        elif isinstance(action, StartTimer):
            instance.timers[action.timer_id] = action
            self._arm(instance, action)
        elif isinstance(action, SignalChild):
            try:
                self.signal(action.child_id, action.name, action.payload)
            except InstanceLifecycleError as e:
                logger.warning("Could not signal child %s: %s", action.child_id, e)
        elif isinstance(action, CompleteWorkflow):
            self._complete(instance, action.result)

    def _start_child(self, instance: Instance, action: StartChild, child_run_id: str) -> None:
        try:
            self.start(
                action.workflow_type,
                action.child_id,
                action.input,
                parent_instance_id=instance.instance_id,
                parent_run_id=instance.run_id,
                run_id=child_run_id,
            )
        except (InvalidArgument, InstanceAlreadyRunning) as e:
            logger.warning("Child %s of %s failed to start: %s",
                           action.child_id, instance.instance_id, e)
            self._deliver(instance, ChildResolved(
                action.child_id, ok=False, error=f"{type(e).__name__}: {e}"))

    def _enqueue_activity(self, instance: Instance, action: ScheduleActivity) -> None:
        """Activities of one instance run one at a time, in decision order."""
        with instance.flag_lock:
            instance.activity_queue.append(action)
            if instance.activity_running or instance.draining:
                return
            instance.activity_running = True
            instance.activity_idle.clear()
        self.executor.submit(self._run_activities, instance)

    def _run_activities(self, instance: Instance) -> None:
        while True:
            with instance.flag_lock:
                if not instance.activity_queue or instance.detached or instance.draining:
                    instance.activity_running = False
                    instance.activity_idle.set()
                    return
                action = instance.activity_queue.popleft()
            outcome = self.dispatcher.execute(action, instance.slog)
            self._deliver(instance, ActivityResolved(
                activity_id=outcome.activity_id,
                name=outcome.name,
                ok=outcome.ok,
                result=outcome.result,
                error=outcome.error,
                attempts=outcome.attempts,
            ))

    def _arm(self, instance: Instance, action: StartTimer) -> None:
        def fire():
            self._deliver(instance, TimerFired(action.timer_id, at=action.fire_at))
        self.timers.schedule(f"{instance.run_id}:{action.timer_id}", action.fire_at, fire)

    def _disarm(self, instance: Instance) -> None:
        for timer_id in list(instance.timers):
            self.timers.cancel(f"{instance.run_id}:{timer_id}")

    def _complete(self, instance: Instance, result: Any) -> None:
        with instance.signal_lock:
            instance.completed = True
        instance.result = result
        self.log.complete_run(instance.run_id, result)
        self._disarm(instance)
        instance.slog.on_workflow_end("completed", time.time() - instance.started_at)
        instance.done.set()
        self._notify_parent(instance)
        self._retain(instance)

    def _retain(self, instance: Instance) -> None:
        """Keep the most recent completed instances loaded; evict the rest."""
        with self._retained_lock:
            self._retained.append(instance)
            evicted = []
            while len(self._retained) > self.completed_retention:
                evicted.append(self._retained.popleft())
        for old in evicted:
            self.registry.discard(old.instance_id, old)

    def _notify_parent(self, instance: Instance) -> None:
        """Report a completed or halted child to the run that started it."""
        if not instance.parent_instance_id:
            return
        parent = self.registry.get(instance.parent_instance_id)
        if parent is None or parent.run_id != instance.parent_run_id:
            return
        if instance.halted:
            resolved = ChildResolved(instance.instance_id, ok=False, error=instance.halted)
        else:
            resolved = ChildResolved(instance.instance_id, ok=True, result=instance.result)
        self._deliver(parent, resolved)

    def _halt(self, instance: Instance, error: Exception) -> None:
        instance.halted = f"{type(error).__name__}: {error}"
        instance.slog.on_instance_halted(instance.halted)
        instance.done.set()
        self._notify_parent(instance)

    # ─── Recovery ────────────────────────────────────────────────────

    def recover(self) -> list[str]:
        """
        Rebuild every RUNNING run of a hosted workflow type from the log
        and resume it. Instances already driven by this runtime are left
        alone unless halted. Returns the recovered instance ids.
        """
        recovered: list[tuple[Instance, ReplayOutcome]] = []
        failed: list[Instance] = []

        for run in self.log.list_runs(status=RunStatus.RUNNING, limit=1_000_000):
            existing = self.registry.get(run.instance_id)
            if (existing is not None and existing.run_id == run.run_id
                    and not existing.halted and not existing.detached):
                continue
            machine = self.machines.get(run.workflow_type)
            if machine is None:
                logger.warning("No machine for %s (%s); not recovering",
                               run.run_id, run.workflow_type)
                continue
            if existing is not None:
                existing.detached = True
                self._disarm(existing)
                self.registry.remove(run.instance_id)

            events = self.log.events(run.run_id)
            instance = Instance(
                instance_id=run.instance_id,
                run_id=run.run_id,
                workflow_type=run.workflow_type,
                machine=machine,
                input=events[0].payload.get("input", {}) if events else {},
                parent_instance_id=run.parent_instance_id,
                parent_run_id=run.parent_run_id,
                started_at=run.created_at,
            )
            try:
                outcome = replay_history(machine, events, run.instance_id, self.config)
            except DeterminismViolation as e:
                logger.error("Replay of %s failed: %s", run.instance_id, e)
                instance.halted = f"DeterminismViolation: {e}"
                instance.slog.on_instance_halted(instance.halted)
                instance.done.set()
                self.registry.register(run.instance_id, instance)
                failed.append(instance)
                continue

            instance.state = outcome.state
            instance.step_index = outcome.step_index
            instance.activities = dict(outcome.activities)
            instance.timers = dict(outcome.timers)
            instance.children = {cid: rid for cid, (_a, rid) in outcome.children.items()}
            for env in outcome.unapplied_signals:
                instance.mailbox.post(env)
            self.registry.register(run.instance_id, instance)
            recovered.append((instance, outcome))

        for instance, outcome in recovered:
            self.executor.submit(self._resume, instance, outcome)

        # Parents resumed above pick up halted children in _resume_child.
        resumed = {i.instance_id for i, _ in recovered}
        for instance in failed:
            if instance.parent_instance_id not in resumed:
                self._notify_parent(instance)

        if recovered:
            logger.info("Recovered %d instance(s)", len(recovered))
        return [i.instance_id for i, _ in recovered]

    def _resume(self, instance: Instance, outcome: ReplayOutcome) -> None:
        with instance.lock:
            try:
                instance.slog.on_workflow_start(replayed=True)
                instance.slog.on_instance_recovered(outcome.events_replayed, outcome.pending)
                if outcome.step_index == 0:
                    # Crashed before execution_started was recorded; the input is lost.
                    logger.warning("Run %s has no history; closing it", instance.run_id)
                    self._complete(instance, None)
                    return
                if outcome.completed:
                    self._complete(instance, outcome.result)
                    return
                for action in outcome.activities.values():
                    self._enqueue_activity(instance, action)
                for action in outcome.timers.values():
                    self._arm(instance, action)
                for child_id, (action, child_run_id) in outcome.children.items():
                    self._resume_child(instance, action, child_run_id)
                for action in outcome.unconfirmed:
                    self._execute(instance, action)
            except Exception as e:
                logger.exception("Resume of %s failed", instance.instance_id)
                self._halt(instance, e)
                return
        self._schedule_drive(instance)

    def _resume_child(self, instance: Instance, action: StartChild, child_run_id: str) -> None:
        child = self.log.get_run(child_run_id) if child_run_id else None
        if child is None:
            self._start_child(instance, action, child_run_id)
        elif child.status == RunStatus.COMPLETED:
            self._deliver(instance, ChildResolved(action.child_id, ok=True, result=child.result))
        else:
            # A running child is recovered on its own and reports when it
            # completes or halts; one that halted during replay reports here.
            loaded = self.registry.get(action.child_id)
            if loaded is not None and loaded.run_id == child_run_id and loaded.halted:
                self._deliver(instance, ChildResolved(
                    action.child_id, ok=False, error=loaded.halted))

    def reset(self) -> None:
        """
        Drop all in-memory instances. The durable log is untouched.

        Activities already executing are allowed to finish and their
        outcomes are recorded first, so recovery does not run them again.
        Queued activities that never started are left to recovery.
        """
        instances = self.registry.clear()
        with self._retained_lock:
            self._retained.clear()
        for instance in instances:
            with instance.flag_lock:
                instance.draining = True
        for instance in instances:
            self._disarm(instance)
            if not instance.activity_idle.wait(self.drain_timeout):
                logger.warning("Activity of %s still running after %.1fs; detaching",
                               instance.instance_id, self.drain_timeout)
            with instance.lock:
                if not (instance.completed or instance.halted or instance.detached):
                    try:
                        self._record_activity_outcomes(instance)
                    except Exception as e:
                        logger.exception("Instance %s failed while draining",
                                         instance.instance_id)
                        self._halt(instance, e)
                instance.detached = True
            self._disarm(instance)

    def _record_activity_outcomes(self, instance: Instance) -> None:
        """Apply finished activity outcomes still waiting in the inbox."""
        for inp in list(instance.inbox):
            if isinstance(inp, ActivityResolved):
                instance.inbox.remove(inp)
                self._apply(instance, inp)

    def shutdown(self, wait: bool = True) -> None:
        self.reset()
        self.timers.shutdown()
        self.executor.shutdown(wait=wait)
