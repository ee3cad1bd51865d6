"""
OpenClaw - Run Engine

Drives an ExecutionContext through its workflow, one step at a time:

    for each step from the cursor:
        condition false        → skip (cursor only)
        needs approval         → WAITING_APPROVAL, driver returns
        budget pre-check fails → budget_limit_action (PAUSED | FAILED)
        invoke agent           → output under step.output, totals, ledger
        failure                → retry with backoff, then fallback

Operations:
    execute(context)        → RunResult   (blocks until finished or suspended)
    submit(context)         → Future[RunResult]
    resume(run_id, input)   → RunResult   (from WAITING_APPROVAL / PAUSED)
    pause(run_id)           halts before the next step
    cancel(run_id)          terminal; the in-flight result is discarded
    get_run(run_id)         → Run

Concurrency model:
  - Agent calls run on an invocation thread pool; the driver waits on a
    per-run wake event set by invocation completion, pause and cancel.
  - A per-run state lock guards every status/state mutation; a per-run
    driver lock keeps execute/resume for one run from overlapping.
  - Suspended runs hold no thread and no lock. Their Run record in the
    store is all that's needed to resume, even from another process.
  - Engines sharing a store re-read an idle run before resume, pause
    and cancel, and every write is a compare-and-set on status. A
    driver whose write loses drops its copy and stops.
  - run_timeout_seconds counts active time only; time spent suspended
    doesn't count toward it.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

from assembly.models import BudgetAction, ExecutionContext, FailureFallback, ResolvedAgent, WorkflowStep
from engine.conditions import evaluate_condition
from engine.events import (
    EventSink,
    RunCompleted,
    RunFailed,
    StateTransition,
    StepCompleted,
    StepRetrying,
    StepStarted,
    ValidationFailed,
    ValidationPassed,
    emit_safely,
)
from engine.exceptions import (
    AgentFailure,
    ContextValidationError,
    InfrastructureError,
    InvalidTransition,
    InvocationFailure,
    RunNotFound,
    ToolFailure,
)
from engine.invocation import AgentInvoker, InvocationRequest, InvocationResult
from engine.logging import log_structured
from engine.retry import RetrySettings, calculate_backoff
from engine.state import RunState
from orchestrator.budget import BudgetLedger
from orchestrator.store import InMemoryRunStore, RunStore, SQLiteRunStore
from orchestrator.transitions import PAUSABLE, RESUMABLE, assert_transition
from orchestrator.types import TERMINAL_STATUSES, Run, RunResult, RunStatus

logger = logging.getLogger("openclaw.runtime")

# Float slack for budget comparisons
_EPSILON = 1e-9


@dataclass(frozen=True)
class EngineSettings:
    run_timeout_seconds: float | None = None   # active time; None = no deadline
    max_workers: int = 8                       # concurrent submit() runs
    invoke_workers: int = 16                   # concurrent agent invocations

    @classmethod
    def from_config(cls, config: Any) -> EngineSettings:
        """
        Config format:
            engine:
              run_timeout_seconds: 900
              max_workers: 8
              invoke_workers: 16
        """
        timeout = config.get("engine.run_timeout_seconds")
        return cls(
            run_timeout_seconds=float(timeout) if timeout else None,
            max_workers=int(config.get("engine.max_workers", cls.max_workers)),
            invoke_workers=int(config.get("engine.invoke_workers", cls.invoke_workers)),
        )


@dataclass(frozen=True)
class _Hold:
    """A step's budget reservation, settled in the period it was taken."""
    amount: float
    period: str | None = None


class _RunHandle:
    """In-process bookkeeping for one run that may still change."""

    def __init__(self, run: Run):
        self.context: ExecutionContext = run.context
        self.load(run)
        self.lock = threading.RLock()
        self.driver_lock = threading.Lock()
        self.wake = threading.Event()
        self.active_since: float | None = None
        self.driving = False
        # Set once the stored run moved on without this handle
        self.stale = False

    def load(self, run: Run) -> None:
        self.run = run
        self.state = RunState(
            run.state,
            trigger=run.context.trigger_data(),
            project_context=run.context.project.context,
        )


class RunEngine:
    """
    Args:
        invoker: Executes agent steps.
        run_store: Persists Run records (default: in-memory).
        event_sink: Receives lifecycle events; delivery is best-effort.
        budget_ledger: Shared per-project spend. Without one, the monthly
            cap is enforced per run against the assembly-time snapshot.
        retry_settings: Backoff between retries.
        settings: Timeout and pool sizes.
        rng: Jitter source (tests pass a seeded Random).
        clock: Monotonic clock for active-time accounting.
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        run_store: RunStore | None = None,
        event_sink: EventSink | None = None,
        budget_ledger: BudgetLedger | None = None,
        retry_settings: RetrySettings | None = None,
        settings: EngineSettings | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.invoker = invoker
        self.run_store = run_store or InMemoryRunStore()
        self.event_sink = event_sink
        self.budget_ledger = budget_ledger
        self.retry_settings = retry_settings or RetrySettings()
        self.settings = settings or EngineSettings()
        self._rng = rng
        self._clock = clock
        self._handles: dict[str, _RunHandle] = {}
        self._handles_lock = threading.Lock()
        self._run_pool = ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="openclaw-run",
        )
        self._invoke_pool = ThreadPoolExecutor(
            max_workers=self.settings.invoke_workers, thread_name_prefix="openclaw-invoke",
        )

    @classmethod
    def from_config(
        cls,
        config: Any,
        invoker: AgentInvoker,
        event_sink: EventSink | None = None,
        budget_ledger: BudgetLedger | None = None,
        run_store: RunStore | None = None,
    ) -> RunEngine:
        if run_store is None:
            db_path = config.get("storage.run_db_path")
            run_store = SQLiteRunStore(db_path) if db_path else InMemoryRunStore()
        return cls(
            invoker=invoker,
            run_store=run_store,
            event_sink=event_sink,
            budget_ledger=budget_ledger,
            retry_settings=RetrySettings.from_config(config),
            settings=EngineSettings.from_config(config),
        )

    # ═══════════════════════════════════════════════════════════
    # Public operations
    # ═══════════════════════════════════════════════════════════

    def execute(self, context: ExecutionContext) -> RunResult:
        """
        Start a run and drive it until it finishes or suspends.

        Raises ContextValidationError if the context fails its invariants
        (no run is created), InvalidTransition if a run with this id
        already exists.
        """
        self._validate(context)
        existing = self.run_store.get_run(context.run_id)
        if existing is not None:
            raise InvalidTransition(context.run_id, existing.status.value, operation="execute")

        run = Run.create(context)
        self.run_store.create_run(run)
        handle = _RunHandle(run)
        with self._handles_lock:
            self._handles[run.id] = handle
        log_structured(
            logger, logging.INFO, "run_created",
            run_id=run.id, project_id=run.project_id, workflow_id=run.workflow_id,
            steps=len(context.workflow.steps),
        )

        with handle.driver_lock:
            with handle.lock:
                if handle.run.status != RunStatus.PENDING:
                    return RunResult.from_run(handle.run)
                if not self._transition(handle, RunStatus.RUNNING, "run started"):
                    return RunResult.from_run(handle.run)
            return self._drive(handle)

    def submit(self, context: ExecutionContext) -> Future:
        """Run execute() on the engine's worker pool."""
        return self._run_pool.submit(self.execute, context)

    def resume(self, run_id: str, input: Any = None) -> RunResult:
        """
        Continue a suspended run.

        From WAITING_APPROVAL: `input` is recorded as the approval for the
        pending step, or for a failure hand-off the step is retried with
        a fresh retry budget. Passing {"skip": true} skips the pending
        step instead. From PAUSED: the run continues where it halted.
        """
        handle = self._handle(run_id)
        with handle.driver_lock:
            with handle.lock:
                self._refresh(handle, "resume")
                status = handle.run.status
                if status not in RESUMABLE:
                    raise InvalidTransition(run_id, status.value, operation="resume")
                if status == RunStatus.WAITING_APPROVAL:
                    self._apply_resume_input(handle, input)
                if not self._transition(handle, RunStatus.RUNNING, f"resumed from {status.value}"):
                    raise InvalidTransition(run_id, handle.run.status.value, operation="resume")
            return self._drive(handle)

    def pause(self, run_id: str) -> None:
        """Halt before the next step. The in-flight step completes and counts."""
        handle = self._handle(run_id)
        with handle.lock:
            self._refresh(handle, "pause")
            status = handle.run.status
            if status not in PAUSABLE:
                raise InvalidTransition(run_id, status.value, operation="pause")
            if not self._transition(handle, RunStatus.PAUSED, "pause requested"):
                raise InvalidTransition(run_id, handle.run.status.value, operation="pause")
        handle.wake.set()

    def cancel(self, run_id: str) -> None:
        """Stop the run now. Cost already incurred stays on the record."""
        handle = self._handle(run_id)
        with handle.lock:
            self._refresh(handle, "cancel")
            status = handle.run.status
            if status in TERMINAL_STATUSES:
                raise InvalidTransition(run_id, status.value, operation="cancel")
            if not self._transition(handle, RunStatus.CANCELLED, "cancel requested"):
                raise InvalidTransition(run_id, handle.run.status.value, operation="cancel")
            driving = handle.driving
        handle.wake.set()
        if not driving:
            self._forget(handle)

    def get_run(self, run_id: str) -> Run:
        with self._handles_lock:
            handle = self._handles.get(run_id)
        if handle is not None:
            with handle.lock:
                return handle.run.copy()
        run = self.run_store.get_run(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def list_runs(
        self, project_id: str | None = None, status: RunStatus | None = None,
    ) -> list[Run]:
        return self.run_store.list_runs(project_id=project_id, status=status)

    def shutdown(self, wait: bool = True) -> None:
        self._run_pool.shutdown(wait=wait)
        self._invoke_pool.shutdown(wait=wait)

    # ═══════════════════════════════════════════════════════════
    # Driver
    # ═══════════════════════════════════════════════════════════

    def _drive(self, handle: _RunHandle) -> RunResult:
        """Run steps until the run leaves RUNNING. Caller holds driver_lock."""
        steps = handle.context.workflow.steps
        with handle.lock:
            handle.driving = True
            handle.active_since = self._clock()
        try:
            while True:
                with handle.lock:
                    if handle.stale or handle.run.status != RunStatus.RUNNING:
                        break
                    if self._timeout_if_due(handle):
                        break
                    index = handle.state.cursor
                    if index >= len(steps):
                        self._transition(handle, RunStatus.COMPLETED, "all steps complete")
                        break
                self._run_step(handle, index, steps[index])
        finally:
            with handle.lock:
                self._checkpoint_clock(handle)
                handle.active_since = None
                handle.driving = False

        with handle.lock:
            result = RunResult.from_run(handle.run)
            terminal = handle.run.is_terminal
        if terminal:
            self._forget(handle)
        return result

    def _run_step(self, handle: _RunHandle, index: int, step: WorkflowStep) -> None:
        ctx = handle.context
        state = handle.state
        agent = ctx.agents[step.agent]
        label = step.label(index)

        with handle.lock:
            if handle.stale or handle.run.status != RunStatus.RUNNING:
                return
            if step.condition and not evaluate_condition(step.condition, state.get):
                state.cursor = index + 1
                self._persist(handle)
                logger.info("Run %s: step %s skipped, condition false: %s",
                            handle.run.id, label, step.condition)
                return
            if step.requires_approval and not state.has_approval(index):
                state.set_pending_approval(index, "approval", {
                    "step": label,
                    "agent": agent.name,
                    "input": state.resolve_input(step.input),
                })
                self._transition(
                    handle, RunStatus.WAITING_APPROVAL, f"step {label} requires approval",
                )
                return

        while True:
            with handle.lock:
                if handle.stale or handle.run.status not in PAUSABLE:
                    return
                if self._timeout_if_due(handle):
                    return
                hold = self._reserve_budget(handle, agent.estimated_cost_usd, label)
                if hold is None:
                    return
                tools = agent.available_tools(state.get)
                request = InvocationRequest(
                    run_id=handle.run.id,
                    step_index=index,
                    step_name=label,
                    agent=agent,
                    input=state.resolve_input(step.input),
                    tools=tools,
                    tool_definitions={t: ctx.tools[t] for t in tools if t in ctx.tools},
                    attempt=state.retries_for(index) + 1,
                    project_context=dict(ctx.project.context),
                )

            emit_safely(self.event_sink, StepStarted(
                run_id=request.run_id, step=index, agent=agent.name,
                input=request.input, attempt=request.attempt,
            ))
            logger.info("Run %s: step %s started (agent=%s attempt=%d)",
                        request.run_id, label, agent.name, request.attempt)

            started = self._clock()
            future = self._invoke_pool.submit(self.invoker.invoke, request)
            future.add_done_callback(lambda _f: handle.wake.set())
            if not self._await(handle, future):
                self._abandon(handle, future, hold, label)
                return
            duration_ms = round((self._clock() - started) * 1000, 3)

            failure: InvocationFailure | None = None
            try:
                result = future.result()
            except InvocationFailure as e:
                failure = e
            except InfrastructureError as e:
                self._on_infrastructure_error(handle, hold, label, e)
                raise
            except Exception as e:
                failure = AgentFailure(agent.name, f"{type(e).__name__}: {e}")

            if failure is None:
                self._on_success(handle, index, step, agent, result, hold, duration_ms)
                return
            delay = self._on_failure(handle, index, step, agent, failure, hold)
            if delay is None:
                return
            self._backoff(handle, delay)

    # ── Waiting ─────────────────────────────────────────────────

    def _await(self, handle: _RunHandle, future: Future) -> bool:
        """
        Wait for the invocation. False if the run went terminal first
        (cancelled or timed out); the result must then be discarded.
        """
        while True:
            with handle.lock:
                if handle.stale or handle.run.status in TERMINAL_STATUSES:
                    return False
                if future.done():
                    return True
                if self._timeout_if_due(handle):
                    return False
                remaining = (
                    self._time_left(handle) if handle.run.status in PAUSABLE else None
                )
            handle.wake.wait(remaining)
            handle.wake.clear()

    def _backoff(self, handle: _RunHandle, delay: float) -> None:
        """Sleep before a retry; pause, cancel and the deadline cut it short."""
        deadline = self._clock() + delay
        while True:
            with handle.lock:
                if handle.stale or handle.run.status not in PAUSABLE:
                    return
                if self._timeout_if_due(handle):
                    return
                left = self._time_left(handle)
            wait = deadline - self._clock()
            if wait <= 0:
                return
            if left is not None:
                wait = min(wait, max(left, 0.0))
            handle.wake.wait(wait)
            handle.wake.clear()

    # ── Outcomes ────────────────────────────────────────────────

    def _on_success(
        self,
        handle: _RunHandle,
        index: int,
        step: WorkflowStep,
        agent: ResolvedAgent,
        result: InvocationResult,
        hold: _Hold,
        duration_ms: float,
    ) -> None:
        state = handle.state
        label = step.label(index)
        with handle.lock:
            self._settle(handle, hold, result.cost_usd)
            if handle.stale or handle.run.is_terminal:
                return
            state.record_usage(result.tokens, result.cost_usd)
            state.complete_step(step.output, result.output)
            state.reset_retries(index)
            state.cursor = index + 1
            if handle.run.status == RunStatus.RETRYING:
                saved = self._transition(handle, RunStatus.RUNNING, f"retry of step {label} succeeded")
            else:
                saved = self._persist(handle)
            if not saved:
                return

        logger.info("Run %s: step %s completed (%d tokens, $%.6f, %.1fms)",
                    handle.run.id, label, result.tokens, result.cost_usd, duration_ms)
        emit_safely(self.event_sink, StepCompleted(
            run_id=handle.run.id, step=index, agent=agent.name, output=result.output,
            duration_ms=duration_ms, tokens=result.tokens, cost_usd=result.cost_usd,
        ))

    def _on_failure(
        self,
        handle: _RunHandle,
        index: int,
        step: WorkflowStep,
        agent: ResolvedAgent,
        failure: InvocationFailure,
        hold: _Hold,
    ) -> float | None:
        """Record the failure; return the backoff delay if a retry follows."""
        state = handle.state
        label = step.label(index)
        error_policy = handle.context.workflow.error_policy
        if isinstance(failure, ToolFailure):
            policy = error_policy.on_tool_failure
        else:
            policy = error_policy.on_agent_failure

        with handle.lock:
            self._settle(handle, hold, failure.cost_usd)
            if handle.stale or handle.run.is_terminal:
                return None
            state.record_usage(failure.tokens, failure.cost_usd)
            status = handle.run.status
            logger.warning("Run %s: step %s %s failure: %s",
                           handle.run.id, label, failure.failure_class, failure)

            if status == RunStatus.PAUSED:
                # Re-attempted on resume with the same retry count
                self._persist(handle)
                return None

            if state.retries_for(index) < policy.retry:
                retries = state.increment_retries(index)
                delay = calculate_backoff(retries - 1, self.retry_settings, self._rng)
                if status == RunStatus.RUNNING:
                    saved = self._transition(
                        handle, RunStatus.RETRYING,
                        f"{failure.failure_class} failure in step {label}: {failure}",
                    )
                else:
                    saved = self._persist(handle)
                if not saved:
                    return None
            else:
                self._apply_fallback(handle, index, step, agent, failure, policy.fallback)
                return None

        emit_safely(self.event_sink, StepRetrying(
            run_id=handle.run.id, step=index, agent=agent.name, attempt=retries + 1,
            failure=str(failure), delay_s=round(delay, 3),
        ))
        return delay

    def _apply_fallback(
        self,
        handle: _RunHandle,
        index: int,
        step: WorkflowStep,
        agent: ResolvedAgent,
        failure: InvocationFailure,
        fallback: FailureFallback,
    ) -> None:
        """Retries exhausted. Caller holds the state lock."""
        state = handle.state
        label = step.label(index)
        reason = (
            f"{failure.failure_class} failure in step {label} after "
            f"{state.retries_for(index)} retries: {failure}"
        )

        if fallback == FailureFallback.NOTIFY_HUMAN:
            state.set_pending_approval(index, "failure", {
                "step": label,
                "agent": agent.name,
                "failure_class": failure.failure_class,
                "error": str(failure),
            })
            self._transition(handle, RunStatus.WAITING_APPROVAL, reason)
        elif fallback == FailureFallback.SKIP and isinstance(failure, ToolFailure):
            state.mark_skipped(step.output)
            state.reset_retries(index)
            state.cursor = index + 1
            if handle.run.status == RunStatus.RETRYING:
                saved = self._transition(handle, RunStatus.RUNNING, f"step {label} skipped: {reason}")
            else:
                saved = self._persist(handle)
            if not saved:
                return
            emit_safely(self.event_sink, StepCompleted(
                run_id=handle.run.id, step=index, agent=agent.name, output=None,
                duration_ms=0.0, tokens=0, skipped=True,
            ))
        else:
            self._transition(handle, RunStatus.FAILED, reason, error=reason)

    def _on_infrastructure_error(
        self, handle: _RunHandle, hold: _Hold, label: str, error: InfrastructureError,
    ) -> None:
        """Park the run so the caller can resume once the dependency is back."""
        with handle.lock:
            self._settle(handle, hold, 0.0)
            if not handle.stale and handle.run.status in PAUSABLE:
                self._transition(
                    handle, RunStatus.PAUSED, f"infrastructure error in step {label}: {error}",
                )

    def _abandon(self, handle: _RunHandle, future: Future, hold: _Hold, label: str) -> None:
        """Discard an in-flight invocation; its cost still reaches the ledger."""
        run_id = handle.run.id
        future.cancel()

        def settle_late(f: Future) -> None:
            cost = 0.0
            if not f.cancelled():
                exc = f.exception()
                if exc is None:
                    cost = f.result().cost_usd
                elif isinstance(exc, InvocationFailure):
                    cost = exc.cost_usd
            self._settle(handle, hold, cost)
            logger.info("Run %s: discarded result of step %s (cost $%.6f)", run_id, label, cost)

        future.add_done_callback(settle_late)

    # ── Budget ──────────────────────────────────────────────────

    def _reserve_budget(self, handle: _RunHandle, estimate: float, label: str) -> _Hold | None:
        """
        Pre-step check. Returns the hold, or None once the budget action
        has been applied. Caller holds the state lock.
        """
        budget = handle.context.project.budget
        spent = handle.state.total_cost_usd
        project_id = handle.run.project_id

        if spent + estimate > budget.per_run_usd + _EPSILON:
            reason = (
                f"step {label} (est. ${estimate:.2f}) would take run spend ${spent:.2f} "
                f"past its ${budget.per_run_usd:.2f} per-run budget"
            )
        elif self.budget_ledger is not None:
            period = self.budget_ledger.reserve(project_id, estimate, budget.monthly_usd)
            if period is not None:
                return _Hold(estimate, period)
            reason = (
                f"step {label} (est. ${estimate:.2f}) would exceed project "
                f"'{project_id}' monthly budget ${budget.monthly_usd:.2f}"
            )
        elif spent + estimate > budget.remaining_usd + _EPSILON:
            reason = (
                f"step {label} (est. ${estimate:.2f}) would exceed the "
                f"${budget.remaining_usd:.2f} remaining at assembly"
            )
        else:
            return _Hold(estimate)

        action = handle.context.workflow.error_policy.budget_limit_action
        if action == BudgetAction.PAUSE:
            self._transition(handle, RunStatus.PAUSED, f"budget limit: {reason}")
        else:
            self._transition(handle, RunStatus.FAILED, f"budget limit: {reason}",
                             error=f"budget exceeded: {reason}")
        return None

    def _settle(self, handle: _RunHandle, hold: _Hold, actual: float) -> None:
        if self.budget_ledger is not None:
            self.budget_ledger.settle(handle.run.project_id, hold.amount, actual, period=hold.period)

    # ── Resume input ────────────────────────────────────────────

    def _apply_resume_input(self, handle: _RunHandle, input: Any) -> None:
        state = handle.state
        pending = state.pending_approval or {}
        index = int(pending.get("step", state.cursor))
        skip = isinstance(input, dict) and bool(input.get("skip"))

        if skip:
            state.mark_skipped(handle.context.workflow.steps[index].output)
            state.reset_retries(index)
            state.cursor = index + 1
        elif pending.get("reason") == "failure":
            state.reset_retries(index)
        else:
            state.record_approval(index, input if input is not None else True)
        state.clear_pending_approval()
        logger.info("Run %s: resume input applied to step %d (%s)",
                    handle.run.id, index, "skip" if skip else pending.get("reason", "approval"))

    # ── Time ────────────────────────────────────────────────────

    def _checkpoint_clock(self, handle: _RunHandle) -> None:
        if handle.active_since is not None:
            now = self._clock()
            handle.state.add_active_seconds(now - handle.active_since)
            handle.active_since = now

    def _time_left(self, handle: _RunHandle) -> float | None:
        timeout = self.settings.run_timeout_seconds
        if not timeout:
            return None
        elapsed = handle.state.active_seconds
        if handle.active_since is not None:
            elapsed += self._clock() - handle.active_since
        return timeout - elapsed

    def _timeout_if_due(self, handle: _RunHandle) -> bool:
        """Force TIMED_OUT once the deadline has passed. Caller holds the state lock."""
        if handle.stale or handle.run.status not in PAUSABLE:
            return False
        left = self._time_left(handle)
        if left is None or left > 0:
            return False
        timeout = self.settings.run_timeout_seconds
        self._transition(
            handle, RunStatus.TIMED_OUT, "run deadline exceeded",
            error=f"run exceeded {timeout:g}s of active time",
        )
        return True

    # ═══════════════════════════════════════════════════════════
    # Bookkeeping
    # ═══════════════════════════════════════════════════════════

    def _validate(self, context: ExecutionContext) -> None:
        violations = context.invariant_violations()
        if violations:
            reason = "; ".join(violations)
            log_structured(logger, logging.WARNING, "validation_failed",
                           run_id=context.run_id, reason=reason)
            emit_safely(self.event_sink, ValidationFailed(
                run_id=context.run_id,
                reason=reason,
                context_snapshot=context.model_dump(mode="json"),
            ))
            raise ContextValidationError(context.run_id, violations)
        emit_safely(self.event_sink, ValidationPassed(run_id=context.run_id))

    def _handle(self, run_id: str) -> _RunHandle:
        with self._handles_lock:
            handle = self._handles.get(run_id)
            if handle is None:
                run = self.run_store.get_run(run_id)
                if run is None:
                    raise RunNotFound(run_id)
                handle = _RunHandle(run)
                if not run.is_terminal:
                    self._handles[run_id] = handle
            return handle

    def _forget(self, handle: _RunHandle) -> None:
        with self._handles_lock:
            if self._handles.get(handle.run.id) is handle:
                del self._handles[handle.run.id]

    def _refresh(self, handle: _RunHandle, operation: str) -> None:
        """
        Re-read an idle run from the store before acting on it; another
        engine sharing the store may have moved it on. Caller holds the
        state lock.
        """
        if handle.driving:
            return
        run_id = handle.run.id
        if handle.stale:
            raise InvalidTransition(run_id, handle.run.status.value, operation=operation)
        stored = self.run_store.get_run(run_id)
        if stored is None:
            raise RunNotFound(run_id)
        if stored.status != handle.run.status or stored.updated_at != handle.run.updated_at:
            logger.info("Run %s: reloaded from store (%s → %s)",
                        run_id, handle.run.status.value, stored.status.value)
            handle.load(stored)
        if handle.run.is_terminal:
            self._forget(handle)

    def _persist(self, handle: _RunHandle, expected: RunStatus | None = None) -> bool:
        """
        Write the run back, provided the stored copy is still in `expected`
        (default: the handle's status). On a conflict the handle takes the
        stored run, is marked stale and dropped; returns False.
        """
        run = handle.run
        try:
            stored = self.run_store.update_run(
                run.id, expected_status=expected or run.status,
                status=run.status, state=run.state, error=run.error,
            )
        except InvalidTransition as e:
            logger.warning("Run %s: changed by another writer (%s); local copy dropped", run.id, e)
            stored = self.run_store.get_run(run.id)
            if stored is not None:
                handle.load(stored)
            handle.stale = True
            self._forget(handle)
            return False
        run.updated_at = stored.updated_at
        return True

    def _transition(
        self,
        handle: _RunHandle,
        to_status: RunStatus,
        reason: str,
        error: str | None = None,
    ) -> bool:
        """Move the run to a new status. Caller holds the state lock."""
        run = handle.run
        from_status = run.status
        assert_transition(run.id, from_status, to_status)
        run.status = to_status
        if error is not None:
            run.error = error
        self._checkpoint_clock(handle)
        if not self._persist(handle, expected=from_status):
            return False

        level = logging.WARNING if to_status in (RunStatus.FAILED, RunStatus.TIMED_OUT) else logging.INFO
        log_structured(
            logger, level, "state_transition",
            run_id=run.id, project_id=run.project_id,
            **{"from": from_status.value, "to": to_status.value}, reason=reason,
        )
        emit_safely(self.event_sink, StateTransition(
            run_id=run.id, from_status=from_status.value, to_status=to_status.value, reason=reason,
        ))

        state = handle.state
        if to_status == RunStatus.COMPLETED:
            emit_safely(self.event_sink, RunCompleted(
                run_id=run.id,
                total_cost_usd=state.total_cost_usd,
                total_duration_ms=round(state.active_seconds * 1000, 3),
            ))
        elif to_status in (RunStatus.FAILED, RunStatus.TIMED_OUT):
            emit_safely(self.event_sink, RunFailed(
                run_id=run.id, error=run.error or reason, failed_step=state.cursor,
            ))
        return True
