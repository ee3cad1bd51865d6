"""
OpenClaw - Run Engine Tests

Drives hand-built ExecutionContexts through the engine with
CallableInvoker handlers. Retries use NO_DELAY so nothing sleeps except
the timeout and cancellation tests, which block on a Gate.
"""

import os
import sys
import unittest
from unittest.mock import patch

_tests_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.dirname(_tests_dir))
sys.path.insert(0, _tests_dir)

from builders import Gate, echo, make_context, policy

from engine.events import InMemoryEventSink
from engine.exceptions import (
    AgentFailure,
    ContextValidationError,
    InvalidTransition,
    RunNotFound,
    StoreUnavailable,
    ToolFailure,
)
from engine.invocation import CallableInvoker, InvocationResult
from engine.retry import NO_DELAY
from orchestrator.budget import InMemoryBudgetLedger
from orchestrator.runtime import EngineSettings, RunEngine
from orchestrator.store import InMemoryRunStore
from orchestrator.types import RunStatus

TWO_STEPS = [
    {"agent": "a", "input": "trigger.payload", "output": "x"},
    {"agent": "b", "input": "x", "output": "y"},
]


class Flaky:
    """Fails `failures` times with the given exception factory, then succeeds."""

    def __init__(self, failures, make_error, output="ok", cost=0.0):
        self.failures = failures
        self.make_error = make_error
        self.output = output
        self.cost = cost
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.make_error()
        return InvocationResult(output=self.output, tokens=1, cost_usd=self.cost)


class EngineTestCase(unittest.TestCase):

    def setUp(self):
        self.sink = InMemoryEventSink()
        self.store = InMemoryRunStore()
        self.invoker = CallableInvoker()
        self.gates = []

    def tearDown(self):
        for gate in self.gates:
            gate.release.set()
        if hasattr(self, "engine"):
            self.engine.shutdown(wait=True)

    def make_engine(self, ledger=None, settings=None):
        self.engine = RunEngine(
            invoker=self.invoker,
            run_store=self.store,
            event_sink=self.sink,
            budget_ledger=ledger,
            retry_settings=NO_DELAY,
            settings=settings,
        )
        return self.engine

    def gate(self, output="late"):
        gate = Gate(output)
        self.gates.append(gate)
        return gate

    def transitions(self):
        return [(e.from_status, e.to_status) for e in self.sink.of_type("orchestrator.state_transition")]


# ═══════════════════════════════════════════════════════════════════
# Happy path
# ═══════════════════════════════════════════════════════════════════

class TestLinearRun(EngineTestCase):

    def test_two_steps_complete(self):
        seen = []

        def b(request):
            seen.append(request.input)
            return InvocationResult(output="done", tokens=7, cost_usd=0.02)

        self.invoker.register("a", echo(output={"category": "refund"}, cost=0.01))
        self.invoker.register("b", b)
        engine = self.make_engine()

        result = engine.execute(make_context(TWO_STEPS))

        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(result.output, "done")
        self.assertEqual(result.steps_completed, 2)
        self.assertEqual(result.total_tokens, 17)
        self.assertAlmostEqual(result.total_cost_usd, 0.03)
        self.assertEqual(seen, [{"category": "refund"}])

    def test_trigger_payload_reaches_first_step(self):
        seen = []
        self.invoker.register("a", lambda r: seen.append(r.input) or "x")
        self.invoker.register("b", echo())
        self.make_engine().execute(make_context(TWO_STEPS, payload={"text": "hello"}))
        self.assertEqual(seen, [{"text": "hello"}])

    def test_event_sequence(self):
        self.invoker = CallableInvoker(default=echo())
        self.make_engine().execute(make_context(TWO_STEPS))
        self.assertEqual(self.sink.types(), [
            "orchestrator.validation_passed",
            "orchestrator.state_transition",
            "orchestrator.step_started",
            "orchestrator.step_completed",
            "orchestrator.step_started",
            "orchestrator.step_completed",
            "orchestrator.state_transition",
            "run.completed",
        ])
        self.assertEqual(self.transitions(), [("PENDING", "RUNNING"), ("RUNNING", "COMPLETED")])

    def test_run_persisted(self):
        self.invoker = CallableInvoker(default=echo(output="v"))
        engine = self.make_engine()
        result = engine.execute(make_context(TWO_STEPS))
        run = self.store.get_run(result.run_id)
        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertEqual(run.state["outputs"], {"x": "v", "y": "v"})
        self.assertEqual(engine.get_run(result.run_id).status, RunStatus.COMPLETED)
        self.assertEqual([r.id for r in engine.list_runs(project_id="p1")], [result.run_id])

    def test_condition_false_skips_step_silently(self):
        steps = [
            {"agent": "a", "output": "x"},
            {"agent": "b", "input": "x", "output": "y", "condition": "x.category == 'billing'"},
            {"agent": "c", "input": "x", "output": "z"},
        ]
        calls = []
        self.invoker = CallableInvoker(
            default=lambda r: calls.append(r.agent.name) or {"category": "refund"},
        )
        result = self.make_engine().execute(make_context(steps))

        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(calls, ["a", "c"])
        self.assertEqual(result.steps_completed, 2)
        self.assertEqual([e.agent for e in self.sink.of_type("orchestrator.step_started")], ["a", "c"])

    def test_conditional_tool_offered_when_condition_holds(self):
        steps = [
            {"agent": "a", "output": "x"},
            {"agent": "b", "input": "x", "output": "y"},
        ]
        agents = {"b": {
            "tools": ["kb", "refund"],
            "tool_grants": [
                {"name": "kb", "always": True},
                {"name": "refund", "condition": "x.category == 'refund'"},
            ],
        }}
        offered = []
        self.invoker.register("a", echo(output={"category": "refund"}))
        self.invoker.register("b", lambda r: offered.append(sorted(r.tool_definitions)) or r.tools)
        result = self.make_engine().execute(make_context(steps, agents=agents, tools=["kb", "refund"]))
        self.assertEqual(result.output, ["kb", "refund"])
        self.assertEqual(offered, [["kb", "refund"]])


# ═══════════════════════════════════════════════════════════════════
# Validation & lifecycle errors
# ═══════════════════════════════════════════════════════════════════

class TestLifecycleErrors(EngineTestCase):

    def test_invalid_context_never_creates_run(self):
        self.invoker = CallableInvoker(default=echo())
        engine = self.make_engine()
        ctx = make_context(TWO_STEPS, agents={"a": {"tools": ["ghost"]}})
        with self.assertRaises(ContextValidationError) as cm:
            engine.execute(ctx)
        self.assertIn("ghost", str(cm.exception))
        self.assertIsNone(self.store.get_run(ctx.run_id))
        [event] = self.sink.of_type("orchestrator.validation_failed")
        self.assertEqual(event.run_id, ctx.run_id)
        self.assertEqual(event.context_snapshot["run_id"], ctx.run_id)

    def test_duplicate_execute_rejected(self):
        self.invoker = CallableInvoker(default=echo())
        engine = self.make_engine()
        ctx = make_context(TWO_STEPS)
        engine.execute(ctx)
        with self.assertRaises(InvalidTransition) as cm:
            engine.execute(ctx)
        self.assertEqual(cm.exception.operation, "execute")

    def test_unknown_run(self):
        engine = self.make_engine()
        for op in (engine.get_run, engine.resume, engine.pause, engine.cancel):
            with self.assertRaises(RunNotFound):
                op("run_nope")

    def test_terminal_run_rejects_operations(self):
        self.invoker = CallableInvoker(default=echo())
        engine = self.make_engine()
        result = engine.execute(make_context(TWO_STEPS))
        with self.assertRaises(InvalidTransition):
            engine.resume(result.run_id)
        with self.assertRaises(InvalidTransition):
            engine.pause(result.run_id)
        with self.assertRaises(InvalidTransition):
            engine.cancel(result.run_id)


# ═══════════════════════════════════════════════════════════════════
# Approvals
# ═══════════════════════════════════════════════════════════════════

APPROVAL_STEPS = [
    {"agent": "a", "output": "x"},
    {"agent": "b", "input": "x", "output": "y", "requires_approval": True},
]


class TestApprovalGate(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.b_calls = []
        self.invoker.register("a", echo(output="draft"))
        self.invoker.register("b", lambda r: self.b_calls.append(r.input) or "sent")
        self.engine = self.make_engine()

    def test_waits_before_gated_step(self):
        result = self.engine.execute(make_context(APPROVAL_STEPS))
        self.assertEqual(result.status, RunStatus.WAITING_APPROVAL)
        self.assertEqual(result.steps_completed, 1)
        self.assertEqual(self.b_calls, [])
        pending = self.engine.get_run(result.run_id).state["pending_approval"]
        self.assertEqual(pending["step"], 1)
        self.assertEqual(pending["reason"], "approval")
        self.assertEqual(pending["payload"]["input"], "draft")

    def test_resume_with_approval_runs_step(self):
        run_id = self.engine.execute(make_context(APPROVAL_STEPS)).run_id
        result = self.engine.resume(run_id, {"approved_by": "ops"})
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(result.output, "sent")
        self.assertEqual(self.b_calls, ["draft"])
        state = self.store.get_run(run_id).state
        self.assertEqual(state["approvals"], {"1": {"approved_by": "ops"}})
        self.assertIsNone(state["pending_approval"])

    def test_resume_with_skip(self):
        run_id = self.engine.execute(make_context(APPROVAL_STEPS)).run_id
        result = self.engine.resume(run_id, {"skip": True})
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(result.steps_completed, 1)
        self.assertEqual(self.b_calls, [])
        self.assertEqual(self.store.get_run(run_id).state["skipped"], ["y"])

    def test_pause_not_allowed_while_waiting(self):
        run_id = self.engine.execute(make_context(APPROVAL_STEPS)).run_id
        with self.assertRaises(InvalidTransition) as cm:
            self.engine.pause(run_id)
        self.assertEqual(cm.exception.operation, "pause")
        self.assertEqual(self.engine.get_run(run_id).status, RunStatus.WAITING_APPROVAL)

    def test_cancel_while_waiting(self):
        run_id = self.engine.execute(make_context(APPROVAL_STEPS)).run_id
        self.engine.cancel(run_id)
        self.assertEqual(self.engine.get_run(run_id).status, RunStatus.CANCELLED)
        with self.assertRaises(InvalidTransition):
            self.engine.resume(run_id)

    def test_resume_from_another_engine(self):
        run_id = self.engine.execute(make_context(APPROVAL_STEPS)).run_id
        other = RunEngine(invoker=self.invoker, run_store=self.store, retry_settings=NO_DELAY)
        try:
            result = other.resume(run_id, True)
        finally:
            other.shutdown()
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(result.steps_completed, 2)

    def test_resume_after_another_engine_finished_it(self):
        run_id = self.engine.execute(make_context(APPROVAL_STEPS)).run_id
        other = RunEngine(invoker=self.invoker, run_store=self.store, retry_settings=NO_DELAY)
        try:
            self.assertEqual(other.resume(run_id, True).status, RunStatus.COMPLETED)
        finally:
            other.shutdown()

        with self.assertRaises(InvalidTransition) as cm:
            self.engine.resume(run_id, True)
        self.assertEqual(cm.exception.operation, "resume")
        self.assertEqual(cm.exception.from_status, "COMPLETED")
        self.assertEqual(self.b_calls, ["draft"])
        self.assertEqual(self.store.get_run(run_id).status, RunStatus.COMPLETED)
        self.assertEqual(self.engine.get_run(run_id).status, RunStatus.COMPLETED)

    def test_cancel_after_another_engine_cancelled_it(self):
        run_id = self.engine.execute(make_context(APPROVAL_STEPS)).run_id
        other = RunEngine(invoker=self.invoker, run_store=self.store, retry_settings=NO_DELAY)
        try:
            other.cancel(run_id)
        finally:
            other.shutdown()
        with self.assertRaises(InvalidTransition):
            self.engine.cancel(run_id)
        self.assertEqual(self.store.get_run(run_id).status, RunStatus.CANCELLED)

    def test_in_flight_result_dropped_when_cancelled_elsewhere(self):
        gate = self.gate(output="draft")
        self.invoker.register("a", gate)
        future = self.engine.submit(make_context(APPROVAL_STEPS))
        self.assertTrue(gate.entered.wait(5))
        run_id = self.store.list_runs()[0].id

        other = RunEngine(invoker=self.invoker, run_store=self.store, retry_settings=NO_DELAY)
        try:
            # No local handle on this engine, so it works from the stored RUNNING copy
            other.cancel(run_id)
        finally:
            other.shutdown()

        with self.assertLogs("openclaw.runtime", level="WARNING"):
            gate.release.set()
            result = future.result(timeout=5)
        self.assertEqual(result.status, RunStatus.CANCELLED)
        stored = self.store.get_run(run_id)
        self.assertEqual(stored.status, RunStatus.CANCELLED)
        self.assertEqual(stored.state["outputs"], {})
        self.assertEqual(self.sink.of_type("orchestrator.step_completed"), [])


# ═══════════════════════════════════════════════════════════════════
# Failures, retries, fallbacks
# ═══════════════════════════════════════════════════════════════════

def _tool_error():
    return ToolFailure("kb_search", "timeout", cost_usd=0.01, tokens=2)


def _agent_error():
    return AgentFailure("a", "malformed reply")


class TestToolFailures(EngineTestCase):

    def test_retry_then_succeed(self):
        flaky = Flaky(1, _tool_error)
        self.invoker.register("a", flaky)
        self.invoker.register("b", echo())
        result = self.make_engine().execute(
            make_context(TWO_STEPS, error_policy=policy(tool_retry=2)),
        )
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(flaky.calls, 2)
        self.assertIn(("RUNNING", "RETRYING"), self.transitions())
        self.assertIn(("RETRYING", "RUNNING"), self.transitions())
        [retry] = self.sink.of_type("orchestrator.step_retrying")
        self.assertEqual(retry.attempt, 2)
        # The failed attempt's spend counts
        self.assertAlmostEqual(result.total_cost_usd, 0.01)
        self.assertEqual(
            [e.attempt for e in self.sink.of_type("orchestrator.step_started") if e.agent == "a"],
            [1, 2],
        )

    def test_retries_exhausted_then_skip(self):
        flaky = Flaky(99, _tool_error)
        self.invoker.register("a", flaky)
        self.invoker.register("b", echo(output="after"))
        result = self.make_engine().execute(
            make_context(TWO_STEPS, error_policy=policy(tool_retry=2, tool_fallback="skip")),
        )
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(flaky.calls, 3)
        self.assertEqual(len(self.sink.of_type("orchestrator.step_retrying")), 2)
        self.assertEqual(result.steps_completed, 1)
        skipped = [e for e in self.sink.of_type("orchestrator.step_completed") if e.skipped]
        self.assertEqual([e.agent for e in skipped], ["a"])
        self.assertEqual(self.store.get_run(result.run_id).state["skipped"], ["x"])

    def test_retries_exhausted_then_abort(self):
        self.invoker.register("a", Flaky(99, _tool_error))
        result = self.make_engine().execute(
            make_context(TWO_STEPS, error_policy=policy(tool_retry=1, tool_fallback="abort")),
        )
        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertIn("tool failure", result.error)
        [failed] = self.sink.of_type("run.failed")
        self.assertEqual(failed.failed_step, 0)

    def test_notify_human_then_resume_retries(self):
        flaky = Flaky(2, _tool_error, output="found")
        self.invoker.register("a", flaky)
        self.invoker.register("b", echo())
        engine = self.make_engine()
        result = engine.execute(
            make_context(TWO_STEPS, error_policy=policy(tool_retry=1, tool_fallback="notify_human")),
        )
        self.assertEqual(result.status, RunStatus.WAITING_APPROVAL)
        pending = self.store.get_run(result.run_id).state["pending_approval"]
        self.assertEqual(pending["reason"], "failure")
        self.assertEqual(pending["payload"]["failure_class"], "tool")

        result = engine.resume(result.run_id)
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(flaky.calls, 3)


class TestAgentFailures(EngineTestCase):

    def test_default_policy_retries_once_then_aborts(self):
        flaky = Flaky(99, _agent_error)
        self.invoker.register("a", flaky)
        result = self.make_engine().execute(make_context(TWO_STEPS))
        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertEqual(flaky.calls, 2)
        self.assertIn("agent failure", result.error)

    def test_unexpected_exception_is_agent_failure(self):
        def boom(request):
            raise KeyError("missing")

        self.invoker.register("a", boom)
        result = self.make_engine().execute(
            make_context(TWO_STEPS, error_policy=policy(agent_retry=0)),
        )
        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertIn("KeyError", result.error)

    def test_notify_human_then_skip(self):
        self.invoker.register("a", Flaky(99, _agent_error))
        self.invoker.register("b", echo(output="b ran"))
        engine = self.make_engine()
        result = engine.execute(make_context(
            TWO_STEPS, error_policy=policy(agent_retry=0, agent_fallback="notify_human"),
        ))
        self.assertEqual(result.status, RunStatus.WAITING_APPROVAL)
        self.assertEqual(self.transitions()[-1], ("RUNNING", "WAITING_APPROVAL"))

        result = engine.resume(result.run_id, {"skip": True})
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(result.output, "b ran")

    def test_infrastructure_error_pauses_and_propagates(self):
        def outage(request):
            raise StoreUnavailable("kb", ConnectionError("refused"))

        ledger = InMemoryBudgetLedger()
        self.invoker.register("a", outage)
        self.invoker.register("b", echo())
        engine = self.make_engine(ledger=ledger)
        ctx = make_context(TWO_STEPS, agents={"a": {"params": {"estimated_cost_usd": 0.5}}})

        with self.assertRaises(StoreUnavailable):
            engine.execute(ctx)
        self.assertEqual(engine.get_run(ctx.run_id).status, RunStatus.PAUSED)
        self.assertEqual(ledger.reserved("p1"), 0.0)

        self.invoker.register("a", echo(output="back"))
        result = engine.resume(ctx.run_id)
        self.assertEqual(result.status, RunStatus.COMPLETED)


# ═══════════════════════════════════════════════════════════════════
# Budget
# ═══════════════════════════════════════════════════════════════════

THREE_STEPS = [
    {"agent": "a", "output": "x"},
    {"agent": "b", "output": "y"},
    {"agent": "c", "output": "z"},
]

COSTED_AGENTS = {
    "a": {"params": {"estimated_cost_usd": 0.10}},
    "b": {"params": {"estimated_cost_usd": 0.20}},
    "c": {"params": {"estimated_cost_usd": 0.30}},
}


class TestBudget(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.invoker.register("a", echo(cost=0.10))
        self.invoker.register("b", echo(cost=0.20))
        self.invoker.register("c", echo(cost=0.30))

    def test_per_run_cap_pauses_before_step(self):
        result = self.make_engine().execute(
            make_context(THREE_STEPS, agents=COSTED_AGENTS, per_run_usd=0.50),
        )
        self.assertEqual(result.status, RunStatus.PAUSED)
        self.assertEqual(result.steps_completed, 2)
        self.assertAlmostEqual(result.total_cost_usd, 0.30)
        [last] = self.sink.of_type("orchestrator.state_transition")[-1:]
        self.assertEqual(last.to_status, "PAUSED")
        self.assertIn("per-run budget", last.reason)

    def test_resume_rechecks_budget(self):
        engine = self.make_engine()
        run_id = engine.execute(
            make_context(THREE_STEPS, agents=COSTED_AGENTS, per_run_usd=0.50),
        ).run_id
        result = engine.resume(run_id)
        self.assertEqual(result.status, RunStatus.PAUSED)
        self.assertEqual(result.steps_completed, 2)

    def test_per_run_cap_abort(self):
        result = self.make_engine().execute(make_context(
            THREE_STEPS, agents=COSTED_AGENTS, per_run_usd=0.50,
            error_policy=policy(budget="abort"),
        ))
        self.assertEqual(result.status, RunStatus.FAILED)
        self.assertTrue(result.error.startswith("budget exceeded"))
        self.assertEqual(len(self.sink.of_type("run.failed")), 1)

    def test_monthly_cap_through_ledger(self):
        ledger = InMemoryBudgetLedger(initial_spend={"p1": 99.95})
        result = self.make_engine(ledger=ledger).execute(
            make_context(THREE_STEPS, agents=COSTED_AGENTS),
        )
        self.assertEqual(result.status, RunStatus.PAUSED)
        self.assertEqual(result.steps_completed, 0)
        self.assertEqual(self.sink.of_type("orchestrator.step_started"), [])

    def test_monthly_cap_from_snapshot_without_ledger(self):
        result = self.make_engine().execute(
            make_context(THREE_STEPS, agents=COSTED_AGENTS, remaining_usd=0.25),
        )
        self.assertEqual(result.status, RunStatus.PAUSED)
        self.assertEqual(result.steps_completed, 1)

    def test_ledger_settles_actual_cost(self):
        ledger = InMemoryBudgetLedger()
        result = self.make_engine(ledger=ledger).execute(
            make_context(THREE_STEPS, agents=COSTED_AGENTS),
        )
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertAlmostEqual(ledger.spent("p1"), 0.60)
        self.assertAlmostEqual(ledger.reserved("p1"), 0.0)

    def test_step_spanning_month_end_settles_in_its_month(self):
        month = ["2026-09"]

        def a(request):
            month[0] = "2026-10"
            return InvocationResult(output="ok", tokens=1, cost_usd=0.08)

        self.invoker.register("a", a)
        ledger = InMemoryBudgetLedger()
        with patch("orchestrator.budget.period_key", side_effect=lambda now=None: month[0]):
            result = self.make_engine(ledger=ledger).execute(
                make_context([{"agent": "a", "output": "x"}], agents=COSTED_AGENTS),
            )
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertAlmostEqual(ledger.reserved("p1", period="2026-09"), 0.0)
        self.assertAlmostEqual(ledger.spent("p1", period="2026-09"), 0.08)
        self.assertEqual(ledger.reserved("p1", period="2026-10"), 0.0)


# ═══════════════════════════════════════════════════════════════════
# Pause, cancel, timeout (concurrent)
# ═══════════════════════════════════════════════════════════════════

class TestConcurrentControl(EngineTestCase):

    def test_cancel_discards_in_flight_step(self):
        gate = self.gate()
        self.invoker.register("a", echo(output="first"))
        self.invoker.register("b", gate)
        engine = self.make_engine()
        ctx = make_context(TWO_STEPS)

        future = engine.submit(ctx)
        self.assertTrue(gate.entered.wait(5))
        engine.cancel(ctx.run_id)
        gate.release.set()
        result = future.result(timeout=5)

        self.assertEqual(result.status, RunStatus.CANCELLED)
        self.assertEqual(result.steps_completed, 1)
        self.assertEqual(result.output, "first")
        self.assertEqual(self.store.get_run(ctx.run_id).state["outputs"], {"x": "first"})
        self.assertEqual(self.transitions()[-1], ("RUNNING", "CANCELLED"))

    def test_pause_lets_in_flight_step_finish(self):
        gate = self.gate(output="gated")
        self.invoker.register("a", echo(output="first"))
        self.invoker.register("b", gate)
        self.invoker.register("c", echo(output="last"))
        steps = [
            {"agent": "a", "output": "x"},
            {"agent": "b", "output": "y"},
            {"agent": "c", "output": "z"},
        ]
        engine = self.make_engine()
        ctx = make_context(steps)

        future = engine.submit(ctx)
        self.assertTrue(gate.entered.wait(5))
        engine.pause(ctx.run_id)
        self.assertEqual(engine.get_run(ctx.run_id).status, RunStatus.PAUSED)
        gate.release.set()
        result = future.result(timeout=5)

        self.assertEqual(result.status, RunStatus.PAUSED)
        self.assertEqual(result.steps_completed, 2)
        self.assertEqual(result.output, "gated")

        result = engine.resume(ctx.run_id)
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(result.output, "last")

    def test_timeout(self):
        gate = self.gate()
        self.invoker.register("a", gate)
        engine = self.make_engine(settings=EngineSettings(run_timeout_seconds=0.2))

        result = engine.execute(make_context(TWO_STEPS))

        self.assertEqual(result.status, RunStatus.TIMED_OUT)
        self.assertIn("active time", result.error)
        self.assertEqual(self.transitions()[-1], ("RUNNING", "TIMED_OUT"))
        self.assertEqual(len(self.sink.of_type("run.failed")), 1)


if __name__ == "__main__":
    unittest.main()
