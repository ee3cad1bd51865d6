"""
OpenClaw - Orchestrator Service Tests

Assembler and engine wired over shared stores: dispatch, the shared
budget ledger, chain triggers, and construction from config.
"""

import os
import sys
import tempfile
import unittest

_tests_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.dirname(_tests_dir))
sys.path.insert(0, _tests_dir)

from builders import api_request, echo, support_store

from assembly.errors import AssemblyError, AssemblyErrorCode
from engine.events import InMemoryEventSink
from engine.invocation import CallableInvoker
from engine.retry import NO_DELAY
from orchestrator.budget import InMemoryBudgetLedger, SQLiteBudgetLedger
from orchestrator.service import Orchestrator
from orchestrator.store import SQLiteRunStore
from orchestrator.types import RunStatus


class TestDispatch(unittest.TestCase):

    def setUp(self):
        self.sink = InMemoryEventSink()
        self.ledger = InMemoryBudgetLedger()
        self.invoker = CallableInvoker({
            "classifier": echo(output={"category": "refund"}, cost=0.01),
            "responder": echo(output="Refund issued.", cost=0.02),
        })
        self.orch = Orchestrator.build(
            support_store(), self.invoker,
            budget_ledger=self.ledger, event_sink=self.sink, retry_settings=NO_DELAY,
        )

    def tearDown(self):
        self.orch.close()

    def test_api_trigger_end_to_end(self):
        result = self.orch.dispatch(api_request())
        self.assertEqual(result.status, RunStatus.COMPLETED)
        self.assertEqual(result.steps_completed, 2)
        self.assertEqual(result.output, "Refund issued.")
        self.assertAlmostEqual(result.total_cost_usd, 0.03)
        self.assertAlmostEqual(self.ledger.spent("p1"), 0.03)
        self.assertEqual(self.sink.types()[0], "orchestrator.context_assembled")
        self.assertEqual(self.sink.types()[-1], "run.completed")

    def test_dict_request(self):
        result = self.orch.dispatch({"source": {"type": "discord", "channel_id": "chan-1"}})
        self.assertEqual(result.status, RunStatus.COMPLETED)

    def test_assembly_failure_creates_no_run(self):
        with self.assertRaises(AssemblyError) as cm:
            self.orch.dispatch(api_request(project_id="nope"))
        self.assertEqual(cm.exception.code, AssemblyErrorCode.PROJECT_NOT_FOUND)
        self.assertEqual(self.orch.engine.list_runs(), [])

    def test_spend_feeds_next_assembly(self):
        self.ledger.record_spend("p1", 99.99)
        with self.assertRaises(AssemblyError) as cm:
            self.orch.dispatch(api_request())
            self.orch.dispatch(api_request())
        self.assertEqual(cm.exception.code, AssemblyErrorCode.BUDGET_EXCEEDED)

    def test_chain_trigger_follows_parent(self):
        parent = self.orch.dispatch(api_request())
        child = self.orch.dispatch({
            "source": {"type": "chain", "parent_run_id": parent.run_id, "output": parent.output},
        })
        self.assertEqual(child.status, RunStatus.COMPLETED)
        self.assertEqual(self.orch.engine.get_run(child.run_id).project_id, "p1")

    def test_dispatch_async(self):
        future = self.orch.dispatch_async(api_request())
        self.assertEqual(future.result(timeout=10).status, RunStatus.COMPLETED)


class FakeConfig(dict):
    """Dotted-key lookups, like ConfigLoader.get."""


class TestFromConfig(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_sqlite_stores_when_paths_configured(self):
        config = FakeConfig({
            "storage.config_root": self.tmpdir.name,
            "storage.run_db_path": os.path.join(self.tmpdir.name, "runs.db"),
            "storage.budget_db_path": os.path.join(self.tmpdir.name, "budget.db"),
            "events.queue_size": 10,
            "engine.run_timeout_seconds": 30,
        })
        orch = Orchestrator.from_config(config, CallableInvoker(), configure_logs=False)
        try:
            self.assertIsInstance(orch.engine.run_store, SQLiteRunStore)
            self.assertIsInstance(orch.engine.budget_ledger, SQLiteBudgetLedger)
            self.assertIs(orch.assembler.budget_ledger, orch.engine.budget_ledger)
            self.assertEqual(orch.engine.settings.run_timeout_seconds, 30.0)
            self.assertEqual(str(orch.assembler.config_store.root), self.tmpdir.name)
        finally:
            orch.close()

    def test_in_memory_defaults(self):
        config = FakeConfig({"storage.config_root": self.tmpdir.name})
        orch = Orchestrator.from_config(config, CallableInvoker(), configure_logs=False)
        try:
            self.assertIsInstance(orch.engine.budget_ledger, InMemoryBudgetLedger)
            with self.assertRaises(AssemblyError):
                orch.dispatch(api_request())
        finally:
            orch.close()


if __name__ == "__main__":
    unittest.main()
