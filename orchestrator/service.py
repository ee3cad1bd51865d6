"""
OpenClaw - Orchestrator Service

Wires the Context Assembler and the Run Engine over shared stores:

    trigger → assemble → execute → RunResult

Usage:
    from engine.config_loader import get_config
    from orchestrator.service import Orchestrator

    orch = Orchestrator.from_config(get_config(), invoker=ChatModelInvoker(llm))
    result = orch.dispatch({"source": {"type": "api", "project_id": "p1", "payload": {...}}})
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from typing import Any

from assembly.assembler import ContextAssembler
from assembly.config_store import ConfigStore, FileConfigStore
from assembly.models import AssemblyRequest
from engine.events import BackgroundEventSink, EventSink, LoggingEventSink
from engine.invocation import AgentInvoker
from engine.logging import configure_from_config
from orchestrator.budget import BudgetLedger, InMemoryBudgetLedger, SQLiteBudgetLedger
from orchestrator.runtime import RunEngine
from orchestrator.store import InMemoryRunStore, RunStore, SQLiteRunStore
from orchestrator.types import RunResult

logger = logging.getLogger("openclaw.service")


class Orchestrator:
    """Assembler + engine sharing one run store, ledger and event sink."""

    def __init__(self, assembler: ContextAssembler, engine: RunEngine):
        self.assembler = assembler
        self.engine = engine

    @classmethod
    def build(
        cls,
        config_store: ConfigStore,
        invoker: AgentInvoker,
        run_store: RunStore | None = None,
        budget_ledger: BudgetLedger | None = None,
        event_sink: EventSink | None = None,
        **engine_kwargs: Any,
    ) -> Orchestrator:
        run_store = run_store or InMemoryRunStore()
        budget_ledger = budget_ledger or InMemoryBudgetLedger()
        assembler = ContextAssembler(
            config_store,
            run_store=run_store,
            budget_ledger=budget_ledger,
            event_sink=event_sink,
        )
        engine = RunEngine(
            invoker=invoker,
            run_store=run_store,
            event_sink=event_sink,
            budget_ledger=budget_ledger,
            **engine_kwargs,
        )
        return cls(assembler, engine)

    @classmethod
    def from_config(
        cls, config: Any, invoker: AgentInvoker, configure_logs: bool = True,
    ) -> Orchestrator:
        """
        Config format:
            logging:
              level: INFO
              format: json                 # or text
            storage:
              config_root: ./openclaw      # FileConfigStore root
              run_db_path: runs.db         # omit for in-memory
              budget_db_path: budget.db    # omit for in-memory
            events:
              queue_size: 1000
        """
        if configure_logs:
            configure_from_config(config)
        config_store = FileConfigStore(config.get("storage.config_root", "."))

        run_db = config.get("storage.run_db_path")
        budget_db = config.get("storage.budget_db_path")
        run_store = SQLiteRunStore(run_db) if run_db else InMemoryRunStore()
        ledger = SQLiteBudgetLedger(budget_db) if budget_db else InMemoryBudgetLedger()
        sink = BackgroundEventSink(
            LoggingEventSink(),
            queue_size=int(config.get("events.queue_size", 1000)),
        )

        engine = RunEngine.from_config(
            config, invoker=invoker, event_sink=sink, budget_ledger=ledger, run_store=run_store,
        )
        assembler = ContextAssembler(
            config_store, run_store=run_store, budget_ledger=ledger, event_sink=sink,
        )
        logger.info("Orchestrator ready (config_root=%s, run_db=%s, budget_db=%s)",
                    config_store.root, run_db or ":memory:", budget_db or ":memory:")
        return cls(assembler, engine)

    def dispatch(self, request: AssemblyRequest | dict[str, Any]) -> RunResult:
        """Assemble and execute. Raises AssemblyError before any run exists."""
        context = self.assembler.assemble(request)
        return self.engine.execute(context)

    def dispatch_async(self, request: AssemblyRequest | dict[str, Any]) -> Future:
        """Assemble now, execute on the engine's worker pool."""
        context = self.assembler.assemble(request)
        return self.engine.submit(context)

    def close(self) -> None:
        self.engine.shutdown(wait=True)
        sink = self.engine.event_sink
        if sink is not None:
            sink.close()
        for closable in (self.engine.run_store, self.engine.budget_ledger):
            if closable is not None:
                closable.close()
