"""
OpenClaw - Run Engine

State machine and step loop that execute an assembled ExecutionContext:
budget enforcement, retry/fallback policy, approval gates, and
pause / resume / cancel of in-flight runs.

Usage:
    from orchestrator import RunEngine

    engine = RunEngine(invoker=my_invoker, budget_ledger=ledger)
    result = engine.execute(context)
    if result.status == RunStatus.WAITING_APPROVAL:
        result = engine.resume(result.run_id, {"approved_by": "ops"})
"""

from orchestrator.budget import BudgetLedger, InMemoryBudgetLedger, SQLiteBudgetLedger
from orchestrator.runtime import EngineSettings, RunEngine
from orchestrator.store import InMemoryRunStore, RunStore, SQLiteRunStore
from orchestrator.types import TERMINAL_STATUSES, Run, RunResult, RunStatus

__all__ = [
    "BudgetLedger",
    "EngineSettings",
    "InMemoryBudgetLedger",
    "InMemoryRunStore",
    "Run",
    "RunEngine",
    "RunResult",
    "RunStatus",
    "RunStore",
    "SQLiteBudgetLedger",
    "SQLiteRunStore",
    "TERMINAL_STATUSES",
]
