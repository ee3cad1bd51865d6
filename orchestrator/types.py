"""
OpenClaw - Run Type Definitions

Run records owned by the Run Engine, and the result handed back to
callers.
"""

from __future__ import annotations

import copy
import enum
import time
from dataclasses import dataclass, field
from typing import Any

from assembly.models import ExecutionContext
from engine.state import RunState, empty_state


class RunStatus(str, enum.Enum):
    """Lifecycle states for a run."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    WAITING_APPROVAL = "WAITING_APPROVAL"
    PAUSED = "PAUSED"
    RETRYING = "RETRYING"
    CANCELLED = "CANCELLED"
    TIMED_OUT = "TIMED_OUT"


TERMINAL_STATUSES = frozenset({
    RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.TIMED_OUT,
})

SUSPENDED_STATUSES = frozenset({RunStatus.WAITING_APPROVAL, RunStatus.PAUSED})


@dataclass
class Run:
    """
    One execution of a workflow against an assembled context.

    `state` is the free-form map RunState wraps: step cursor, outputs,
    totals, retry counters, approvals and the pending-approval payload.
    """
    id: str
    project_id: str
    workflow_id: str
    status: RunStatus
    context: ExecutionContext
    state: dict[str, Any] = field(default_factory=empty_state)
    error: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @staticmethod
    def create(context: ExecutionContext) -> Run:
        now = time.time()
        return Run(
            id=context.run_id,
            project_id=context.project.id,
            workflow_id=context.workflow.id,
            status=RunStatus.PENDING,
            context=context,
            state=empty_state(),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def copy(self) -> Run:
        """Detached copy; the context is immutable and shared."""
        return Run(
            id=self.id,
            project_id=self.project_id,
            workflow_id=self.workflow_id,
            status=self.status,
            context=self.context,
            state=copy.deepcopy(self.state),
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "state": self.state,
            "context": self.context.model_dump(mode="json"),
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Run:
        return Run(
            id=data["id"],
            project_id=data["project_id"],
            workflow_id=data["workflow_id"],
            status=RunStatus(data["status"]),
            context=ExecutionContext.model_validate(data["context"]),
            state=data.get("state") or empty_state(),
            error=data.get("error"),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
        )


@dataclass
class RunResult:
    """What callers see: status, final output, and totals."""
    run_id: str
    status: RunStatus
    output: Any = None
    error: str | None = None
    steps_completed: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0

    @staticmethod
    def from_run(run: Run) -> RunResult:
        state = RunState(copy.deepcopy(run.state))
        return RunResult(
            run_id=run.id,
            status=run.status,
            output=state.last_output,
            error=run.error,
            steps_completed=state.steps_completed,
            total_tokens=state.total_tokens,
            total_cost_usd=state.total_cost_usd,
        )
