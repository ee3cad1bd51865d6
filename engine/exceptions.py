"""
OpenClaw - Structured Exception Hierarchy

Typed errors so callers can distinguish between:
- Invocation failures  → governed by the workflow ErrorPolicy (retry → fallback)
- Infrastructure failures → propagate to the caller for caller-level retry
- Lifecycle violations → illegal pause/resume/cancel against a run

Assembly failures live in assembly.errors (they carry the trigger).
Each error carries: severity and a retryable flag.
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

class OpenClawError(Exception):
    """Base exception for all orchestrator errors."""
    severity: Severity = Severity.MEDIUM
    retryable: bool = False

    def __init__(self, message: str = "", **kwargs):
        self.detail = kwargs
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# Invocation Errors: step-level failures, handled by ErrorPolicy
# ═══════════════════════════════════════════════════════════════

class InvocationFailure(OpenClawError):
    """An agent or tool call failed during step execution."""
    failure_class = "agent"
    retryable = True

    def __init__(self, message: str = "", cost_usd: float = 0.0, tokens: int = 0, **kwargs):
        # Spend incurred by the failed attempt still counts against budget
        self.cost_usd = cost_usd
        self.tokens = tokens
        super().__init__(message, **kwargs)


class ToolFailure(InvocationFailure):
    """A tool used by the agent failed."""
    failure_class = "tool"

    def __init__(self, tool_name: str = "", message: str = "", **kwargs):
        self.tool_name = tool_name
        super().__init__(
            message or f"Tool {tool_name!r} failed",
            tool_name=tool_name, **kwargs,
        )


class AgentFailure(InvocationFailure):
    """The agent itself failed (model error, unparseable output, ...)."""
    failure_class = "agent"

    def __init__(self, agent_name: str = "", message: str = "", **kwargs):
        self.agent_name = agent_name
        super().__init__(
            message or f"Agent {agent_name!r} failed",
            agent_name=agent_name, **kwargs,
        )


# ═══════════════════════════════════════════════════════════════
# Infrastructure Errors: caller-level retry, never workflow fallback
# ═══════════════════════════════════════════════════════════════

class InfrastructureError(OpenClawError):
    """A backing service (config store, run store, ledger) is unavailable."""
    severity = Severity.HIGH
    retryable = True


class StoreUnavailable(InfrastructureError):
    """Run store or budget ledger could not be read or written."""

    def __init__(self, store: str, cause: Exception | None = None):
        self.store = store
        self.cause = cause
        super().__init__(
            f"{store} unavailable" + (f": {cause}" if cause else ""),
            store=store,
        )


class ConfigUnavailable(InfrastructureError):
    """Config store could not be read (I/O or parse failure)."""

    def __init__(self, source: str, cause: Exception | None = None):
        self.source = source
        self.cause = cause
        super().__init__(
            f"Config source {source!r} unavailable" + (f": {cause}" if cause else ""),
            source=source,
        )


# ═══════════════════════════════════════════════════════════════
# Lifecycle Errors
# ═══════════════════════════════════════════════════════════════

class LifecycleError(OpenClawError):
    """Run lifecycle violations."""
    severity = Severity.LOW


class InvalidTransition(LifecycleError):
    """Attempted an illegal run state transition or operation."""

    def __init__(self, run_id: str, from_status: str, to_status: str = "", operation: str = ""):
        self.run_id = run_id
        self.from_status = from_status
        self.to_status = to_status
        self.operation = operation
        if operation:
            msg = f"Run {run_id}: {operation}() is not allowed while {from_status}"
        else:
            msg = f"Run {run_id}: {from_status} → {to_status} is not allowed"
        super().__init__(msg, run_id=run_id)


class RunNotFound(LifecycleError):
    """No run with the given id exists."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}", run_id=run_id)


class ContextValidationError(LifecycleError):
    """ExecutionContext violates its invariants; the run cannot start."""
    severity = Severity.HIGH

    def __init__(self, run_id: str, violations: list[str]):
        self.run_id = run_id
        self.violations = violations
        super().__init__(
            f"Context for run {run_id} is invalid: " + "; ".join(violations),
            run_id=run_id,
        )
