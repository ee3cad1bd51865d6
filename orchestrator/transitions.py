"""
OpenClaw - Run State Machine

    PENDING           → RUNNING                      engine starts run
    RUNNING           → COMPLETED                    all steps done
    RUNNING           → WAITING_APPROVAL             step requires approval
    RUNNING           → RETRYING                     failure, retries remain
    RETRYING          → RUNNING                      retry succeeded / tool skipped
    RETRYING          → WAITING_APPROVAL | FAILED    retries exhausted
    RUNNING/RETRYING  → PAUSED | FAILED              budget check failed
    RUNNING/RETRYING  → PAUSED                       pause()
    RUNNING/RETRYING  → TIMED_OUT                    run deadline exceeded
    WAITING_APPROVAL  → RUNNING                      resume()
    PAUSED            → RUNNING                      resume()
    any non-terminal  → CANCELLED                    cancel()

A zero-retry failure goes straight from RUNNING to its fallback.
Terminal states accept no further transitions.
"""

from __future__ import annotations

from engine.exceptions import InvalidTransition
from orchestrator.types import RunStatus, TERMINAL_STATUSES

S = RunStatus

VALID_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    S.PENDING:          {S.RUNNING, S.CANCELLED},
    S.RUNNING:          {S.COMPLETED, S.WAITING_APPROVAL, S.RETRYING, S.PAUSED,
                         S.FAILED, S.CANCELLED, S.TIMED_OUT},
    S.RETRYING:         {S.RUNNING, S.WAITING_APPROVAL, S.PAUSED,
                         S.FAILED, S.CANCELLED, S.TIMED_OUT},
    S.WAITING_APPROVAL: {S.RUNNING, S.CANCELLED},
    S.PAUSED:           {S.RUNNING, S.CANCELLED},
    S.COMPLETED:        set(),
    S.FAILED:           set(),
    S.CANCELLED:        set(),
    S.TIMED_OUT:        set(),
}

# Lifecycle operations and the statuses they may be called from
PAUSABLE = frozenset({S.RUNNING, S.RETRYING})
RESUMABLE = frozenset({S.WAITING_APPROVAL, S.PAUSED})


def can_transition(from_status: RunStatus, to_status: RunStatus) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def assert_transition(run_id: str, from_status: RunStatus, to_status: RunStatus) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransition(run_id, from_status.value, to_status.value)


def is_terminal(status: RunStatus) -> bool:
    return status in TERMINAL_STATUSES
