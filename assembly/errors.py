"""
OpenClaw - Assembly Errors

Assembly failures are terminal for the request that caused them. The
core never retries them; a caller may resubmit the trigger.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from engine.events import utc_now_iso
from engine.exceptions import OpenClawError, Severity


class AssemblyErrorCode(str, Enum):
    PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
    DOMAIN_VERSION_NOT_FOUND = "DOMAIN_VERSION_NOT_FOUND"
    DOMAIN_MIN_VERSION_VIOLATION = "DOMAIN_MIN_VERSION_VIOLATION"
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    AGENT_OUT_OF_SCOPE = "AGENT_OUT_OF_SCOPE"
    OVERLAY_FORBIDDEN_FIELD = "OVERLAY_FORBIDDEN_FIELD"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"


class AssemblyError(OpenClawError):
    """A trigger could not be resolved into an ExecutionContext."""
    severity = Severity.MEDIUM
    retryable = False

    def __init__(self, code: AssemblyErrorCode, message: str, trigger: Any = None):
        self.code = code
        self.message = message
        self.trigger = trigger
        self.timestamp = utc_now_iso()
        super().__init__(f"{code.value}: {message}", code=code.value)

    def with_trigger(self, trigger: Any) -> "AssemblyError":
        """Attach the originating request (the overlay resolver doesn't know it)."""
        if self.trigger is None:
            self.trigger = trigger
        return self

    def to_dict(self) -> dict[str, Any]:
        trigger = self.trigger
        if hasattr(trigger, "model_dump"):
            trigger = trigger.model_dump(mode="json")
        return {
            "code": self.code.value,
            "message": self.message,
            "trigger": trigger,
            "timestamp": self.timestamp,
        }
