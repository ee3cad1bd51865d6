"""
OpenClaw - Run State

Narrow accessor over Run.state, the free-form map the engine persists
between steps. Steps exchange data only through declared output keys:
a step writes its output under `step.output`, later steps read it back
through `step.input` / `step.condition` references.

Reference roots:
    trigger.<path>   the originating trigger source (type, payload, message, ...)
    project.<path>   the project's context data
    run.<counter>    steps_completed, total_tokens, total_cost_usd
    <key>.<path>     the output a previous step wrote under <key>
"""

from __future__ import annotations

import json
import re
from typing import Any

_MISSING = object()
_TEMPLATE_REF = re.compile(r"\$\{([^}]+)\}")


def empty_state() -> dict[str, Any]:
    return {
        "cursor": 0,
        "steps_completed": 0,
        "total_tokens": 0,
        "total_cost_usd": 0.0,
        "outputs": {},
        "skipped": [],
        "approvals": {},
        "retries": {},
        "pending_approval": None,
        "active_seconds": 0.0,
        "last_output_key": None,
    }


class RunState:
    """Typed view over a run's state map. Mutates the wrapped dict in place."""

    def __init__(
        self,
        data: dict[str, Any] | None = None,
        trigger: dict[str, Any] | None = None,
        project_context: dict[str, Any] | None = None,
    ):
        self.data = data if data is not None else empty_state()
        for key, value in empty_state().items():
            self.data.setdefault(key, value)
        self._trigger = trigger or {}
        self._project = project_context or {}

    # ── Counters ────────────────────────────────────────────────

    @property
    def cursor(self) -> int:
        return int(self.data["cursor"])

    @cursor.setter
    def cursor(self, value: int) -> None:
        self.data["cursor"] = value

    @property
    def steps_completed(self) -> int:
        return int(self.data["steps_completed"])

    @property
    def total_tokens(self) -> int:
        return int(self.data["total_tokens"])

    @property
    def total_cost_usd(self) -> float:
        return float(self.data["total_cost_usd"])

    @property
    def active_seconds(self) -> float:
        return float(self.data["active_seconds"])

    def add_active_seconds(self, seconds: float) -> None:
        self.data["active_seconds"] = self.active_seconds + max(0.0, seconds)

    def record_usage(self, tokens: int, cost_usd: float) -> None:
        """Accumulate spend (successful or failed attempts alike)."""
        self.data["total_tokens"] = self.total_tokens + int(tokens)
        self.data["total_cost_usd"] = round(self.total_cost_usd + float(cost_usd), 10)

    def complete_step(self, key: str, output: Any) -> None:
        self.set_output(key, output)
        self.data["steps_completed"] = self.steps_completed + 1

    # ── Outputs ─────────────────────────────────────────────────

    @property
    def outputs(self) -> dict[str, Any]:
        return self.data["outputs"]

    def set_output(self, key: str, value: Any) -> None:
        self.outputs[key] = value
        self.data["last_output_key"] = key

    def mark_skipped(self, key: str) -> None:
        self.set_output(key, None)
        if key not in self.data["skipped"]:
            self.data["skipped"].append(key)

    def is_skipped(self, key: str) -> bool:
        return key in self.data["skipped"]

    @property
    def last_output(self) -> Any:
        key = self.data.get("last_output_key")
        return self.outputs.get(key) if key else None

    # ── Retries / approvals ─────────────────────────────────────

    def retries_for(self, step_index: int) -> int:
        return int(self.data["retries"].get(str(step_index), 0))

    def increment_retries(self, step_index: int) -> int:
        count = self.retries_for(step_index) + 1
        self.data["retries"][str(step_index)] = count
        return count

    def reset_retries(self, step_index: int) -> None:
        self.data["retries"].pop(str(step_index), None)

    def has_approval(self, step_index: int) -> bool:
        return str(step_index) in self.data["approvals"]

    def approval_for(self, step_index: int) -> Any:
        return self.data["approvals"].get(str(step_index))

    def record_approval(self, step_index: int, approval_input: Any) -> None:
        self.data["approvals"][str(step_index)] = approval_input

    @property
    def pending_approval(self) -> dict[str, Any] | None:
        return self.data.get("pending_approval")

    def set_pending_approval(self, step_index: int, reason: str, payload: Any = None) -> None:
        self.data["pending_approval"] = {
            "step": step_index,
            "reason": reason,
            "payload": payload,
        }

    def clear_pending_approval(self) -> None:
        self.data["pending_approval"] = None

    # ── Reference resolution ────────────────────────────────────

    def get(self, reference: str, default: Any = None) -> Any:
        """Resolve a dotted reference against trigger/project/run/outputs."""
        if not reference:
            return default
        root, _, rest = reference.partition(".")
        if root == "trigger":
            obj: Any = self._trigger
        elif root == "project":
            obj = self._project
        elif root == "run":
            obj = {
                "steps_completed": self.steps_completed,
                "total_tokens": self.total_tokens,
                "total_cost_usd": self.total_cost_usd,
                "cursor": self.cursor,
            }
        elif root in self.outputs:
            obj = self.outputs[root]
        else:
            return default

        value = _navigate(obj, rest) if rest else obj
        return default if value is _MISSING else value

    def resolve_input(self, reference: str | None) -> Any:
        """
        Resolve a step's input reference.

        Empty → the trigger source itself. A string containing ${...}
        placeholders is rendered as a template; anything else is a
        plain reference.
        """
        if not reference:
            return dict(self._trigger)
        if "${" in reference:
            return _TEMPLATE_REF.sub(lambda m: _render(self.get(m.group(1).strip())), reference)
        return self.get(reference)

    def snapshot(self) -> dict[str, Any]:
        return json.loads(json.dumps(self.data, default=str))


def _navigate(obj: Any, path: str) -> Any:
    for part in path.split("."):
        if isinstance(obj, dict):
            if part not in obj:
                return _MISSING
            obj = obj[part]
        elif isinstance(obj, list):
            try:
                obj = obj[int(part)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return obj


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)
