"""
OpenClaw - Overlay Resolver

Merges a core agent definition with a project overlay:

    core/agents/<name>/agent.yaml            (shared, owned by platform)
  + projects/<p>/agents/<name>.overlay.yaml  (per-project, partial)
  = ResolvedAgent

Rules:
  - The overlay must extend the agent being resolved.
  - Only keys listed in the core's overridable_fields may be overridden;
    identity/provenance fields never may.
  - Shallow override: named fields are replaced wholesale, except when
    both sides are mappings, which merge one level deep.
  - Override keys that aren't core attributes are behavioural
    parameters and land in `params`.

Pure function: no I/O, deterministic for identical inputs.
"""

from __future__ import annotations

import copy
from typing import Any

from assembly.errors import AssemblyError, AssemblyErrorCode
from assembly.models import AgentConfig, OverlayConfig, ResolvedAgent, ToolGrant

# Attributes of ResolvedAgent an overlay may target directly
_AGENT_ATTRIBUTES = {
    "version", "model", "domain_scope", "input_schema",
    "output_schema", "prompt", "params", "tools",
}

NEVER_OVERRIDABLE = frozenset({
    "name", "overridable_fields", "overlay_applied", "overlay_source", "tool_grants",
})


def _base_fields(core: AgentConfig) -> dict[str, Any]:
    grants = list(core.capabilities.tools)
    tools = list(dict.fromkeys(g.name for g in grants))
    return {
        "name": core.name,
        "version": core.version,
        "model": core.model,
        "domain_scope": list(core.domain_scope),
        "input_schema": core.input_schema,
        "output_schema": core.output_schema,
        "prompt": core.prompt,
        "tools": tools,
        "tool_grants": grants,
        "params": copy.deepcopy(core.params),
        "overridable_fields": list(core.overridable_fields),
    }


def _merge_value(current: Any, value: Any) -> Any:
    if isinstance(current, dict) and isinstance(value, dict):
        return {**current, **copy.deepcopy(value)}
    return copy.deepcopy(value)


def resolve_agent(core: AgentConfig, overlay: OverlayConfig | None = None) -> ResolvedAgent:
    """
    Produce the ResolvedAgent for `core` with `overlay` applied.

    Raises AssemblyError(OVERLAY_FORBIDDEN_FIELD) naming the first
    offending key (in sorted order) when the overlay touches a field the
    core doesn't allow, or AssemblyError(AGENT_NOT_FOUND) when the overlay
    extends a different agent.
    """
    fields = _base_fields(core)
    if overlay is None:
        return ResolvedAgent(**fields, overlay_applied=False, overlay_source=None)

    if overlay.extends != core.name:
        raise AssemblyError(
            AssemblyErrorCode.AGENT_NOT_FOUND,
            f"Overlay extends '{overlay.extends}' but is being applied to "
            f"agent '{core.name}' (source: {overlay.source or 'unknown'})",
        )

    allowed = set(core.overridable_fields) - NEVER_OVERRIDABLE
    for key in sorted(overlay.overrides):
        if key not in allowed:
            raise AssemblyError(
                AssemblyErrorCode.OVERLAY_FORBIDDEN_FIELD,
                f"Overlay for agent '{core.name}' overrides '{key}', which is not "
                f"in overridable_fields {sorted(allowed)}",
            )

    for key in sorted(overlay.overrides):
        value = overlay.overrides[key]
        if key == "tools":
            _override_tools(fields, value, core.name)
        elif key in _AGENT_ATTRIBUTES:
            fields[key] = _merge_value(fields[key], value)
        else:
            fields["params"][key] = _merge_value(fields["params"].get(key), value)

    return ResolvedAgent(
        **fields,
        overlay_applied=True,
        overlay_source=overlay.source or f"overlay:{core.name}",
    )


def _override_tools(fields: dict[str, Any], value: Any, agent_name: str) -> None:
    """Replace the tool list; kept tools retain their grant conditions."""
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise AssemblyError(
            AssemblyErrorCode.OVERLAY_FORBIDDEN_FIELD,
            f"Overlay for agent '{agent_name}' must override 'tools' with a list of tool names",
        )
    existing = {g.name: g for g in fields["tool_grants"]}
    names = list(dict.fromkeys(value))
    fields["tools"] = names
    fields["tool_grants"] = [existing.get(n) or ToolGrant(name=n, always=True) for n in names]
