"""
OpenClaw - Configuration & Context Models

Declarative documents served by the Config Store (projects, domains,
workflows, agents, overlays, tools) and the ExecutionContext the
Context Assembler builds from them. All models are frozen: once a
context is assembled nothing downstream can alter it.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from engine.conditions import ConditionSyntaxError, evaluate_condition, validate_condition


class _Document(BaseModel):
    """Config documents tolerate unknown keys (descriptions, comments)."""
    model_config = ConfigDict(frozen=True, extra="ignore")


class _Strict(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


def version_key(version: str) -> tuple:
    """Sort key for dotted versions: "1.10" > "1.9", numeric parts before text."""
    parts = []
    for part in str(version).split("."):
        parts.append((0, int(part), "") if part.isdigit() else (1, 0, part))
    return tuple(parts)


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

class DiscordTrigger(_Strict):
    type: Literal["discord"] = "discord"
    channel_id: str
    message: str = ""
    user_id: str = ""


class ApiTrigger(_Strict):
    type: Literal["api"] = "api"
    project_id: str
    payload: Any = None


class ScheduleTrigger(_Strict):
    type: Literal["schedule"] = "schedule"
    schedule_id: str


class ChainTrigger(_Strict):
    type: Literal["chain"] = "chain"
    parent_run_id: str
    output: Any = None


TriggerSource = Annotated[
    Union[DiscordTrigger, ApiTrigger, ScheduleTrigger, ChainTrigger],
    Field(discriminator="type"),
]


class AssemblyRequest(_Strict):
    """Input to the Context Assembler. Explicit ids skip inference."""
    source: TriggerSource
    project_id: Optional[str] = None
    domain_id: Optional[str] = None
    domain_version: Optional[str] = None
    workflow_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Agents & tools
# ---------------------------------------------------------------------------

class ToolGrant(_Document):
    """One entry of an agent's capabilities.yaml."""
    name: str
    condition: Optional[str] = None
    always: bool = False

    @property
    def conditional(self) -> bool:
        return not self.always and bool(self.condition)

    @field_validator("condition")
    @classmethod
    def _condition_parses(cls, v: Optional[str]) -> Optional[str]:
        if v:
            try:
                validate_condition(v)
            except ConditionSyntaxError as e:
                raise ValueError(str(e)) from e
        return v


class AgentCapabilities(_Document):
    tools: list[ToolGrant] = Field(default_factory=list)


class AgentConfig(_Document):
    """core/agents/<name>/agent.yaml"""
    name: str
    version: str = "1.0"
    model: str = "default"
    domain_scope: list[str] = Field(default_factory=list)
    input_schema: str = ""
    output_schema: str = ""
    prompt: str = ""
    overridable_fields: list[str] = Field(default_factory=list)
    capabilities: AgentCapabilities = Field(default_factory=AgentCapabilities)
    params: dict[str, Any] = Field(default_factory=dict)


class OverlayConfig(_Document):
    """projects/<p>/agents/<name>.overlay.yaml"""
    extends: str
    overrides: dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None


class ResolvedAgent(_Strict):
    """Core agent merged with an optional project overlay."""
    name: str
    version: str
    model: str
    domain_scope: list[str]
    input_schema: str
    output_schema: str
    prompt: str
    tools: list[str]
    tool_grants: list[ToolGrant] = Field(default_factory=list)
    params: dict[str, Any] = Field(default_factory=dict)
    overridable_fields: list[str] = Field(default_factory=list)
    overlay_applied: bool = False
    overlay_source: Optional[str] = None

    @property
    def estimated_cost_usd(self) -> float:
        return float(self.params.get("estimated_cost_usd", 0.0) or 0.0)

    def available_tools(self, lookup) -> list[str]:
        """Granted tools whose condition holds against current run state."""
        return [
            g.name for g in self.tool_grants
            if not g.conditional or evaluate_condition(g.condition, lookup)
        ]


class ToolDefinition(_Document):
    """core/tools/<name>/tool.yaml"""
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)
    output_schema: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Workflows & error policy
# ---------------------------------------------------------------------------

class FailureFallback(str, Enum):
    NOTIFY_HUMAN = "notify_human"
    SKIP = "skip"
    ABORT = "abort"


class BudgetAction(str, Enum):
    PAUSE = "pause"
    ABORT = "abort"


class ToolFailurePolicy(_Strict):
    retry: int = Field(default=3, ge=0)
    fallback: FailureFallback = FailureFallback.NOTIFY_HUMAN


class AgentFailurePolicy(_Strict):
    retry: int = Field(default=1, ge=0)
    fallback: FailureFallback = FailureFallback.ABORT

    @field_validator("fallback")
    @classmethod
    def _no_skip(cls, v: FailureFallback) -> FailureFallback:
        if v == FailureFallback.SKIP:
            raise ValueError("on_agent_failure.fallback must be notify_human or abort")
        return v


class ErrorPolicy(_Strict):
    on_tool_failure: ToolFailurePolicy = Field(default_factory=ToolFailurePolicy)
    on_agent_failure: AgentFailurePolicy = Field(default_factory=AgentFailurePolicy)
    budget_limit_action: BudgetAction = BudgetAction.PAUSE


DEFAULT_ERROR_POLICY = ErrorPolicy()


class WorkflowStep(_Document):
    agent: str
    input: str = ""
    output: str
    condition: Optional[str] = None
    requires_approval: bool = False
    name: Optional[str] = None

    def label(self, index: int) -> str:
        return self.name or f"{index}:{self.agent}"

    @field_validator("condition")
    @classmethod
    def _condition_parses(cls, v: Optional[str]) -> Optional[str]:
        if v:
            try:
                validate_condition(v)
            except ConditionSyntaxError as e:
                raise ValueError(str(e)) from e
        return v


class WorkflowDefinition(_Document):
    """domains/<d>/workflows/<w>.yaml"""
    id: str = Field(validation_alias=AliasChoices("id", "name"))
    version: Optional[str] = None
    steps: list[WorkflowStep] = Field(min_length=1)
    error_policy: ErrorPolicy = Field(default_factory=ErrorPolicy)

    @property
    def agent_names(self) -> list[str]:
        """Distinct agent names in first-use order."""
        seen: dict[str, None] = {}
        for step in self.steps:
            seen.setdefault(step.agent, None)
        return list(seen)


# ---------------------------------------------------------------------------
# Projects & domains
# ---------------------------------------------------------------------------

class BudgetConfig(_Document):
    monthly_usd: float
    per_run_usd: float


class DiscordConnector(_Document):
    type: Literal["discord"] = "discord"
    channel_id: str
    channel_name: str = ""


class ApiConnector(_Document):
    type: Literal["api"] = "api"
    api_key: Optional[str] = None


class ScheduleConnector(_Document):
    type: Literal["schedule"] = "schedule"
    schedule_id: str
    cron: str = ""
    workflow_id: Optional[str] = None


Connector = Annotated[
    Union[DiscordConnector, ApiConnector, ScheduleConnector],
    Field(discriminator="type"),
]


class ProjectDefinition(_Document):
    """projects/<p>/project.yaml"""
    id: str
    display_name: str = ""
    owner: Optional[str] = None
    status: Literal["active", "archived"] = "active"
    domain: str
    domain_version: Optional[str] = None
    default_workflow: Optional[str] = None
    budget: Optional[BudgetConfig] = None
    context: dict[str, Any] = Field(default_factory=dict)
    connectors: list[Connector] = Field(default_factory=list)
    declared_overlays: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _default_display_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("display_name"):
            data = {**data, "display_name": data.get("id", "")}
        return data


class DomainDefinition(_Document):
    """One version of domains/<d>/domain.yaml"""
    id: str
    version: str
    min_compatible_version: Optional[str] = None
    deprecated: bool = False
    default_workflow: Optional[str] = None


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------

class BudgetSnapshot(_Strict):
    monthly_usd: float
    per_run_usd: float
    remaining_usd: float


class ProjectSnapshot(_Strict):
    id: str
    display_name: str
    owner: Optional[str] = None
    budget: BudgetSnapshot
    context: dict[str, Any] = Field(default_factory=dict)


class DomainRef(_Strict):
    id: str
    version: str


class ExecutionContext(_Strict):
    """Everything a run needs. Built once by the assembler, read-only after."""
    run_id: str
    trigger: AssemblyRequest
    project: ProjectSnapshot
    domain: DomainRef
    workflow: WorkflowDefinition
    agents: dict[str, ResolvedAgent]
    tools: dict[str, ToolDefinition]
    assembled_at: str
    assembly_warnings: list[str] = Field(default_factory=list)

    def invariant_violations(self) -> list[str]:
        """Agents referenced by steps and tools granted to agents must be present."""
        problems = []
        for i, step in enumerate(self.workflow.steps):
            if step.agent not in self.agents:
                problems.append(f"step {i} references unresolved agent '{step.agent}'")
        for agent in self.agents.values():
            for tool in agent.tools:
                if tool not in self.tools:
                    problems.append(f"agent '{agent.name}' references missing tool '{tool}'")
        return problems

    def trigger_data(self) -> dict[str, Any]:
        return self.trigger.source.model_dump(mode="json")
