"""
OpenClaw - Context Assembler

Turns a trigger into a fully-resolved ExecutionContext. Resolution runs in
a fixed order and stops at the first failure:

    1. project        explicit id | channel | api | schedule | chain parent
    2. domain@version explicit | project pin | domain current
    3. workflow       explicit | schedule binding | project default | domain default
    4. agents         core definition + scope check + project overlay
    5. tools          union of granted tools, checked against the catalog
    6. budget         monthly cap minus this period's spend
    7. context        stamped, with accumulated warnings

The assembler reads only. It never creates or touches a Run, so a failed
or abandoned assembly leaves nothing behind and is safe to repeat.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from assembly.config_store import ConfigStore
from assembly.errors import AssemblyError, AssemblyErrorCode
from assembly.models import (
    AssemblyRequest,
    BudgetConfig,
    BudgetSnapshot,
    ChainTrigger,
    DiscordTrigger,
    DomainDefinition,
    DomainRef,
    ExecutionContext,
    ApiTrigger,
    ProjectDefinition,
    ProjectSnapshot,
    ResolvedAgent,
    ScheduleConnector,
    ScheduleTrigger,
    ToolDefinition,
    WorkflowDefinition,
    version_key,
)
from assembly.overlay import resolve_agent
from engine.events import AssemblyFailed, ContextAssembled, EventSink, emit_safely, utc_now_iso
from engine.logging import log_structured

logger = logging.getLogger("openclaw.assembler")

_ANY_DOMAIN = "*"


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


class ContextAssembler:
    """
    Args:
        config_store: Source of project/domain/workflow/agent/tool definitions.
        run_store: Needed only for chain triggers (parent run -> project).
        budget_ledger: Live per-project spend. Without one, nothing has
            been spent this period.
        event_sink: Receives context_assembled / assembly_failed.
        default_budget: Applied to projects that declare no budget. Without
            it such projects fail with BUDGET_EXCEEDED.
    """

    def __init__(
        self,
        config_store: ConfigStore,
        run_store: Any = None,
        budget_ledger: Any = None,
        event_sink: EventSink | None = None,
        default_budget: BudgetConfig | None = None,
    ):
        self.config_store = config_store
        self.run_store = run_store
        self.budget_ledger = budget_ledger
        self.event_sink = event_sink
        self.default_budget = default_budget

    def assemble(self, request: AssemblyRequest | dict[str, Any]) -> ExecutionContext:
        """
        Resolve a request into an ExecutionContext.

        Raises AssemblyError on any resolution failure. Config or store
        outages propagate unchanged as InfrastructureError.
        """
        request = AssemblyRequest.model_validate(request)
        started = time.perf_counter()
        try:
            context = self._assemble(request)
        except AssemblyError as e:
            e.with_trigger(request)
            log_structured(
                logger, logging.WARNING, "assembly_failed",
                code=e.code.value, reason=e.message, trigger_type=request.source.type,
            )
            emit_safely(self.event_sink, AssemblyFailed(
                reason=e.message,
                code=e.code.value,
                trigger=request.model_dump(mode="json"),
            ))
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 3)
        log_structured(
            logger, logging.INFO, "context_assembled",
            run_id=context.run_id, project_id=context.project.id,
            domain=f"{context.domain.id}@{context.domain.version}",
            workflow_id=context.workflow.id, warnings=len(context.assembly_warnings),
            duration_ms=duration_ms,
        )
        emit_safely(self.event_sink, ContextAssembled(
            run_id=context.run_id,
            project_id=context.project.id,
            domain=context.domain.id,
            workflow_id=context.workflow.id,
            agents=list(context.agents),
            duration_ms=duration_ms,
            warnings=list(context.assembly_warnings),
        ))
        return context

    def _assemble(self, request: AssemblyRequest) -> ExecutionContext:
        warnings: list[str] = []

        project, schedule = self._resolve_project(request)
        domain = self._resolve_domain(request, project, warnings)
        workflow = self._resolve_workflow(request, project, domain, schedule)
        agents = self._resolve_agents(project, domain, workflow, warnings)
        tools = self._resolve_tools(agents, warnings)
        budget = self._snapshot_budget(project)

        return ExecutionContext(
            run_id=new_run_id(),
            trigger=request,
            project=ProjectSnapshot(
                id=project.id,
                display_name=project.display_name,
                owner=project.owner,
                budget=budget,
                context=project.context,
            ),
            domain=DomainRef(id=domain.id, version=domain.version),
            workflow=workflow,
            agents=agents,
            tools=tools,
            assembled_at=utc_now_iso(),
            assembly_warnings=warnings,
        )

    # ── 1. Project ──────────────────────────────────────────────

    def _resolve_project(
        self, request: AssemblyRequest,
    ) -> tuple[ProjectDefinition, ScheduleConnector | None]:
        source = request.source
        schedule: ScheduleConnector | None = None
        project: ProjectDefinition | None = None
        wanted = request.project_id

        if wanted:
            project = self.config_store.get_project(wanted)
        elif isinstance(source, DiscordTrigger):
            wanted = f"channel:{source.channel_id}"
            project = self.config_store.find_project_by_channel(source.channel_id)
        elif isinstance(source, ApiTrigger):
            wanted = source.project_id
            project = self.config_store.get_project(source.project_id)
        elif isinstance(source, ScheduleTrigger):
            wanted = f"schedule:{source.schedule_id}"
            found = self.config_store.find_schedule(source.schedule_id)
            if found:
                project, schedule = found
        elif isinstance(source, ChainTrigger):
            wanted = f"parent run {source.parent_run_id}"
            parent = self.run_store.get_run(source.parent_run_id) if self.run_store else None
            if parent is not None:
                project = self.config_store.get_project(parent.project_id)

        if isinstance(source, ScheduleTrigger) and schedule is None and project is not None:
            schedule = next(
                (c for c in project.connectors
                 if isinstance(c, ScheduleConnector) and c.schedule_id == source.schedule_id),
                None,
            )

        if project is None:
            raise AssemblyError(
                AssemblyErrorCode.PROJECT_NOT_FOUND,
                f"No project resolves from {source.type} trigger ({wanted})",
            )
        if project.status != "active":
            raise AssemblyError(
                AssemblyErrorCode.PROJECT_NOT_FOUND,
                f"Project '{project.id}' is {project.status}",
            )
        return project, schedule

    # ── 2. Domain ───────────────────────────────────────────────

    def _resolve_domain(
        self, request: AssemblyRequest, project: ProjectDefinition, warnings: list[str],
    ) -> DomainDefinition:
        domain_id = request.domain_id or project.domain
        version = request.domain_version
        if not version and domain_id == project.domain:
            version = project.domain_version
        if not version:
            version = self.config_store.get_current_domain_version(domain_id)
        if not version:
            raise AssemblyError(
                AssemblyErrorCode.DOMAIN_VERSION_NOT_FOUND,
                f"Domain '{domain_id}' has no versions",
            )

        domain = self.config_store.get_domain(domain_id, version)
        if domain is None:
            raise AssemblyError(
                AssemblyErrorCode.DOMAIN_VERSION_NOT_FOUND,
                f"Domain '{domain_id}' has no version '{version}'",
            )
        minimum = domain.min_compatible_version
        if minimum and version_key(version) < version_key(minimum):
            raise AssemblyError(
                AssemblyErrorCode.DOMAIN_MIN_VERSION_VIOLATION,
                f"Domain '{domain_id}' version '{version}' is below "
                f"min_compatible_version '{minimum}'",
            )
        if domain.deprecated:
            warnings.append(f"domain {domain_id}@{version} is deprecated")
        return domain

    # ── 3. Workflow ─────────────────────────────────────────────

    def _resolve_workflow(
        self,
        request: AssemblyRequest,
        project: ProjectDefinition,
        domain: DomainDefinition,
        schedule: ScheduleConnector | None,
    ) -> WorkflowDefinition:
        workflow_id = (
            request.workflow_id
            or (schedule.workflow_id if schedule else None)
            or project.default_workflow
            or domain.default_workflow
        )
        if not workflow_id:
            raise AssemblyError(
                AssemblyErrorCode.WORKFLOW_NOT_FOUND,
                f"No workflow requested and no default for project '{project.id}' "
                f"or domain '{domain.id}@{domain.version}'",
            )
        workflow = self.config_store.get_workflow(
            DomainRef(id=domain.id, version=domain.version), workflow_id,
        )
        if workflow is None:
            raise AssemblyError(
                AssemblyErrorCode.WORKFLOW_NOT_FOUND,
                f"Workflow '{workflow_id}' not found in domain '{domain.id}@{domain.version}'",
            )
        return workflow

    # ── 4. Agents ───────────────────────────────────────────────

    def _resolve_agents(
        self,
        project: ProjectDefinition,
        domain: DomainDefinition,
        workflow: WorkflowDefinition,
        warnings: list[str],
    ) -> dict[str, ResolvedAgent]:
        agents: dict[str, ResolvedAgent] = {}
        for name in workflow.agent_names:
            core = self.config_store.get_agent(name)
            if core is None:
                raise AssemblyError(
                    AssemblyErrorCode.AGENT_NOT_FOUND,
                    f"Workflow '{workflow.id}' uses agent '{name}', which is not defined",
                )
            scope = core.domain_scope
            if scope and _ANY_DOMAIN not in scope and domain.id not in scope:
                raise AssemblyError(
                    AssemblyErrorCode.AGENT_OUT_OF_SCOPE,
                    f"Agent '{name}' is scoped to {scope}, not domain '{domain.id}'",
                )

            overlay = self.config_store.get_agent_overlay(project.id, name)
            if overlay is None and name in project.declared_overlays:
                warnings.append(
                    f"project '{project.id}' declares an overlay for '{name}' but none was found"
                )
            agents[name] = resolve_agent(core, overlay)
        return agents

    # ── 5. Tools ────────────────────────────────────────────────

    def _resolve_tools(
        self, agents: dict[str, ResolvedAgent], warnings: list[str],
    ) -> dict[str, ToolDefinition]:
        catalog: dict[str, ToolDefinition] | None = None
        tools: dict[str, ToolDefinition] = {}
        for agent in agents.values():
            if not agent.tool_grants:
                continue
            if catalog is None:
                catalog = self.config_store.get_tool_catalog()
            for grant in agent.tool_grants:
                if grant.name not in catalog:
                    raise AssemblyError(
                        AssemblyErrorCode.TOOL_NOT_FOUND,
                        f"Agent '{agent.name}' is granted tool '{grant.name}', "
                        f"which is not in the tool catalog",
                    )
                tools[grant.name] = catalog[grant.name]
                if grant.conditional:
                    warnings.append(
                        f"tool '{grant.name}' for agent '{agent.name}' is conditional "
                        f"({grant.condition}) and checked at run time"
                    )
        return tools

    # ── 6. Budget ───────────────────────────────────────────────

    def _snapshot_budget(self, project: ProjectDefinition) -> BudgetSnapshot:
        budget = project.budget or self.default_budget
        if budget is None:
            raise AssemblyError(
                AssemblyErrorCode.BUDGET_EXCEEDED,
                f"Project '{project.id}' has no budget configured",
            )
        spent = self.budget_ledger.spent(project.id) if self.budget_ledger else 0.0
        remaining = round(budget.monthly_usd - spent, 10)
        if remaining <= 0:
            raise AssemblyError(
                AssemblyErrorCode.BUDGET_EXCEEDED,
                f"Project '{project.id}' has spent ${spent:.2f} of its "
                f"${budget.monthly_usd:.2f} monthly budget",
            )
        if budget.per_run_usd <= 0:
            raise AssemblyError(
                AssemblyErrorCode.BUDGET_EXCEEDED,
                f"Project '{project.id}' has a per-run budget of ${budget.per_run_usd:.2f}",
            )
        return BudgetSnapshot(
            monthly_usd=budget.monthly_usd,
            per_run_usd=budget.per_run_usd,
            remaining_usd=remaining,
        )
