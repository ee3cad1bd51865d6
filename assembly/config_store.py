"""
OpenClaw - Config Store

Read-only provider of project, domain, workflow, agent, overlay and tool
definitions. Every lookup returns the definition or None; I/O and parse
failures raise ConfigUnavailable (an infrastructure error, not an
assembly error).

Implementations:
  - InMemoryConfigStore: tests, embedding
  - FileConfigStore:     YAML tree on disk

FileConfigStore layout:

    <root>/
      core/agents/<name>/agent.yaml
      core/agents/<name>/capabilities.yaml      (optional)
      core/tools/<name>/tool.yaml
      domains/<d>/domain.yaml
      domains/<d>/workflows/<w>.yaml
      domains/<d>/<version>/workflows/<w>.yaml  (optional, version-specific)
      projects/<p>/project.yaml
      projects/<p>/agents/<name>.overlay.yaml
"""

from __future__ import annotations

import abc
import logging
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from assembly.models import (
    AgentCapabilities,
    AgentConfig,
    DiscordConnector,
    DomainDefinition,
    DomainRef,
    OverlayConfig,
    ProjectDefinition,
    ScheduleConnector,
    ToolDefinition,
    WorkflowDefinition,
    version_key,
)
from engine.exceptions import ConfigUnavailable

logger = logging.getLogger("openclaw.config_store")


class ConfigStore(abc.ABC):
    """Read-only configuration provider."""

    @abc.abstractmethod
    def get_project(self, project_id: str) -> ProjectDefinition | None: ...

    @abc.abstractmethod
    def list_projects(self) -> list[ProjectDefinition]: ...

    @abc.abstractmethod
    def get_domain_versions(self, domain_id: str) -> list[DomainDefinition]: ...

    @abc.abstractmethod
    def get_workflow(self, domain: DomainRef, workflow_id: str) -> WorkflowDefinition | None: ...

    @abc.abstractmethod
    def get_agent(self, name: str) -> AgentConfig | None: ...

    @abc.abstractmethod
    def get_agent_overlay(self, project_id: str, name: str) -> OverlayConfig | None: ...

    @abc.abstractmethod
    def get_tool_catalog(self) -> dict[str, ToolDefinition]: ...

    # ── Derived lookups ─────────────────────────────────────────

    def get_domain(self, domain_id: str, version: str) -> DomainDefinition | None:
        for d in self.get_domain_versions(domain_id):
            if d.version == version:
                return d
        return None

    def get_current_domain_version(self, domain_id: str) -> str | None:
        """Highest non-deprecated version (or highest overall if all deprecated)."""
        versions = self.get_domain_versions(domain_id)
        if not versions:
            return None
        live = [d for d in versions if not d.deprecated] or versions
        return max(live, key=lambda d: version_key(d.version)).version

    def find_project_by_channel(self, channel_id: str) -> ProjectDefinition | None:
        for project in self.list_projects():
            for c in project.connectors:
                if isinstance(c, DiscordConnector) and c.channel_id == channel_id:
                    return project
        return None

    def find_schedule(
        self, schedule_id: str,
    ) -> tuple[ProjectDefinition, ScheduleConnector] | None:
        for project in self.list_projects():
            for c in project.connectors:
                if isinstance(c, ScheduleConnector) and c.schedule_id == schedule_id:
                    return project, c
        return None


# ═══════════════════════════════════════════════════════════════════
# In-Memory
# ═══════════════════════════════════════════════════════════════════

class InMemoryConfigStore(ConfigStore):
    """Dict-backed store. add_* methods return self for chaining."""

    def __init__(self):
        self._projects: dict[str, ProjectDefinition] = {}
        self._domains: dict[str, dict[str, DomainDefinition]] = {}
        self._current: dict[str, str] = {}
        self._workflows: dict[tuple[str, str], WorkflowDefinition] = {}
        self._versioned_workflows: dict[tuple[str, str, str], WorkflowDefinition] = {}
        self._agents: dict[str, AgentConfig] = {}
        self._overlays: dict[tuple[str, str], OverlayConfig] = {}
        self._tools: dict[str, ToolDefinition] = {}

    def add_project(self, project: ProjectDefinition | dict[str, Any]) -> InMemoryConfigStore:
        project = ProjectDefinition.model_validate(project)
        self._projects[project.id] = project
        return self

    def add_domain(
        self, domain: DomainDefinition | dict[str, Any], current: bool = False,
    ) -> InMemoryConfigStore:
        domain = DomainDefinition.model_validate(domain)
        self._domains.setdefault(domain.id, {})[domain.version] = domain
        if current:
            self._current[domain.id] = domain.version
        return self

    def add_workflow(
        self,
        domain_id: str,
        workflow: WorkflowDefinition | dict[str, Any],
        version: str | None = None,
    ) -> InMemoryConfigStore:
        workflow = WorkflowDefinition.model_validate(workflow)
        if version:
            self._versioned_workflows[(domain_id, version, workflow.id)] = workflow
        else:
            self._workflows[(domain_id, workflow.id)] = workflow
        return self

    def add_agent(self, agent: AgentConfig | dict[str, Any]) -> InMemoryConfigStore:
        agent = AgentConfig.model_validate(agent)
        self._agents[agent.name] = agent
        return self

    def add_overlay(
        self, project_id: str, overlay: OverlayConfig | dict[str, Any],
    ) -> InMemoryConfigStore:
        overlay = OverlayConfig.model_validate(overlay)
        if overlay.source is None:
            overlay = overlay.model_copy(update={"source": f"{project_id}/{overlay.extends}"})
        self._overlays[(project_id, overlay.extends)] = overlay
        return self

    def add_tool(self, tool: ToolDefinition | dict[str, Any]) -> InMemoryConfigStore:
        tool = ToolDefinition.model_validate(tool)
        self._tools[tool.name] = tool
        return self

    def get_project(self, project_id: str) -> ProjectDefinition | None:
        return self._projects.get(project_id)

    def list_projects(self) -> list[ProjectDefinition]:
        return list(self._projects.values())

    def get_domain_versions(self, domain_id: str) -> list[DomainDefinition]:
        return list(self._domains.get(domain_id, {}).values())

    def get_current_domain_version(self, domain_id: str) -> str | None:
        if domain_id in self._current:
            return self._current[domain_id]
        return super().get_current_domain_version(domain_id)

    def get_workflow(self, domain: DomainRef, workflow_id: str) -> WorkflowDefinition | None:
        versioned = self._versioned_workflows.get((domain.id, domain.version, workflow_id))
        return versioned or self._workflows.get((domain.id, workflow_id))

    def get_agent(self, name: str) -> AgentConfig | None:
        return self._agents.get(name)

    def get_agent_overlay(self, project_id: str, name: str) -> OverlayConfig | None:
        return self._overlays.get((project_id, name))

    def get_tool_catalog(self) -> dict[str, ToolDefinition]:
        return dict(self._tools)


# ═══════════════════════════════════════════════════════════════════
# YAML Tree
# ═══════════════════════════════════════════════════════════════════

class FileConfigStore(ConfigStore):
    """
    Reads the YAML tree described in the module docstring.

    Files are parsed on demand and cached by path + mtime, so edits on
    disk are picked up without a restart.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self._cache: dict[Path, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    # ── File access ─────────────────────────────────────────────

    def _read(self, path: Path) -> Any:
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ConfigUnavailable(str(path), e) from e

        with self._lock:
            cached = self._cache.get(path)
            if cached and cached[0] == mtime:
                return cached[1]

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigUnavailable(str(path), e) from e

        with self._lock:
            self._cache[path] = (mtime, data)
        return data

    def _load(self, path: Path, model: type, **defaults: Any) -> Any:
        data = self._read(path)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ConfigUnavailable(str(path), ValueError("expected a YAML mapping"))
        try:
            return model.model_validate({**defaults, **data})
        except ValidationError as e:
            raise ConfigUnavailable(str(path), e) from e

    def _subdirs(self, path: Path) -> list[Path]:
        if not path.is_dir():
            return []
        return sorted(p for p in path.iterdir() if p.is_dir())

    # ── ConfigStore ─────────────────────────────────────────────

    def get_project(self, project_id: str) -> ProjectDefinition | None:
        path = self.root / "projects" / project_id / "project.yaml"
        return self._load(path, ProjectDefinition, id=project_id)

    def list_projects(self) -> list[ProjectDefinition]:
        projects = []
        for d in self._subdirs(self.root / "projects"):
            project = self.get_project(d.name)
            if project is not None:
                projects.append(project)
        return projects

    def get_domain_versions(self, domain_id: str) -> list[DomainDefinition]:
        """
        domain.yaml:
            current_version: "1.1"
            min_compatible_version: "1.0"
            default_workflow: triage
            versions:
              "1.0": {deprecated: true}
              "1.1": {}
        """
        path = self.root / "domains" / domain_id / "domain.yaml"
        data = self._read(path)
        if data is None:
            return []
        if not isinstance(data, dict):
            raise ConfigUnavailable(str(path), ValueError("expected a YAML mapping"))

        shared = {
            "min_compatible_version": data.get("min_compatible_version"),
            "default_workflow": data.get("default_workflow"),
        }
        versions = data.get("versions") or {}
        if not versions and data.get("version"):
            versions = {str(data["version"]): {}}
        result = []
        try:
            for version, entry in versions.items():
                result.append(DomainDefinition.model_validate({
                    **shared, **(entry or {}), "id": domain_id, "version": str(version),
                }))
        except ValidationError as e:
            raise ConfigUnavailable(str(path), e) from e
        return result

    def get_current_domain_version(self, domain_id: str) -> str | None:
        data = self._read(self.root / "domains" / domain_id / "domain.yaml")
        if isinstance(data, dict) and data.get("current_version"):
            return str(data["current_version"])
        return super().get_current_domain_version(domain_id)

    def get_workflow(self, domain: DomainRef, workflow_id: str) -> WorkflowDefinition | None:
        base = self.root / "domains" / domain.id
        for path in (
            base / domain.version / "workflows" / f"{workflow_id}.yaml",
            base / "workflows" / f"{workflow_id}.yaml",
        ):
            workflow = self._load(path, WorkflowDefinition, id=workflow_id)
            if workflow is not None:
                return workflow
        return None

    def get_agent(self, name: str) -> AgentConfig | None:
        agent_dir = self.root / "core" / "agents" / name
        data = self._read(agent_dir / "agent.yaml")
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ConfigUnavailable(str(agent_dir / "agent.yaml"), ValueError("expected a YAML mapping"))

        caps = self._load(agent_dir / "capabilities.yaml", AgentCapabilities)
        merged = {"name": name, **data}
        if caps is not None:
            merged["capabilities"] = caps
        try:
            return AgentConfig.model_validate(merged)
        except ValidationError as e:
            raise ConfigUnavailable(str(agent_dir / "agent.yaml"), e) from e

    def get_agent_overlay(self, project_id: str, name: str) -> OverlayConfig | None:
        path = self.root / "projects" / project_id / "agents" / f"{name}.overlay.yaml"
        return self._load(path, OverlayConfig, extends=name, source=str(path.relative_to(self.root)))

    def get_tool_catalog(self) -> dict[str, ToolDefinition]:
        catalog = {}
        for d in self._subdirs(self.root / "core" / "tools"):
            tool = self._load(d / "tool.yaml", ToolDefinition, name=d.name)
            if tool is not None:
                catalog[tool.name] = tool
        return catalog
