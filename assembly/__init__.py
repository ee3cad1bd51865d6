"""
OpenClaw - Context Assembly

Resolves triggers into ExecutionContexts: config store lookups, overlay
resolution, tool collection, and the pre-flight budget snapshot.
"""

from assembly.assembler import ContextAssembler
from assembly.config_store import ConfigStore, FileConfigStore, InMemoryConfigStore
from assembly.errors import AssemblyError, AssemblyErrorCode
from assembly.models import AssemblyRequest, ExecutionContext, ResolvedAgent
from assembly.overlay import resolve_agent

__all__ = [
    "AssemblyError",
    "AssemblyErrorCode",
    "AssemblyRequest",
    "ConfigStore",
    "ContextAssembler",
    "ExecutionContext",
    "FileConfigStore",
    "InMemoryConfigStore",
    "ResolvedAgent",
    "resolve_agent",
]
