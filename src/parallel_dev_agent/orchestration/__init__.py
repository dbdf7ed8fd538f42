"""Orchestration components for the parallel dev agent.

This package composes the git, process, cancellation and sync layers into
workflows:
- SessionOrchestrator: Session lifecycle, git workflows and deploys
- WorkspaceOrchestrator: Cloning the canonical repository of a workspace
- EnvironmentOrchestrator: Provisioning and resetting environment directories
- AgentServices: Wires every component over one store and notifier
"""

from .environment_orchestrator import EnvironmentOrchestrator
from .session_orchestrator import SessionOrchestrator
from .workspace_orchestrator import WorkspaceOrchestrator
from .services import AgentServices, build_services

__all__ = [
    "AgentServices",
    "EnvironmentOrchestrator",
    "SessionOrchestrator",
    "WorkspaceOrchestrator",
    "build_services",
]
