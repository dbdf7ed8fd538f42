"""Wiring of all components over a single store and notifier."""

from dataclasses import dataclass
from typing import Optional

from ..cancellation import ProcessingCancellationRegistry
from ..command_runner import CommandRunner
from ..file_sync import DirectorySynchronizer
from ..git_manager import GitWorktreeManager
from ..models import OrchestratorConfig
from ..process_manager import ProcessOrchestrator
from ..protocols import Notifier
from ..storage import StoragePaths
from ..store import JsonStore
from ..task_execution import TaskExecutionService
from .environment_orchestrator import EnvironmentOrchestrator
from .session_orchestrator import SessionOrchestrator
from .workspace_orchestrator import WorkspaceOrchestrator


@dataclass
class AgentServices:
    """Every long-lived component, owned together."""
    config: OrchestratorConfig
    store: JsonStore
    storage: StoragePaths
    runner: CommandRunner
    git: GitWorktreeManager
    processes: ProcessOrchestrator
    cancellation: ProcessingCancellationRegistry
    task_execution: TaskExecutionService
    sessions: SessionOrchestrator
    environments: EnvironmentOrchestrator
    workspaces: WorkspaceOrchestrator

    async def shutdown(self) -> None:
        await self.processes.shutdown()


def build_services(
    config: OrchestratorConfig,
    notifier: Optional[Notifier] = None,
    store: Optional[JsonStore] = None,
) -> AgentServices:
    """Create the component graph for the API server or the CLI."""
    storage = StoragePaths(config.storage_root)
    storage.ensure()
    store = store or JsonStore(storage.root / JsonStore.DEFAULT_FILENAME)

    runner = CommandRunner(default_timeout=config.git_timeout_seconds)
    git = GitWorktreeManager(
        runner,
        timeout=config.git_timeout_seconds,
        branch_prefix=config.session_branch_prefix,
        lock_retry=config.index_lock_retry,
    )
    processes = ProcessOrchestrator(
        notifier,
        runner,
        poll_interval=config.output_poll_interval_seconds,
        retention_seconds=config.output_retention_seconds,
    )
    cancellation = ProcessingCancellationRegistry(store, notifier)
    task_execution = TaskExecutionService(store, store, store, store, storage, processes)

    sessions = SessionOrchestrator(
        config=config,
        sessions=store,
        messages=store,
        workspaces=store,
        environments=store,
        tasks=store,
        storage=storage,
        git=git,
        synchronizer=DirectorySynchronizer(),
        cancellation=cancellation,
        task_execution=task_execution,
        notifier=notifier,
    )
    environments = EnvironmentOrchestrator(store, storage, git)
    workspaces = WorkspaceOrchestrator(store, storage, git)

    return AgentServices(
        config=config,
        store=store,
        storage=storage,
        runner=runner,
        git=git,
        processes=processes,
        cancellation=cancellation,
        task_execution=task_execution,
        sessions=sessions,
        environments=environments,
        workspaces=workspaces,
    )
