"""Running task definitions inside sessions and environments.

Resolves a task's records, working directory, interpreter and
environment variables, then hands the process to the ProcessOrchestrator.
"""

import logging
from pathlib import Path
from typing import Optional

from .errors import (
    EnvironmentNotFoundError, SessionNotFoundError, TaskNotFoundError,
    WorkspaceNotFoundError
)
from .models import ContextKind, ScriptType, TaskDefinition, TaskStatus, TaskStatusInfo
from .process_manager import ProcessOrchestrator
from .protocols import (
    EnvironmentRepository, SessionRepository, StorageLayout, TaskRepository,
    WorkspaceRepository
)

logger = logging.getLogger(__name__)

INTERPRETERS: dict[ScriptType, tuple[str, str]] = {
    ScriptType.BASH: ("bash", "-c"),
    ScriptType.POWERSHELL: ("powershell", "-Command"),
    ScriptType.NODEJS: ("node", "-e"),
}


def build_command(task: TaskDefinition) -> tuple[str, list[str]]:
    """Interpreter and arguments that run a task's script."""
    command, flag = INTERPRETERS[task.script_type]
    return command, [flag, task.script_content]


def resolve_working_directory(base: Path, working_directory: Optional[str]) -> Path:
    """Resolve a task's working directory against its context root.

    Raises:
        FileNotFoundError: The directory does not exist
    """
    relative = working_directory or ""
    if relative.startswith("./"):
        relative = relative[2:]
    resolved = (Path(base) / relative).resolve()
    if not resolved.is_dir():
        raise FileNotFoundError(f"Working directory does not exist: {resolved}")
    return resolved


class TaskExecutionService:
    """Starts, stops and reports on task executions."""

    def __init__(
        self,
        tasks: TaskRepository,
        sessions: SessionRepository,
        workspaces: WorkspaceRepository,
        environments: EnvironmentRepository,
        storage: StorageLayout,
        processes: ProcessOrchestrator,
    ):
        self.tasks = tasks
        self.sessions = sessions
        self.workspaces = workspaces
        self.environments = environments
        self.storage = storage
        self.processes = processes

    def _get_task(self, task_id: int) -> TaskDefinition:
        task = self.tasks.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _workspace_env(self, workspace_id: int) -> dict[str, str]:
        workspace = self.workspaces.get_workspace(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id)
        return dict(workspace.environment_variables)

    async def start_session_task(self, session_id: int, task_id: int) -> str:
        """Run a task in a session's worktree. Returns the execution handle."""
        task = self._get_task(task_id)
        session = self.sessions.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        env = self._workspace_env(session.workspace_id)
        base = self.storage.session_path(session.workspace_id, session_id)
        return await self._start(task, ContextKind.SESSION, session_id, base, env)

    async def start_environment_task(self, environment_id: int, task_id: int) -> str:
        """Run a task in an environment directory. Returns the execution handle."""
        task = self._get_task(task_id)
        environment = self.environments.get_environment(environment_id)
        if environment is None:
            raise EnvironmentNotFoundError(environment_id)
        env = self._workspace_env(environment.workspace_id)
        # Environment variables override workspace ones
        env.update(environment.environment_variables)
        base = self.storage.environment_path(environment.workspace_id, environment.name)
        return await self._start(task, ContextKind.ENVIRONMENT, environment_id, base, env)

    async def _start(
        self,
        task: TaskDefinition,
        context_kind: ContextKind,
        context_id: int,
        base: Path,
        env: dict[str, str],
    ) -> str:
        try:
            cwd = resolve_working_directory(base, task.working_directory)
            command, args = build_command(task)
            return await self.processes.start(
                context_kind, context_id, task.id, command, args, cwd=cwd, env=env
            )
        except Exception:
            logger.exception(
                f"Failed to start task {task.name} for {context_kind.value} {context_id}"
            )
            raise

    async def stop_task(self, execution_id: str) -> bool:
        logger.info(f"Stopping task execution {execution_id}")
        return await self.processes.stop(execution_id)

    def get_task_statuses(
        self, workspace_id: int, context_kind: ContextKind, context_id: int
    ) -> list[TaskStatusInfo]:
        """Every task of the workspace with its latest execution in the context.

        Tasks that never ran in the context report pending.
        """
        statuses = []
        for task in self.tasks.list_tasks(workspace_id):
            latest = self.processes.latest_execution(context_kind, context_id, task.id)
            statuses.append(TaskStatusInfo(
                task_id=task.id,
                name=task.name,
                type=task.type,
                status=latest.status if latest else TaskStatus.PENDING,
                execution_id=latest.execution_id if latest else None,
            ))
        return statuses
