"""Session orchestration - session lifecycle over git worktrees.

Handles:
- Provisioning a worktree when a session is created (rolled back on failure)
- Merge-to-main, push-and-complete, pull-from-starter and hard reset
- Cancelling sessions and the messages being processed for them
- Deploying a session worktree into an environment directory
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional, Sequence

from ..cancellation import ProcessingCancellationRegistry
from ..errors import (
    EnvironmentNotFoundError, SessionNotFoundError, WorkspaceNotFoundError,
    WorktreeProvisioningError
)
from ..file_sync import DirectorySynchronizer, SyncReport
from ..git_manager import GitWorktreeManager
from ..models import (
    BulkGitResult, ContextKind, GitErrorKind, GitFileMode, GitResult, GitStatus,
    MessageStatus, OrchestratorConfig, Session, SessionStatus, TaskStatus, TaskType
)
from ..protocols import (
    EnvironmentRepository, MessageRepository, NotificationEvent, Notifier,
    SessionRepository, StorageLayout, TaskRepository, WorkspaceRepository
)
from ..task_execution import TaskExecutionService

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """Orchestrates session workflows over worktrees, tasks and messages.

    Dependencies are injected for testability:
    - Repositories: For session, message, workspace, environment and task records
    - StorageLayout: For mapping sessions and environments to directories
    - GitWorktreeManager: For all git operations
    - DirectorySynchronizer: For deploying worktrees to environments
    - ProcessingCancellationRegistry: For cancelling in-flight messages
    - TaskExecutionService: For restarting environment tasks after a deploy
    - Notifier: For session status and unread events
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        sessions: SessionRepository,
        messages: MessageRepository,
        workspaces: WorkspaceRepository,
        environments: EnvironmentRepository,
        tasks: TaskRepository,
        storage: StorageLayout,
        git: GitWorktreeManager,
        synchronizer: DirectorySynchronizer,
        cancellation: ProcessingCancellationRegistry,
        task_execution: TaskExecutionService,
        notifier: Optional[Notifier] = None,
    ):
        """Initialize the session orchestrator.

        Args:
            config: Orchestrator configuration
            sessions: Session records
            messages: Message records
            workspaces: Workspace records
            environments: Environment records
            tasks: Task definitions
            storage: On-disk layout
            git: Git operations
            synchronizer: Directory synchronizer for deploys
            cancellation: Registry of in-flight message processing
            task_execution: Task execution service
            notifier: Client notification sink
        """
        self.config = config
        self.sessions = sessions
        self.messages = messages
        self.workspaces = workspaces
        self.environments = environments
        self.tasks = tasks
        self.storage = storage
        self.git = git
        self.synchronizer = synchronizer
        self.cancellation = cancellation
        self.task_execution = task_execution
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_session(self, session_id: int) -> Session:
        session = self.sessions.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _session_path(self, session: Session) -> Path:
        return self.storage.session_path(session.workspace_id, session.id)

    async def _notify(self, event: NotificationEvent, payload: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event, payload)
        except Exception:
            logger.exception(f"Notifier failed for {event.value}")

    async def _complete(self, session: Session) -> None:
        """Mark a session done and remove its worktree."""
        await self.update_session(session.id, status=SessionStatus.DONE)
        await self.git.delete_worktree(
            self._session_path(session), self.storage.git_path(session.workspace_id)
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_session(
        self,
        workspace_id: int,
        starter_branch: str,
        agent_id: int,
        name: Optional[str] = None,
    ) -> Session:
        """Persist a waiting session and provision its worktree.

        Raises:
            WorkspaceNotFoundError: The workspace does not exist
            WorktreeProvisioningError: The worktree could not be created; the
                session record has been removed again
        """
        if self.workspaces.get_workspace(workspace_id) is None:
            raise WorkspaceNotFoundError(workspace_id)

        session = self.sessions.create_session(Session(
            workspace_id=workspace_id,
            status=SessionStatus.WAITING,
            starter_branch=starter_branch,
            agent_id=agent_id,
            name=name,
        ))
        path = self._session_path(session)
        logger.info(f"Creating session {session.id} from {starter_branch} at {path}")

        try:
            result = await self.git.create_worktree(
                self.storage.git_path(workspace_id), starter_branch, path
            )
        except BaseException:
            self.sessions.delete_session(session.id)
            raise

        if not result:
            logger.error(f"Rolling back session {session.id}: {result.detail}")
            self.sessions.delete_session(session.id)
            await self.git.delete_worktree(path, self.storage.git_path(workspace_id))
            raise WorktreeProvisioningError(session.id, result.detail)

        return session

    async def update_session(
        self,
        session_id: int,
        status: Optional[SessionStatus] = None,
        starter_branch: Optional[str] = None,
        has_unread_message: Optional[bool] = None,
        name: Optional[str] = None,
        reset_provider_session_id: bool = False,
    ) -> Session:
        """Apply changes to a session and notify clients of what changed."""
        existing = self._require_session(session_id)

        changes: dict[str, Any] = {}
        if status is not None:
            changes["status"] = status
        if starter_branch is not None:
            changes["starter_branch"] = starter_branch
        if has_unread_message is not None:
            changes["has_unread_message"] = has_unread_message
        if name is not None:
            changes["name"] = name
        if reset_provider_session_id:
            changes["provider_session_id"] = None

        updated = self.sessions.update_session(existing.model_copy(update=changes))

        if status is not None and status != existing.status:
            logger.info(f"Session {session_id}: {existing.status.value} -> {status.value}")
            await self._notify(NotificationEvent.SESSION_STATUS_CHANGED, {
                "session_id": session_id,
                "status": status.value,
            })
        if has_unread_message is not None and has_unread_message != existing.has_unread_message:
            await self._notify(NotificationEvent.SESSION_UNREAD_CHANGED, {
                "session_id": session_id,
                "has_unread_message": has_unread_message,
            })
        return updated

    async def delete_session(self, session_id: int) -> bool:
        session = self.sessions.get_session(session_id)
        if session is None:
            logger.warning(f"Session {session_id} not found for deletion")
            return False
        await self.git.delete_worktree(
            self._session_path(session), self.storage.git_path(session.workspace_id)
        )
        return self.sessions.delete_session(session_id)

    async def merge_to_main(self, session_id: int) -> GitResult:
        """Commit the session's work, merge it into the main branch and push.

        On success the session is marked done and its worktree removed.
        """
        session = self._require_session(session_id)
        path = self._session_path(session)
        git_path = self.storage.git_path(session.workspace_id)

        ensured = await self.git.ensure_branch(path, str(session_id))
        if not ensured:
            return ensured
        branch = ensured.output

        result = await self.git.stage_all(path)
        if not result:
            return result

        message = session.name or f"Session #{session_id}"
        committed = await self.git.commit(path, message)
        if not committed:
            # Nothing new since the last commit is fine
            logger.info(f"No changes to commit for session {session_id}")

        result = await self.git.push_changes(path)
        if not result:
            return result

        result = await self.git.merge_branch(git_path, branch, self.config.main_branch)
        if not result:
            logger.error(f"Failed to merge session {session_id} into {self.config.main_branch}")
            return result

        result = await self.git.push_changes(git_path)
        if not result:
            return result

        await self._complete(session)
        logger.info(f"Merged session {session_id} into {self.config.main_branch}")
        return result

    async def push_and_complete(self, session_id: int) -> GitResult:
        """Push the session branch and mark the session done."""
        session = self._require_session(session_id)
        result = await self.git.push_changes(self._session_path(session))
        if not result:
            return result
        await self._complete(session)
        return result

    async def pull_from_starter(self, session_id: int) -> GitResult:
        """Bring the latest starter branch into the session worktree."""
        session = self._require_session(session_id)
        path = self._session_path(session)

        ensured = await self.git.ensure_branch(path, str(session_id))
        if not ensured:
            return ensured

        result = await self.git.pull(self.storage.git_path(session.workspace_id))
        if not result:
            return result

        # Merge inside the worktree; checking out the starter there would collide
        return await self.git.merge(path, session.starter_branch)

    async def reset_session(self, session_id: int) -> GitResult:
        """Discard all session work and start over from the remote starter branch.

        A failed fetch falls back to the last fetched ``origin/<starter>`` and
        a failed clean leaves untracked files behind; only the hard reset
        decides the outcome.
        """
        session = self._require_session(session_id)
        path = self._session_path(session)
        starter = session.starter_branch

        fetched = await self.git.fetch(path, "origin", starter)
        if not fetched:
            logger.warning(
                f"Fetch of {starter} failed for session {session_id}, "
                f"resetting to the cached remote ref: {fetched.detail}"
            )

        result = await self.git.reset_to(path, f"origin/{starter}", hard=True)
        if not result:
            logger.error(f"Failed to reset session {session_id}: {result.detail}")
            return result

        cleaned = await self.git.clean(path)
        if not cleaned:
            logger.warning(f"Failed to clean session {session_id}: {cleaned.detail}")

        removed = self.messages.delete_messages(session_id)
        logger.info(f"Reset session {session_id}, removed {removed} messages")
        await self.update_session(
            session_id,
            status=SessionStatus.WAITING,
            starter_branch=starter,
            reset_provider_session_id=True,
        )
        return result

    async def cancel_session(self, session_id: int) -> bool:
        """Cancel pending messages, mark the session canceled, remove its worktree."""
        session = self._require_session(session_id)
        canceled = self.messages.mark_messages(
            session_id, MessageStatus.PENDING, MessageStatus.CANCELED
        )
        logger.info(f"Canceled {len(canceled)} pending messages for session {session_id}")

        await self.update_session(session_id, status=SessionStatus.CANCELED)
        result = await self.git.delete_worktree(
            self._session_path(session), self.storage.git_path(session.workspace_id)
        )
        return result.ok

    async def cancel_working_messages(self, session_id: int) -> bool:
        """Cancel pending messages and interrupt the ones being processed."""
        self._require_session(session_id)
        canceled = self.messages.mark_messages(
            session_id, MessageStatus.PENDING, MessageStatus.CANCELED
        )
        interrupted = await self.cancellation.cancel_all_for_session(session_id)

        success = interrupted or bool(canceled)
        if not success:
            logger.warning(f"No working messages to cancel for session {session_id}")
        return success

    async def cancel_message(self, message_id: int) -> bool:
        return await self.cancellation.cancel_one(message_id)

    async def stop_all_working_sessions(self) -> int:
        """Recover in-progress sessions after a restart.

        Their messages are cancelled and they go back to waiting, flagged
        unread so the user notices. Returns how many sessions were stopped.
        """
        working = [
            s for s in self.sessions.list_active_sessions()
            if s.status == SessionStatus.IN_PROGRESS
        ]
        for session in working:
            await self.cancel_working_messages(session.id)
            await self.update_session(
                session.id, status=SessionStatus.WAITING, has_unread_message=True
            )
        if working:
            logger.info(f"Stopped {len(working)} working sessions")
        return len(working)

    # ------------------------------------------------------------------
    # Session git helpers
    # ------------------------------------------------------------------

    async def git_status(self, session_id: int) -> Optional[GitStatus]:
        session = self._require_session(session_id)
        return await self.git.get_status(self._session_path(session))

    async def file_content(
        self, session_id: int, file_path: str, mode: GitFileMode = GitFileMode.WORKING
    ) -> Optional[str]:
        session = self._require_session(session_id)
        return await self.git.get_file_content(self._session_path(session), file_path, mode)

    async def stage_file(self, session_id: int, file_path: str) -> GitResult:
        session = self._require_session(session_id)
        return await self.git.stage_file(self._session_path(session), file_path)

    async def stage_files(self, session_id: int, file_paths: Sequence[str]) -> BulkGitResult:
        session = self._require_session(session_id)
        return await self.git.stage_paths(self._session_path(session), file_paths)

    async def unstage_file(self, session_id: int, file_path: str) -> GitResult:
        session = self._require_session(session_id)
        return await self.git.unstage_file(self._session_path(session), file_path)

    async def unstage_files(self, session_id: int, file_paths: Sequence[str]) -> BulkGitResult:
        session = self._require_session(session_id)
        return await self.git.unstage_paths(self._session_path(session), file_paths)

    async def discard_file(self, session_id: int, file_path: str) -> GitResult:
        session = self._require_session(session_id)
        return await self.git.discard_file(self._session_path(session), file_path)

    async def discard_files(self, session_id: int, file_paths: Sequence[str]) -> BulkGitResult:
        session = self._require_session(session_id)
        return await self.git.discard_paths(self._session_path(session), file_paths)

    async def stage_all(self, session_id: int) -> GitResult:
        session = self._require_session(session_id)
        return await self.git.stage_all(self._session_path(session))

    async def unstage_all(self, session_id: int) -> GitResult:
        session = self._require_session(session_id)
        return await self.git.unstage_all(self._session_path(session))

    async def discard_all(self, session_id: int) -> GitResult:
        session = self._require_session(session_id)
        return await self.git.discard_all(self._session_path(session))

    async def commit(self, session_id: int, message: str) -> GitResult:
        session = self._require_session(session_id)
        if not message.strip():
            return GitResult.failure(GitErrorKind.COMMAND_FAILED, "Commit message is empty")
        return await self.git.commit(self._session_path(session), message)

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def deploy_to_environment(
        self, session_id: int, environment_id: int, restart: bool = False
    ) -> SyncReport:
        """Mirror the session worktree onto an environment directory.

        With ``restart`` the environment's running tasks are stopped and
        started again; when none were running every start task is started.
        """
        session = self._require_session(session_id)
        environment = self.environments.get_environment(environment_id)
        if environment is None:
            raise EnvironmentNotFoundError(environment_id)

        source = self._session_path(session)
        destination = self.storage.environment_path(environment.workspace_id, environment.name)
        report = await asyncio.to_thread(self.synchronizer.sync, destination, source)

        if restart:
            await self._restart_environment_tasks(environment_id, environment.workspace_id)

        logger.info(f"Deployed session {session_id} to environment {environment_id}")
        return report

    async def _restart_environment_tasks(self, environment_id: int, workspace_id: int) -> None:
        statuses = self.task_execution.get_task_statuses(
            workspace_id, ContextKind.ENVIRONMENT, environment_id
        )
        running = [s for s in statuses if s.status == TaskStatus.RUNNING]

        if running:
            for status in running:
                if status.execution_id:
                    await self.task_execution.stop_task(status.execution_id)
                    logger.info(f"Stopped task {status.name} in environment {environment_id}")
            task_ids = [s.task_id for s in running]
            await asyncio.sleep(self.config.restart_settle_seconds)
        else:
            task_ids = [
                t.id for t in self.tasks.list_tasks(workspace_id) if t.type == TaskType.START
            ]

        for task_id in task_ids:
            try:
                await self.task_execution.start_environment_task(environment_id, task_id)
            except Exception:
                logger.warning(
                    f"Failed to restart task {task_id} in environment {environment_id}",
                    exc_info=True,
                )
