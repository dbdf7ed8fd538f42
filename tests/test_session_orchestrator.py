"""Tests for workspace, session and environment orchestration."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import git, requires_git
from parallel_dev_agent.cancellation import CancellationToken, ProcessingCancellationRegistry
from parallel_dev_agent.errors import (
    EnvironmentExistsError, EnvironmentNotFoundError, EnvironmentProvisioningError,
    SessionNotFoundError, WorkspaceInitializationError, WorkspaceNotFoundError,
    WorktreeProvisioningError
)
from parallel_dev_agent.file_sync import DirectorySynchronizer, SyncReport
from parallel_dev_agent.git_manager import GitWorktreeManager
from parallel_dev_agent.models import (
    ContextKind, Environment, GitErrorKind, GitResult, Message, MessageStatus,
    OrchestratorConfig, Session, SessionStatus, TaskDefinition, TaskStatus, TaskStatusInfo,
    TaskType, Workspace
)
from parallel_dev_agent.orchestration import (
    EnvironmentOrchestrator, SessionOrchestrator, WorkspaceOrchestrator, build_services
)
from parallel_dev_agent.protocols import NotificationEvent
from parallel_dev_agent.storage import StoragePaths
from parallel_dev_agent.task_execution import TaskExecutionService


# =============================================================================
# Fixtures
# =============================================================================

def make_git_mock() -> MagicMock:
    """GitWorktreeManager double whose operations all succeed."""
    git_mock = MagicMock(spec=GitWorktreeManager)
    for name in (
        "create_worktree", "delete_worktree", "stage_all", "commit", "push_changes",
        "merge_branch", "pull", "merge", "fetch", "reset_to", "clean", "stage_file",
    ):
        getattr(git_mock, name).return_value = GitResult.success()
    git_mock.ensure_branch.return_value = GitResult.success("sessions/s-1")
    return git_mock


@pytest.fixture
def git_mock() -> MagicMock:
    return make_git_mock()


@pytest.fixture
def storage(tmp_path: Path) -> StoragePaths:
    return StoragePaths(tmp_path / "storage")


@pytest.fixture
def task_execution() -> MagicMock:
    return MagicMock(spec=TaskExecutionService)


@pytest.fixture
def orchestrator(store, storage, git_mock, notifier, task_execution) -> SessionOrchestrator:
    store.add_workspace(Workspace(name="ws"))
    return SessionOrchestrator(
        config=OrchestratorConfig(storage_root=storage.root, restart_settle_seconds=0),
        sessions=store,
        messages=store,
        workspaces=store,
        environments=store,
        tasks=store,
        storage=storage,
        git=git_mock,
        synchronizer=DirectorySynchronizer(),
        cancellation=ProcessingCancellationRegistry(store, notifier),
        task_execution=task_execution,
        notifier=notifier,
    )


def add_session(store, status=SessionStatus.WAITING, **kwargs) -> Session:
    return store.create_session(
        Session(workspace_id=1, starter_branch="main", agent_id=1, status=status, **kwargs)
    )


# =============================================================================
# Lifecycle
# =============================================================================

class TestCreateSession:
    """Tests for session provisioning."""

    @pytest.mark.asyncio
    async def test_creates_worktree_at_session_path(self, orchestrator, store, storage, git_mock):
        session = await orchestrator.create_session(1, "feature", agent_id=2, name="Try it")

        assert store.get_session(session.id).status == SessionStatus.WAITING
        git_mock.create_worktree.assert_awaited_once_with(
            storage.git_path(1), "feature", storage.session_path(1, session.id)
        )

    @pytest.mark.asyncio
    async def test_rolls_back_on_failure(self, orchestrator, store, git_mock):
        git_mock.create_worktree.return_value = GitResult.failure(
            GitErrorKind.COMMAND_FAILED, "invalid reference: nope"
        )

        with pytest.raises(WorktreeProvisioningError, match="invalid reference"):
            await orchestrator.create_session(1, "nope", agent_id=1)

        assert store.list_active_sessions() == []
        git_mock.delete_worktree.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rolls_back_when_interrupted(self, orchestrator, store, git_mock):
        git_mock.create_worktree.side_effect = KeyboardInterrupt()

        with pytest.raises(KeyboardInterrupt):
            await orchestrator.create_session(1, "main", agent_id=1)

        assert store.list_active_sessions() == []

    @pytest.mark.asyncio
    async def test_unknown_workspace(self, orchestrator):
        with pytest.raises(WorkspaceNotFoundError):
            await orchestrator.create_session(42, "main", agent_id=1)


class TestUpdateSession:
    """Tests for session updates and their notifications."""

    @pytest.mark.asyncio
    async def test_status_change_notifies(self, orchestrator, store, notifier):
        session = add_session(store)

        await orchestrator.update_session(session.id, status=SessionStatus.IN_PROGRESS)

        assert store.get_session(session.id).status == SessionStatus.IN_PROGRESS
        assert notifier.of(NotificationEvent.SESSION_STATUS_CHANGED) == [
            {"session_id": session.id, "status": "in_progress"}
        ]

    @pytest.mark.asyncio
    async def test_unchanged_values_do_not_notify(self, orchestrator, store, notifier):
        session = add_session(store)

        await orchestrator.update_session(
            session.id, status=SessionStatus.WAITING, has_unread_message=False
        )

        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_unread_change_notifies(self, orchestrator, store, notifier):
        session = add_session(store)
        await orchestrator.update_session(session.id, has_unread_message=True)
        assert notifier.of(NotificationEvent.SESSION_UNREAD_CHANGED) == [
            {"session_id": session.id, "has_unread_message": True}
        ]

    @pytest.mark.asyncio
    async def test_missing_session(self, orchestrator):
        with pytest.raises(SessionNotFoundError):
            await orchestrator.update_session(99, status=SessionStatus.DONE)


class TestGitWorkflows:
    """Tests for merge, push, pull and reset."""

    @pytest.mark.asyncio
    async def test_merge_to_main_completes_session(self, orchestrator, store, storage, git_mock):
        session = add_session(store, name="Add feature")

        result = await orchestrator.merge_to_main(session.id)

        assert result
        git_mock.commit.assert_awaited_once_with(storage.session_path(1, session.id), "Add feature")
        git_mock.merge_branch.assert_awaited_once_with(storage.git_path(1), "sessions/s-1", "main")
        assert store.get_session(session.id).status == SessionStatus.DONE
        git_mock.delete_worktree.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_merge_continues_when_nothing_to_commit(self, orchestrator, store, git_mock):
        session = add_session(store)
        git_mock.commit.return_value = GitResult.failure(
            GitErrorKind.COMMAND_FAILED, "nothing to commit"
        )
        assert await orchestrator.merge_to_main(session.id)

    @pytest.mark.asyncio
    async def test_merge_conflict_keeps_session(self, orchestrator, store, git_mock):
        session = add_session(store, status=SessionStatus.IN_PROGRESS)
        git_mock.merge_branch.return_value = GitResult.failure(
            GitErrorKind.COMMAND_FAILED, "CONFLICT (content)"
        )

        result = await orchestrator.merge_to_main(session.id)

        assert not result
        assert store.get_session(session.id).status == SessionStatus.IN_PROGRESS
        git_mock.delete_worktree.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_push_and_complete(self, orchestrator, store, git_mock):
        session = add_session(store)
        assert await orchestrator.push_and_complete(session.id)
        assert store.get_session(session.id).status == SessionStatus.DONE

    @pytest.mark.asyncio
    async def test_push_failure_leaves_session(self, orchestrator, store, git_mock):
        session = add_session(store)
        git_mock.push_changes.return_value = GitResult.failure(GitErrorKind.NO_UPSTREAM, "rejected")
        assert not await orchestrator.push_and_complete(session.id)
        assert store.get_session(session.id).status == SessionStatus.WAITING

    @pytest.mark.asyncio
    async def test_pull_from_starter_merges_in_worktree(self, orchestrator, store, storage, git_mock):
        session = add_session(store)
        assert await orchestrator.pull_from_starter(session.id)
        git_mock.pull.assert_awaited_once_with(storage.git_path(1))
        git_mock.merge.assert_awaited_once_with(storage.session_path(1, session.id), "main")

    @pytest.mark.asyncio
    async def test_reset_session(self, orchestrator, store, git_mock):
        session = add_session(store, status=SessionStatus.IN_PROGRESS, provider_session_id="abc")
        store.add_message(Message(session_id=session.id))

        assert await orchestrator.reset_session(session.id)

        git_mock.reset_to.assert_awaited_once()
        assert git_mock.reset_to.await_args.args[1] == "origin/main"
        reset = store.get_session(session.id)
        assert reset.status == SessionStatus.WAITING
        assert reset.provider_session_id is None
        assert store.list_messages(session.id) == []

    @pytest.mark.asyncio
    async def test_reset_continues_after_fetch_and_clean_failures(
        self, orchestrator, store, git_mock
    ):
        session = add_session(store, status=SessionStatus.IN_PROGRESS)
        git_mock.fetch.return_value = GitResult.failure(GitErrorKind.COMMAND_FAILED, "offline")
        git_mock.clean.return_value = GitResult.failure(GitErrorKind.COMMAND_FAILED, "busy")

        result = await orchestrator.reset_session(session.id)

        assert result
        git_mock.reset_to.assert_awaited_once()
        assert store.get_session(session.id).status == SessionStatus.WAITING

    @pytest.mark.asyncio
    async def test_reset_failure_keeps_session(self, orchestrator, store, git_mock):
        session = add_session(store, status=SessionStatus.IN_PROGRESS)
        store.add_message(Message(session_id=session.id))
        git_mock.reset_to.return_value = GitResult.failure(GitErrorKind.TIMEOUT, "timed out")

        result = await orchestrator.reset_session(session.id)

        assert result.error == GitErrorKind.TIMEOUT
        git_mock.clean.assert_not_awaited()
        assert store.get_session(session.id).status == SessionStatus.IN_PROGRESS
        assert len(store.list_messages(session.id)) == 1

    @pytest.mark.asyncio
    async def test_commit_rejects_empty_message(self, orchestrator, store, git_mock):
        session = add_session(store)
        result = await orchestrator.commit(session.id, "   ")
        assert not result
        git_mock.commit.assert_not_awaited()


class TestCancellation:
    """Tests for cancelling sessions and messages."""

    @pytest.mark.asyncio
    async def test_cancel_session(self, orchestrator, store, git_mock):
        session = add_session(store, status=SessionStatus.IN_PROGRESS)
        pending = store.add_message(Message(session_id=session.id, status=MessageStatus.PENDING))

        assert await orchestrator.cancel_session(session.id)

        assert store.get_session(session.id).status == SessionStatus.CANCELED
        assert store.get_message(pending.id).status == MessageStatus.CANCELED
        git_mock.delete_worktree.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancel_working_messages(self, orchestrator, store):
        session = add_session(store, status=SessionStatus.IN_PROGRESS)
        working = store.add_message(Message(session_id=session.id, status=MessageStatus.WORKING))
        token = CancellationToken()
        orchestrator.cancellation.register(working.id, session.id, token)

        assert await orchestrator.cancel_working_messages(session.id)

        assert token.cancelled
        assert store.get_message(working.id).status == MessageStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_working_with_nothing_to_cancel(self, orchestrator, store):
        session = add_session(store)
        assert await orchestrator.cancel_working_messages(session.id) is False

    @pytest.mark.asyncio
    async def test_stop_all_working_sessions(self, orchestrator, store, notifier):
        working = add_session(store, status=SessionStatus.IN_PROGRESS)
        idle = add_session(store, status=SessionStatus.WAITING)
        store.add_message(Message(session_id=working.id, status=MessageStatus.WORKING))

        assert await orchestrator.stop_all_working_sessions() == 1

        recovered = store.get_session(working.id)
        assert recovered.status == SessionStatus.WAITING
        assert recovered.has_unread_message
        assert store.get_session(idle.id).has_unread_message is False
        assert store.list_messages(working.id)[0].status == MessageStatus.FAILED


class TestDelete:

    @pytest.mark.asyncio
    async def test_delete_session(self, orchestrator, store, git_mock):
        session = add_session(store)
        assert await orchestrator.delete_session(session.id) is True
        assert store.get_session(session.id) is None
        assert await orchestrator.delete_session(session.id) is False


class TestDeploy:
    """Tests for deploying a session to an environment."""

    @pytest.fixture
    def deployed(self, store, storage):
        session = add_session(store)
        environment = store.add_environment(Environment(workspace_id=1, name="staging"))
        source = storage.session_path(1, session.id)
        source.mkdir(parents=True)
        (source / "app.py").write_text("print('v2')")
        return session, environment

    @pytest.mark.asyncio
    async def test_syncs_files(self, orchestrator, storage, deployed, task_execution):
        session, environment = deployed

        report = await orchestrator.deploy_to_environment(session.id, environment.id)

        assert isinstance(report, SyncReport)
        assert (storage.environment_path(1, "staging") / "app.py").read_text() == "print('v2')"
        task_execution.start_environment_task.assert_not_called()

    @pytest.mark.asyncio
    async def test_restart_restarts_running_tasks(self, orchestrator, deployed, task_execution):
        session, environment = deployed
        task_execution.get_task_statuses.return_value = [
            TaskStatusInfo(5, "server", TaskType.START, TaskStatus.RUNNING, "exec-1"),
            TaskStatusInfo(6, "build", TaskType.BUILD, TaskStatus.COMPLETED, "exec-2"),
        ]

        await orchestrator.deploy_to_environment(session.id, environment.id, restart=True)

        task_execution.stop_task.assert_awaited_once_with("exec-1")
        task_execution.start_environment_task.assert_awaited_once_with(environment.id, 5)

    @pytest.mark.asyncio
    async def test_restart_without_running_starts_start_tasks(
        self, orchestrator, store, deployed, task_execution
    ):
        session, environment = deployed
        start = store.add_task(TaskDefinition(
            workspace_id=1, name="server", type=TaskType.START, script_content="npm start"
        ))
        store.add_task(TaskDefinition(
            workspace_id=1, name="test", type=TaskType.TEST, script_content="npm test"
        ))
        task_execution.get_task_statuses.return_value = []

        await orchestrator.deploy_to_environment(session.id, environment.id, restart=True)

        task_execution.get_task_statuses.assert_called_once_with(
            1, ContextKind.ENVIRONMENT, environment.id
        )
        task_execution.start_environment_task.assert_awaited_once_with(environment.id, start.id)

    @pytest.mark.asyncio
    async def test_unknown_environment(self, orchestrator, deployed):
        session, _ = deployed
        with pytest.raises(EnvironmentNotFoundError):
            await orchestrator.deploy_to_environment(session.id, 99)


# =============================================================================
# Environments
# =============================================================================

class TestEnvironmentOrchestrator:
    """Tests for environment provisioning and reset."""

    @pytest.mark.asyncio
    async def test_missing_clone(self, store, storage, git_mock):
        environment = store.add_environment(Environment(workspace_id=1, name="prod"))
        orchestrator = EnvironmentOrchestrator(store, storage, git_mock)

        result = await orchestrator.provision(environment.id)

        assert result.error == GitErrorKind.INVALID_PATH

    @pytest.mark.asyncio
    async def test_unknown_environment(self, store, storage, git_mock):
        with pytest.raises(EnvironmentNotFoundError):
            await EnvironmentOrchestrator(store, storage, git_mock).reset(7)

    @requires_git
    @pytest.mark.asyncio
    async def test_provision_and_reset(self, store, storage, git_repo: Path):
        clone = storage.git_path(1)
        clone.parent.mkdir(parents=True)
        subprocess.run(["git", "clone", "-q", str(git_repo), str(clone)], check=True)
        environment = store.add_environment(
            Environment(workspace_id=1, name="staging", git_branch="feature")
        )
        orchestrator = EnvironmentOrchestrator(store, storage, GitWorktreeManager())

        assert await orchestrator.provision(environment.id)
        path = storage.environment_path(1, "staging")
        assert git(path, "branch", "--show-current").strip() == "feature"

        (path / "README.md").write_text("local edit\n")
        assert await orchestrator.reset(environment.id)
        assert (path / "README.md").read_text() == "# Test\n"

    @pytest.mark.asyncio
    async def test_create_environment_provisions(self, store, storage, git_mock):
        storage.git_path(1).mkdir(parents=True)
        (storage.git_path(1) / "app.py").write_text("print()\n")
        git_mock.checkout.return_value = GitResult.success()
        orchestrator = EnvironmentOrchestrator(store, storage, git_mock)

        environment = await orchestrator.create_environment(1, "prod", git_branch="release")

        assert store.get_environment(environment.id).git_branch == "release"
        assert (storage.environment_path(1, "prod") / "app.py").exists()
        git_mock.checkout.assert_awaited_once_with(storage.environment_path(1, "prod"), "release")

    @pytest.mark.asyncio
    async def test_create_environment_rolls_back(self, store, storage, git_mock):
        storage.git_path(1).mkdir(parents=True)
        git_mock.checkout.return_value = GitResult.failure(
            GitErrorKind.COMMAND_FAILED, "pathspec 'nope' did not match"
        )
        orchestrator = EnvironmentOrchestrator(store, storage, git_mock)

        with pytest.raises(EnvironmentProvisioningError):
            await orchestrator.create_environment(1, "prod", git_branch="nope")

        assert store.list_environments(1) == []
        assert not storage.environment_path(1, "prod").exists()

    @pytest.mark.asyncio
    async def test_duplicate_environment_name(self, store, storage, git_mock):
        store.add_environment(Environment(workspace_id=1, name="prod"))
        orchestrator = EnvironmentOrchestrator(store, storage, git_mock)

        with pytest.raises(EnvironmentExistsError):
            await orchestrator.create_environment(1, "prod")

        assert len(store.list_environments(1)) == 1

    @pytest.mark.asyncio
    async def test_delete_environment(self, store, storage, git_mock):
        environment = store.add_environment(Environment(workspace_id=1, name="prod"))
        storage.environment_path(1, "prod").mkdir(parents=True)
        orchestrator = EnvironmentOrchestrator(store, storage, git_mock)

        assert await orchestrator.delete_environment(environment.id)
        assert not storage.environment_path(1, "prod").exists()
        assert not await orchestrator.delete_environment(environment.id)


class TestWorkspaceOrchestrator:
    """Tests for workspace creation and initialization."""

    @pytest.mark.asyncio
    async def test_create_clones_into_git_path(self, store, storage, git_mock):
        git_mock.is_git_repo.return_value = False
        git_mock.clone.return_value = GitResult.success()
        orchestrator = WorkspaceOrchestrator(store, storage, git_mock)

        workspace = await orchestrator.create_workspace(
            "ws", "https://example.com/repo.git", {"NODE_ENV": "test"}
        )

        git_mock.clone.assert_awaited_once_with(
            "https://example.com/repo.git", storage.git_path(workspace.id)
        )
        assert store.get_workspace(workspace.id).environment_variables == {"NODE_ENV": "test"}

    @pytest.mark.asyncio
    async def test_failed_clone_rolls_back(self, store, storage, git_mock):
        git_mock.is_git_repo.return_value = False
        git_mock.clone.return_value = GitResult.failure(
            GitErrorKind.COMMAND_FAILED, "repository not found"
        )
        orchestrator = WorkspaceOrchestrator(store, storage, git_mock)

        with pytest.raises(WorkspaceInitializationError, match="repository not found"):
            await orchestrator.create_workspace("ws", "https://example.com/missing.git")

        assert store.list_workspaces() == []
        assert not storage.workspace_path(1).exists()

    @pytest.mark.asyncio
    async def test_initialize_existing_clone_is_noop(self, store, storage, git_mock):
        workspace = store.add_workspace(Workspace(name="ws", git_url="https://example.com/r.git"))
        git_mock.is_git_repo.return_value = True
        orchestrator = WorkspaceOrchestrator(store, storage, git_mock)

        assert await orchestrator.initialize(workspace.id)
        git_mock.clone.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_initialize_without_url(self, store, storage, git_mock):
        workspace = store.add_workspace(Workspace(name="ws"))
        orchestrator = WorkspaceOrchestrator(store, storage, git_mock)

        result = await orchestrator.initialize(workspace.id)

        assert result.error == GitErrorKind.INVALID_PATH
        git_mock.clone.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_workspace(self, store, storage, git_mock):
        with pytest.raises(WorkspaceNotFoundError):
            await WorkspaceOrchestrator(store, storage, git_mock).initialize(3)

    @pytest.mark.asyncio
    async def test_delete_workspace(self, store, storage, git_mock):
        workspace = store.add_workspace(Workspace(name="ws"))
        storage.git_path(workspace.id).mkdir(parents=True)
        orchestrator = WorkspaceOrchestrator(store, storage, git_mock)

        assert await orchestrator.delete_workspace(workspace.id)
        assert not storage.workspace_path(workspace.id).exists()
        assert not await orchestrator.delete_workspace(workspace.id)

    @requires_git
    @pytest.mark.asyncio
    async def test_real_clone(self, store, storage, git_repo: Path, origin_repo: Path):
        orchestrator = WorkspaceOrchestrator(store, storage, GitWorktreeManager())

        workspace = await orchestrator.create_workspace("ws", str(origin_repo))

        assert (storage.git_path(workspace.id) / "README.md").exists()


# =============================================================================
# End to end
# =============================================================================

@requires_git
class TestSessionLifecycleEndToEnd:
    """Full session workflows against real repositories."""

    @pytest.fixture
    def services(self, tmp_path: Path, origin_repo: Path, git_repo: Path, notifier):
        config = OrchestratorConfig(storage_root=tmp_path / "storage")
        services = build_services(config, notifier=notifier)
        services.store.add_workspace(Workspace(name="ws", git_url=str(origin_repo)))

        clone = services.storage.git_path(1)
        clone.parent.mkdir(parents=True)
        subprocess.run(["git", "clone", "-q", str(origin_repo), str(clone)], check=True)
        git(clone, "config", "user.name", "Test User")
        git(clone, "config", "user.email", "test@example.com")
        git(clone, "config", "commit.gpgsign", "false")
        return services

    @pytest.mark.asyncio
    async def test_two_sessions_then_merge(self, services, origin_repo: Path):
        first = await services.sessions.create_session(1, "main", agent_id=1)
        second = await services.sessions.create_session(1, "main", agent_id=1, name="Second")

        path = services.storage.session_path(1, second.id)
        (path / "feature.txt").write_text("from session\n")
        status = await services.sessions.git_status(second.id)
        assert status.untracked == ["feature.txt"]

        result = await services.sessions.merge_to_main(second.id)

        assert result, result.detail
        assert services.store.get_session(second.id).status == SessionStatus.DONE
        assert not path.exists()
        assert "feature.txt" in git(origin_repo, "ls-tree", "--name-only", "main")
        assert services.storage.session_path(1, first.id).exists()

        await services.shutdown()

    @pytest.mark.asyncio
    async def test_reset_with_unreachable_origin(self, services, origin_repo: Path):
        session = await services.sessions.create_session(1, "main", agent_id=1)
        path = services.storage.session_path(1, session.id)
        (path / "README.md").write_text("local edit\n")
        (path / "scratch.txt").write_text("untracked\n")
        origin_repo.rename(origin_repo.with_name("moved.git"))

        result = await services.sessions.reset_session(session.id)

        assert result, result.detail
        assert (path / "README.md").read_text() == "# Test\n"
        assert not (path / "scratch.txt").exists()
        assert services.store.get_session(session.id).status == SessionStatus.WAITING
        await services.shutdown()

    @pytest.mark.asyncio
    async def test_merge_after_deleting_previous_session(self, services, origin_repo: Path):
        first = await services.sessions.create_session(1, "main", agent_id=1)
        assert await services.sessions.pull_from_starter(first.id)
        assert await services.sessions.delete_session(first.id)

        second = await services.sessions.create_session(1, "main", agent_id=1)
        assert second.id != first.id
        (services.storage.session_path(1, second.id) / "second.txt").write_text("second\n")

        result = await services.sessions.merge_to_main(second.id)

        assert result, result.detail
        assert "second.txt" in git(origin_repo, "ls-tree", "--name-only", "main")
        await services.shutdown()

    @pytest.mark.asyncio
    async def test_failed_provisioning_leaves_nothing(self, services):
        with pytest.raises(WorktreeProvisioningError):
            await services.sessions.create_session(1, "does-not-exist", agent_id=1)

        assert services.store.list_active_sessions() == []
        assert not services.storage.session_path(1, 1).exists()
        await services.shutdown()
