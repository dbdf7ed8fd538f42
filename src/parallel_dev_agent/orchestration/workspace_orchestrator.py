"""Workspace orchestration - the canonical clone every session starts from.

A workspace owns one clone of its repository at ``StorageLayout.git_path``.
Session worktrees are added to that clone and environments are copied
from it, so nothing else works until the workspace is initialized.
"""

import asyncio
import logging
import shutil
from typing import Optional

from ..errors import WorkspaceInitializationError, WorkspaceNotFoundError
from ..git_manager import GitWorktreeManager
from ..models import GitErrorKind, GitResult, Workspace
from ..protocols import StorageLayout, WorkspaceRepository

logger = logging.getLogger(__name__)


class WorkspaceOrchestrator:
    """Creates, initializes and deletes workspaces."""

    def __init__(
        self,
        workspaces: WorkspaceRepository,
        storage: StorageLayout,
        git: GitWorktreeManager,
    ):
        self.workspaces = workspaces
        self.storage = storage
        self.git = git

    def _require_workspace(self, workspace_id: int) -> Workspace:
        workspace = self.workspaces.get_workspace(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id)
        return workspace

    async def _remove_directory(self, workspace_id: int) -> None:
        path = self.storage.workspace_path(workspace_id)
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path)

    async def initialize(self, workspace_id: int) -> GitResult:
        """Clone the workspace repository into its git directory.

        A workspace whose clone already exists is left alone.
        """
        workspace = self._require_workspace(workspace_id)
        if not workspace.git_url:
            return GitResult.failure(
                GitErrorKind.INVALID_PATH, f"Workspace {workspace_id} has no repository URL"
            )

        git_path = self.storage.git_path(workspace_id)
        if await self.git.is_git_repo(git_path):
            logger.info(f"Workspace {workspace_id} is already initialized")
            return GitResult.success()

        logger.info(f"Initializing workspace {workspace_id} from {workspace.git_url}")
        self.storage.workspace_path(workspace_id).mkdir(parents=True, exist_ok=True)
        result = await self.git.clone(workspace.git_url, git_path)
        if result:
            logger.info(f"Initialized workspace {workspace_id}")
        return result

    async def create_workspace(
        self,
        name: str,
        git_url: str,
        environment_variables: Optional[dict[str, str]] = None,
    ) -> Workspace:
        """Persist a workspace and clone its repository.

        Raises:
            WorkspaceInitializationError: The clone failed; the record and any
                partial directory have been removed again
        """
        workspace = self.workspaces.add_workspace(Workspace(
            name=name,
            git_url=git_url,
            environment_variables=environment_variables or {},
        ))

        try:
            result = await self.initialize(workspace.id)
        except BaseException:
            self.workspaces.delete_workspace(workspace.id)
            raise

        if not result:
            logger.error(f"Rolling back workspace {workspace.id}: {result.detail}")
            self.workspaces.delete_workspace(workspace.id)
            await self._remove_directory(workspace.id)
            raise WorkspaceInitializationError(workspace.id, result.detail)

        return workspace

    async def delete_workspace(self, workspace_id: int) -> bool:
        """Remove the workspace directory and its record."""
        if self.workspaces.get_workspace(workspace_id) is None:
            logger.warning(f"Workspace {workspace_id} not found for deletion")
            return False
        await self._remove_directory(workspace_id)
        return self.workspaces.delete_workspace(workspace_id)
