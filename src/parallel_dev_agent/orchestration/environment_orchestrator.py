"""Environment orchestration - long-lived deploy target directories.

An environment directory is a full copy of the workspace's canonical
clone with the environment's branch checked out. Sessions are deployed
into it by the SessionOrchestrator.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional

from ..errors import (
    EnvironmentExistsError, EnvironmentNotFoundError, EnvironmentProvisioningError
)
from ..git_manager import GitWorktreeManager
from ..models import Environment, GitErrorKind, GitResult
from ..protocols import EnvironmentRepository, StorageLayout

logger = logging.getLogger(__name__)


class EnvironmentOrchestrator:
    """Creates, provisions, resets and deletes environment directories."""

    def __init__(
        self,
        environments: EnvironmentRepository,
        storage: StorageLayout,
        git: GitWorktreeManager,
    ):
        self.environments = environments
        self.storage = storage
        self.git = git

    def _require_environment(self, environment_id: int) -> Environment:
        environment = self.environments.get_environment(environment_id)
        if environment is None:
            raise EnvironmentNotFoundError(environment_id)
        return environment

    def _environment_path(self, environment: Environment) -> Path:
        return self.storage.environment_path(environment.workspace_id, environment.name)

    async def _copy_clone(self, environment: Environment) -> GitResult:
        source = self.storage.git_path(environment.workspace_id)
        destination = self._environment_path(environment)
        if not source.is_dir():
            return GitResult.failure(
                GitErrorKind.INVALID_PATH, f"Workspace clone {source} does not exist"
            )

        if destination.exists():
            await asyncio.to_thread(shutil.rmtree, destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copytree, source, destination, symlinks=True)

        result = await self.git.checkout(destination, environment.git_branch)
        if not result:
            logger.error(
                f"Failed to check out {environment.git_branch} for environment "
                f"{environment.id}: {result.detail}"
            )
        return result

    async def provision(self, environment_id: int) -> GitResult:
        """Create the environment directory from the canonical clone."""
        environment = self._require_environment(environment_id)
        logger.info(f"Provisioning environment {environment.name} ({environment_id})")
        return await self._copy_clone(environment)

    async def create_environment(
        self,
        workspace_id: int,
        name: str,
        git_branch: str = "main",
        environment_variables: Optional[dict[str, str]] = None,
    ) -> Environment:
        """Persist an environment and provision its directory.

        Raises:
            EnvironmentExistsError: The workspace already has an environment
                with this name, so they would share a directory
            EnvironmentProvisioningError: Provisioning failed; the record and
                any partial directory have been removed again
        """
        if any(e.name == name for e in self.environments.list_environments(workspace_id)):
            raise EnvironmentExistsError(workspace_id, name)

        environment = self.environments.add_environment(Environment(
            workspace_id=workspace_id,
            name=name,
            git_branch=git_branch,
            environment_variables=environment_variables or {},
        ))

        try:
            result = await self.provision(environment.id)
        except BaseException:
            self.environments.delete_environment(environment.id)
            raise

        if not result:
            logger.error(f"Rolling back environment {environment.id}: {result.detail}")
            self.environments.delete_environment(environment.id)
            path = self._environment_path(environment)
            if path.exists():
                await asyncio.to_thread(shutil.rmtree, path)
            raise EnvironmentProvisioningError(environment.id, result.detail)

        return environment

    async def delete_environment(self, environment_id: int) -> bool:
        environment = self.environments.get_environment(environment_id)
        if environment is None:
            logger.warning(f"Environment {environment_id} not found for deletion")
            return False
        path = self._environment_path(environment)
        if path.exists():
            await asyncio.to_thread(shutil.rmtree, path)
        return self.environments.delete_environment(environment_id)

    async def reset(self, environment_id: int) -> GitResult:
        """Throw away local changes and pull the latest branch state.

        A directory without a ``.git`` directory is provisioned again first.
        """
        environment = self._require_environment(environment_id)
        path = self._environment_path(environment)

        if not (path / ".git").is_dir():
            logger.info(f"Environment {environment_id} has no repository, recreating it")
            result = await self._copy_clone(environment)
        else:
            result = await self.git.reset_branch(path, environment.git_branch, hard=True)
        if not result:
            return result

        result = await self.git.pull(path)
        if result:
            logger.info(f"Reset environment {environment_id} to latest {environment.git_branch}")
        return result
