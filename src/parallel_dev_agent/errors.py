"""Exception types for the session orchestrator.

Expected git failures (merge conflicts, nothing to commit, missing upstream)
are reported as GitResult values, not exceptions. The types here cover the
remaining cases:
- Commands that could not be spawned or ran past their deadline
- Lookups against the persistence layer that found nothing
- Workspace, session or environment provisioning that could not be completed
"""

from typing import Optional, Sequence


class AgentError(Exception):
    """Base class for all orchestrator errors."""


class CommandError(AgentError):
    """Base class for external command failures."""

    def __init__(self, message: str, args: Sequence[str] = ()):
        super().__init__(message)
        self.command_args = tuple(args)


class CommandStartError(CommandError):
    """The executable could not be started at all."""


class CommandTimeoutError(CommandError):
    """The command exceeded its deadline and its process tree was killed."""

    def __init__(self, args: Sequence[str], timeout: float):
        command = " ".join(args)
        super().__init__(f"Command '{command}' timed out after {timeout:g} seconds", args)
        self.timeout = timeout


class NotFoundError(AgentError):
    """A record was not found in the persistence layer."""

    entity = "Record"

    def __init__(self, entity_id: object, detail: Optional[str] = None):
        message = f"{self.entity} {entity_id} not found"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.entity_id = entity_id


class SessionNotFoundError(NotFoundError):
    entity = "Session"


class TaskNotFoundError(NotFoundError):
    entity = "Task"


class WorkspaceNotFoundError(NotFoundError):
    entity = "Workspace"


class EnvironmentNotFoundError(NotFoundError):
    entity = "Environment"


class ConflictError(AgentError):
    """The request conflicts with existing records or on-disk state."""


class EnvironmentExistsError(ConflictError):

    def __init__(self, workspace_id: int, name: str):
        super().__init__(f"Workspace {workspace_id} already has an environment named '{name}'")
        self.workspace_id = workspace_id
        self.name = name


class ProvisioningError(ConflictError):
    """On-disk state for a new record could not be set up.

    The record has been removed again when this is raised.
    """

    action = "provision"
    entity = "record"

    def __init__(self, entity_id: int, detail: Optional[str] = None):
        message = f"Failed to {self.action} {self.entity} {entity_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.entity_id = entity_id


class WorktreeProvisioningError(ProvisioningError):
    """A session's worktree could not be created."""
    action = "create worktree for"
    entity = "session"

    @property
    def session_id(self) -> int:
        return self.entity_id


class WorkspaceInitializationError(ProvisioningError):
    """A workspace repository could not be cloned."""
    action = "initialize"
    entity = "workspace"


class EnvironmentProvisioningError(ProvisioningError):
    """An environment directory could not be created from the workspace clone."""
    entity = "environment"
