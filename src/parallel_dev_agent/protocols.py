"""Protocol definitions for the orchestrator's collaborators.

Persistence, storage layout and client notification live outside this
package. These protocols describe what the orchestrators need from them,
so tests can pass in mock implementations and the CLI/API can pass in
the JSON store.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from .models import (
    Environment, Message, MessageStatus, Session, TaskDefinition, Workspace
)


class NotificationEvent(str, Enum):
    """Events pushed to connected clients."""
    SESSION_STATUS_CHANGED = "session.status_changed"
    SESSION_UNREAD_CHANGED = "session.unread_changed"
    TASK_STATUS_CHANGED = "task.status_changed"
    TASK_OUTPUT_CHANGED = "task.output_changed"
    MESSAGE_STATUS_CHANGED = "message.status_changed"


@runtime_checkable
class Notifier(Protocol):
    """Sink for real-time client notifications."""

    async def notify(self, event: NotificationEvent, payload: dict[str, Any]) -> None:
        """Deliver an event. Must not raise for disconnected clients."""
        ...


@runtime_checkable
class SessionRepository(Protocol):
    """CRUD access to session records."""

    def get_session(self, session_id: int) -> Optional[Session]:
        ...

    def create_session(self, session: Session) -> Session:
        """Persist a new session and return it with its assigned id."""
        ...

    def update_session(self, session: Session) -> Session:
        ...

    def delete_session(self, session_id: int) -> bool:
        ...

    def list_active_sessions(self) -> list[Session]:
        """Sessions that are neither done nor canceled."""
        ...


@runtime_checkable
class MessageRepository(Protocol):
    """Access to agent messages and their processing status."""

    def get_message(self, message_id: int) -> Optional[Message]:
        ...

    def list_messages(self, session_id: int) -> list[Message]:
        ...

    def update_message_status(self, message_id: int, status: MessageStatus) -> Optional[Message]:
        ...

    def mark_messages(
        self,
        session_id: int,
        from_status: MessageStatus,
        to_status: MessageStatus
    ) -> list[Message]:
        """Move every message of a session in from_status to to_status.

        Returns the messages that were changed.
        """
        ...

    def delete_messages(self, session_id: int) -> int:
        ...


@runtime_checkable
class TaskRepository(Protocol):
    """Read access to task definitions."""

    def get_task(self, task_id: int) -> Optional[TaskDefinition]:
        ...

    def list_tasks(self, workspace_id: int) -> list[TaskDefinition]:
        ...


@runtime_checkable
class WorkspaceRepository(Protocol):

    def get_workspace(self, workspace_id: int) -> Optional[Workspace]:
        ...

    def add_workspace(self, workspace: Workspace) -> Workspace:
        """Persist a new workspace and return it with its assigned id."""
        ...

    def delete_workspace(self, workspace_id: int) -> bool:
        ...


@runtime_checkable
class EnvironmentRepository(Protocol):

    def get_environment(self, environment_id: int) -> Optional[Environment]:
        ...

    def list_environments(self, workspace_id: int) -> list[Environment]:
        ...

    def add_environment(self, environment: Environment) -> Environment:
        ...

    def delete_environment(self, environment_id: int) -> bool:
        ...


@runtime_checkable
class StorageLayout(Protocol):
    """Maps records to their on-disk directories."""

    def workspace_path(self, workspace_id: int) -> Path:
        ...

    def git_path(self, workspace_id: int) -> Path:
        """Canonical clone of the workspace repository."""
        ...

    def session_path(self, workspace_id: int, session_id: int) -> Path:
        """Worktree directory of a session."""
        ...

    def environment_path(self, workspace_id: int, environment_name: str) -> Path:
        ...
