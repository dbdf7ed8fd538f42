"""JSON file persistence for workspaces, sessions, tasks and messages.

A small single-file implementation of the repository protocols, used by
the CLI and the API server. Every write rewrites the whole file.
"""

import json
import logging
from pathlib import Path
from typing import Optional, TypeVar, Union

from pydantic import BaseModel, Field

from .models import (
    Environment, Message, MessageStatus, Session, SessionStatus,
    TaskDefinition, Workspace, utcnow
)

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class StoreData(BaseModel):
    """Serialized contents of the store file."""
    workspaces: list[Workspace] = Field(default_factory=list)
    sessions: list[Session] = Field(default_factory=list)
    environments: list[Environment] = Field(default_factory=list)
    tasks: list[TaskDefinition] = Field(default_factory=list)
    messages: list[Message] = Field(default_factory=list)
    next_ids: dict[str, int] = Field(
        default_factory=dict,
        description="Next id per record kind; ids of deleted records are never handed out again"
    )


def _find(records: list[RecordT], record_id: int) -> Optional[RecordT]:
    for record in records:
        if record.id == record_id:
            return record
    return None


class JsonStore:
    """File-backed store implementing every repository protocol.

    Stores records in store.json under the storage root.
    """

    DEFAULT_FILENAME = "store.json"

    def __init__(self, path: Union[str, Path]):
        """Initialize the store.

        Args:
            path: Path of the JSON file; a directory gets DEFAULT_FILENAME
        """
        path = Path(path)
        if path.is_dir():
            path = path / self.DEFAULT_FILENAME
        self.path = path
        self._data = StoreData()
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            self._data = StoreData()
            return
        try:
            self._data = StoreData.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            logger.warning(f"Could not load store {self.path}: {e}")
            self._data = StoreData()

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = self._data.model_dump(mode="json")
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def _allocate_id(self, kind: str, records: list) -> int:
        """Hand out the next id of a record kind, like an autoincrement column."""
        # Files written before the counter existed start after the highest id
        highest = max((r.id for r in records), default=0)
        record_id = max(self._data.next_ids.get(kind, 1), highest + 1)
        self._data.next_ids[kind] = record_id + 1
        return record_id

    def _with_id(self, kind: str, records: list[RecordT], record: RecordT) -> RecordT:
        if record.id:
            self._data.next_ids[kind] = max(self._data.next_ids.get(kind, 1), record.id + 1)
            return record
        return record.model_copy(update={"id": self._allocate_id(kind, records)})

    # Workspaces

    def add_workspace(self, workspace: Workspace) -> Workspace:
        workspace = self._with_id("workspaces", self._data.workspaces, workspace)
        self._data.workspaces.append(workspace)
        self._save()
        return workspace

    def get_workspace(self, workspace_id: int) -> Optional[Workspace]:
        return _find(self._data.workspaces, workspace_id)

    def list_workspaces(self) -> list[Workspace]:
        return list(self._data.workspaces)

    def delete_workspace(self, workspace_id: int) -> bool:
        before = len(self._data.workspaces)
        self._data.workspaces = [w for w in self._data.workspaces if w.id != workspace_id]
        if len(self._data.workspaces) == before:
            return False
        self._save()
        return True

    # Environments

    def add_environment(self, environment: Environment) -> Environment:
        environment = self._with_id("environments", self._data.environments, environment)
        self._data.environments.append(environment)
        self._save()
        return environment

    def get_environment(self, environment_id: int) -> Optional[Environment]:
        return _find(self._data.environments, environment_id)

    def list_environments(self, workspace_id: int) -> list[Environment]:
        return [e for e in self._data.environments if e.workspace_id == workspace_id]

    def delete_environment(self, environment_id: int) -> bool:
        before = len(self._data.environments)
        self._data.environments = [e for e in self._data.environments if e.id != environment_id]
        if len(self._data.environments) == before:
            return False
        self._save()
        return True

    # Tasks

    def add_task(self, task: TaskDefinition) -> TaskDefinition:
        task = self._with_id("tasks", self._data.tasks, task)
        self._data.tasks.append(task)
        self._save()
        return task

    def get_task(self, task_id: int) -> Optional[TaskDefinition]:
        return _find(self._data.tasks, task_id)

    def list_tasks(self, workspace_id: int) -> list[TaskDefinition]:
        return [t for t in self._data.tasks if t.workspace_id == workspace_id]

    # Sessions

    def get_session(self, session_id: int) -> Optional[Session]:
        return _find(self._data.sessions, session_id)

    def create_session(self, session: Session) -> Session:
        session = session.model_copy(
            update={"id": self._allocate_id("sessions", self._data.sessions)}
        )
        self._data.sessions.append(session)
        self._save()
        return session

    def update_session(self, session: Session) -> Session:
        session = session.model_copy(update={"updated_at": utcnow()})
        for i, existing in enumerate(self._data.sessions):
            if existing.id == session.id:
                self._data.sessions[i] = session
                self._save()
                return session
        raise KeyError(f"Session {session.id} does not exist")

    def delete_session(self, session_id: int) -> bool:
        before = len(self._data.sessions)
        self._data.sessions = [s for s in self._data.sessions if s.id != session_id]
        if len(self._data.sessions) == before:
            return False
        self._save()
        return True

    def list_active_sessions(self) -> list[Session]:
        return [
            s for s in self._data.sessions
            if s.status in (SessionStatus.WAITING, SessionStatus.IN_PROGRESS)
        ]

    # Messages

    def add_message(self, message: Message) -> Message:
        message = self._with_id("messages", self._data.messages, message)
        self._data.messages.append(message)
        self._save()
        return message

    def get_message(self, message_id: int) -> Optional[Message]:
        return _find(self._data.messages, message_id)

    def list_messages(self, session_id: int) -> list[Message]:
        return [m for m in self._data.messages if m.session_id == session_id]

    def update_message_status(self, message_id: int, status: MessageStatus) -> Optional[Message]:
        for i, message in enumerate(self._data.messages):
            if message.id == message_id:
                updated = message.model_copy(update={"status": status, "updated_at": utcnow()})
                self._data.messages[i] = updated
                self._save()
                return updated
        return None

    def mark_messages(
        self,
        session_id: int,
        from_status: MessageStatus,
        to_status: MessageStatus
    ) -> list[Message]:
        changed = []
        for i, message in enumerate(self._data.messages):
            if message.session_id == session_id and message.status == from_status:
                updated = message.model_copy(
                    update={"status": to_status, "updated_at": utcnow()}
                )
                self._data.messages[i] = updated
                changed.append(updated)
        if changed:
            self._save()
        return changed

    def delete_messages(self, session_id: int) -> int:
        before = len(self._data.messages)
        self._data.messages = [m for m in self._data.messages if m.session_id != session_id]
        removed = before - len(self._data.messages)
        if removed:
            self._save()
        return removed
