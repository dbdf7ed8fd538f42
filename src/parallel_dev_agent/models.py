"""Data models for the parallel dev agent.

Uses Pydantic for persisted records and configuration. Transient values
derived from git or from running processes are plain dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Lifecycle status of a session."""
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELED = "canceled"


class MessageStatus(str, Enum):
    """Processing status of a message sent to an agent."""
    PENDING = "pending"
    WORKING = "working"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"


class TaskStatus(str, Enum):
    """Status of one task execution.

    Pending -> Running -> Completed | Failed | Canceled
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELED)


class TaskType(str, Enum):
    BUILD = "build"
    TEST = "test"
    START = "start"


class ScriptType(str, Enum):
    """Interpreter used to run a task's script."""
    BASH = "bash"
    POWERSHELL = "powershell"
    NODEJS = "nodejs"


class ContextKind(str, Enum):
    """Logical owner of a running process."""
    SESSION = "session"
    ENVIRONMENT = "environment"


class GitChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    COPIED = "copied"


class GitFileMode(str, Enum):
    """Which version of a file to read."""
    WORKING = "working"  # Working tree
    HEAD = "head"        # Last commit
    STAGED = "staged"    # Index


class GitErrorKind(str, Enum):
    """Classification of expected git failures."""
    COMMAND_FAILED = "command_failed"
    TIMEOUT = "timeout"
    NOT_A_WORKTREE = "not_a_worktree"
    DETACHED_HEAD = "detached_head"
    NO_UPSTREAM = "no_upstream"
    BRANCH_IN_USE = "branch_in_use"
    INVALID_PATH = "invalid_path"


# =============================================================================
# Persisted records
# =============================================================================

class Workspace(BaseModel):
    """A shared git repository that sessions are started from."""
    id: int = 0
    name: str
    git_url: Optional[str] = None
    environment_variables: dict[str, str] = Field(default_factory=dict)


class Session(BaseModel):
    """One isolated unit of agent work backed by its own worktree."""
    id: int = 0
    workspace_id: int
    status: SessionStatus = SessionStatus.WAITING
    starter_branch: str
    agent_id: int
    provider_session_id: Optional[str] = Field(
        default=None,
        description="Conversation id assigned by the agent provider"
    )
    has_unread_message: bool = False
    name: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Environment(BaseModel):
    """A long-lived deploy target directory for a workspace."""
    id: int = 0
    workspace_id: int
    name: str
    git_branch: str = "main"
    environment_variables: dict[str, str] = Field(default_factory=dict)


class TaskDefinition(BaseModel):
    """A build/test/start script that can be run in a session or environment."""
    id: int = 0
    workspace_id: int
    name: str
    type: Optional[TaskType] = None
    working_directory: Optional[str] = Field(
        default=None,
        description="Directory relative to the session or environment root"
    )
    script_type: ScriptType = ScriptType.BASH
    script_content: str


class Message(BaseModel):
    """A message whose processing by an agent can be cancelled."""
    id: int = 0
    session_id: int
    content: str = ""
    status: MessageStatus = MessageStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Configuration
# =============================================================================

class LockRetryConfig(BaseModel):
    """Backoff for git operations that collide on index.lock."""
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=0.1, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-indexed)."""
        return self.base_delay_seconds * (self.exponential_base ** (attempt - 1))


class OrchestratorConfig(BaseModel):
    """Configuration for the session and process orchestrators."""
    storage_root: Path = Field(
        default_factory=lambda: Path.home() / ".parallel-dev-agent",
        description="Root directory holding workspaces, sessions and environments"
    )

    # Git
    git_timeout_seconds: float = Field(
        default=30.0,
        description="Hard deadline for every git command"
    )
    main_branch: str = Field(default="main", description="Branch sessions merge into")
    session_branch_prefix: str = Field(
        default="sessions/s-",
        description="Prefix of branches synthesized for detached session worktrees"
    )
    index_lock_retry: LockRetryConfig = Field(default_factory=LockRetryConfig)

    # Processes
    output_poll_interval_seconds: float = Field(
        default=0.1,
        description="How often running process output is checked for growth"
    )
    output_retention_seconds: float = Field(
        default=3600.0,
        description="How long a finished execution stays queryable (1 hour)"
    )
    restart_settle_seconds: float = Field(
        default=1.0,
        description="Pause between stopping and restarting environment tasks"
    )

    log_level: str = Field(default="INFO")


# =============================================================================
# Transient values
# =============================================================================

@dataclass
class GitResult:
    """Outcome of a git operation.

    Truthy iff the operation succeeded, so callers can write ``if await git.pull(p):``.
    """
    ok: bool
    error: Optional[GitErrorKind] = None
    detail: Optional[str] = None
    output: str = ""

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, output: str = "") -> "GitResult":
        return cls(ok=True, output=output)

    @classmethod
    def failure(cls, error: GitErrorKind, detail: Optional[str] = None) -> "GitResult":
        return cls(ok=False, error=error, detail=detail)


@dataclass(frozen=True)
class GitFileChange:
    path: str
    change_type: GitChangeType


@dataclass
class GitStatus:
    """Working tree changes split into staged, unstaged and untracked sets."""
    staged: list[GitFileChange] = field(default_factory=list)
    unstaged: list[GitFileChange] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.staged or self.unstaged or self.untracked)


@dataclass
class BulkGitResult:
    """Per-path outcome of a folder-level stage/unstage/discard."""
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)


@dataclass
class ExecutionSnapshot:
    """Point-in-time view of a task execution."""
    task_id: int
    execution_id: str
    status: TaskStatus
    output: Optional[str] = None


@dataclass
class TaskStatusInfo:
    """A task definition joined with its latest execution in a context."""
    task_id: int
    name: str
    type: Optional[TaskType]
    status: TaskStatus
    execution_id: Optional[str] = None
