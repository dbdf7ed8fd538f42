"""Parallel Dev Agent - run many agent sessions side by side.

Each session gets its own git worktree of a shared repository, can run
build/test/start tasks as monitored background processes, and can be
merged, pushed, reset or deployed into a long-lived environment directory.
"""

__version__ = "0.1.0"

from .errors import AgentError, NotFoundError, ProvisioningError, WorktreeProvisioningError
from .file_sync import DirectorySynchronizer, IgnoreRules, SyncReport
from .git_manager import GitWorktreeManager, parse_porcelain_status
from .models import GitResult, GitStatus, OrchestratorConfig, TaskStatus
from .process_manager import ProcessOrchestrator

__all__ = [
    "AgentError",
    "DirectorySynchronizer",
    "GitResult",
    "GitStatus",
    "GitWorktreeManager",
    "IgnoreRules",
    "NotFoundError",
    "OrchestratorConfig",
    "ProvisioningError",
    "ProcessOrchestrator",
    "SyncReport",
    "TaskStatus",
    "WorktreeProvisioningError",
    "parse_porcelain_status",
]
