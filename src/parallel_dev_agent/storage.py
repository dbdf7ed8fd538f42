"""On-disk layout of workspaces, sessions and environments.

    <root>/workspaces/<workspace-id>/git                  canonical clone
    <root>/workspaces/<workspace-id>/sessions/<id>        session worktree
    <root>/workspaces/<workspace-id>/environments/<name>  deploy target
    <root>/workspaces/<workspace-id>/files                uploaded files
"""

from pathlib import Path
from typing import Union


class StoragePaths:
    """Deterministic paths under a storage root."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    def ensure(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def workspace_path(self, workspace_id: int) -> Path:
        return self.root / "workspaces" / str(workspace_id)

    def git_path(self, workspace_id: int) -> Path:
        return self.workspace_path(workspace_id) / "git"

    def sessions_path(self, workspace_id: int) -> Path:
        return self.workspace_path(workspace_id) / "sessions"

    def session_path(self, workspace_id: int, session_id: int) -> Path:
        return self.sessions_path(workspace_id) / str(session_id)

    def environment_path(self, workspace_id: int, environment_name: str) -> Path:
        return self.workspace_path(workspace_id) / "environments" / environment_name

    def files_path(self, workspace_id: int) -> Path:
        return self.workspace_path(workspace_id) / "files"
