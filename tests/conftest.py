"""Shared fixtures: throwaway git repositories and a recording notifier."""

import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest

from parallel_dev_agent.protocols import NotificationEvent
from parallel_dev_agent.store import JsonStore

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def git(cwd: Path, *args: str) -> str:
    """Run git synchronously for test setup and assertions."""
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout


class RecordingNotifier:
    """Notifier that keeps every event in order."""

    def __init__(self):
        self.events: list[tuple[NotificationEvent, dict[str, Any]]] = []

    async def notify(self, event: NotificationEvent, payload: dict[str, Any]) -> None:
        self.events.append((event, dict(payload)))

    def of(self, event: NotificationEvent) -> list[dict[str, Any]]:
        return [payload for e, payload in self.events if e == event]


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store(tmp_path: Path) -> JsonStore:
    return JsonStore(tmp_path / "store.json")


@pytest.fixture
def origin_repo(tmp_path: Path) -> Path:
    """Bare repository acting as origin."""
    origin = tmp_path / "origin.git"
    subprocess.run(["git", "init", "--bare", "-q", str(origin)], check=True)
    git(origin, "symbolic-ref", "HEAD", "refs/heads/main")
    return origin


@pytest.fixture
def git_repo(tmp_path: Path, origin_repo: Path) -> Path:
    """Clone of origin on main with one commit and a pushed ``feature`` branch."""
    repo = tmp_path / "repo"
    subprocess.run(
        ["git", "clone", "-q", str(origin_repo), str(repo)],
        check=True, capture_output=True,
    )
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "commit.gpgsign", "false")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")

    (repo / "README.md").write_text("# Test\n")
    git(repo, "add", "README.md")
    git(repo, "commit", "-q", "-m", "Initial commit")
    git(repo, "push", "-q", "-u", "origin", "main")

    git(repo, "branch", "feature")
    git(repo, "push", "-q", "origin", "feature")
    return repo
