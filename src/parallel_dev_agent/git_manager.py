"""Git operations for session worktrees.

Handles worktree provisioning and removal, staging, commits, pushes and
status for the per-session working copies. Expected failures (merge
conflicts, nothing to commit, missing upstream) come back as GitResult
values. Only a git executable that cannot be started, or a cancelled
caller, raises.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence, Union

from .command_runner import CommandRunner, DEFAULT_TIMEOUT_SECONDS
from .errors import CommandTimeoutError
from .models import (
    BulkGitResult, GitChangeType, GitErrorKind, GitFileChange, GitFileMode,
    GitResult, GitStatus, LockRetryConfig
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_CHANGE_TYPES = {
    "A": GitChangeType.ADDED,
    "M": GitChangeType.MODIFIED,
    "D": GitChangeType.DELETED,
    "R": GitChangeType.RENAMED,
    "C": GitChangeType.COPIED,
}

_BRANCH_IN_USE_MARKERS = ("already used by worktree", "already checked out")
_NOT_A_WORKTREE_MARKERS = ("is not a working tree", "not a git repository")
_NO_UPSTREAM_MARKER = "has no upstream branch"
_INDEX_LOCK_MARKER = "index.lock"


def _unquote(path: str) -> str:
    if len(path) >= 2 and path[0] == '"' and path[-1] == '"':
        # Octal escapes encode UTF-8 bytes
        raw = path[1:-1].encode("ascii", "backslashreplace").decode("unicode_escape")
        return raw.encode("latin-1").decode("utf-8", errors="replace")
    return path


def parse_porcelain_status(output: str) -> GitStatus:
    """Parse ``git status --porcelain=v1`` output.

    The two status columns are independent: ``MM`` is both a staged and an
    unstaged modification. ``??`` marks an untracked file. Unknown status
    letters are ignored and lines shorter than three characters skipped.
    """
    status = GitStatus()

    for line in output.splitlines():
        if len(line) < 3:
            continue

        index_code, tree_code = line[0], line[1]
        path = line[3:]
        if " -> " in path:
            # Renames and copies report "old -> new"
            path = path.split(" -> ", 1)[1]
        path = _unquote(path)

        if index_code == "?" and tree_code == "?":
            status.untracked.append(path)
            continue

        if index_code in _CHANGE_TYPES:
            status.staged.append(GitFileChange(path, _CHANGE_TYPES[index_code]))
        if tree_code in _CHANGE_TYPES:
            status.unstaged.append(GitFileChange(path, _CHANGE_TYPES[tree_code]))

    return status


class GitWorktreeManager:
    """Git primitives for the canonical clone and its session worktrees."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        branch_prefix: str = "sessions/s-",
        lock_retry: Optional[LockRetryConfig] = None,
    ):
        """Initialize the manager.

        Args:
            runner: Command runner used for every git invocation
            timeout: Deadline for each git command in seconds
            branch_prefix: Prefix for branches created from a detached HEAD
            lock_retry: Backoff used by bulk operations on index.lock collisions
        """
        self.runner = runner or CommandRunner()
        self.timeout = timeout
        self.branch_prefix = branch_prefix
        self.lock_retry = lock_retry or LockRetryConfig()
        self._bulk_locks: dict[Path, asyncio.Lock] = {}

    async def _git(self, cwd: PathLike, *args: str) -> GitResult:
        """Run a git command and fold its outcome into a GitResult."""
        try:
            result = await self.runner.run("git", args, cwd=cwd, timeout=self.timeout)
        except CommandTimeoutError as e:
            logger.error(str(e))
            return GitResult.failure(GitErrorKind.TIMEOUT, str(e))

        if result.ok:
            return GitResult.success(result.stdout)

        detail = result.stderr.strip() or result.stdout.strip()
        logger.debug(f"git {' '.join(args)} failed in {cwd}: {detail}")
        return GitResult(
            ok=False,
            error=GitErrorKind.COMMAND_FAILED,
            detail=detail,
            output=result.stdout,
        )

    # ------------------------------------------------------------------
    # Repositories and worktrees
    # ------------------------------------------------------------------

    async def is_git_repo(self, path: PathLike) -> bool:
        if not Path(path).is_dir():
            return False
        result = await self._git(path, "rev-parse", "--git-dir")
        return result.ok

    async def clone(self, url: str, dest: PathLike) -> GitResult:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Cloning {url} into {dest}")
        result = await self._git(dest.parent, "clone", url, str(dest))
        if not result:
            logger.error(f"Failed to clone {url}: {result.detail}")
        return result

    async def create_worktree(
        self, repo_path: PathLike, branch: str, worktree_path: PathLike
    ) -> GitResult:
        """Add a worktree for ``branch`` at ``worktree_path``.

        When the branch is already checked out by another worktree (many
        sessions start from the same starter branch) the worktree is added
        with a detached HEAD at the same commit instead.
        """
        worktree_path = Path(worktree_path)
        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Creating worktree for {branch} at {worktree_path}")

        result = await self._git(repo_path, "worktree", "add", str(worktree_path), branch)
        if result:
            return result

        if result.error == GitErrorKind.COMMAND_FAILED and any(
            marker in (result.detail or "") for marker in _BRANCH_IN_USE_MARKERS
        ):
            logger.info(f"Branch {branch} already in use, creating detached worktree")
            detached = await self._git(
                repo_path, "worktree", "add", "--detach", str(worktree_path), branch
            )
            if not detached:
                logger.error(f"Failed to create detached worktree from {branch}: {detached.detail}")
                return GitResult(
                    ok=False,
                    error=GitErrorKind.BRANCH_IN_USE,
                    detail=f"{result.detail}; detached fallback failed: {detached.detail}",
                    output=detached.output,
                )
            return detached

        logger.error(f"Failed to create worktree for {branch}: {result.detail}")
        return result

    async def _owning_repo(self, path: Path) -> Optional[Path]:
        """Main working directory of the repository that ``path`` belongs to."""
        result = await self._git(path, "rev-parse", "--path-format=absolute", "--git-common-dir")
        if not result:
            return None
        common_dir = Path(result.output.strip())
        return common_dir.parent if common_dir.name == ".git" else common_dir

    async def delete_worktree(
        self, worktree_path: PathLike, repo_path: Optional[PathLike] = None
    ) -> GitResult:
        """Remove a worktree. Idempotent.

        An absent path is success. A directory that is not a registered
        worktree is deleted outright so no stale directory is left behind.
        Stale registrations are pruned from the owning repository.
        """
        worktree_path = Path(worktree_path)
        repo = Path(repo_path) if repo_path else None
        self._bulk_locks.pop(worktree_path.resolve(), None)

        if not worktree_path.exists():
            logger.info(f"Worktree {worktree_path} does not exist, nothing to delete")
            if repo is not None and repo.is_dir():
                await self._git(repo, "worktree", "prune")
            return GitResult.success()

        if repo is None:
            repo = await self._owning_repo(worktree_path)

        if repo is not None and repo.resolve() == worktree_path.resolve():
            return GitResult.failure(
                GitErrorKind.INVALID_PATH, f"{worktree_path} is a main working tree"
            )

        if repo is not None:
            logger.info(f"Deleting worktree at {worktree_path}")
            result = await self._git(repo, "worktree", "remove", "--force", str(worktree_path))
            if result:
                await self._git(repo, "worktree", "prune")
                return result
            if result.error != GitErrorKind.COMMAND_FAILED or not any(
                marker in (result.detail or "") for marker in _NOT_A_WORKTREE_MARKERS
            ):
                logger.error(f"Failed to delete worktree at {worktree_path}: {result.detail}")
                return result

        logger.warning(f"{worktree_path} is not a registered worktree, removing directory")
        try:
            await asyncio.to_thread(shutil.rmtree, worktree_path)
        except OSError as e:
            logger.error(f"Failed to remove {worktree_path}: {e}")
            return GitResult.failure(GitErrorKind.NOT_A_WORKTREE, str(e))

        if repo is not None and repo.is_dir():
            await self._git(repo, "worktree", "prune")
        return GitResult.success()

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def get_current_branch(self, path: PathLike) -> Optional[str]:
        """Current branch name, ``""`` when HEAD is detached, None on error."""
        result = await self._git(path, "branch", "--show-current")
        if not result:
            return None
        return result.output.strip()

    async def list_branches(self, repo_path: PathLike, include_remote: bool = True) -> list[str]:
        args = ["branch", "--format=%(refname:short)"]
        if include_remote:
            args.append("--all")
        result = await self._git(repo_path, *args)
        if not result:
            return []

        branches = []
        for line in result.output.splitlines():
            name = line.strip()
            if not name or name.endswith("/HEAD") or name.startswith("("):
                continue
            branches.append(name)
        return branches

    async def branch_exists(self, repo_path: PathLike, branch: str) -> bool:
        """Check for the branch locally or on origin."""
        for ref in (f"refs/heads/{branch}", f"refs/remotes/origin/{branch}"):
            result = await self._git(repo_path, "rev-parse", "--verify", "--quiet", ref)
            if result:
                return True
        return False

    async def create_branch(
        self, repo_path: PathLike, branch: str, start_point: Optional[str] = None
    ) -> GitResult:
        args = ["branch", branch]
        if start_point:
            args.append(start_point)
        result = await self._git(repo_path, *args)
        if result:
            logger.info(f"Created branch {branch}")
        return result

    async def checkout(self, path: PathLike, ref: str) -> GitResult:
        return await self._git(path, "checkout", ref)

    async def checkout_new_branch(self, path: PathLike, branch: str) -> GitResult:
        return await self._git(path, "checkout", "-b", branch)

    async def ensure_branch(
        self, path: PathLike, session_id: Optional[str] = None
    ) -> GitResult:
        """Make sure the worktree is on a branch.

        A detached HEAD gets a deterministic branch named after the session,
        which defaults to the worktree directory name. The branch name is
        returned as the result's output.
        """
        path = Path(path)
        current = await self.get_current_branch(path)
        if current is None:
            return GitResult.failure(GitErrorKind.COMMAND_FAILED, f"Cannot read HEAD of {path}")
        if current:
            return GitResult.success(current)

        branch = f"{self.branch_prefix}{session_id or path.name}"
        logger.info(f"Detached HEAD in {path}, creating branch {branch}")
        result = await self.checkout_new_branch(path, branch)
        if not result:
            logger.error(f"Failed to create branch {branch}: {result.detail}")
            return GitResult.failure(GitErrorKind.DETACHED_HEAD, result.detail)
        return GitResult.success(branch)

    # ------------------------------------------------------------------
    # Index and working tree
    # ------------------------------------------------------------------

    async def stage_all(self, path: PathLike) -> GitResult:
        return await self._git(path, "add", "-A")

    async def stage_file(self, path: PathLike, file_path: str) -> GitResult:
        return await self._git(path, "add", "--", file_path)

    async def unstage_all(self, path: PathLike) -> GitResult:
        return await self._git(path, "reset", "-q", "HEAD")

    async def unstage_file(self, path: PathLike, file_path: str) -> GitResult:
        return await self._git(path, "reset", "-q", "HEAD", "--", file_path)

    async def discard_all(self, path: PathLike) -> GitResult:
        """Drop staged and unstaged changes to tracked files."""
        result = await self._git(path, "reset", "-q", "HEAD")
        if not result:
            return result
        return await self._git(path, "checkout", "--", ".")

    async def discard_file(self, path: PathLike, file_path: str) -> GitResult:
        """Restore a file from HEAD, or delete it if HEAD never had it."""
        target = self._resolve_inside(path, file_path)
        if target is None:
            return GitResult.failure(GitErrorKind.INVALID_PATH, f"{file_path} is outside {path}")

        in_head = await self._git(path, "cat-file", "-e", f"HEAD:{file_path}")
        if in_head:
            return await self._git(path, "checkout", "HEAD", "--", file_path)

        # Untracked or newly added
        result = await self._git(path, "rm", "--cached", "-r", "-q", "--ignore-unmatch", "--", file_path)
        if not result:
            return result
        try:
            if target.is_dir():
                await asyncio.to_thread(shutil.rmtree, target)
            elif target.exists():
                target.unlink()
        except OSError as e:
            return GitResult.failure(GitErrorKind.COMMAND_FAILED, str(e))
        return GitResult.success()

    async def commit(self, path: PathLike, message: str) -> GitResult:
        result = await self._git(path, "commit", "-m", message)
        if result:
            logger.info(f"Committed in {path}: {message}")
        return result

    async def clean(self, path: PathLike) -> GitResult:
        """Remove untracked files and directories."""
        return await self._git(path, "clean", "-fd")

    # ------------------------------------------------------------------
    # Remotes
    # ------------------------------------------------------------------

    async def push(self, path: PathLike, upstream_branch: Optional[str] = None) -> GitResult:
        if upstream_branch:
            return await self._git(path, "push", "-u", "origin", upstream_branch)
        return await self._git(path, "push")

    async def push_changes(self, path: PathLike) -> GitResult:
        """Push the worktree's branch, creating it and its upstream as needed."""
        current = await self.get_current_branch(path)
        if current is None:
            return GitResult.failure(GitErrorKind.COMMAND_FAILED, f"Cannot read HEAD of {path}")

        if current == "":
            ensured = await self.ensure_branch(path)
            if not ensured:
                return ensured
            branch = ensured.output
            result = await self.push(path, upstream_branch=branch)
            if result:
                logger.info(f"Pushed new branch {branch}")
            else:
                logger.error(f"Failed to push new branch {branch}: {result.detail}")
            return result

        result = await self.push(path)
        if result:
            logger.info(f"Pushed {current}")
            return result

        if _NO_UPSTREAM_MARKER in (result.detail or ""):
            logger.info(f"No upstream for {current}, pushing with upstream tracking")
            retry = await self.push(path, upstream_branch=current)
            if not retry:
                logger.error(f"Failed to push {current} with upstream: {retry.detail}")
                return GitResult.failure(GitErrorKind.NO_UPSTREAM, retry.detail)
            return retry

        logger.error(f"Failed to push {current}: {result.detail}")
        return result

    async def pull(self, path: PathLike) -> GitResult:
        result = await self._git(path, "pull")
        if not result:
            logger.error(f"Failed to pull in {path}: {result.detail}")
        return result

    async def fetch(
        self, path: PathLike, remote: str = "origin", branch: Optional[str] = None
    ) -> GitResult:
        args = ["fetch", remote]
        if branch:
            args.append(branch)
        return await self._git(path, *args)

    # ------------------------------------------------------------------
    # Merge and reset
    # ------------------------------------------------------------------

    async def merge(self, path: PathLike, ref: str) -> GitResult:
        """Merge ``ref`` into the current branch, aborting on conflict."""
        result = await self._git(path, "merge", "--no-edit", ref)
        if not result:
            logger.warning(f"Merge of {ref} failed in {path}: {result.detail}")
            await self._git(path, "merge", "--abort")
        return result

    async def merge_branch(self, repo_path: PathLike, source: str, target: str) -> GitResult:
        """Check out ``target`` and merge ``source`` into it."""
        logger.info(f"Merging {source} into {target}")
        result = await self.checkout(repo_path, target)
        if not result:
            logger.error(f"Failed to check out {target}: {result.detail}")
            return result
        return await self.merge(repo_path, source)

    async def reset_to(self, path: PathLike, ref: str = "HEAD", hard: bool = False) -> GitResult:
        args = ["reset"]
        if hard:
            args.append("--hard")
        args.append(ref)
        return await self._git(path, *args)

    async def reset_branch(self, repo_path: PathLike, branch: str, hard: bool = False) -> GitResult:
        """Check out ``branch`` and reset it to its HEAD."""
        result = await self.checkout(repo_path, branch)
        if not result:
            return result
        return await self.reset_to(repo_path, "HEAD", hard=hard)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def get_status(self, path: PathLike) -> Optional[GitStatus]:
        result = await self._git(path, "status", "--porcelain=v1")
        if not result:
            logger.error(f"Failed to read status of {path}: {result.detail}")
            return None
        return parse_porcelain_status(result.output)

    @staticmethod
    def _resolve_inside(root: PathLike, relative: str) -> Optional[Path]:
        root = Path(root).resolve()
        target = (root / relative).resolve()
        try:
            target.relative_to(root)
        except ValueError:
            return None
        return target

    async def get_file_content(
        self, path: PathLike, file_path: str, mode: GitFileMode = GitFileMode.WORKING
    ) -> Optional[str]:
        """Read a file from the working tree, HEAD or the index.

        Returns None when the file does not exist in that version or the
        path escapes the worktree.
        """
        target = self._resolve_inside(path, file_path)
        if target is None:
            logger.warning(f"Rejected path outside worktree: {file_path}")
            return None

        if mode == GitFileMode.WORKING:
            if not target.is_file():
                return None
            return target.read_text(encoding="utf-8", errors="replace")

        relative = target.relative_to(Path(path).resolve()).as_posix()
        revision = f"HEAD:{relative}" if mode == GitFileMode.HEAD else f":{relative}"
        result = await self._git(path, "show", revision)
        return result.output if result else None

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def _with_lock_retry(self, operation: Callable[[], Awaitable[GitResult]]) -> GitResult:
        result = await operation()
        attempt = 1
        while (
            not result
            and _INDEX_LOCK_MARKER in (result.detail or "")
            and attempt < self.lock_retry.max_attempts
        ):
            delay = self.lock_retry.delay_for(attempt)
            logger.info(f"index.lock busy, retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            attempt += 1
            result = await operation()
        return result

    async def _bulk(
        self,
        path: PathLike,
        files: Sequence[str],
        operation: Callable[[PathLike, str], Awaitable[GitResult]],
    ) -> BulkGitResult:
        summary = BulkGitResult()
        # Paths run one at a time and bulk operations on a worktree never overlap
        lock = self._bulk_locks.setdefault(Path(path).resolve(), asyncio.Lock())
        async with lock:
            for file_path in files:
                result = await self._with_lock_retry(lambda: operation(path, file_path))
                if result:
                    summary.succeeded.append(file_path)
                else:
                    summary.failed[file_path] = result.detail or "unknown error"
        if summary.failed:
            logger.warning(
                f"{len(summary.failed)} of {len(files)} paths failed in {path}"
            )
        return summary

    async def stage_paths(self, path: PathLike, files: Sequence[str]) -> BulkGitResult:
        return await self._bulk(path, files, self.stage_file)

    async def unstage_paths(self, path: PathLike, files: Sequence[str]) -> BulkGitResult:
        return await self._bulk(path, files, self.unstage_file)

    async def discard_paths(self, path: PathLike, files: Sequence[str]) -> BulkGitResult:
        return await self._bulk(path, files, self.discard_file)
