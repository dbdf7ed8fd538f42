"""CLI interface for the Parallel Dev Agent."""

import asyncio
import sys
from typing import Any, Optional

import click
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .config import get_settings
from .errors import CommandStartError, ConflictError, WorkspaceInitializationError
from .file_sync import DirectorySynchronizer
from .git_manager import GitWorktreeManager
from .logging_setup import configure_logging
from .models import ContextKind, GitStatus, TaskStatus
from .orchestration.services import build_services
from .process_manager import ProcessOrchestrator
from .protocols import NotificationEvent

console = Console()

# Windows-compatible symbols (cp1252 doesn't support Unicode checkmarks)
if sys.platform == "win32":
    SYM_OK = "[OK]"
    SYM_FAIL = "[X]"
else:
    SYM_OK = "✓"
    SYM_FAIL = "✗"

_OUTPUT_TAIL_LINES = 30


def _git_manager() -> GitWorktreeManager:
    config = get_settings().to_config()
    return GitWorktreeManager(
        timeout=config.git_timeout_seconds,
        branch_prefix=config.session_branch_prefix,
        lock_retry=config.index_lock_retry,
    )


@click.group()
@click.version_option(package_name="parallel-dev-agent")
@click.option('--log-level', default=None, help='Log level (defaults to PDA_LOG_LEVEL)')
def main(log_level: Optional[str]):
    """Parallel Dev Agent - isolated agent sessions over git worktrees."""
    configure_logging(log_level or get_settings().log_level)


@main.command()
@click.argument('source', type=click.Path(exists=True, file_okay=False))
@click.argument('destination', type=click.Path(file_okay=False))
@click.option('--keep-extra', is_flag=True, help='Keep destination files missing from the source')
def sync(source: str, destination: str, keep_extra: bool):
    """Mirror SOURCE onto DESTINATION, honoring SOURCE/.gitignore."""
    report = DirectorySynchronizer().sync(destination, source, delete_extra=not keep_extra)

    console.print(
        f"[green]{SYM_OK}[/green] {report.copied} copied, {report.skipped} unchanged, "
        f"{report.deleted} deleted"
    )
    for error in report.errors:
        console.print(f"[red]{SYM_FAIL} {error}[/red]")
    if report.errors:
        sys.exit(1)


def _status_table(status: GitStatus) -> Table:
    table = Table(title="Git status")
    table.add_column("Area", style="cyan")
    table.add_column("Change")
    table.add_column("Path")

    for change in status.staged:
        table.add_row("staged", f"[green]{change.change_type.value}[/green]", change.path)
    for change in status.unstaged:
        table.add_row("unstaged", f"[yellow]{change.change_type.value}[/yellow]", change.path)
    for path in status.untracked:
        table.add_row("untracked", "[red]untracked[/red]", path)
    return table


@main.command()
@click.argument('path', type=click.Path(exists=True, file_okay=False), default='.')
def status(path: str):
    """Show staged, unstaged and untracked changes of a worktree."""
    git = _git_manager()

    async def _collect():
        return await git.get_current_branch(path), await git.get_status(path)

    branch, git_status = asyncio.run(_collect())
    if git_status is None:
        console.print(f"[red]{SYM_FAIL} {path} is not a git worktree[/red]")
        sys.exit(1)

    console.print(f"[bold]Branch:[/bold] {branch or '(detached HEAD)'}")
    if not git_status.has_changes:
        console.print("[dim]No changes[/dim]")
        return
    console.print(_status_table(git_status))


@main.group()
def worktree():
    """Create and remove session worktrees."""


@worktree.command('add')
@click.argument('repo', type=click.Path(exists=True, file_okay=False))
@click.argument('branch')
@click.argument('path', type=click.Path())
def worktree_add(repo: str, branch: str, path: str):
    """Add a worktree for BRANCH of REPO at PATH.

    Falls back to a detached HEAD when BRANCH is checked out elsewhere.
    """
    git = _git_manager()

    async def _add():
        result = await git.create_worktree(repo, branch, path)
        current = await git.get_current_branch(path) if result else None
        return result, current

    result, current = asyncio.run(_add())
    if not result:
        console.print(f"[red]{SYM_FAIL} {result.detail}[/red]")
        sys.exit(1)
    head = current or f"detached at {branch}"
    console.print(f"[green]{SYM_OK}[/green] Worktree at {path} ({head})")


@worktree.command('remove')
@click.argument('path', type=click.Path())
@click.option('--repo', type=click.Path(exists=True, file_okay=False),
              help='Repository that owns the worktree (pruned afterwards)')
def worktree_remove(path: str, repo: Optional[str]):
    """Remove the worktree at PATH. Succeeds if PATH does not exist."""
    result = asyncio.run(_git_manager().delete_worktree(path, repo))
    if not result:
        console.print(f"[red]{SYM_FAIL} {result.detail}[/red]")
        sys.exit(1)
    console.print(f"[green]{SYM_OK}[/green] Removed {path}")


@main.group()
def workspace():
    """Create workspaces and their environments."""


@workspace.command('create')
@click.argument('name')
@click.argument('git_url')
@click.option('--env', 'env_vars', multiple=True, metavar='KEY=VALUE',
              help='Environment variable for every task of the workspace')
def workspace_create(name: str, git_url: str, env_vars: tuple[str, ...]):
    """Create workspace NAME and clone GIT_URL as its canonical repository."""
    variables = {}
    for item in env_vars:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"'{item}' is not KEY=VALUE", param_hint="--env")
        variables[key] = value

    services = build_services(get_settings().to_config())
    try:
        created = asyncio.run(services.workspaces.create_workspace(name, git_url, variables))
    except WorkspaceInitializationError as e:
        console.print(f"[red]{SYM_FAIL} {e}[/red]")
        sys.exit(1)

    console.print(f"[green]{SYM_OK}[/green] Workspace {created.id} ({created.name})")
    console.print(f"Clone: {services.storage.git_path(created.id)}")


@workspace.command('add-environment')
@click.argument('workspace_id', type=int)
@click.argument('name')
@click.option('--branch', default='main', help='Branch checked out in the environment')
def workspace_add_environment(workspace_id: int, name: str, branch: str):
    """Create environment NAME of WORKSPACE_ID from the workspace clone."""
    services = build_services(get_settings().to_config())
    if services.store.get_workspace(workspace_id) is None:
        console.print(f"[red]{SYM_FAIL} Workspace {workspace_id} not found[/red]")
        sys.exit(1)
    try:
        environment = asyncio.run(
            services.environments.create_environment(workspace_id, name, branch)
        )
    except ConflictError as e:
        console.print(f"[red]{SYM_FAIL} {e}[/red]")
        sys.exit(1)

    path = services.storage.environment_path(workspace_id, environment.name)
    console.print(f"[green]{SYM_OK}[/green] Environment {environment.id} at {path} ({branch})")


def _output_panel(output: str, state: TaskStatus) -> Panel:
    lines = output.splitlines()[-_OUTPUT_TAIL_LINES:]
    colors = {
        TaskStatus.RUNNING: "yellow",
        TaskStatus.COMPLETED: "green",
        TaskStatus.FAILED: "red",
        TaskStatus.CANCELED: "magenta",
    }
    color = colors.get(state, "white")
    return Panel(Text("\n".join(lines)), title=f"[{color}]{state.value}[/{color}]")


class _LiveNotifier:
    """Redraws the live panel whenever the execution's output grows."""

    def __init__(self, live: Live):
        self.live = live

    async def notify(self, event: NotificationEvent, payload: dict[str, Any]) -> None:
        if event == NotificationEvent.TASK_OUTPUT_CHANGED:
            self.live.update(_output_panel(payload["output"], TaskStatus.RUNNING))


@main.command(context_settings={"ignore_unknown_options": True})
@click.option('--cwd', type=click.Path(exists=True, file_okay=False), default='.',
              help='Working directory')
@click.argument('command', nargs=-1, required=True, type=click.UNPROCESSED)
def run(cwd: str, command: tuple[str, ...]):
    """Run COMMAND as a monitored background process and stream its output.

    Example:
        pda run --cwd ./repo -- npm test
    """
    config = get_settings().to_config()

    async def _run() -> TaskStatus:
        with Live(_output_panel("", TaskStatus.RUNNING), console=console, refresh_per_second=10) as live:
            orchestrator = ProcessOrchestrator(
                _LiveNotifier(live),
                poll_interval=config.output_poll_interval_seconds,
                retention_seconds=config.output_retention_seconds,
            )
            execution_id = await orchestrator.start(
                ContextKind.SESSION, 0, 0, command[0], command[1:], cwd=cwd
            )
            try:
                snapshot = await orchestrator.wait(execution_id)
            except asyncio.CancelledError:
                await orchestrator.stop(execution_id)
                raise
            finally:
                await orchestrator.shutdown()
            live.update(_output_panel(snapshot.output or "", snapshot.status))
            return snapshot.status

    try:
        final = asyncio.run(_run())
    except CommandStartError as e:
        console.print(f"[red]{SYM_FAIL} {e}[/red]")
        sys.exit(127)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)

    sys.exit(0 if final == TaskStatus.COMPLETED else 1)


@main.command()
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=8000, help='Port to listen on')
def serve(host: str, port: int):
    """Start the API server.

    Starts a FastAPI server that provides:
    - REST API at http://host:port/api/
    - WebSocket at ws://host:port/ws/events
    - API docs at http://host:port/docs

    Example:
        pda serve --port 8000
    """
    from .api import run_server

    config = get_settings().to_config()
    console.print("[bold]Starting Parallel Dev Agent API[/bold]")
    console.print(f"Storage: {config.storage_root}")
    console.print(f"API: http://{host}:{port}/api/")
    console.print(f"WebSocket: ws://{host}:{port}/ws/events")
    console.print("\nPress Ctrl+C to stop\n")

    try:
        run_server(config, host=host, port=port)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")


if __name__ == "__main__":
    main()
