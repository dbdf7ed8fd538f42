"""Background process orchestration.

Starts task processes for sessions and environments, streams their output
to the notifier while they run, and keeps each execution queryable for a
retention window after it exits.

Each execution moves through:
    pending -> running -> completed | failed | canceled

Per execution, events are emitted in the order running, zero or more
output updates, terminal status. Output events always carry the full
output so far so a client that attaches mid-stream can catch up.
"""

import asyncio
import codecs
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from .command_runner import CommandRunner, kill_process_tree
from .models import ContextKind, ExecutionSnapshot, TaskStatus
from .protocols import NotificationEvent, Notifier

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096
# Grandchildren can keep pipes open after the main process exits
_DRAIN_GRACE_SECONDS = 2.0


@dataclass
class ProcessExecution:
    """One spawned background process and its accumulated output."""
    execution_id: str
    context_kind: ContextKind
    context_id: int
    task_id: int
    process: Optional[asyncio.subprocess.Process]
    status: TaskStatus = TaskStatus.PENDING
    output: str = ""
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    monitor: Optional[asyncio.Task] = None
    purge_timer: Optional[asyncio.TimerHandle] = None
    # Set once the running status has been emitted
    announced: asyncio.Event = field(default_factory=asyncio.Event)

    def snapshot(self) -> ExecutionSnapshot:
        return ExecutionSnapshot(
            task_id=self.task_id,
            execution_id=self.execution_id,
            status=self.status,
            output=self.output,
        )


class ProcessOrchestrator:
    """Runs any number of background processes concurrently.

    Each execution is keyed by a unique handle and only mutated by its own
    monitor task and by explicit start/stop calls, so no lock is needed.
    """

    def __init__(
        self,
        notifier: Optional[Notifier] = None,
        runner: Optional[CommandRunner] = None,
        poll_interval: float = 0.1,
        retention_seconds: float = 3600.0,
    ):
        """Initialize the orchestrator.

        Args:
            notifier: Receives task status and output events
            runner: Spawns the processes
            poll_interval: Seconds between output growth checks
            retention_seconds: How long finished executions stay queryable
        """
        self.notifier = notifier
        self.runner = runner or CommandRunner()
        self.poll_interval = poll_interval
        self.retention_seconds = retention_seconds
        self._executions: dict[str, ProcessExecution] = {}

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start(
        self,
        context_kind: ContextKind,
        context_id: int,
        task_id: int,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[dict[str, str]] = None,
    ) -> str:
        """Spawn a process and return its execution handle.

        Returns as soon as the process is launched; a monitor task follows
        it from then on.

        Raises:
            CommandStartError: The process could not be spawned
        """
        process = await self.runner.spawn(command, args, cwd=cwd, env=env)

        execution = ProcessExecution(
            execution_id=uuid.uuid4().hex,
            context_kind=context_kind,
            context_id=context_id,
            task_id=task_id,
            process=process,
        )
        self._executions[execution.execution_id] = execution
        logger.info(
            f"Started task {task_id} for {context_kind.value} {context_id} "
            f"as {execution.execution_id} (pid {process.pid})"
        )

        execution.status = TaskStatus.RUNNING
        # Monitored before the first await so a cancelled caller cannot orphan it
        execution.monitor = asyncio.create_task(
            self._monitor(execution), name=f"process-monitor-{execution.execution_id}"
        )
        try:
            await self._emit_status(execution)
        finally:
            execution.announced.set()
        return execution.execution_id

    async def stop(self, execution_id: str) -> bool:
        """Kill an execution's process tree and mark it canceled.

        Returns False for an unknown handle. Stopping an execution whose
        process already exited succeeds without side effects.
        """
        execution = self._executions.get(execution_id)
        if execution is None:
            return False

        process = execution.process
        if execution.status.is_terminal or process is None or process.returncode is not None:
            return True

        # Mark first so the monitor does not classify the exit as a failure
        execution.status = TaskStatus.CANCELED
        logger.info(f"Stopping execution {execution_id} (pid {process.pid})")
        await asyncio.to_thread(kill_process_tree, process.pid)
        await self._emit_status(execution)
        return True

    async def wait(self, execution_id: str) -> ExecutionSnapshot:
        """Wait until an execution reaches a terminal status."""
        execution = self._executions.get(execution_id)
        if execution is None:
            return self.get_status(execution_id)
        if execution.monitor is not None:
            await asyncio.shield(execution.monitor)
        return execution.snapshot()

    async def shutdown(self) -> None:
        """Kill every live process and cancel all monitors and purge timers."""
        executions = list(self._executions.values())
        for execution in executions:
            process = execution.process
            if process is not None and process.returncode is None:
                execution.status = TaskStatus.CANCELED
                await asyncio.to_thread(kill_process_tree, process.pid)

        monitors = [e.monitor for e in executions if e.monitor is not None and not e.monitor.done()]
        for monitor in monitors:
            monitor.cancel()
        if monitors:
            await asyncio.gather(*monitors, return_exceptions=True)

        for execution in executions:
            if execution.purge_timer is not None:
                execution.purge_timer.cancel()
        self._executions.clear()
        logger.info(f"Process orchestrator shut down ({len(executions)} executions)")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_status(self, execution_id: str) -> ExecutionSnapshot:
        """Snapshot of an execution; unknown handles report pending."""
        execution = self._executions.get(execution_id)
        if execution is None:
            return ExecutionSnapshot(
                task_id=0, execution_id=execution_id, status=TaskStatus.PENDING
            )
        return execution.snapshot()

    def get_statuses(self, context_kind: ContextKind, context_id: int) -> list[ExecutionSnapshot]:
        return [
            e.snapshot()
            for e in self._executions.values()
            if e.context_kind == context_kind and e.context_id == context_id
        ]

    def get_output(self, execution_id: str) -> Optional[str]:
        execution = self._executions.get(execution_id)
        return execution.output if execution is not None else None

    def latest_execution(
        self, context_kind: ContextKind, context_id: int, task_id: int
    ) -> Optional[ExecutionSnapshot]:
        """Most recently started execution of a task in a context."""
        matches = [
            e for e in self._executions.values()
            if e.context_kind == context_kind
            and e.context_id == context_id
            and e.task_id == task_id
        ]
        if not matches:
            return None
        return max(matches, key=lambda e: e.started_at).snapshot()

    def running_executions(
        self, context_kind: ContextKind, context_id: int
    ) -> list[ExecutionSnapshot]:
        return [
            s for s in self.get_statuses(context_kind, context_id)
            if s.status == TaskStatus.RUNNING
        ]

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def _read_stream(self, execution: ProcessExecution, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                execution.output += decoder.decode(b"", final=True)
                return
            execution.output += decoder.decode(chunk)

    async def _monitor(self, execution: ProcessExecution) -> None:
        process = execution.process
        readers = [
            asyncio.create_task(self._read_stream(execution, stream))
            for stream in (process.stdout, process.stderr)
            if stream is not None
        ]
        exit_wait = asyncio.create_task(process.wait())
        emitted_length = 0

        try:
            await execution.announced.wait()
            while not exit_wait.done():
                await asyncio.wait({exit_wait}, timeout=self.poll_interval)
                if execution.status == TaskStatus.RUNNING and len(execution.output) != emitted_length:
                    emitted_length = len(execution.output)
                    await self._emit_output(execution)

            done, pending = await asyncio.wait(readers, timeout=_DRAIN_GRACE_SECONDS)
            for reader in pending:
                reader.cancel()

            execution.exit_code = exit_wait.result()
            execution.finished_at = datetime.now()

            if execution.status == TaskStatus.RUNNING:
                execution.status = (
                    TaskStatus.COMPLETED if execution.exit_code == 0 else TaskStatus.FAILED
                )
                if len(execution.output) != emitted_length:
                    await self._emit_output(execution)
                await self._emit_status(execution)

            logger.info(
                f"Execution {execution.execution_id} finished with exit code "
                f"{execution.exit_code} ({execution.status.value})"
            )
        except asyncio.CancelledError:
            for task in (*readers, exit_wait):
                task.cancel()
            raise
        finally:
            execution.process = None
            self._schedule_purge(execution)

    def _schedule_purge(self, execution: ProcessExecution) -> None:
        loop = asyncio.get_running_loop()
        execution.purge_timer = loop.call_later(
            self.retention_seconds, self._purge, execution.execution_id
        )

    def _purge(self, execution_id: str) -> None:
        if self._executions.pop(execution_id, None) is not None:
            logger.debug(f"Purged execution {execution_id}")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _payload(self, execution: ProcessExecution) -> dict[str, Any]:
        return {
            "execution_id": execution.execution_id,
            "task_id": execution.task_id,
            "context_kind": execution.context_kind.value,
            "context_id": execution.context_id,
            "status": execution.status.value,
        }

    async def _emit(self, event: NotificationEvent, payload: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(event, payload)
        except Exception:
            logger.exception(f"Notifier failed for {event.value}")

    async def _emit_status(self, execution: ProcessExecution) -> None:
        await self._emit(NotificationEvent.TASK_STATUS_CHANGED, self._payload(execution))

    async def _emit_output(self, execution: ProcessExecution) -> None:
        payload = self._payload(execution)
        payload["output"] = execution.output
        await self._emit(NotificationEvent.TASK_OUTPUT_CHANGED, payload)
