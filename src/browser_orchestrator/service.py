"""Task submission, cancellation and replay on top of the orchestration core."""
from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import structlog

from .broadcast import LogBroadcaster
from .config import OrchestratorSettings
from .errors import (
    EmptyPromptError,
    MissingCredentialsError,
    NoReplayStateError,
    TaskAlreadyRunningError,
    TaskNotFoundError,
)
from .models import ExecutionResult, LogLevel, ReplayState, Task, TaskStatus
from .observability.metrics import running_tasks, tasks_total
from .observability.tracing import TraceWriter, traced_span
from .oracle import OpenAIOracle, Oracle
from .orchestrator import LogSink, Orchestrator
from .replay import ReplayExecutor, ReplayReport
from .session import SessionClient
from .storage import BaseTaskStore

_logger = structlog.get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"

ClientFactory = Callable[[], SessionClient]
OracleFactory = Callable[[], Oracle]


@dataclass
class TaskHandle:
    """Returned to the caller at start; pass it back to cancel the task."""

    task: Task
    runner: Union[Orchestrator, ReplayExecutor]
    job: Optional["asyncio.Task[None]"] = None

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def cancellable(self) -> bool:
        return isinstance(self.runner, Orchestrator)


class TaskService:
    """Creates tasks, runs them in the background and records their outcome.

    Only one task runs at a time; a second submission while one is running is
    rejected with :class:`TaskAlreadyRunningError`.
    """

    def __init__(
        self,
        store: BaseTaskStore,
        settings: OrchestratorSettings,
        trace_writer: TraceWriter,
        *,
        client_factory: Optional[ClientFactory] = None,
        oracle_factory: Optional[OracleFactory] = None,
        broadcaster: Optional[LogBroadcaster] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.trace_writer = trace_writer
        self.broadcaster = broadcaster
        self._client_factory = client_factory or (lambda: SessionClient.from_settings(settings))
        self._oracle_factory = oracle_factory or (lambda: OpenAIOracle.from_settings(settings))
        self._handles: Dict[str, TaskHandle] = {}

    def log_sink(self, task_id: str) -> LogSink:
        async def sink(level: LogLevel, message: str, details: Optional[Any] = None) -> None:
            entry = await self.store.add_log(task_id, level, message, details)
            if self.broadcaster is not None:
                self.broadcaster.publish(entry)

        return sink

    def handle(self, task_id: str) -> Optional[TaskHandle]:
        return self._handles.get(task_id)

    async def _ensure_idle(self) -> None:
        # A cancelled task is already terminal in the store while its loop
        # still holds the browser session.
        for handle in self._handles.values():
            if handle.job is not None and not handle.job.done():
                raise TaskAlreadyRunningError(handle.task_id)
        current = await self.store.current_task()
        if current is not None and current.status == TaskStatus.RUNNING:
            raise TaskAlreadyRunningError(current.id)

    async def submit(self, prompt: str) -> TaskHandle:
        if not self.settings.openai_api_key:
            raise MissingCredentialsError()
        if not prompt or not prompt.strip():
            raise EmptyPromptError()
        await self._ensure_idle()

        task = await self.store.create_task(prompt.strip())
        orchestrator = Orchestrator(
            self._client_factory(),
            self._oracle_factory(),
            self.log_sink(task.id),
            max_iterations=self.settings.max_iterations,
        )
        handle = TaskHandle(task=task, runner=orchestrator)
        self._handles[task.id] = handle
        running_tasks.inc()
        handle.job = asyncio.create_task(self._run_execution(handle, orchestrator, task.prompt))
        _logger.info("task.submitted", task_id=task.id)
        return handle

    async def _run_execution(self, handle: TaskHandle, orchestrator: Orchestrator, prompt: str) -> None:
        task_id = handle.task_id
        try:
            async with traced_span(self.trace_writer, task_id, "orchestrator", {"prompt": prompt}) as outcome:
                try:
                    result = await orchestrator.execute(prompt)
                except Exception as exc:
                    _logger.exception("task.execution_crashed", task_id=task_id)
                    result = ExecutionResult(
                        success=False,
                        error=str(exc) or "Task execution failed",
                        replay_state=orchestrator.replay_state,
                    )
                outcome.update(
                    success=result.success,
                    error=result.error,
                    iterations=orchestrator.iterations,
                    actions=len(result.replay_state.actions) if result.replay_state else 0,
                )
            await self._finish_execution(task_id, orchestrator, result)
        except Exception as exc:
            _logger.exception("task.execution_aborted", task_id=task_id)
            await self._fail_unfinished(task_id, "execute", exc, replay_state=orchestrator.replay_state)
        finally:
            running_tasks.dec()
            self._handles.pop(task_id, None)

    async def _finish_execution(self, task_id: str, orchestrator: Orchestrator, result: ExecutionResult) -> None:
        current = await self.store.get(task_id)
        if current is not None and current.is_terminal:
            # Already failed by cancel(); keep that status but attach the trace.
            await self.store.update(task_id, replay_state=result.replay_state)
            status = current.status
        elif result.success:
            status = TaskStatus.COMPLETED
            await self.store.finish(task_id, status, result=result.result, replay_state=result.replay_state)
        else:
            status = TaskStatus.FAILED
            error = CANCELLED_MESSAGE if orchestrator.cancelled else result.error
            await self.store.finish(task_id, status, error=error, replay_state=result.replay_state)
        tasks_total.labels(kind="execute", status=status.value).inc()
        _logger.info("task.finished", task_id=task_id, status=status.value, error=result.error)

    async def cancel(self, task_id: Optional[str] = None) -> Optional[Task]:
        """Cancel the given running task, or the current one."""
        if task_id is None:
            current = await self.store.current_task()
            if current is None:
                return None
            task_id = current.id
        handle = self._handles.get(task_id)
        if handle is None or not handle.cancellable:
            return None
        assert isinstance(handle.runner, Orchestrator)
        handle.runner.cancel()
        _logger.info("task.cancelled", task_id=task_id)
        return await self.store.finish(task_id, TaskStatus.FAILED, error=CANCELLED_MESSAGE)

    async def replay(self, task_id: str) -> TaskHandle:
        source = await self.store.get(task_id)
        if source is None:
            raise TaskNotFoundError(task_id)
        state = source.replay_state
        if state is None or not state.is_valid:
            raise NoReplayStateError(task_id)
        await self._ensure_idle()

        task = await self.store.create_task(f"Replay: {source.prompt}", replay_of=source.id)
        executor = ReplayExecutor(self._client_factory(), self.log_sink(task.id))
        handle = TaskHandle(task=task, runner=executor)
        self._handles[task.id] = handle
        running_tasks.inc()
        handle.job = asyncio.create_task(self._run_replay(handle, executor, source.id, state))
        _logger.info("task.replay_submitted", task_id=task.id, source_task_id=source.id)
        return handle

    async def _run_replay(
        self, handle: TaskHandle, executor: ReplayExecutor, source_id: str, state: ReplayState
    ) -> None:
        task_id = handle.task_id
        try:
            payload = {"source_task_id": source_id, "session_id": state.session_id}
            async with traced_span(self.trace_writer, task_id, "replay", payload) as outcome:
                report = await executor.replay(state)
                outcome.update(report.to_dict())
            await self.store.clear_replay_state(source_id)
            await self._finish_replay(task_id, report)
        except Exception as exc:
            _logger.exception("task.replay_aborted", task_id=task_id)
            await self._fail_unfinished(task_id, "replay", exc)
        finally:
            running_tasks.dec()
            self._handles.pop(task_id, None)

    async def _finish_replay(self, task_id: str, report: ReplayReport) -> None:
        status = TaskStatus.COMPLETED if report.success else TaskStatus.FAILED
        await self.store.finish(task_id, status, result=report.to_dict(), error=report.error)
        tasks_total.labels(kind="replay", status=status.value).inc()
        _logger.info("task.replay_finished", task_id=task_id, status=status.value, failed=report.failed)

    async def _fail_unfinished(self, task_id: str, kind: str, exc: Exception, **changes: Any) -> None:
        """Move a task left running by an error outside the runner to failed."""
        try:
            current = await self.store.get(task_id)
            if current is None or current.is_terminal:
                return
            await self.store.finish(task_id, TaskStatus.FAILED, error=str(exc) or type(exc).__name__, **changes)
        except Exception:
            _logger.exception("task.fail_unfinished_failed", task_id=task_id)
            return
        tasks_total.labels(kind=kind, status=TaskStatus.FAILED.value).inc()

    async def wait(self, handle: TaskHandle) -> Optional[Task]:
        if handle.job is not None:
            await handle.job
        return await self.store.get(handle.task_id)

    async def shutdown(self) -> None:
        for handle in list(self._handles.values()):
            if isinstance(handle.runner, Orchestrator):
                handle.runner.cancel()
        jobs = [handle.job for handle in self._handles.values() if handle.job is not None]
        for job in jobs:
            job.cancel()
        for job in jobs:
            with contextlib.suppress(asyncio.CancelledError):
                await job
