"""In-memory task and log store."""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .models import LogEntry, LogLevel, Task, TaskStatus, utcnow


class BaseTaskStore(ABC):
    """Key-value persistence for tasks and their log entries."""

    @abstractmethod
    async def create_task(self, prompt: str, replay_of: Optional[str] = None) -> Task:
        ...

    @abstractmethod
    async def get(self, task_id: str) -> Task | None:
        ...

    @abstractmethod
    async def update(self, task_id: str, **changes: Any) -> Task | None:
        ...

    @abstractmethod
    async def all_tasks(self) -> List[Task]:
        ...

    @abstractmethod
    async def current_task(self) -> Task | None:
        ...

    @abstractmethod
    async def add_log(
        self, task_id: str, level: LogLevel, message: str, details: Optional[Any] = None
    ) -> LogEntry:
        ...

    @abstractmethod
    async def task_logs(self, task_id: str) -> List[LogEntry]:
        ...

    @abstractmethod
    async def delete_logs(self, task_id: str) -> None:
        ...

    async def finish(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        result: Optional[Any] = None,
        error: Optional[str] = None,
        **changes: Any,
    ) -> Task | None:
        """Move a task to a terminal status, stamping completion time and duration."""
        task = await self.get(task_id)
        if task is None:
            return None
        completed_at = utcnow()
        duration_ms = int((completed_at - task.created_at).total_seconds() * 1000)
        return await self.update(
            task_id,
            status=status,
            completed_at=completed_at,
            duration_ms=duration_ms,
            result=result,
            error=error,
            **changes,
        )

    async def clear_replay_state(self, task_id: str) -> None:
        await self.update(task_id, replay_state=None)


class InMemoryTaskStore(BaseTaskStore):
    """Dict-backed store; tasks are never deleted, only updated."""

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._logs: List[LogEntry] = []
        self._current_task_id: str | None = None
        self._lock = asyncio.Lock()

    async def create_task(self, prompt: str, replay_of: Optional[str] = None) -> Task:
        async with self._lock:
            task = Task(prompt=prompt, status=TaskStatus.RUNNING, replay_of=replay_of)
            self._tasks[task.id] = task
            self._current_task_id = task.id
            return task

    async def get(self, task_id: str) -> Task | None:
        async with self._lock:
            return self._tasks.get(task_id)

    async def update(self, task_id: str, **changes: Any) -> Task | None:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            updated = task.model_copy(update=changes)
            self._tasks[task_id] = updated
            if updated.is_terminal and self._current_task_id == task_id:
                self._current_task_id = None
            return updated

    async def all_tasks(self) -> List[Task]:
        async with self._lock:
            return sorted(self._tasks.values(), key=lambda task: task.created_at, reverse=True)

    async def current_task(self) -> Task | None:
        async with self._lock:
            if self._current_task_id is None:
                return None
            return self._tasks.get(self._current_task_id)

    async def add_log(
        self, task_id: str, level: LogLevel, message: str, details: Optional[Any] = None
    ) -> LogEntry:
        entry = LogEntry(task_id=task_id, level=level, message=message, details=details)
        async with self._lock:
            self._logs.append(entry)
        return entry

    async def task_logs(self, task_id: str) -> List[LogEntry]:
        async with self._lock:
            logs = [entry for entry in self._logs if entry.task_id == task_id]
        return sorted(logs, key=lambda entry: entry.timestamp)

    async def delete_logs(self, task_id: str) -> None:
        async with self._lock:
            self._logs = [entry for entry in self._logs if entry.task_id != task_id]


def create_store(backend: str = "memory") -> InMemoryTaskStore:
    if backend == "memory":
        return InMemoryTaskStore()
    raise ValueError(f"Unsupported task store backend: {backend}")
