"""Pydantic models shared by the orchestrator, replay executor and API."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


class RecordedAction(BaseModel):
    """One state-changing tool call, stored without the session identity."""

    function: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ReplayState(BaseModel):
    """Everything needed to replay a task without the language model."""

    session_id: str
    url: Optional[str] = None
    pages: list[str] = Field(default_factory=list)
    actions: list[RecordedAction] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return bool(self.session_id)


class Task(BaseModel):
    """A single user-initiated automation request."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    prompt: str
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    replay_state: Optional[ReplayState] = None
    replay_of: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class LogEntry(BaseModel):
    """Observable event emitted while a task runs."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    task_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel
    message: str
    details: Optional[Any] = None
    screenshot: Optional[str] = None

    @model_validator(mode="after")
    def _lift_screenshot(self) -> "LogEntry":
        if isinstance(self.details, dict) and "screenshot" in self.details:
            details = dict(self.details)
            screenshot = details.pop("screenshot")
            if self.screenshot is None:
                self.screenshot = screenshot
            self.details = details or None
        return self


class ToolDefinition(BaseModel):
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ToolInvocation(BaseModel):
    """Request/response pair for one remote tool call."""

    function: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: Optional[str] = None
    error: Optional[str] = None
    screenshot: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ExecutionResult(BaseModel):
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
    replay_state: Optional[ReplayState] = None


class TaskRequest(BaseModel):
    """Request body for `/api/tasks/execute`."""

    prompt: str


class CancelResponse(BaseModel):
    success: bool = True
    task_id: Optional[str] = None


class TraceRecord(BaseModel):
    """Single trace entry persisted to JSONL and optional SQLite."""

    timestamp: datetime = Field(default_factory=utcnow)
    task_id: str
    component: Literal["orchestrator", "replay", "api"]
    payload: dict[str, Any]
