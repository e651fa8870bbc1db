"""Error taxonomy for task orchestration and replay."""
from __future__ import annotations

import re


class OrchestratorError(Exception):
    """Fatal error that terminates a task."""


class ProviderConnectionError(OrchestratorError, ConnectionError):
    """The tool provider transport could not be established."""


class NoToolsAvailableError(OrchestratorError):
    def __init__(self) -> None:
        super().__init__("No MCP tools available. Cannot proceed with automation.")


class SessionCreationError(OrchestratorError):
    """No session identity could be obtained from the provider."""


class TaskCancelledError(OrchestratorError):
    def __init__(self) -> None:
        super().__init__("Task cancelled by user")


class MaxIterationsError(OrchestratorError):
    def __init__(self, limit: int) -> None:
        super().__init__("Max iterations reached")
        self.limit = limit


class ReplayNavigationError(OrchestratorError):
    """The primary navigation of a replay failed."""


class ValidationError(Exception):
    """A request rejected before any task is started."""


class MissingCredentialsError(ValidationError):
    def __init__(self) -> None:
        super().__init__("OpenAI API key not configured. Please add your OPENAI_API_KEY to secrets.")


class EmptyPromptError(ValidationError):
    def __init__(self) -> None:
        super().__init__("Prompt must not be empty")


class NoReplayStateError(ValidationError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} has no replay state to replay")
        self.task_id = task_id


class TaskAlreadyRunningError(ValidationError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is already running")
        self.task_id = task_id


class TaskNotFoundError(LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


_GATEWAY_MESSAGES = {
    "502": "MCP server is unavailable (502 Bad Gateway). The server may be down or overloaded. Please try again later.",
    "503": "MCP server is temporarily unavailable (503 Service Unavailable). Please try again later.",
    "504": "MCP server request timed out (504 Gateway Timeout). Please try again later.",
}


def describe_provider_error(message: str) -> str:
    """Replace raw gateway HTML bodies with a readable message."""
    if "<!DOCTYPE html>" in message or "<html" in message:
        for code, text in _GATEWAY_MESSAGES.items():
            if code in message:
                return text
        return "MCP server returned an error. The server may be down or misconfigured."
    if re.search(r"\(HTTP 502\)", message):
        return "MCP server is unavailable (502 Bad Gateway). The server may be down or overloaded."
    return message
