"""Deterministic replay of a recorded action trace, without the language model."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from . import tool_catalog
from .errors import ReplayNavigationError, SessionCreationError, describe_provider_error
from .models import LogLevel, RecordedAction, ReplayState
from .observability.metrics import tool_calls_total
from .orchestrator import LogSink
from .session import SessionClient

_logger = structlog.get_logger(__name__)


@dataclass
class ReplayReport:
    success: bool = False
    error: Optional[str] = None
    attempted: int = 0
    succeeded: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failures": self.failures,
        }


class ReplayExecutor:
    """Walks a fixed list of recorded actions in order.

    Only adopting the session and the primary navigation are fatal; a failing
    action is logged and the walk continues with the next one.
    """

    def __init__(self, session_client: SessionClient, on_log: LogSink, *, capture_snapshots: bool = True) -> None:
        self._client = session_client
        self._on_log = on_log
        self.capture_snapshots = capture_snapshots

    async def log(self, level: LogLevel, message: str, details: Optional[Any] = None) -> None:
        await self._on_log(level, message, details)

    async def replay(self, state: ReplayState) -> ReplayReport:
        report = ReplayReport()
        try:
            await self._walk(state, report)
            report.success = True
        except Exception as exc:
            report.error = describe_provider_error(str(exc)) or "Unknown error"
            await self.log(LogLevel.ERROR, f"Replay failed: {report.error}")
        finally:
            if self._client.session_id:
                await self.log(LogLevel.INFO, "Closing browser session...")
            await self._client.close()

        if report.success:
            summary = f"Replay completed: {report.succeeded}/{report.attempted} actions succeeded"
            level = LogLevel.SUCCESS if not report.failures else LogLevel.WARNING
            await self.log(level, summary)
        _logger.info("replay.finished", session_id=state.session_id, **report.to_dict())
        return report

    async def _walk(self, state: ReplayState, report: ReplayReport) -> None:
        if not state.is_valid:
            raise SessionCreationError("Replay state has no session identity")

        await self._client.connect()
        await self.log(LogLevel.INFO, f"Reusing browser session {state.session_id}")
        await self._client.create_session(state.session_id)

        actions = list(state.actions)
        if state.url:
            await self.log(LogLevel.INFO, f"Navigating to {state.url}")
            navigation = await self._client.call_tool(tool_catalog.NAVIGATE, {"url": state.url})
            if not navigation.ok:
                raise ReplayNavigationError(f"Failed to navigate to {state.url}: {navigation.error}")
            tool_calls_total.labels(tool=tool_catalog.NAVIGATE, outcome="ok").inc()
            await self.log(LogLevel.SUCCESS, f"Navigated to {state.url}")
            await self._snapshot()
            if actions and self._is_primary_navigation(actions[0], state.url):
                actions = actions[1:]

        total = len(actions)
        for index, action in enumerate(actions, start=1):
            report.attempted += 1
            name = tool_catalog.display_name(action.function)
            await self.log(LogLevel.INFO, f"Replaying step {index}/{total}: {name}", action.arguments or None)
            result = await self._client.call_tool(action.function, action.arguments)
            if not result.ok:
                tool_calls_total.labels(tool=action.function, outcome="error").inc()
                report.failures.append({"step": index, "function": action.function, "error": result.error})
                await self.log(LogLevel.ERROR, f"Step {index} ({name}) failed: {result.error}")
                continue

            tool_calls_total.labels(tool=action.function, outcome="ok").inc()
            report.succeeded += 1
            await self.log(LogLevel.SUCCESS, f"Step {index} ({name}) completed")
            if result.screenshot:
                await self.log(LogLevel.INFO, "Screenshot captured", {"screenshot": result.screenshot})
            elif action.function == tool_catalog.NAVIGATE or action.function in tool_catalog.INTERACTION_TOOLS:
                await self._snapshot()

    @staticmethod
    def _is_primary_navigation(action: RecordedAction, url: str) -> bool:
        return action.function == tool_catalog.NAVIGATE and action.arguments.get("url") == url

    async def _snapshot(self) -> None:
        if not self.capture_snapshots:
            return
        shot = await self._client.call_tool(tool_catalog.SCREENSHOT, {})
        if not shot.ok:
            await self.log(LogLevel.WARNING, f"Failed to capture screenshot: {shot.error}")
        elif shot.screenshot:
            await self.log(LogLevel.INFO, "Screenshot captured", {"screenshot": shot.screenshot})
