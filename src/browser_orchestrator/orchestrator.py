"""Plan-act-observe loop turning one prompt into a bounded series of tool calls."""
from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from . import tool_catalog
from .conversation import Conversation, build_system_prompt
from .errors import (
    MaxIterationsError,
    NoToolsAvailableError,
    OrchestratorError,
    TaskCancelledError,
    describe_provider_error,
)
from .models import ExecutionResult, LogLevel, ReplayState, ToolDefinition
from .observability.metrics import oracle_turns_total, tool_calls_total
from .oracle import Oracle, ToolCallRequest, build_tool_schema
from .recorder import ActionTraceRecorder
from .session import SessionClient

_logger = structlog.get_logger(__name__)

LogSink = Callable[[LogLevel, str, Optional[Any]], Awaitable[None]]

DEFAULT_MAX_ITERATIONS = 20


class Orchestrator:
    """Drives one task through Initializing -> Iterating -> Completed | Failed.

    A single instance runs a single task. ``cancel`` may be called from any
    other coroutine; the flag is honoured at the top of every iteration, after
    every oracle reply and before every tool call, so at most one tool call
    completes after cancellation is requested. The session is closed on every
    exit path and the recorded trace is returned whether or not the task
    succeeded.
    """

    def __init__(
        self,
        session_client: SessionClient,
        oracle: Oracle,
        on_log: LogSink,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        self._client = session_client
        self._oracle = oracle
        self._on_log = on_log
        self.max_iterations = max_iterations
        self._cancelled = False
        self._recorder: ActionTraceRecorder | None = None
        self._tools: List[ToolDefinition] = []
        self.iterations = 0
        self.last_screenshot: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def replay_state(self) -> Optional[ReplayState]:
        if self._recorder is not None and self._recorder.state.is_valid:
            return self._recorder.state
        return None

    def cancel(self) -> None:
        self._cancelled = True
        _logger.info("orchestrator.cancel_requested")

    async def log(self, level: LogLevel, message: str, details: Optional[Any] = None) -> None:
        await self._on_log(level, message, details)

    async def execute(self, prompt: str) -> ExecutionResult:
        try:
            answer = await self._run(prompt)
        except Exception as exc:
            if not isinstance(exc, OrchestratorError):
                _logger.exception("orchestrator.unexpected_error", error=str(exc))
            error = describe_provider_error(str(exc)) or "Unknown error"
            await self.log(LogLevel.ERROR, f"Task failed: {error}")
            return ExecutionResult(success=False, error=error, replay_state=self.replay_state)
        finally:
            await self._cleanup()
        return ExecutionResult(success=True, result=answer, replay_state=self.replay_state)

    async def _run(self, prompt: str) -> str:
        tools = await self.initialize()
        await self.log(LogLevel.INFO, f"Executing task: {prompt}")

        await self.log(LogLevel.INFO, "Creating new browser session...")
        session_id = await self._client.create_session()
        self._recorder = ActionTraceRecorder(session_id)
        await self.log(LogLevel.SUCCESS, f"Browser session created: {session_id}")

        conversation = Conversation(build_system_prompt(tools), prompt)
        answer = await self._iterate(conversation, build_tool_schema(tools))
        await self.log(LogLevel.SUCCESS, f"Task completed: {answer}")
        return answer

    async def initialize(self) -> List[ToolDefinition]:
        await self.log(LogLevel.INFO, "Initializing orchestrator and connecting to MCP server...")
        try:
            await self._client.connect()
            await self.log(LogLevel.INFO, "MCP server connection established")
            tools = await self._client.list_tools()
            if not tools:
                await self.log(
                    LogLevel.ERROR,
                    "No tools available from MCP server. Check MCP server connection and configuration.",
                )
                raise NoToolsAvailableError()
        except Exception as exc:
            await self.log(LogLevel.ERROR, f"Failed to initialize: {describe_provider_error(str(exc))}")
            raise
        self._tools = tools
        await self.log(LogLevel.SUCCESS, f"Loaded {len(tools)} MCP tools")
        names = ", ".join(tool_catalog.display_name(tool.name) for tool in tools)
        await self.log(LogLevel.INFO, f"Available tools: {names}")
        return tools

    def _check_cancelled(self) -> None:
        if self._cancelled:
            raise TaskCancelledError()

    async def _iterate(self, conversation: Conversation, schema: List[dict]) -> str:
        while self.iterations < self.max_iterations:
            self._check_cancelled()
            self.iterations += 1
            _logger.info("orchestrator.iteration", iteration=self.iterations, max_iterations=self.max_iterations)

            reply = await self._oracle.complete(conversation.messages, schema)
            oracle_turns_total.inc()
            conversation.add_assistant(reply)
            if reply.content:
                await self.log(LogLevel.INFO, reply.content)

            self._check_cancelled()
            if reply.is_final:
                return reply.content or "Task completed"

            # Snapshots go after every tool result of the turn; tool messages
            # must directly follow the assistant message that requested them.
            snapshots: List[str] = []
            for call in reply.tool_calls:
                self._check_cancelled()
                snapshot = await self._execute_call(call, conversation)
                if snapshot:
                    snapshots.append(snapshot)
            for snapshot in snapshots:
                conversation.add_snapshot(snapshot)

        raise MaxIterationsError(self.max_iterations)

    async def _execute_call(self, call: ToolCallRequest, conversation: Conversation) -> Optional[str]:
        shown_args = tool_catalog.display_arguments(call.arguments)
        suffix = f" with args: {json.dumps(shown_args)}" if shown_args else ""
        await self.log(LogLevel.INFO, f"Calling {tool_catalog.display_name(call.name)}{suffix}")

        if call.parse_error:
            await self.log(LogLevel.ERROR, f"Function {call.name} failed: {call.parse_error}")
            conversation.add_tool_error(call, call.parse_error)
            return None

        result = await self._client.call_tool(call.name, call.arguments)
        if not result.ok:
            tool_calls_total.labels(tool=call.name, outcome="error").inc()
            await self.log(LogLevel.ERROR, f"Function {call.name} failed: {result.error}")
            conversation.add_tool_error(call, result.error or "Unknown error")
            return None

        tool_calls_total.labels(tool=call.name, outcome="ok").inc()
        await self.log(LogLevel.SUCCESS, f"{tool_catalog.display_name(call.name)} completed successfully")
        if self._recorder is not None:
            self._recorder.observe(call.name, call.arguments)

        screenshot = result.screenshot
        if screenshot:
            self.last_screenshot = screenshot
            await self.log(LogLevel.INFO, "Screenshot captured", {"screenshot": screenshot})
        elif call.name in tool_catalog.PAGE_CHANGING_TOOLS and not self._cancelled:
            screenshot = await self._capture_snapshot()

        conversation.add_tool_result(call, result.result or "", with_snapshot=bool(screenshot))
        return screenshot

    async def _capture_snapshot(self) -> Optional[str]:
        await self.log(LogLevel.INFO, "Taking screenshot to see current state...")
        shot = await self._client.call_tool(tool_catalog.SCREENSHOT, {})
        if not shot.ok:
            await self.log(LogLevel.WARNING, f"Failed to capture screenshot: {shot.error}")
            return None
        if not shot.screenshot:
            await self.log(LogLevel.WARNING, "Screenshot function returned no image data")
            return None
        self.last_screenshot = shot.screenshot
        await self.log(LogLevel.INFO, "Screenshot captured", {"screenshot": shot.screenshot})
        return shot.screenshot

    async def _cleanup(self) -> None:
        if self._client.session_id:
            await self.log(LogLevel.INFO, "Closing browser session...")
        try:
            await self._client.close()
        except Exception as exc:  # pragma: no cover - close() already swallows
            _logger.warning("orchestrator.cleanup_failed", error=str(exc))
        state = self.replay_state
        if state is not None:
            _logger.info(
                "orchestrator.replay_state",
                session_id=state.session_id,
                url=state.url,
                actions=len(state.actions),
            )
        else:
            _logger.info("orchestrator.no_replay_state")
