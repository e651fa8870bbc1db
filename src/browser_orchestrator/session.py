"""Session client: single point of contact with the browser tool provider."""
from __future__ import annotations

import asyncio
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from . import tool_catalog
from .config import OrchestratorSettings
from .errors import ProviderConnectionError, SessionCreationError, describe_provider_error
from .models import ToolDefinition, ToolInvocation
from .provider import McpToolProvider, ToolCallOutcome, ToolProvider
from .snapshot import EMBEDDED_STRATEGIES, STRATEGIES, encode_bytes, extract_snapshot

_logger = structlog.get_logger(__name__)

ProviderFactory = Callable[[], Awaitable[ToolProvider]]

# Providers report the session as part of a dashboard/debug URL,
# e.g. "https://www.browserbase.com/sessions/3f2c...".
_SESSION_ID_PATTERN = re.compile(r"sessions/([a-f0-9-]+)", re.I)


def extract_session_id(content: List[Dict[str, Any]]) -> Optional[str]:
    """Return the session identity embedded in a tool result, if any."""
    for item in content:
        text = item.get("text")
        if item.get("type") == "text" and isinstance(text, str):
            match = _SESSION_ID_PATTERN.search(text)
            if match:
                return match.group(1)
    return None


def _joined_text(content: List[Dict[str, Any]]) -> str:
    return "".join(
        item["text"] for item in content if item.get("type") == "text" and isinstance(item.get("text"), str)
    )


class SessionClient:
    """Wraps one provider connection and owns one browser session identity.

    Tool invocation failures are returned as data on :class:`ToolInvocation`
    so the orchestration loop can hand them back to the model. Connection and
    session-creation failures raise.
    """

    def __init__(
        self,
        provider_factory: ProviderFactory,
        *,
        call_timeout: Optional[float] = None,
        snapshot_fetch_timeout: float = 10.0,
        snapshot_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._provider_factory = provider_factory
        self._provider: ToolProvider | None = None
        self._session_id: str | None = None
        self.call_timeout = call_timeout
        self.snapshot_fetch_timeout = snapshot_fetch_timeout
        self._snapshot_transport = snapshot_transport

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings) -> "SessionClient":
        async def factory() -> ToolProvider:
            return await McpToolProvider.open(settings.mcp_server_url, settings.mcp_api_key)

        return cls(
            factory,
            call_timeout=settings.call_timeout_seconds,
            snapshot_fetch_timeout=settings.snapshot_fetch_timeout_seconds,
        )

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def connected(self) -> bool:
        return self._provider is not None

    async def __aenter__(self) -> "SessionClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        if self._provider is not None:
            return
        try:
            self._provider = await self._provider_factory()
        except Exception as exc:
            self._provider = None
            _logger.error("session.connect_failed", error=str(exc))
            raise ProviderConnectionError(describe_provider_error(str(exc)) or "Failed to connect to MCP server") from exc

    async def list_tools(self) -> List[ToolDefinition]:
        await self.connect()
        assert self._provider is not None
        try:
            tools = await self._provider.list_tools()
        except Exception as exc:
            _logger.error("session.list_tools_failed", error=str(exc))
            raise ProviderConnectionError(describe_provider_error(str(exc))) from exc
        return list(tools or [])

    async def create_session(self, adopted_identity: Optional[str] = None) -> str:
        """Mint a new session, or adopt one a caller already holds."""
        if adopted_identity:
            self._session_id = adopted_identity
            _logger.info("session.adopted", session_id=adopted_identity)
            return adopted_identity

        await self.connect()
        assert self._provider is not None
        try:
            outcome = await self._call_provider(tool_catalog.SESSION_CREATE, {})
        except Exception as exc:
            raise SessionCreationError(f"Failed to create session: {describe_provider_error(str(exc))}") from exc
        session_id = extract_session_id(outcome.content)
        if not session_id:
            raise SessionCreationError("Failed to extract sessionId from response")
        self._session_id = session_id
        _logger.info("session.created", session_id=session_id)
        return session_id

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolInvocation:
        arguments = dict(arguments or {})
        payload = dict(arguments)
        if self._session_id and name != tool_catalog.SESSION_CREATE:
            payload[tool_catalog.SESSION_ID_ARG] = self._session_id

        try:
            await self.connect()
            outcome = await self._call_provider(name, payload)
        except asyncio.TimeoutError:
            error = f"Tool call timed out after {self.call_timeout}s"
            _logger.warning("session.call_timeout", tool=name, timeout=self.call_timeout)
            return ToolInvocation(function=name, arguments=arguments, error=error, session_id=self._session_id)
        except Exception as exc:
            _logger.warning("session.call_failed", tool=name, error=str(exc))
            return ToolInvocation(
                function=name,
                arguments=arguments,
                error=describe_provider_error(str(exc)) or type(exc).__name__,
                session_id=self._session_id,
            )

        text = _joined_text(outcome.content)
        if outcome.is_error:
            return ToolInvocation(
                function=name,
                arguments=arguments,
                error=text or "Tool reported an error",
                session_id=self._session_id,
            )

        if name == tool_catalog.SESSION_CREATE:
            learned = extract_session_id(outcome.content)
            if learned:
                self._session_id = learned

        strategies = STRATEGIES if name == tool_catalog.SCREENSHOT else EMBEDDED_STRATEGIES
        screenshot = await self._resolve_snapshot(outcome.content, strategies)
        return ToolInvocation(
            function=name,
            arguments=arguments,
            result=text,
            screenshot=screenshot,
            session_id=self._session_id,
        )

    async def _call_provider(self, name: str, payload: Dict[str, Any]) -> ToolCallOutcome:
        assert self._provider is not None
        if self.call_timeout:
            return await asyncio.wait_for(self._provider.call_tool(name, payload), timeout=self.call_timeout)
        return await self._provider.call_tool(name, payload)

    async def _resolve_snapshot(self, content: List[Dict[str, Any]], strategies) -> Optional[str]:
        snapshot = extract_snapshot(content, strategies)
        if snapshot is None:
            return None
        if not snapshot.needs_fetch:
            return snapshot.value
        try:
            async with httpx.AsyncClient(
                timeout=self.snapshot_fetch_timeout, follow_redirects=True, transport=self._snapshot_transport
            ) as client:
                response = await client.get(snapshot.value)
                response.raise_for_status()
        except Exception as exc:
            _logger.warning("session.snapshot_fetch_failed", url=snapshot.value, error=str(exc))
            return None
        mime_type = response.headers.get("content-type", "").split(";")[0].strip() or None
        if mime_type and not mime_type.startswith("image/"):
            mime_type = None
        return encode_bytes(response.content, mime_type)

    async def close_session(self) -> None:
        session_id, self._session_id = self._session_id, None
        if not session_id:
            return
        try:
            await self.connect()
            assert self._provider is not None
            await self._call_provider(tool_catalog.SESSION_CLOSE, {tool_catalog.SESSION_ID_ARG: session_id})
            _logger.info("session.closed", session_id=session_id)
        except Exception as exc:
            _logger.warning("session.close_failed", session_id=session_id, error=str(exc))

    async def close(self) -> None:
        await self.close_session()
        provider, self._provider = self._provider, None
        if provider is None:
            return
        try:
            await provider.aclose()
        except Exception as exc:
            _logger.warning("session.transport_close_failed", error=str(exc))
