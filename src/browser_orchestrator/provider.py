"""Transport to the remote browser tool provider."""
from __future__ import annotations

from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import structlog
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client

from .models import ToolDefinition

_logger = structlog.get_logger(__name__)

CLIENT_NAME = "browser-orchestrator"


@dataclass
class ToolCallOutcome:
    """Raw result of one remote call, content items as plain dicts."""

    content: List[Dict[str, Any]] = field(default_factory=list)
    is_error: bool = False


class ToolProvider(Protocol):
    async def list_tools(self) -> List[ToolDefinition]:
        ...

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolCallOutcome:
        ...

    async def aclose(self) -> None:
        ...


class McpToolProvider:
    """Streamable-HTTP MCP connection owning its transport for its lifetime."""

    def __init__(self, url: str, api_key: Optional[str] = None) -> None:
        self.url = url
        self.api_key = api_key
        self._stack: AsyncExitStack | None = None
        self._session: ClientSession | None = None

    @classmethod
    async def open(cls, url: str, api_key: Optional[str] = None) -> "McpToolProvider":
        provider = cls(url, api_key)
        await provider.start()
        return provider

    async def start(self) -> None:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        stack = AsyncExitStack()
        try:
            read, write, _ = await stack.enter_async_context(streamablehttp_client(self.url, headers=headers))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._session = session
        _logger.info("provider.connected", url=self.url)

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ConnectionError("MCP session is not connected")
        return self._session

    async def list_tools(self) -> List[ToolDefinition]:
        response = await self._require_session().list_tools()
        return [
            ToolDefinition(name=tool.name, description=tool.description or "", input_schema=tool.inputSchema or {})
            for tool in (response.tools or [])
        ]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolCallOutcome:
        result = await self._require_session().call_tool(name, arguments)
        content = [item.model_dump(mode="json") for item in (result.content or [])]
        return ToolCallOutcome(content=content, is_error=bool(result.isError))

    async def aclose(self) -> None:
        stack, self._stack, self._session = self._stack, None, None
        if stack is not None:
            await stack.aclose()
            _logger.info("provider.disconnected", url=self.url)
