"""Tool-calling language model used to plan the next browser action."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import structlog
from openai import AsyncOpenAI

from .config import OrchestratorSettings
from .models import ToolDefinition

_logger = structlog.get_logger(__name__)


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    raw_arguments: str = "{}"
    parse_error: Optional[str] = None


@dataclass
class OracleReply:
    content: Optional[str] = None
    tool_calls: List[ToolCallRequest] = field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


class Oracle(Protocol):
    async def complete(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> OracleReply:
        ...


def build_tool_schema(tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.input_schema,
            },
        }
        for tool in tools
    ]


def parse_arguments(raw: Optional[str]) -> tuple[Dict[str, Any], Optional[str]]:
    if not raw:
        return {}, None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        return {}, f"Invalid JSON arguments: {exc}"
    if not isinstance(parsed, dict):
        return {}, "Arguments must be a JSON object"
    return parsed, None


class OpenAIOracle:
    """Chat-completions backed oracle."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        max_completion_tokens: int = 4096,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.max_completion_tokens = max_completion_tokens
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout)

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings) -> "OpenAIOracle":
        return cls(
            api_key=settings.openai_api_key or "",
            model=settings.openai_model,
            max_completion_tokens=settings.max_completion_tokens,
            timeout=settings.call_timeout_seconds,
        )

    async def complete(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> OracleReply:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_completion_tokens": self.max_completion_tokens,
        }
        if tools:
            kwargs["tools"] = tools
        response = await self._client.chat.completions.create(**kwargs)
        message = response.choices[0].message

        calls: List[ToolCallRequest] = []
        for call in message.tool_calls or []:
            function = getattr(call, "function", None)
            if function is None:
                continue
            arguments, error = parse_arguments(function.arguments)
            calls.append(
                ToolCallRequest(
                    id=call.id,
                    name=function.name,
                    arguments=arguments,
                    raw_arguments=function.arguments or "{}",
                    parse_error=error,
                )
            )
        _logger.debug("oracle.reply", model=self.model, tool_calls=[c.name for c in calls], has_content=bool(message.content))
        return OracleReply(content=message.content, tool_calls=calls)
