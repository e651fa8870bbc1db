"""Append-only conversation owned by one orchestration run."""
from __future__ import annotations

import json
from typing import Any, Dict, List

from .models import ToolDefinition
from .oracle import OracleReply, ToolCallRequest

# Screenshot tools may echo the whole encoded image as text.
MAX_RESULT_CHARS = 4000

SNAPSHOT_INSTRUCTION = (
    "This is the current screenshot of the page. Examine it carefully to determine your next action."
)

_SYSTEM_PROMPT = """You are a browser automation orchestrator. You have access to browser automation tools via MCP (Model Context Protocol).

Your job is to:
1. Understand the user's automation task
2. Break it down into a series of browser actions
3. Call the appropriate MCP functions in the correct order
4. The sessionId is automatically managed - just call functions normally
5. After every action that changes the page (navigate, act, observe), a screenshot is taken automatically
6. Analyze the screenshot images to determine the next action needed
7. Use the visual information from screenshots to identify elements, text, buttons and forms
8. Repeat until the task is complete

Guidelines:
- Use browserbase_stagehand_observe with returnAction: true to get deterministic selectors
- Use browserbase_stagehand_act with either 'action' (natural language) or 'observation' (deterministic)
- If an action fails, look at the error and the latest screenshot and try an alternative approach
- When you see the desired result, reply with a plain-text answer and stop calling tools

Available tools:
{tools}"""


def build_system_prompt(tools: List[ToolDefinition]) -> str:
    listing = json.dumps([tool.model_dump() for tool in tools], indent=2) if tools else "No tools currently available."
    return _SYSTEM_PROMPT.format(tools=listing)


class Conversation:
    """Role-tagged message log sent to the oracle on every turn."""

    def __init__(self, system_prompt: str, user_prompt: str) -> None:
        self._messages: List[Dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return list(self._messages)

    def add_assistant(self, reply: OracleReply) -> None:
        message: Dict[str, Any] = {"role": "assistant", "content": reply.content}
        if reply.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.raw_arguments},
                }
                for call in reply.tool_calls
            ]
        self._messages.append(message)

    def add_tool_result(self, call: ToolCallRequest, result: str, with_snapshot: bool = False) -> None:
        if len(result) > MAX_RESULT_CHARS:
            result = result[:MAX_RESULT_CHARS] + "... (truncated)"
        content = f"Success. Result: {result or 'Action completed'}"
        if with_snapshot:
            content += ". Screenshot captured and shown below."
        self._messages.append({"role": "tool", "tool_call_id": call.id, "content": content})

    def add_tool_error(self, call: ToolCallRequest, error: str) -> None:
        self._messages.append({"role": "tool", "tool_call_id": call.id, "content": f"Error: {error}"})

    def add_snapshot(self, image_url: str) -> None:
        self._messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "image_url", "image_url": {"url": image_url}},
                    {"type": "text", "text": SNAPSHOT_INSTRUCTION},
                ],
            }
        )
