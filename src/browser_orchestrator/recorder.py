"""Replayable action trace, recorded as a side effect of successful tool calls."""
from __future__ import annotations

from typing import Any, Dict, Optional

from . import tool_catalog
from .models import RecordedAction, ReplayState


def record_action(function: str, arguments: Dict[str, Any]) -> Optional[RecordedAction]:
    """Map a completed tool call to the action replay should reissue, if any."""
    if function not in tool_catalog.RECORDABLE_TOOLS:
        return None
    if function == tool_catalog.NAVIGATE and not arguments.get("url"):
        return None
    return RecordedAction(function=function, arguments=tool_catalog.strip_session(arguments))


class ActionTraceRecorder:
    """Ordered record of state-changing calls for one task.

    Owned by a single orchestrator run; ``observe`` must be called in the
    order the calls were issued.
    """

    def __init__(self, session_id: str) -> None:
        self._state = ReplayState(session_id=session_id)

    @property
    def state(self) -> ReplayState:
        return self._state

    def observe(self, function: str, arguments: Dict[str, Any]) -> Optional[RecordedAction]:
        action = record_action(function, arguments)
        if action is None:
            return None
        if function == tool_catalog.NAVIGATE:
            url = action.arguments["url"]
            if self._state.url is None:
                self._state.url = url
            if not self._state.pages or self._state.pages[-1] != url:
                self._state.pages.append(url)
            if self._repeats_last_navigation(action):
                return None
        self._state.actions.append(action)
        return action

    def _repeats_last_navigation(self, action: RecordedAction) -> bool:
        if not self._state.actions:
            return False
        last = self._state.actions[-1]
        return last.function == tool_catalog.NAVIGATE and last.arguments == action.arguments
