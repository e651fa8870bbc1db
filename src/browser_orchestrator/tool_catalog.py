"""Tool names reserved by the browser tool provider and how we treat them."""
from __future__ import annotations

import re
from typing import Any, Dict

SESSION_ID_ARG = "sessionId"

SESSION_CREATE = "browserbase_session_create"
SESSION_CLOSE = "browserbase_session_close"
NAVIGATE = "browserbase_stagehand_navigate"
ACT = "browserbase_stagehand_act"
OBSERVE = "browserbase_stagehand_observe"
EXTRACT = "browserbase_stagehand_extract"
GET_URL = "browserbase_stagehand_get_url"
SCREENSHOT = "browserbase_screenshot"

# Calls that change session-visible state and are therefore replayed.
RECORDABLE_TOOLS = frozenset({NAVIGATE, ACT, EXTRACT, SCREENSHOT})

# Calls after which the page probably looks different.
PAGE_CHANGING_TOOLS = frozenset({ACT, NAVIGATE, OBSERVE})

INTERACTION_TOOLS = frozenset({ACT})

_PREFIXES = re.compile(r"^(browserbase_|stagehand_)+", re.I)


def display_name(function: str) -> str:
    """`browserbase_stagehand_navigate` -> `navigate`."""
    return _PREFIXES.sub("", function).replace("_", " ")


def strip_session(arguments: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = dict(arguments)
    cleaned.pop(SESSION_ID_ARG, None)
    return cleaned


def display_arguments(arguments: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = strip_session(arguments)
    observation = cleaned.get("observation")
    if isinstance(observation, dict) and observation.get("method"):
        cleaned["observation"] = {**observation, "method": display_name(str(observation["method"]))}
    return cleaned
