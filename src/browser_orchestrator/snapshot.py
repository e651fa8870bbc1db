"""Snapshot extraction from tool provider results.

Providers return page captures in several shapes. Each strategy below looks at
the normalized content items of one tool result and either returns a value or
``None``; strategies are tried in priority order and the first match wins.

* ``direct_image``: an ``image`` content item with base64 ``data``.
* ``delimited_block``: a ``data:image/...;base64,...`` block inside text.
* ``url_reference``: an http(s) link to an image file inside text.
* ``bulk_encoded``: a text item that is nothing but a long base64 payload.

Every strategy except ``url_reference`` yields a ``data:`` URL directly. URL
references need a fetch, which the session client performs before handing the
snapshot to callers, so callers only ever see ``data:`` URLs.
"""
from __future__ import annotations

import base64
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence

DEFAULT_MIME = "image/png"

_DATA_URL = re.compile(r"data:image/[^;\s]+;base64,[A-Za-z0-9+/=]+")
_IMAGE_URL = re.compile(r"https?://[^\s\"'<>)]+\.(?:png|jpe?g|gif|webp)(?:\?[^\s\"'<>)]*)?", re.I)
_BULK_BASE64 = re.compile(r"^[A-Za-z0-9+/\r\n]+={0,2}$")
_MIN_BULK_LENGTH = 100

_MAGIC_PREFIXES = (
    ("iVBORw0KGgo", "image/png"),
    ("/9j/", "image/jpeg"),
    ("R0lGOD", "image/gif"),
    ("UklGR", "image/webp"),
)

ContentItems = Sequence[dict[str, Any]]


@dataclass(frozen=True)
class Snapshot:
    strategy: str
    value: str

    @property
    def needs_fetch(self) -> bool:
        return not self.value.startswith("data:")


def sniff_mime(payload: str) -> str:
    for prefix, mime in _MAGIC_PREFIXES:
        if payload.startswith(prefix):
            return mime
    return DEFAULT_MIME


def normalize_data_url(payload: str, mime_type: Optional[str] = None) -> str:
    """Wrap a bare base64 payload into a data URL; leave data URLs alone."""
    payload = payload.strip()
    if payload.startswith("data:image"):
        return payload
    compact = re.sub(r"\s+", "", payload)
    return f"data:{mime_type or sniff_mime(compact)};base64,{compact}"


def encode_bytes(raw: bytes, mime_type: Optional[str] = None) -> str:
    encoded = base64.b64encode(raw).decode("ascii")
    return normalize_data_url(encoded, mime_type)


def _texts(content: ContentItems) -> Iterable[str]:
    for item in content:
        if item.get("type") == "text" and isinstance(item.get("text"), str):
            yield item["text"]


def direct_image(content: ContentItems) -> Optional[str]:
    for item in content:
        if item.get("type") == "image" and item.get("data"):
            return normalize_data_url(str(item["data"]), item.get("mimeType"))
    return None


def delimited_block(content: ContentItems) -> Optional[str]:
    for text in _texts(content):
        match = _DATA_URL.search(text)
        if match:
            return match.group(0)
    return None


def url_reference(content: ContentItems) -> Optional[str]:
    for text in _texts(content):
        match = _IMAGE_URL.search(text)
        if match:
            return match.group(0)
    return None


def bulk_encoded(content: ContentItems) -> Optional[str]:
    for text in _texts(content):
        candidate = text.strip()
        if len(candidate) >= _MIN_BULK_LENGTH and _BULK_BASE64.match(candidate):
            return normalize_data_url(candidate)
    return None


STRATEGIES: tuple[tuple[str, Callable[[ContentItems], Optional[str]]], ...] = (
    ("direct_image", direct_image),
    ("delimited_block", delimited_block),
    ("url_reference", url_reference),
    ("bulk_encoded", bulk_encoded),
)


# Structurally unambiguous encodings, safe to look for in any tool result.
EMBEDDED_STRATEGIES = STRATEGIES[:2]


def extract_snapshot(
    content: ContentItems,
    strategies: Sequence[tuple[str, Callable[[ContentItems], Optional[str]]]] = STRATEGIES,
) -> Optional[Snapshot]:
    for name, strategy in strategies:
        value = strategy(content)
        if value:
            return Snapshot(strategy=name, value=value)
    return None
