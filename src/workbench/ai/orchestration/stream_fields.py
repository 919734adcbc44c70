"""Best-effort extraction of display fields from a still-open JSON stream.

The full response cannot be parsed until the stream closes, yet the caller
wants to show ``thought``, ``plan`` and ``final_answer`` as they arrive. These
helpers scan the accumulated text with regular expressions and never raise.
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Pattern

from .types import StreamUpdate

__all__ = [
    "extract_string_field",
    "extract_string_array",
    "strip_stream_fence",
    "partial_update",
]

_STRING_BODY = r'((?:[^"\\]|\\.)*)'
_ESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)
_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", '"': '"', "\\": "\\"}
_QUOTED_RE = re.compile(r'"' + _STRING_BODY + r'"', re.DOTALL)
_ARRAY_SEPARATORS = " \t\r\n,"


def _decode(raw: str) -> str:
    # One pass, so "\\n" decodes to a backslash followed by "n".
    return _ESCAPE_RE.sub(lambda match: _ESCAPES.get(match.group(1), match.group(0)), raw)


@lru_cache(maxsize=32)
def _field_patterns(field: str) -> tuple[Pattern[str], Pattern[str]]:
    prefix = r'"' + re.escape(field) + r'"\s*:\s*"'
    closed = re.compile(prefix + _STRING_BODY + r'"', re.DOTALL)
    open_ = re.compile(prefix + _STRING_BODY, re.DOTALL)
    return closed, open_


@lru_cache(maxsize=32)
def _array_pattern(field: str) -> Pattern[str]:
    return re.compile(r'"' + re.escape(field) + r'"\s*:\s*\[')


def extract_string_field(text: str, field: str) -> str | None:
    """Return the decoded value of ``field`` or ``None`` if it has not started.

    A closed string wins; otherwise the partial value after the opening quote
    is returned.
    """

    if not text:
        return None
    closed, open_ = _field_patterns(field)
    match = closed.search(text) or open_.search(text)
    if match is None:
        return None
    return _decode(match.group(1))


def extract_string_array(text: str, field: str) -> list[str]:
    """Return the complete string items of the array ``field`` seen so far."""

    if not text:
        return []
    match = _array_pattern(field).search(text)
    if match is None:
        return []
    items: list[str] = []
    position = match.end()
    length = len(text)
    while position < length:
        char = text[position]
        if char in _ARRAY_SEPARATORS:
            position += 1
            continue
        if char != '"':
            break
        item = _QUOTED_RE.match(text, position)
        if item is None:
            break
        items.append(_decode(item.group(1)))
        position = item.end()
    return items


def strip_stream_fence(text: str) -> str:
    """Drop a leading Markdown code fence so keys are visible early."""

    if text.startswith("```json"):
        return text[len("```json"):]
    if text.startswith("```"):
        return text[3:]
    return text


def partial_update(raw_text: str) -> StreamUpdate:
    """Build the live display view for the accumulated stream text."""

    clean = strip_stream_fence(raw_text)
    return StreamUpdate(
        thought=extract_string_field(clean, "thought") or "",
        plan=tuple(extract_string_array(clean, "plan")),
        final_answer=extract_string_field(clean, "final_answer") or None,
        raw_text=raw_text,
    )
