"""Helpers for pulling structured data out of free-form model replies."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` wrapper if the whole reply is fenced."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def find_json_object_span(text: str) -> tuple[int, int] | None:
    """Return (start, end) of the first balanced `{...}` span, end exclusive.

    Braces inside quoted strings are ignored, and a backslash escapes the next
    character while inside a string.
    """
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            if depth > 0:
                in_string = True
            continue
        if char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                return start, index + 1
    return None


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    """Parse the first JSON object found in a model reply, or None."""
    if not raw_text:
        return None
    text = strip_code_fences(raw_text)
    search_from = 0
    while search_from < len(text):
        span = find_json_object_span(text[search_from:])
        if span is None:
            return None
        start, end = span[0] + search_from, span[1] + search_from
        try:
            parsed = json.loads(text[start:end])
        except json.JSONDecodeError:
            search_from = start + 1
            continue
        if isinstance(parsed, dict):
            return parsed
        search_from = end
    return None
