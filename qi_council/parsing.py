"""JSON object extraction from free-form model text."""

import json
from typing import Any


def _matching_brace(text: str, start: int) -> int | None:
    """Return the index of the brace closing the one at text[start], or None.

    Braces inside JSON string literals are ignored.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def balanced_candidates(text: str) -> list[str]:
    """Return every balanced {...} substring, longest first.

    Candidates of equal length keep their order of appearance.
    """
    candidates = []
    for start, ch in enumerate(text):
        if ch != "{":
            continue
        end = _matching_brace(text, start)
        if end is not None:
            candidates.append(text[start:end + 1])
    candidates.sort(key=len, reverse=True)
    return candidates


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Extract the largest JSON object embedded in text.

    Handles code fences, leading/trailing prose and several JSON-like
    fragments in one reply. Returns None when nothing parses to an object.
    """
    if not text:
        return None

    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            value = json.loads(stripped)
        except json.JSONDecodeError:
            pass
        else:
            if isinstance(value, dict):
                return value

    for candidate in balanced_candidates(text):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None
