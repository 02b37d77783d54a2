"""Find and parse JSON embedded in free-form model output.

Models wrap structured output in prose, markdown fences, or both. Candidates
are tried in order:

    1. a ```json fenced block (an unclosed fence runs to the end of the text)
    2. a balanced {...} or [...] region, whichever opens first
    3. the other bracket kind

The balanced scan skips brackets inside JSON strings, including escaped quotes.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```json[ \t]*\r?\n?(.*?)(?:```|\Z)", re.DOTALL | re.IGNORECASE)
PREVIEW_CHARS = 100


class ExtractionError(ValueError):
    """No usable JSON could be found in a response."""


def _preview(text: str) -> str:
    text = text.strip()
    return text if len(text) <= PREVIEW_CHARS else text[:PREVIEW_CHARS] + "..."


def _balanced(text: str, opener: str, closer: str) -> str | None:
    start = text.find(opener)
    if start == -1:
        return None
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
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_json(response: str) -> str:
    """Return the JSON text embedded in `response`."""
    fence = _FENCE_RE.search(response)
    if fence and fence.group(1).strip():
        return fence.group(1).strip()

    obj_at = response.find("{")
    arr_at = response.find("[")
    scans = [("{", "}"), ("[", "]")]
    if arr_at != -1 and (obj_at == -1 or arr_at < obj_at):
        scans.reverse()
    for opener, closer in scans:
        candidate = _balanced(response, opener, closer)
        if candidate is not None:
            return candidate

    raise ExtractionError(
        f"no JSON found in response (expected a ```json block, an object or an array): "
        f"{_preview(response)!r}"
    )


def parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ExtractionError(f"invalid JSON ({e.msg} at line {e.lineno}): {_preview(text)!r}") from e


def extract_items(response: str) -> list[dict[str, Any]]:
    """Extract a single object or an array of objects from a response."""
    data = parse_json(extract_json(response))
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        if not all(isinstance(item, dict) for item in data):
            raise ExtractionError("JSON array must contain only objects")
        return data
    raise ExtractionError(f"expected a JSON object or array, got {type(data).__name__}")
