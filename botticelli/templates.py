"""Placeholders that splice earlier act responses into later inputs.

Supported forms, resolved against the current carousel iteration only:

    {{ previous }}                  response of the act immediately before
    {{ draft }}                     latest response of act `draft`
    {{ draft.json.posts.0.title }}  value inside the JSON found in `draft`'s response

Placeholders are parsed into `Placeholder` values first and resolved
just-in-time, when the act that uses them is about to run. Any failure
raises ResolutionError rather than rendering a blank.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from botticelli.models import ActExecution
from botticelli.processors.extraction import ExtractionError, extract_json, parse_json

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_NAME_RE = re.compile(r"^[A-Za-z_][\w-]*$")


class ResolutionError(RuntimeError):
    """Raised when an act's inputs cannot be resolved. Aborts the run."""

    def __init__(self, message: str, act: str | None = None) -> None:
        self.act = act
        super().__init__(message)


@dataclass(frozen=True)
class Placeholder:
    raw: str
    act: str | None  # None means "previous"
    json_path: tuple[str, ...] = ()

    @property
    def is_previous(self) -> bool:
        return self.act is None


def parse_placeholder(raw: str) -> Placeholder:
    expr = raw.strip()
    head, *rest = expr.split(".")
    if not _NAME_RE.match(head):
        raise ResolutionError(f"malformed placeholder '{{{{{expr}}}}}'")
    if rest and rest[0] != "json":
        raise ResolutionError(
            f"unsupported placeholder '{{{{{expr}}}}}': use {head}.json.<path> to read JSON fields"
        )
    path = tuple(rest[1:])
    if rest and not path:
        raise ResolutionError(f"placeholder '{{{{{expr}}}}}' has an empty JSON path")
    return Placeholder(raw=expr, act=None if head == "previous" else head, json_path=path)


def find_placeholders(text: str) -> list[Placeholder]:
    return [parse_placeholder(m.group(1)) for m in PLACEHOLDER_RE.finditer(text)]


def has_placeholders(text: str) -> bool:
    return PLACEHOLDER_RE.search(text) is not None


def resolve(placeholder: Placeholder, executions: list[ActExecution]) -> str:
    """Resolve one placeholder against the executions of the current iteration."""
    if placeholder.is_previous:
        if not executions:
            raise ResolutionError("{{previous}} used before any act has run")
        source = executions[-1]
    else:
        matches = [e for e in executions if e.act_name == placeholder.act]
        if not matches:
            raise ResolutionError(
                f"placeholder '{{{{{placeholder.raw}}}}}' refers to act "
                f"'{placeholder.act}' which has not run in this iteration"
            )
        source = matches[-1]

    if not placeholder.json_path:
        return source.response

    try:
        value: Any = parse_json(extract_json(source.response))
    except ExtractionError as e:
        raise ResolutionError(
            f"placeholder '{{{{{placeholder.raw}}}}}': response of '{source.act_name}' "
            f"is not JSON ({e})"
        ) from e

    for segment in placeholder.json_path:
        if isinstance(value, dict) and segment in value:
            value = value[segment]
        elif isinstance(value, list) and segment.isdigit() and int(segment) < len(value):
            value = value[int(segment)]
        else:
            raise ResolutionError(
                f"placeholder '{{{{{placeholder.raw}}}}}': path segment '{segment}' not found"
            )
    return value if isinstance(value, str) else json.dumps(value)


def render(text: str, executions: list[ActExecution]) -> str:
    """Substitute every placeholder in `text`."""
    return PLACEHOLDER_RE.sub(
        lambda m: resolve(parse_placeholder(m.group(1)), executions), text
    )


def render_value(value: Any, executions: list[ActExecution]) -> Any:
    """Render placeholders inside strings nested in dicts and lists."""
    if isinstance(value, str):
        return render(value, executions) if has_placeholders(value) else value
    if isinstance(value, list):
        return [render_value(v, executions) for v in value]
    if isinstance(value, dict):
        return {k: render_value(v, executions) for k, v in value.items()}
    return value
