"""Narrative definition loading.

A narrative file is TOML:

    [narrative]
    name = "weekly_posts"
    description = "Draft and format a batch of posts"
    template = "post_template"        # optional: copy schema from this table
    target = "weekly_posts_out"       # optional: output table override
    allowed_writes = ["announce"]     # write-style bot resources allowed to run

    [toc]
    order = ["draft", "format_json"]
    carousel = 2                      # or { iterations = 2 }

    [bots.get_stats]
    platform = "discord"
    command = "server.get_stats"
    args = { guild_id = "123" }

    [tables.recent]
    table = "weekly_posts_out"
    limit = 5

    [acts]
    draft = ["tables.recent", "Write a new post unlike the ones above."]
    format_json = "Convert the post above to a JSON object with title and body."

An act body is a bare string, an array of strings and inline tables, or a
table with `model` / `temperature` / `max_tokens` / `extract_output` and an
`input` array. `extract_output = true` (or false) overrides whether content
generation runs on that act.
A bare string is a resource reference when it looks like `bots.x`,
`tables.x` or `media.x`, a sub-narrative when it starts with `narrative:`,
and text otherwise.

`parse()` is pure. `NarrativeLibrary` loads a root narrative plus every
narrative it references and rejects composition cycles before anything runs.
"""

from __future__ import annotations

import logging
import re
import tomllib
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from botticelli.models import (
    Act,
    BotCommand,
    MediaInput,
    MediaResource,
    Narrative,
    ResourceRefInput,
    SubNarrativeInput,
    TableQuery,
    TextInput,
)

logger = logging.getLogger(__name__)

REF_PATTERN = re.compile(r"^(bots|tables|media)\.([A-Za-z_][\w-]*)$")
NARRATIVE_PREFIX = "narrative:"
MEDIA_TYPES = ("image", "audio", "video", "document")
RETENTIONS = ("full", "summary", "drop")

_RESOURCE_MODELS = {
    "bots": BotCommand,
    "tables": TableQuery,
    "media": MediaResource,
}


class DefinitionError(ValueError):
    """Raised when a narrative definition is malformed or inconsistent."""

    def __init__(self, message: str, location: str | None = None) -> None:
        self.location = location
        super().__init__(f"{location}: {message}" if location else message)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def parse(raw_text: str, source_path: str | None = None) -> Narrative:
    """Parse and validate a narrative definition."""
    try:
        data = tomllib.loads(raw_text)
    except tomllib.TOMLDecodeError as e:
        raise DefinitionError(f"invalid TOML: {e}", location=source_path) from e
    return _build_narrative(data, source_path)


def load_file(path: str | Path) -> Narrative:
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DefinitionError(f"cannot read narrative file: {e}", location=str(path)) from e
    return parse(raw, source_path=str(path))


def _build_narrative(data: dict[str, Any], source_path: str | None) -> Narrative:
    header = data.get("narrative")
    if not isinstance(header, dict):
        raise DefinitionError("missing [narrative] section", location=source_path)
    name = header.get("name")
    if not isinstance(name, str) or not name.strip():
        raise DefinitionError("[narrative] requires a non-empty 'name'", location=source_path)

    where = f"narrative '{name}'"
    toc = data.get("toc")
    if not isinstance(toc, dict):
        raise DefinitionError("missing [toc] section", location=where)
    order = toc.get("order")
    if not isinstance(order, list) or not order:
        raise DefinitionError("[toc] order must be a non-empty array", location=where)
    if not all(isinstance(entry, str) for entry in order):
        raise DefinitionError("[toc] order entries must be strings", location=where)

    carousel_count = _parse_carousel(toc.get("carousel", header.get("carousel", 1)), where)

    resources = {
        namespace: _parse_resources(data.get(namespace), namespace, where)
        for namespace in _RESOURCE_MODELS
    }

    raw_acts = data.get("acts", {})
    if not isinstance(raw_acts, dict):
        raise DefinitionError("[acts] must be a table", location=where)
    acts = {
        act_name: _parse_act(act_name, body, resources)
        for act_name, body in raw_acts.items()
    }

    # Order entries that are not local acts become single-input acts.
    for entry in order:
        if entry in acts:
            continue
        if REF_PATTERN.match(entry) or entry.startswith(NARRATIVE_PREFIX):
            acts[entry] = Act(name=entry, inputs=[_parse_input_string(entry, entry, resources)])
            continue
        raise DefinitionError(
            f"toc entry '{entry}' does not match any act or resource", location=where
        )

    allowed_writes = header.get("allowed_writes", [])
    if not isinstance(allowed_writes, list):
        raise DefinitionError("'allowed_writes' must be an array", location=where)
    for bot_name in allowed_writes:
        if bot_name not in resources["bots"]:
            raise DefinitionError(
                f"allowed_writes names unknown bot command '{bot_name}'", location=where
            )

    try:
        narrative = Narrative(
            name=name,
            description=header.get("description", ""),
            model=header.get("model"),
            temperature=header.get("temperature"),
            max_tokens=header.get("max_tokens"),
            order=order,
            carousel_count=carousel_count,
            acts=acts,
            bots=resources["bots"],
            tables=resources["tables"],
            media=resources["media"],
            template_table=header.get("template"),
            target_table=header.get("target"),
            skip_content_generation=header.get("skip_content_generation", False),
            allowed_writes=allowed_writes,
            source_path=source_path,
        )
    except ValidationError as e:
        raise DefinitionError(str(e), location=where) from e

    for ref in narrative.sub_narrative_refs():
        if ref.name == narrative.name:
            raise DefinitionError(f"narrative '{name}' references itself", location=where)

    logger.debug(
        "parsed narrative=%s acts=%d carousel=%d", name, len(narrative.order), carousel_count
    )
    return narrative


def _parse_carousel(value: Any, where: str) -> int:
    if isinstance(value, dict):
        value = value.get("iterations", 1)
    if isinstance(value, bool) or not isinstance(value, int):
        raise DefinitionError("carousel must be an integer", location=where)
    if value < 1:
        raise DefinitionError(f"carousel must be at least 1, got {value}", location=where)
    return value


def _parse_resources(raw: Any, namespace: str, where: str) -> dict[str, Any]:
    """Accept `[bots.name]` tables or `[[bots]]` arrays with a `name` key."""
    if raw is None:
        return {}
    model = _RESOURCE_MODELS[namespace]

    if isinstance(raw, dict):
        entries = [{**body, "name": key} for key, body in raw.items() if isinstance(body, dict)]
        if len(entries) != len(raw):
            raise DefinitionError(f"every [{namespace}] entry must be a table", location=where)
    elif isinstance(raw, list):
        entries = raw
    else:
        raise DefinitionError(f"[{namespace}] must be a table or array of tables", location=where)

    resources: dict[str, Any] = {}
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise DefinitionError(f"every [[{namespace}]] entry needs a 'name'", location=where)
        res_name = entry["name"]
        if res_name in resources:
            raise DefinitionError(f"duplicate resource '{namespace}.{res_name}'", location=where)
        try:
            resources[res_name] = model.model_validate(entry)
        except ValidationError as e:
            raise DefinitionError(
                f"invalid resource '{namespace}.{res_name}': {e}", location=where
            ) from e
    return resources


def _parse_act(act_name: str, body: Any, resources: dict[str, dict]) -> Act:
    where = f"act '{act_name}'"
    overrides: dict[str, Any] = {}

    if isinstance(body, str):
        items: list[Any] = [body]
    elif isinstance(body, list):
        items = body
    elif isinstance(body, dict):
        items = body.get("input", body.get("inputs", []))
        if isinstance(items, (str, dict)):
            items = [items]
        for key in ("model", "temperature", "max_tokens", "extract_output"):
            if key in body:
                overrides[key] = body[key]
        if "extract_output" in overrides and not isinstance(overrides["extract_output"], bool):
            raise DefinitionError("extract_output must be true or false", location=where)
    else:
        raise DefinitionError("act body must be a string, array or table", location=where)

    if not items:
        raise DefinitionError("act has no inputs", location=where)

    inputs = []
    for item in items:
        if isinstance(item, str):
            inputs.append(_parse_input_string(item, act_name, resources))
        elif isinstance(item, dict):
            inputs.append(_parse_input_table(item, act_name, resources))
        else:
            raise DefinitionError(f"unsupported input {item!r}", location=where)

    try:
        return Act(name=act_name, inputs=inputs, **overrides)
    except ValidationError as e:
        raise DefinitionError(str(e), location=where) from e


def _parse_input_string(
    value: str, act_name: str, resources: dict[str, dict], retention: str = "full"
):
    where = f"act '{act_name}'"
    stripped = value.strip()

    match = REF_PATTERN.match(stripped)
    if match:
        namespace, ref_name = match.groups()
        if ref_name not in resources[namespace]:
            raise DefinitionError(f"unknown resource '{stripped}'", location=where)
        return ResourceRefInput(namespace=namespace, name=ref_name, history_retention=retention)

    if stripped.startswith(NARRATIVE_PREFIX):
        target = stripped[len(NARRATIVE_PREFIX):].strip()
        if not target:
            raise DefinitionError("'narrative:' reference has no name", location=where)
        return SubNarrativeInput(name=target, history_retention=retention)

    if not stripped:
        raise DefinitionError("text input is empty", location=where)
    return TextInput(text=value, history_retention=retention)


def _parse_input_table(item: dict[str, Any], act_name: str, resources: dict[str, dict]):
    where = f"act '{act_name}'"
    retention = item.get("history_retention", "full")
    if retention not in RETENTIONS:
        raise DefinitionError(
            f"history_retention must be one of {', '.join(RETENTIONS)}, got '{retention}'",
            location=where,
        )

    if "ref" in item:
        ref = str(item["ref"]).strip()
        if not REF_PATTERN.match(ref):
            raise DefinitionError(f"malformed resource reference '{ref}'", location=where)
        return _parse_input_string(ref, act_name, resources, retention)

    input_type = item.get("type", "text")
    if "narrative" in item or input_type == "narrative":
        target = item.get("narrative", item.get("name"))
        if not target:
            raise DefinitionError("narrative input needs a name", location=where)
        return SubNarrativeInput(name=target, path=item.get("path"), history_retention=retention)

    if input_type == "text":
        content = item.get("content", item.get("text"))
        if not isinstance(content, str) or not content.strip():
            raise DefinitionError("text input is empty", location=where)
        return TextInput(text=content, history_retention=retention)

    if input_type in MEDIA_TYPES:
        source = item.get("source") or item.get("url") or item.get("file") or item.get("base64")
        if not source:
            raise DefinitionError(
                f"{input_type} input needs one of source, url, file or base64", location=where
            )
        return MediaInput(
            media_type=input_type,
            source=source,
            mime=item.get("mime"),
            history_retention=retention,
        )

    raise DefinitionError(f"unknown input type '{input_type}'", location=where)


# ---------------------------------------------------------------------------
# NarrativeLibrary: every narrative reachable from a root, keyed by name
# ---------------------------------------------------------------------------

class NarrativeLibrary:
    """Narratives addressable by name, with composition checked for cycles."""

    def __init__(self, narratives: list[Narrative] | None = None) -> None:
        self._narratives: dict[str, Narrative] = {}
        for narrative in narratives or []:
            self.add(narrative)

    def __contains__(self, name: str) -> bool:
        return name in self._narratives

    def __len__(self) -> int:
        return len(self._narratives)

    def names(self) -> list[str]:
        return sorted(self._narratives)

    def get(self, name: str) -> Narrative | None:
        return self._narratives.get(name)

    def add(self, narrative: Narrative) -> None:
        existing = self._narratives.get(narrative.name)
        if existing is not None and existing != narrative:
            raise DefinitionError(f"narrative '{narrative.name}' is already defined")
        self._narratives[narrative.name] = narrative

    def load(self, path: str | Path) -> Narrative:
        """Load a narrative file and every narrative it references, then check cycles."""
        root = self._load_tree(Path(path), expected=None)
        self.check_cycles()
        return root

    def _load_tree(self, path: Path, expected: str | None) -> Narrative:
        narrative = load_file(path)
        if expected is not None and narrative.name != expected:
            raise DefinitionError(
                f"file defines narrative '{narrative.name}', expected '{expected}'",
                location=str(path),
            )
        self.add(narrative)

        for ref in narrative.sub_narrative_refs():
            if ref.name in self._narratives:
                continue
            child_path = Path(ref.path) if ref.path else Path(f"{ref.name}.toml")
            if not child_path.is_absolute():
                child_path = path.parent / child_path
            if not child_path.is_file():
                raise DefinitionError(
                    f"referenced narrative '{ref.name}' not found at {child_path}",
                    location=str(path),
                )
            self._load_tree(child_path, expected=ref.name)
        return narrative

    def check_cycles(self) -> None:
        """Depth-first search over composition edges; raise on the first cycle found."""
        white, grey, black = 0, 1, 2
        colour = {name: white for name in self._narratives}

        def visit(name: str, trail: list[str]) -> None:
            colour[name] = grey
            for ref in self._narratives[name].sub_narrative_refs():
                child = ref.name
                if child not in self._narratives:
                    continue
                if colour[child] == grey:
                    path = trail + [name]
                    cycle = path[path.index(child):] + [child]
                    raise DefinitionError(f"narrative cycle: {' -> '.join(cycle)}")
                if colour[child] == white:
                    visit(child, trail + [name])
            colour[name] = black

        for name in sorted(self._narratives):
            if colour[name] == white:
                visit(name, [])


def describe(narrative: Narrative) -> dict[str, Any]:
    """Short summary of a validated narrative, for validation responses."""
    return {
        "name": narrative.name,
        "description": narrative.description,
        "order": list(narrative.order),
        "carousel_count": narrative.carousel_count,
        "acts": {
            name: [spec.kind for spec in act.inputs] for name, act in narrative.acts.items()
        },
        "resources": {
            "bots": sorted(narrative.bots),
            "tables": sorted(narrative.tables),
            "media": sorted(narrative.media),
        },
        "sub_narratives": sorted({ref.name for ref in narrative.sub_narrative_refs()}),
        "output_table": None if narrative.skip_content_generation else (
            narrative.target_table or narrative.template_table or narrative.name
        ),
    }
