"""Turns an act's input specs into concrete content parts.

    text        -> one text part
    media       -> one media part (mime guessed from the source when missing)
    bots.x      -> execute the bot command, render its result as JSON text
    tables.x    -> query the repository, render rows as json / markdown / csv
    narrative:x -> run the narrative, use its final response

Bot arguments and table `where` values may contain {{previous}} / {{act}}
placeholders; they are rendered just before the call.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import mimetypes
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from botticelli.bots import BotCommandError, BotRegistry, is_write_command
from botticelli.models import (
    ActExecution,
    BotCommand,
    ContentPart,
    MediaInput,
    MediaResource,
    Narrative,
    ResourceRefInput,
    SubNarrativeInput,
    TableQuery,
    TextInput,
)
from botticelli.storage import StorageError, TableNotFoundError
from botticelli.templates import ResolutionError, render_value

logger = logging.getLogger(__name__)

MAX_COMPOSITION_DEPTH = 5

# (sub-narrative input, depth) -> final response text
SubNarrativeRunner = Callable[[SubNarrativeInput, int], Awaitable[str]]


class TableSource(Protocol):
    def query(self, query: TableQuery) -> list[dict[str, Any]]: ...


# ── Row formatting ───────────────────────────────────────


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def format_rows(rows: list[dict[str, Any]], fmt: str) -> str:
    if fmt == "json":
        return json.dumps(rows, indent=2, default=str)

    columns: list[str] = []
    for row in rows:
        columns.extend(c for c in row if c not in columns)

    if fmt == "csv":
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(columns)
        for row in rows:
            writer.writerow([_cell(row.get(c)) for c in columns])
        return buf.getvalue()

    # markdown
    if not columns:
        return "_No rows._"
    lines = [
        "| " + " | ".join(columns) + " |",
        "| " + " | ".join("---" for _ in columns) + " |",
    ]
    for row in rows:
        cells = [_cell(row.get(c)).replace("|", "\\|").replace("\n", " ") for c in columns]
        lines.append("| " + " | ".join(cells) + " |")
    return "\n".join(lines)


# ── Resolver ─────────────────────────────────────────────


class ResourceResolver:
    """Resolves input specs for one narrative run.

    Args:
        narrative:        The narrative whose resources are being referenced.
        bots:             Bot command registry, or None when no platform is wired.
        tables:           Anything with a `query(TableQuery)` method.
        run_sub:          Callback that fully executes a sub-narrative.
        max_depth:        Deepest allowed sub-narrative nesting.
    """

    def __init__(
        self,
        narrative: Narrative,
        *,
        bots: BotRegistry | None = None,
        tables: TableSource | None = None,
        run_sub: SubNarrativeRunner | None = None,
        max_depth: int = MAX_COMPOSITION_DEPTH,
    ) -> None:
        self._narrative = narrative
        self._bots = bots
        self._tables = tables
        self._run_sub = run_sub
        self._max_depth = max_depth

    async def resolve(
        self, spec: Any, prior: list[ActExecution], depth: int = 0
    ) -> list[ContentPart]:
        retention = spec.history_retention

        if isinstance(spec, TextInput):
            return [ContentPart(kind="text", text=spec.text, retention=retention)]

        if isinstance(spec, MediaInput):
            return [self._media_part(spec.source, spec.mime, spec.media_type, retention)]

        if isinstance(spec, SubNarrativeInput):
            return [await self._resolve_sub_narrative(spec, depth)]

        if isinstance(spec, ResourceRefInput):
            resource = getattr(self._narrative, spec.namespace).get(spec.name)
            if resource is None:
                raise ResolutionError(f"unknown resource '{spec.ref}'")
            if isinstance(resource, BotCommand):
                return [await self._resolve_bot(resource, prior, retention)]
            if isinstance(resource, TableQuery):
                return [self._resolve_table(resource, prior, retention)]
            if isinstance(resource, MediaResource):
                return [self._media_part(resource.source, resource.mime, resource.name, retention)]

        raise ResolutionError(f"unsupported input {spec!r}")

    # ------------------------------------------------------------------

    def _media_part(self, source: str, mime: str | None, name: str, retention: str) -> ContentPart:
        guessed = mime or mimetypes.guess_type(source)[0] or "application/octet-stream"
        return ContentPart(
            kind="media",
            name=name,
            source=source,
            mime=guessed,
            text=f"[{name}: {source}]" if not source.startswith("data:") else f"[{name}]",
            retention=retention,
        )

    def _check_write_allowed(self, bot: BotCommand) -> None:
        if not (bot.write or is_write_command(bot.command)):
            return
        if bot.name not in self._narrative.allowed_writes:
            raise ResolutionError(
                f"bot command '{bot.name}' ({bot.platform}.{bot.command}) changes state on "
                f"the platform and is not listed in allowed_writes"
            )

    async def _resolve_bot(
        self, bot: BotCommand, prior: list[ActExecution], retention: str
    ) -> ContentPart:
        self._check_write_allowed(bot)
        if self._bots is None:
            raise ResolutionError(f"bot command '{bot.name}' needs a bot registry, none configured")

        args = render_value(bot.args, prior)
        try:
            result = await self._bots.execute(bot.platform, bot.command, args)
            text = result if isinstance(result, str) else json.dumps(result, indent=2, default=str)
        except BotCommandError as e:
            if bot.required:
                raise ResolutionError(f"required bot command '{bot.name}' failed: {e}") from e
            logger.warning("optional bot command %s failed: %s", bot.name, e)
            text = f"[Bot command '{bot.command}' failed: {e}]"

        return ContentPart(
            kind="bot",
            name=bot.name,
            platform=bot.platform,
            command=bot.command,
            text=text,
            retention=retention,
        )

    def _resolve_table(
        self, table: TableQuery, prior: list[ActExecution], retention: str
    ) -> ContentPart:
        if self._tables is None:
            raise ResolutionError(f"table query '{table.name}' needs a repository, none configured")
        query = table
        if table.where:
            query = table.model_copy(update={"where": render_value(table.where, prior)})

        label = table.alias or table.table
        try:
            rows = self._tables.query(query)
        except TableNotFoundError:
            # early carousel iterations may read a table that has no rows yet
            logger.info("table %s does not exist yet, using empty result", table.table)
            rows = []
        except StorageError as e:
            raise ResolutionError(f"table query '{table.name}' failed: {e}") from e

        return ContentPart(
            kind="table",
            name=label,
            text=format_rows(rows, table.format),
            row_count=len(rows),
            retention=retention,
        )

    async def _resolve_sub_narrative(self, spec: SubNarrativeInput, depth: int) -> ContentPart:
        if depth + 1 > self._max_depth:
            raise ResolutionError(
                f"narrative '{spec.name}' exceeds the maximum composition depth of {self._max_depth}"
            )
        if self._run_sub is None:
            raise ResolutionError(f"cannot run narrative '{spec.name}': no executor configured")
        text = await self._run_sub(spec, depth + 1)
        return ContentPart(kind="narrative", name=spec.name, text=text, retention=spec.history_retention)
