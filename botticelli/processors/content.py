"""Processors that persist structured model output as table rows.

ContentGenerationProcessor
    Runs on the final act of each carousel iteration (gate="iteration") or
    only on the final act of the run (gate="run"). Writes to the narrative's
    target table, else its template table, else a table named after the
    narrative. With a template and no target the rows land in the template
    table itself, next to whatever rows it already holds. An act's own
    extract_output setting overrides the gate in both directions. Inside a
    sub-narrative nothing is written unless the act opts in that way.

TableExtractionProcessor
    Runs on any act whose name or response matches its keywords and writes
    into one fixed table.

Both keep one ContentGenerationRecord per (run, table): it is started when the
first row is inserted, its row count grows with every batch, and it is closed
as success at the end of the run or as failed when a batch cannot be stored.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from botticelli.models import ContentGenerationRecord, NarrativeExecution, utcnow
from botticelli.processors.base import MatchingProcessor, ProcessorContext
from botticelli.processors.extraction import ExtractionError, extract_items
from botticelli.schema import (
    SchemaConflictError,
    TableSchema,
    infer_schema,
    schema_from_template,
    validate_row,
)
from botticelli.storage import Repository, StorageError, TableNotFoundError

logger = logging.getLogger(__name__)

Gate = Literal["iteration", "run"]


class RowRejectedError(ValueError):
    """Some extracted items did not fit the table schema. The others were stored."""

    def __init__(self, table: str, conflicts: list[tuple[int, SchemaConflictError]]) -> None:
        self.table = table
        self.conflicts = conflicts
        details = "; ".join(f"item {i}: {e}" for i, e in conflicts)
        super().__init__(f"{len(conflicts)} item(s) rejected by table '{table}': {details}")


class _ContentWriter:
    def __init__(self, repository: Repository) -> None:
        self._repo = repository
        self._records: dict[tuple[str, str], int] = {}

    def _resolve_schema(
        self, table: str, items: list[dict[str, Any]], template: str | None
    ) -> TableSchema:
        schema = self._repo.table_schema(table)
        if schema is not None:
            return schema
        if template:
            template_schema = self._repo.table_schema(template)
            if template_schema is None:
                raise TableNotFoundError(template)
            schema = schema_from_template(table, template_schema)
            logger.info("creating table %s from template %s", table, template)
        else:
            schema = infer_schema(table, items)
            logger.info("creating table %s with inferred schema", table)
        # an existing table wins; its schema is pinned
        return self._repo.ensure_table(schema)

    def _store(self, context: ProcessorContext, table: str, template: str | None = None) -> None:
        execution = context.execution
        key = (context.run.run_id, table)
        try:
            items = extract_items(execution.response)
            schema = self._resolve_schema(table, items, template)

            rows: list[dict[str, Any]] = []
            conflicts: list[tuple[int, SchemaConflictError]] = []
            for index, item in enumerate(items):
                try:
                    row = validate_row(schema, item)
                except SchemaConflictError as e:
                    conflicts.append((index, e))
                    continue
                row.update(
                    source_narrative=context.narrative.name,
                    source_act=execution.act_name,
                    generation_model=execution.model,
                    status="pending",
                    generated_at=utcnow().isoformat(),
                )
                rows.append(row)

            if rows:
                record_id = self._records.get(key)
                if record_id is None:
                    record_id = self._repo.start_generation(
                        ContentGenerationRecord(
                            table_name=table,
                            source_narrative=context.narrative.name,
                            source_act=execution.act_name,
                            generation_model=execution.model,
                        )
                    )
                    self._records[key] = record_id
                self._repo.insert_rows(table, rows)
                self._repo.record_rows(record_id, len(rows))
                logger.info(
                    "stored %d row(s) in %s from act %s (iteration %d)",
                    len(rows), table, execution.act_name, execution.iteration,
                )
        except (ExtractionError, StorageError) as e:
            self._fail(key, str(e))
            raise

        if context.is_last_act:
            self._finish(key)
        if conflicts:
            raise RowRejectedError(table, conflicts)

    def _finish(self, key: tuple[str, str]) -> None:
        record_id = self._records.pop(key, None)
        if record_id is not None:
            record = self._repo.complete_generation(record_id, "success")
            logger.info("generation %d for %s complete: %d row(s)", record_id, key[1], record.row_count)

    def _fail(self, key: tuple[str, str], error: str) -> None:
        record_id = self._records.pop(key, None)
        if record_id is not None:
            self._repo.complete_generation(record_id, "failed", error)

    def close_run(self, run: NarrativeExecution, error: str | None = None) -> None:
        """Close records a run left open, e.g. when it aborted before its last act."""
        for key in [k for k in self._records if k[0] == run.run_id]:
            if error is None:
                self._finish(key)
            else:
                self._fail(key, error)


class ContentGenerationProcessor(_ContentWriter):
    name = "content_generation"

    def __init__(self, repository: Repository, gate: Gate = "iteration") -> None:
        super().__init__(repository)
        if gate not in ("iteration", "run"):
            raise ValueError(f"gate must be 'iteration' or 'run', got {gate!r}")
        self._gate = gate

    def should_process(self, context: ProcessorContext) -> bool:
        if context.narrative.skip_content_generation:
            return False
        if context.extract_output is not None:
            return context.extract_output
        if context.depth > 0:
            # sub-narrative responses feed the parent act, not a table
            return False
        return context.is_iteration_end if self._gate == "iteration" else context.is_last_act

    async def process(self, context: ProcessorContext) -> None:
        narrative = context.narrative
        table = narrative.target_table or narrative.template_table or narrative.name
        self._store(context, table, template=narrative.template_table)


class TableExtractionProcessor(_ContentWriter, MatchingProcessor):
    def __init__(
        self,
        repository: Repository,
        table: str,
        act_keywords: tuple[str, ...] = (),
        content_markers: tuple[str, ...] = (),
    ) -> None:
        super().__init__(repository)
        self.name = f"table_extraction:{table}"
        self.table = table
        self.act_keywords = tuple(act_keywords)
        self.content_markers = tuple(content_markers)

    async def process(self, context: ProcessorContext) -> None:
        self._store(context, self.table)
