"""Repositories for generated tables and generation records.

The engine only needs the narrow Repository protocol below. Two
implementations ship with the package:

    InMemoryRepository  dicts behind a lock; tests and throwaway runs
    JsonFileRepository  flat JSON files under a base directory

JsonFileRepository directory layout:

    {base}/
      tables/
        {name}.json         ← {"schema": TableSchema, "rows": [...]}
      generations.json      ← list of ContentGenerationRecord

Both guard their state with a threading.Lock so one repository can be shared
by concurrent runs. Locks are never held across an await: every method is
synchronous.
"""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Literal, Protocol

from botticelli.models import ContentGenerationRecord, TableQuery, utcnow
from botticelli.schema import TableSchema

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][\w-]*$")

Outcome = Literal["success", "failed"]


class StorageError(RuntimeError):
    """Raised when the repository cannot complete an operation."""


class TableNotFoundError(StorageError):
    def __init__(self, table: str) -> None:
        self.table = table
        super().__init__(f"table '{table}' not found")


class Repository(Protocol):
    def ensure_table(self, schema: TableSchema) -> TableSchema: ...
    def table_schema(self, name: str) -> TableSchema | None: ...
    def insert_rows(self, table: str, rows: list[dict[str, Any]]) -> int: ...
    def query(self, query: TableQuery) -> list[dict[str, Any]]: ...
    def get_rows(self, table: str, limit: int | None = None) -> list[dict[str, Any]]: ...
    def list_tables(self) -> list[str]: ...
    def start_generation(self, record: ContentGenerationRecord) -> int: ...
    def record_rows(self, record_id: int, count: int) -> None: ...
    def complete_generation(
        self, record_id: int, outcome: Outcome, error: str | None = None
    ) -> ContentGenerationRecord: ...
    def list_generations(self, table: str | None = None) -> list[ContentGenerationRecord]: ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def check_table_name(name: str) -> str:
    if not _TABLE_NAME_RE.match(name):
        raise StorageError(f"invalid table name '{name}'")
    return name


def _sort_key(value: Any) -> tuple:
    # numbers before everything else; mixed types fall back to their string form
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


def apply_query(rows: list[dict[str, Any]], query: TableQuery) -> list[dict[str, Any]]:
    """Filter, order, page and project rows the way a SQL backend would."""
    selected = rows
    if query.where:
        selected = [
            r for r in selected
            if all(r.get(col) == val for col, val in query.where.items())
        ]
    if query.order_by:
        spec = query.order_by.strip()
        descending = spec.startswith("-") or spec.lower().endswith(" desc")
        column = spec.lstrip("-").split()[0]
        present = [r for r in selected if r.get(column) is not None]
        missing = [r for r in selected if r.get(column) is None]
        # rows without a value sort last in either direction
        selected = sorted(present, key=lambda r: _sort_key(r[column]), reverse=descending) + missing
    start = query.offset or 0
    selected = selected[start:start + query.limit]
    if query.columns:
        selected = [{c: r.get(c) for c in query.columns} for r in selected]
    return [dict(r) for r in selected]


def _with_bookkeeping(schema: TableSchema, row: dict[str, Any]) -> dict[str, Any]:
    stored = dict(row)
    for column in schema.columns:
        if stored.get(column.name) is None and column.default is not None:
            stored[column.name] = column.default
    if stored.get("generated_at") is None:
        stored["generated_at"] = utcnow().isoformat()
    return stored


def _complete(record: ContentGenerationRecord, outcome: Outcome, error: str | None) -> None:
    record.status = outcome
    record.completed_at = utcnow()
    record.duration_ms = int((record.completed_at - record.generated_at).total_seconds() * 1000)
    record.error_message = error


# ---------------------------------------------------------------------------
# InMemoryRepository
# ---------------------------------------------------------------------------

class InMemoryRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._schemas: dict[str, TableSchema] = {}
        self._rows: dict[str, list[dict[str, Any]]] = {}
        self._generations: dict[int, ContentGenerationRecord] = {}
        self._next_id = 1

    def ensure_table(self, schema: TableSchema) -> TableSchema:
        """Create the table if missing. An existing table keeps its schema."""
        check_table_name(schema.name)
        with self._lock:
            existing = self._schemas.get(schema.name)
            if existing is not None:
                return existing
            self._schemas[schema.name] = schema
            self._rows[schema.name] = []
            return schema

    def table_schema(self, name: str) -> TableSchema | None:
        with self._lock:
            return self._schemas.get(name)

    def insert_rows(self, table: str, rows: list[dict[str, Any]]) -> int:
        with self._lock:
            schema = self._schemas.get(table)
            if schema is None:
                raise TableNotFoundError(table)
            self._rows[table].extend(_with_bookkeeping(schema, r) for r in rows)
            return len(rows)

    def query(self, query: TableQuery) -> list[dict[str, Any]]:
        with self._lock:
            if query.table not in self._rows:
                raise TableNotFoundError(query.table)
            return apply_query(self._rows[query.table], query)

    def get_rows(self, table: str, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            if table not in self._rows:
                raise TableNotFoundError(table)
            rows = self._rows[table]
            return [dict(r) for r in (rows[:limit] if limit is not None else rows)]

    def list_tables(self) -> list[str]:
        with self._lock:
            return sorted(self._schemas)

    def start_generation(self, record: ContentGenerationRecord) -> int:
        with self._lock:
            record_id = self._next_id
            self._next_id += 1
            self._generations[record_id] = record.model_copy(update={"id": record_id})
            return record_id

    def record_rows(self, record_id: int, count: int) -> None:
        with self._lock:
            self._get_record(record_id).row_count += count

    def complete_generation(
        self, record_id: int, outcome: Outcome, error: str | None = None
    ) -> ContentGenerationRecord:
        with self._lock:
            record = self._get_record(record_id)
            _complete(record, outcome, error)
            return record.model_copy()

    def list_generations(self, table: str | None = None) -> list[ContentGenerationRecord]:
        with self._lock:
            return [
                r.model_copy() for r in self._generations.values()
                if table is None or r.table_name == table
            ]

    def _get_record(self, record_id: int) -> ContentGenerationRecord:
        record = self._generations.get(record_id)
        if record is None:
            raise StorageError(f"generation record {record_id} not found")
        return record


# ---------------------------------------------------------------------------
# JsonFileRepository
# ---------------------------------------------------------------------------

class JsonFileRepository:
    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._tables_dir = self._base / "tables"
        self._tables_dir.mkdir(parents=True, exist_ok=True)
        self._generations_file = self._base / "generations.json"
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _table_file(self, name: str) -> Path:
        return self._tables_dir / f"{check_table_name(name)}.json"

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"cannot read {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        try:
            path.write_text(json.dumps(data, indent=2, default=str))
        except OSError as e:
            raise StorageError(f"cannot write {path}: {e}") from e

    def _read_table(self, name: str) -> dict[str, Any]:
        path = self._table_file(name)
        if not path.exists():
            raise TableNotFoundError(name)
        return self._read_json(path)

    def _read_generations(self) -> list[ContentGenerationRecord]:
        if not self._generations_file.exists():
            return []
        return [ContentGenerationRecord.model_validate(r) for r in self._read_json(self._generations_file)]

    def _write_generations(self, records: list[ContentGenerationRecord]) -> None:
        self._write_json(self._generations_file, [r.model_dump(mode="json") for r in records])

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def ensure_table(self, schema: TableSchema) -> TableSchema:
        with self._lock:
            path = self._table_file(schema.name)
            if path.exists():
                return TableSchema.model_validate(self._read_json(path)["schema"])
            self._write_json(path, {"schema": schema.model_dump(mode="json"), "rows": []})
            return schema

    def table_schema(self, name: str) -> TableSchema | None:
        with self._lock:
            path = self._table_file(name)
            if not path.exists():
                return None
            return TableSchema.model_validate(self._read_json(path)["schema"])

    def insert_rows(self, table: str, rows: list[dict[str, Any]]) -> int:
        with self._lock:
            data = self._read_table(table)
            schema = TableSchema.model_validate(data["schema"])
            data["rows"].extend(_with_bookkeeping(schema, r) for r in rows)
            self._write_json(self._table_file(table), data)
            return len(rows)

    def query(self, query: TableQuery) -> list[dict[str, Any]]:
        with self._lock:
            return apply_query(self._read_table(query.table)["rows"], query)

    def get_rows(self, table: str, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._read_table(table)["rows"]
            return rows[:limit] if limit is not None else rows

    def list_tables(self) -> list[str]:
        with self._lock:
            return sorted(p.stem for p in self._tables_dir.glob("*.json"))

    # ------------------------------------------------------------------
    # Generation records
    # ------------------------------------------------------------------

    def start_generation(self, record: ContentGenerationRecord) -> int:
        with self._lock:
            records = self._read_generations()
            record_id = max((r.id or 0 for r in records), default=0) + 1
            records.append(record.model_copy(update={"id": record_id}))
            self._write_generations(records)
            return record_id

    def record_rows(self, record_id: int, count: int) -> None:
        with self._lock:
            records = self._read_generations()
            self._find(records, record_id).row_count += count
            self._write_generations(records)

    def complete_generation(
        self, record_id: int, outcome: Outcome, error: str | None = None
    ) -> ContentGenerationRecord:
        with self._lock:
            records = self._read_generations()
            record = self._find(records, record_id)
            _complete(record, outcome, error)
            self._write_generations(records)
            return record

    def list_generations(self, table: str | None = None) -> list[ContentGenerationRecord]:
        with self._lock:
            return [r for r in self._read_generations() if table is None or r.table_name == table]

    @staticmethod
    def _find(records: list[ContentGenerationRecord], record_id: int) -> ContentGenerationRecord:
        for record in records:
            if record.id == record_id:
                return record
        raise StorageError(f"generation record {record_id} not found")
