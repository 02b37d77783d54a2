"""Table schemas for generated content.

A content table's layout comes from one of two places:

    template mode   copy the columns of an existing table, add bookkeeping columns
    inference mode  derive columns from the JSON fields of the first extracted items

Type mapping used by inference:

    string               -> text
    integral number      -> integer
    fractional number    -> decimal
    boolean              -> boolean
    list of one scalar   -> <scalar>[]   (e.g. text[])
    object / mixed list  -> document
    null                 -> text (nullable)

Once a table exists its schema is pinned. Later rows are validated against it
with validate_row(); mismatches raise SchemaConflictError for that row only.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ColumnType(str, Enum):
    TEXT = "text"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DOCUMENT = "document"
    TIMESTAMP = "timestamp"
    TEXT_ARRAY = "text[]"
    INTEGER_ARRAY = "integer[]"
    DECIMAL_ARRAY = "decimal[]"
    BOOLEAN_ARRAY = "boolean[]"

    @property
    def is_array(self) -> bool:
        return self.value.endswith("[]")

    @property
    def element(self) -> ColumnType:
        return ColumnType(self.value[:-2]) if self.is_array else self


class Column(BaseModel):
    name: str
    type: ColumnType
    nullable: bool = True
    default: Any = None


class TableSchema(BaseModel):
    name: str
    columns: list[Column]

    def column(self, name: str) -> Column | None:
        return next((c for c in self.columns if c.name == name), None)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def data_columns(self) -> list[Column]:
        return [c for c in self.columns if c.name not in BOOKKEEPING_NAMES]


BOOKKEEPING_COLUMNS: list[Column] = [
    Column(name="source_narrative", type=ColumnType.TEXT),
    Column(name="source_act", type=ColumnType.TEXT),
    Column(name="generation_model", type=ColumnType.TEXT),
    Column(name="status", type=ColumnType.TEXT, nullable=False, default="pending"),
    Column(name="generated_at", type=ColumnType.TIMESTAMP, nullable=False),
]
BOOKKEEPING_NAMES = frozenset(c.name for c in BOOKKEEPING_COLUMNS)


class SchemaConflictError(ValueError):
    """A row does not fit the pinned schema of its table."""

    def __init__(self, column: str, expected: str, actual: str) -> None:
        self.column = column
        self.expected = expected
        self.actual = actual
        super().__init__(f"column '{column}': expected {expected}, got {actual}")


# ── Type detection ───────────────────────────────────────


def json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "decimal"
    if isinstance(value, str):
        return "text"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


_SCALARS = {
    "text": ColumnType.TEXT,
    "integer": ColumnType.INTEGER,
    "decimal": ColumnType.DECIMAL,
    "boolean": ColumnType.BOOLEAN,
}


def infer_column_type(value: Any) -> ColumnType:
    kind = json_type_name(value)
    if kind == "null":
        return ColumnType.TEXT
    if kind in _SCALARS:
        return _SCALARS[kind]
    if kind == "array" and value:
        element_kinds = {json_type_name(v) for v in value}
        if len(element_kinds) == 1:
            (element,) = element_kinds
            if element in _SCALARS:
                return ColumnType(f"{_SCALARS[element].value}[]")
    return ColumnType.DOCUMENT


# ── Schema construction ──────────────────────────────────


def infer_schema(table_name: str, payload: dict[str, Any] | list[dict[str, Any]]) -> TableSchema:
    """Infer columns from extracted items.

    Columns appear in first-seen order. A field's type comes from its first
    non-null value; fields that are null everywhere become nullable text.
    """
    items = payload if isinstance(payload, list) else [payload]
    types: dict[str, ColumnType | None] = {}
    for item in items:
        for key, value in item.items():
            if key in BOOKKEEPING_NAMES:
                continue
            if types.get(key) is None:
                types[key] = None if value is None else infer_column_type(value)
    columns = [Column(name=k, type=t or ColumnType.TEXT) for k, t in types.items()]
    if not columns:
        raise SchemaConflictError("*", "at least one field", "an empty object")
    logger.debug("inferred schema for %s: %s", table_name, [(c.name, c.type.value) for c in columns])
    return TableSchema(name=table_name, columns=columns + list(BOOKKEEPING_COLUMNS))


def schema_from_template(table_name: str, template: TableSchema) -> TableSchema:
    columns = [c.model_copy() for c in template.columns if c.name not in BOOKKEEPING_NAMES]
    return TableSchema(name=table_name, columns=columns + list(BOOKKEEPING_COLUMNS))


# ── Row validation ───────────────────────────────────────


def _coerce_scalar(column: str, expected: ColumnType, value: Any) -> Any:
    actual = json_type_name(value)
    if expected == ColumnType.TEXT and actual == "text":
        return value
    if expected == ColumnType.INTEGER and actual == "integer":
        return value
    if expected == ColumnType.DECIMAL and actual in ("integer", "decimal"):
        return float(value)
    if expected == ColumnType.BOOLEAN and actual == "boolean":
        return value
    if expected == ColumnType.TIMESTAMP and actual == "text":
        try:
            datetime.fromisoformat(value)
        except ValueError:
            raise SchemaConflictError(column, "timestamp", f"text {value!r}") from None
        return value
    raise SchemaConflictError(column, expected.value, actual)


def validate_row(schema: TableSchema, item: dict[str, Any]) -> dict[str, Any]:
    """Return the row as it should be stored, or raise SchemaConflictError."""
    row: dict[str, Any] = {}
    for column in schema.data_columns:
        value = item.get(column.name)
        if value is None:
            if not column.nullable and column.default is None:
                raise SchemaConflictError(column.name, column.type.value, "null")
            row[column.name] = column.default
            continue

        if column.type == ColumnType.DOCUMENT:
            row[column.name] = value
        elif column.type.is_array:
            if not isinstance(value, list):
                raise SchemaConflictError(column.name, column.type.value, json_type_name(value))
            row[column.name] = [
                _coerce_scalar(column.name, column.type.element, v) for v in value
            ]
        else:
            row[column.name] = _coerce_scalar(column.name, column.type, value)

    extra = sorted(set(item) - set(schema.column_names))
    if extra:
        logger.debug("ignoring fields not in %s: %s", schema.name, extra)
    return row
