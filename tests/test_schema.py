"""Tests for schema inference, template schemas and row validation."""

import pytest

from botticelli.schema import (
    BOOKKEEPING_NAMES,
    Column,
    ColumnType,
    SchemaConflictError,
    TableSchema,
    infer_column_type,
    infer_schema,
    schema_from_template,
    validate_row,
)


# ── Inference ──────────────────────────────────────────────


@pytest.mark.parametrize("value,expected", [
    ("x", ColumnType.TEXT),
    (3, ColumnType.INTEGER),
    (2.5, ColumnType.DECIMAL),
    (True, ColumnType.BOOLEAN),
    (None, ColumnType.TEXT),
    (["a", "b"], ColumnType.TEXT_ARRAY),
    ([1, 2], ColumnType.INTEGER_ARRAY),
    ([], ColumnType.DOCUMENT),
    ([1, "a"], ColumnType.DOCUMENT),
    ({"k": 1}, ColumnType.DOCUMENT),
])
def test_infer_column_type(value, expected) -> None:
    assert infer_column_type(value) == expected


def test_infer_schema_adds_bookkeeping() -> None:
    schema = infer_schema("posts", {"title": "t", "likes": 3, "tags": ["a"]})
    assert [c.name for c in schema.data_columns] == ["title", "likes", "tags"]
    assert BOOKKEEPING_NAMES <= set(schema.column_names)
    assert schema.column("likes").type == ColumnType.INTEGER
    assert schema.column("status").default == "pending"


def test_infer_schema_uses_first_non_null() -> None:
    schema = infer_schema("posts", [{"title": None}, {"title": "x", "n": 1.5}])
    assert schema.column("title").type == ColumnType.TEXT
    assert schema.column("n").type == ColumnType.DECIMAL


def test_infer_schema_empty_object_rejected() -> None:
    with pytest.raises(SchemaConflictError):
        infer_schema("posts", {})


def test_schema_from_template_keeps_columns() -> None:
    template = TableSchema(name="post_template", columns=[
        Column(name="title", type=ColumnType.TEXT, nullable=False),
        Column(name="score", type=ColumnType.DECIMAL),
        Column(name="status", type=ColumnType.TEXT),
    ])
    schema = schema_from_template("weekly", template)
    assert schema.name == "weekly"
    assert [c.name for c in schema.data_columns] == ["title", "score"]
    assert schema.column("title").nullable is False
    assert schema.column("status").default == "pending"


# ── Validation ─────────────────────────────────────────────


SCHEMA = infer_schema("posts", {"a": 1, "b": "x", "score": 1.5, "tags": ["t"], "meta": {"k": 1}})


def test_valid_row() -> None:
    row = validate_row(SCHEMA, {"a": 2, "b": "y", "score": 2, "tags": ["u", "v"], "meta": [1]})
    assert row == {"a": 2, "b": "y", "score": 2.0, "tags": ["u", "v"], "meta": [1]}


def test_conflict_names_column() -> None:
    with pytest.raises(SchemaConflictError) as exc_info:
        validate_row(SCHEMA, {"a": "oops", "b": "z"})
    assert exc_info.value.column == "a"
    assert exc_info.value.expected == "integer"
    assert exc_info.value.actual == "text"


def test_bool_is_not_integer() -> None:
    with pytest.raises(SchemaConflictError, match="column 'a'"):
        validate_row(SCHEMA, {"a": True})


def test_nulls_and_missing_allowed() -> None:
    assert validate_row(SCHEMA, {"a": None})["b"] is None


def test_array_element_conflict() -> None:
    with pytest.raises(SchemaConflictError, match="column 'tags'"):
        validate_row(SCHEMA, {"tags": ["ok", 3]})


def test_extra_fields_ignored() -> None:
    row = validate_row(SCHEMA, {"a": 1, "unexpected": "value"})
    assert "unexpected" not in row


def test_not_null_template_column() -> None:
    schema = TableSchema(name="t", columns=[Column(name="title", type=ColumnType.TEXT, nullable=False)])
    with pytest.raises(SchemaConflictError, match="got null"):
        validate_row(schema, {})


def test_timestamp_column() -> None:
    schema = TableSchema(name="t", columns=[Column(name="at", type=ColumnType.TIMESTAMP)])
    assert validate_row(schema, {"at": "2024-05-01T10:00:00"}) == {"at": "2024-05-01T10:00:00"}
    with pytest.raises(SchemaConflictError, match="timestamp"):
        validate_row(schema, {"at": "next tuesday"})
