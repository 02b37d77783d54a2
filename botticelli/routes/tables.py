"""Inspect generated tables and generation records."""

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from botticelli.storage import StorageError, TableNotFoundError

from .models import TableSummary

router = APIRouter()


@router.get("/tables")
def list_tables(request: Request) -> list[TableSummary]:
    repo = request.app.state.repository
    summaries = []
    for name in repo.list_tables():
        schema = repo.table_schema(name)
        summaries.append(TableSummary(
            name=name,
            columns={c.name: c.type.value for c in schema.columns} if schema else {},
            row_count=len(repo.get_rows(name)),
        ))
    return summaries


@router.get("/tables/{name}")
def get_table(name: str, request: Request, limit: int | None = None) -> dict[str, Any]:
    repo = request.app.state.repository
    try:
        schema = repo.table_schema(name)
        if schema is None:
            raise TableNotFoundError(name)
        rows = repo.get_rows(name, limit)
    except TableNotFoundError as e:
        raise HTTPException(404, str(e)) from e
    except StorageError as e:
        raise HTTPException(400, str(e)) from e
    return {"schema": schema.model_dump(mode="json"), "rows": rows}


@router.get("/generations")
def list_generations(request: Request, table: str | None = None) -> list[dict[str, Any]]:
    repo = request.app.state.repository
    return [r.model_dump(mode="json") for r in repo.list_generations(table)]
