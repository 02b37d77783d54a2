"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel


class NarrativeBody(BaseModel):
    """A narrative given inline as TOML, or as a path to a TOML file."""

    toml: str | None = None
    path: str | None = None


class TableSummary(BaseModel):
    name: str
    columns: dict[str, str]
    row_count: int
