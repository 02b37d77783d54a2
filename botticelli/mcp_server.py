"""FastMCP server exposing narrative execution and generated tables as MCP tools.

Tools:
  - validate_narrative(toml)          parse and check a narrative, return a summary
  - execute_narrative(toml | path)    run a narrative, return the RunResult
  - list_tables()                     generated tables with their columns
  - get_table_rows(table, limit)      rows of one table

The engine wiring (repository, driver, bot registry, config) is module state
replaced via configure() for tests, or built from config when run as __main__.

Usage:
    python -m botticelli.mcp_server
"""

from typing import Any

from mcp.server.fastmcp import FastMCP

from botticelli.bots import BotRegistry
from botticelli.config import build_executor, get_config
from botticelli.llm import Driver, EchoDriver
from botticelli.loader import DefinitionError, NarrativeLibrary, describe, parse
from botticelli.storage import InMemoryRepository, Repository, StorageError

mcp = FastMCP("botticelli")

_repository: Repository = InMemoryRepository()
_driver: Driver = EchoDriver()
_bots: BotRegistry = BotRegistry()
_config: dict[str, Any] | None = None


def configure(
    *,
    repository: Repository | None = None,
    driver: Driver | None = None,
    bots: BotRegistry | None = None,
    config: dict[str, Any] | None = None,
) -> None:
    """Replace the active engine wiring (used in tests and by __main__)."""
    global _repository, _driver, _bots, _config
    if repository is not None:
        _repository = repository
    if driver is not None:
        _driver = driver
    if bots is not None:
        _bots = bots
    if config is not None:
        _config = config


def get_repository() -> Repository:
    """Return the active repository (used in tests to inspect stored rows)."""
    return _repository


@mcp.tool()
def validate_narrative(toml: str) -> dict:
    """Parse a TOML narrative and report whether it is valid."""
    try:
        narrative = parse(toml)
    except DefinitionError as e:
        return {"valid": False, "error": str(e)}
    return {"valid": True, "narrative": describe(narrative)}


@mcp.tool()
async def execute_narrative(toml: str = "", path: str = "") -> dict:
    """Run a narrative given as TOML text or a file path. Returns the run result."""
    try:
        if toml:
            narrative = parse(toml)
            library = NarrativeLibrary([narrative])
        elif path:
            library = NarrativeLibrary()
            narrative = library.load(path)
        else:
            return {"status": "invalid", "error": "Provide 'toml' or 'path'"}
    except DefinitionError as e:
        return {"status": "invalid", "error": str(e)}

    executor = build_executor(
        _config or get_config(), _repository, driver=_driver, bots=_bots, library=library
    )
    result = await executor.run(narrative)
    return result.model_dump(mode="json")


@mcp.tool()
def list_tables() -> dict:
    """List generated tables and their column types."""
    tables = []
    for name in _repository.list_tables():
        schema = _repository.table_schema(name)
        tables.append({
            "name": name,
            "columns": {c.name: c.type.value for c in schema.columns} if schema else {},
        })
    return {"tables": tables}


@mcp.tool()
def get_table_rows(table: str, limit: int = 20) -> dict:
    """Return up to `limit` rows of a generated table."""
    try:
        rows = _repository.get_rows(table, limit)
    except StorageError as e:
        return {"table": table, "error": str(e), "rows": []}
    return {"table": table, "rows": rows}


if __name__ == "__main__":
    from dotenv import load_dotenv

    from botticelli.config import build_driver, data_dir
    from botticelli.storage import JsonFileRepository

    load_dotenv()
    cfg = get_config()
    configure(repository=JsonFileRepository(data_dir()), driver=build_driver(cfg), config=cfg)
    mcp.run()
