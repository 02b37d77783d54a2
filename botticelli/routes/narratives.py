"""Validate and run narratives."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request

from botticelli.config import build_executor
from botticelli.loader import DefinitionError, NarrativeLibrary, describe, parse
from botticelli.models import Narrative

from .models import NarrativeBody

logger = logging.getLogger(__name__)

router = APIRouter()


def _load(body: NarrativeBody) -> tuple[Narrative, NarrativeLibrary]:
    if bool(body.toml) == bool(body.path):
        raise HTTPException(422, "Provide exactly one of 'toml' or 'path'")
    try:
        if body.toml:
            narrative = parse(body.toml)
            return narrative, NarrativeLibrary([narrative])
        library = NarrativeLibrary()
        return library.load(body.path), library
    except DefinitionError as e:
        raise HTTPException(422, str(e)) from e


@router.post("/narratives/validate")
def validate_narrative(body: NarrativeBody) -> dict[str, Any]:
    narrative, _ = _load(body)
    return describe(narrative)


@router.post("/narratives/run")
async def run_narrative(body: NarrativeBody, request: Request) -> dict[str, Any]:
    narrative, library = _load(body)
    state = request.app.state
    executor = build_executor(
        state.config,
        state.repository,
        driver=state.driver,
        bots=state.bots,
        library=library,
    )
    result = await executor.run(narrative)
    if result.status == "aborted":
        logger.warning("run of %s aborted: %s", narrative.name, result.error)
    return result.model_dump(mode="json")
