"""FastAPI API endpoints under /api.

Endpoint groups:
  narratives  POST /narratives/validate, POST /narratives/run
  tables      GET /tables, GET /tables/{name}, GET /generations
"""

from fastapi import APIRouter

from .narratives import router as narratives_router
from .tables import router as tables_router

router = APIRouter()
router.include_router(narratives_router)
router.include_router(tables_router)
