"""FastAPI API endpoints under /api.

Endpoint groups: turn (pipeline), campaigns (+ messages), keep-alive,
health, settings and usage counters.
"""

from fastapi import APIRouter

from .campaigns import router as campaigns_router
from .settings import router as settings_router
from .turns import router as turns_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(campaigns_router)
router.include_router(turns_router)
