"""Health check, settings and usage counter endpoints."""

from fastapi import APIRouter

from questline import storage

from .models import UpdateSettings

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings():
    """Get runtime settings (models, narrator limits, knowledge budget, dice)."""
    return storage.get_config()


@router.patch("/settings")
async def update_settings(body: UpdateSettings):
    """Update runtime settings (partial merge)."""
    return storage.update_config(body.model_dump(exclude_none=True))


@router.get("/usage/{user_id}")
async def get_usage(user_id: str):
    """Cumulative usage counters for a user plus today's global aggregate."""
    return {
        "user": storage.get_user_usage(user_id),
        "daily": storage.get_daily_usage(storage.today()),
    }
