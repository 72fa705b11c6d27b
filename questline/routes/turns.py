"""Turn pipeline and narrator keep-alive endpoints."""

import logging

from fastapi import APIRouter, Header

from questline.models import TurnRequest
from questline.pipeline import keep_alive, run_turn

from .models import KeepAliveBody

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/turn")
async def turn(body: TurnRequest, x_user_id: str = Header("anonymous")):
    """Run one player action through the pipeline.

    Turn failures are returned as {success: false, error}, not HTTP errors.
    """
    result = await run_turn(body, user_id=x_user_id)
    if not result.success:
        logger.warning("Turn failed for campaign %s: %s", body.campaign_id, result.error)
    return result.dump()


@router.post("/keep-alive")
async def keep_alive_ping(body: KeepAliveBody | None = None):
    """Warm the narrator provider with a minimal request."""
    ok = await keep_alive(body.byok_keys if body else None)
    return {"ok": ok}
