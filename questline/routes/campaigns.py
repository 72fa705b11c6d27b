"""Campaign creation, lookup, deletion and message history endpoints."""

from fastapi import APIRouter, Header, HTTPException

from questline import storage
from questline.models import CampaignCreateRequest
from questline.pipeline import create_campaign

router = APIRouter()


@router.get("/campaigns")
async def list_campaigns(x_user_id: str = Header("anonymous")):
    """List the caller's campaigns."""
    return storage.list_campaigns(x_user_id)


@router.post("/campaigns")
async def new_campaign(body: CampaignCreateRequest, x_user_id: str = Header("anonymous")):
    """Create a campaign and generate its opening narrative."""
    result = await create_campaign(body, user_id=x_user_id)
    return result.dump()


@router.get("/campaigns/{campaign_id}")
async def get_campaign(campaign_id: str):
    """Get a single campaign by id."""
    campaign = storage.get_campaign(campaign_id)
    if not campaign:
        raise HTTPException(404, "Campaign not found")
    return campaign


@router.delete("/campaigns/{campaign_id}")
async def delete_campaign(campaign_id: str):
    """Delete a campaign and its message log."""
    if not storage.delete_campaign(campaign_id):
        raise HTTPException(404, "Campaign not found")
    return {"ok": True}


@router.get("/campaigns/{campaign_id}/messages")
async def get_messages(campaign_id: str):
    """Get the message log for a campaign."""
    if not storage.get_campaign(campaign_id):
        raise HTTPException(404, "Campaign not found")
    return storage.get_messages(campaign_id)
