"""Campaign documents: metadata, character and versioned moduleState."""

import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .core import ConflictError, campaigns_dir, read_json, slugify, store_lock, write_json


def check_campaign_id(campaign_id: str) -> str:
    """Reject ids that are not plain slugs (they would escape the data dir)."""
    if not campaign_id or slugify(campaign_id) != campaign_id:
        raise KeyError(f"Invalid campaign id {campaign_id!r}")
    return campaign_id


def _campaign_path(campaign_id: str) -> Path:
    return campaigns_dir() / f"{check_campaign_id(campaign_id)}.json"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def list_campaigns(user_id: str | None = None) -> list[dict[str, Any]]:
    results = []
    for path in sorted(campaigns_dir().glob("*.json")):
        campaign = read_json(path)
        if user_id is None or campaign.get("userId") == user_id:
            results.append(campaign)
    return results


def get_campaign(campaign_id: str) -> dict[str, Any] | None:
    try:
        path = _campaign_path(campaign_id)
    except KeyError:
        return None
    return read_json(path)


def create_campaign(
    name: str,
    world_module: str,
    character: dict[str, Any],
    user_id: str = "anonymous",
    module_state: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Create a campaign document with a unique slug id derived from `name`."""
    base_id = slugify(name)
    with store_lock:
        campaign_id = base_id
        counter = 2
        while _campaign_path(campaign_id).exists():
            campaign_id = f"{base_id}-{counter}"
            counter += 1

        now = _now()
        campaign = {
            "id": campaign_id,
            "userId": user_id,
            "name": name,
            "worldModule": world_module,
            "character": character,
            "moduleState": module_state if module_state is not None else {"character": character},
            "version": 0,
            "createdAt": now,
            "updatedAt": now,
        }
        write_json(_campaign_path(campaign_id), campaign)
        (campaigns_dir() / campaign_id).mkdir(exist_ok=True)
    return campaign


def save_campaign_state(
    campaign_id: str,
    module_state: dict[str, Any],
    expected_version: int | None = None,
) -> dict[str, Any]:
    """Replace moduleState and bump the version.

    With `expected_version`, the write is a compare-and-swap: a campaign
    whose version moved on since it was read raises ConflictError.
    """
    with store_lock:
        campaign = get_campaign(campaign_id)
        if campaign is None:
            raise KeyError(f"Campaign {campaign_id!r} not found")
        current = campaign.get("version", 0)
        if expected_version is not None and current != expected_version:
            raise ConflictError(
                f"Campaign {campaign_id!r} is at version {current}, expected {expected_version}"
            )
        campaign["moduleState"] = module_state
        campaign["version"] = current + 1
        campaign["updatedAt"] = _now()
        write_json(_campaign_path(campaign_id), campaign)
    return campaign


def touch_campaign(campaign_id: str) -> None:
    with store_lock:
        campaign = get_campaign(campaign_id)
        if campaign is None:
            return
        campaign["updatedAt"] = _now()
        write_json(_campaign_path(campaign_id), campaign)


def delete_campaign(campaign_id: str) -> bool:
    """Delete a campaign and its child documents (message log)."""
    try:
        path = _campaign_path(campaign_id)
    except KeyError:
        return False
    with store_lock:
        if not path.is_file():
            return False
        path.unlink()
        child_dir = campaigns_dir() / campaign_id
        if child_dir.is_dir():
            shutil.rmtree(child_dir)
    return True
