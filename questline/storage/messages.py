"""Chat message storage (append-only log per campaign)."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .campaigns import check_campaign_id, touch_campaign
from .core import campaigns_dir, read_json, store_lock, write_json


def _messages_path(campaign_id: str) -> Path:
    return campaigns_dir() / check_campaign_id(campaign_id) / "messages.json"


def get_messages(campaign_id: str) -> list[dict[str, Any]]:
    """Load messages for a campaign. Returns [] if none exist."""
    return read_json(_messages_path(campaign_id), [])


def new_message(role: str, content: str, token_usage: dict | None = None) -> dict[str, Any]:
    msg: dict[str, Any] = {
        "role": role,
        "content": content,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if token_usage:
        msg["tokenUsage"] = token_usage
    return msg


def append_messages(campaign_id: str, messages: list[dict[str, Any]]) -> None:
    """Append messages in order; all of them land in one write."""
    with store_lock:
        existing = get_messages(campaign_id)
        existing.extend(messages)
        write_json(_messages_path(campaign_id), existing)
    touch_campaign(campaign_id)
