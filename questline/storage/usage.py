"""Usage counters: per-user cumulative totals and a global daily aggregate.

Counters are only ever incremented here; every update is an atomic
read-modify-write under the store lock.
"""

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .core import increment_fields, read_json, usage_dir


def _user_path(user_id: str) -> Path:
    # Hashed so ids differing only in case or punctuation never share a file.
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
    return usage_dir() / "users" / f"{digest}.json"


def _daily_path(date: str) -> Path:
    return usage_dir() / "daily" / f"{date}.json"


def today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _stats_key(model: str) -> str:
    # Dots would split the key into nested maps.
    return model.replace(".", "_")


def get_user_usage(user_id: str) -> dict[str, Any]:
    return read_json(_user_path(user_id), {}) or {}


def get_daily_usage(date: str) -> dict[str, Any]:
    return read_json(_daily_path(date), {}) or {}


def increment_user_usage(
    user_id: str,
    prompt_tokens: int,
    completion_tokens: int,
    model_tokens: dict[str, dict[str, int]] | None = None,
) -> dict[str, Any]:
    """Count one turn plus its tokens for a user.

    `model_tokens` maps model id -> {"prompt", "completion", "total"} for the
    per-model breakdown.
    """
    deltas = {
        "turnsUsed": 1,
        "tokensPrompt": prompt_tokens,
        "tokensCompletion": completion_tokens,
        "tokensTotal": prompt_tokens + completion_tokens,
    }
    for model, counts in (model_tokens or {}).items():
        key = _stats_key(model)
        for field, value in counts.items():
            deltas[f"tokens.{key}.{field}"] = value
    return increment_fields(
        _user_path(user_id), deltas,
        extra={"userId": user_id, "lastActive": datetime.now(timezone.utc).isoformat()},
    )


def increment_daily_usage(prompt_tokens: int, completion_tokens: int, date: str | None = None) -> dict[str, Any]:
    date = date or today()
    return increment_fields(
        _daily_path(date),
        {
            "turns": 1,
            "tokensPrompt": prompt_tokens,
            "tokensCompletion": completion_tokens,
            "tokensTotal": prompt_tokens + completion_tokens,
        },
        extra={"date": date, "updatedAt": datetime.now(timezone.utc).isoformat()},
    )
