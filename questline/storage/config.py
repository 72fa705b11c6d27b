"""Global runtime settings (models, narrator limits, knowledge budget, dice)."""

import json
from pathlib import Path
from typing import Any

from .core import data_dir, read_json, store_lock, write_json

CONFIG_DEFAULTS: dict[str, Any] = {
    "brainModel": "gpt-4o-mini",
    "voiceModel": "claude-3-5-sonnet",
    "narratorWordLimitMin": 150,
    "narratorWordLimitMax": 250,
    "voiceMaxOutputTokens": 1024,
    "brainMaxOutputTokens": 2000,
    "knowledgeMaxDocs": 3,
    "providerTimeoutSeconds": 60,
    "serverSideDice": False,
    "brainHistoryWindow": 3,
    "voiceHistoryWindow": 4,
}


def _config_path() -> Path:
    return data_dir() / "config.json"


def get_config() -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config = json.loads(json.dumps(CONFIG_DEFAULTS))
    stored = read_json(_config_path(), {}) or {}
    for key, value in stored.items():
        if key in config and value is not None:
            config[key] = value
    return config


def update_config(fields: dict[str, Any]) -> dict[str, Any]:
    """Merge known fields into config and persist. Returns full config."""
    with store_lock:
        config = get_config()
        for key, value in fields.items():
            if key in CONFIG_DEFAULTS:
                config[key] = value
        write_json(_config_path(), config)
    return config
