"""Model id to provider mapping and API key resolution.

Key order for a provider: the player's own key (BYOK), then the platform
secret from the environment. The Logic Engine falls back to OpenAI
gpt-4o-mini when its selected provider has no key; the Narrator and the
Reviewer never fall back, they are skipped instead.
"""

import logging
import os
from dataclasses import dataclass

from questline.models import ByokKeys

logger = logging.getLogger(__name__)

FALLBACK_PROVIDER = "openai"
FALLBACK_MODEL = "gpt-4o-mini"

# UI model ids to (provider, provider model id)
MODEL_ID_MAP: dict[str, tuple[str, str]] = {
    "claude-opus-4.5": ("anthropic", "claude-opus-4-5-20251101"),
    "claude-sonnet-3.5": ("anthropic", "claude-3-5-sonnet-20241022"),
    "gemini-3-flash": ("google", "gemini-1.5-flash"),
    "claude-3-opus": ("anthropic", "claude-opus-4-5-20251101"),
    "claude-3-5-sonnet": ("anthropic", "claude-3-5-sonnet-20241022"),
    "gemini-1.5-flash": ("google", "gemini-1.5-flash"),
    "gpt-4o-mini": ("openai", "gpt-4o-mini"),
}

_SECRET_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}


class ConfigurationError(Exception):
    """No usable API key for a provider the turn cannot run without."""


@dataclass(frozen=True)
class ModelConfig:
    provider: str
    model: str
    key: str

    def __repr__(self) -> str:
        return f"ModelConfig(provider={self.provider!r}, model={self.model!r})"


def provider_for_model(model: str) -> str:
    if model.startswith("claude"):
        return "anthropic"
    if model.startswith("gemini"):
        return "google"
    return "openai"


def map_model(selected: str) -> tuple[str, str]:
    """Return (provider, provider model id) for a UI model id."""
    if selected in MODEL_ID_MAP:
        return MODEL_ID_MAP[selected]
    return provider_for_model(selected), selected


def platform_secrets() -> dict[str, str]:
    """Platform-managed provider keys from the environment ("" when unset)."""
    return {provider: os.getenv(env, "") for provider, env in _SECRET_ENV.items()}


def lookup_key(provider: str, byok: ByokKeys | None, secrets: dict[str, str]) -> str:
    key = byok.get(provider) if byok else None
    return key or secrets.get(provider) or ""


def resolve_model_config(
    selected: str,
    byok: ByokKeys | None = None,
    secrets: dict[str, str] | None = None,
) -> ModelConfig | None:
    """Resolve provider, model and key for selected. None when no key exists."""
    if secrets is None:
        secrets = platform_secrets()
    provider, model = map_model(selected)
    key = lookup_key(provider, byok, secrets)
    if not key:
        return None
    return ModelConfig(provider=provider, model=model, key=key)


def resolve_brain_config(
    selected: str,
    byok: ByokKeys | None = None,
    secrets: dict[str, str] | None = None,
) -> ModelConfig:
    """Model config for the Logic Engine, which cannot run without a key."""
    if secrets is None:
        secrets = platform_secrets()
    config = resolve_model_config(selected, byok, secrets)
    if config is not None:
        return config
    logger.warning("No key for %s, falling back to %s", selected, FALLBACK_MODEL)
    key = lookup_key(FALLBACK_PROVIDER, byok, secrets)
    if not key:
        raise ConfigurationError(
            "No API key available for the Logic Engine. "
            "Add a provider key in settings."
        )
    return ModelConfig(provider=FALLBACK_PROVIDER, model=FALLBACK_MODEL, key=key)
