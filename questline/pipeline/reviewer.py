"""State Reviewer: a throttled backup pass over the Narrator's prose.

Extracts state changes the Logic Engine missed. The gate (enabled flag and
turn frequency) is checked before any model call.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError

from questline import llm
from questline.models import ReviewResult, ReviewerSettings, StateCorrections
from questline.prompts import ConfigSnapshot, reviewer_settings

from .keys import ModelConfig
from .parsing import parse_json_response

logger = logging.getLogger(__name__)

REVIEW_TEMPERATURE = 0.3
REVIEW_MAX_TOKENS = 1000

_LIST_SCHEMA = {
    "type": "object",
    "properties": {
        "added": {"type": "array", "items": {"type": "string"}},
        "removed": {"type": "array", "items": {"type": "string"}},
    },
}
_RESOURCE_SCHEMA = {
    "type": "object",
    "properties": {"current": {"type": "number"}, "max": {"type": "number"}},
}

REVIEW_OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "corrections": {
            "type": "object",
            "description": "State changes extracted from the narrative",
            "properties": {
                "hp": _RESOURCE_SCHEMA,
                "mana": _RESOURCE_SCHEMA,
                "nanites": _RESOURCE_SCHEMA,
                "fatigue": {"type": "number"},
                "gold": {"type": "number"},
                "experience": {"type": "number"},
                "inventory": _LIST_SCHEMA,
                "powers": _LIST_SCHEMA,
                "partyMembers": _LIST_SCHEMA,
            },
        },
        "reasoning": {"type": "string", "description": "Brief explanation of what changes were detected"},
    },
    "required": ["corrections"],
}


def should_review(settings: ReviewerSettings, turn_number: int) -> str | None:
    """Return a skip reason, or None when the reviewer should run."""
    if not settings.enabled:
        return "State reviewer is disabled"
    frequency = max(settings.frequency, 1)
    if turn_number % frequency != 0:
        return f"Skipping - only runs every {frequency} turn(s)"
    return None


def build_review_prompt(template: str, current_state: dict[str, Any], narrative: str) -> str:
    return (
        template
        .replace("{currentState}", json.dumps(current_state, indent=2, ensure_ascii=False))
        .replace("{narrative}", narrative)
    )


async def review_state(
    narrative: str,
    current_state: dict[str, Any],
    model: ModelConfig | None,
    snapshot: ConfigSnapshot,
    turn_number: int,
    settings: ReviewerSettings | None = None,
) -> ReviewResult:
    """Run the reviewer for one turn.

    `model` None (no key) skips the pass. Parse or provider failures return
    success=False; the caller treats them as "no corrections".
    """
    settings = settings or reviewer_settings(snapshot)
    reason = should_review(settings, turn_number)
    if reason is None and model is None:
        reason = "No API key for the reviewer model"
    if reason is not None:
        logger.debug("Reviewer skipped: %s", reason)
        return ReviewResult(success=True, skipped=True, skip_reason=reason)

    system_prompt = build_review_prompt(settings.prompt or "", current_state, narrative)
    user_prompt = f"Review this narrative and extract any state changes. Respond with JSON only:\n\n{narrative}"
    logger.info("Reviewer call provider=%s model=%s turn=%d", model.provider, model.model, turn_number)
    try:
        completion = await llm.invoke(
            model.provider, model.model, model.key,
            system_prompt, [], user_prompt,
            REVIEW_OUTPUT_SCHEMA,
            temperature=REVIEW_TEMPERATURE,
            max_tokens=REVIEW_MAX_TOKENS,
            timeout=float(snapshot.setting("providerTimeoutSeconds", llm.DEFAULT_TIMEOUT)),
        )
    except llm.LLMError as e:
        logger.error("Reviewer call failed: %s", e)
        return ReviewResult(success=False, error=str(e))

    if not completion.text.strip():
        return ReviewResult(success=False, error="No response from AI provider", usage=completion.usage)

    parsed = parse_json_response(completion.text)
    if parsed is None:
        logger.error("Reviewer returned unparseable output: %.200s", completion.text)
        return ReviewResult(success=False, error="Failed to parse AI response as JSON", usage=completion.usage)

    try:
        corrections = StateCorrections.model_validate(parsed.get("corrections") or {})
    except ValidationError as e:
        logger.warning("Reviewer corrections rejected: %s", e.error_count())
        return ReviewResult(success=False, error="Reviewer corrections failed validation", usage=completion.usage)

    reasoning = parsed.get("reasoning")
    logger.info("Reviewer detected changes: %s", corrections.model_dump(exclude_none=True))
    return ReviewResult(
        success=True,
        corrections=corrections,
        reasoning=reasoning if isinstance(reasoning, str) else None,
        usage=completion.usage,
    )
