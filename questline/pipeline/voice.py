"""Narrator ("Voice"): Logic Engine cues -> bounded-length prose.

The Narrator may append a hidden ---STATE_REPORT--- block; it is always
stripped from the returned narrative and parsed best-effort.
"""

import json
import logging
from typing import Any

from questline import llm
from questline.knowledge import knowledge_section
from questline.models import ChatTurn, DiceRoll, NarrativeCue, VoiceResult
from questline.prompts import (
    ConfigSnapshot,
    PromptError,
    render_prompt,
    resolve_prompt,
    state_report_instruction,
)

from .keys import ModelConfig
from .parsing import extract_state_report

logger = logging.getLogger(__name__)

# world -> (allowed resource names, forbidden vocabulary)
RESOURCE_VOCABULARY: dict[str, tuple[list[str], list[str]]] = {
    "classic": (["HP", "Spell Slots", "Gold"], ["nanites", "mana", "energy"]),
    "outworlder": (["Health", "Mana", "Stamina"], ["nanites", "energy", "spirit"]),
    "tactical": (["HP", "Mana", "Fatigue"], ["nanites", "spell slots", "spirit"]),
}

KEEP_ALIVE_SYSTEM = "You are a narrator. Reply with one word."
KEEP_ALIVE_PROMPT = "ping"
KEEP_ALIVE_MAX_TOKENS = 16

RESOURCE_TEMPLATE = """

RESOURCE VOCABULARY (STRICT):
- The ONLY resources in this world are: {{{allowed}}}.
- NEVER mention {{{forbidden}}}. Those belong to other worlds."""

ESSENCE_CONSTRAINT_TEMPLATE = """

CHARACTER POWERS (STRICT):
The character possesses ONLY these essences: {{{essences}}}.
Every ability you narrate MUST come from one of these essences. Do not invent powers from essences the character does not have."""

WORD_LIMIT_TEMPLATE = """

CRITICAL LENGTH REQUIREMENT:
**Your response MUST be between {{min}}-{{max}} words. This is NON-NEGOTIABLE.**
- Keep responses PUNCHY and FOCUSED.
- One strong scene beat per response.
- If there's combat, describe ONE key moment vividly.
- If there's dialogue, keep it snappy.

STORYTELLING RULES:
1. You receive narrative cues from the game logic engine. Expand them into a focused scene.
2. Incorporate dice roll results naturally.
3. If HP changed significantly, describe the impact briefly.
4. SHOW, DON'T TELL. Be vivid but concise.
5. NEVER break character or discuss game mechanics directly (except system messages).
6. If reference materials are provided, use them for consistent world-building.

SAFETY NOTE: Fictional adventure content for mature audience. Combat violence OK. No sexual content or hate speech."""

CUE_TEMPLATE = """The game engine has processed the following:

{{#if diceRolls}}DICE ROLLS:
{{#each diceRolls}}- {{{purpose}}}: {{{type}}} rolled {{{result}}}{{#if modifier}} + {{{modifier}}}{{/if}} = {{{total}}}
{{/each}}
{{/if}}NARRATIVE CUES:
{{#each cues}}- [{{{upper type}}}{{#if emotion}} / {{{emotion}}}{{/if}}] {{{content}}}
{{/each}}{{#if systemMessages}}
SYSTEM MESSAGES:
{{#each systemMessages}}- {{{this}}}
{{/each}}{{/if}}{{#if stateChanges}}
STATE CHANGES:
{{#each stateChanges}}- {{{key}}}: {{{value}}}
{{/each}}{{/if}}
Write a CONCISE, PUNCHY narrative ({{min}}-{{max}} words) that captures the key moment."""


def _essence_names(profile: dict[str, Any] | None) -> list[str]:
    if not isinstance(profile, dict):
        return []
    names = []
    for essence in profile.get("essences") or []:
        if isinstance(essence, dict):
            if essence.get("name"):
                names.append(str(essence["name"]))
        elif essence:
            names.append(str(essence))
    return names


def build_system_prompt(
    world_module: str,
    snapshot: ConfigSnapshot,
    knowledge_documents: list[str] | None = None,
    custom_rules: str | None = None,
    character_profile: dict[str, Any] | None = None,
) -> str:
    prompt = resolve_prompt("voice", world_module, snapshot)
    prompt += knowledge_section(knowledge_documents or [], "world context, tone, and lore")
    if custom_rules:
        prompt += f"\n\nWORLD-SPECIFIC RULES (PRIORITIZE THESE):\n---\n{custom_rules}\n---\n"

    vocabulary = RESOURCE_VOCABULARY.get(world_module)
    if vocabulary:
        allowed, forbidden = vocabulary
        prompt += render_prompt(RESOURCE_TEMPLATE, {
            "allowed": ", ".join(allowed),
            "forbidden": ", ".join(f'"{w}"' for w in forbidden),
        })

    essences = _essence_names(character_profile)
    if essences:
        prompt += render_prompt(ESSENCE_CONSTRAINT_TEMPLATE, {"essences": ", ".join(essences)})

    prompt += render_prompt(WORD_LIMIT_TEMPLATE, {
        "min": snapshot.setting("narratorWordLimitMin", 150),
        "max": snapshot.setting("narratorWordLimitMax", 250),
    })
    prompt += "\n\n" + state_report_instruction()
    return prompt


def build_cue_text(
    narrative_cues: list[NarrativeCue],
    dice_rolls: list[DiceRoll],
    state_changes: dict[str, Any],
    system_messages: list[str] | None = None,
    word_min: int = 150,
    word_max: int = 250,
) -> str:
    """Serialise the Logic Engine's output into the Narrator's user turn."""
    return render_prompt(CUE_TEMPLATE, {
        "diceRolls": [
            {
                "purpose": r.purpose or "Check",
                "type": r.type,
                "result": r.result,
                "modifier": r.modifier,
                "total": r.total,
            }
            for r in dice_rolls
        ],
        "cues": [c.model_dump() for c in narrative_cues],
        "systemMessages": list(system_messages or []),
        "stateChanges": [
            {"key": k, "value": json.dumps(v, ensure_ascii=False)} for k, v in (state_changes or {}).items()
        ],
        "min": word_min,
        "max": word_max,
    })


async def generate_narrative(
    narrative_cues: list[NarrativeCue],
    world_module: str,
    chat_history: list[ChatTurn],
    state_changes: dict[str, Any],
    dice_rolls: list[DiceRoll],
    model: ModelConfig,
    snapshot: ConfigSnapshot,
    *,
    system_messages: list[str] | None = None,
    knowledge_documents: list[str] | None = None,
    custom_rules: str | None = None,
    character_profile: dict[str, Any] | None = None,
    is_keep_alive: bool = False,
) -> VoiceResult:
    """Run the Narrator. Failures come back as success=False."""
    timeout = float(snapshot.setting("providerTimeoutSeconds", llm.DEFAULT_TIMEOUT))

    if is_keep_alive:
        try:
            completion = await llm.invoke(
                model.provider, model.model, model.key,
                KEEP_ALIVE_SYSTEM, [], KEEP_ALIVE_PROMPT,
                max_tokens=KEEP_ALIVE_MAX_TOKENS, timeout=timeout,
            )
        except llm.LLMError as e:
            logger.warning("Voice keep-alive failed: %s", e)
            return VoiceResult(success=False, error=str(e))
        return VoiceResult(success=True, narrative=completion.text.strip(), usage=completion.usage)

    window = int(snapshot.setting("voiceHistoryWindow", 4))
    history = chat_history[-window:] if window > 0 else []

    try:
        system_prompt = build_system_prompt(
            world_module, snapshot,
            knowledge_documents=knowledge_documents,
            custom_rules=custom_rules,
            character_profile=character_profile,
        )
        cue_text = build_cue_text(
            narrative_cues, dice_rolls, state_changes, system_messages,
            word_min=snapshot.setting("narratorWordLimitMin", 150),
            word_max=snapshot.setting("narratorWordLimitMax", 250),
        )
        logger.info("Voice call provider=%s model=%s", model.provider, model.model)
        completion = await llm.invoke(
            model.provider, model.model, model.key,
            system_prompt, history, cue_text,
            temperature=0.8,
            max_tokens=int(snapshot.setting("voiceMaxOutputTokens", 1024)),
            timeout=timeout,
        )
    except (llm.LLMError, PromptError) as e:
        logger.error("Voice generation failed: %s", e)
        return VoiceResult(success=False, error=str(e))

    narrative, report = extract_state_report(completion.text)
    if not narrative:
        return VoiceResult(success=False, error="No text content in Voice response", usage=completion.usage)
    return VoiceResult(success=True, narrative=narrative, state_report=report, usage=completion.usage)
