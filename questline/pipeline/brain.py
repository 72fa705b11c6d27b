"""Logic Engine ("Brain"): player action + game state -> structured JSON.

The Brain never writes prose. It returns state deltas, narrative cues for
the Narrator, dice rolls and system messages. Output that parses but does
not match the schema is recovered in a degraded form (state deltas plus a
fallback cue) instead of failing the turn.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError

from questline import llm
from questline.dice import reroll_reported
from questline.knowledge import knowledge_section
from questline.models import BrainOutput, BrainResult, ChatTurn, PendingRoll
from questline.prompts import ConfigSnapshot, PromptError, render_prompt, resolve_prompt

from .keys import ModelConfig
from .parsing import parse_json_response

logger = logging.getLogger(__name__)

FALLBACK_CUE = "The action was processed."

BRAIN_OUTPUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Game logic engine output",
    "properties": {
        "stateUpdates": {"type": "object", "description": "Updated game state fields", "nullable": True},
        "narrativeCues": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["action", "dialogue", "description", "combat", "discovery"]},
                    "content": {"type": "string"},
                    "emotion": {
                        "type": "string",
                        "enum": ["neutral", "tense", "triumphant", "mysterious", "danger"],
                        "nullable": True,
                    },
                },
                "required": ["type", "content"],
            },
        },
        "diceRolls": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "type": {"type": "string"},
                    "result": {"type": "number"},
                    "modifier": {"type": "number", "nullable": True},
                    "total": {"type": "number"},
                    "purpose": {"type": "string", "nullable": True},
                    "difficulty": {"type": "number", "nullable": True},
                    "success": {"type": "boolean", "nullable": True},
                },
                "required": ["type", "result", "total"],
            },
        },
        "systemMessages": {"type": "array", "items": {"type": "string"}},
        "narrativeCue": {"type": "string", "nullable": True},
        "requiresUserInput": {"type": "boolean", "nullable": True},
        "pendingChoice": {
            "type": "object",
            "nullable": True,
            "properties": {
                "prompt": {"type": "string"},
                "options": {"type": "array", "items": {"type": "string"}, "nullable": True},
                "choiceType": {
                    "type": "string",
                    "enum": ["action", "target", "dialogue", "direction", "item", "decision"],
                },
            },
            "required": ["prompt", "choiceType"],
        },
        "pendingRoll": {
            "type": "object",
            "nullable": True,
            "description": "Dice roll the player makes in interactive dice mode",
            "properties": {
                "type": {"type": "string"},
                "purpose": {"type": "string"},
                "modifier": {"type": "number", "nullable": True},
                "stat": {"type": "string", "nullable": True},
                "difficulty": {"type": "number", "nullable": True},
                "rollType": {
                    "type": "string",
                    "enum": ["attack", "save", "skill", "ability", "damage"],
                    "nullable": True,
                },
            },
            "required": ["type", "purpose"],
        },
    },
    "required": ["stateUpdates", "narrativeCues", "diceRolls", "systemMessages"],
}

WORLD_STAT_CONTEXT = {
    "classic": "\n📊 STATS: Use D&D 5E stats: STR, DEX, CON, INT, WIS, CHA\n",
    "outworlder": "\n📊 STATS: Use Outworlder stats ONLY: power, speed, spirit, recovery. "
                  "NEVER use D&D stat names (STR/DEX/WIS/etc).\n",
    "tactical": "\n📊 STATS: Use Tactical stats ONLY: strength, agility, vitality, intelligence, perception. "
                "NEVER use D&D stat names (STR/DEX/WIS/etc).\n",
}

DICE_RULE = (
    'Calculate all dice rolls using proper randomization simulation and include them in "diceRolls" array. '
    'ALWAYS include "purpose", "modifier", "total", and "difficulty" (Target DC) if applicable to show your work.'
)

INTERACTIVE_DICE_RULE = """⚠️ CRITICAL - INTERACTIVE DICE MODE IS ACTIVE ⚠️
When ANY situation requires a dice roll, you MUST:
1. Set "requiresUserInput": true
2. Set "pendingRoll" with: type, purpose, modifier, stat, difficulty (and rollType for attacks, saves, skill and ability checks)
3. Leave "diceRolls" as an EMPTY array []
4. In "narrativeCues", describe ONLY the setup, NOT the outcome

Roll for attacks and offensive spells, for skill checks the player actively attempts, for saving throws and for ability checks.
Do NOT roll for informational questions, help queries or routine use of known abilities in a safe place.
DO NOT resolve outcomes. Wait for the player's roll."""

INTERACTIVE_DICE_HEADER = """
🚨 CRITICAL MANDATORY RULE - INTERACTIVE DICE MODE IS ACTIVE 🚨
When ANY action requires a dice roll: SET "pendingRoll", SET "requiresUserInput": true,
LEAVE "diceRolls": [] and STOP before describing the outcome.

"""

ROLL_RESOLUTION_TEMPLATE = """⚠️ INTERACTIVE ROLL RESOLUTION ⚠️
You are processing the player's manual dice roll result ({{{result}}}).
1. YOU MUST ADD THIS ROLL to the "diceRolls" array in your response:
   {{{rollJson}}}
2. DO NOT set "requiresUserInput": true unless a different follow-up action needs a roll.
3. DO NOT set "pendingRoll" for this same action again.
4. Continue the narrative based on this result."""

ROLL_RESULT_TEMPLATE = """
🎲 DICE ROLL RESULT RECEIVED: {{{result}}}
CONTEXT: The player rolled for "{{{purpose}}}". Target DC: {{{difficulty}}}, Modifier: {{{modifier}}}, Stat: {{{stat}}}
This is the EXACT, FINAL dice result.
- DO NOT add modifiers beyond {{{modifier}}} or invent bonuses to change the outcome.
- Success/Failure = ({{{result}}} + {{{modifier}}}) vs DC {{{difficulty}}}. If the roll fails, IT FAILS.
- Do NOT request another roll for the same action."""

CHOICES_ON_RULE = """USER PREFERENCE: showSuggestedChoices = true.
ALWAYS include a "pendingChoice" object with 2-4 "options" representing suggested next actions.
STRICT GUIDELINES FOR SUGGESTED CHOICES:
1. FIRST-PERSON PERSPECTIVE: Every option MUST be written from the player's perspective (e.g., "I ask about...", "I attack...", "I examine...").
2. ACTION-ORIENTED: Suggestions must be THINGS THE PLAYER DOES, not things that happen to the player.
3. NO NARRATIVE OUTCOMES: Forbidden from suggesting NPC reactions, world changes, or outcomes as choices.
   - WRONG: "The merchant offers a discount."
   - RIGHT: "I haggle with the merchant for a better price."
4. Set "requiresUserInput": true to ensure these are displayed."""

CHOICES_OFF_RULE = """USER PREFERENCE: showSuggestedChoices = false.
Do NOT include options in pendingChoice.options. Set it to null/undefined."""

ESSENCE_OVERRIDE_TEMPLATE = """

🚨 CRITICAL OVERRIDE - ALL ESSENCES AND ABILITIES ARE ACTIVE 🚨
The character has established powers in the database.
- Selected Essences: {{{essences}}}
- Rank: {{{rank}}}
- Existing Abilities: {{{abilities}}}

SYSTEM ENFORCEMENT:
1. Every essence listed above is FULLY ACTIVE, UNLOCKED, and READY FOR USE.
2. DO NOT narrate any essence as "dormant," "sealed," or "???".
3. DO NOT run "awakening" or "selection" sequences - they are already complete.
4. The character has immediate, full access to all listed powers.
5. Absolute Priority: Trust the character sheet data over any narrative trope.
{{#if hasAbilities}}{{#if introPhase}}
🔒 LOCKED ABILITY SET - DO NOT MODIFY:
{{{abilityDetails}}}

These are the character's ONLY abilities. They were set during character creation.
YOU ARE FORBIDDEN from adding ANY new entries to the 'abilities' array in 'stateUpdates'.
{{else}}
NOTE: The character already has established abilities.
- DO NOT grant "Intrinsic" starting abilities again.
- You MAY grant new abilities ONLY if the player uses a specific item or explicitly earns a quest reward.
{{/if}}{{else}}
The character has essences but NO abilities yet. You SHOULD grant their intrinsic abilities as they awaken.
{{/if}}
The character is ALREADY awakened with these essences: {{{essences}}}.
Skip directly to their adventure beginning with their powers already active.
Do not offer selection.
"""

CRITICAL_TEMPLATE = """
{{{knowledge}}}
{{{customRules}}}
{{{essenceOverride}}}

CRITICAL INSTRUCTIONS:
1. You are ONLY the logic engine. You process game mechanics, not story.
2. You MUST respond with valid JSON. Include a "stateUpdates" object with any changed game state fields.
3. {{{diceRule}}}
4. Update only the state fields that changed in the stateUpdates object.
5. Provide narrative cues for the storyteller, not full prose.
6. Include any system messages (level ups, achievements, warnings).
7. If reference materials or custom rules are provided, use them for world-consistent responses.
8. {{{choicesRule}}}"""

QUEST_TEMPLATE = """

ACTIVE QUEST:
Title: {{{title}}}
Description: {{{description}}}
Objectives:
{{#each objectives}}  {{#if isCompleted}}[✓]{{else}}[ ]{{/if}} {{{text}}}
{{/each}}
IMPORTANT: Keep this quest objective in mind. The player is working towards completing these objectives."""

USER_PROMPT_TEMPLATE = """PLAYER ACTION: {{{userInput}}}
Process this action according to the game rules. Calculate any required dice rolls, update the game state, and provide narrative cues for the storyteller.
Respond with JSON matching this structure:
{
  "stateUpdates": { /* only changed fields */ },
  "narrativeCues": [{ "type": "...", "content": "...", "emotion": "..." }],
  "diceRolls": [{ "type": "d20", "result": 0, "modifier": 0, "total": 0, "purpose": "..." }],
  "systemMessages": ["..."],
  "narrativeCue": "Brief narrative if the narrator is unavailable"
}"""


def _names(items: list) -> str:
    if not items:
        return "None yet"
    return ", ".join(
        str(i.get("name") or "Unknown") if isinstance(i, dict) else str(i) for i in items
    )


def _state_character(state: dict[str, Any]) -> dict[str, Any] | None:
    character = state.get("character")
    if not isinstance(character, dict):
        nested = state.get("moduleState")
        character = nested.get("character") if isinstance(nested, dict) else None
    return character if isinstance(character, dict) else None


def build_essence_override(state: dict[str, Any], history_len: int) -> str:
    """Guard against re-running essence selection for an awakened character."""
    character = _state_character(state)
    if not character:
        return ""
    essences = character.get("essences")
    if not isinstance(essences, list) or not essences:
        return ""
    if character.get("essenceSelection") not in (None, "chosen", "imported"):
        return ""

    abilities = character.get("abilities") if isinstance(character.get("abilities"), list) else []
    details = []
    for a in abilities:
        if isinstance(a, dict):
            line = f"  - {a.get('name', 'Unknown')}"
            if a.get("type"):
                line += f" [{a['type']}]"
            if a.get("essence"):
                line += f" ({a['essence']})"
            details.append(line)
        else:
            details.append(f"  - {a}")

    return render_prompt(ESSENCE_OVERRIDE_TEMPLATE, {
        "essences": _names(essences),
        "rank": character.get("rank") or "Iron",
        "abilities": _names(abilities),
        "hasAbilities": bool(abilities),
        "introPhase": history_len < 10,
        "abilityDetails": "\n".join(details),
    })


def get_active_quest(state: dict[str, Any]) -> dict[str, Any] | None:
    quests = state.get("questLog")
    if not isinstance(quests, list):
        return None
    quests = [q for q in quests if isinstance(q, dict)]
    active_id = state.get("activeQuestId")
    if active_id:
        for quest in quests:
            if quest.get("id") == active_id:
                return quest
    for quest in quests:
        if quest.get("status") == "active":
            return quest
    return None


def build_quest_context(state: dict[str, Any]) -> str:
    quest = get_active_quest(state)
    if not quest:
        return ""
    objectives = [o for o in quest.get("objectives") or [] if isinstance(o, dict)]
    return render_prompt(QUEST_TEMPLATE, {
        "title": quest.get("title", ""),
        "description": quest.get("description", ""),
        "objectives": objectives,
    })


def _text(value: Any, default: str) -> str:
    return default if value is None else str(value)


def build_roll_rules(
    interactive_dice: bool,
    roll_result: int | None,
    pending_roll: PendingRoll | None,
) -> tuple[str, str]:
    """Dice instruction and roll-result rule for this turn."""
    if roll_result is None:
        return (INTERACTIVE_DICE_RULE if interactive_dice else DICE_RULE), ""

    pending = pending_roll or PendingRoll()
    modifier = pending.modifier or 0
    total = roll_result + modifier
    roll = {
        "type": pending.type,
        "result": roll_result,
        "modifier": modifier,
        "total": total,
        "purpose": pending.purpose,
        "difficulty": pending.difficulty,
        "success": total >= pending.difficulty if pending.difficulty is not None else None,
    }
    result_rule = render_prompt(ROLL_RESULT_TEMPLATE, {
        "result": str(roll_result),
        "purpose": pending.purpose,
        "difficulty": _text(pending.difficulty, "None"),
        "modifier": str(modifier),
        "stat": _text(pending.stat, "None"),
    })
    if not interactive_dice:
        return DICE_RULE, result_rule
    dice_rule = render_prompt(ROLL_RESOLUTION_TEMPLATE, {
        "result": str(roll_result),
        "rollJson": json.dumps(roll),
    })
    return dice_rule, result_rule


def build_system_prompt(
    world_module: str,
    current_state: dict[str, Any],
    snapshot: ConfigSnapshot,
    history_len: int = 0,
    knowledge_documents: list[str] | None = None,
    custom_rules: str | None = None,
    show_suggested_choices: bool = True,
    interactive_dice: bool = False,
    roll_result: int | None = None,
    pending_roll: PendingRoll | None = None,
) -> str:
    """Assemble the Brain system prompt.

    Stored prompts may carry {{KNOWLEDGE_SECTION}}, {{CUSTOM_RULES_SECTION}},
    {{ESSENCE_OVERRIDE_SECTION}}, {{INTERACTIVE_DICE_RULES}},
    {{ROLL_RESULT_RULE}} and {{SUGGESTED_CHOICES_RULES}}. Substituted
    sections are not repeated, and a prompt that places the choices rule
    itself does not get the critical instructions block appended.
    """
    base = resolve_prompt("brain", world_module, snapshot)

    knowledge = knowledge_section(knowledge_documents or [])
    rules = f"\n\nWORLD-SPECIFIC RULES (PRIORITIZE THESE):\n---\n{custom_rules}\n---\n" if custom_rules else ""
    essence = build_essence_override(current_state, history_len)
    choices = CHOICES_ON_RULE if show_suggested_choices else CHOICES_OFF_RULE
    dice_rule, roll_rule = build_roll_rules(interactive_dice, roll_result, pending_roll)

    sections = {
        "{{KNOWLEDGE_SECTION}}": knowledge,
        "{{CUSTOM_RULES_SECTION}}": rules,
        "{{ESSENCE_OVERRIDE_SECTION}}": essence,
        "{{INTERACTIVE_DICE_RULES}}": dice_rule,
        "{{ROLL_RESULT_RULE}}": roll_rule,
        "{{SUGGESTED_CHOICES_RULES}}": choices,
    }
    placed = {marker for marker in sections if marker in base}
    prompt = base
    for marker, text in sections.items():
        prompt = prompt.replace(marker, text)

    if interactive_dice and roll_result is None:
        prompt = INTERACTIVE_DICE_HEADER + prompt
    prompt = WORLD_STAT_CONTEXT.get(world_module, "") + prompt

    if "{{SUGGESTED_CHOICES_RULES}}" not in placed:
        prompt += render_prompt(CRITICAL_TEMPLATE, {
            "knowledge": "" if "{{KNOWLEDGE_SECTION}}" in placed else knowledge,
            "customRules": "" if "{{CUSTOM_RULES_SECTION}}" in placed else rules,
            "essenceOverride": "" if "{{ESSENCE_OVERRIDE_SECTION}}" in placed else essence,
            "diceRule": "Follow the dice rules above." if "{{INTERACTIVE_DICE_RULES}}" in placed else dice_rule,
            "choicesRule": choices,
        })
    if roll_rule and "{{ROLL_RESULT_RULE}}" not in placed:
        prompt += "\n" + roll_rule

    prompt += build_quest_context(current_state)
    prompt += "\n\nCURRENT GAME STATE (RAW):\n"
    prompt += json.dumps(current_state, indent=2, ensure_ascii=False)
    prompt += "\n\nRespond with JSON only. No markdown, no explanation."
    return prompt


def build_user_prompt(user_input: str) -> str:
    return render_prompt(USER_PROMPT_TEMPLATE, {"userInput": user_input})


# ── Response parsing ─────────────────────────────────────


def _normalise(parsed: dict[str, Any]) -> dict[str, Any]:
    parsed = dict(parsed)
    cues = parsed.get("narrativeCues")
    if isinstance(cues, str):
        parsed["narrativeCues"] = [{"type": "description", "content": cues}]
    elif isinstance(cues, list):
        parsed["narrativeCues"] = [
            {"type": "description", "content": c} if isinstance(c, str) else c for c in cues
        ]
    if isinstance(parsed.get("systemMessages"), str):
        parsed["systemMessages"] = [parsed["systemMessages"]]
    if "pendingRoll" in parsed and not isinstance(parsed["pendingRoll"], dict):
        parsed["pendingRoll"] = None
    return parsed


def _degraded(parsed: dict[str, Any]) -> BrainOutput:
    updates = parsed.get("stateUpdates")
    cue = parsed.get("narrativeCue")
    return BrainOutput(
        state_updates=updates if isinstance(updates, dict) else {},
        narrative_cues=[],
        dice_rolls=[],
        system_messages=[],
        narrative_cue=cue if isinstance(cue, str) and cue.strip() else FALLBACK_CUE,
    )


def parse_brain_response(content: str) -> BrainResult:
    """Parse, normalise and validate raw Brain output.

    Unparseable text fails; schema mismatches degrade.
    """
    parsed = parse_json_response(content, repair=True)
    if parsed is None:
        return BrainResult(success=False, error="Invalid JSON response from Brain (repair failed)")

    parsed = _normalise(parsed)
    degraded = False
    try:
        data = BrainOutput.model_validate(parsed)
    except ValidationError as e:
        logger.warning("Brain output failed validation, using degraded recovery: %s", e.error_count())
        data = _degraded(parsed)
        degraded = True

    if not (data.narrative_cue or "").strip():
        joined = " ".join(c.content for c in data.narrative_cues).strip()
        data.narrative_cue = joined or FALLBACK_CUE

    return BrainResult(success=True, data=data, degraded=degraded)


# ── Entry point ──────────────────────────────────────────


async def process_with_brain(
    user_input: str,
    world_module: str,
    current_state: dict[str, Any],
    chat_history: list[ChatTurn],
    model: ModelConfig,
    snapshot: ConfigSnapshot,
    *,
    knowledge_documents: list[str] | None = None,
    custom_rules: str | None = None,
    show_suggested_choices: bool = True,
    interactive_dice: bool = False,
    roll_result: int | None = None,
    pending_roll: PendingRoll | None = None,
) -> BrainResult:
    """Run the Logic Engine for one player action.

    Provider and parse failures come back as success=False; the caller
    decides whether that fails the turn.
    """
    window = int(snapshot.setting("brainHistoryWindow", 3))
    history = chat_history[-window:] if window > 0 else []

    try:
        system_prompt = build_system_prompt(
            world_module, current_state, snapshot,
            history_len=len(chat_history),
            knowledge_documents=knowledge_documents,
            custom_rules=custom_rules,
            show_suggested_choices=show_suggested_choices,
            interactive_dice=interactive_dice,
            roll_result=roll_result,
            pending_roll=pending_roll,
        )
        logger.info("Brain call provider=%s model=%s", model.provider, model.model)
        completion = await llm.invoke(
            model.provider, model.model, model.key,
            system_prompt, history, build_user_prompt(user_input),
            BRAIN_OUTPUT_SCHEMA,
            temperature=0.7,
            max_tokens=int(snapshot.setting("brainMaxOutputTokens", 2000)),
            timeout=float(snapshot.setting("providerTimeoutSeconds", llm.DEFAULT_TIMEOUT)),
        )
    except (llm.LLMError, PromptError) as e:
        logger.error("Brain call failed: %s", e)
        return BrainResult(success=False, error=str(e))

    if not completion.text.strip():
        return BrainResult(success=False, error="No response from Brain model", usage=completion.usage)

    result = parse_brain_response(completion.text)
    result.usage = completion.usage
    # A roll the player made themselves is never replaced
    if result.success and result.data and roll_result is None and snapshot.setting("serverSideDice", False):
        result.data.dice_rolls = reroll_reported(result.data.dice_rolls)
    return result
