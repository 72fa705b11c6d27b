"""Prompt resolution and Handlebars rendering for the pipeline stages.

Effective system prompts are resolved per (kind, world) against a
ConfigSnapshot read once at the start of a turn:

    1. world override document field, when present and not null
    2. global document field, when truthy
    3. compiled-in default (world-specialised for brain/voice)

Internal prompt blocks (cue text, essence override, quest context) are
Handlebars templates rendered with pybars.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import pybars

from questline import storage
from questline.models import ReviewerSettings

logger = logging.getLogger(__name__)

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_upper(this, value):
    """{{upper value}} — uppercase a string."""
    return str(value or "").upper()


def _helper_join(this, items, sep=", "):
    """{{join list ", "}} — join names; dict items contribute their "name"."""
    names = []
    for item in items or []:
        if isinstance(item, dict):
            names.append(str(item.get("name") or "Unknown"))
        else:
            names.append(str(item))
    return sep.join(names)


_HELPERS: dict[str, Callable] = {
    "upper": _helper_upper,
    "join": _helper_join,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Compiled-in defaults ─────────────────────────────────

WORLDS = ("classic", "outworlder", "tactical")

DEFAULT_BRAIN_PROMPT = """You are the LOGIC ENGINE for a tabletop RPG.

CORE RESPONSIBILITIES:
- Process game mechanics, dice rolls, and state changes
- Track HP, Mana, inventory, abilities, and party members
- Return structured JSON with state updates and narrative cues

RULES:
- Calculate all dice rolls with proper randomization
- Update only the state fields that changed
- Provide narrative cues for the storyteller, not full prose
- Include system messages for level ups, achievements, warnings

RESPONSE FORMAT:
Respond with valid JSON only. No markdown, no explanation."""

DEFAULT_VOICE_PROMPT = """You are the NARRATOR for a tabletop RPG adventure.

STYLE GUIDELINES:
- Write in second person ("You swing your sword...")
- Use vivid, descriptive prose
- Keep responses between 150-250 words
- One strong scene beat per response
- Give NPCs distinct voices and personalities

STORYTELLING RULES:
1. You are the STORYTELLER. Write immersive, engaging prose.
2. Transform the logic engine's cues into compelling narrative.
3. Include dialogue where appropriate.
4. Balance drama with moments of levity."""

DEFAULT_STATE_REVIEWER_PROMPT = """You are a STATE CONSISTENCY REVIEWER for an RPG game.

Your job is to review the narrative output and extract any state changes that should be tracked.

LOOK FOR CHANGES TO:
- Inventory (items picked up, used, or lost)
- HP/Health changes (damage taken, healing received)
- Mana/Energy/Nanites changes (spells cast, abilities used)
- Powers/Abilities (new abilities gained or lost)
- Party members (NPCs joining or leaving)
- Quest progress (objectives completed)
- Currency (gold, credits, etc.)

CURRENT GAME STATE:
{currentState}

NARRATIVE TO REVIEW:
{narrative}

Return a JSON object with only the fields that changed:
{
  "corrections": {
    // Only include fields that need updating
  },
  "reasoning": "Brief explanation of what changed"
}"""

WORLD_BRAIN_PROMPTS: dict[str, str] = {
    "classic": """You are the LOGIC ENGINE for a D&D 5th Edition RPG.
Rules:
- Use standard 5e rules for combat, skill checks, and saves
- Roll d20 for attacks and checks, add appropriate modifiers
- AC determines if attacks hit
- Track HP changes from damage and healing
- Manage spell slots for spellcasters
- Track inventory changes

Stats to track: HP, AC, STR, DEX, CON, INT, WIS, CHA, proficiency bonus, gold, inventory items, spell slots.""",

    "outworlder": """You are the LOGIC ENGINE for a HWFWM (He Who Fights With Monsters) style RPG.
Rules:
- Characters have essence abilities tied to their essences
- Rank progression: Iron → Bronze → Silver → Gold → Diamond
- Abilities have cooldowns and mana/spirit costs
- Health scales with rank
- Generate "Blue Box" style system notifications

Stats to track: HP, Mana, Spirit, Rank, Essences (max 4), Confluence, Abilities with cooldowns.""",

    "tactical": """You are the LOGIC ENGINE for a PRAXIS: Operation Dark Tide RPG.
Rules:
- Daily missions must be tracked (physical training, tactical drills)
- Failure to complete daily missions triggers a penalty zone or mission failure
- Tactical recruitment and unit management can expand your squad
- Stats can be allocated from earned mission points
- Gates and mission zones have ranks from E to S

Stats to track: HP, Mana, Fatigue, STR/AGI/VIT/INT/PER, Mission Points, Tactical Squad roster, Rank/Job, Skills.""",
}

WORLD_VOICE_PROMPTS: dict[str, str] = {
    "classic": """You are the NARRATOR for a classic high fantasy RPG in the style of D&D.

STYLE GUIDELINES:
- Write in second person ("You swing your sword...")
- Use vivid, descriptive prose suitable for epic fantasy
- Describe combat with weight and impact
- Give NPCs distinct voices and personalities
- Balance drama with moments of levity
- Reference classic fantasy tropes while keeping things fresh

TONE: Epic, heroic, occasionally humorous, always engaging.""",

    "outworlder": """You are the NARRATOR for a LitRPG adventure in the style of "He Who Fights With Monsters."

STYLE GUIDELINES:
- Write in second person with snarky, modern sensibilities
- Include occasional pop culture references where fitting
- Format system messages as "Blue Box" alerts using code blocks:
  ```
  『SYSTEM MESSAGE』
  Content here
  ```
- Make abilities feel impactful and visually distinct
- Balance serious moments with witty banter
- The world should feel dangerous but also full of wonder

TONE: Witty, irreverent, action-packed, with genuine emotional moments.""",

    "tactical": """You are the NARRATOR for a PRAXIS: Operation Dark Tide style elite tactical RPG.

STYLE GUIDELINES:
- Write in second person with emphasis on tactical precision and high-stakes missions
- Format system notifications with brackets: [SYSTEM MESSAGE]
- Combat should feel tactical, intense, and high-tech
- Squad members and tactical units should feel like a disciplined elite force
- Emphasize specialized gear and mission objectives
- Build tension during covert operations and gate breaches

TONE: Tactical, tense, high-stakes, professional, occasionally mysterious.""",
}

STATE_REPORT_START = "---STATE_REPORT---"
STATE_REPORT_END = "---END_REPORT---"

STATE_REPORT_INSTRUCTION = f"""STATE REPORT (hidden from the player):
If the scene you wrote changes the character's resources, inventory, abilities,
party or quest progress, append ONE block at the very end of your response:
{STATE_REPORT_START}{{"hp": {{"current": 12}}, "inventory": {{"added": ["Rusty Key"]}}}}{STATE_REPORT_END}
Only include fields that changed. The block must be valid JSON on a single line.
Omit the block entirely when nothing changed."""

_PROMPT_FIELDS = {
    "brain": "brainPrompt",
    "voice": "voicePrompt",
    "reviewer": "stateReviewerPrompt",
}


def default_prompt(kind: str, world_module: str) -> str:
    """Compiled-in prompt for kind; brain/voice are specialised per world."""
    if kind == "brain":
        return WORLD_BRAIN_PROMPTS.get(world_module, DEFAULT_BRAIN_PROMPT)
    if kind == "voice":
        return WORLD_VOICE_PROMPTS.get(world_module, DEFAULT_VOICE_PROMPT)
    return DEFAULT_STATE_REVIEWER_PROMPT


# ── Config snapshot ──────────────────────────────────────


@dataclass
class ConfigSnapshot:
    """Configuration read once per turn and handed to every stage."""

    world_module: str
    settings: dict[str, Any] = field(default_factory=dict)
    global_prompts: dict[str, Any] | None = None
    world_prompts: dict[str, Any] | None = None
    knowledge: list[dict[str, Any]] = field(default_factory=list)

    def setting(self, key: str, default: Any = None) -> Any:
        value = self.settings.get(key)
        return default if value is None else value


def _safe_read(what: str, reader: Callable[[], Any], fallback: Any) -> Any:
    try:
        return reader()
    except (storage.StorageError, OSError) as e:
        logger.warning("Could not read %s, using defaults: %s", what, e)
        return fallback


def load_snapshot(world_module: str) -> ConfigSnapshot:
    """Read settings, prompt documents and knowledge for one turn.

    Read errors are logged and treated as "document absent".
    """
    settings = _safe_read("config", storage.get_config, None)
    if settings is None:
        settings = dict(storage.CONFIG_DEFAULTS)
    return ConfigSnapshot(
        world_module=world_module,
        settings=settings,
        global_prompts=_safe_read(
            "global prompts", lambda: storage.get_prompt_document(storage.GLOBAL_DOC), None),
        world_prompts=_safe_read(
            f"{world_module} prompts", lambda: storage.get_prompt_document(world_module), None),
        knowledge=_safe_read("knowledge base", storage.get_knowledge_documents, []),
    )


# ── Resolution ───────────────────────────────────────────


def resolve_prompt(kind: str, world_module: str, snapshot: ConfigSnapshot | None = None) -> str:
    """Return the effective system prompt for kind in world_module.

    A world field explicitly set to null falls through to the global value.
    """
    if snapshot is None:
        snapshot = load_snapshot(world_module)
    field_name = _PROMPT_FIELDS[kind]

    world_doc = snapshot.world_prompts if snapshot.world_module == world_module else None
    if world_doc and world_doc.get(field_name) is not None:
        return world_doc[field_name]

    global_doc = snapshot.global_prompts
    if global_doc and global_doc.get(field_name):
        return global_doc[field_name]

    logger.debug("No stored %s prompt for %s, using default", kind, world_module)
    return default_prompt(kind, world_module)


def _frequency(value: Any) -> int:
    if value is None:
        return 1
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid stateReviewerFrequency %r, reviewing every turn", value)
        return 1


def reviewer_settings(snapshot: ConfigSnapshot) -> ReviewerSettings:
    """Reviewer gate settings from the global document, with defaults."""
    doc = snapshot.global_prompts or {}
    enabled = doc.get("stateReviewerEnabled")
    return ReviewerSettings(
        enabled=True if enabled is None else bool(enabled),
        frequency=_frequency(doc.get("stateReviewerFrequency")),
        model=doc.get("stateReviewerModel") or "gpt-4o-mini",
        prompt=resolve_prompt("reviewer", snapshot.world_module, snapshot),
    )


def state_report_instruction() -> str:
    return STATE_REPORT_INSTRUCTION
