"""Fate Engine: d20 resolution with karmic weighting, plus Director Mode.

Enhanced rolls carry a roll type and a stat. They are resolved here with
advantage/disadvantage, a momentum counter that softens miss streaks, a pity
crit after a long dry spell and fumble protection. Director Mode eases the
difficulty once when the character is close to going down.

Fate state lives in the campaign's module state under "fateEngine":

    {"momentumCounter": 0, "lastCritTurnCount": 0, "directorModeCooldown": false}
"""

import logging
import random
from dataclasses import dataclass
from typing import Any, Literal

from questline.dice import DiceSpec, roll
from questline.models import DiceRoll, PendingRoll

logger = logging.getLogger(__name__)

Advantage = Literal["advantage", "disadvantage", "straight"]

D20 = DiceSpec(count=1, sides=20)

MISS_THRESHOLD = 8
HIT_THRESHOLD = 12
MOMENTUM_STEP = 2
MOMENTUM_CAP = 10
PITY_CRIT_AFTER = 40
FUMBLE_PROTECTION_MOMENTUM = 4

HP_CRITICAL_PERCENT = 25
RESOURCE_LOW_PERCENT = 20
DIRECTOR_RESOURCES = ("mana", "stamina", "nanites")

# World stats mapped onto the six D&D abilities
STAT_EQUIVALENTS = {
    "outworlder": {"STR": "power", "DEX": "speed", "CON": "stamina", "INT": "power", "WIS": "recovery", "CHA": "power"},
    "tactical": {
        "STR": "strength", "DEX": "agility", "CON": "vitality",
        "INT": "intelligence", "WIS": "perception", "CHA": "intelligence",
    },
}


def initial_state() -> dict[str, Any]:
    return {"momentumCounter": 0, "lastCritTurnCount": 0, "directorModeCooldown": False}


def ensure_state(state: dict[str, Any]) -> dict[str, Any]:
    """Return the fate state stored in `state`, filling in missing fields."""
    current = state.get("fateEngine")
    return {**initial_state(), **(current if isinstance(current, dict) else {})}


# ── Building blocks ──────────────────────────────────────


def stat_modifier(value: int | float) -> int:
    return int((value - 10) // 2)


def d20_stat_value(character: dict[str, Any], stat: str) -> int | float:
    """Look up `stat` (STR, DEX, ...) on any world's stat block; 10 if absent."""
    stats = character.get("stats")
    if not isinstance(stats, dict):
        return 10
    if stat in stats:
        return stats[stat]
    key = stat.upper()[:3]
    if key in stats:
        return stats[key]
    for mapping in STAT_EQUIVALENTS.values():
        mapped = mapping.get(key)
        if mapped and mapped in stats:
            return stats[mapped]
    return 10


def advantage_state(advantage_sources: list[str], disadvantage_sources: list[str]) -> Advantage:
    """Any advantage and any disadvantage cancel to a straight roll."""
    if advantage_sources and disadvantage_sources:
        return "straight"
    if advantage_sources:
        return "advantage"
    if disadvantage_sources:
        return "disadvantage"
    return "straight"


def roll_d20(state: Advantage, rng: random.Random | None = None) -> tuple[list[int], int]:
    if state == "straight":
        natural = roll(D20, rng).total
        return [natural], natural
    rolls = [roll(D20, rng).total, roll(D20, rng).total]
    return rolls, max(rolls) if state == "advantage" else min(rolls)


def next_momentum(natural: int, momentum: int) -> int:
    if natural < MISS_THRESHOLD:
        return min(MOMENTUM_CAP, momentum + MOMENTUM_STEP)
    if natural > HIT_THRESHOLD:
        return 0
    return momentum


@dataclass
class CriticalResult:
    natural: int
    is_crit: bool = False
    is_fumble: bool = False
    rerolled: bool = False


def critical_result(
    natural: int,
    last_crit_turn_count: int,
    momentum: int,
    rng: random.Random | None = None,
) -> CriticalResult:
    """Natural 20 crits; after a long dry spell so does a 19.

    With enough momentum a natural 1 is rerolled once before it counts
    as a fumble.
    """
    if natural == 20:
        return CriticalResult(natural, is_crit=True)
    if natural == 19 and last_crit_turn_count > PITY_CRIT_AFTER:
        return CriticalResult(natural, is_crit=True)
    if natural == 1 and momentum > FUMBLE_PROTECTION_MOMENTUM:
        second = roll(D20, rng).total
        return CriticalResult(second, is_crit=second == 20, is_fumble=second == 1, rerolled=True)
    return CriticalResult(natural, is_fumble=natural == 1)


def proficiency_bonus(character: dict[str, Any]) -> int:
    if isinstance(character.get("proficiencyBonus"), (int, float)):
        return int(character["proficiencyBonus"])
    level = character.get("level") if isinstance(character.get("level"), int) else 1
    return (max(level, 1) - 1) // 4 + 2


def modifier_stack(character: dict[str, Any], pending: PendingRoll) -> dict[str, int]:
    stat_mod = stat_modifier(d20_stat_value(character, pending.stat or "STR"))
    proficiency = proficiency_bonus(character) if pending.proficiency_applies else 0
    return {
        "statMod": stat_mod,
        "proficiency": proficiency,
        "itemBonus": pending.item_bonus,
        "situationalMod": pending.situational_mod,
        "total": stat_mod + proficiency + pending.item_bonus + pending.situational_mod,
    }


def difficulty_tier(dc: int | float) -> str:
    if dc <= 4:
        return "trivial"
    if dc <= 9:
        return "very_easy"
    if dc <= 14:
        return "easy"
    if dc <= 17:
        return "moderate"
    if dc <= 19:
        return "hard"
    return "heroic"


# ── Roll resolution ──────────────────────────────────────


def process_roll(
    character: dict[str, Any],
    fate: dict[str, Any],
    pending: PendingRoll,
    rng: random.Random | None = None,
) -> tuple[DiceRoll, dict[str, Any]]:
    """Resolve an enhanced roll. Returns the roll and the new fate state.

    Momentum adds to the die (never past 20) and is counted separately
    from the modifier stack, so crits and fumbles are judged on the
    natural roll only.
    """
    momentum = int(fate.get("momentumCounter", 0))
    last_crit = int(fate.get("lastCritTurnCount", 0))

    advantage = advantage_state(pending.advantage_sources, pending.disadvantage_sources)
    raw_rolls, selected = roll_d20(advantage, rng)
    crit = critical_result(selected, last_crit, momentum, rng)
    adjusted = min(20, crit.natural + momentum)
    math = modifier_stack(character, pending)
    math["momentumMod"] = adjusted - crit.natural
    total = adjusted + math["total"]

    dc = pending.difficulty
    success = total >= dc if dc is not None else None
    outcome = None
    if dc is not None:
        outcome = {
            "targetDc": dc,
            "difficultyTier": difficulty_tier(dc),
            "success": success,
            "margin": total - dc,
            "narrativeTag": "Hit" if success else "Miss",
        }

    dice_roll = DiceRoll(
        type="d20",
        result=crit.natural,
        modifier=math["total"],
        total=total,
        purpose=pending.purpose or f"{pending.roll_type} roll",
        difficulty=dc,
        success=success,
        roll_type=pending.roll_type,
        raw_rolls=raw_rolls,
        state_flags={
            "advantage": advantage == "advantage",
            "disadvantage": advantage == "disadvantage",
            "isCrit": crit.is_crit,
            "isFumble": crit.is_fumble,
            "streakBreakerActive": momentum > 0,
            "fumbleRerolled": crit.rerolled,
        },
        math=math,
        outcome=outcome,
    )
    updated = {
        **fate,
        "momentumCounter": next_momentum(selected, momentum),
        "lastCritTurnCount": 0 if crit.is_crit else last_crit + 1,
    }
    logger.info(
        "Fate roll %s: natural=%s momentum=%s->%s total=%s",
        pending.roll_type, crit.natural, momentum, updated["momentumCounter"], total,
    )
    return dice_roll, updated


# ── Director Mode ────────────────────────────────────────


def _percent(resource: Any) -> float | None:
    if not isinstance(resource, dict):
        return None
    current, maximum = resource.get("current"), resource.get("max")
    if not isinstance(current, (int, float)) or not isinstance(maximum, (int, float)) or maximum <= 0:
        return None
    return current / maximum * 100


def director_trigger(character: dict[str, Any]) -> str | None:
    """Why Director Mode should step in for this character, if at all."""
    hp = _percent(character.get("hp"))
    if hp is not None and 0 < hp < HP_CRITICAL_PERCENT:
        return "HP Critical"
    for name in DIRECTOR_RESOURCES:
        percent = _percent(character.get(name))
        if percent is not None and 0 <= percent < RESOURCE_LOW_PERCENT:
            return "Resource Exhaustion"
    return None


def apply_director_mode(fate: dict[str, Any], character: Any, system_messages: list[str]) -> dict[str, Any]:
    """Ease difficulty once per crisis.

    Triggering sets the cooldown and tells the player. The cooldown clears
    on the first turn the character is out of danger.
    """
    if not isinstance(character, dict):
        return fate
    reason = director_trigger(character)
    if fate.get("directorModeCooldown"):
        return fate if reason else {**fate, "directorModeCooldown": False}
    if reason is None:
        return fate
    logger.info("Director Mode triggered: %s", reason)
    system_messages.append(
        f"[Director Mode] Difficulty adjusted - {reason} detected. Enemies are less accurate for 2 rounds."
    )
    return {**fate, "directorModeCooldown": True}
