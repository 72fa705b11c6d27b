"""Dice notation ("2d6+3", "d20", "4d10-2") and server-side rolls."""

import logging
import random
import re
from dataclasses import dataclass, field

from questline.models import DiceRoll

logger = logging.getLogger(__name__)

_DICE_RE = re.compile(r"(\d*)d(\d+)\s*([+-]\s*\d+)?", re.IGNORECASE)


@dataclass(frozen=True)
class DiceSpec:
    count: int
    sides: int
    modifier: int = 0


@dataclass
class DiceOutcome:
    count: int
    sides: int
    modifier: int
    rolls: list[int] = field(default_factory=list)
    total: int = 0


def parse_dice(notation: str) -> DiceSpec | None:
    """Parse NdS+M notation. Returns None when the text holds no dice."""
    match = _DICE_RE.search(notation or "")
    if not match:
        return None
    count = int(match.group(1)) if match.group(1) else 1
    sides = int(match.group(2))
    modifier = int(match.group(3).replace(" ", "")) if match.group(3) else 0
    if count < 1 or sides < 1:
        return None
    return DiceSpec(count=count, sides=sides, modifier=modifier)


def roll(spec: DiceSpec, rng: random.Random | None = None) -> DiceOutcome:
    rand = (rng or random).random
    rolls = [int(rand() * spec.sides) + 1 for _ in range(spec.count)]
    return DiceOutcome(
        count=spec.count,
        sides=spec.sides,
        modifier=spec.modifier,
        rolls=rolls,
        total=sum(rolls) + spec.modifier,
    )


def roll_dice(notation: str, rng: random.Random | None = None) -> DiceOutcome:
    """Roll dice from notation. Raises ValueError for unparseable input."""
    spec = parse_dice(notation)
    if spec is None:
        raise ValueError(f"Invalid dice notation: {notation!r}")
    return roll(spec, rng)


def reroll_reported(rolls: list[DiceRoll], rng: random.Random | None = None) -> list[DiceRoll]:
    """Replace model-reported dice results with server-side rolls.

    The model's modifier is kept; `success` is recomputed against
    `difficulty` when one was given. Rolls whose type is not dice notation
    pass through unchanged.
    """
    rerolled = []
    for reported in rolls:
        spec = parse_dice(reported.type)
        if spec is None:
            rerolled.append(reported)
            continue
        modifier = reported.modifier if reported.modifier is not None else spec.modifier
        outcome = roll(DiceSpec(spec.count, spec.sides, 0), rng)
        total = outcome.total + modifier
        update = {"result": outcome.total, "total": total}
        if reported.difficulty is not None:
            update["success"] = total >= reported.difficulty
        logger.debug("reroll %s: model=%s server=%s", reported.type, reported.result, outcome.total)
        rerolled.append(reported.model_copy(update=update))
    return rerolled
