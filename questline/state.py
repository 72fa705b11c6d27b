"""Deterministic game-state merges.

Two entry points, both pure (inputs are never mutated):

    merge_state_updates(state, updates)   Logic Engine stateUpdates deltas
    apply_corrections(state, corrections) State Reviewer corrections

List fields use set semantics: an added item already present is not added
again, so replaying the same delta or correction is harmless.
"""

import copy
import logging
from typing import Any

from questline.models import ListCorrection, StateCorrections

logger = logging.getLogger(__name__)

# Abilities and essences can be gained but never lost through a delta.
ADD_ONLY_FIELDS = ("abilities", "spells", "essences")
# Explicit add/remove only; a bare list is never a replacement.
PROTECTED_LIST_FIELDS = ("inventory", "partyMembers")
# Character identity survives any update.
CHARACTER_IDENTITY_FIELDS = ("name", "rank", "essences")


def _union(current: list, added: list) -> list:
    result = list(current)
    for item in added:
        if item not in result:
            result.append(item)
    return result


def _is_list_op(value: Any) -> bool:
    return isinstance(value, dict) and ("added" in value or "removed" in value)


def _apply_list_op(current: Any, value: Any, allow_remove: bool = True) -> list:
    current = list(current) if isinstance(current, list) else []
    if isinstance(value, list):
        return _union(current, value)
    result = _union(current, value.get("added") or [])
    if allow_remove:
        removed = value.get("removed") or []
        result = [item for item in result if item not in removed]
    return result


def _merge_character(current: Any, updates: dict[str, Any]) -> dict[str, Any]:
    current = dict(current) if isinstance(current, dict) else {}
    merged = {**current, **updates}
    for key in CHARACTER_IDENTITY_FIELDS:
        if current.get(key):
            merged[key] = current[key]

    abilities = updates.get("abilities")
    if abilities is not None:
        if isinstance(abilities, list) or _is_list_op(abilities):
            merged["abilities"] = _apply_list_op(current.get("abilities"), abilities, allow_remove=False)
        else:
            merged["abilities"] = current.get("abilities", [])

    inventory = updates.get("inventory")
    if inventory is not None:
        if isinstance(inventory, list):
            logger.warning("Plain list for character.inventory, treating as add-only")
        if isinstance(inventory, list) or _is_list_op(inventory):
            merged["inventory"] = _apply_list_op(current.get("inventory"), inventory)
        else:
            merged["inventory"] = current.get("inventory", [])
    return merged


def _merge_npcs(current: Any, updates: dict[str, Any]) -> dict[str, Any]:
    npcs = dict(current) if isinstance(current, dict) else {}
    for key, data in updates.items():
        existing = npcs.get(key)
        if isinstance(existing, dict) and isinstance(data, dict):
            npcs[key] = {
                **existing,
                **data,
                "name": existing.get("name") or data.get("name"),
                "role": existing.get("role") or data.get("role"),
            }
        else:
            npcs[key] = data
    return npcs


def merge_state_updates(state: dict[str, Any], updates: dict[str, Any] | None) -> dict[str, Any]:
    """Merge Logic Engine deltas into a game state and return the new state."""
    result = copy.deepcopy(state or {})
    for key, value in (updates or {}).items():
        if value is None:
            continue
        value = copy.deepcopy(value)

        if key in ADD_ONLY_FIELDS:
            if isinstance(value, list) or _is_list_op(value):
                result[key] = _apply_list_op(result.get(key), value, allow_remove=False)
            continue

        if key in PROTECTED_LIST_FIELDS:
            if isinstance(value, list):
                logger.warning("Plain list for %s, treating as add-only", key)
            if isinstance(value, list) or _is_list_op(value):
                result[key] = _apply_list_op(result.get(key), value)
            continue

        if key == "character" and isinstance(value, dict):
            result[key] = _merge_character(result.get(key), value)
            continue

        if key == "keyNpcs" and isinstance(value, dict):
            result[key] = _merge_npcs(result.get(key), value)
            continue

        if _is_list_op(value):
            result[key] = _apply_list_op(result.get(key), value)
            continue

        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = {**result[key], **value}
            continue

        result[key] = value
    return result


# ── Reviewer corrections ─────────────────────────────────

_RESOURCE_FIELDS = ("hp", "mana", "nanites")
_SCALAR_FIELDS = ("fatigue", "gold", "experience")
_LIST_FIELDS = {
    "inventory": "inventory",
    "powers": "powers",
    "party_members": "partyMembers",
}


def _apply_list_correction(current: Any, correction: ListCorrection) -> list:
    return _apply_list_op(current, {"added": correction.added, "removed": correction.removed})


def apply_corrections(
    state: dict[str, Any],
    corrections: StateCorrections | dict[str, Any],
) -> dict[str, Any]:
    """Apply State Reviewer corrections and return the new state.

    Resources replace current/max only where the correction sets them;
    scalars overwrite; lists add then remove; questProgress merges shallowly.
    """
    if isinstance(corrections, dict):
        corrections = StateCorrections.model_validate(corrections)
    result = copy.deepcopy(state or {})

    for name in _RESOURCE_FIELDS:
        correction = getattr(corrections, name)
        if correction is None:
            continue
        existing = result.get(name) if isinstance(result.get(name), dict) else {}
        result[name] = {
            **existing,
            "current": correction.current if correction.current is not None else existing.get("current", 0),
            "max": correction.max if correction.max is not None else existing.get("max", 0),
        }

    for name in _SCALAR_FIELDS:
        value = getattr(corrections, name)
        if value is not None:
            result[name] = value

    for attr, key in _LIST_FIELDS.items():
        correction = getattr(corrections, attr)
        if correction is not None:
            result[key] = _apply_list_correction(result.get(key), correction)

    if corrections.quest_progress:
        existing = result.get("questProgress") if isinstance(result.get("questProgress"), dict) else {}
        result["questProgress"] = {**existing, **corrections.quest_progress}

    return result
