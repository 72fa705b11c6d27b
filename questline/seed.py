"""Seed the store with default prompt documents and a starter knowledge base."""

import logging

from questline import storage
from questline.prompts import (
    DEFAULT_BRAIN_PROMPT,
    DEFAULT_STATE_REVIEWER_PROMPT,
    DEFAULT_VOICE_PROMPT,
    WORLD_BRAIN_PROMPTS,
    WORLD_VOICE_PROMPTS,
    WORLDS,
)

logger = logging.getLogger(__name__)

STARTER_KNOWLEDGE = [
    {
        "name": "Dice Conventions",
        "worldModule": "global",
        "category": "rules",
        "targetModel": "brain",
        "content": (
            "Checks roll d20 + modifier against a DC. DC 10 is easy, 15 is moderate, "
            "20 is hard. A natural 20 always succeeds and a natural 1 always fails."
        ),
    },
    {
        "name": "The Crossroads Inn",
        "worldModule": "classic",
        "category": "location",
        "targetModel": "voice",
        "content": (
            "A timber inn where three trade roads meet. The innkeeper, Marta, trades "
            "rumours for coin and keeps a loaded crossbow under the bar."
        ),
    },
    {
        "name": "Essence Ranks",
        "worldModule": "outworlder",
        "category": "lore",
        "targetModel": "both",
        "content": (
            "Essence users advance Iron, Bronze, Silver, Gold and Diamond. Each rank "
            "strengthens every ability granted by the user's essences."
        ),
    },
    {
        "name": "Gate Classification",
        "worldModule": "tactical",
        "category": "lore",
        "targetModel": "both",
        "content": (
            "Gates are ranked E through S by the mana readings at their threshold. "
            "Squads may only breach gates at or below their clearance rank."
        ),
    },
]


def seed_prompts() -> None:
    """Write the default global prompt document and per-world overrides."""
    storage.save_prompt_document(storage.GLOBAL_DOC, {
        "brainPrompt": DEFAULT_BRAIN_PROMPT,
        "voicePrompt": DEFAULT_VOICE_PROMPT,
        "stateReviewerPrompt": DEFAULT_STATE_REVIEWER_PROMPT,
        "stateReviewerEnabled": True,
        "stateReviewerModel": "gpt-4o-mini",
        "stateReviewerFrequency": 1,
    })
    for world in WORLDS:
        storage.save_prompt_document(world, {
            "worldId": world,
            "brainPrompt": WORLD_BRAIN_PROMPTS[world],
            "voicePrompt": WORLD_VOICE_PROMPTS[world],
            "stateReviewerPrompt": None,
        })


def seed_knowledge() -> None:
    """Add starter documents that are not already present (matched by name)."""
    existing = {d.get("name") for d in storage.get_knowledge_documents()}
    for doc in STARTER_KNOWLEDGE:
        if doc["name"] not in existing:
            storage.add_knowledge_document(doc)


def seed_all() -> None:
    seed_prompts()
    seed_knowledge()
    logger.info("Seeded prompt documents and starter knowledge base")
