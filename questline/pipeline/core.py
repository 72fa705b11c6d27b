"""Turn orchestration: one player action through Brain, Voice and Reviewer.

    Idle -> KeyResolution -> KnowledgeFetch -> BrainInvoke
        -> BrainFailed                                   (turn fails)
        -> AwaitingRoll                                  (player rolls, turn resumes later)
        -> VoiceInvoke -> VoiceSucceeded | FallbackNarrative
        -> Persist -> Done

Only a missing Logic Engine key or a Brain failure fails the turn.
Everything after a successful Brain call degrades instead: no narrator key
or a narrator failure falls back to the Brain's narrativeCue, and storage
failures after the turn is computed are logged and swallowed.

In interactive dice mode the Brain may ask the player to roll. The turn
then stops before the Narrator: nothing is persisted or counted, and the
pending roll travels back to the client in moduleState. The client resumes
by sending the same action with rollResult.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator

from pydantic import ValidationError

from questline import fate, storage
from questline.knowledge import fetch_knowledge
from questline.models import (
    CampaignCreateRequest,
    CampaignCreateResponse,
    NarrativeCue,
    PendingRoll,
    TurnRequest,
    TurnResponse,
    Usage,
)
from questline.prompts import ConfigSnapshot, load_snapshot, reviewer_settings
from questline.state import apply_corrections, merge_state_updates

from .brain import FALLBACK_CUE, process_with_brain
from .keys import ConfigurationError, ModelConfig, resolve_brain_config, resolve_model_config
from .reviewer import review_state
from .voice import generate_narrative

logger = logging.getLogger(__name__)

OPENING_CUE = (
    "Open a brand new adventure for {name}. Set the scene in this world, "
    "introduce one hook that invites action, and end on a moment of choice."
)

FALLBACK_OPENERS = {
    "classic": (
        "The tavern door creaks shut behind you, {name}, and the smell of woodsmoke and spilled ale "
        "wraps around you like an old cloak. A hooded stranger at the corner table lifts a gloved hand. "
        "Somewhere beyond the hills, something has gone wrong, and someone is willing to pay to set it right."
    ),
    "outworlder": (
        "You wake on cold stone under a sky with two moons, {name}, and a translucent blue box hangs in "
        "the air in front of you. Whatever world you came from, it is not this one. "
        "Somewhere nearby, something large is moving through the trees."
    ),
    "tactical": (
        "[SYSTEM MESSAGE] Operator {name}, your clearance is active. The briefing room hums with the glow "
        "of tactical displays as the commander slides a sealed dossier across the table. "
        "A gate has opened on the edge of the city, and your squad deploys at dawn."
    ),
}
DEFAULT_OPENER = "Your adventure begins, {name}. The road ahead is yours to choose."


class TurnStage(str, Enum):
    IDLE = "idle"
    KEY_RESOLUTION = "key_resolution"
    KNOWLEDGE_FETCH = "knowledge_fetch"
    BRAIN_INVOKE = "brain_invoke"
    BRAIN_FAILED = "brain_failed"
    AWAITING_ROLL = "awaiting_roll"
    VOICE_INVOKE = "voice_invoke"
    VOICE_SUCCEEDED = "voice_succeeded"
    FALLBACK_NARRATIVE = "fallback_narrative"
    PERSIST = "persist"
    DONE = "done"
    FAILED = "failed"


# One in-flight turn per campaign in this process. Entries live only while
# a turn for that campaign is running or waiting.
_campaign_locks: dict[str, asyncio.Lock] = {}
_lock_holders: dict[str, int] = {}


@asynccontextmanager
async def _campaign_turn(campaign_id: str) -> AsyncIterator[None]:
    lock = _campaign_locks.setdefault(campaign_id, asyncio.Lock())
    _lock_holders[campaign_id] = _lock_holders.get(campaign_id, 0) + 1
    try:
        async with lock:
            yield
    finally:
        _lock_holders[campaign_id] -= 1
        if not _lock_holders[campaign_id]:
            del _lock_holders[campaign_id]
            del _campaign_locks[campaign_id]


def _enter(stage: TurnStage, campaign_id: str) -> TurnStage:
    logger.info("turn %s: %s", campaign_id, stage.value)
    return stage


def _add_model_tokens(totals: dict[str, dict[str, int]], model: ModelConfig | None, usage: Usage | None) -> None:
    if model is None or usage is None:
        return
    entry = totals.setdefault(model.model, {"prompt": 0, "completion": 0, "total": 0})
    entry["prompt"] += usage.prompt_tokens
    entry["completion"] += usage.completion_tokens
    entry["total"] += usage.total_tokens


def _read_version(campaign_id: str) -> int | None:
    try:
        campaign = storage.get_campaign(campaign_id)
    except storage.StorageError as e:
        logger.warning("Could not read campaign %s: %s", campaign_id, e)
        return None
    if campaign is None:
        return None
    return campaign.get("version", 0)


def _persist_turn(
    request: TurnRequest,
    user_id: str,
    narrative: str,
    module_state: dict[str, Any],
    usage: Usage,
    model_tokens: dict[str, dict[str, int]],
    expected_version: int | None,
) -> None:
    """Write messages, state and usage. Failures are logged, never raised."""
    if expected_version is None:
        logger.warning("Campaign %s not found, messages and state not saved", request.campaign_id)
    else:
        try:
            storage.append_messages(request.campaign_id, [
                storage.new_message("user", request.user_input),
                storage.new_message("narrator", narrative, token_usage=usage.dump()),
            ])
            storage.save_campaign_state(request.campaign_id, module_state, expected_version)
        except (storage.StorageError, KeyError, OSError):
            logger.exception("Failed to save turn for campaign %s", request.campaign_id)

    try:
        storage.increment_user_usage(user_id, usage.prompt_tokens, usage.completion_tokens, model_tokens)
    except (storage.StorageError, OSError):
        logger.exception("Failed to record usage for user %s", user_id)
    try:
        storage.increment_daily_usage(usage.prompt_tokens, usage.completion_tokens)
    except (storage.StorageError, OSError):
        logger.exception("Failed to record daily usage")


async def run_turn(
    request: TurnRequest,
    user_id: str = "anonymous",
    secrets: dict[str, str] | None = None,
) -> TurnResponse:
    """Process one player action end to end.

    Turns against the same campaign are serialised; different campaigns
    run concurrently.
    """
    async with _campaign_turn(request.campaign_id):
        return await _run_turn(request, user_id, secrets)


def _pending_roll(request: TurnRequest) -> PendingRoll | None:
    if request.pending_roll is not None:
        return request.pending_roll
    stored = request.current_state.get("pendingRoll")
    if not isinstance(stored, dict):
        return None
    try:
        return PendingRoll.model_validate(stored)
    except ValidationError:
        logger.warning("Ignoring malformed pendingRoll in state for %s", request.campaign_id)
        return None


def _resolve_fate_roll(state: dict[str, Any], pending: PendingRoll | None, dice_rolls: list) -> None:
    """Resolve an enhanced pending roll through the Fate Engine, in place."""
    character = state.get("character")
    if pending is None or not (pending.roll_type and pending.stat) or not isinstance(character, dict):
        logger.debug("No enhanced roll data, skipping Fate Engine")
        return
    try:
        roll, state["fateEngine"] = fate.process_roll(character, state["fateEngine"], pending)
    except (TypeError, ValueError) as e:
        logger.warning("Fate Engine could not resolve %s roll: %s", pending.roll_type, e)
        return
    dice_rolls.append(roll)


async def _run_turn(request: TurnRequest, user_id: str, secrets: dict[str, str] | None) -> TurnResponse:
    campaign_id = request.campaign_id
    world = request.world_module
    stage = _enter(TurnStage.IDLE, campaign_id)
    snapshot = load_snapshot(world)
    expected_version = _read_version(campaign_id)

    # ── Keys ──
    stage = _enter(TurnStage.KEY_RESOLUTION, campaign_id)
    try:
        brain_model = resolve_brain_config(snapshot.setting("brainModel", "gpt-4o-mini"), request.byok_keys, secrets)
    except ConfigurationError as e:
        _enter(TurnStage.FAILED, campaign_id)
        return TurnResponse(success=False, error=str(e))
    voice_model = resolve_model_config(snapshot.setting("voiceModel", "claude-3-5-sonnet"), request.byok_keys, secrets)

    # ── Knowledge (narrator only) ──
    stage = _enter(TurnStage.KNOWLEDGE_FETCH, campaign_id)
    voice_docs = fetch_knowledge(
        world, "voice", int(snapshot.setting("knowledgeMaxDocs", 3)), docs=snapshot.knowledge,
    )

    working_state = dict(request.current_state)
    working_state["fateEngine"] = fate.ensure_state(working_state)
    pending = _pending_roll(request)
    resolving = request.roll_result is not None

    # ── Brain ──
    stage = _enter(TurnStage.BRAIN_INVOKE, campaign_id)
    brain = await process_with_brain(
        request.user_input, world, working_state, request.chat_history,
        brain_model, snapshot,
        custom_rules=request.custom_rules,
        show_suggested_choices=request.show_suggested_choices,
        interactive_dice=request.interactive_dice_rolls,
        roll_result=request.roll_result,
        pending_roll=pending if resolving else None,
    )
    if not brain.success or brain.data is None:
        _enter(TurnStage.BRAIN_FAILED, campaign_id)
        _enter(TurnStage.FAILED, campaign_id)
        return TurnResponse(success=False, error=brain.error or "Brain processing failed", usage=brain.usage)

    data = brain.data

    # ── Pending roll: stop before the Narrator ──
    if data.pending_roll is not None and data.requires_user_input:
        _enter(TurnStage.AWAITING_ROLL, campaign_id)
        return TurnResponse(
            success=True,
            state_updates=data.state_updates,
            module_state={**working_state, "pendingRoll": data.pending_roll.dump()},
            dice_rolls=[],
            system_messages=data.system_messages,
            requires_user_input=True,
            pending_roll=data.pending_roll,
            usage=brain.usage,
        )

    if resolving:
        _resolve_fate_roll(working_state, pending, data.dice_rolls)
    working_state["fateEngine"] = fate.apply_director_mode(
        working_state["fateEngine"], working_state.get("character"), data.system_messages,
    )
    working_state.pop("pendingRoll", None)

    usage = Usage() + brain.usage
    model_tokens: dict[str, dict[str, int]] = {}
    _add_model_tokens(model_tokens, brain_model, brain.usage)
    module_state = merge_state_updates(working_state, data.state_updates)

    # ── Voice ──
    narrative = None
    state_report = None
    if voice_model is None:
        logger.warning("No narrator key for %s, using Brain narrative cue", snapshot.setting("voiceModel"))
    else:
        stage = _enter(TurnStage.VOICE_INVOKE, campaign_id)
        cues = data.narrative_cues or [NarrativeCue(type="description", content=data.narrative_cue or "")]
        voice = await generate_narrative(
            cues, world, request.chat_history, data.state_updates, data.dice_rolls,
            voice_model, snapshot,
            system_messages=data.system_messages,
            knowledge_documents=voice_docs,
            custom_rules=request.custom_rules,
            character_profile=request.current_state.get("character"),
        )
        usage = usage + voice.usage
        _add_model_tokens(model_tokens, voice_model, voice.usage)
        if voice.success:
            stage = _enter(TurnStage.VOICE_SUCCEEDED, campaign_id)
            narrative = voice.narrative
            state_report = voice.state_report
        else:
            logger.warning("Narrator failed, using Brain narrative cue: %s", voice.error)

    if narrative is None:
        # parse_brain_response always back-fills narrative_cue
        stage = _enter(TurnStage.FALLBACK_NARRATIVE, campaign_id)
        narrative = data.narrative_cue or FALLBACK_CUE

    # ── Reviewer (after a real narrative only) ──
    reviewer_applied = False
    if stage == TurnStage.VOICE_SUCCEEDED:
        if state_report:
            try:
                module_state = apply_corrections(module_state, state_report)
            except ValidationError:
                logger.warning("Ignoring malformed state report for %s", campaign_id)
        settings = reviewer_settings(snapshot)
        reviewer_model = resolve_model_config(settings.model, request.byok_keys, secrets)
        review = await review_state(
            narrative, module_state, reviewer_model, snapshot,
            turn_number=len(request.chat_history) // 2 + 1,
            settings=settings,
        )
        usage = usage + review.usage
        _add_model_tokens(model_tokens, reviewer_model, review.usage)
        if review.success and review.corrections and not review.corrections.is_empty():
            module_state = apply_corrections(module_state, review.corrections)
            reviewer_applied = True

    # ── Persist ──
    _enter(TurnStage.PERSIST, campaign_id)
    _persist_turn(request, user_id, narrative, module_state, usage, model_tokens, expected_version)

    _enter(TurnStage.DONE, campaign_id)
    return TurnResponse(
        success=True,
        narrative_text=narrative,
        state_updates=data.state_updates,
        module_state=module_state,
        dice_rolls=data.dice_rolls,
        system_messages=data.system_messages,
        requires_user_input=data.requires_user_input,
        pending_choice=data.pending_choice,
        reviewer_applied=reviewer_applied,
        usage=usage,
    )


# ── Campaign creation ────────────────────────────────────


def default_character(name: str | None) -> dict[str, Any]:
    return {
        "id": f"char_{int(time.time() * 1000)}",
        "name": name or "Unnamed Hero",
        "hp": {"current": 100, "max": 100},
        "level": 1,
    }


def fallback_opener(world_module: str, name: str) -> str:
    return FALLBACK_OPENERS.get(world_module, DEFAULT_OPENER).format(name=name)


async def _opening_narrative(
    world: str,
    character: dict[str, Any],
    model: ModelConfig | None,
    snapshot: ConfigSnapshot,
) -> str | None:
    if model is None:
        return None
    docs = fetch_knowledge(world, "voice", int(snapshot.setting("knowledgeMaxDocs", 3)), docs=snapshot.knowledge)
    cue = NarrativeCue(type="description", content=OPENING_CUE.format(name=character.get("name", "the hero")))
    result = await generate_narrative(
        [cue], world, [], {}, [], model, snapshot,
        knowledge_documents=docs,
        character_profile=character,
    )
    if not result.success:
        logger.warning("Opening narrative failed, using fallback opener: %s", result.error)
        return None
    return result.narrative


async def create_campaign(
    request: CampaignCreateRequest,
    user_id: str = "anonymous",
    secrets: dict[str, str] | None = None,
) -> CampaignCreateResponse:
    """Create a campaign with its opening narrator message.

    Storage errors propagate; a narrator failure uses a per-world opener.
    """
    character = dict(request.initial_character or default_character(request.character_name))
    if request.character_name and not character.get("name"):
        character["name"] = request.character_name

    snapshot = load_snapshot(request.world_module)
    voice_model = resolve_model_config(
        snapshot.setting("voiceModel", "claude-3-5-sonnet"), request.byok_keys, secrets,
    )
    narrative = await _opening_narrative(request.world_module, character, voice_model, snapshot)
    if not narrative:
        narrative = fallback_opener(request.world_module, character.get("name") or "Unnamed Hero")

    campaign = storage.create_campaign(
        request.name, request.world_module, character,
        user_id=user_id, module_state={"character": character},
    )
    storage.append_messages(campaign["id"], [storage.new_message("narrator", narrative)])
    logger.info("Created campaign %s (%s) for %s", campaign["id"], request.world_module, user_id)
    return CampaignCreateResponse(campaign_id=campaign["id"], initial_narrative=narrative)


async def keep_alive(byok_keys=None, secrets: dict[str, str] | None = None) -> bool:
    """Warm the narrator's provider connection with a minimal ping."""
    snapshot = load_snapshot("classic")
    model = resolve_model_config(snapshot.setting("voiceModel", "claude-3-5-sonnet"), byok_keys, secrets)
    if model is None:
        return False
    result = await generate_narrative([], "classic", [], {}, [], model, snapshot, is_keep_alive=True)
    return result.success
