"""Tests for run_turn, create_campaign and keep_alive with a mocked provider."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from questline import storage
from questline.llm import Completion, LLMError
from questline.models import CampaignCreateRequest, ChatTurn, TurnRequest, Usage
from questline.pipeline import core, create_campaign, keep_alive, run_turn
from questline.pipeline.brain import BRAIN_OUTPUT_SCHEMA, FALLBACK_CUE
from questline.pipeline.core import FALLBACK_OPENERS
from questline.pipeline.reviewer import REVIEW_OUTPUT_SCHEMA

ALL_KEYS = {"openai": "ok", "anthropic": "ak", "google": ""}

BRAIN_JSON = {
    "stateUpdates": {"gold": 15, "inventory": {"added": ["Lockpick"]}},
    "narrativeCues": [{"type": "action", "content": "The lock clicks open."}],
    "diceRolls": [{"type": "d20", "result": 14, "modifier": 2, "total": 16, "purpose": "Lockpicking"}],
    "systemMessages": ["+15 gold"],
    "narrativeCue": "You pick the lock and find 15 gold.",
    "requiresUserInput": True,
    "pendingChoice": {"prompt": "What now?", "options": ["I open the chest", "I leave"], "choiceType": "action"},
}
VOICE_TEXT = (
    "The tumblers give way with a satisfying click. Inside, coins glitter.\n"
    '---STATE_REPORT---{"hp": {"current": 18}}---END_REPORT---'
)
REVIEW_JSON = {"corrections": {"inventory": {"added": ["Silver Ring"]}}, "reasoning": "Found a ring."}

BRAIN_USAGE = Usage(prompt_tokens=100, completion_tokens=50, total_tokens=150)
VOICE_USAGE = Usage(prompt_tokens=200, completion_tokens=80, total_tokens=280)
REVIEW_USAGE = Usage(prompt_tokens=40, completion_tokens=10, total_tokens=50)


def _fake_invoke(brain=BRAIN_JSON, voice=VOICE_TEXT, review=REVIEW_JSON):
    """Route provider calls by output schema: Brain, Reviewer, else Narrator."""

    async def fake(provider, model, key, system_prompt, history, user_prompt, output_schema=None, **kwargs):
        if output_schema is BRAIN_OUTPUT_SCHEMA:
            if isinstance(brain, Exception):
                raise brain
            return Completion(text=json.dumps(brain), usage=BRAIN_USAGE)
        if output_schema is REVIEW_OUTPUT_SCHEMA:
            return Completion(text=json.dumps(review), usage=REVIEW_USAGE)
        if isinstance(voice, Exception):
            raise voice
        return Completion(text=voice, usage=VOICE_USAGE)

    return AsyncMock(side_effect=fake)


def _campaign() -> str:
    character = {"name": "Ayla", "hp": {"current": 20, "max": 20}}
    campaign = storage.create_campaign("Test Run", "classic", character, user_id="u1")
    return campaign["id"]


def _request(campaign_id: str, **overrides) -> TurnRequest:
    fields = {
        "campaignId": campaign_id,
        "userInput": "I pick the lock",
        "worldModule": "classic",
        "currentState": {"gold": 0, "inventory": ["Torch"], "hp": {"current": 20, "max": 20}},
        "chatHistory": [],
    }
    fields.update(overrides)
    return TurnRequest.model_validate(fields)


def _schemas(mock: AsyncMock) -> list:
    return [call.args[6] if len(call.args) > 6 else None for call in mock.call_args_list]


# ---------------------------------------------------------------------------
# run_turn
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_turn_happy_path():
    """Brain, Narrator and Reviewer all run; state, messages and usage persist."""
    campaign_id = _campaign()
    mock_invoke = _fake_invoke()
    with patch("questline.llm.invoke", mock_invoke):
        result = await run_turn(_request(campaign_id), user_id="u1", secrets=ALL_KEYS)

    assert result.success
    assert result.narrative_text == "The tumblers give way with a satisfying click. Inside, coins glitter."
    assert result.state_updates == BRAIN_JSON["stateUpdates"]
    assert result.module_state["gold"] == 15
    assert result.module_state["inventory"] == ["Torch", "Lockpick", "Silver Ring"]
    assert result.module_state["hp"] == {"current": 18, "max": 20}
    assert result.reviewer_applied is True
    assert result.requires_user_input is True
    assert result.pending_choice.options == ["I open the chest", "I leave"]
    assert result.dice_rolls[0].total == 16
    assert result.system_messages == ["+15 gold"]
    assert result.usage.total_tokens == 150 + 280 + 50
    assert _schemas(mock_invoke) == [BRAIN_OUTPUT_SCHEMA, None, REVIEW_OUTPUT_SCHEMA]

    messages = storage.get_messages(campaign_id)
    assert [m["role"] for m in messages] == ["user", "narrator"]
    assert messages[0]["content"] == "I pick the lock"
    assert messages[1]["content"] == result.narrative_text
    assert messages[1]["tokenUsage"]["totalTokens"] == 480

    campaign = storage.get_campaign(campaign_id)
    assert campaign["version"] == 1
    assert campaign["moduleState"] == result.module_state

    usage = storage.get_user_usage("u1")
    assert usage["turnsUsed"] == 1
    assert usage["tokensTotal"] == 480
    assert usage["tokens"]["gpt-4o-mini"]["total"] == 200
    assert usage["tokens"]["claude-3-5-sonnet-20241022"]["total"] == 280
    assert storage.get_daily_usage(storage.today())["turns"] == 1


@pytest.mark.asyncio
async def test_turn_wire_format():
    campaign_id = _campaign()
    with patch("questline.llm.invoke", _fake_invoke()):
        result = await run_turn(_request(campaign_id), secrets=ALL_KEYS)
    wire = result.dump()
    assert wire["narrativeText"] == result.narrative_text
    assert wire["pendingChoice"]["choiceType"] == "action"
    assert "error" not in wire


@pytest.mark.asyncio
async def test_turn_without_narrator_key_uses_brain_cue():
    """No Anthropic key: the Narrator and Reviewer are skipped, not failed."""
    campaign_id = _campaign()
    mock_invoke = _fake_invoke()
    with patch("questline.llm.invoke", mock_invoke):
        result = await run_turn(_request(campaign_id), secrets={"openai": "ok"})

    assert result.success
    assert result.narrative_text == "You pick the lock and find 15 gold."
    assert result.reviewer_applied is False
    assert _schemas(mock_invoke) == [BRAIN_OUTPUT_SCHEMA]
    assert result.usage.total_tokens == 150
    assert storage.get_messages(campaign_id)[1]["content"] == result.narrative_text


@pytest.mark.asyncio
async def test_turn_byok_key_enables_narrator():
    campaign_id = _campaign()
    mock_invoke = _fake_invoke()
    request = _request(campaign_id, byokKeys={"anthropic": "user-ak"})
    with patch("questline.llm.invoke", mock_invoke):
        result = await run_turn(request, secrets={"openai": "ok"})
    assert result.narrative_text.startswith("The tumblers")
    voice_call = mock_invoke.call_args_list[1]
    assert voice_call.args[:3] == ("anthropic", "claude-3-5-sonnet-20241022", "user-ak")


@pytest.mark.asyncio
async def test_turn_without_any_key_fails():
    campaign_id = _campaign()
    mock_invoke = _fake_invoke()
    with patch("questline.llm.invoke", mock_invoke):
        result = await run_turn(_request(campaign_id), secrets={})
    assert not result.success
    assert "No API key available for the Logic Engine" in result.error
    mock_invoke.assert_not_called()
    assert storage.get_messages(campaign_id) == []


@pytest.mark.asyncio
async def test_turn_brain_fallback_model():
    """Selected Brain provider has no key: OpenAI gpt-4o-mini is used instead."""
    storage.update_config({"brainModel": "gemini-1.5-flash"})
    campaign_id = _campaign()
    mock_invoke = _fake_invoke()
    with patch("questline.llm.invoke", mock_invoke):
        result = await run_turn(_request(campaign_id), secrets={"openai": "ok"})
    assert result.success
    assert mock_invoke.call_args_list[0].args[:2] == ("openai", "gpt-4o-mini")


@pytest.mark.asyncio
async def test_turn_brain_failure_fails_turn():
    campaign_id = _campaign()
    with patch("questline.llm.invoke", _fake_invoke(brain=LLMError("openai returned HTTP 500"))):
        result = await run_turn(_request(campaign_id), user_id="u1", secrets=ALL_KEYS)
    assert not result.success
    assert "HTTP 500" in result.error
    assert storage.get_messages(campaign_id) == []
    assert storage.get_campaign(campaign_id)["version"] == 0
    assert storage.get_user_usage("u1") == {}


@pytest.mark.asyncio
async def test_turn_degraded_brain_output_still_narrates():
    campaign_id = _campaign()
    degraded = {"stateUpdates": {"gold": 3}, "narrativeCues": "oops", "diceRolls": "none"}
    with patch("questline.llm.invoke", _fake_invoke(brain=degraded)):
        result = await run_turn(_request(campaign_id), secrets=ALL_KEYS)
    assert result.success
    assert result.module_state["gold"] == 3
    assert result.dice_rolls == []


@pytest.mark.asyncio
async def test_turn_narrator_failure_falls_back():
    campaign_id = _campaign()
    mock_invoke = _fake_invoke(voice=LLMError("anthropic timed out"))
    with patch("questline.llm.invoke", mock_invoke):
        result = await run_turn(_request(campaign_id), secrets=ALL_KEYS)
    assert result.success
    assert result.narrative_text == BRAIN_JSON["narrativeCue"]
    assert result.reviewer_applied is False
    assert REVIEW_OUTPUT_SCHEMA not in _schemas(mock_invoke)


@pytest.mark.asyncio
async def test_turn_narrator_failure_without_cue():
    campaign_id = _campaign()
    brain = {k: v for k, v in BRAIN_JSON.items() if k not in ("narrativeCue", "narrativeCues")}
    brain["narrativeCues"] = []
    with patch("questline.llm.invoke", _fake_invoke(brain=brain, voice=LLMError("down"))):
        result = await run_turn(_request(campaign_id), secrets=ALL_KEYS)
    assert result.success
    assert result.narrative_text == FALLBACK_CUE


@pytest.mark.asyncio
async def test_turn_reviewer_frequency_gate():
    storage.save_prompt_document(storage.GLOBAL_DOC, {"stateReviewerFrequency": 2})
    campaign_id = _campaign()
    mock_invoke = _fake_invoke()
    with patch("questline.llm.invoke", mock_invoke):
        # empty history -> turn 1, skipped
        first = await run_turn(_request(campaign_id), secrets=ALL_KEYS)
        history = [{"role": "user", "content": "a"}, {"role": "narrator", "content": "b"}]
        # two history entries -> turn 2, reviewed
        second = await run_turn(_request(campaign_id, chatHistory=history), secrets=ALL_KEYS)
    assert first.reviewer_applied is False
    assert second.reviewer_applied is True
    assert _schemas(mock_invoke).count(REVIEW_OUTPUT_SCHEMA) == 1


@pytest.mark.asyncio
async def test_turn_reviewer_disabled():
    storage.save_prompt_document(storage.GLOBAL_DOC, {"stateReviewerEnabled": False})
    campaign_id = _campaign()
    mock_invoke = _fake_invoke()
    with patch("questline.llm.invoke", mock_invoke):
        result = await run_turn(_request(campaign_id), secrets=ALL_KEYS)
    assert result.reviewer_applied is False
    assert "Silver Ring" not in result.module_state["inventory"]


@pytest.mark.asyncio
async def test_turn_voice_only_knowledge():
    storage.add_knowledge_document({
        "name": "Inn", "worldModule": "classic", "category": "location",
        "content": "A timber inn.", "targetModel": "both",
    })
    campaign_id = _campaign()
    mock_invoke = _fake_invoke()
    with patch("questline.llm.invoke", mock_invoke):
        await run_turn(_request(campaign_id), secrets=ALL_KEYS)
    brain_call, voice_call = mock_invoke.call_args_list[:2]
    assert "[LOCATION: Inn]" not in brain_call.args[3]
    assert "[LOCATION: Inn]" in voice_call.args[3]


@pytest.mark.asyncio
async def test_turn_persistence_failure_is_swallowed():
    campaign_id = _campaign()
    with patch("questline.llm.invoke", _fake_invoke()), \
         patch("questline.storage.save_campaign_state", side_effect=storage.StorageError("disk full")):
        result = await run_turn(_request(campaign_id), user_id="u1", secrets=ALL_KEYS)
    assert result.success
    assert result.narrative_text.startswith("The tumblers")
    # usage is still counted
    assert storage.get_user_usage("u1")["turnsUsed"] == 1


@pytest.mark.asyncio
async def test_turn_version_conflict_is_swallowed():
    campaign_id = _campaign()
    with patch("questline.llm.invoke", _fake_invoke()), \
         patch("questline.storage.save_campaign_state", side_effect=storage.ConflictError("moved on")):
        result = await run_turn(_request(campaign_id), secrets=ALL_KEYS)
    assert result.success


@pytest.mark.asyncio
async def test_turn_unknown_campaign():
    with patch("questline.llm.invoke", _fake_invoke()):
        result = await run_turn(_request("no-such-campaign"), user_id="u2", secrets=ALL_KEYS)
    assert result.success
    assert storage.get_campaign("no-such-campaign") is None
    assert storage.get_user_usage("u2")["turnsUsed"] == 1


@pytest.mark.asyncio
async def test_concurrent_turns_on_one_campaign_serialise():
    campaign_id = _campaign()
    with patch("questline.llm.invoke", _fake_invoke()):
        results = await asyncio.gather(
            run_turn(_request(campaign_id, userInput="first"), secrets=ALL_KEYS),
            run_turn(_request(campaign_id, userInput="second"), secrets=ALL_KEYS),
        )
    assert all(r.success for r in results)
    assert storage.get_campaign(campaign_id)["version"] == 2
    contents = [m["content"] for m in storage.get_messages(campaign_id) if m["role"] == "user"]
    assert contents == ["first", "second"]


@pytest.mark.asyncio
async def test_turn_history_passed_to_brain():
    campaign_id = _campaign()
    history = [ChatTurn(role="user", content="hello").model_dump()]
    mock_invoke = _fake_invoke()
    with patch("questline.llm.invoke", mock_invoke):
        await run_turn(_request(campaign_id, chatHistory=history), secrets=ALL_KEYS)
    assert [t.content for t in mock_invoke.call_args_list[0].args[4]] == ["hello"]


@pytest.mark.asyncio
async def test_turn_campaign_locks_released():
    campaign_id = _campaign()
    with patch("questline.llm.invoke", _fake_invoke()):
        await asyncio.gather(*(run_turn(_request(f"nope-{i}"), secrets={}) for i in range(20)))
        await asyncio.gather(
            run_turn(_request(campaign_id), secrets=ALL_KEYS),
            run_turn(_request(campaign_id), secrets=ALL_KEYS),
        )
    assert core._campaign_locks == {}
    assert core._lock_holders == {}


@pytest.mark.asyncio
async def test_turn_lock_released_when_turn_raises():
    with patch.object(core, "_run_turn", AsyncMock(side_effect=RuntimeError("boom"))):
        with pytest.raises(RuntimeError):
            await run_turn(_request("any-campaign"), secrets=ALL_KEYS)
    assert core._campaign_locks == {}


# ---------------------------------------------------------------------------
# Interactive dice, Fate Engine and Director Mode
# ---------------------------------------------------------------------------

PENDING_ROLL = {
    "type": "d20", "purpose": "Attack Roll vs Goblin", "modifier": 5,
    "stat": "STR", "difficulty": 15, "rollType": "attack",
}
BRAIN_AWAITING_ROLL = {
    "stateUpdates": {},
    "narrativeCues": [{"type": "combat", "content": "You raise your blade."}],
    "diceRolls": [],
    "systemMessages": [],
    "requiresUserInput": True,
    "pendingRoll": PENDING_ROLL,
}
FIGHTER = {"name": "Ayla", "hp": {"current": 20, "max": 20}, "stats": {"STR": 16}, "level": 1}


@pytest.mark.asyncio
async def test_turn_pauses_for_player_roll():
    """A pending roll stops before the Narrator; nothing is saved or counted."""
    campaign_id = _campaign()
    mock_invoke = _fake_invoke(brain=BRAIN_AWAITING_ROLL)
    with patch("questline.llm.invoke", mock_invoke):
        result = await run_turn(
            _request(campaign_id, interactiveDiceRolls=True, userInput="I attack the goblin"),
            user_id="u1", secrets=ALL_KEYS,
        )

    assert result.success
    assert result.requires_user_input is True
    assert result.pending_roll.purpose == "Attack Roll vs Goblin"
    assert result.pending_roll.roll_type == "attack"
    assert result.narrative_text is None
    assert result.dice_rolls == []
    assert result.module_state["pendingRoll"]["difficulty"] == 15
    assert result.usage.total_tokens == 150
    assert _schemas(mock_invoke) == [BRAIN_OUTPUT_SCHEMA]
    assert "INTERACTIVE DICE MODE IS ACTIVE" in mock_invoke.call_args_list[0].args[3]

    assert storage.get_messages(campaign_id) == []
    assert storage.get_campaign(campaign_id)["version"] == 0
    assert storage.get_user_usage("u1") == {}

    body = result.dump()
    assert body["pendingRoll"]["rollType"] == "attack"


@pytest.mark.asyncio
async def test_turn_resumes_with_player_roll():
    campaign_id = _campaign()
    state = {"character": FIGHTER, "pendingRoll": PENDING_ROLL}
    mock_invoke = _fake_invoke()
    with patch("questline.llm.invoke", mock_invoke):
        result = await run_turn(
            _request(campaign_id, interactiveDiceRolls=True, rollResult=14, currentState=state),
            user_id="u1", secrets=ALL_KEYS,
        )

    assert result.success
    assert result.narrative_text
    assert result.pending_roll is None
    system_prompt = mock_invoke.call_args_list[0].args[3]
    assert "DICE ROLL RESULT RECEIVED: 14" in system_prompt
    assert "INTERACTIVE ROLL RESOLUTION" in system_prompt

    # the Brain's roll plus the Fate Engine's enhanced attack roll
    assert len(result.dice_rolls) == 2
    fate_roll = result.dice_rolls[-1]
    assert fate_roll.roll_type == "attack"
    assert fate_roll.difficulty == 15
    assert fate_roll.math["statMod"] == 3
    assert "pendingRoll" not in result.module_state
    assert result.module_state["fateEngine"]["lastCritTurnCount"] in (0, 1)
    assert storage.get_user_usage("u1")["turnsUsed"] == 1


@pytest.mark.asyncio
async def test_turn_resume_without_enhanced_roll_skips_fate_engine():
    campaign_id = _campaign()
    plain = {"type": "d20", "purpose": "Climb", "modifier": 2, "difficulty": 12}
    with patch("questline.llm.invoke", _fake_invoke()):
        result = await run_turn(
            _request(campaign_id, rollResult=9, pendingRoll=plain, currentState={"character": FIGHTER}),
            secrets=ALL_KEYS,
        )
    assert result.success
    assert len(result.dice_rolls) == 1
    assert result.module_state["fateEngine"] == {
        "momentumCounter": 0, "lastCritTurnCount": 0, "directorModeCooldown": False,
    }


@pytest.mark.asyncio
async def test_turn_player_roll_is_not_rerolled_server_side():
    storage.update_config({"serverSideDice": True})
    campaign_id = _campaign()
    brain = dict(BRAIN_JSON, diceRolls=[{"type": "d20", "result": 14, "total": 16}])
    with patch("questline.llm.invoke", _fake_invoke(brain=brain)):
        result = await run_turn(_request(campaign_id, rollResult=14), secrets=ALL_KEYS)
    assert result.dice_rolls[0].result == 14


@pytest.mark.asyncio
async def test_turn_director_mode_when_hp_critical():
    campaign_id = _campaign()
    wounded = dict(FIGHTER, hp={"current": 3, "max": 20})
    with patch("questline.llm.invoke", _fake_invoke()):
        first = await run_turn(_request(campaign_id, currentState={"character": wounded}), secrets=ALL_KEYS)
        second = await run_turn(_request(campaign_id, currentState=first.module_state), secrets=ALL_KEYS)

    assert first.system_messages[-1].startswith("[Director Mode] Difficulty adjusted - HP Critical")
    assert first.module_state["fateEngine"]["directorModeCooldown"] is True
    # still on cooldown: no second message
    assert not any(m.startswith("[Director Mode]") for m in second.system_messages)


@pytest.mark.asyncio
async def test_turn_initialises_fate_state():
    campaign_id = _campaign()
    with patch("questline.llm.invoke", _fake_invoke()):
        result = await run_turn(_request(campaign_id), secrets=ALL_KEYS)
    assert result.module_state["fateEngine"]["momentumCounter"] == 0
    assert not any(m.startswith("[Director Mode]") for m in result.system_messages)


# ---------------------------------------------------------------------------
# create_campaign
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_campaign_with_narrator():
    mock_invoke = AsyncMock(return_value=Completion(text="Rain hammers the inn roof."))
    request = CampaignCreateRequest(name="Rainy Start", world_module="classic", character_name="Ayla")
    with patch("questline.llm.invoke", mock_invoke):
        result = await create_campaign(request, user_id="u1", secrets=ALL_KEYS)

    assert result.campaign_id == "rainy-start"
    assert result.initial_narrative == "Rain hammers the inn roof."
    campaign = storage.get_campaign("rainy-start")
    assert campaign["userId"] == "u1"
    assert campaign["character"]["name"] == "Ayla"
    assert campaign["moduleState"]["character"]["hp"] == {"current": 100, "max": 100}
    messages = storage.get_messages("rainy-start")
    assert messages == [{**messages[0], "role": "narrator", "content": "Rain hammers the inn roof."}]


@pytest.mark.asyncio
async def test_create_campaign_fallback_opener():
    mock_invoke = AsyncMock()
    request = CampaignCreateRequest(name="Gate Run", world_module="tactical", character_name="Jin")
    with patch("questline.llm.invoke", mock_invoke):
        result = await create_campaign(request, secrets={"openai": "ok"})
    mock_invoke.assert_not_called()
    assert result.initial_narrative == FALLBACK_OPENERS["tactical"].format(name="Jin")
    assert "Operator Jin" in result.initial_narrative


@pytest.mark.asyncio
async def test_create_campaign_narrator_failure_uses_opener():
    mock_invoke = AsyncMock(side_effect=LLMError("down"))
    request = CampaignCreateRequest(name="Stormy", world_module="outworlder")
    with patch("questline.llm.invoke", mock_invoke):
        result = await create_campaign(request, secrets=ALL_KEYS)
    assert "Unnamed Hero" in result.initial_narrative
    assert storage.get_campaign(result.campaign_id)["character"]["name"] == "Unnamed Hero"


@pytest.mark.asyncio
async def test_create_campaign_initial_character():
    character = {"name": "Kael", "essences": ["Shadow"], "rank": "Iron"}
    request = CampaignCreateRequest(name="Shadows", world_module="outworlder", initial_character=character)
    with patch("questline.llm.invoke", AsyncMock(return_value=Completion(text="Dark."))):
        result = await create_campaign(request, secrets=ALL_KEYS)
    campaign = storage.get_campaign(result.campaign_id)
    assert campaign["character"] == character
    assert campaign["moduleState"] == {"character": character}


@pytest.mark.asyncio
async def test_create_campaign_unique_ids():
    request = CampaignCreateRequest(name="Same Name", world_module="classic")
    with patch("questline.llm.invoke", AsyncMock()):
        first = await create_campaign(request, secrets={})
        second = await create_campaign(request, secrets={})
    assert (first.campaign_id, second.campaign_id) == ("same-name", "same-name-2")


# ---------------------------------------------------------------------------
# keep_alive
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_keep_alive_without_key():
    with patch("questline.llm.invoke", AsyncMock()) as mock_invoke:
        assert await keep_alive(secrets={}) is False
    mock_invoke.assert_not_called()


@pytest.mark.asyncio
async def test_keep_alive_pings_narrator():
    mock_invoke = AsyncMock(return_value=Completion(text="Ready"))
    with patch("questline.llm.invoke", mock_invoke):
        assert await keep_alive(secrets=ALL_KEYS) is True
    assert mock_invoke.call_args.args[0] == "anthropic"
