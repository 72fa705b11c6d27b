"""Core domain models.

All pipeline stages and the HTTP layer operate on these types. Pydantic is
used for validation and serialisation at every data boundary; wire names are
camelCase (the mobile client's convention) via an alias generator, while
Python code uses snake_case attributes.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

WorldModule = Literal["classic", "outworlder", "tactical"]
Provider = Literal["openai", "anthropic", "google"]
PromptKind = Literal["brain", "voice", "reviewer"]
Audience = Literal["brain", "voice"]

CueType = Literal["action", "dialogue", "description", "combat", "discovery"]
Emotion = Literal["neutral", "tense", "triumphant", "mysterious", "danger"]
ChoiceType = Literal["action", "target", "dialogue", "direction", "item", "decision"]
RollType = Literal["attack", "save", "skill", "ability", "damage"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        """Serialise with wire (camelCase) names, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Provider usage
# ---------------------------------------------------------------------------

class Usage(CamelModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage | None) -> Usage:
        if other is None:
            return self
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ChatTurn(BaseModel):
    """One entry of the chat history window sent with a turn."""

    role: str
    content: str


# ---------------------------------------------------------------------------
# Logic Engine output schema
# ---------------------------------------------------------------------------

class NarrativeCue(CamelModel):
    type: CueType
    content: str
    emotion: Emotion | None = None


class DiceRoll(CamelModel):
    type: str
    result: int | float
    total: int | float
    modifier: int | float | None = None
    purpose: str | None = None
    difficulty: int | float | None = None
    success: bool | None = None
    label: str | None = None
    roll_type: RollType | None = None
    raw_rolls: list[int] | None = None
    state_flags: dict[str, bool] | None = None
    math: dict[str, int | float] | None = None
    outcome: dict[str, Any] | None = None


class PendingChoice(CamelModel):
    prompt: str
    options: list[str] | None = None
    choice_type: ChoiceType


class PendingRoll(CamelModel):
    """A roll the player makes themselves before the action resolves.

    `roll_type` and `stat` mark an enhanced roll that the Fate Engine
    resolves when play resumes.
    """

    type: str = "d20"
    purpose: str = "Action"
    modifier: int | float | None = None
    stat: str | None = None
    difficulty: int | float | None = None
    roll_type: RollType | None = None
    proficiency_applies: bool = False
    item_bonus: int = 0
    situational_mod: int = 0
    advantage_sources: list[str] = Field(default_factory=list)
    disadvantage_sources: list[str] = Field(default_factory=list)


class BrainOutput(CamelModel):
    """Strict schema the Logic Engine's JSON must satisfy."""

    state_updates: dict[str, Any]
    narrative_cues: list[NarrativeCue]
    dice_rolls: list[DiceRoll]
    system_messages: list[str]
    narrative_cue: str | None = None
    requires_user_input: bool | None = None
    pending_choice: PendingChoice | None = None
    pending_roll: PendingRoll | None = None


class BrainResult(CamelModel):
    success: bool
    data: BrainOutput | None = None
    usage: Usage | None = None
    error: str | None = None
    degraded: bool = False


class VoiceResult(CamelModel):
    success: bool
    narrative: str | None = None
    state_report: dict[str, Any] | None = None
    usage: Usage | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# State Reviewer
# ---------------------------------------------------------------------------

class ResourceCorrection(CamelModel):
    current: int | float | None = None
    max: int | float | None = None


class ListCorrection(CamelModel):
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _party_aliases(cls, data: Any) -> Any:
        # partyMembers corrections may arrive as {joined, left}
        if isinstance(data, dict) and ("joined" in data or "left" in data):
            data = dict(data)
            data.setdefault("added", data.pop("joined", None) or [])
            data.setdefault("removed", data.pop("left", None) or [])
        return data


class StateCorrections(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    hp: ResourceCorrection | None = None
    mana: ResourceCorrection | None = None
    nanites: ResourceCorrection | None = None
    fatigue: int | float | None = None
    gold: int | float | None = None
    experience: int | float | None = None
    inventory: ListCorrection | None = None
    powers: ListCorrection | None = None
    party_members: ListCorrection | None = None
    quest_progress: dict[str, Any] | None = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class ReviewResult(CamelModel):
    success: bool
    skipped: bool = False
    skip_reason: str | None = None
    corrections: StateCorrections | None = None
    reasoning: str | None = None
    usage: Usage | None = None
    error: str | None = None


class ReviewerSettings(CamelModel):
    enabled: bool = True
    frequency: int = 1
    model: str = "gpt-4o-mini"
    prompt: str | None = None


# ---------------------------------------------------------------------------
# Configuration documents
# ---------------------------------------------------------------------------

class KnowledgeDocument(CamelModel):
    name: str
    world_module: str
    content: str
    category: str = "other"
    target_model: str | None = None
    enabled: bool = True


class PromptDocument(CamelModel):
    """Global document or per-world override; None means "not set here"."""

    brain_prompt: str | None = None
    voice_prompt: str | None = None
    state_reviewer_prompt: str | None = None
    state_reviewer_enabled: bool | None = None
    state_reviewer_model: str | None = None
    state_reviewer_frequency: int | None = None


# ---------------------------------------------------------------------------
# Turn call
# ---------------------------------------------------------------------------

class ByokKeys(CamelModel):
    openai: str | None = None
    anthropic: str | None = None
    google: str | None = None

    def get(self, provider: str) -> str | None:
        return getattr(self, provider, None) or None


class TurnRequest(CamelModel):
    campaign_id: str
    user_input: str
    world_module: WorldModule
    current_state: dict[str, Any] = Field(default_factory=dict)
    chat_history: list[ChatTurn] = Field(default_factory=list)
    byok_keys: ByokKeys | None = None
    show_suggested_choices: bool = True
    custom_rules: str | None = None
    interactive_dice_rolls: bool = False
    roll_result: int | None = None
    pending_roll: PendingRoll | None = None


class TurnResponse(CamelModel):
    success: bool
    narrative_text: str | None = None
    state_updates: dict[str, Any] | None = None
    module_state: dict[str, Any] | None = None
    dice_rolls: list[DiceRoll] | None = None
    system_messages: list[str] | None = None
    requires_user_input: bool | None = None
    pending_choice: PendingChoice | None = None
    pending_roll: PendingRoll | None = None
    reviewer_applied: bool | None = None
    usage: Usage | None = None
    error: str | None = None


class CampaignCreateRequest(CamelModel):
    name: str
    world_module: WorldModule
    character_name: str | None = None
    initial_character: dict[str, Any] | None = None
    byok_keys: ByokKeys | None = None


class CampaignCreateResponse(CamelModel):
    campaign_id: str
    initial_narrative: str
