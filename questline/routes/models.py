"""Pydantic request models for API endpoints not covered by questline.models."""

from pydantic import BaseModel

from questline.models import ByokKeys, CamelModel


class KeepAliveBody(CamelModel):
    byok_keys: ByokKeys | None = None


class UpdateSettings(BaseModel):
    brainModel: str | None = None
    voiceModel: str | None = None
    narratorWordLimitMin: int | None = None
    narratorWordLimitMax: int | None = None
    voiceMaxOutputTokens: int | None = None
    brainMaxOutputTokens: int | None = None
    knowledgeMaxDocs: int | None = None
    providerTimeoutSeconds: float | None = None
    serverSideDice: bool | None = None
    brainHistoryWindow: int | None = None
    voiceHistoryWindow: int | None = None
