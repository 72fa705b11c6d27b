"""Model provider clients — one uniform call across OpenAI, Anthropic and Google.

Every pipeline stage calls the module-level `invoke()`:

    completion = await invoke(provider, model, api_key, system_prompt,
                              history, user_prompt, output_schema)
    completion.text, completion.usage

`invoke` builds a provider from `get_provider()` and delegates to its
`generate()`. Each provider speaks its own REST dialect over httpx:

    OpenAIProvider     — POST /v1/chat/completions
                         system prompt as the first chat message,
                         JSON mode via response_format={"type": "json_object"}
    AnthropicProvider  — POST /v1/messages
                         top-level "system", strict user/assistant alternation
    GoogleProvider     — POST /v1beta/models/{model}:generateContent
                         "systemInstruction" + "contents", structured output
                         via responseSchema

All three normalise to `Completion(text, usage)`. Transport failures raise
LLMError (ProviderTimeout for timeouts); the stages convert these into
`{success: False, error}` results.

Tests patch `questline.llm.invoke` (pipeline tests) or
`httpx.AsyncClient.post` (provider tests).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from questline.models import ChatTurn, Usage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0

OPENAI_URL = "https://api.openai.com"
ANTHROPIC_URL = "https://api.anthropic.com"
GOOGLE_URL = "https://generativelanguage.googleapis.com"
ANTHROPIC_VERSION = "2023-06-01"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when a provider cannot be reached or returns an error."""


class ProviderTimeout(LLMError):
    """Raised when a provider call exceeds its time budget."""


# ---------------------------------------------------------------------------
# Result + protocol
# ---------------------------------------------------------------------------

@dataclass
class Completion:
    text: str
    usage: Usage = field(default_factory=Usage)


class ModelProvider(Protocol):
    async def generate(
        self,
        system_prompt: str,
        history: list[ChatTurn],
        user_prompt: str,
        output_schema: dict | None = None,
        *,
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ) -> Completion: ...


# ---------------------------------------------------------------------------
# History adaptation
# ---------------------------------------------------------------------------

def adapt_history(history: list[ChatTurn], assistant_role: str = "assistant") -> list[dict[str, str]]:
    """Map chat history onto a strict user/assistant alternation.

    Non-user roles (narrator, system, assistant) become `assistant_role`.
    Leading non-user turns are dropped, empty turns skipped, and consecutive
    turns of the same role joined with a blank line.
    """
    turns: list[dict[str, str]] = []
    for msg in history:
        content = (msg.content or "").strip()
        if not content:
            continue
        role = "user" if msg.role == "user" else assistant_role
        if not turns and role != "user":
            continue
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"] += "\n\n" + content
        else:
            turns.append({"role": role, "content": content})
    return turns


def _with_user_turn(turns: list[dict[str, str]], user_prompt: str) -> list[dict[str, str]]:
    """Append the current user turn, merging into a trailing user turn."""
    turns = [dict(t) for t in turns]
    if turns and turns[-1]["role"] == "user":
        turns[-1]["content"] += "\n\n" + user_prompt
    else:
        turns.append({"role": "user", "content": user_prompt})
    return turns


# ---------------------------------------------------------------------------
# Shared HTTP plumbing
# ---------------------------------------------------------------------------

class _HttpProvider:
    name = "provider"

    def __init__(self, api_key: str, model: str, base_url: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def _post(self, url: str, body: dict, headers: dict[str, str]) -> dict:
        logger.debug("llm call provider=%s model=%s url=%s", self.name, self._model, url)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to {self.name} at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"{self.name} returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"{self.name} timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise LLMError(f"{self.name} request failed: {e}") from e

        try:
            return resp.json()
        except ValueError as e:
            raise LLMError(f"{self.name} returned a non-JSON body") from e


# ---------------------------------------------------------------------------
# OpenAI: chat completions
# ---------------------------------------------------------------------------

class OpenAIProvider(_HttpProvider):
    name = "openai"

    def __init__(self, api_key: str, model: str, base_url: str = OPENAI_URL, timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(api_key, model, base_url, timeout)

    def _build_request(
        self, system_prompt: str, history: list[ChatTurn], user_prompt: str,
        output_schema: dict | None, temperature: float, max_tokens: int,
    ) -> tuple[str, dict, dict[str, str]]:
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(_with_user_turn(adapt_history(history), user_prompt))
        body: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if output_schema is not None:
            body["response_format"] = {"type": "json_object"}
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        return f"{self._base_url}/v1/chat/completions", body, headers

    def _parse_response(self, data: dict) -> Completion:
        choices = data.get("choices")
        if not choices or not isinstance(choices[0].get("message"), dict):
            raise LLMError("Unexpected response format from openai")
        text = choices[0]["message"].get("content") or ""
        usage = data.get("usage") or {}
        return Completion(text=text, usage=Usage(
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
        ))

    async def generate(self, system_prompt, history, user_prompt, output_schema=None, *,
                       temperature=0.7, max_tokens=2000) -> Completion:
        url, body, headers = self._build_request(
            system_prompt, history, user_prompt, output_schema, temperature, max_tokens)
        return self._parse_response(await self._post(url, body, headers))


# ---------------------------------------------------------------------------
# Anthropic: messages with top-level system
# ---------------------------------------------------------------------------

class AnthropicProvider(_HttpProvider):
    name = "anthropic"

    def __init__(self, api_key: str, model: str, base_url: str = ANTHROPIC_URL, timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(api_key, model, base_url, timeout)

    def _build_request(
        self, system_prompt: str, history: list[ChatTurn], user_prompt: str,
        output_schema: dict | None, temperature: float, max_tokens: int,
    ) -> tuple[str, dict, dict[str, str]]:
        # No schema support: callers put the JSON instruction in the prompt.
        body = {
            "model": self._model,
            "system": system_prompt,
            "messages": _with_user_turn(adapt_history(history), user_prompt),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        return f"{self._base_url}/v1/messages", body, headers

    def _parse_response(self, data: dict) -> Completion:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise LLMError("Unexpected response format from anthropic")
        texts = [b.get("text", "") for b in blocks if b.get("type") == "text"]
        if not texts:
            raise LLMError("No text content in anthropic response")
        usage = data.get("usage") or {}
        prompt = usage.get("input_tokens", 0)
        completion = usage.get("output_tokens", 0)
        return Completion(text="".join(texts), usage=Usage(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=prompt + completion,
        ))

    async def generate(self, system_prompt, history, user_prompt, output_schema=None, *,
                       temperature=0.7, max_tokens=2000) -> Completion:
        url, body, headers = self._build_request(
            system_prompt, history, user_prompt, output_schema, temperature, max_tokens)
        return self._parse_response(await self._post(url, body, headers))


# ---------------------------------------------------------------------------
# Google: contents + systemInstruction
# ---------------------------------------------------------------------------

_GOOGLE_SCHEMA_KEYS = {"type", "description", "properties", "items", "required", "enum", "nullable"}


def to_google_schema(schema: dict) -> dict:
    """Convert a JSON schema into Gemini's OpenAPI subset (uppercase types)."""
    out: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _GOOGLE_SCHEMA_KEYS:
            continue
        if key == "type":
            out["type"] = str(value).upper()
        elif key == "properties":
            out["properties"] = {k: to_google_schema(v) for k, v in value.items()}
        elif key == "items":
            out["items"] = to_google_schema(value)
        else:
            out[key] = value
    return out


class GoogleProvider(_HttpProvider):
    name = "google"

    def __init__(self, api_key: str, model: str, base_url: str = GOOGLE_URL, timeout: float = DEFAULT_TIMEOUT) -> None:
        super().__init__(api_key, model, base_url, timeout)

    def _build_request(
        self, system_prompt: str, history: list[ChatTurn], user_prompt: str,
        output_schema: dict | None, temperature: float, max_tokens: int,
    ) -> tuple[str, dict, dict[str, str]]:
        turns = _with_user_turn(adapt_history(history, assistant_role="model"), user_prompt)
        generation_config: dict[str, Any] = {
            "temperature": temperature,
            "maxOutputTokens": max_tokens,
        }
        if output_schema is not None:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseSchema"] = to_google_schema(output_schema)
        body = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": t["role"], "parts": [{"text": t["content"]}]} for t in turns],
            "generationConfig": generation_config,
        }
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self._api_key,
        }
        return f"{self._base_url}/v1beta/models/{self._model}:generateContent", body, headers

    def _parse_response(self, data: dict) -> Completion:
        candidates = data.get("candidates")
        if not candidates:
            raise LLMError("Unexpected response format from google")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        usage = data.get("usageMetadata") or {}
        return Completion(text=text, usage=Usage(
            prompt_tokens=usage.get("promptTokenCount", 0),
            completion_tokens=usage.get("candidatesTokenCount", 0),
            total_tokens=usage.get("totalTokenCount", 0),
        ))

    async def generate(self, system_prompt, history, user_prompt, output_schema=None, *,
                       temperature=0.7, max_tokens=2000) -> Completion:
        url, body, headers = self._build_request(
            system_prompt, history, user_prompt, output_schema, temperature, max_tokens)
        return self._parse_response(await self._post(url, body, headers))


# ---------------------------------------------------------------------------
# Factory + entry point
# ---------------------------------------------------------------------------

_PROVIDERS: dict[str, type[_HttpProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
}


def get_provider(name: str, api_key: str, model: str, timeout: float = DEFAULT_TIMEOUT) -> ModelProvider:
    try:
        cls = _PROVIDERS[name]
    except KeyError:
        raise LLMError(f"Unknown provider {name!r}") from None
    return cls(api_key=api_key, model=model, timeout=timeout)


async def invoke(
    provider: str,
    model: str,
    api_key: str,
    system_prompt: str,
    history: list[ChatTurn],
    user_prompt: str,
    output_schema: dict | None = None,
    *,
    temperature: float = 0.7,
    max_tokens: int = 2000,
    timeout: float = DEFAULT_TIMEOUT,
) -> Completion:
    """Run one completion against `provider` and return normalised text + usage."""
    client = get_provider(provider, api_key, model, timeout)
    completion = await client.generate(
        system_prompt, history, user_prompt, output_schema,
        temperature=temperature, max_tokens=max_tokens,
    )
    logger.debug(
        "llm response provider=%s model=%s len=%d tokens=%d",
        provider, model, len(completion.text), completion.usage.total_tokens,
    )
    return completion
