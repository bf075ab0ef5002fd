from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from consult_core.errors import ModelUnavailable
from consult_core.log import logger

_log = logger(tag="llm")

_GROQ_API_BASE = os.getenv("GROQ_API_BASE_URL", "https://api.groq.com/openai/v1").rstrip("/")
_OPENAI_API_BASE = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1").rstrip("/")
_OPENROUTER_API_BASE = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
_ANTHROPIC_API_BASE = os.getenv("ANTHROPIC_API_BASE_URL", "https://api.anthropic.com/v1").rstrip("/")


@dataclass(frozen=True)
class PromptSegment:
    role: str
    content: str


def system(content: str) -> PromptSegment:
    return PromptSegment("system", content)


def user(content: str) -> PromptSegment:
    return PromptSegment("user", content)


class LanguageModel(Protocol):
    async def complete(self, segments: list[PromptSegment]) -> str: ...


def provider_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        nested = payload.get("error")
        for candidate in (nested.get("message") if isinstance(nested, dict) else None, payload.get("message")):
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
    return response.text.strip() or f"HTTP {response.status_code}"


def strip_code_fences(raw_text: str) -> str:
    return re.sub(r"```(?:json)?", "", raw_text or "").strip()


_DECODER = json.JSONDecoder()


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    """First JSON object found in a model reply, tolerating prose around it."""
    text = strip_code_fences(raw_text)
    for match in re.finditer(r"\{", text):
        try:
            payload, _end = _DECODER.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


def _joined_text(blocks: Any, *, block_type: str | None = None) -> str:
    if not isinstance(blocks, list):
        return ""
    parts = [
        block["text"].strip()
        for block in blocks
        if isinstance(block, dict)
        and isinstance(block.get("text"), str)
        and (block_type is None or block.get("type") == block_type)
    ]
    return "\n".join(part for part in parts if part)


def coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    content = (choices[0].get("message") or {}).get("content")
    return content if isinstance(content, str) else _joined_text(content)


def coerce_anthropic_text(response_json: dict[str, Any]) -> str:
    return _joined_text(response_json.get("content"), block_type="text")


@dataclass(frozen=True)
class _ProviderSpec:
    name: str
    key_env: str
    base_url: str
    model_env: str
    default_model: str


_PROVIDERS = (
    _ProviderSpec("groq", "GROQ_API_KEY", _GROQ_API_BASE, "GROQ_MODEL", "llama-3.3-70b-versatile"),
    _ProviderSpec("anthropic", "ANTHROPIC_API_KEY", _ANTHROPIC_API_BASE, "ANTHROPIC_MODEL", "claude-3-5-sonnet-latest"),
    _ProviderSpec("openrouter", "OPENROUTER_API_KEY", _OPENROUTER_API_BASE, "OPENROUTER_MODEL", "openai/gpt-4o-mini"),
    _ProviderSpec("openai", "OPENAI_API_KEY", _OPENAI_API_BASE, "CONSULT_CHAT_MODEL", "gpt-4o-mini"),
)


def provider_candidates() -> list[dict[str, Any]]:
    """Configured providers in fallback order; CONSULT_CHAT_PROVIDER moves one to the front."""
    candidates: list[dict[str, Any]] = []
    for spec in _PROVIDERS:
        api_key = (os.getenv(spec.key_env) or "").strip()
        if not api_key:
            continue
        model = (os.getenv(spec.model_env) or spec.default_model).strip()
        if spec.name == "anthropic":
            model = model.removeprefix("anthropic/")
        candidates.append({"provider": spec.name, "base_url": spec.base_url, "api_key": api_key, "model": model})

    preferred = (os.getenv("CONSULT_CHAT_PROVIDER") or "").strip().lower()
    return sorted(candidates, key=lambda candidate: candidate["provider"] != preferred)


class HttpLanguageModel:
    """Calls the first configured provider that answers with non-empty text.

    Every failure mode (no key, non-2xx, timeout, empty body) surfaces as a
    single `ModelUnavailable`.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 25.0,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        providers: list[dict[str, Any]] | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._providers = providers

    def providers(self) -> list[dict[str, Any]]:
        return self._providers if self._providers is not None else provider_candidates()

    async def complete(self, segments: list[PromptSegment]) -> str:
        providers = self.providers()
        if not providers:
            _log.warning("llm unavailable: no provider key found in runtime env")
            raise ModelUnavailable("No language model provider is configured.")

        last_error = "no provider answered"
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds, connect=8.0)) as client:
            for provider in providers:
                provider_name = str(provider.get("provider") or "unknown")
                try:
                    if provider_name == "anthropic":
                        text = await self._anthropic_chat(client, provider, segments)
                    else:
                        text = await self._openai_compatible_chat(client, provider, segments)
                except (httpx.HTTPError, RuntimeError, ValueError) as exc:
                    last_error = f"{provider_name}: {exc}"
                    _log.warning("llm call failed (%s): %s", provider_name, exc)
                    continue
                if text:
                    _log.debug("llm provider used (%s)", provider_name)
                    return text
                last_error = f"{provider_name}: empty response"
                _log.warning("llm provider empty response (%s)", provider_name)
        raise ModelUnavailable(f"Language model unavailable ({last_error}).")

    async def _openai_compatible_chat(
        self,
        client: httpx.AsyncClient,
        provider: dict[str, Any],
        segments: list[PromptSegment],
    ) -> str:
        payload = {
            "model": provider["model"],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "messages": [{"role": segment.role, "content": segment.content} for segment in segments],
        }
        headers: dict[str, str] = {
            "Authorization": f"Bearer {provider['api_key']}",
            "Content-Type": "application/json",
        }
        if provider["provider"] == "openrouter":
            site_url = (os.getenv("OPENROUTER_SITE_URL") or "").strip()
            if site_url:
                headers["HTTP-Referer"] = site_url
            headers["X-Title"] = (os.getenv("OPENROUTER_APP_NAME") or "Consult Room").strip()
        response = await client.post(f"{provider['base_url']}/chat/completions", headers=headers, json=payload)
        if response.status_code >= 400:
            raise RuntimeError(provider_error_message(response))
        return coerce_completion_text(response.json()).strip()

    async def _anthropic_chat(
        self,
        client: httpx.AsyncClient,
        provider: dict[str, Any],
        segments: list[PromptSegment],
    ) -> str:
        system_prompt = "\n\n".join(segment.content for segment in segments if segment.role == "system")
        messages = [
            {"role": segment.role, "content": segment.content}
            for segment in segments
            if segment.role in {"user", "assistant"} and segment.content.strip()
        ]
        if not messages:
            messages = [{"role": "user", "content": "Respond based on the context above."}]
        payload = {
            "model": provider["model"],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system_prompt,
            "messages": messages,
        }
        headers = {
            "x-api-key": str(provider["api_key"]),
            "anthropic-version": os.getenv("ANTHROPIC_API_VERSION", "2023-06-01"),
            "Content-Type": "application/json",
        }
        response = await client.post(f"{provider['base_url']}/messages", headers=headers, json=payload)
        if response.status_code >= 400:
            raise RuntimeError(provider_error_message(response))
        return coerce_anthropic_text(response.json())
