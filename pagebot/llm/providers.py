"""Backend adapters implementing a single ``generate`` capability."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

import requests
from openai import OpenAI

from .types import ChatMessage, GenerationRequest, GenerationResult, Provider, Usage

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class ProviderAdapter(ABC):
    """Adapter for one generation backend.

    Adapters hold no credentials: the decrypted API key travels with each
    :class:`GenerationRequest`, so one cached adapter can serve every tenant.
    """

    provider: Provider

    @abstractmethod
    def generate(
        self, request: GenerationRequest, messages: Sequence[ChatMessage]
    ) -> GenerationResult:
        """Return the completion for ``messages``."""


class OpenAIAdapter(ProviderAdapter):
    provider = Provider.OPENAI
    base_url: str | None = None

    def __init__(self, timeout: float = 60.0) -> None:
        self._timeout = timeout

    def _client(self, api_key: str) -> OpenAI:
        if self.base_url:
            return OpenAI(api_key=api_key, base_url=self.base_url, timeout=self._timeout)
        return OpenAI(api_key=api_key, timeout=self._timeout)

    def _payload(
        self, request: GenerationRequest, messages: Sequence[ChatMessage]
    ) -> list[dict[str, str]]:
        payload: list[dict[str, str]] = []
        if request.system_prompt:
            payload.append({"role": "system", "content": request.system_prompt})
        payload.extend({"role": m.role, "content": m.content} for m in messages)
        return payload

    def generate(
        self, request: GenerationRequest, messages: Sequence[ChatMessage]
    ) -> GenerationResult:
        completion = self._client(request.api_key).chat.completions.create(
            model=request.model,
            messages=self._payload(request, messages),
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )
        if not completion.choices or not completion.choices[0].message.content:
            raise RuntimeError(f"No response content from {self.provider.label}")
        usage = None
        if completion.usage is not None:
            usage = Usage(
                prompt_tokens=completion.usage.prompt_tokens,
                completion_tokens=completion.usage.completion_tokens,
                total_tokens=completion.usage.total_tokens,
            )
        return GenerationResult(
            text=completion.choices[0].message.content,
            provider=self.provider.label,
            model=request.model,
            usage=usage,
        )


class OpenRouterAdapter(OpenAIAdapter):
    """OpenRouter speaks the OpenAI chat-completions protocol."""

    provider = Provider.OPENROUTER
    base_url = OPENROUTER_BASE_URL


class GeminiAdapter(ProviderAdapter):
    provider = Provider.GEMINI

    def __init__(self, timeout: float = 60.0, session: requests.Session | None = None) -> None:
        self._timeout = timeout
        self._session = session or requests.Session()

    @staticmethod
    def _contents(messages: Sequence[ChatMessage]) -> list[dict[str, Any]]:
        return [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in messages
        ]

    def generate(
        self, request: GenerationRequest, messages: Sequence[ChatMessage]
    ) -> GenerationResult:
        body: dict[str, Any] = {
            "contents": self._contents(messages),
            "generationConfig": {
                "temperature": request.temperature,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if request.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        response = self._session.post(
            f"{GEMINI_BASE_URL}/models/{request.model}:generateContent",
            params={"key": request.api_key},
            json=body,
            timeout=self._timeout,
        )
        response.raise_for_status()
        data = response.json()
        candidates = data.get("candidates") or []
        parts = (candidates[0].get("content") or {}).get("parts", []) if candidates else []
        text = "".join(part.get("text", "") for part in parts)
        if not text:
            raise RuntimeError("No response content from Gemini")
        meta = data.get("usageMetadata") or {}
        return GenerationResult(
            text=text,
            provider=self.provider.label,
            model=request.model,
            usage=Usage(
                prompt_tokens=meta.get("promptTokenCount"),
                completion_tokens=meta.get("candidatesTokenCount"),
                total_tokens=meta.get("totalTokenCount"),
            ),
        )


ADAPTER_CLASSES: dict[Provider, type[ProviderAdapter]] = {
    Provider.OPENAI: OpenAIAdapter,
    Provider.GEMINI: GeminiAdapter,
    Provider.OPENROUTER: OpenRouterAdapter,
}
