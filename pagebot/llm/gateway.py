"""Provider-agnostic generation with request limits and content filtering."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Mapping, Sequence

from .providers import ADAPTER_CLASSES, ProviderAdapter
from .types import ChatMessage, GenerationRequest, GenerationResult, Provider

logger = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 20
MAX_MESSAGE_CHARS = 10_000

UNSAFE_PATTERNS = (
    re.compile(r"\b(kill|harm|hurt|violence)\b", re.IGNORECASE),
    re.compile(r"\b(hack|exploit|attack)\b", re.IGNORECASE),
)

AVAILABLE_MODELS: Mapping[Provider, tuple[str, ...]] = {
    Provider.OPENAI: ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo"),
    Provider.GEMINI: ("gemini-1.5-pro", "gemini-1.5-flash", "gemini-1.0-pro"),
    Provider.OPENROUTER: (
        "anthropic/claude-3.5-sonnet",
        "anthropic/claude-3-haiku",
        "meta-llama/llama-3.1-8b-instruct",
        "openai/gpt-4o",
        "openai/gpt-4o-mini",
        "deepseek/deepseek-chat-v3.1:free",
    ),
}


class GenerationError(RuntimeError):
    """Raised when a backend call fails; message names the provider."""


class RequestRejectedError(ValueError):
    """Raised before dispatch when the request exceeds the size limits."""


class UnsafeContentError(ValueError):
    """Raised when input or output matches the unsafe-content denylist."""


def is_unsafe(text: str) -> bool:
    return any(pattern.search(text) for pattern in UNSAFE_PATTERNS)


def parse_provider(value: str | Provider) -> Provider:
    if isinstance(value, Provider):
        return value
    try:
        return Provider(str(value).upper())
    except ValueError as exc:
        supported = ", ".join(p.value for p in Provider)
        raise GenerationError(f"Invalid provider: {value}. Available: {supported}") from exc


class LLMGateway:
    """Dispatch generation requests to cached per-provider adapters."""

    def __init__(
        self,
        factories: Mapping[Provider, Callable[[], ProviderAdapter]] | None = None,
    ) -> None:
        self._factories: dict[Provider, Callable[[], ProviderAdapter]] = dict(
            factories or ADAPTER_CLASSES
        )
        self._adapters: dict[Provider, ProviderAdapter] = {}
        self._lock = threading.Lock()

    def get_adapter(self, provider: Provider) -> ProviderAdapter:
        with self._lock:
            adapter = self._adapters.get(provider)
            if adapter is None:
                factory = self._factories.get(provider)
                if factory is None:
                    raise GenerationError(f"Unsupported provider: {provider.value}")
                adapter = factory()
                self._adapters[provider] = adapter
            return adapter

    def clear_adapters(self) -> None:
        with self._lock:
            self._adapters.clear()

    @staticmethod
    def is_supported(provider: str) -> bool:
        return str(provider).upper() in {p.value for p in Provider}

    @staticmethod
    def available_models(provider: Provider) -> list[str]:
        return list(AVAILABLE_MODELS.get(provider, ()))

    @staticmethod
    def validate(messages: Sequence[ChatMessage]) -> None:
        if len(messages) > MAX_HISTORY_MESSAGES:
            raise RequestRejectedError(
                f"Too many messages in conversation history (max {MAX_HISTORY_MESSAGES})"
            )
        for message in messages:
            if len(message.content) > MAX_MESSAGE_CHARS:
                raise RequestRejectedError(
                    f"Message too long (max {MAX_MESSAGE_CHARS} characters)"
                )
            if is_unsafe(message.content):
                raise UnsafeContentError("Message contains potentially unsafe content")

    def generate(
        self, request: GenerationRequest, messages: Sequence[ChatMessage]
    ) -> GenerationResult:
        """Validate, dispatch and screen one generation request."""

        self.validate(messages)
        adapter = self.get_adapter(request.provider)
        try:
            result = adapter.generate(request, messages)
        except Exception as exc:
            logger.warning("%s generation failed: %s", request.provider.label, exc)
            raise GenerationError(f"{request.provider.label} API error: {exc}") from exc
        if is_unsafe(result.text):
            logger.warning("Discarding %s response flagged as unsafe", request.provider.label)
            raise UnsafeContentError("Generated response contains potentially unsafe content")
        return result
