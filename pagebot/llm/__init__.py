"""LLM provider gateway."""

from .gateway import (
    GenerationError,
    LLMGateway,
    RequestRejectedError,
    UnsafeContentError,
    is_unsafe,
    parse_provider,
)
from .providers import GeminiAdapter, OpenAIAdapter, OpenRouterAdapter, ProviderAdapter
from .types import ChatMessage, GenerationRequest, GenerationResult, Provider, Usage

__all__ = [
    "ChatMessage",
    "GeminiAdapter",
    "GenerationError",
    "GenerationRequest",
    "GenerationResult",
    "LLMGateway",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "Provider",
    "ProviderAdapter",
    "RequestRejectedError",
    "UnsafeContentError",
    "Usage",
    "is_unsafe",
    "parse_provider",
]
