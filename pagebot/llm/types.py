"""Request/response types shared by the LLM gateway and its adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


class Provider(str, Enum):
    OPENAI = "OPENAI"
    GEMINI = "GEMINI"
    OPENROUTER = "OPENROUTER"

    @property
    def label(self) -> str:
        return {"OPENAI": "OpenAI", "GEMINI": "Gemini", "OPENROUTER": "OpenRouter"}[self.value]


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["user", "assistant"]
    content: str


@dataclass(frozen=True)
class GenerationRequest:
    provider: Provider
    api_key: str
    model: str
    temperature: float = 0.7
    max_tokens: int = 1000
    system_prompt: str | None = None


@dataclass
class Usage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass
class GenerationResult:
    text: str
    provider: str
    model: str
    usage: Usage | None = None
    extras: dict[str, Any] = field(default_factory=dict)
