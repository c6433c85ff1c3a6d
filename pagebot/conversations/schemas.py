"""Pydantic schemas for conversations, messages and channel configuration."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .models import ConversationStatus, MessageRole


class CustomerProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: str | None = Field(default=None, alias="firstName")
    last_name: str | None = Field(default=None, alias="lastName")
    full_name: str | None = Field(default=None, alias="fullName")
    profile_picture: str | None = Field(default=None, alias="profilePicture")
    locale: str = "en_US"

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> "CustomerProfile":
        first = data.get("first_name")
        last = data.get("last_name")
        full = " ".join(part for part in (first, last) if part) or None
        return cls(
            first_name=first,
            last_name=last,
            full_name=full,
            profile_picture=data.get("profile_pic"),
            locale=data.get("locale") or "en_US",
        )


class ChannelConnection(BaseModel):
    id: str
    tenant_id: str
    page_id: str
    page_name: str | None = None
    page_access_token_enc: str
    verify_token_enc: str | None = None


class GenerationConfig(BaseModel):
    tenant_id: str
    provider: str
    api_key_enc: str | None = None
    model: str
    temperature: float = 0.7
    max_tokens: int = 1000
    system_prompt: str = "You are a helpful customer support assistant."


class Conversation(BaseModel):
    id: str
    tenant_id: str
    connection_id: str
    page_id: str
    psid: str
    status: ConversationStatus = ConversationStatus.OPEN
    auto_bot: bool = True
    last_message_at: datetime | None = None
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @property
    def customer_profile(self) -> CustomerProfile | None:
        raw = self.meta.get("customerProfile")
        if not raw:
            return None
        return CustomerProfile.model_validate(raw)

    @property
    def customer_name(self) -> str:
        profile = self.customer_profile
        if profile and profile.full_name:
            return profile.full_name
        return f"Customer {self.psid[-4:]}"


class Message(BaseModel):
    id: str
    conversation_id: str
    role: MessageRole
    text: str
    created_at: datetime
    meta: dict[str, Any] = Field(default_factory=dict)
    provider_used: str | None = None
    dedupe_key: str | None = None
