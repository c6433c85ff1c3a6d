"""Job payloads for the three pipeline stages."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


class Stage(str, Enum):
    INGEST = "incoming-message"
    REPLY = "bot-reply"
    DELIVER = "outgoing-message"


class _Job(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class IngestJob(_Job):
    channel_id: str = Field(alias="channelId")
    sender_id: str = Field(alias="senderId")
    text: str
    source_timestamp: int | None = Field(default=None, alias="sourceTimestamp")
    source_message_id: str | None = Field(default=None, alias="sourceMessageId")


class ReplyJob(_Job):
    conversation_id: str = Field(alias="conversationId")
    trigger_message_id: str = Field(alias="triggerMessageId")


class DeliverJob(_Job):
    channel_id: str = Field(alias="channelId")
    recipient_id: str = Field(alias="recipientId")
    text: str
    message_id: str = Field(alias="messageId")


Job = Union[IngestJob, ReplyJob, DeliverJob]

JOB_TYPES: dict[Stage, type[_Job]] = {
    Stage.INGEST: IngestJob,
    Stage.REPLY: ReplyJob,
    Stage.DELIVER: DeliverJob,
}

STAGE_FOR_JOB: dict[type[_Job], Stage] = {cls: stage for stage, cls in JOB_TYPES.items()}


class JobEnvelope(BaseModel):
    """Queue-side wrapper carrying delivery bookkeeping for one job."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    stage: Stage
    payload: dict[str, Any]
    attempts: int = 0
    enqueued_at: float = Field(default_factory=time.time)
    last_error: str | None = None
    failed_at: float | None = None

    _raw: str | None = PrivateAttr(default=None)

    @classmethod
    def wrap(cls, job: Job, job_id: str | None = None) -> "JobEnvelope":
        stage = STAGE_FOR_JOB[type(job)]
        envelope = cls(stage=stage, payload=job.to_payload())
        if job_id:
            envelope.id = job_id
        return envelope

    def job(self) -> Job:
        return JOB_TYPES[self.stage].model_validate(self.payload)  # type: ignore[return-value]
