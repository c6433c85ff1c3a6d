"""Stage handlers: ingest an inbound message, generate a reply, deliver it.

Each handler is idempotent under redelivery:

* the USER message is keyed by (conversation, text, source timestamp);
* a reply job is enqueued only by whoever sets ``replyEnqueued`` on the
  triggering message, and a deliver job only by whoever sets
  ``deliveryEnqueued`` on the bot message;
* the BOT message is keyed by its triggering message, with an extra
  time-window check for identical text from the same provider;
* delivery is skipped once a platform message id is recorded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from ..channels.messenger import MessengerAPIError, MessengerClient
from ..config import Settings
from ..conversations import schemas
from ..conversations.models import MessageRole, reply_dedupe_key, user_dedupe_key, utcnow
from ..conversations.repository import ConversationRepository
from ..db import UnitOfWork
from ..llm.gateway import (
    GenerationError,
    LLMGateway,
    RequestRejectedError,
    UnsafeContentError,
    parse_provider,
)
from ..llm.types import ChatMessage, GenerationRequest
from ..memory.manager import ConversationMemoryManager
from ..queue.backends import JobQueue, QueueUnavailableError
from ..queue.jobs import DeliverJob, IngestJob, Job, JobEnvelope, ReplyJob, Stage
from ..rag import RagResponder
from ..realtime.broadcaster import EventPublisher
from ..retrieval.vector_store import VectorRetrievalService
from ..security.vault import CredentialVault, VaultError

logger = logging.getLogger(__name__)

REPLY_CLAIM = "replyEnqueued"
DELIVERY_CLAIM = "deliveryEnqueued"


class PermanentJobError(RuntimeError):
    """The job can never succeed; it goes straight to the failed list."""


class ConfigurationMissingError(PermanentJobError):
    """Tenant has no usable generation or channel configuration."""


class TransientDeliveryError(RuntimeError):
    """The platform send failed in a way worth retrying."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 2.0
    factor: float = 2.0

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def delay(self, attempts: int) -> float:
        return self.base_delay * self.factor ** max(attempts - 1, 0)


@dataclass
class IngestOutcome:
    conversation: schemas.Conversation
    message: schemas.Message
    created_conversation: bool
    duplicate: bool
    reply_job: ReplyJob | None = None


class Pipeline:
    def __init__(
        self,
        unit_of_work: UnitOfWork,
        *,
        vault: CredentialVault,
        gateway: LLMGateway,
        messenger: MessengerClient,
        events: EventPublisher,
        retrieval: VectorRetrievalService | None,
        settings: Settings,
        queue: JobQueue | None = None,
    ) -> None:
        self._uow = unit_of_work
        self._vault = vault
        self._gateway = gateway
        self._messenger = messenger
        self._events = events
        self._retrieval = retrieval
        self._settings = settings
        self.queue = queue
        self.retry_policy = RetryPolicy(
            max_attempts=settings.deliver_max_attempts,
            base_delay=settings.deliver_backoff_seconds,
        )

    # ------------------------------------------------------------------
    # Stage 1: ingest

    def _fetch_profile(
        self, connection: schemas.ChannelConnection, psid: str
    ) -> schemas.CustomerProfile | None:
        try:
            token = self._vault.decrypt(connection.page_access_token_enc)
            return self._messenger.get_user_profile(psid, token)
        except (MessengerAPIError, VaultError) as exc:
            logger.warning("Could not fetch profile for %s: %s", psid, exc)
            return None

    def handle_ingest(self, job: IngestJob) -> IngestOutcome:
        with self._uow() as repo:
            connection = repo.get_connection_by_page(job.channel_id)
            if connection is None:
                raise PermanentJobError(f"No channel connection for page {job.channel_id}")

            conversation, created = repo.get_or_create_conversation(connection, job.sender_id)
            if created:
                profile = self._fetch_profile(connection, job.sender_id)
                if profile is not None:
                    conversation = repo.update_conversation_meta(
                        conversation.id,
                        {"customerProfile": profile.model_dump(by_alias=True)},
                    )
                logger.info("Created conversation %s for %s", conversation.id, job.sender_id)
                self._events.conversation_new(conversation)

            message, inserted = repo.add_message(
                conversation.id,
                MessageRole.USER,
                job.text,
                meta={
                    "timestamp": job.source_timestamp,
                    "sourceMessageId": job.source_message_id,
                    "pageId": job.channel_id,
                    "senderId": job.sender_id,
                },
                dedupe_key=user_dedupe_key(
                    job.text, job.source_timestamp, job.source_message_id
                ),
            )
            if inserted:
                now = utcnow()
                repo.touch_conversation(conversation.id, now)
                count = repo.count_messages(conversation.id)
                self._events.message_new(message, conversation)
                self._events.conversation_updated(conversation, now, count)
            else:
                logger.info("Duplicate inbound message %s ignored", message.id)

            reply_job = None
            if conversation.auto_bot:
                if repo.claim_message_flag(message.id, REPLY_CLAIM):
                    reply_job = ReplyJob(
                        conversation_id=conversation.id, trigger_message_id=message.id
                    )
                elif not inserted and repo.get_message_by_dedupe_key(
                    conversation.id, reply_dedupe_key(message.id)
                ) is None:
                    # The claim holder may have died before enqueueing; the reply
                    # stage collapses extra jobs on the BOT:{trigger} key.
                    logger.info("Re-enqueueing reply for unanswered message %s", message.id)
                    reply_job = ReplyJob(
                        conversation_id=conversation.id, trigger_message_id=message.id
                    )

        return IngestOutcome(
            conversation=conversation,
            message=message,
            created_conversation=created,
            duplicate=not inserted,
            reply_job=reply_job,
        )

    # ------------------------------------------------------------------
    # Stage 2: reply

    def _generation_request(self, config: schemas.GenerationConfig) -> GenerationRequest:
        if not config.api_key_enc:
            raise ConfigurationMissingError("LLM provider API key not configured")
        try:
            api_key = self._vault.decrypt(config.api_key_enc)
            provider = parse_provider(config.provider)
        except (VaultError, GenerationError) as exc:
            raise ConfigurationMissingError(str(exc)) from exc
        return GenerationRequest(
            provider=provider,
            api_key=api_key,
            model=config.model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            system_prompt=config.system_prompt,
        )

    def _generate(
        self,
        repo: ConversationRepository,
        conversation: schemas.Conversation,
        request: GenerationRequest,
        query: str,
    ) -> tuple[str, dict[str, Any]]:
        settings = self._settings
        responder = RagResponder(
            self._gateway,
            ConversationMemoryManager(
                repo,
                max_messages=settings.memory_max_messages,
                summary_threshold=settings.memory_summary_threshold,
                keep_recent=settings.memory_keep_recent,
            ),
            self._retrieval,
            search_limit=settings.rag_search_limit,
            min_similarity=settings.rag_min_similarity,
            temperature_cap=settings.reply_temperature_cap,
        )
        try:
            reply = responder.respond(conversation, request, query)
            return reply.text, {
                "model": reply.model,
                "usage": reply.usage.as_dict() if reply.usage else None,
                "sources": reply.sources,
                "relevantChunks": reply.relevant_chunks,
            }
        except (UnsafeContentError, RequestRejectedError) as exc:
            raise PermanentJobError(f"Generation rejected: {exc}") from exc
        except Exception as exc:
            logger.warning(
                "RAG generation failed for conversation %s, using plain history: %s",
                conversation.id,
                exc,
            )

        history = [
            ChatMessage(
                role="user" if m.role == MessageRole.USER else "assistant",
                content=m.text,
            )
            for m in repo.list_recent_messages(conversation.id, settings.memory_max_messages)
        ]
        try:
            result = self._gateway.generate(request, history)
        except (UnsafeContentError, RequestRejectedError) as exc:
            raise PermanentJobError(f"Generation rejected: {exc}") from exc
        return result.text, {
            "model": result.model,
            "usage": result.usage.as_dict() if result.usage else None,
            "fallback": True,
        }

    def handle_reply(self, job: ReplyJob) -> DeliverJob | None:
        with self._uow() as repo:
            conversation = repo.get_conversation(job.conversation_id)
            if conversation is None:
                raise PermanentJobError(f"Conversation {job.conversation_id} not found")
            if not conversation.auto_bot:
                logger.info("Auto-reply disabled for %s; skipping", conversation.id)
                return None

            key = reply_dedupe_key(job.trigger_message_id)
            bot_message = repo.get_message_by_dedupe_key(conversation.id, key)
            if bot_message is None:
                config = repo.get_generation_config(conversation.tenant_id)
                if config is None:
                    raise ConfigurationMissingError(
                        f"No generation config for tenant {conversation.tenant_id}"
                    )
                trigger = repo.get_message(job.trigger_message_id)
                if trigger is None:
                    raise PermanentJobError(f"Message {job.trigger_message_id} not found")
                request = self._generation_request(config)

                text, details = self._generate(repo, conversation, request, trigger.text)

                since = utcnow() - timedelta(seconds=self._settings.bot_duplicate_window_seconds)
                recent = repo.find_recent_bot_message(
                    conversation.id, text, request.provider.value, since
                )
                if recent is not None:
                    logger.info("Reusing bot message %s generated moments ago", recent.id)
                    bot_message = recent
                else:
                    bot_message, inserted = repo.add_message(
                        conversation.id,
                        MessageRole.BOT,
                        text,
                        meta={"triggerMessageId": job.trigger_message_id, **details},
                        provider_used=request.provider.value,
                        dedupe_key=key,
                    )
                    if inserted:
                        now = utcnow()
                        repo.touch_conversation(conversation.id, now)
                        self._events.message_new(bot_message, conversation)
                        self._events.conversation_updated(
                            conversation, now, repo.count_messages(conversation.id)
                        )

            if bot_message.meta.get("facebookMessageId"):
                return None
            if not repo.claim_message_flag(bot_message.id, DELIVERY_CLAIM):
                return None
            return DeliverJob(
                channel_id=conversation.page_id,
                recipient_id=conversation.psid,
                text=bot_message.text,
                message_id=bot_message.id,
            )

    # ------------------------------------------------------------------
    # Stage 3: deliver

    def handle_deliver(self, job: DeliverJob, attempt: int = 1) -> str | None:
        """Send the bot message; return the platform id, or None if already sent."""

        with self._uow() as repo:
            message = repo.get_message(job.message_id)
            if message is None:
                raise PermanentJobError(f"Message {job.message_id} not found")
            if message.meta.get("facebookMessageId"):
                logger.info("Message %s already delivered", message.id)
                return None
            connection = repo.get_connection_by_page(job.channel_id)
            if connection is None:
                raise ConfigurationMissingError(f"No channel connection for page {job.channel_id}")
            try:
                token = self._vault.decrypt(connection.page_access_token_enc)
            except VaultError as exc:
                raise ConfigurationMissingError(str(exc)) from exc

            try:
                platform_id = self._messenger.send_message(
                    job.channel_id, job.recipient_id, job.text, token
                )
            except MessengerAPIError as exc:
                if exc.retryable:
                    raise TransientDeliveryError(str(exc)) from exc
                raise PermanentJobError(str(exc)) from exc

            sent_at = utcnow()
            repo.update_message_meta(
                message.id,
                {
                    "facebookMessageId": platform_id,
                    "sentAt": sent_at.isoformat(),
                    "deliveryStatus": "sent",
                    "deliveryAttempts": attempt,
                },
            )
        self._events.message_sent(message.conversation_id, message.id, platform_id, sent_at)
        return platform_id

    def mark_delivery_failed(self, job: DeliverJob, error: str, attempts: int) -> None:
        with self._uow() as repo:
            repo.update_message_meta(
                job.message_id,
                {
                    "deliveryStatus": "failed",
                    "deliveryError": error,
                    "deliveryAttempts": attempts,
                },
            )

    def mark_reply_failed(self, job: ReplyJob, error: str) -> None:
        """Record a reply that failed outside a worker and dead-letter its job.

        The reply claim is released so a redelivered webhook or an operator
        retry from the failed list can produce the reply later.
        """

        with self._uow() as repo:
            repo.update_message_meta(
                job.trigger_message_id,
                {"replyStatus": "failed", "replyError": error, REPLY_CLAIM: False},
            )
        logger.error("Reply to message %s failed: %s", job.trigger_message_id, error)
        if self.queue is None:
            return
        envelope = JobEnvelope.wrap(job)
        envelope.attempts = 1
        try:
            self.queue.fail(envelope, error)
        except QueueUnavailableError as exc:
            logger.warning(
                "Could not record failed reply job for %s: %s", job.trigger_message_id, exc
            )

    # ------------------------------------------------------------------
    # Receipts

    def record_delivery(self, page_id: str, mids: list[str]) -> list[str]:
        with self._uow() as repo:
            updated = repo.mark_delivered(mids, utcnow())
        if updated:
            logger.debug("Marked %d messages delivered on page %s", len(updated), page_id)
        return updated

    def record_read(self, page_id: str, psid: str, watermark: int | None) -> None:
        with self._uow() as repo:
            conversation = repo.get_conversation_by_thread(page_id, psid)
            if conversation is None:
                return
            read_at = utcnow()
            conversation = repo.update_conversation_meta(
                conversation.id,
                {"lastReadAt": read_at.isoformat(), "readWatermark": watermark},
            )
        self._events.conversation_read(conversation, psid, read_at)

    # ------------------------------------------------------------------
    # Dispatch

    def dispatch(self, job: Job) -> JobEnvelope:
        """Enqueue ``job``; on any failure release the claim so a retry can re-enqueue."""

        if self.queue is None:
            raise QueueUnavailableError("No job queue configured")
        try:
            return self.queue.enqueue(job)
        except Exception:
            self._release_claim(job)
            raise

    def _release_claim(self, job: Job) -> None:
        with self._uow() as repo:
            if isinstance(job, ReplyJob):
                repo.update_message_meta(job.trigger_message_id, {REPLY_CLAIM: False})
            elif isinstance(job, DeliverJob):
                repo.update_message_meta(job.message_id, {DELIVERY_CLAIM: False})

    def process(self, envelope: JobEnvelope) -> Job | None:
        """Run one queued job and enqueue whatever it produces next."""

        job = envelope.job()
        next_job: Job | None = None
        if envelope.stage == Stage.INGEST:
            next_job = self.handle_ingest(job).reply_job  # type: ignore[arg-type]
        elif envelope.stage == Stage.REPLY:
            next_job = self.handle_reply(job)  # type: ignore[arg-type]
        else:
            self.handle_deliver(job, envelope.attempts)  # type: ignore[arg-type]
        if next_job is not None:
            self.dispatch(next_job)
        return next_job

    def run_inline(self, job: IngestJob) -> IngestOutcome:
        """Degraded path: run ingest, reply and delivery in the caller's thread."""

        outcome = self.handle_ingest(job)
        if outcome.reply_job is None:
            return outcome
        try:
            deliver_job = self.handle_reply(outcome.reply_job)
        except Exception as exc:
            self.mark_reply_failed(outcome.reply_job, str(exc))
            raise
        if deliver_job is None:
            return outcome
        attempt = 1
        while True:
            try:
                self.handle_deliver(deliver_job, attempt)
                break
            except TransientDeliveryError as exc:
                if not self.retry_policy.should_retry(attempt):
                    self.mark_delivery_failed(deliver_job, str(exc), attempt)
                    logger.error(
                        "Inline delivery of message %s failed after %d attempts: %s",
                        deliver_job.message_id,
                        attempt,
                        exc,
                    )
                    break
                time.sleep(self.retry_policy.delay(attempt))
                attempt += 1
            except PermanentJobError as exc:
                self.mark_delivery_failed(deliver_job, str(exc), attempt)
                logger.error("Inline delivery of message %s failed: %s", deliver_job.message_id, exc)
                break
        return outcome
