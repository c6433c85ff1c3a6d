import time

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from pagebot.config import Settings
from pagebot.pipeline.startup import recover_in_flight
from pagebot.queue.backends import (
    InMemoryJobQueue,
    QueueUnavailableError,
    RedisJobQueue,
    create_job_queue,
)
from pagebot.queue.jobs import DeliverJob, IngestJob, JobEnvelope, ReplyJob, Stage


def _deliver(message_id="m1"):
    return DeliverJob(channel_id="pg1", recipient_id="psid", text="hi", message_id=message_id)


def test_jobs_serialise_with_camel_case_aliases():
    job = IngestJob(channel_id="pg1", sender_id="psid", text="hello", source_timestamp=1000)
    assert job.to_payload() == {
        "channelId": "pg1",
        "senderId": "psid",
        "text": "hello",
        "sourceTimestamp": 1000,
        "sourceMessageId": None,
    }
    assert IngestJob.model_validate(job.to_payload()) == job
    assert ReplyJob(conversationId="c", triggerMessageId="m").conversation_id == "c"


def test_envelope_wraps_stage_and_restores_job():
    envelope = JobEnvelope.wrap(_deliver(), job_id="fixed")
    assert envelope.id == "fixed"
    assert envelope.stage is Stage.DELIVER
    assert envelope.attempts == 0
    assert envelope.job() == _deliver()

    restored = JobEnvelope.model_validate_json(envelope.model_dump_json())
    assert restored.job() == _deliver()


def test_in_memory_queue_is_fifo_per_stage():
    queue = InMemoryJobQueue()
    queue.enqueue(_deliver("a"))
    queue.enqueue(_deliver("b"))
    queue.enqueue(ReplyJob(conversation_id="c", trigger_message_id="t"))

    first = queue.reserve(Stage.DELIVER, timeout=0)
    second = queue.reserve(Stage.DELIVER, timeout=0)
    assert [first.job().message_id, second.job().message_id] == ["a", "b"]
    assert first.attempts == 1
    assert queue.reserve(Stage.DELIVER, timeout=0) is None
    assert queue.pending(Stage.REPLY) == 1


def test_delayed_jobs_become_available_after_delay():
    queue = InMemoryJobQueue()
    queue.enqueue(_deliver(), delay=0.05)
    assert queue.reserve(Stage.DELIVER, timeout=0) is None
    envelope = queue.reserve(Stage.DELIVER, timeout=1.0)
    assert envelope is not None


def test_retry_keeps_attempt_count_and_error():
    queue = InMemoryJobQueue()
    queue.enqueue(_deliver())
    envelope = queue.reserve(Stage.DELIVER, timeout=0)
    queue.retry(envelope, 0, "timeout")

    again = queue.reserve(Stage.DELIVER, timeout=0)
    assert again.attempts == 2
    assert again.last_error == "timeout"


def test_fail_and_requeue():
    queue = InMemoryJobQueue()
    queue.enqueue(_deliver())
    envelope = queue.reserve(Stage.DELIVER, timeout=0)
    queue.fail(envelope, "gave up")

    failed = queue.failed(Stage.DELIVER)
    assert [f.id for f in failed] == [envelope.id]
    assert failed[0].failed_at is not None
    assert queue.requeue_failed(Stage.DELIVER, "missing") is False

    assert queue.requeue_failed(Stage.DELIVER, envelope.id) is True
    assert queue.failed(Stage.DELIVER) == []
    retried = queue.reserve(Stage.DELIVER, timeout=0)
    assert retried.attempts == 1


def test_unavailable_queue_raises():
    queue = InMemoryJobQueue()
    queue.available = False
    assert queue.ping() is False
    with pytest.raises(QueueUnavailableError):
        queue.enqueue(_deliver())
    with pytest.raises(QueueUnavailableError):
        queue.reserve(Stage.DELIVER, timeout=0)


def test_reserve_waits_for_producer():
    queue = InMemoryJobQueue()
    start = time.monotonic()
    assert queue.reserve(Stage.INGEST, timeout=0.05) is None
    assert time.monotonic() - start >= 0.04


class _BrokenRedis:
    def __init__(self, error):
        self.error = error

    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise self.error

        return _fail


@pytest.mark.parametrize(
    "error",
    [
        RedisConnectionError("connection refused"),
        ResponseError("OOM command not allowed when used memory > 'maxmemory'"),
        ResponseError("READONLY You can't write against a read only replica."),
    ],
)
def test_redis_errors_become_queue_unavailable(error):
    queue = RedisJobQueue(_BrokenRedis(error))
    with pytest.raises(QueueUnavailableError):
        queue.enqueue(_deliver())
    with pytest.raises(QueueUnavailableError):
        queue.reserve(Stage.DELIVER, timeout=0)
    assert queue.ping() is False


def test_create_job_queue_selects_backend():
    assert isinstance(create_job_queue(Settings()), InMemoryJobQueue)
    with pytest.raises(QueueUnavailableError):
        create_job_queue(Settings(queue_backend="redis"))


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def redis_queue(redis_client):
    return RedisJobQueue(redis_client, prefix="test", lease_seconds=60)


def _in_flight(client, stage=Stage.DELIVER):
    return (
        client.llen(f"test:{stage.value}:processing"),
        client.zcard(f"test:{stage.value}:leases"),
    )


def test_redis_queue_is_fifo_and_leases_reserved_jobs(redis_queue, redis_client):
    redis_queue.enqueue(_deliver("a"))
    redis_queue.enqueue(_deliver("b"))

    first = redis_queue.reserve(Stage.DELIVER, timeout=0)
    second = redis_queue.reserve(Stage.DELIVER, timeout=0)
    assert [first.job().message_id, second.job().message_id] == ["a", "b"]
    assert first.attempts == 1
    assert redis_queue.reserve(Stage.DELIVER, timeout=0) is None
    assert _in_flight(redis_client) == (2, 2)

    redis_queue.ack(first)
    assert _in_flight(redis_client) == (1, 1)


def test_redis_retry_moves_job_through_delayed_set(redis_queue, redis_client):
    redis_queue.enqueue(_deliver())
    envelope = redis_queue.reserve(Stage.DELIVER, timeout=0)

    redis_queue.retry(envelope, 0.05, "timeout")
    assert _in_flight(redis_client) == (0, 0)
    assert redis_client.zcard("test:outgoing-message:delayed") == 1
    assert redis_queue.reserve(Stage.DELIVER, timeout=0) is None

    time.sleep(0.06)
    again = redis_queue.reserve(Stage.DELIVER, timeout=0)
    assert again.id == envelope.id
    assert again.attempts == 2
    assert again.last_error == "timeout"
    assert redis_client.zcard("test:outgoing-message:delayed") == 0


def test_redis_fail_and_requeue(redis_queue, redis_client):
    redis_queue.enqueue(_deliver())
    envelope = redis_queue.reserve(Stage.DELIVER, timeout=0)
    redis_queue.fail(envelope, "gave up")

    assert _in_flight(redis_client) == (0, 0)
    failed = redis_queue.failed(Stage.DELIVER)
    assert [f.id for f in failed] == [envelope.id]
    assert failed[0].last_error == "gave up"
    assert redis_queue.requeue_failed(Stage.DELIVER, "missing") is False

    assert redis_queue.requeue_failed(Stage.DELIVER, envelope.id) is True
    assert redis_queue.failed(Stage.DELIVER) == []
    retried = redis_queue.reserve(Stage.DELIVER, timeout=0)
    assert retried.id == envelope.id
    assert retried.attempts == 1


def test_redis_reserve_reclaims_expired_leases(redis_queue, redis_client):
    redis_queue.enqueue(_deliver("a"))
    stranded = redis_queue.reserve(Stage.DELIVER, timeout=0)
    redis_client.zadd("test:outgoing-message:leases", {stranded._raw: 0})

    reclaimed = redis_queue.reserve(Stage.DELIVER, timeout=0)
    assert reclaimed.id == stranded.id
    assert reclaimed.attempts == 1
    assert _in_flight(redis_client) == (1, 1)


def test_redis_recover_requeues_unleased_jobs_and_keeps_live_ones(redis_queue, redis_client):
    redis_queue.enqueue(_deliver("live"))
    live = redis_queue.reserve(Stage.DELIVER, timeout=0)
    orphan = JobEnvelope.wrap(_deliver("orphan")).model_dump_json()
    redis_client.lpush("test:outgoing-message:processing", orphan)

    assert recover_in_flight(redis_queue, [Stage.DELIVER]) == 1
    assert _in_flight(redis_client) == (1, 1)
    recovered = redis_queue.reserve(Stage.DELIVER, timeout=0)
    assert recovered.job().message_id == "orphan"

    redis_queue.ack(live)
    redis_queue.ack(recovered)
    assert _in_flight(redis_client) == (0, 0)


def test_recover_in_flight_skips_other_backends():
    assert recover_in_flight(InMemoryJobQueue(), list(Stage)) == 0
    down = RedisJobQueue(_BrokenRedis(RedisConnectionError("connection refused")))
    assert recover_in_flight(down, list(Stage)) == 0
