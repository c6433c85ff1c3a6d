"""Durable and in-process implementations of the stage queues.

Both backends expose the same contract: ``enqueue`` a job, ``reserve`` the
next one (which moves it to an in-flight set and increments its attempt
count), then ``ack`` it, ``retry`` it after a delay, or ``fail`` it into the
stage's dead list where operators can inspect and requeue it.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol

import redis
from redis.exceptions import RedisError

from ..config import Settings
from .jobs import Job, JobEnvelope, Stage

logger = logging.getLogger(__name__)


class QueueUnavailableError(RuntimeError):
    """Raised when the queue backend cannot be reached."""


class JobQueue(Protocol):
    def enqueue(self, job: Job, *, delay: float = 0.0, job_id: str | None = None) -> JobEnvelope: ...

    def reserve(self, stage: Stage, timeout: float = 1.0) -> JobEnvelope | None: ...

    def ack(self, envelope: JobEnvelope) -> None: ...

    def retry(self, envelope: JobEnvelope, delay: float, error: str) -> None: ...

    def fail(self, envelope: JobEnvelope, error: str) -> None: ...

    def failed(self, stage: Stage, limit: int = 50) -> list[JobEnvelope]: ...

    def requeue_failed(self, stage: Stage, job_id: str) -> bool: ...

    def ping(self) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Redis


class RedisJobQueue:
    """Redis lists per stage with a delayed sorted set and a dead list.

    Every reserved entry also gets a lease in a ``leases`` sorted set scored
    by its reservation time. ``reserve`` hands entries whose lease is older
    than ``lease_seconds`` back to the waiting list, so a consumer that died
    mid-job does not strand its work in ``processing``.
    """

    def __init__(
        self, client: redis.Redis, prefix: str = "pagebot", lease_seconds: float = 300.0
    ) -> None:
        self._redis = client
        self._prefix = prefix
        self.lease_seconds = lease_seconds

    @classmethod
    def from_url(
        cls, url: str, prefix: str = "pagebot", lease_seconds: float = 300.0
    ) -> "RedisJobQueue":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            retry_on_timeout=True,
            socket_timeout=5,
            health_check_interval=30,
        )
        return cls(client, prefix=prefix, lease_seconds=lease_seconds)

    def _key(self, stage: Stage, kind: str) -> str:
        return f"{self._prefix}:{stage.value}:{kind}"

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except RedisError as exc:
            raise QueueUnavailableError(f"Redis unavailable during {action}: {exc}") from exc

    def _push(self, envelope: JobEnvelope, delay: float) -> None:
        raw = envelope.model_dump_json()
        if delay > 0:
            self._redis.zadd(self._key(envelope.stage, "delayed"), {raw: time.time() + delay})
        else:
            self._redis.lpush(self._key(envelope.stage, "waiting"), raw)

    def enqueue(self, job: Job, *, delay: float = 0.0, job_id: str | None = None) -> JobEnvelope:
        envelope = JobEnvelope.wrap(job, job_id)
        with self._guard("enqueue"):
            self._push(envelope, delay)
        return envelope

    def _promote_delayed(self, stage: Stage) -> None:
        delayed = self._key(stage, "delayed")
        for raw in self._redis.zrangebyscore(delayed, 0, time.time()):
            # zrem returns 0 when another consumer already promoted the entry.
            if self._redis.zrem(delayed, raw):
                self._redis.rpush(self._key(stage, "waiting"), raw)

    def _requeue_in_flight(self, stage: Stage, raw: str) -> bool:
        leases = self._key(stage, "leases")
        if not self._redis.lrem(self._key(stage, "processing"), 1, raw):
            self._redis.zrem(leases, raw)
            return False
        pipe = self._redis.pipeline()
        pipe.zrem(leases, raw)
        pipe.rpush(self._key(stage, "waiting"), raw)
        pipe.execute()
        return True

    def _reclaim_expired(self, stage: Stage) -> int:
        cutoff = time.time() - self.lease_seconds
        moved = 0
        for raw in self._redis.zrangebyscore(self._key(stage, "leases"), 0, cutoff):
            if self._requeue_in_flight(stage, raw):
                moved += 1
        if moved:
            logger.warning("Reclaimed %d expired %s jobs", moved, stage.value)
        return moved

    def reserve(self, stage: Stage, timeout: float = 1.0) -> JobEnvelope | None:
        waiting = self._key(stage, "waiting")
        processing = self._key(stage, "processing")
        with self._guard("reserve"):
            self._reclaim_expired(stage)
            self._promote_delayed(stage)
            if timeout > 0:
                raw = self._redis.blmove(waiting, processing, timeout, "RIGHT", "LEFT")
            else:
                raw = self._redis.lmove(waiting, processing, "RIGHT", "LEFT")
            if raw is None:
                return None
            self._redis.zadd(self._key(stage, "leases"), {raw: time.time()})
        envelope = JobEnvelope.model_validate_json(raw)
        envelope._raw = raw
        envelope.attempts += 1
        return envelope

    def _release(self, pipe, envelope: JobEnvelope) -> None:
        if envelope._raw is not None:
            pipe.lrem(self._key(envelope.stage, "processing"), 1, envelope._raw)
            pipe.zrem(self._key(envelope.stage, "leases"), envelope._raw)

    def ack(self, envelope: JobEnvelope) -> None:
        with self._guard("ack"):
            pipe = self._redis.pipeline()
            self._release(pipe, envelope)
            pipe.execute()

    def retry(self, envelope: JobEnvelope, delay: float, error: str) -> None:
        envelope.last_error = error
        with self._guard("retry"):
            pipe = self._redis.pipeline()
            self._release(pipe, envelope)
            pipe.zadd(
                self._key(envelope.stage, "delayed"),
                {envelope.model_dump_json(): time.time() + delay},
            )
            pipe.execute()

    def fail(self, envelope: JobEnvelope, error: str) -> None:
        envelope.last_error = error
        envelope.failed_at = time.time()
        with self._guard("fail"):
            pipe = self._redis.pipeline()
            self._release(pipe, envelope)
            pipe.lpush(self._key(envelope.stage, "failed"), envelope.model_dump_json())
            pipe.execute()

    def failed(self, stage: Stage, limit: int = 50) -> list[JobEnvelope]:
        with self._guard("failed"):
            rows = self._redis.lrange(self._key(stage, "failed"), 0, limit - 1)
        return [JobEnvelope.model_validate_json(raw) for raw in rows]

    def requeue_failed(self, stage: Stage, job_id: str) -> bool:
        key = self._key(stage, "failed")
        with self._guard("requeue"):
            for raw in self._redis.lrange(key, 0, -1):
                envelope = JobEnvelope.model_validate_json(raw)
                if envelope.id != job_id:
                    continue
                if not self._redis.lrem(key, 1, raw):
                    return False
                envelope.attempts = 0
                envelope.failed_at = None
                self._push(envelope, 0)
                return True
        return False

    def recover(self, stage: Stage) -> int:
        """Move in-flight jobs with an expired or missing lease back to waiting.

        Run at startup: it also catches entries a consumer moved into
        ``processing`` but died before leasing.
        """

        cutoff = time.time() - self.lease_seconds
        leases = self._key(stage, "leases")
        moved = 0
        with self._guard("recover"):
            for raw in self._redis.lrange(self._key(stage, "processing"), 0, -1):
                leased_at = self._redis.zscore(leases, raw)
                if leased_at is not None and leased_at > cutoff:
                    continue
                if self._requeue_in_flight(stage, raw):
                    moved += 1
        if moved:
            logger.warning("Recovered %d in-flight %s jobs", moved, stage.value)
        return moved

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except RedisError:
            return False

    def close(self) -> None:
        self._redis.close()


# ---------------------------------------------------------------------------
# In-process fallback (single process; used for development and tests)


class InMemoryJobQueue:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._waiting: dict[Stage, deque[JobEnvelope]] = {s: deque() for s in Stage}
        self._delayed: dict[Stage, list[tuple[float, int, JobEnvelope]]] = {s: [] for s in Stage}
        self._processing: dict[str, JobEnvelope] = {}
        self._failed: dict[Stage, list[JobEnvelope]] = {s: [] for s in Stage}
        self._seq = itertools.count()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise QueueUnavailableError("In-memory queue disabled")

    def enqueue(self, job: Job, *, delay: float = 0.0, job_id: str | None = None) -> JobEnvelope:
        self._check()
        envelope = JobEnvelope.wrap(job, job_id)
        self._put(envelope, delay)
        return envelope

    def _put(self, envelope: JobEnvelope, delay: float) -> None:
        with self._cond:
            if delay > 0:
                heapq.heappush(
                    self._delayed[envelope.stage],
                    (time.monotonic() + delay, next(self._seq), envelope),
                )
            else:
                self._waiting[envelope.stage].append(envelope)
            self._cond.notify_all()

    def _promote(self, stage: Stage) -> float | None:
        heap = self._delayed[stage]
        now = time.monotonic()
        while heap and heap[0][0] <= now:
            _, _, envelope = heapq.heappop(heap)
            self._waiting[stage].append(envelope)
        return heap[0][0] - now if heap else None

    def reserve(self, stage: Stage, timeout: float = 1.0) -> JobEnvelope | None:
        self._check()
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote(stage)
                if self._waiting[stage]:
                    envelope = self._waiting[stage].popleft()
                    envelope.attempts += 1
                    self._processing[envelope.id] = envelope
                    return envelope
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = remaining if next_due is None else min(remaining, next_due)
                self._cond.wait(wait)

    def ack(self, envelope: JobEnvelope) -> None:
        with self._cond:
            self._processing.pop(envelope.id, None)

    def retry(self, envelope: JobEnvelope, delay: float, error: str) -> None:
        envelope.last_error = error
        with self._cond:
            self._processing.pop(envelope.id, None)
        self._put(envelope, delay)

    def fail(self, envelope: JobEnvelope, error: str) -> None:
        envelope.last_error = error
        envelope.failed_at = time.time()
        with self._cond:
            self._processing.pop(envelope.id, None)
            self._failed[envelope.stage].insert(0, envelope)

    def failed(self, stage: Stage, limit: int = 50) -> list[JobEnvelope]:
        self._check()
        with self._cond:
            return [e.model_copy() for e in self._failed[stage][:limit]]

    def requeue_failed(self, stage: Stage, job_id: str) -> bool:
        self._check()
        with self._cond:
            for index, envelope in enumerate(self._failed[stage]):
                if envelope.id == job_id:
                    del self._failed[stage][index]
                    break
            else:
                return False
        envelope.attempts = 0
        envelope.failed_at = None
        self._put(envelope, 0)
        return True

    def pending(self, stage: Stage) -> int:
        with self._cond:
            return len(self._waiting[stage]) + len(self._delayed[stage])

    def ping(self) -> bool:
        return self.available

    def close(self) -> None:
        with self._cond:
            self._cond.notify_all()


def create_job_queue(settings: Settings) -> JobQueue:
    """Select the queue backend configured for this process."""

    if settings.queue_backend == "redis":
        if not settings.redis_url:
            raise QueueUnavailableError("QUEUE_BACKEND=redis requires REDIS_URL")
        queue = RedisJobQueue.from_url(
            settings.redis_url, lease_seconds=settings.job_lease_seconds
        )
        if not queue.ping():
            logger.warning("Redis at %s is not reachable yet", settings.redis_url)
        return queue
    logger.info("Using in-process job queue")
    return InMemoryJobQueue()
