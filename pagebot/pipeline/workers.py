"""Threaded stage consumers."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Event

from ..queue.backends import JobQueue, QueueUnavailableError
from ..queue.jobs import DeliverJob, JobEnvelope, Stage
from .stages import PermanentJobError, Pipeline, TransientDeliveryError

logger = logging.getLogger(__name__)


class StageWorker:
    """Reserve jobs of one stage and settle each one (ack, retry or fail).

    Only the deliver stage retries; a failure anywhere else moves the job to
    the failed list at once, where ``/api/jobs/failed`` surfaces it.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        queue: JobQueue,
        stage: Stage,
        *,
        poll_timeout: float = 1.0,
    ) -> None:
        self.pipeline = pipeline
        self.queue = queue
        self.stage = stage
        self.poll_timeout = poll_timeout

    def run_once(self, timeout: float | None = None) -> bool:
        """Process at most one job; return whether one was reserved."""

        envelope = self.queue.reserve(
            self.stage, self.poll_timeout if timeout is None else timeout
        )
        if envelope is None:
            return False
        self._settle(envelope)
        return True

    def _settle(self, envelope: JobEnvelope) -> None:
        try:
            self.pipeline.process(envelope)
        except PermanentJobError as exc:
            self._give_up(envelope, exc)
        except QueueUnavailableError as exc:
            logger.warning("Could not enqueue follow-up of %s job %s: %s", self.stage.value, envelope.id, exc)
            self._retry(envelope, exc)
        except TransientDeliveryError as exc:
            self._retry(envelope, exc)
        except Exception as exc:
            if self.stage == Stage.DELIVER:
                self._retry(envelope, exc)
            else:
                logger.exception("%s job %s failed", self.stage.value, envelope.id)
                self._give_up(envelope, exc)
        else:
            self.queue.ack(envelope)

    def _retry(self, envelope: JobEnvelope, exc: Exception) -> None:
        policy = self.pipeline.retry_policy
        if not policy.should_retry(envelope.attempts):
            self._give_up(envelope, exc)
            return
        delay = policy.delay(envelope.attempts)
        logger.warning(
            "%s job %s attempt %d failed, retrying in %.1fs: %s",
            self.stage.value,
            envelope.id,
            envelope.attempts,
            delay,
            exc,
        )
        self.queue.retry(envelope, delay, str(exc))

    def _give_up(self, envelope: JobEnvelope, exc: Exception) -> None:
        self.queue.fail(envelope, str(exc))
        logger.error(
            "%s job %s failed after %d attempt(s): %s",
            self.stage.value,
            envelope.id,
            envelope.attempts,
            exc,
            extra={"job_id": envelope.id, "stage": self.stage.value},
        )
        job = envelope.job()
        if isinstance(job, DeliverJob):
            try:
                self.pipeline.mark_delivery_failed(job, str(exc), envelope.attempts)
            except Exception:
                logger.exception("Could not record failed delivery for %s", job.message_id)

    def run(self, stop: Event) -> None:
        logger.info("%s worker started", self.stage.value)
        while not stop.is_set():
            try:
                self.run_once()
            except QueueUnavailableError as exc:
                logger.warning("Queue unavailable for %s: %s", self.stage.value, exc)
                stop.wait(self.poll_timeout * 5)
            except Exception:
                logger.exception("Unexpected error in %s worker loop", self.stage.value)
                stop.wait(self.poll_timeout)
        logger.info("%s worker stopped", self.stage.value)


class WorkerPool:
    """Run ``concurrency`` consumers per stage on a :class:`ThreadPoolExecutor`."""

    def __init__(
        self,
        pipeline: Pipeline,
        queue: JobQueue,
        stages: Iterable[Stage] = tuple(Stage),
        concurrency: int = 2,
        poll_timeout: float = 1.0,
    ) -> None:
        self.stages = tuple(stages)
        self.concurrency = max(concurrency, 1)
        self._workers = [
            StageWorker(pipeline, queue, stage, poll_timeout=poll_timeout)
            for stage in self.stages
            for _ in range(self.concurrency)
        ]
        self._stop = Event()
        self._executor: ThreadPoolExecutor | None = None
        self._futures: list[Future] = []

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self) -> None:
        if self._executor is not None:
            raise RuntimeError("Worker pool already started")
        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=len(self._workers), thread_name_prefix="pagebot-worker"
        )
        self._futures = [self._executor.submit(w.run, self._stop) for w in self._workers]

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
            self._futures = []
