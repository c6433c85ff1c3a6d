"""Stage queues and job payloads."""

from .backends import (
    InMemoryJobQueue,
    JobQueue,
    QueueUnavailableError,
    RedisJobQueue,
    create_job_queue,
)
from .jobs import DeliverJob, IngestJob, Job, JobEnvelope, ReplyJob, Stage

__all__ = [
    "DeliverJob",
    "InMemoryJobQueue",
    "IngestJob",
    "Job",
    "JobEnvelope",
    "JobQueue",
    "QueueUnavailableError",
    "RedisJobQueue",
    "ReplyJob",
    "Stage",
    "create_job_queue",
]
