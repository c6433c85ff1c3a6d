"""Operator view of jobs that exhausted their attempts."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, HTTPException, Query, Request

from ..queue.backends import JobQueue, QueueUnavailableError
from ..queue.jobs import Stage
from .webhooks import get_handles

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@contextmanager
def _queue_context(request: Request) -> Iterator[JobQueue]:
    handles = get_handles(request)
    try:
        yield handles.queue
    except QueueUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@router.get("/failed")
def list_failed_jobs(
    request: Request,
    stage: Stage = Stage.DELIVER,
    limit: int = Query(50, ge=1, le=500),
) -> dict:
    with _queue_context(request) as queue:
        envelopes = queue.failed(stage, limit)
    return {
        "stage": stage.value,
        "items": [e.model_dump(mode="json") for e in envelopes],
        "total": len(envelopes),
    }


@router.post("/failed/{job_id}/retry")
def retry_failed_job(request: Request, job_id: str, stage: Stage = Stage.DELIVER) -> dict:
    with _queue_context(request) as queue:
        requeued = queue.requeue_failed(stage, job_id)
    if not requeued:
        raise HTTPException(status_code=404, detail=f"Failed job {job_id} not found")
    return {"status": "requeued", "id": job_id, "stage": stage.value}
