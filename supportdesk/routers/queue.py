"""
Queue trigger gateway.

An external scheduler calls POST /queue/process every few minutes with
Authorization: Bearer <QUEUE_SECRET>. Each call enqueues the recurring jobs
and runs one dispatcher batch inside the request.
"""

import hmac
import logging
from typing import Callable

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from supportdesk.core.config import settings
from supportdesk.core.deps import get_db
from supportdesk.core.structured_logging import build_log_context
from supportdesk.jobs.context import WorkerContext, build_worker_context
from supportdesk.schemas.job import QueueProcessResponse, QueueStats, QueueStatsResponse
from supportdesk.services import job_service
from supportdesk.worker import run_once

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])

STATS_WINDOW = 100


def verify_queue_secret(authorization: str | None = Header(default=None)) -> None:
    """Verify the scheduler's bearer token."""
    expected = settings.QUEUE_SECRET
    if not expected:
        raise HTTPException(status_code=500, detail="QUEUE_SECRET not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_context_builder() -> Callable[[Session], WorkerContext]:
    """WorkerContext factory, called inside the store-failure guard of process_queue."""
    return build_worker_context


def _store_failure(exc: Exception) -> JSONResponse:
    logger.error("Queue store failure: %s", type(exc).__name__, extra=build_log_context(route="/queue/process"))
    return JSONResponse(status_code=500, content={"success": False, "error": "Job store unavailable"})


@router.post("/process", response_model=QueueProcessResponse, dependencies=[Depends(verify_queue_secret)])
async def process_queue(
    max_batch: int | None = Query(default=None, ge=1),
    enqueue_recurring: bool = Query(default=True),
    db: Session = Depends(get_db),
    build_context: Callable[[Session], WorkerContext] = Depends(get_context_builder),
):
    """Enqueue recurring jobs, then dispatch up to max_batch due jobs."""
    batch = min(max_batch or settings.WORKER_BATCH_SIZE, settings.WORKER_MAX_BATCH)
    try:
        ctx = build_context(db)
        enqueued = job_service.enqueue_recurring_jobs(db) if enqueue_recurring else []
        result = await run_once(db, ctx, max_batch=batch)
    except SQLAlchemyError as exc:
        db.rollback()
        return _store_failure(exc)

    message = f"Processed {result.processed} job(s), {result.failed} failed"
    if result.stopped_early:
        message += "; stopped early after repeated rate limiting"
    return QueueProcessResponse(
        success=True,
        processed=result.processed,
        failed=result.failed,
        errors=result.errors,
        enqueued=[job.job_type for job in enqueued],
        message=message,
    )


@router.get("/process", response_model=QueueStatsResponse, dependencies=[Depends(verify_queue_secret)])
def queue_stats(db: Session = Depends(get_db)):
    """Status and type counts over the most recent jobs."""
    try:
        stats = job_service.get_queue_stats(db, limit=STATS_WINDOW)
    except SQLAlchemyError as exc:
        return _store_failure(exc)
    return QueueStatsResponse(stats=QueueStats(**stats))
