"""
Background dispatcher for queued integration jobs.

Usage:
    python -m supportdesk.worker

Normally the dispatcher runs inside POST /queue/process, called by an external
scheduler. The loop here is for deployments that supervise the worker as a
long-lived process (systemd service, Docker container).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from pydantic import ValidationError

from supportdesk.core.config import settings
from supportdesk.core.exceptions import (
    AuthError,
    PermanentValidationError,
    RateLimitError,
)
from supportdesk.core.structured_logging import build_log_context
from supportdesk.db.session import SessionLocal
from supportdesk.jobs.context import WorkerContext, build_worker_context
from supportdesk.jobs.registry import resolve_job_handler
from supportdesk.jobs.utils import format_error
from supportdesk.schemas.job import parse_job_payload
from supportdesk.services import job_service

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    processed: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)
    stopped_early: bool = False


def classify_failure(exc: BaseException) -> tuple[bool, int | None]:
    """
    Return (retryable, retry_after_seconds) for a handler exception.

    Permanent validation errors and auth errors that survived the in-job
    token refresh are final. Everything else, timeouts and transport errors
    included, is retried with backoff.
    """
    if isinstance(exc, (PermanentValidationError, AuthError, ValidationError)):
        return False, None
    if isinstance(exc, RateLimitError):
        return True, exc.retry_after or settings.RATE_LIMIT_RETRY_SECONDS
    return True, None


async def process_job(db, job, ctx: WorkerContext) -> dict | None:
    """Resolve, re-validate and run one claimed job under the per-job timeout."""
    try:
        handler = resolve_job_handler(job.job_type)
    except ValueError as exc:
        raise PermanentValidationError(str(exc)) from exc
    parse_job_payload(job.job_type, job.payload)
    return await asyncio.wait_for(handler(db, job, ctx), timeout=settings.JOB_TIMEOUT_SECONDS)


async def run_once(
    db,
    ctx: WorkerContext | None = None,
    max_batch: int | None = None,
) -> DispatchResult:
    """
    Claim and run up to max_batch jobs.

    Handler exceptions are recorded on the job and never abort the batch.
    Job store errors propagate.
    """
    ctx = ctx or build_worker_context(db)
    max_batch = max_batch or settings.WORKER_BATCH_SIZE
    result = DispatchResult()
    consecutive_rate_limits = 0

    for _ in range(max_batch):
        job = job_service.claim_next(db, ctx.owner_id)
        if job is None:
            break

        log_context = build_log_context(job_id=str(job.id), job_type=job.job_type, owner_id=ctx.owner_id)
        logger.info("Processing job %s (type=%s, attempt=%s)", job.id, job.job_type, job.attempts + 1, extra=log_context)
        job_id, job_type = job.id, job.job_type

        try:
            outcome = await process_job(db, job, ctx)
        except Exception as exc:
            db.rollback()
            retryable, retry_after = classify_failure(exc)
            error = format_error(exc)
            job_service.fail(db, job_id, error, retryable=retryable, owner_id=ctx.owner_id, retry_after=retry_after)
            result.failed += 1
            result.errors.append({"job_id": str(job_id), "job_type": job_type, "error": error})
            logger.error("Job %s failed (retryable=%s): %s", job_id, retryable, type(exc).__name__, extra=log_context)

            if isinstance(exc, RateLimitError):
                consecutive_rate_limits += 1
                if consecutive_rate_limits >= settings.RATE_LIMIT_STOP_AFTER:
                    logger.warning("Provider rate limited %s times in a row, stopping batch", consecutive_rate_limits)
                    result.stopped_early = True
                    break
            else:
                consecutive_rate_limits = 0
            continue

        consecutive_rate_limits = 0
        job_service.complete(db, job_id, outcome, owner_id=ctx.owner_id)
        result.processed += 1
        logger.info("Job %s completed successfully", job_id, extra=log_context)

    return result


async def worker_loop(poll_interval: int | None = None, max_batch: int | None = None) -> None:
    """Main worker loop - runs the dispatcher every poll_interval seconds."""
    poll_interval = poll_interval or settings.WORKER_POLL_INTERVAL
    logger.info("Worker starting (poll interval: %ss, batch size: %s)", poll_interval, max_batch or settings.WORKER_BATCH_SIZE)

    while True:
        with SessionLocal() as db:
            try:
                job_service.enqueue_recurring_jobs(db)
                result = await run_once(db, max_batch=max_batch)
                if result.processed or result.failed:
                    logger.info("Dispatched %s job(s), %s failed", result.processed, result.failed)
            except Exception as exc:
                db.rollback()
                logger.error("Error in worker loop: %s", type(exc).__name__)

        await asyncio.sleep(poll_interval)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(worker_loop())


if __name__ == "__main__":
    main()
