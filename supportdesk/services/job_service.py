"""Job service - durable job store and lease-based claim protocol."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Iterable
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supportdesk.core.config import settings
from supportdesk.core.exceptions import PermanentValidationError
from supportdesk.db.enums import (
    DEFAULT_MAX_ATTEMPTS,
    TERMINAL_JOB_STATUSES,
    JobStatus,
    JobType,
)
from supportdesk.db.models import Job
from supportdesk.db.types import utcnow
from supportdesk.jobs.utils import MAX_ERROR_LENGTH
from supportdesk.schemas.job import dump_job_payload, parse_job_payload

logger = logging.getLogger(__name__)

# Candidates fetched per claim attempt; losers of the conditional update move on.
CLAIM_CANDIDATES = 5

LEASE_EXPIRED_ERROR = "lease expired"


# =============================================================================
# Enqueue
# =============================================================================


def enqueue(
    db: Session,
    job_type: JobType | str,
    payload: dict | None = None,
    *,
    max_attempts: int | None = None,
    not_before: datetime | None = None,
    idempotency_key: str | None = None,
    commit: bool = True,
) -> Job:
    """
    Validate and insert a new pending job.

    Malformed payloads raise PermanentValidationError and never reach the store.
    When idempotency_key matches an existing job, that job is returned instead.
    With commit=False the row is only flushed, joining the caller's transaction.
    """
    try:
        job_type = JobType(job_type)
    except ValueError as exc:
        raise PermanentValidationError(f"Unknown job type: {job_type}") from exc

    if max_attempts is not None and max_attempts < 1:
        raise PermanentValidationError(f"max_attempts must be at least 1, got {max_attempts}")

    try:
        model = parse_job_payload(job_type.value, payload)
    except ValidationError as exc:
        raise PermanentValidationError(
            f"Invalid payload for {job_type.value}: {exc.error_count()} error(s): "
            + "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
        ) from exc

    if idempotency_key:
        existing = get_job_by_idempotency_key(db, idempotency_key)
        if existing:
            logger.info("Job with idempotency_key=%s already exists: %s", idempotency_key, existing.id)
            return existing

    job = Job(
        job_type=job_type.value,
        payload=dump_job_payload(model),
        status=JobStatus.PENDING.value,
        attempts=0,
        max_attempts=DEFAULT_MAX_ATTEMPTS[job_type] if max_attempts is None else max_attempts,
        not_before=not_before or utcnow(),
        idempotency_key=idempotency_key,
    )
    try:
        with db.begin_nested():
            db.add(job)
    except IntegrityError:
        # Lost an insert race on idempotency_key
        existing = get_job_by_idempotency_key(db, idempotency_key) if idempotency_key else None
        if existing is None:
            raise
        return existing

    if commit:
        db.commit()
        db.refresh(job)
    logger.info("Enqueued job %s type=%s", job.id, job.job_type)
    return job


def enqueue_recurring_jobs(db: Session, job_types: Iterable[str] | None = None) -> list[Job]:
    """
    Enqueue one job per recurring type.

    A type is skipped while a non-terminal job of that type already exists.
    """
    created: list[Job] = []
    for job_type in job_types or settings.recurring_job_types_list:
        active = (
            db.query(Job.id)
            .filter(
                Job.job_type == str(job_type),
                Job.status.notin_([s.value for s in TERMINAL_JOB_STATUSES]),
            )
            .first()
        )
        if active:
            logger.debug("Recurring job %s already queued, skipping", job_type)
            continue
        created.append(enqueue(db, job_type, {}))
    return created


# =============================================================================
# Claim protocol
# =============================================================================


def _claimable_clause(now: datetime):
    """Rows a worker may take: due pending/retryable jobs or expired leases."""
    return or_(
        and_(
            Job.status.in_([JobStatus.PENDING.value, JobStatus.FAILED_RETRYABLE.value]),
            Job.not_before <= now,
        ),
        and_(
            Job.status == JobStatus.PROCESSING.value,
            Job.lock_expires_at <= now,
            Job.attempts + 1 < Job.max_attempts,
        ),
    )


def reap_expired_leases(db: Session, now: datetime | None = None) -> int:
    """
    Kill expired leases that have no attempt left.

    The reclaim itself would consume the final attempt, so these rows go
    straight to dead. Does not commit.
    """
    now = now or utcnow()
    result = db.execute(
        update(Job)
        .where(
            Job.status == JobStatus.PROCESSING.value,
            Job.lock_expires_at <= now,
            Job.attempts + 1 >= Job.max_attempts,
        )
        .values(
            status=JobStatus.DEAD.value,
            attempts=Job.attempts + 1,
            lock_owner=None,
            lock_expires_at=None,
            last_error=LEASE_EXPIRED_ERROR,
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.warning("Marked %s job(s) dead after lease expiry", result.rowcount)
    return result.rowcount


def claim_next(
    db: Session,
    owner_id: str,
    job_types: Iterable[str] | None = None,
    lease_seconds: int | None = None,
    now: datetime | None = None,
) -> Job | None:
    """
    Atomically take one eligible job and lease it to owner_id.

    Each candidate is taken with a conditional UPDATE; a row count of 0 means a
    concurrent caller won it and the next candidate is tried. Reclaiming an
    expired lease consumes one attempt.
    """
    now = now or utcnow()
    lease = timedelta(seconds=lease_seconds or settings.JOB_LEASE_SECONDS)

    reap_expired_leases(db, now=now)

    claimable = _claimable_clause(now)
    query = select(Job.id).where(claimable)
    if job_types:
        query = query.where(Job.job_type.in_([str(t) for t in job_types]))
    query = (
        query.order_by(Job.not_before, Job.created_at)
        .limit(CLAIM_CANDIDATES)
        .with_for_update(skip_locked=True)
    )
    candidate_ids = list(db.execute(query).scalars())

    for job_id in candidate_ids:
        result = db.execute(
            update(Job)
            .where(Job.id == job_id, claimable)
            .values(
                status=JobStatus.PROCESSING.value,
                attempts=case(
                    (Job.status == JobStatus.PROCESSING.value, Job.attempts + 1),
                    else_=Job.attempts,
                ),
                lock_owner=owner_id,
                lock_expires_at=now + lease,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            db.commit()
            job = db.get(Job, job_id, populate_existing=True)
            logger.info("Claimed job %s type=%s attempts=%s", job.id, job.job_type, job.attempts)
            return job
        logger.debug("Lost claim race for job %s", job_id)

    db.commit()
    return None


def compute_backoff(
    attempts: int,
    base_seconds: int | None = None,
    max_seconds: int | None = None,
) -> timedelta:
    """Exponential backoff: base * 2 ** (attempts - 1), capped."""
    base = settings.JOB_BACKOFF_BASE_SECONDS if base_seconds is None else base_seconds
    cap = settings.JOB_BACKOFF_MAX_SECONDS if max_seconds is None else max_seconds
    exponent = max(attempts - 1, 0)
    return timedelta(seconds=min(base * (2**exponent), cap))


def _owned_processing(job_id: UUID, owner_id: str | None):
    conditions = [Job.id == job_id, Job.status == JobStatus.PROCESSING.value]
    if owner_id:
        conditions.append(Job.lock_owner == owner_id)
    return conditions


def complete(
    db: Session,
    job_id: UUID,
    outcome: dict | None = None,
    *,
    owner_id: str | None = None,
) -> Job | None:
    """
    Mark a processing job succeeded and store its outcome.

    Returns None when the lease was lost (the job was reclaimed or finished elsewhere).
    """
    now = utcnow()
    result = db.execute(
        update(Job)
        .where(*_owned_processing(job_id, owner_id))
        .values(
            status=JobStatus.SUCCEEDED.value,
            result=outcome,
            last_error=None,
            lock_owner=None,
            lock_expires_at=None,
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning("Cannot complete job %s: lease lost", job_id)
        return None
    db.commit()
    return db.get(Job, job_id, populate_existing=True)


def fail(
    db: Session,
    job_id: UUID,
    error: str,
    *,
    retryable: bool,
    owner_id: str | None = None,
    retry_after: int | None = None,
) -> Job | None:
    """
    Record a failed attempt.

    Retryable failures with attempts left go to failed_retryable with a backoff
    (or retry_after seconds, whichever is later). Everything else goes to dead.
    Returns None when the lease was lost.
    """
    now = utcnow()
    job = db.get(Job, job_id, populate_existing=True)
    if job is None or job.status != JobStatus.PROCESSING.value or (
        owner_id and job.lock_owner != owner_id
    ):
        logger.warning("Cannot fail job %s: lease lost", job_id)
        return None

    attempts = job.attempts + 1
    values: dict = {
        "attempts": attempts,
        "last_error": (error or "")[:MAX_ERROR_LENGTH],
        "lock_owner": None,
        "lock_expires_at": None,
        "updated_at": now,
    }
    if retryable and attempts < job.max_attempts:
        delay = compute_backoff(attempts)
        if retry_after:
            delay = max(delay, timedelta(seconds=retry_after))
        values["status"] = JobStatus.FAILED_RETRYABLE.value
        values["not_before"] = now + delay
    else:
        values["status"] = JobStatus.DEAD.value
        values["completed_at"] = now

    result = db.execute(
        update(Job)
        .where(*_owned_processing(job_id, owner_id), Job.attempts == job.attempts)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning("Cannot fail job %s: lease lost", job_id)
        return None
    db.commit()
    job = db.get(Job, job_id, populate_existing=True)
    if job.status == JobStatus.DEAD.value:
        logger.error("Job %s is dead after %s attempt(s)", job.id, job.attempts)
    return job


# =============================================================================
# Queries & retention
# =============================================================================


def get_job(db: Session, job_id: UUID) -> Job | None:
    """Get a job by ID."""
    return db.query(Job).filter(Job.id == job_id).first()


def get_job_by_idempotency_key(db: Session, idempotency_key: str) -> Job | None:
    return db.query(Job).filter(Job.idempotency_key == idempotency_key).first()


def list_jobs(
    db: Session,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    limit: int = 50,
) -> list[Job]:
    """List jobs with optional filters, newest first."""
    query = db.query(Job)
    if status:
        query = query.filter(Job.status == status.value)
    if job_type:
        query = query.filter(Job.job_type == job_type.value)
    return query.order_by(Job.created_at.desc()).limit(limit).all()


def get_queue_stats(db: Session, limit: int = 100) -> dict:
    """Status and type counts over the most recent jobs."""
    rows = (
        db.query(Job.status, Job.job_type)
        .order_by(Job.created_at.desc())
        .limit(limit)
        .all()
    )
    by_status = Counter(status for status, _ in rows)
    by_type = Counter(job_type for _, job_type in rows)
    return {
        "by_status": dict(by_status),
        "by_type": dict(by_type),
        "total": len(rows),
    }


def purge_finished_jobs(db: Session, older_than: timedelta | datetime) -> int:
    """Delete succeeded/dead jobs finished before the cutoff."""
    cutoff = utcnow() - older_than if isinstance(older_than, timedelta) else older_than
    result = db.execute(
        delete(Job)
        .where(
            Job.status.in_([s.value for s in TERMINAL_JOB_STATUSES]),
            func.coalesce(Job.completed_at, Job.updated_at) < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    logger.info("Purged %s finished job(s) older than %s", result.rowcount, cutoff.isoformat())
    return result.rowcount
