import asyncio
from datetime import timedelta

import pytest

from supportdesk import worker
from supportdesk.core.config import settings
from supportdesk.core.exceptions import (
    AuthError,
    PermanentValidationError,
    RateLimitError,
    TransientIntegrationError,
)
from supportdesk.db.enums import JobStatus, JobType
from supportdesk.db.models import Job
from supportdesk.db.types import utcnow
from supportdesk.services import job_service


def test_job_registry_resolves_every_job_type():
    from supportdesk.jobs.registry import resolve_job_handler

    for job_type in JobType:
        assert callable(resolve_job_handler(job_type.value))


def test_job_registry_unknown_raises():
    from supportdesk.jobs.registry import resolve_job_handler

    with pytest.raises(ValueError):
        resolve_job_handler("nope")


def _stub_handlers(monkeypatch, handler):
    monkeypatch.setattr(worker, "resolve_job_handler", lambda _job_type: handler)


@pytest.mark.asyncio
async def test_run_once_completes_jobs_with_outcome(db, worker_context, monkeypatch):
    seen = []

    async def handler(_db, job, ctx):
        seen.append((job.job_type, ctx.owner_id))
        return {"ok": True}

    _stub_handlers(monkeypatch, handler)
    job = job_service.enqueue(db, JobType.CALL_SYNC, {})

    result = await worker.run_once(db, worker_context, max_batch=5)

    assert result.processed == 1
    assert result.failed == 0
    assert seen == [("call_sync", "test-worker")]
    db.refresh(job)
    assert job.status == JobStatus.SUCCEEDED.value
    assert job.result == {"ok": True}


@pytest.mark.asyncio
async def test_run_once_respects_max_batch(db, worker_context, monkeypatch):
    async def handler(_db, _job, _ctx):
        return None

    _stub_handlers(monkeypatch, handler)
    for _ in range(3):
        job_service.enqueue(db, JobType.MAIL_FETCH, {})

    result = await worker.run_once(db, worker_context, max_batch=2)

    assert result.processed == 2
    assert db.query(Job).filter(Job.status == JobStatus.PENDING.value).count() == 1


@pytest.mark.asyncio
async def test_one_failing_job_does_not_abort_batch(db, worker_context, monkeypatch):
    async def handler(_db, job, _ctx):
        if job.job_type == JobType.MAIL_FETCH.value:
            raise TransientIntegrationError("IMAP connection reset")
        return {"total": 0}

    _stub_handlers(monkeypatch, handler)
    failing = job_service.enqueue(db, JobType.MAIL_FETCH, {})
    passing = job_service.enqueue(db, JobType.CALL_SYNC, {})

    result = await worker.run_once(db, worker_context, max_batch=5)

    assert result.processed == 1
    assert result.failed == 1
    assert result.errors[0]["job_id"] == str(failing.id)
    assert result.errors[0]["error"] == "TransientIntegrationError: IMAP connection reset"

    db.refresh(failing)
    db.refresh(passing)
    assert failing.status == JobStatus.FAILED_RETRYABLE.value
    assert failing.attempts == 1
    assert failing.not_before > utcnow()
    assert passing.status == JobStatus.SUCCEEDED.value


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        PermanentValidationError("Mail abc not found"),
        AuthError("iKAS rejected client credentials"),
    ],
)
async def test_non_retryable_errors_go_dead(db, worker_context, monkeypatch, error):
    async def handler(_db, _job, _ctx):
        raise error

    _stub_handlers(monkeypatch, handler)
    job = job_service.enqueue(db, JobType.RETURN_SYNC, {})

    result = await worker.run_once(db, worker_context)

    assert result.failed == 1
    db.refresh(job)
    assert job.status == JobStatus.DEAD.value
    assert job.last_error.startswith(type(error).__name__)


@pytest.mark.asyncio
async def test_timeout_is_retryable(db, worker_context, monkeypatch):
    async def handler(_db, _job, _ctx):
        await asyncio.sleep(5)

    _stub_handlers(monkeypatch, handler)
    monkeypatch.setattr(settings, "JOB_TIMEOUT_SECONDS", 0.05)
    job = job_service.enqueue(db, JobType.CALL_SYNC, {})

    result = await worker.run_once(db, worker_context)

    assert result.failed == 1
    db.refresh(job)
    assert job.status == JobStatus.FAILED_RETRYABLE.value


@pytest.mark.asyncio
async def test_repeated_rate_limits_stop_batch_early(db, worker_context, monkeypatch):
    calls = []

    async def handler(_db, job, _ctx):
        calls.append(job.id)
        raise RateLimitError("iKAS rate limited")

    _stub_handlers(monkeypatch, handler)
    jobs = [job_service.enqueue(db, JobType.RETURN_SYNC, {}) for _ in range(3)]
    before = utcnow()

    result = await worker.run_once(db, worker_context, max_batch=10)

    assert result.stopped_early is True
    assert result.failed == 2
    assert len(calls) == 2

    untouched = db.get(Job, jobs[2].id, populate_existing=True)
    assert untouched.status == JobStatus.PENDING.value

    limited = db.get(Job, jobs[0].id, populate_existing=True)
    assert limited.status == JobStatus.FAILED_RETRYABLE.value
    assert limited.not_before >= before + timedelta(seconds=settings.RATE_LIMIT_RETRY_SECONDS)


@pytest.mark.asyncio
async def test_corrupt_stored_payload_goes_dead(db, worker_context):
    job = Job(job_type=JobType.MAIL_FETCH.value, payload={"limit": "lots"}, max_attempts=3, not_before=utcnow())
    db.add(job)
    db.commit()

    result = await worker.run_once(db, worker_context)

    assert result.failed == 1
    db.refresh(job)
    assert job.status == JobStatus.DEAD.value
    assert "ValidationError" in job.last_error


@pytest.mark.asyncio
async def test_unknown_stored_job_type_goes_dead(db, worker_context):
    job = Job(job_type="fax_sync", payload={}, max_attempts=3, not_before=utcnow())
    db.add(job)
    db.commit()

    result = await worker.run_once(db, worker_context)

    assert result.failed == 1
    db.refresh(job)
    assert job.status == JobStatus.DEAD.value
