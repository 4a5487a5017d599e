import threading
from datetime import timedelta

import pytest

from supportdesk.core.exceptions import PermanentValidationError
from supportdesk.db.enums import JobStatus, JobType
from supportdesk.db.models import Job
from supportdesk.db.session import SessionLocal
from supportdesk.db.types import utcnow
from supportdesk.services import job_service


def test_enqueue_normalizes_payload_and_defaults(db):
    job = job_service.enqueue(db, JobType.RETURN_SYNC, {"lookback_days": 7})

    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 0
    assert job.max_attempts == 5
    assert job.payload == {"lookback_days": 7, "full_resync": False}


def test_enqueue_rejects_unknown_type(db):
    with pytest.raises(PermanentValidationError):
        job_service.enqueue(db, "fax_sync", {})
    assert db.query(Job).count() == 0


def test_enqueue_rejects_malformed_payload(db):
    with pytest.raises(PermanentValidationError):
        job_service.enqueue(db, JobType.AI_REPLY, {"mail_id": "not-a-uuid"})
    with pytest.raises(PermanentValidationError):
        job_service.enqueue(db, JobType.MAIL_FETCH, {"limit": 10, "unexpected": True})
    assert db.query(Job).count() == 0


@pytest.mark.parametrize("max_attempts", [0, -2])
def test_enqueue_rejects_non_positive_max_attempts(db, max_attempts):
    with pytest.raises(PermanentValidationError):
        job_service.enqueue(db, JobType.CALL_SYNC, {}, max_attempts=max_attempts)
    assert db.query(Job).count() == 0


def test_enqueue_keeps_explicit_max_attempts(db):
    assert job_service.enqueue(db, JobType.CALL_SYNC, {}, max_attempts=1).max_attempts == 1


def test_enqueue_idempotency_key_returns_existing(db):
    first = job_service.enqueue(db, JobType.CALL_SYNC, {}, idempotency_key="calls:2026-10-17")
    second = job_service.enqueue(db, JobType.CALL_SYNC, {}, idempotency_key="calls:2026-10-17")

    assert first.id == second.id
    assert db.query(Job).count() == 1


def test_enqueue_recurring_skips_active_types(db):
    created = job_service.enqueue_recurring_jobs(db, [JobType.MAIL_FETCH.value, JobType.CALL_SYNC.value])
    assert sorted(j.job_type for j in created) == ["call_sync", "mail_fetch"]

    again = job_service.enqueue_recurring_jobs(db, [JobType.MAIL_FETCH.value, JobType.CALL_SYNC.value])
    assert again == []
    assert db.query(Job).count() == 2


def test_claim_next_leases_oldest_due_job(db):
    first = job_service.enqueue(db, JobType.MAIL_FETCH, {})
    job_service.enqueue(db, JobType.CALL_SYNC, {})

    claimed = job_service.claim_next(db, "worker-a")

    assert claimed.id == first.id
    assert claimed.status == JobStatus.PROCESSING.value
    assert claimed.lock_owner == "worker-a"
    assert claimed.lock_expires_at > utcnow()
    assert claimed.attempts == 0


def test_claim_next_skips_jobs_not_yet_due(db):
    job_service.enqueue(db, JobType.MAIL_FETCH, {}, not_before=utcnow() + timedelta(minutes=5))

    assert job_service.claim_next(db, "worker-a") is None


def test_claim_next_single_winner(db):
    job_service.enqueue(db, JobType.MAIL_FETCH, {})

    winner = job_service.claim_next(db, "worker-a")
    loser = job_service.claim_next(db, "worker-b")

    assert winner is not None
    assert loser is None


def test_claim_next_concurrent_workers_single_winner(db):
    job_id = job_service.enqueue(db, JobType.MAIL_FETCH, {}).id
    db.close()

    workers = 4
    barrier = threading.Barrier(workers)
    winners: list[str] = []
    errors: list[Exception] = []

    def claim(owner_id: str):
        session = SessionLocal()
        try:
            barrier.wait()
            claimed = job_service.claim_next(session, owner_id)
            if claimed is not None:
                winners.append(claimed.lock_owner)
        except Exception as exc:
            errors.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=claim, args=(f"worker-{i}",)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert len(winners) == 1
    stored = db.get(Job, job_id)
    assert stored.status == JobStatus.PROCESSING.value
    assert stored.lock_owner == winners[0]
    assert stored.attempts == 0


def test_claim_next_filters_by_job_type(db):
    job_service.enqueue(db, JobType.MAIL_FETCH, {})
    call_job = job_service.enqueue(db, JobType.CALL_SYNC, {})

    claimed = job_service.claim_next(db, "worker-a", job_types=[JobType.CALL_SYNC.value])

    assert claimed.id == call_job.id


def test_expired_lease_is_reclaimed_and_consumes_attempt(db):
    job = job_service.enqueue(db, JobType.MAIL_FETCH, {})
    job_service.claim_next(db, "worker-a", lease_seconds=60)

    later = utcnow() + timedelta(seconds=120)
    reclaimed = job_service.claim_next(db, "worker-b", now=later)

    assert reclaimed.id == job.id
    assert reclaimed.lock_owner == "worker-b"
    assert reclaimed.attempts == 1


def test_expired_lease_without_attempts_left_goes_dead(db):
    job = job_service.enqueue(db, JobType.MAIL_FETCH, {}, max_attempts=1)
    job_service.claim_next(db, "worker-a", lease_seconds=60)

    assert job_service.claim_next(db, "worker-b", now=utcnow() + timedelta(seconds=120)) is None

    db.refresh(job)
    assert job.status == JobStatus.DEAD.value
    assert job.attempts == 1
    assert job.last_error == job_service.LEASE_EXPIRED_ERROR


def test_complete_stores_outcome(db):
    job = job_service.enqueue(db, JobType.CALL_SYNC, {})
    job_service.claim_next(db, "worker-a")

    done = job_service.complete(db, job.id, {"total": 3}, owner_id="worker-a")

    assert done.status == JobStatus.SUCCEEDED.value
    assert done.result == {"total": 3}
    assert done.lock_owner is None
    assert done.completed_at is not None


def test_complete_after_lease_lost_is_rejected(db):
    job = job_service.enqueue(db, JobType.CALL_SYNC, {})
    job_service.claim_next(db, "worker-a", lease_seconds=60)
    job_service.claim_next(db, "worker-b", now=utcnow() + timedelta(seconds=120))

    assert job_service.complete(db, job.id, {"total": 1}, owner_id="worker-a") is None

    db.refresh(job)
    assert job.status == JobStatus.PROCESSING.value
    assert job.lock_owner == "worker-b"


def test_transient_failure_schedules_retry_in_future(db):
    job = job_service.enqueue(db, JobType.RETURN_SYNC, {})
    job_service.claim_next(db, "worker-a")
    before = utcnow()

    failed = job_service.fail(db, job.id, "TransientIntegrationError: 503", retryable=True, owner_id="worker-a")

    assert failed.status == JobStatus.FAILED_RETRYABLE.value
    assert failed.attempts == 1
    assert failed.not_before > before
    assert failed.last_error == "TransientIntegrationError: 503"


def test_retry_after_wins_over_shorter_backoff(db):
    job = job_service.enqueue(db, JobType.RETURN_SYNC, {})
    job_service.claim_next(db, "worker-a")
    before = utcnow()

    failed = job_service.fail(db, job.id, "RateLimitError", retryable=True, owner_id="worker-a", retry_after=900)

    assert failed.not_before >= before + timedelta(seconds=900)


def test_non_retryable_failure_goes_dead(db):
    job = job_service.enqueue(db, JobType.RETURN_SYNC, {})
    job_service.claim_next(db, "worker-a")

    failed = job_service.fail(db, job.id, "AuthError: bad credentials", retryable=False, owner_id="worker-a")

    assert failed.status == JobStatus.DEAD.value
    assert failed.completed_at is not None


def test_attempts_exhausted_goes_dead_once_and_is_never_reclaimed(db):
    job = job_service.enqueue(db, JobType.MAIL_FETCH, {}, max_attempts=2)

    job_service.claim_next(db, "worker-a")
    first = job_service.fail(db, job.id, "boom", retryable=True, owner_id="worker-a")
    assert first.status == JobStatus.FAILED_RETRYABLE.value

    far_future = utcnow() + timedelta(days=1)
    job_service.claim_next(db, "worker-a", now=far_future)
    second = job_service.fail(db, job.id, "boom", retryable=True, owner_id="worker-a")
    assert second.status == JobStatus.DEAD.value
    assert second.attempts == second.max_attempts

    assert job_service.claim_next(db, "worker-a", now=far_future + timedelta(days=1)) is None
    assert job_service.fail(db, job.id, "boom", retryable=True, owner_id="worker-a") is None
    db.refresh(job)
    assert job.attempts == 2


def test_compute_backoff_doubles_and_caps():
    assert job_service.compute_backoff(1, base_seconds=30, max_seconds=3600) == timedelta(seconds=30)
    assert job_service.compute_backoff(2, base_seconds=30, max_seconds=3600) == timedelta(seconds=60)
    assert job_service.compute_backoff(4, base_seconds=30, max_seconds=3600) == timedelta(seconds=240)
    assert job_service.compute_backoff(20, base_seconds=30, max_seconds=3600) == timedelta(seconds=3600)


def test_queue_stats_counts_recent_jobs(db):
    job_service.enqueue(db, JobType.MAIL_FETCH, {})
    job_service.enqueue(db, JobType.CALL_SYNC, {})
    job_service.enqueue(db, JobType.CALL_SYNC, {}, idempotency_key="x")
    job_service.claim_next(db, "worker-a", job_types=[JobType.CALL_SYNC.value])

    stats = job_service.get_queue_stats(db)

    assert stats["total"] == 3
    assert stats["by_type"] == {"mail_fetch": 1, "call_sync": 2}
    assert stats["by_status"]["pending"] == 2
    assert stats["by_status"]["processing"] == 1


def test_purge_finished_jobs_keeps_active(db):
    done = job_service.enqueue(db, JobType.CALL_SYNC, {})
    job_service.claim_next(db, "worker-a")
    job_service.complete(db, done.id, {}, owner_id="worker-a")
    job_service.enqueue(db, JobType.MAIL_FETCH, {})

    deleted = job_service.purge_finished_jobs(db, utcnow() + timedelta(seconds=1))

    assert deleted == 1
    assert [j.job_type for j in db.query(Job).all()] == ["mail_fetch"]
