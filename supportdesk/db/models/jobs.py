"""Job queue models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Index, Integer, String, Text, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from supportdesk.db.base import Base
from supportdesk.db.enums import DEFAULT_JOB_STATUS
from supportdesk.db.types import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Job(Base):
    """
    Durable unit of deferred integration work.

    The row is the only source of truth for scheduling: a worker owns a job
    only while it holds an unexpired lease (lock_owner + lock_expires_at)
    obtained through job_service.claim_next.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_claimable", "status", "not_before"),
        Index("idx_jobs_lease", "status", "lock_expires_at"),
        Index("idx_jobs_type_created", "job_type", "created_at"),
        Index("uq_job_idempotency", "idempotency_key", unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_JOB_STATUS.value,
        server_default=text(f"'{DEFAULT_JOB_STATUS.value}'"),
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, server_default=text("3"), nullable=False)
    not_before: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    # Lease (set only while processing)
    lock_owner: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # Idempotency key for deduplication of event-driven jobs
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Job {self.id} type={self.job_type} status={self.status} attempts={self.attempts}>"
