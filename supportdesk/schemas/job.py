"""Pydantic schemas for background jobs and the queue gateway."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# =============================================================================
# Job payloads (validated at enqueue time and again before dispatch)
# =============================================================================


class _PayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class MailFetchPayload(_PayloadBase):
    job_type: Literal["mail_fetch"] = "mail_fetch"
    limit: int | None = Field(default=None, ge=1, le=500)
    folder: str | None = None


class AIReplyPayload(_PayloadBase):
    job_type: Literal["ai_reply"] = "ai_reply"
    mail_id: UUID
    order_number: str | None = Field(default=None, pattern=r"^\d{4,}$")


class ReturnSyncPayload(_PayloadBase):
    job_type: Literal["return_sync"] = "return_sync"
    lookback_days: int | None = Field(default=None, ge=1, le=365)
    full_resync: bool = False


class CallSyncPayload(_PayloadBase):
    job_type: Literal["call_sync"] = "call_sync"
    days: int | None = Field(default=None, ge=1, le=90)


JobPayload = Annotated[
    Union[MailFetchPayload, AIReplyPayload, ReturnSyncPayload, CallSyncPayload],
    Field(discriminator="job_type"),
]

_payload_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_job_payload(job_type: str, payload: dict | None) -> JobPayload:
    """
    Validate a raw payload against the model for job_type.

    Raises pydantic.ValidationError for unknown types or malformed payloads.
    """
    data = dict(payload or {})
    data["job_type"] = job_type
    return _payload_adapter.validate_python(data)


def dump_job_payload(model: JobPayload) -> dict:
    """Normalized JSON form stored in Job.payload (job_type lives on the row)."""
    return model.model_dump(mode="json", exclude={"job_type"}, exclude_none=True)


# =============================================================================
# Job read models
# =============================================================================


class JobRead(BaseModel):
    """Job response schema."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    payload: dict
    status: str
    attempts: int
    max_attempts: int
    not_before: datetime
    last_error: str | None
    result: dict | None
    created_at: datetime
    completed_at: datetime | None


# =============================================================================
# Queue gateway responses
# =============================================================================


class JobErrorItem(BaseModel):
    job_id: UUID
    job_type: str
    error: str


class QueueProcessResponse(BaseModel):
    success: bool = True
    processed: int
    failed: int
    errors: list[JobErrorItem] = []
    enqueued: list[str] = []
    message: str


class QueueStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    by_status: dict[str, int] = Field(default_factory=dict, alias="byStatus")
    by_type: dict[str, int] = Field(default_factory=dict, alias="byType")
    total: int = 0


class QueueStatsResponse(BaseModel):
    success: bool = True
    stats: QueueStats
