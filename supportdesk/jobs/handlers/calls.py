"""Telephony CDR sync job handler."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from supportdesk.db.enums import CallDirection, CallStatus, SyncSource
from supportdesk.db.models import Customer
from supportdesk.db.types import utcnow
from supportdesk.schemas.job import parse_job_payload
from supportdesk.services import watermark_service
from supportdesk.services.cdr_api import CdrRecord
from supportdesk.services.reconciliation_service import UpsertResult, reconcile_batch, upsert_by_natural_key
from supportdesk.utils.normalization import normalize_phone

logger = logging.getLogger(__name__)


def call_status(record: CdrRecord) -> CallStatus:
    if record.missed and record.disposition == "NO ANSWER":
        return CallStatus.NO_ANSWER
    if record.missed:
        return CallStatus.FAILED
    return CallStatus.COMPLETED


class CustomerPhoneMatcher:
    """Best-effort customer lookup by normalized phone, cached per run."""

    def __init__(self, db):
        self.db = db
        self._cache: dict[str, uuid.UUID | None] = {}

    def match(self, raw_phone: str | None) -> tuple[str | None, uuid.UUID | None]:
        try:
            phone = normalize_phone(raw_phone)
        except ValueError:
            return raw_phone, None
        if not phone:
            return None, None
        if phone not in self._cache:
            row = self.db.query(Customer.id).filter(Customer.phone == phone).first()
            self._cache[phone] = row[0] if row else None
        return phone, self._cache[phone]


def _apply_call(db, record: CdrRecord, matcher: CustomerPhoneMatcher) -> UpsertResult:
    phone, customer_id = matcher.match(record.phone_number)
    attrs = {
        "direction": (CallDirection.INBOUND if record.direction == "in" else CallDirection.OUTBOUND).value,
        "phone_number": phone,
        "duration_seconds": record.billable_seconds,
        "status": call_status(record).value,
        "call_started_at": record.start_time,
        "call_ended_at": record.end_time,
    }
    if customer_id:
        attrs["customer_id"] = customer_id
    return upsert_by_natural_key(db, "call", record.unique_id, attrs)


async def process_call_sync(db, job, ctx) -> dict:
    """
    Pull CDRs for the trailing window into calls.

    The window starts at now - days, or at the calls watermark minus the
    overlap when that is later. The watermark moves to the newest call start
    only when no record failed.
    """
    payload = parse_job_payload(job.job_type, job.payload)
    now = utcnow()
    days = payload.days or ctx.settings.CALL_SYNC_WINDOW_DAYS
    window_start = now - timedelta(days=days)

    watermark = watermark_service.get_timestamp(db, SyncSource.CALLS)
    from_ts = window_start
    if watermark:
        from_ts = max(window_start, watermark - timedelta(minutes=ctx.settings.CALL_SYNC_OVERLAP_MINUTES))

    records = await ctx.cdr.list_calls(from_ts, now)
    matcher = CustomerPhoneMatcher(db)
    batch = reconcile_batch(
        db,
        records,
        lambda session, record: _apply_call(session, record, matcher),
        key=lambda record: record.unique_id,
    )
    db.commit()

    newest = max((r.start_time for r in records if r.start_time), default=None)
    if batch.failed == 0 and newest and (watermark is None or newest > watermark):
        watermark_service.set_timestamp(db, SyncSource.CALLS, newest)

    logger.info(
        "Call sync %s..%s: %s total, %s created, %s updated, %s failed",
        from_ts.isoformat(),
        now.isoformat(),
        batch.processed,
        batch.created,
        batch.updated,
        batch.failed,
    )
    return {
        "total": batch.processed,
        "created": batch.created,
        "updated": batch.updated,
        "failed": batch.failed,
        "errors": batch.errors,
        "window_start": from_ts.isoformat(),
    }
