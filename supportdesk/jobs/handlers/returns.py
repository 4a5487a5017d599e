"""Commerce return-request sync job handler."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from supportdesk.core.exceptions import IntegrationError, PermanentValidationError
from supportdesk.db.enums import RefundStatus, ReturnSource, ReturnStatus, SyncSource, TokenProvider
from supportdesk.db.models import ReturnTimelineEvent
from supportdesk.db.types import utcnow
from supportdesk.jobs.utils import mask_email
from supportdesk.schemas.job import parse_job_payload
from supportdesk.services import watermark_service
from supportdesk.services.commerce_api import OrderFilter, parse_provider_datetime
from supportdesk.services.reconciliation_service import BatchResult, UpsertResult, reconcile_batch, upsert_by_natural_key
from supportdesk.utils.normalization import normalize_email, normalize_name, normalize_phone

logger = logging.getLogger(__name__)

# Upper bound on pages per run; the watermark picks up the rest next time
MAX_PAGES = 50

RETURN_REASON = "ikas_refund_request"


def _decimal(value) -> Decimal:
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except InvalidOperation as exc:
        raise PermanentValidationError(f"Invalid amount {value!r}") from exc


def _phone_or_none(value: str | None) -> str | None:
    try:
        return normalize_phone(value)
    except ValueError:
        return None


def _apply_refund_order(db, order: dict, created: list[dict]) -> UpsertResult:
    """Upsert customer, order and return for one refund-requested order."""
    order_number = str(order.get("orderNumber") or "").strip()
    if not order_number:
        raise PermanentValidationError("Order without orderNumber")

    customer_data = order.get("customer") or {}
    email = normalize_email(customer_data.get("email"))
    customer_id = None
    if email:
        customer_attrs = {
            "first_name": normalize_name(customer_data.get("firstName")) or "",
            "last_name": normalize_name(customer_data.get("lastName")) or "",
            "provider_customer_id": customer_data.get("id"),
        }
        phone = _phone_or_none(customer_data.get("phone"))
        if phone:
            customer_attrs["phone"] = phone
        customer_id = upsert_by_natural_key(db, "customer", email, customer_attrs).id

    total = _decimal(order.get("totalFinalPrice"))
    order_attrs = {
        "provider_order_id": order.get("id"),
        "total_amount": total,
        "currency": order.get("currencyCode") or "TRY",
        "provider_status": order.get("status"),
        "ordered_at": parse_provider_datetime(order.get("orderedAt")),
    }
    if customer_id:
        order_attrs["customer_id"] = customer_id
    order_result = upsert_by_natural_key(db, "order", order_number, order_attrs)

    package_status = order.get("orderPackageStatus")
    return_attrs = {
        "provider_status": package_status,
        "total_refund_amount": total,
        "reason_detail": f"iKAS'tan otomatik çekildi - Paket Durumu: {package_status}",
    }
    if customer_id:
        return_attrs["customer_id"] = customer_id
    result = upsert_by_natural_key(
        db,
        "return",
        (order_result.id, ReturnSource.IKAS.value),
        return_attrs,
        insert_defaults={
            "return_number": f"IKAS-{order_number}",
            "status": ReturnStatus.PENDING_APPROVAL.value,
            "refund_status": RefundStatus.PENDING.value,
            "reason": RETURN_REASON,
        },
    )

    if result.created:
        db.add(ReturnTimelineEvent(
            return_id=result.id,
            event_type="created",
            description="iKAS'tan otomatik iade talebi oluşturuldu",
        ))
    elif result.changed:
        db.add(ReturnTimelineEvent(
            return_id=result.id,
            event_type="synced",
            description=f"iKAS senkronizasyonu güncelledi: {', '.join(result.changed)}",
        ))
    db.flush()

    if result.created and email:
        name = " ".join(
            p for p in (customer_data.get("firstName"), customer_data.get("lastName")) if p
        )
        created.append({
            "email": email,
            "customer_name": name,
            "return_number": f"IKAS-{order_number}",
            "order_number": order_number,
            "total_amount": str(total),
        })
    return result


async def _notify_created(ctx, created: list[dict]) -> int:
    if not created or not ctx.notifier or not ctx.settings.NOTIFY_CUSTOMERS_ON_RETURN:
        return 0
    sent = 0
    for notice in created:
        try:
            await asyncio.to_thread(ctx.notifier.send, notice["email"], "REQUESTED", notice)
            sent += 1
        except IntegrationError as exc:
            # The return is already committed; a retry would not resend
            logger.warning(
                "Return notification to %s failed: %s",
                mask_email(notice["email"]),
                type(exc).__name__,
            )
    return sent


async def process_return_sync(db, job, ctx) -> dict:
    """
    Pull refund-requested orders from iKAS into returns.

    Payload:
        - lookback_days: window used when no watermark exists
        - full_resync: ignore the watermark and use the lookback window

    Each order is reconciled inside its own savepoint. The returns watermark
    advances to the newest updatedAt seen only when every page was processed
    without record failures.
    """
    payload = parse_job_payload(job.job_type, job.payload)
    now = utcnow()

    watermark = None if payload.full_resync else watermark_service.get_timestamp(db, SyncSource.RETURNS)
    lookback_days = payload.lookback_days or ctx.settings.RETURN_SYNC_LOOKBACK_DAYS
    since = watermark or (now - timedelta(days=lookback_days))
    order_filter = OrderFilter(updated_since=since, page_size=ctx.settings.RETURN_SYNC_PAGE_SIZE)

    totals = BatchResult()
    created_notices: list[dict] = []
    newest: datetime | None = None
    cursor: str | None = None

    for _ in range(MAX_PAGES):
        async def fetch_page(token: str, cursor=cursor):
            return await ctx.commerce.list_orders(token, order_filter, cursor)

        page = await ctx.tokens.call_with_token(TokenProvider.IKAS, fetch_page)
        batch = reconcile_batch(
            db,
            page.items,
            lambda session, order: _apply_refund_order(session, order, created_notices),
            key=lambda order: order.get("orderNumber") or order.get("id") or "?",
        )
        db.commit()

        totals.processed += batch.processed
        totals.created += batch.created
        totals.updated += batch.updated
        totals.failed += batch.failed
        totals.errors.extend(batch.errors)
        for item in page.items:
            updated_at = parse_provider_datetime(item.get("updatedAt"))
            if updated_at and (newest is None or updated_at > newest):
                newest = updated_at

        if not page.next_cursor:
            break
        cursor = page.next_cursor
    else:
        logger.warning("Return sync stopped after %s pages", MAX_PAGES)

    current = watermark_service.get_timestamp(db, SyncSource.RETURNS)
    if totals.failed == 0 and newest and (current is None or newest > current):
        watermark_service.set_timestamp(db, SyncSource.RETURNS, newest)
        current = newest
    elif totals.failed:
        logger.warning("Return sync had %s failed record(s); watermark not advanced", totals.failed)

    notified = await _notify_created(ctx, created_notices)

    logger.info(
        "Return sync: %s synced, %s created, %s updated, %s failed",
        totals.processed,
        totals.created,
        totals.updated,
        totals.failed,
    )
    return {
        "synced": totals.processed,
        "created": totals.created,
        "updated": totals.updated,
        "failed": totals.failed,
        "errors": totals.errors,
        "notified": notified,
        "watermark": current.isoformat() if current else None,
    }
