"""Mailbox ingestion job handler."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from supportdesk.core.exceptions import PermanentValidationError
from supportdesk.db.enums import JobType, SyncSource
from supportdesk.db.models import Mail
from supportdesk.db.types import utcnow
from supportdesk.jobs.utils import mask_email
from supportdesk.schemas.job import parse_job_payload
from supportdesk.services import job_service, settings_service, watermark_service
from supportdesk.services.mail_classifier import classify_mail, extract_order_number, is_order_related

logger = logging.getLogger(__name__)

def _list_messages(factory, config, since_uid: int, limit: int):
    with factory(config) as mailbox:
        messages = mailbox.list_unseen(since_uid=since_uid, limit=limit)
        return messages, list(mailbox.skipped_uids)


def _store_message(db, message, config) -> tuple[Mail, bool, bool]:
    """Create or refresh the mail row for one message; returns (mail, created, order_related)."""
    category = classify_mail(message.subject, message.body_text)
    order_number = extract_order_number(f"{message.subject}\n{message.body_text}")

    mail = db.query(Mail).filter(Mail.message_id == message.message_id).first()
    if mail is not None:
        mail.imap_uid = message.uid
        mail.category = category.value
        if order_number and not mail.matched_order_number:
            mail.matched_order_number = order_number
        db.flush()
        return mail, False, False

    mail = Mail(
        message_id=message.message_id,
        imap_uid=message.uid,
        from_email=message.from_email,
        to_email=message.to_email or config.user,
        subject=message.subject,
        body_text=message.body_text,
        body_html=message.body_html,
        in_reply_to=message.in_reply_to,
        received_at=message.received_at or utcnow(),
        category=category.value,
        matched_order_number=order_number,
    )
    db.add(mail)
    db.flush()
    logger.debug("Stored mail %s from %s", mail.id, mask_email(message.from_email))
    return mail, True, is_order_related(category, order_number)


async def process_mail_fetch(db, job, ctx) -> dict:
    """
    Pull new messages from the mailbox into mails.

    Payload:
        - limit: max messages per run (default MAIL_FETCH_LIMIT)
        - folder: IMAP folder override

    Messages are keyed by Message-ID, so a replayed fetch only updates rows.
    Soft-deleted mails are skipped. Each message is stored in its own
    savepoint; a failing message is tallied and the rest of the batch
    proceeds. The UID watermark moves past failed and unparseable messages
    so one bad message cannot stall ingestion. New order-related mails get
    an ai_reply job enqueued in the same transaction as the mail rows and
    the watermark.
    """
    payload = parse_job_payload(job.job_type, job.payload)
    config = settings_service.get_imap_settings(db)
    if payload.folder:
        config = replace(config, folder=payload.folder)
    if not config.is_configured:
        raise PermanentValidationError("IMAP settings are not configured")

    since_uid = watermark_service.get_uid(db, SyncSource.MAIL)
    limit = payload.limit or ctx.settings.MAIL_FETCH_LIMIT

    # imapclient is blocking
    messages, skipped_uids = await asyncio.to_thread(
        _list_messages, ctx.mailbox_factory, config, since_uid, limit
    )
    logger.info(
        "Fetched %s message(s) above uid %s from %s (%s unparseable)",
        len(messages), since_uid, config.folder, len(skipped_uids),
    )

    message_ids = [m.message_id for m in messages]
    deleted_ids = {
        message_id
        for (message_id,) in db.query(Mail.message_id).filter(
            Mail.message_id.in_(message_ids),
            Mail.deleted_at.isnot(None),
        )
    } if message_ids else set()

    created = updated = skipped = failed = 0
    errors: list[dict] = []
    new_mails: list[Mail] = []
    max_uid = max([since_uid, *skipped_uids])

    for message in messages:
        max_uid = max(max_uid, message.uid)
        if message.message_id in deleted_ids:
            skipped += 1
            continue

        try:
            with db.begin_nested():
                mail, was_created, order_related = _store_message(db, message, config)
        except Exception as exc:
            failed += 1
            errors.append({"key": str(message.uid), "error": f"{type(exc).__name__}: {exc}"[:300]})
            logger.warning("Mail uid=%s failed to store: %s", message.uid, type(exc).__name__)
            continue

        if not was_created:
            updated += 1
            continue
        created += 1
        if order_related:
            new_mails.append(mail)

    for mail in new_mails:
        job_payload = {"mail_id": str(mail.id)}
        if mail.matched_order_number:
            job_payload["order_number"] = mail.matched_order_number
        job_service.enqueue(
            db,
            JobType.AI_REPLY,
            job_payload,
            idempotency_key=f"ai_reply:{mail.id}",
            commit=False,
        )

    if max_uid > since_uid:
        watermark_service.set_cursor(db, SyncSource.MAIL, str(max_uid), commit=False)
    db.commit()

    return {
        "fetched": len(messages),
        "created": created,
        "updated": updated,
        "skipped": skipped + len(skipped_uids),
        "failed": failed,
        "errors": errors,
        "ai_reply_jobs": len(new_mails),
    }
