"""AI-related job handlers."""

from __future__ import annotations

import logging

from supportdesk.core.exceptions import PermanentValidationError
from supportdesk.db.enums import TokenProvider
from supportdesk.db.models import Mail
from supportdesk.db.types import utcnow
from supportdesk.schemas.job import parse_job_payload
from supportdesk.services import settings_service
from supportdesk.services.ai_reply_service import SYSTEM_PROMPT, build_reply_prompt
from supportdesk.services.mail_classifier import extract_order_number

logger = logging.getLogger(__name__)


async def _lookup_order(ctx, order_number: str) -> dict | None:
    async def fetch(token: str):
        return await ctx.commerce.get_order_by_number(token, order_number)

    try:
        return await ctx.tokens.call_with_token(TokenProvider.IKAS, fetch)
    except Exception as exc:
        # Order context is optional; the draft goes ahead without it
        logger.warning(
            "Order %s lookup failed, drafting without order context: %s",
            order_number,
            type(exc).__name__,
        )
        return None


async def process_ai_reply(db, job, ctx) -> dict:
    """Draft a reply for one stored mail and save it on the row."""
    payload = parse_job_payload(job.job_type, job.payload)

    mail = db.query(Mail).filter(Mail.id == payload.mail_id).first()
    if not mail or mail.deleted_at is not None:
        raise PermanentValidationError(f"Mail {payload.mail_id} not found")

    api_key, model = settings_service.get_ai_config(db)
    if not api_key:
        raise PermanentValidationError("OpenAI API key is not configured")

    order_number = (
        payload.order_number
        or mail.matched_order_number
        or extract_order_number(f"{mail.subject}\n{mail.body_text}")
    )
    order = await _lookup_order(ctx, order_number) if order_number else None

    prompt = build_reply_prompt(
        from_email=mail.from_email,
        subject=mail.subject,
        body=mail.body_text,
        category=mail.category,
        knowledge_base=settings_service.get_knowledge_base(db),
        order=order,
    )
    draft = await ctx.ai.complete(prompt, model=model, api_key=api_key, system=SYSTEM_PROMPT)

    mail.ai_draft = draft
    mail.ai_draft_model = model
    mail.ai_drafted_at = utcnow()
    if order_number and not mail.matched_order_number:
        mail.matched_order_number = order_number
    db.commit()

    logger.info("Drafted AI reply for mail %s (order context: %s)", mail.id, bool(order))
    return {
        "mail_id": str(mail.id),
        "order_number": order_number,
        "order_found": order is not None,
        "model": model,
        "draft_length": len(draft),
    }
