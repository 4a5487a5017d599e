"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from supportdesk.db.enums import JobType
from supportdesk.jobs.handlers import ai, calls, mail, returns

# handler(db, job, ctx) -> outcome dict stored on the job
JobHandler = Callable[[object, object, object], Awaitable[dict | None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.MAIL_FETCH.value: mail.process_mail_fetch,
    JobType.AI_REPLY.value: ai.process_ai_reply,
    JobType.RETURN_SYNC.value: returns.process_return_sync,
    JobType.CALL_SYNC.value: calls.process_call_sync,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
