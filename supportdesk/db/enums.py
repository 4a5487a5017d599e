"""Enum definitions for application constants."""

from enum import Enum


class JobType(str, Enum):
    """Types of background jobs."""
    MAIL_FETCH = "mail_fetch"
    AI_REPLY = "ai_reply"
    RETURN_SYNC = "return_sync"
    CALL_SYNC = "call_sync"


class JobStatus(str, Enum):
    """
    Status of background jobs.

    pending → processing → succeeded
                         → failed_retryable → processing ...
                         → dead

    succeeded and dead are terminal.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    DEAD = "dead"


TERMINAL_JOB_STATUSES = (JobStatus.SUCCEEDED, JobStatus.DEAD)


class SyncSource(str, Enum):
    """External streams tracked by a sync watermark."""
    MAIL = "mail"
    ORDERS = "orders"
    RETURNS = "returns"
    CALLS = "calls"


class TokenProvider(str, Enum):
    """Providers whose OAuth tokens are cached by the token manager."""
    IKAS = "ikas"


class MailCategory(str, Enum):
    """Keyword-classified mail categories."""
    ORDER_INQUIRY = "ORDER_INQUIRY"
    COMPLAINT = "COMPLAINT"
    RETURN_REQUEST = "RETURN_REQUEST"
    SHIPPING_INQUIRY = "SHIPPING_INQUIRY"
    PRODUCT_QUESTION = "PRODUCT_QUESTION"
    PAYMENT_ISSUE = "PAYMENT_ISSUE"
    GENERAL = "GENERAL"


class ReturnSource(str, Enum):
    """Origin of a return request."""
    IKAS = "ikas"
    PORTAL = "portal"


class ReturnStatus(str, Enum):
    """Operator-driven return workflow status."""
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    IN_TRANSIT = "IN_TRANSIT"
    RECEIVED = "RECEIVED"
    COMPLETED = "COMPLETED"


class RefundStatus(str, Enum):
    """Refund state of a return."""
    PENDING = "PENDING"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class CallDirection(str, Enum):
    """Direction of a phone call."""
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class CallStatus(str, Enum):
    """Outcome of a phone call derived from the CDR."""
    COMPLETED = "COMPLETED"
    NO_ANSWER = "NO_ANSWER"
    FAILED = "FAILED"


# =============================================================================
# Centralized Defaults (keep models, services, migrations in sync)
# =============================================================================

DEFAULT_JOB_STATUS = JobStatus.PENDING

DEFAULT_MAX_ATTEMPTS = {
    JobType.MAIL_FETCH: 3,
    JobType.AI_REPLY: 3,
    JobType.RETURN_SYNC: 5,
    JobType.CALL_SYNC: 5,
}
