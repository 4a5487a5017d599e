"""SQLAlchemy ORM models."""

from supportdesk.db.models.integrations import AppSetting, ExternalToken, SyncWatermark
from supportdesk.db.models.jobs import Job
from supportdesk.db.models.support import (
    Call,
    Customer,
    Mail,
    Order,
    Return,
    ReturnTimelineEvent,
)

__all__ = [
    "AppSetting",
    "Call",
    "Customer",
    "ExternalToken",
    "Job",
    "Mail",
    "Order",
    "Return",
    "ReturnTimelineEvent",
    "SyncWatermark",
]
