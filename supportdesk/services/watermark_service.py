"""Sync watermark service.

A watermark records the last point of an external stream that was fully
committed. Handlers read it before fetching and advance it only after the
batch commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from supportdesk.db.enums import SyncSource
from supportdesk.db.models import SyncWatermark

logger = logging.getLogger(__name__)


def get_cursor(db: Session, source: SyncSource) -> str | None:
    row = db.query(SyncWatermark).filter(SyncWatermark.source == source.value).first()
    return row.cursor if row else None


def set_cursor(db: Session, source: SyncSource, cursor: str, *, commit: bool = True) -> SyncWatermark:
    """Store the cursor for source, creating the row on first use."""
    row = db.query(SyncWatermark).filter(SyncWatermark.source == source.value).first()
    if row is None:
        row = SyncWatermark(source=source.value, cursor=cursor)
        db.add(row)
    else:
        row.cursor = cursor
    if commit:
        db.commit()
    logger.info("Watermark %s advanced to %s", source.value, cursor)
    return row


def get_timestamp(db: Session, source: SyncSource) -> datetime | None:
    """Cursor parsed as an aware UTC datetime."""
    cursor = get_cursor(db, source)
    if not cursor:
        return None
    try:
        value = datetime.fromisoformat(cursor)
    except ValueError:
        logger.warning("Ignoring unparseable %s watermark %r", source.value, cursor)
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def set_timestamp(db: Session, source: SyncSource, value: datetime, *, commit: bool = True) -> SyncWatermark:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return set_cursor(db, source, value.astimezone(timezone.utc).isoformat(), commit=commit)


def get_uid(db: Session, source: SyncSource) -> int:
    """Cursor parsed as an IMAP UID (0 when unset)."""
    cursor = get_cursor(db, source)
    if cursor and cursor.isdigit():
        return int(cursor)
    return 0
