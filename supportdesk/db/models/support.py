"""Support desk entities reconciled from external providers."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from supportdesk.db.base import Base
from supportdesk.db.enums import RefundStatus, ReturnStatus
from supportdesk.db.types import utcnow


class Customer(Base):
    """Customer keyed by normalized email."""

    __tablename__ = "customers"
    __table_args__ = (Index("idx_customers_phone", "phone"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)

    # Sync-owned
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    provider_customer_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Operator-owned
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    orders: Mapped[list["Order"]] = relationship(back_populates="customer")


class Order(Base):
    """Commerce order keyed by order number."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    # Sync-owned
    customer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
    )
    provider_order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="TRY")
    provider_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ordered_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Operator-owned
    internal_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    customer: Mapped["Customer | None"] = relationship(back_populates="orders")


class Return(Base):
    """Return request keyed by (order_id, source)."""

    __tablename__ = "returns"
    __table_args__ = (UniqueConstraint("order_id", "source", name="uq_returns_order_source"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    return_number: Mapped[str] = mapped_column(String(60), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(60), nullable=True)

    # Sync-owned
    customer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
    )
    provider_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    total_refund_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    reason_detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Operator-owned
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=ReturnStatus.PENDING_APPROVAL.value
    )
    refund_status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=RefundStatus.PENDING.value
    )
    internal_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    timeline: Mapped[list["ReturnTimelineEvent"]] = relationship(
        back_populates="return_request", order_by="ReturnTimelineEvent.created_at"
    )


class ReturnTimelineEvent(Base):
    """Append-only audit entry for a return."""

    __tablename__ = "return_timeline"
    __table_args__ = (Index("idx_return_timeline_return", "return_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    return_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("returns.id", ondelete="CASCADE"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)  # created, synced
    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str] = mapped_column(String(50), nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    return_request: Mapped["Return"] = relationship(back_populates="timeline")


class Call(Base):
    """Phone call keyed by the telephony provider's call id."""

    __tablename__ = "calls"
    __table_args__ = (Index("idx_calls_started", "call_started_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_call_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)

    # Sync-owned
    customer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
    )
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(30), nullable=True)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    call_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    call_ended_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Operator-owned
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    matched_order_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class Mail(Base):
    """Inbound mail keyed by provider message id."""

    __tablename__ = "mails"
    __table_args__ = (Index("idx_mails_received", "received_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    imap_uid: Mapped[int | None] = mapped_column(Integer, nullable=True)

    from_email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    to_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    in_reply_to: Mapped[str | None] = mapped_column(String(255), nullable=True)
    received_at: Mapped[datetime | None] = mapped_column(nullable=True)

    category: Mapped[str | None] = mapped_column(String(30), nullable=True)
    matched_order_number: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Operator soft delete; a deleted mail is never re-ingested
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # AI draft reply
    ai_draft: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_draft_model: Mapped[str | None] = mapped_column(String(60), nullable=True)
    ai_drafted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)
