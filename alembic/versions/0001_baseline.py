"""Baseline migration - job queue, integration state and support desk entities

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-17

Creates every table the queue and its handlers use.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create queue, integration and support desk tables."""

    # ==========================================================================
    # Job queue
    # ==========================================================================
    op.create_table(
        'jobs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('payload', JSONType, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default=sa.text('3')),
        _ts('not_before'),
        sa.Column('lock_owner', sa.String(100), nullable=True),
        _ts('lock_expires_at', nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('result', JSONType, nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
        _ts('completed_at', nullable=True),
    )
    op.create_index('idx_jobs_claimable', 'jobs', ['status', 'not_before'])
    op.create_index('idx_jobs_lease', 'jobs', ['status', 'lock_expires_at'])
    op.create_index('idx_jobs_type_created', 'jobs', ['job_type', 'created_at'])
    op.create_index('uq_job_idempotency', 'jobs', ['idempotency_key'], unique=True)

    # ==========================================================================
    # Integration state
    # ==========================================================================
    op.create_table(
        'external_tokens',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False, unique=True),
        sa.Column('access_token_encrypted', sa.Text(), nullable=False),
        _ts('expires_at'),
        _ts('updated_at'),
    )
    op.create_table(
        'sync_watermarks',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('source', sa.String(30), nullable=False, unique=True),
        sa.Column('cursor', sa.String(255), nullable=False),
        _ts('updated_at'),
    )
    op.create_table(
        'app_settings',
        sa.Column('key', sa.String(100), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        _ts('updated_at'),
    )

    # ==========================================================================
    # Support desk entities
    # ==========================================================================
    op.create_table(
        'customers',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('phone', sa.String(30), nullable=True),
        sa.Column('provider_customer_id', sa.String(100), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('idx_customers_phone', 'customers', ['phone'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('order_number', sa.String(50), nullable=False, unique=True),
        sa.Column('customer_id', sa.Uuid(), sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('provider_order_id', sa.String(100), nullable=True),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(10), nullable=False),
        sa.Column('provider_status', sa.String(50), nullable=True),
        _ts('ordered_at', nullable=True),
        sa.Column('internal_note', sa.Text(), nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
    )

    op.create_table(
        'returns',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('order_id', sa.Uuid(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('return_number', sa.String(60), nullable=False),
        sa.Column('reason', sa.String(60), nullable=True),
        sa.Column('customer_id', sa.Uuid(), sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('provider_status', sa.String(50), nullable=True),
        sa.Column('total_refund_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('reason_detail', sa.Text(), nullable=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('refund_status', sa.String(30), nullable=False),
        sa.Column('internal_note', sa.Text(), nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
        sa.UniqueConstraint('order_id', 'source', name='uq_returns_order_source'),
    )

    op.create_table(
        'return_timeline',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('return_id', sa.Uuid(), sa.ForeignKey('returns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_type', sa.String(30), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('created_by', sa.String(50), nullable=False),
        _ts('created_at'),
    )
    op.create_index('idx_return_timeline_return', 'return_timeline', ['return_id', 'created_at'])

    op.create_table(
        'calls',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('provider_call_id', sa.String(100), nullable=False, unique=True),
        sa.Column('customer_id', sa.Uuid(), sa.ForeignKey('customers.id', ondelete='SET NULL'), nullable=True),
        sa.Column('direction', sa.String(10), nullable=False),
        sa.Column('phone_number', sa.String(30), nullable=True),
        sa.Column('duration_seconds', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        _ts('call_started_at', nullable=True),
        _ts('call_ended_at', nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('matched_order_id', sa.Uuid(), sa.ForeignKey('orders.id', ondelete='SET NULL'), nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('idx_calls_started', 'calls', ['call_started_at'])

    op.create_table(
        'mails',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('message_id', sa.String(255), nullable=False, unique=True),
        sa.Column('imap_uid', sa.Integer(), nullable=True),
        sa.Column('from_email', sa.String(255), nullable=False),
        sa.Column('to_email', sa.String(255), nullable=True),
        sa.Column('subject', sa.Text(), nullable=False),
        sa.Column('body_text', sa.Text(), nullable=False),
        sa.Column('body_html', sa.Text(), nullable=True),
        sa.Column('in_reply_to', sa.String(255), nullable=True),
        _ts('received_at', nullable=True),
        sa.Column('category', sa.String(30), nullable=True),
        sa.Column('matched_order_number', sa.String(50), nullable=True),
        _ts('deleted_at', nullable=True),
        sa.Column('ai_draft', sa.Text(), nullable=True),
        sa.Column('ai_draft_model', sa.String(60), nullable=True),
        _ts('ai_drafted_at', nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('idx_mails_received', 'mails', ['received_at'])


def downgrade() -> None:
    for table in (
        'mails',
        'calls',
        'return_timeline',
        'returns',
        'orders',
        'customers',
        'app_settings',
        'sync_watermarks',
        'external_tokens',
        'jobs',
    ):
        op.drop_table(table)
