"""Create stripe_events, payments and form_submissions

Revision ID: 001
Revises: 
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Event journal: one row per Stripe event id
    op.create_table(
        'stripe_events',
        sa.Column('event_id', sa.String(length=255), primary_key=True),
        sa.Column('type', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='processing'),
        sa.Column('livemode', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created', sa.BigInteger(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint("status IN ('processing', 'succeeded', 'failed')", name='ck_stripe_events_status'),
    )
    op.create_index('ix_stripe_events_type', 'stripe_events', ['type'])

    op.create_table(
        'form_submissions',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('site', sa.String(length=32), nullable=False),
        sa.Column('form_slug', sa.String(length=64), nullable=False),
        sa.Column('submission_key', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='new'),
        sa.Column('email', sa.String(length=254), nullable=True),
        sa.Column('name', sa.String(length=120), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('source_url', sa.Text(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('new', 'pending_payment', 'converted', 'spam', 'error')",
            name='ck_form_submissions_status'
        ),
    )
    op.create_index('ix_form_submissions_site', 'form_submissions', ['site'])
    # Partial unique index: submissions without a key never dedupe
    op.create_index(
        'uq_form_submissions_submission_key',
        'form_submissions',
        ['site', 'form_slug', 'submission_key'],
        unique=True,
        postgresql_where=sa.text('submission_key IS NOT NULL'),
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('site', sa.String(length=32), nullable=False),
        sa.Column('form_submission_id', sa.String(length=64), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('stripe_payment_intent_id', sa.String(length=128), nullable=True),
        sa.Column('stripe_checkout_session_id', sa.String(length=128), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('raw_event', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('amount_cents > 0', name='ck_payments_amount_positive'),
        sa.CheckConstraint('length(currency) = 3 AND currency = lower(currency)', name='ck_payments_currency_lower'),
        sa.CheckConstraint(
            'stripe_payment_intent_id IS NOT NULL OR stripe_checkout_session_id IS NOT NULL',
            name='ck_payments_has_stripe_id'
        ),
        sa.CheckConstraint(
            "status IN ('succeeded', 'failed', 'refunded', 'processing', 'requires_action')",
            name='ck_payments_status'
        ),
    )
    op.create_index('ix_payments_site', 'payments', ['site'])
    op.create_index('ix_payments_form_submission_id', 'payments', ['form_submission_id'])
    op.create_index(
        'uq_payments_stripe_payment_intent_id',
        'payments',
        ['stripe_payment_intent_id'],
        unique=True,
        postgresql_where=sa.text('stripe_payment_intent_id IS NOT NULL'),
    )
    op.create_index(
        'uq_payments_stripe_checkout_session_id',
        'payments',
        ['stripe_checkout_session_id'],
        unique=True,
        postgresql_where=sa.text('stripe_checkout_session_id IS NOT NULL'),
    )


def downgrade() -> None:
    op.drop_index('uq_payments_stripe_checkout_session_id', table_name='payments')
    op.drop_index('uq_payments_stripe_payment_intent_id', table_name='payments')
    op.drop_index('ix_payments_form_submission_id', table_name='payments')
    op.drop_index('ix_payments_site', table_name='payments')
    op.drop_table('payments')

    op.drop_index('uq_form_submissions_submission_key', table_name='form_submissions')
    op.drop_index('ix_form_submissions_site', table_name='form_submissions')
    op.drop_table('form_submissions')

    op.drop_index('ix_stripe_events_type', table_name='stripe_events')
    op.drop_table('stripe_events')
