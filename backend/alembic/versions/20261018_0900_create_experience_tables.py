"""create experience, payment and analytics tables

Revision ID: 3f9a1c2b7d10
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9a1c2b7d10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create experiences, payment_attempts, manual_payment_claims and analytics_events."""
    op.create_table('experiences',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('experience_id', sa.String(length=50), nullable=False),
        sa.Column('experience_type', sa.String(length=20), nullable=False),
        sa.Column('lifecycle_state', sa.String(length=20), nullable=False),
        sa.Column('content', sa.JSON(), nullable=False),
        sa.Column('amount_due', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('recipient_name', sa.String(length=255), nullable=False),
        sa.Column('recipient_email', sa.String(length=255), nullable=False),
        sa.Column('sender_name', sa.String(length=255), nullable=True),
        sa.Column('sender_email', sa.String(length=255), nullable=True),
        sa.Column('response', sa.String(length=20), nullable=True),
        sa.Column('reply_message', sa.Text(), nullable=True),
        sa.Column('paid_attempt_id', sa.String(length=50), nullable=True),
        sa.Column('delivery_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('responded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('replied_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('experience_id')
    )
    op.create_index('idx_experiences_experience_id', 'experiences', ['experience_id'], unique=False)
    op.create_index('idx_experiences_lifecycle_state', 'experiences', ['lifecycle_state'], unique=False)

    op.create_table('payment_attempts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('attempt_id', sa.String(length=50), nullable=False),
        sa.Column('experience_id', sa.String(length=50), nullable=False),
        sa.Column('gateway', sa.String(length=20), nullable=False),
        sa.Column('gateway_reference', sa.String(length=255), nullable=True),
        sa.Column('gateway_payment_id', sa.String(length=255), nullable=True),
        sa.Column('checkout_url', sa.String(length=1000), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('completion_source', sa.String(length=50), nullable=True),
        sa.Column('error_code', sa.String(length=100), nullable=True),
        sa.Column('error_description', sa.Text(), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['experience_id'], ['experiences.experience_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('attempt_id'),
        sa.UniqueConstraint('gateway_reference')
    )
    op.create_index('idx_payment_attempts_experience', 'payment_attempts', ['experience_id', 'gateway', 'status'], unique=False)
    op.create_index('idx_payment_attempts_reference', 'payment_attempts', ['gateway_reference'], unique=False)
    op.create_index('idx_payment_attempts_payment_id', 'payment_attempts', ['gateway_payment_id'], unique=False)

    op.create_table('manual_payment_claims',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('claim_id', sa.String(length=50), nullable=False),
        sa.Column('experience_id', sa.String(length=50), nullable=False),
        sa.Column('attempt_id', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('payment_method', sa.String(length=20), nullable=False),
        sa.Column('transaction_id', sa.String(length=255), nullable=False),
        sa.Column('screenshot_url', sa.String(length=1000), nullable=True),
        sa.Column('message_content', sa.Text(), nullable=True),
        sa.Column('order_ref', sa.String(length=50), nullable=True),
        sa.Column('approval_token', sa.String(length=255), nullable=False),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reviewed', sa.Boolean(), nullable=False),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['experience_id'], ['experiences.experience_id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['attempt_id'], ['payment_attempts.attempt_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('claim_id'),
        sa.UniqueConstraint('approval_token')
    )
    op.create_index('idx_manual_claims_experience', 'manual_payment_claims', ['experience_id'], unique=False)
    op.create_index('idx_manual_claims_token', 'manual_payment_claims', ['approval_token'], unique=False)

    op.create_table('analytics_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=50), nullable=False),
        sa.Column('experience_id', sa.String(length=50), nullable=False),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('event_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id')
    )
    op.create_index('idx_analytics_events_experience', 'analytics_events', ['experience_id', 'created_at'], unique=False)
    op.create_index('idx_analytics_events_type', 'analytics_events', ['event_type'], unique=False)


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('idx_analytics_events_type', table_name='analytics_events')
    op.drop_index('idx_analytics_events_experience', table_name='analytics_events')
    op.drop_table('analytics_events')
    op.drop_index('idx_manual_claims_token', table_name='manual_payment_claims')
    op.drop_index('idx_manual_claims_experience', table_name='manual_payment_claims')
    op.drop_table('manual_payment_claims')
    op.drop_index('idx_payment_attempts_payment_id', table_name='payment_attempts')
    op.drop_index('idx_payment_attempts_reference', table_name='payment_attempts')
    op.drop_index('idx_payment_attempts_experience', table_name='payment_attempts')
    op.drop_table('payment_attempts')
    op.drop_index('idx_experiences_lifecycle_state', table_name='experiences')
    op.drop_index('idx_experiences_experience_id', table_name='experiences')
    op.drop_table('experiences')
