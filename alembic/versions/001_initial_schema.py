"""initial schema - create all tables

Revision ID: 001
Revises: 
Create Date: 2026-10-12 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_STATUS_SQL = "status NOT IN ('confirmed', 'cancelled', 'expired', 'failed')"


def timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    ]


def upgrade() -> None:
    # Create scheduling_requests table (enums as VARCHAR)
    op.create_table(
        'scheduling_requests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('status', sa.String(40), nullable=False, server_default='draft', index=True),
        sa.Column('owner_id', sa.String(36), nullable=False, index=True),
        sa.Column('thread_key', sa.String(255), nullable=False, index=True),
        sa.Column('source_message_id', sa.String(255), nullable=True),
        sa.Column('next_action_type', sa.String(40), nullable=True),
        sa.Column('next_action_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('timezone', sa.String(64), nullable=False, server_default='America/New_York'),
        sa.Column('preferred_channel', sa.String(40), nullable=False, server_default='email'),
        sa.Column('action_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('confirmed_slot_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('confirmed_slot_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('outcome_reason', sa.Text(), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        *timestamps(),
    )
    op.create_index('ix_scheduling_requests_due', 'scheduling_requests', ['next_action_at'])
    # At most one live request per conversation thread
    op.create_index(
        'uq_scheduling_requests_live_thread',
        'scheduling_requests',
        ['thread_key'],
        unique=True,
        postgresql_where=sa.text(LIVE_STATUS_SQL),
    )

    # Create scheduling_attendees table
    op.create_table(
        'scheduling_attendees',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('request_id', sa.String(36), sa.ForeignKey('scheduling_requests.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('side', sa.String(40), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(32), nullable=True),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('calendar_identity', sa.String(255), nullable=True),
        sa.Column('is_primary_contact', sa.Boolean(), nullable=False, server_default=sa.false()),
        *timestamps(),
    )

    # Create scheduling_actions table (append-only log)
    op.create_table(
        'scheduling_actions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('request_id', sa.String(36), sa.ForeignKey('scheduling_requests.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('action_type', sa.String(40), nullable=False),
        sa.Column('actor', sa.String(40), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('channel', sa.String(40), nullable=True),
        sa.Column('external_message_id', sa.String(255), nullable=True),
        sa.Column('provider_message_id', sa.String(255), nullable=True, index=True),
        sa.Column('draft_id', sa.String(36), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('request_id', 'sequence', name='uq_scheduling_actions_sequence'),
        sa.UniqueConstraint('request_id', 'external_message_id', name='uq_scheduling_actions_external_message'),
    )

    # Create scheduling_drafts table
    op.create_table(
        'scheduling_drafts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('request_id', sa.String(36), sa.ForeignKey('scheduling_requests.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('subject', sa.String(500), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('slots', sa.JSON(), nullable=False),
        sa.Column('is_live', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('edited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('superseded_at', sa.DateTime(timezone=True), nullable=True),
        *timestamps(),
    )

    # Create conversation_mappings table
    op.create_table(
        'conversation_mappings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('conversation_id', sa.String(512), nullable=False),
        sa.Column('thread_key', sa.String(255), nullable=False, index=True),
        *timestamps(),
        sa.UniqueConstraint('provider', 'conversation_id', name='uq_conversation_mappings_provider_conversation'),
    )

    # Create scheduling_postmortems table
    op.create_table(
        'scheduling_postmortems',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('request_id', sa.String(36), sa.ForeignKey('scheduling_requests.id', ondelete='CASCADE'), nullable=False, unique=True, index=True),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('total_actions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('inbound_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('outbound_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('follow_up_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('exchanges_by_channel', sa.JSON(), nullable=False),
        sa.Column('channels_used', sa.JSON(), nullable=False),
        sa.Column('fallback_used', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('time_to_outcome_seconds', sa.Float(), nullable=True),
        sa.Column('mean_gap_seconds', sa.Float(), nullable=True),
        sa.Column('max_gap_seconds', sa.Float(), nullable=True),
        sa.Column('timeline', sa.JSON(), nullable=False),
        sa.Column('efficiency_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('key_insight', sa.Text(), nullable=True),
        *timestamps(),
    )

    # Create webhooks table (auth_type and backoff as VARCHAR)
    op.create_table(
        'webhooks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('auth_type', sa.String(40), nullable=False, server_default='hmac'),
        sa.Column('secret_key', sa.String(255), nullable=True),
        sa.Column('auth_value', sa.Text(), nullable=True),
        sa.Column('events', sa.JSON(), nullable=False),
        sa.Column('custom_headers', sa.JSON(), nullable=False),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('retry_delay_seconds', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('backoff', sa.String(40), nullable=False, server_default='fixed'),
        sa.Column('timeout_seconds', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('auto_disable_after_failures', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('disabled_reason', sa.Text(), nullable=True),
        sa.Column('last_triggered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_success_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_failure_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(36), nullable=True),
        *timestamps(),
    )

    # Create webhook_deliveries table
    op.create_table(
        'webhook_deliveries',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('webhook_id', sa.String(36), sa.ForeignKey('webhooks.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('event_id', sa.String(64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(40), nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *timestamps(),
    )

    # Create webhook_delivery_attempts table
    op.create_table(
        'webhook_delivery_attempts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('delivery_id', sa.String(36), sa.ForeignKey('webhook_deliveries.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('succeeded', sa.Boolean(), nullable=False),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('response_time_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )


def downgrade() -> None:
    op.drop_table('webhook_delivery_attempts')
    op.drop_table('webhook_deliveries')
    op.drop_table('webhooks')
    op.drop_table('scheduling_postmortems')
    op.drop_table('conversation_mappings')
    op.drop_table('scheduling_drafts')
    op.drop_table('scheduling_actions')
    op.drop_table('scheduling_attendees')
    op.drop_index('uq_scheduling_requests_live_thread', table_name='scheduling_requests')
    op.drop_index('ix_scheduling_requests_due', table_name='scheduling_requests')
    op.drop_table('scheduling_requests')
