"""Calendar credentials, events and reminders

Revision ID: 0001_calendar_sync
Revises:
Create Date: 2026-10-19 10:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

revision = '0001_calendar_sync'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'calendar_credentials',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('account_email', sa.String(length=255), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('expiry_time', sa.DateTime(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_id', 'provider', name='uq_calendar_credentials_user_provider'),
    )
    op.create_index('ix_calendar_credentials_id', 'calendar_credentials', ['id'])
    op.create_index('ix_calendar_credentials_user_id', 'calendar_credentials', ['user_id'])
    op.create_index('ix_calendar_credentials_is_active', 'calendar_credentials', ['is_active'])

    op.create_table(
        'calendar_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=512), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=False),
        sa.Column('location', sa.String(length=512), nullable=True),
        sa.Column('event_type', sa.String(length=32), nullable=False, server_default='other'),
        sa.Column('provider', sa.String(length=32), nullable=True),
        sa.Column('external_id', sa.String(length=1024), nullable=True),
        sa.Column('sync_hash', sa.String(length=64), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('push_claimed_at', sa.DateTime(), nullable=True),
        sa.Column('source_record_id', sa.String(length=64), nullable=True),
        sa.Column('source_slot', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('provider', 'external_id', name='uq_calendar_events_provider_external_id'),
        sa.UniqueConstraint('user_id', 'source_record_id', 'source_slot', name='uq_calendar_events_source_slot'),
    )
    op.create_index('ix_calendar_events_id', 'calendar_events', ['id'])
    op.create_index('ix_calendar_events_user_id', 'calendar_events', ['user_id'])
    op.create_index('ix_calendar_events_source_record_id', 'calendar_events', ['source_record_id'])
    op.create_index('ix_calendar_events_user_start', 'calendar_events', ['user_id', 'start_time'])

    op.create_table(
        'reminders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('linked_record_id', sa.String(length=64), nullable=False),
        sa.Column('slot', sa.String(length=64), nullable=True),
        sa.Column('title', sa.String(length=512), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('due_at', sa.DateTime(), nullable=False),
        sa.Column('is_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('is_dismissed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('dismissed_at', sa.DateTime(), nullable=True),
        sa.Column(
            'calendar_event_id', sa.Integer(),
            sa.ForeignKey('calendar_events.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_reminders_id', 'reminders', ['id'])
    op.create_index('ix_reminders_user_id', 'reminders', ['user_id'])
    op.create_index('ix_reminders_linked_record_id', 'reminders', ['linked_record_id'])
    op.create_index('ix_reminders_due_at', 'reminders', ['due_at'])
    op.create_index('ix_reminders_due_pending', 'reminders', ['is_sent', 'is_dismissed', 'due_at'])
    op.create_index('ix_reminders_linked_slot', 'reminders', ['user_id', 'linked_record_id', 'slot'])


def downgrade():
    op.drop_table('reminders')
    op.drop_table('calendar_events')
    op.drop_table('calendar_credentials')
