"""add reminders, routines, notification queue and push subscriptions

Revision ID: 001_notification_queue
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_notification_queue'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    op.create_table(
        'reminders',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False, server_default='Untitled'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('trigger_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('routine_id', sa.String(64), nullable=True),
        sa.Column('channels', sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index('ix_reminders_owner_id', 'reminders', ['owner_id'])
    op.create_index('ix_reminders_status_trigger', 'reminders', ['status', 'trigger_at'])
    op.create_index('ix_reminders_routine_id', 'reminders', ['routine_id'])

    op.create_table(
        'routines',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False, server_default='Untitled'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('recurrence', sa.JSON(), nullable=False),
        sa.Column('timezone', sa.String(), nullable=False, server_default='UTC'),
        sa.Column('channels', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_generated_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_routines_owner_id', 'routines', ['owner_id'])

    op.create_table(
        'notification_queue',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('reminder_id', sa.String(64), nullable=False),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('routine_id', sa.String(64), nullable=True),
        sa.Column('window_type', sa.String(), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('superseded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('tolerance_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('channel_results', sa.JSON(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('reminder_id', 'window_type', name='uq_notification_queue_reminder_window'),
    )
    op.create_index('ix_notification_queue_status_next_attempt', 'notification_queue', ['status', 'next_attempt_at'])
    op.create_index('ix_notification_queue_routine_id', 'notification_queue', ['routine_id'])

    op.create_table(
        'push_subscriptions',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('endpoint', sa.Text(), nullable=False),
        sa.Column('keys', sa.JSON(), nullable=False),
        sa.Column('user_agent', sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_push_subscriptions_owner_id', 'push_subscriptions', ['owner_id'])

    op.create_table(
        'user_profiles',
        sa.Column('user_id', sa.String(), primary_key=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('phone_number', sa.String(), nullable=True),
        sa.Column('sms_opt_in', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )


def downgrade() -> None:
    op.drop_table('user_profiles')
    op.drop_index('ix_push_subscriptions_owner_id', table_name='push_subscriptions')
    op.drop_table('push_subscriptions')
    op.drop_index('ix_notification_queue_routine_id', table_name='notification_queue')
    op.drop_index('ix_notification_queue_status_next_attempt', table_name='notification_queue')
    op.drop_table('notification_queue')
    op.drop_index('ix_routines_owner_id', table_name='routines')
    op.drop_table('routines')
    op.drop_index('ix_reminders_routine_id', table_name='reminders')
    op.drop_index('ix_reminders_status_trigger', table_name='reminders')
    op.drop_index('ix_reminders_owner_id', table_name='reminders')
    op.drop_table('reminders')
