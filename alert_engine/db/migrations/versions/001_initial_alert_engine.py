"""Initial alert engine schema

Revision ID: 001_initial_alert_engine
Revises:
Create Date: 2026-10-19

Creates:
- users: alert recipients
- notification_preferences: per-user channels, thresholds and quiet hours
- suppression_records: shared dedup ledger (unique dedup_key)
- alerts: composed alerts
- delivery_jobs: per-channel deliveries with lease columns for email workers
"""
from alembic import op
import sqlalchemy as sa

from alert_engine.models.types import JSONDocument, UUIDColumn


# revision identifiers, used by Alembic.
revision = '001_initial_alert_engine'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create all alert engine tables."""

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'notification_preferences',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'user_id', sa.Integer(),
            sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('socket_enabled', sa.Boolean(), nullable=False),
        sa.Column('email_enabled', sa.Boolean(), nullable=False),
        sa.Column('thresholds', JSONDocument, nullable=False),
        sa.Column('quiet_hours_start', sa.String(5), nullable=True),
        sa.Column('quiet_hours_end', sa.String(5), nullable=True),
        sa.Column('quiet_hours_timezone', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_notification_preferences_user_id', 'notification_preferences',
        ['user_id'], unique=True,
    )

    op.create_table(
        'suppression_records',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('dedup_key', sa.String(64), nullable=False),
        sa.Column('delivered_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_suppression_records_dedup_key', 'suppression_records',
        ['dedup_key'], unique=True,
    )
    op.create_index('ix_suppression_records_expires_at', 'suppression_records', ['expires_at'])

    op.create_table(
        'alerts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('uuid', UUIDColumn, nullable=False),
        sa.Column(
            'user_id', sa.Integer(),
            sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('kind', sa.String(30), nullable=False),
        sa.Column('tier', sa.Integer(), nullable=False),
        sa.Column('dedup_key', sa.String(64), nullable=False),
        sa.Column('budget_id', sa.String(64), nullable=False),
        sa.Column('category_id', sa.String(64), nullable=True),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('body', sa.String(500), nullable=False),
        sa.Column('template', sa.String(50), nullable=False),
        sa.Column('data', JSONDocument, nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_alerts_uuid', 'alerts', ['uuid'], unique=True)
    op.create_index('ix_alerts_user_id', 'alerts', ['user_id'])
    op.create_index('ix_alerts_dedup_key', 'alerts', ['dedup_key'])
    op.create_index('ix_alerts_budget_id', 'alerts', ['budget_id'])
    op.create_index('ix_alerts_created_at', 'alerts', ['created_at'])
    op.create_index('ix_alerts_user_created', 'alerts', ['user_id', 'created_at'])

    op.create_table(
        'delivery_jobs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('uuid', UUIDColumn, nullable=False),
        sa.Column(
            'alert_id', sa.Integer(),
            sa.ForeignKey('alerts.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('channel', sa.String(10), nullable=False),
        sa.Column('payload', JSONDocument, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=False),
        sa.Column('lease_owner', sa.String(100), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('message_id', sa.String(255), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('resource_id', sa.String(64), nullable=False),
        sa.Column('cancel_requested', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_delivery_jobs_uuid', 'delivery_jobs', ['uuid'], unique=True)
    op.create_index('ix_delivery_jobs_alert_id', 'delivery_jobs', ['alert_id'])
    op.create_index('ix_delivery_jobs_status', 'delivery_jobs', ['status'])
    op.create_index('ix_delivery_jobs_resource_id', 'delivery_jobs', ['resource_id'])
    op.create_index(
        'ix_delivery_jobs_claimable', 'delivery_jobs',
        ['channel', 'status', 'next_attempt_at'],
    )


def downgrade() -> None:
    """Drop all alert engine tables."""
    op.drop_table('delivery_jobs')
    op.drop_table('alerts')
    op.drop_table('suppression_records')
    op.drop_table('notification_preferences')
    op.drop_table('users')
