"""Dispatch outbox marker and persisted quiet-hours catch-ups

Revision ID: 002_dispatch_outbox_and_deferrals
Revises: 001_initial_alert_engine
Create Date: 2026-10-19

Changes:
- alerts.dispatched_at: set when the delivery jobs of an alert are created;
  NULL rows are picked up again by the dispatcher sweep
- deferred_evaluations: quiet-hours catch-ups with a lease for the consumer
  that runs them
"""
from alembic import op
import sqlalchemy as sa

from alert_engine.models.types import JSONDocument


# revision identifiers, used by Alembic.
revision = '002_dispatch_outbox_and_deferrals'
down_revision = '001_initial_alert_engine'
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table('alerts') as batch_op:
        batch_op.add_column(sa.Column('dispatched_at', sa.DateTime(), nullable=True))
        batch_op.create_index('ix_alerts_dispatched_at', ['dispatched_at'])

    # Alerts that existed before the marker were dispatched by the old code path
    op.execute("UPDATE alerts SET dispatched_at = created_at")

    op.create_table(
        'deferred_evaluations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'user_id', sa.Integer(),
            sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('condition', JSONDocument, nullable=False),
        sa.Column('tiers', JSONDocument, nullable=False),
        sa.Column('run_at', sa.DateTime(), nullable=False),
        sa.Column('lease_owner', sa.String(100), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_deferred_evaluations_user_id', 'deferred_evaluations', ['user_id'])
    op.create_index('ix_deferred_evaluations_due', 'deferred_evaluations', ['run_at'])


def downgrade() -> None:
    op.drop_table('deferred_evaluations')
    with op.batch_alter_table('alerts') as batch_op:
        batch_op.drop_index('ix_alerts_dispatched_at')
        batch_op.drop_column('dispatched_at')
