"""create daily_unique_users and metric_snapshots tables

Revision ID: 20260105_audience
Revises:
Create Date: 2026-01-05 09:00:00

Tables owned by the metrics engine. The event, user, subscription and
identity link tables belong to other services and are not created here.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = '20260105_audience'
down_revision = None
branch_labels = None
depends_on = None


def _common_columns() -> list:
    return [
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    """Create snapshot tables."""
    op.create_table(
        'daily_unique_users',
        *_common_columns(),
        sa.Column('metric_date', sa.Date(), nullable=False, comment='UTC metric day'),
        sa.Column(
            'segment',
            sa.String(length=32),
            nullable=False,
            comment='all, product, app_opened, reach, grimoire'
        ),
        sa.Column(
            'user_ids',
            postgresql.ARRAY(sa.Text()),
            server_default=sa.text("'{}'::text[]"),
            nullable=False,
            comment='Distinct canonical identities'
        ),
        sa.Column('user_count', sa.Integer(), server_default='0', nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('metric_date', 'segment', name='uq_daily_unique_users_date_segment'),
    )
    op.create_index('ix_daily_unique_users_id', 'daily_unique_users', ['id'])
    op.create_index('ix_daily_unique_users_created_at', 'daily_unique_users', ['created_at'])
    op.create_index('ix_daily_unique_users_metric_date', 'daily_unique_users', ['metric_date'])
    op.create_index('ix_daily_unique_users_segment', 'daily_unique_users', ['segment'])

    op.create_table(
        'metric_snapshots',
        *_common_columns(),
        sa.Column('period_type', sa.String(length=16), nullable=False, comment='weekly'),
        sa.Column('period_key', sa.String(length=16), nullable=False, comment='ISO week, e.g. 2025-W07'),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('new_signups', sa.Integer(), server_default='0', nullable=False),
        sa.Column('new_trials', sa.Integer(), server_default='0', nullable=False),
        sa.Column('new_paying_subscribers', sa.Integer(), server_default='0', nullable=False),
        sa.Column('wau', sa.Integer(), server_default='0', nullable=False),
        sa.Column('activation_rate', sa.Numeric(precision=7, scale=2), server_default='0', nullable=False),
        sa.Column(
            'trial_to_paid_conversion_rate',
            sa.Numeric(precision=7, scale=2),
            server_default='0',
            nullable=False
        ),
        sa.Column('mrr', sa.Numeric(precision=15, scale=2), server_default='0', nullable=False),
        sa.Column('active_subscribers', sa.Integer(), server_default='0', nullable=False),
        sa.Column('churn_rate', sa.Numeric(precision=7, scale=2), server_default='0', nullable=False),
        sa.Column('d7_retention', sa.Numeric(precision=7, scale=2), server_default='0', nullable=False),
        sa.Column(
            'extras',
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
            comment='Ancillary figures: top_features, activation breakdowns, segment_wau, ...'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('period_type', 'period_key', name='uq_metric_snapshots_period'),
    )
    op.create_index('ix_metric_snapshots_id', 'metric_snapshots', ['id'])
    op.create_index('ix_metric_snapshots_created_at', 'metric_snapshots', ['created_at'])
    op.create_index('ix_metric_snapshots_period_type', 'metric_snapshots', ['period_type'])
    op.create_index('ix_metric_snapshots_period_start', 'metric_snapshots', ['period_start'])


def downgrade() -> None:
    """Drop snapshot tables."""
    op.drop_index('ix_metric_snapshots_period_start', table_name='metric_snapshots')
    op.drop_index('ix_metric_snapshots_period_type', table_name='metric_snapshots')
    op.drop_index('ix_metric_snapshots_created_at', table_name='metric_snapshots')
    op.drop_index('ix_metric_snapshots_id', table_name='metric_snapshots')
    op.drop_table('metric_snapshots')

    op.drop_index('ix_daily_unique_users_segment', table_name='daily_unique_users')
    op.drop_index('ix_daily_unique_users_metric_date', table_name='daily_unique_users')
    op.drop_index('ix_daily_unique_users_created_at', table_name='daily_unique_users')
    op.drop_index('ix_daily_unique_users_id', table_name='daily_unique_users')
    op.drop_table('daily_unique_users')
