"""create score, distribution and lifetime tracking tables

Revision ID: 3c7d9e1f2a4b
Revises:
Create Date: 2025-09-08 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c7d9e1f2a4b'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'score_entry' not in existing_tables:
        op.create_table(
            'score_entry',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('period_key', sa.String(length=10), nullable=False),
            sa.Column('address', sa.String(length=42), nullable=False),
            sa.Column('alias', sa.String(length=64), nullable=True),
            sa.Column('pfp_url', sa.String(length=512), nullable=True),
            sa.Column('wins', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('draws', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('losses', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('points', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint('period_key', 'address', name='uq_score_entry_period_address'),
        )
        op.create_index('ix_score_entry_period_key', 'score_entry', ['period_key'])
        op.create_index('ix_score_entry_address', 'score_entry', ['address'])

    if 'distribution_batch' not in existing_tables:
        op.create_table(
            'distribution_batch',
            sa.Column('period_key', sa.String(length=10), primary_key=True),
            sa.Column('asset', sa.String(length=16), nullable=False),
            sa.Column('budget', sa.Numeric(18, 6), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        )

    if 'distribution_record' not in existing_tables:
        op.create_table(
            'distribution_record',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('period_key', sa.String(length=10), sa.ForeignKey('distribution_batch.period_key'), nullable=False),
            sa.Column('rank', sa.Integer(), nullable=False),
            sa.Column('address', sa.String(length=42), nullable=False),
            sa.Column('alias', sa.String(length=64), nullable=True),
            sa.Column('weekly_points', sa.Integer(), nullable=False),
            sa.Column('percentage', sa.Numeric(6, 2), nullable=False),
            sa.Column('amount', sa.Numeric(18, 6), nullable=False),
            sa.Column('capped', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('tx_hash', sa.String(length=66), nullable=True),
            sa.Column('tx_status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('distributed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint('period_key', 'rank', name='uq_distribution_record_period_rank'),
            sa.UniqueConstraint('period_key', 'address', name='uq_distribution_record_period_address'),
        )
        op.create_index('ix_distribution_record_period_key', 'distribution_record', ['period_key'])
        op.create_index('ix_distribution_record_tx_status', 'distribution_record', ['tx_status'])

    if 'lifetime_tracking' not in existing_tables:
        op.create_table(
            'lifetime_tracking',
            sa.Column('address', sa.String(length=42), primary_key=True),
            sa.Column('alias', sa.String(length=64), nullable=True),
            sa.Column('lifetime_earned', sa.Numeric(18, 6), nullable=False, server_default='0'),
            sa.Column('is_capped', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('capped_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        )


def downgrade():
    op.drop_table('lifetime_tracking')
    op.drop_index('ix_distribution_record_tx_status', table_name='distribution_record')
    op.drop_index('ix_distribution_record_period_key', table_name='distribution_record')
    op.drop_table('distribution_record')
    op.drop_table('distribution_batch')
    op.drop_index('ix_score_entry_address', table_name='score_entry')
    op.drop_index('ix_score_entry_period_key', table_name='score_entry')
    op.drop_table('score_entry')
