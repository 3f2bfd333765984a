"""Create ticker_processing_status table.

Revision ID: 001
Revises: 
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'ticker_processing_status',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('ticker', sa.String(), nullable=False),
        sa.Column('process_type', sa.String(), nullable=False),
        sa.Column(
            'status',
            sa.Enum(
                'PENDING', 'PROCESSING', 'COMPLETED', 'PARTIAL', 'ERROR', 'SKIPPED',
                name='ticker_status', native_enum=False, length=16
            ),
            nullable=False,
            server_default='PENDING'
        ),
        sa.Column('has_basic_data', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_historical_data', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_ttm_data', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_external_pro_data', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_success_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.String(), nullable=True),
        sa.Column('error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('ticker', 'process_type', name='uq_ticker_processing_status_ticker_process_type'),
    )
    op.create_index('ix_ticker_processing_status_ticker', 'ticker_processing_status', ['ticker'])
    op.create_index(
        'ix_ticker_processing_status_type_status',
        'ticker_processing_status',
        ['process_type', 'status']
    )
    op.create_index(
        'ix_ticker_processing_status_type_priority',
        'ticker_processing_status',
        ['process_type', 'priority']
    )


def downgrade() -> None:
    op.drop_index('ix_ticker_processing_status_type_priority', table_name='ticker_processing_status')
    op.drop_index('ix_ticker_processing_status_type_status', table_name='ticker_processing_status')
    op.drop_index('ix_ticker_processing_status_ticker', table_name='ticker_processing_status')
    op.drop_table('ticker_processing_status')
