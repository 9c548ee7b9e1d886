"""Call signal and call log tables

Revision ID: 001
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Append-only signaling rows
    op.create_table(
        'call_signals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('call_id', sa.String(), nullable=False),
        sa.Column('sender_id', sa.String(), nullable=False),
        sa.Column('signal_type', sa.String(), nullable=False),
        sa.Column('signal_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_call_signals_id'), 'call_signals', ['id'], unique=False)
    op.create_index(op.f('ix_call_signals_call_id'), 'call_signals', ['call_id'], unique=False)

    # Call history
    op.create_table(
        'call_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('call_id', sa.String(), nullable=False),
        sa.Column('caller_id', sa.String(), nullable=False),
        sa.Column('receiver_id', sa.String(), nullable=True),
        sa.Column('call_type', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('duration', sa.Integer(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_call_logs_id'), 'call_logs', ['id'], unique=False)
    op.create_index(op.f('ix_call_logs_call_id'), 'call_logs', ['call_id'], unique=False)
    op.create_index(op.f('ix_call_logs_caller_id'), 'call_logs', ['caller_id'], unique=False)
    op.create_index(op.f('ix_call_logs_receiver_id'), 'call_logs', ['receiver_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_call_logs_receiver_id'), table_name='call_logs')
    op.drop_index(op.f('ix_call_logs_caller_id'), table_name='call_logs')
    op.drop_index(op.f('ix_call_logs_call_id'), table_name='call_logs')
    op.drop_index(op.f('ix_call_logs_id'), table_name='call_logs')
    op.drop_table('call_logs')
    op.drop_index(op.f('ix_call_signals_call_id'), table_name='call_signals')
    op.drop_index(op.f('ix_call_signals_id'), table_name='call_signals')
    op.drop_table('call_signals')
