"""create_background_tasks

Revision ID: 4f2a9c1d7e30
Revises:
Create Date: 2026-10-18 09:12:44.153207

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4f2a9c1d7e30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

json_type = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    """Create the background task table and its claim/listing/cleanup indexes"""
    op.create_table(
        'background_tasks',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('type', sa.String(length=100), nullable=False),
        sa.Column('payload', json_type, nullable=False),
        sa.Column('workspace_id', sa.String(length=100), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('priority', sa.String(length=20), nullable=False, server_default='normal'),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('retries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('timeout_ms', sa.Integer(), nullable=False, server_default='300000'),
        sa.Column('result', json_type, nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_background_tasks_claim', 'background_tasks', ['status', 'scheduled_for'])
    op.create_index('ix_background_tasks_workspace', 'background_tasks', ['workspace_id', 'created_at'])
    op.create_index('ix_background_tasks_cleanup', 'background_tasks', ['status', 'updated_at'])


def downgrade() -> None:
    """Drop the background task table"""
    op.drop_index('ix_background_tasks_cleanup', table_name='background_tasks')
    op.drop_index('ix_background_tasks_workspace', table_name='background_tasks')
    op.drop_index('ix_background_tasks_claim', table_name='background_tasks')
    op.drop_table('background_tasks')
