"""Create cache_storage table for the durable cache tier.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create cache_storage and its sweep/warming indexes."""
    op.create_table(
        'cache_storage',
        sa.Column('cache_key', sa.String(255), primary_key=True),
        sa.Column('data', sa.Text, nullable=False),
        sa.Column('compressed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('service_type', sa.String(50), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('access_count', sa.Integer, nullable=False, server_default='1'),
        sa.Column('last_accessed', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('data_size', sa.Integer, nullable=False, server_default='0'),
        sa.Column('cost_saved', sa.Float, nullable=False, server_default='0'),
    )

    # expiry sweep
    op.create_index('ix_cache_storage_expires_at', 'cache_storage', ['expires_at'])
    # warming scan
    op.create_index('ix_cache_storage_access_count', 'cache_storage', ['access_count'])
    op.create_index('ix_cache_storage_service_type', 'cache_storage', ['service_type'])


def downgrade() -> None:
    """Drop cache_storage."""
    op.drop_index('ix_cache_storage_service_type', table_name='cache_storage')
    op.drop_index('ix_cache_storage_access_count', table_name='cache_storage')
    op.drop_index('ix_cache_storage_expires_at', table_name='cache_storage')
    op.drop_table('cache_storage')
