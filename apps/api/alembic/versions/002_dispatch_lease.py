"""engagement dispatch lease

Revision ID: 002
Revises: 001
Create Date: 2026-10-17 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One row per client while a process holds its dispatch decisions
    op.create_table(
        'engagement_dispatch_lease',
        sa.Column('client_id', sa.String(64), primary_key=True),
        sa.Column('token', sa.String(36), nullable=False),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('engagement_dispatch_lease')
