"""add agents and card_records tables

Revision ID: e1f2a3b4c5d6
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'e1f2a3b4c5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- agents (maintained by the admin dashboard) ---
    op.create_table(
        'agents',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('external_id', sa.String(length=64), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=False),
        sa.Column('center', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False,
                  server_default='active'),
        sa.Column('date_added', sa.DateTime(timezone=True),
                  server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id'),
    )

    # --- card_records (append-only) ---
    op.create_table(
        'card_records',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('national_id', sa.String(length=14), nullable=False),
        sa.Column('full_name', sa.Text(), nullable=False),
        sa.Column('submitter_external_id', sa.String(length=64), nullable=False),
        sa.Column('submitter_display_name', sa.String(length=255), nullable=False),
        sa.Column('center', sa.String(length=32), nullable=False),
        sa.Column('inserted_at', sa.DateTime(timezone=True),
                  server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        # Serializes concurrent submissions of the same card
        sa.UniqueConstraint('national_id'),
    )
    op.create_index('idx_card_records_center', 'card_records', ['center'])
    op.create_index('idx_card_records_inserted_at', 'card_records', ['inserted_at'])


def downgrade() -> None:
    op.drop_index('idx_card_records_inserted_at', table_name='card_records')
    op.drop_index('idx_card_records_center', table_name='card_records')
    op.drop_table('card_records')
    op.drop_table('agents')
