"""Add system_downtime table for outage intervals.

Revision ID: 002
Revises: 001
Create Date: 2026-10-14
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "system_downtime",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "system_id",
            sa.Integer(),
            sa.ForeignKey("systems.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("down_time", sa.DateTime(), nullable=False),
        sa.Column("up_time", sa.DateTime(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("state_transition", sa.String(50), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_system_downtime_system_id", "system_downtime", ["system_id"])
    op.create_index("ix_system_downtime_down_time", "system_downtime", ["down_time"])
    op.create_index("ix_system_downtime_up_time", "system_downtime", ["up_time"])
    # At most one open interval per system
    op.create_index(
        "ix_system_downtime_one_open",
        "system_downtime",
        ["system_id"],
        unique=True,
        sqlite_where=sa.text("up_time IS NULL"),
        postgresql_where=sa.text("up_time IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_system_downtime_one_open", table_name="system_downtime")
    op.drop_index("ix_system_downtime_up_time", table_name="system_downtime")
    op.drop_index("ix_system_downtime_down_time", table_name="system_downtime")
    op.drop_index("ix_system_downtime_system_id", table_name="system_downtime")
    op.drop_table("system_downtime")
