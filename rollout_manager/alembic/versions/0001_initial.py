"""Initial schema

Revision ID: 0001_initial
Revises: 
Create Date: 2026-10-01 00:00:00

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "rollout_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("namespace", sa.Text(), nullable=False),
        sa.Column("deployment_name", sa.Text(), nullable=False),
        sa.Column("image_ref", sa.Text(), nullable=False),
        sa.Column("state", sa.Text(), nullable=False),
        sa.Column("failed_stage", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.Text(), nullable=True),
        sa.Column("errors", sa.Text(), nullable=False),
        sa.Column("stages", sa.Text(), nullable=False),
        sa.Column("applied", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("started_at", sa.Text(), nullable=False),
        sa.Column("finished_at", sa.Text(), nullable=False),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
    )
    op.create_index(
        "idx_attempts_target", "rollout_attempts", ["namespace", "deployment_name"]
    )
    op.create_index("idx_attempts_state", "rollout_attempts", ["state"])
    op.create_index("idx_attempts_started", "rollout_attempts", ["started_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_attempts_started", table_name="rollout_attempts")
    op.drop_index("idx_attempts_state", table_name="rollout_attempts")
    op.drop_index("idx_attempts_target", table_name="rollout_attempts")
    op.drop_table("rollout_attempts")
