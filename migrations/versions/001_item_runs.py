"""Item runs table: versioned, append-only discovery audit records.

Revision ID: 001
Revises: (none)
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "item_runs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("item_id", sa.String(255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("query", sa.Text(), nullable=False),
        sa.Column("results_json", JSONB, nullable=False),
        sa.Column("ranked_candidates_json", JSONB, nullable=False),
        sa.Column("trace_text", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("item_id", "version", name="uq_item_runs_item_version"),
    )
    op.create_index("idx_item_runs_item", "item_runs", ["item_id", "version"])


def downgrade() -> None:
    op.drop_index("idx_item_runs_item", table_name="item_runs")
    op.drop_table("item_runs")
