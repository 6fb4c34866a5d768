"""Add transaction_locks and transaction_attachments tables.

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0000"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create lock and attach tables."""
    op.create_table(
        "transaction_locks",
        sa.Column("trade_no", sa.String(128), primary_key=True),
        sa.Column(
            "locked_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_transaction_locks_locked_at", "transaction_locks", ["locked_at"])

    op.create_table(
        "transaction_attachments",
        sa.Column("trade_no", sa.String(128), primary_key=True),
        sa.Column("attach", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )


def downgrade() -> None:
    """Drop lock and attach tables."""
    op.drop_table("transaction_attachments")
    op.drop_index("idx_transaction_locks_locked_at", table_name="transaction_locks")
    op.drop_table("transaction_locks")
