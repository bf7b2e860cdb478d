"""Create credit account, credit ledger and generation record tables.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18 09:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(length=128), primary_key=True),
        sa.Column("credit_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("plan_code", sa.String(length=50), nullable=False, server_default="FREE"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("entry_type", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="CONFIRMED"),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("reversed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_credit_ledger_user_idempotency"),
        sa.CheckConstraint(
            "entry_type IN ('GRANT', 'DEBIT', 'REFUND', 'HOLD')",
            name="ck_credit_ledger_entry_type",
        ),
        sa.CheckConstraint(
            "status IN ('PENDING', 'CONFIRMED', 'REVERSED')",
            name="ck_credit_ledger_status",
        ),
    )
    op.create_index("ix_credit_ledger_id", "credit_ledger", ["id"])
    op.create_index("ix_credit_ledger_user_id", "credit_ledger", ["user_id"])
    op.create_index("ix_credit_ledger_created_at", "credit_ledger", ["created_at"])

    op.create_table(
        "generation_records",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="generating"),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("provider_task_id", sa.String(length=255), nullable=True),
        sa.Column("provider_status", sa.String(length=50), nullable=True),
        sa.Column("model", sa.String(length=255), nullable=False),
        sa.Column("generation_type", sa.String(length=50), nullable=True),
        sa.Column("prompt", sa.Text(), nullable=True),
        sa.Column("params", sa.JSON(), nullable=False),
        sa.Column("images", sa.JSON(), nullable=False),
        sa.Column("videos", sa.JSON(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("billing_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("credits_charged", sa.Integer(), nullable=True),
        sa.Column("pricing_version", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_generation_records_user_id", "generation_records", ["user_id"])
    op.create_index("ix_generation_records_created_at", "generation_records", ["created_at"])
    op.create_index(
        "ix_generation_records_provider_task",
        "generation_records",
        ["user_id", "provider", "provider_task_id"],
    )
    op.create_index(
        "ix_generation_records_status_created",
        "generation_records",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_generation_records_status_created", table_name="generation_records")
    op.drop_index("ix_generation_records_provider_task", table_name="generation_records")
    op.drop_index("ix_generation_records_created_at", table_name="generation_records")
    op.drop_index("ix_generation_records_user_id", table_name="generation_records")
    op.drop_table("generation_records")

    op.drop_index("ix_credit_ledger_created_at", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_user_id", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_id", table_name="credit_ledger")
    op.drop_table("credit_ledger")

    op.drop_table("credit_accounts")
