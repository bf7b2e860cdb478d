"""Create redeem code and redeem code usage tables.

Revision ID: 20261018_02
Revises: 20261018_01
Create Date: 2026-10-18 14:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_02"
down_revision: Union[str, None] = "20261018_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "redeem_codes",
        sa.Column("code", sa.String(length=32), primary_key=True),
        sa.Column("code_type", sa.String(length=20), nullable=False),
        sa.Column("plan_code", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
        sa.Column("max_uses", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("code_type IN ('STUDENT', 'BUSINESS')", name="ck_redeem_codes_code_type"),
        sa.CheckConstraint(
            "status IN ('ACTIVE', 'USED', 'EXPIRED', 'DISABLED')",
            name="ck_redeem_codes_status",
        ),
        sa.CheckConstraint("current_uses >= 0 AND current_uses <= max_uses", name="ck_redeem_codes_uses"),
    )

    op.create_table(
        "redeem_code_usages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("plan_code", sa.String(length=50), nullable=False),
        sa.Column("credits_granted", sa.Integer(), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("code", "user_id", name="uq_redeem_code_usages_code_user"),
    )
    op.create_index("ix_redeem_code_usages_id", "redeem_code_usages", ["id"])
    op.create_index("ix_redeem_code_usages_code", "redeem_code_usages", ["code"])
    op.create_index("ix_redeem_code_usages_user_id", "redeem_code_usages", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_redeem_code_usages_user_id", table_name="redeem_code_usages")
    op.drop_index("ix_redeem_code_usages_code", table_name="redeem_code_usages")
    op.drop_index("ix_redeem_code_usages_id", table_name="redeem_code_usages")
    op.drop_table("redeem_code_usages")

    op.drop_table("redeem_codes")
