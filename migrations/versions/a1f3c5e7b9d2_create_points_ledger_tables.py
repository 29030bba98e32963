"""create points ledger tables

Revision ID: a1f3c5e7b9d2
Revises:
Create Date: 2026-10-18 10:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "a1f3c5e7b9d2"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _get_inspector():
    conn = op.get_bind()
    return conn, sa.inspect(conn)


def _table_exists(inspector, table_name: str) -> bool:
    try:
        return table_name in inspector.get_table_names()
    except Exception:
        return False


def upgrade() -> None:
    _, inspector = _get_inspector()

    if not _table_exists(inspector, "loyalty_programs"):
        op.create_table(
            "loyalty_programs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("business_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_loyalty_programs_business_id", "loyalty_programs", ["business_id"])

    if not _table_exists(inspector, "enrollments"):
        op.create_table(
            "enrollments",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("customer_id", sa.Integer(), nullable=False),
            sa.Column("program_id", sa.Integer(), nullable=False),
            sa.Column("current_points", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_points_earned", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_points_redeemed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("enrolled_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("customer_id", "program_id", name="uq_enrollments_customer_program"),
            sa.CheckConstraint("current_points >= 0", name="ck_enrollments_points_non_negative"),
        )
        op.create_index("ix_enrollments_customer_id", "enrollments", ["customer_id"])
        op.create_index("ix_enrollments_program_id", "enrollments", ["program_id"])

    if not _table_exists(inspector, "point_transactions"):
        op.create_table(
            "point_transactions",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("customer_id", sa.Integer(), nullable=False),
            sa.Column("business_id", sa.Integer(), nullable=False),
            sa.Column("program_id", sa.Integer(), nullable=False),
            sa.Column("kind", sa.String(length=10), nullable=False),
            sa.Column("points", sa.Integer(), nullable=False),
            sa.Column("reward_id", sa.Integer(), nullable=True),
            sa.Column("source", sa.String(length=50), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=128), nullable=True, unique=True),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("points > 0", name="ck_point_transactions_points_positive"),
        )
        op.create_index("ix_point_transactions_customer_id", "point_transactions", ["customer_id"])
        op.create_index("ix_point_transactions_business_id", "point_transactions", ["business_id"])
        op.create_index("ix_point_transactions_program_id", "point_transactions", ["program_id"])
        op.create_index("ix_point_transactions_created_at", "point_transactions", ["created_at"])

    if not _table_exists(inspector, "customer_notifications"):
        op.create_table(
            "customer_notifications",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("type", sa.String(length=50), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("message", sa.Text(), nullable=False),
            sa.Column("data", sa.JSON(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_customer_notifications_user_id", "customer_notifications", ["user_id"])
        op.create_index("ix_customer_notifications_created_at", "customer_notifications", ["created_at"])


def downgrade() -> None:
    op.drop_table("customer_notifications")
    op.drop_table("point_transactions")
    op.drop_table("enrollments")
    op.drop_table("loyalty_programs")
