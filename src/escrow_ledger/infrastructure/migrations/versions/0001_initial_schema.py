"""Initial schema: users, orders, escrows, transactions, audit_logs.

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def _money() -> sa.Numeric:
    return sa.Numeric(15, 2)


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), nullable=False),
        sa.Column("paystack_recipient_code", sa.String(64), nullable=True, unique=True),
        _ts("created_at", nullable=False),
        _ts("deleted_at"),
        sa.CheckConstraint(
            "role IN ('CONSUMER', 'MERCHANT', 'DRIVER', 'ADMIN')",
            name="ck_users_valid_role",
        ),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("order_number", sa.String(32), nullable=False, unique=True),
        sa.Column("customer_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("merchant_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("driver_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("order_type", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("total_amount", _money(), nullable=False),
        sa.Column("delivery_address", sa.Text(), nullable=False),
        sa.Column("pickup_address", sa.Text(), nullable=True),
        sa.Column("order_data", JSONType, nullable=False),
        _ts("accepted_at"),
        _ts("picked_up_at"),
        _ts("delivered_at"),
        _ts("confirmation_deadline"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("deleted_at"),
        sa.CheckConstraint(
            "status IN ('PENDING', 'CONFIRMED', 'ACCEPTED', 'PICKED_UP', "
            "'IN_TRANSIT', 'DELIVERED', 'CANCELLED')",
            name="ck_orders_valid_status",
        ),
        sa.CheckConstraint("total_amount > 0", name="ck_orders_positive_total"),
    )
    op.create_index("idx_orders_customer", "orders", ["customer_id"])
    op.create_index("idx_orders_merchant", "orders", ["merchant_id"])
    op.create_index("idx_orders_driver", "orders", ["driver_id"])
    op.create_index("idx_orders_status", "orders", ["status"])

    op.create_table(
        "escrows",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("order_id", sa.Uuid(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("payer_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("payee_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", _money(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("paystack_escrow_id", sa.String(128), nullable=True),
        sa.Column("transaction_ref", sa.String(128), nullable=True),
        sa.Column("payout_ref", sa.String(128), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("released_at"),
        _ts("cancelled_at"),
        _ts("deleted_at"),
        sa.CheckConstraint(
            "status IN ('HELD', 'RELEASED', 'REFUNDED', 'DISPUTED')",
            name="ck_escrows_valid_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_escrows_positive_amount"),
    )
    op.create_index(
        "uq_escrows_active_order",
        "escrows",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
        sqlite_where=sa.text("deleted_at IS NULL"),
    )
    op.create_index("idx_escrows_payer", "escrows", ["payer_id"])
    op.create_index("idx_escrows_payee", "escrows", ["payee_id"])
    op.create_index("idx_escrows_status", "escrows", ["status"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("transaction_ref", sa.String(128), nullable=False, unique=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("order_id", sa.Uuid(), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("recipient_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("amount", _money(), nullable=False),
        sa.Column("net_amount", _money(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("payment_method", sa.String(40), nullable=True),
        sa.Column("payment_gateway_ref", sa.String(128), nullable=True),
        sa.Column("paystack_transaction_id", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("metadata", JSONType, nullable=False),
        _ts("initiated_at", nullable=False),
        _ts("completed_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("deleted_at"),
        sa.CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED', 'REFUNDED')",
            name="ck_transactions_valid_status",
        ),
        sa.CheckConstraint(
            "type IN ('PAYMENT', 'DELIVERY_EARNINGS', 'REFUND', 'ESCROW_RELEASE', "
            "'TRANSFER_IN', 'TRANSFER_OUT')",
            name="ck_transactions_valid_type",
        ),
        sa.CheckConstraint("amount > 0", name="ck_transactions_positive_amount"),
        sa.CheckConstraint("net_amount >= 0", name="ck_transactions_nonnegative_net"),
    )
    op.create_index("idx_transactions_user", "transactions", ["user_id"])
    op.create_index("idx_transactions_order", "transactions", ["order_id"])
    op.create_index("idx_transactions_recipient", "transactions", ["recipient_id"])
    op.create_index("idx_transactions_status", "transactions", ["status"])
    op.create_index("idx_transactions_created_at", "transactions", ["created_at"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("action", sa.String(40), nullable=False),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=True),
        sa.Column("details", JSONType, nullable=False),
        _ts("created_at", nullable=False),
    )
    op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
    op.create_index("idx_audit_action", "audit_logs", ["action"])
    op.create_index("idx_audit_created_at", "audit_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("transactions")
    op.drop_table("escrows")
    op.drop_table("orders")
    op.drop_table("users")
