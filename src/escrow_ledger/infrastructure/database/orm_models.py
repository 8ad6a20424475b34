"""SQLAlchemy 2.0 ORM models for the escrow ledger.

Five tables:
    1. users         — Read-only view of the identity store (existence/role checks).
    2. orders        — Marketplace orders and their delivery lifecycle.
    3. escrows       — Custody of an order's funds between payer and payee.
    4. transactions  — Append-mostly ledger of money movement.
    5. audit_logs    — Insert-only compliance trail.

Design decisions:
    - UUIDs as primary keys.
    - Decimal NUMERIC(15, 2) for every amount (no floating point drift).
    - JSON (JSONB on PostgreSQL) for order data, metadata and audit details.
    - CHECK constraints on status values and positive amounts.
    - transactions.transaction_ref is UNIQUE: it is the idempotency key that
      correlates ledger rows with gateway events.
    - A partial unique index on escrows(order_id) WHERE deleted_at IS NULL
      allows at most one active escrow per order, even under concurrent
      webhook deliveries.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(15, 2, asdecimal=True)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. users
# ---------------------------------------------------------------------------
class User(Base):
    """A marketplace participant. Owned by the identity service."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="CONSUMER")
    paystack_recipient_code: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
        comment="Paystack transfer recipient used for payouts",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "role IN ('CONSUMER', 'MERCHANT', 'DRIVER', 'ADMIN')",
            name="ck_users_valid_role",
        ),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} role={self.role}>"


# ---------------------------------------------------------------------------
# 2. orders
# ---------------------------------------------------------------------------
class Order(Base):
    """A customer order whose delivery gates the release of escrowed funds."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        unique=True,
        comment="Human-readable order number, e.g. ORD12345678042",
    )

    # --- Participants ---
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    merchant_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    driver_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    # --- Details ---
    order_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="Current lifecycle state (guarded by OrderStateMachine)",
    )
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    delivery_address: Mapped[str] = mapped_column(Text, nullable=False)
    pickup_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    # --- Lifecycle timestamps ---
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    picked_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmation_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="After this instant a delivered order's escrow is auto-released",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'CONFIRMED', 'ACCEPTED', 'PICKED_UP', "
            "'IN_TRANSIT', 'DELIVERED', 'CANCELLED')",
            name="ck_orders_valid_status",
        ),
        CheckConstraint("total_amount > 0", name="ck_orders_positive_total"),
        Index("idx_orders_customer", "customer_id"),
        Index("idx_orders_merchant", "merchant_id"),
        Index("idx_orders_driver", "driver_id"),
        Index("idx_orders_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number} status={self.status}>"


# ---------------------------------------------------------------------------
# 3. escrows
# ---------------------------------------------------------------------------
class Escrow(Base):
    """Funds held in custody for an order until release or refund."""

    __tablename__ = "escrows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("orders.id"), nullable=False)
    payer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    payee_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="HELD",
        comment="Custody state (guarded by EscrowStateMachine)",
    )
    paystack_escrow_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transaction_ref: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Reference of the payment transaction that funded this escrow",
    )
    payout_ref: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        comment="Reference of the TRANSFER_OUT paying released funds to the payee",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('HELD', 'RELEASED', 'REFUNDED', 'DISPUTED')",
            name="ck_escrows_valid_status",
        ),
        CheckConstraint("amount > 0", name="ck_escrows_positive_amount"),
        Index(
            "uq_escrows_active_order",
            "order_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("idx_escrows_payer", "payer_id"),
        Index("idx_escrows_payee", "payee_id"),
        Index("idx_escrows_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Escrow id={self.id} order={self.order_id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 4. transactions
# ---------------------------------------------------------------------------
class Transaction(Base):
    """A single money movement.

    Append-mostly: once COMPLETED or REFUNDED, the only permitted change is
    attaching a refund record to `metadata`. Compensation is always a new row.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    transaction_ref: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        comment="Globally unique reference; idempotency key for gateway events",
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    order_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=True
    )
    recipient_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    # --- Financials ---
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        comment="Ledger status (guarded by TransactionStateMachine)",
    )
    payment_method: Mapped[str | None] = mapped_column(String(40), nullable=True)

    # --- Gateway correlation ---
    payment_gateway_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    paystack_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[list[dict[str, Any]]] = mapped_column(
        "metadata",
        JSONType,
        nullable=False,
        default=list,
        comment="Tagged metadata entries, see domain/metadata.py",
    )

    # --- Timestamps ---
    initiated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED', 'REFUNDED')",
            name="ck_transactions_valid_status",
        ),
        CheckConstraint(
            "type IN ('PAYMENT', 'DELIVERY_EARNINGS', 'REFUND', 'ESCROW_RELEASE', "
            "'TRANSFER_IN', 'TRANSFER_OUT')",
            name="ck_transactions_valid_type",
        ),
        CheckConstraint("amount > 0", name="ck_transactions_positive_amount"),
        CheckConstraint("net_amount >= 0", name="ck_transactions_nonnegative_net"),
        Index("idx_transactions_user", "user_id"),
        Index("idx_transactions_order", "order_id"),
        Index("idx_transactions_recipient", "recipient_id"),
        Index("idx_transactions_status", "status"),
        Index("idx_transactions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction id={self.id} ref={self.transaction_ref} "
            f"type={self.type} status={self.status} amount={self.amount}>"
        )


# ---------------------------------------------------------------------------
# 5. audit_logs (Insert-Only)
# ---------------------------------------------------------------------------
class AuditLog(Base):
    """Immutable record of a state-changing action.

    This table is INSERT-ONLY. No UPDATE or DELETE operations are issued at
    the application level.
    """

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    actor: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="SYSTEM",
        comment="User id or SYSTEM",
    )
    action: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} action={self.action} {self.entity_type}:{self.entity_id}>"


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
for _model in (Order, Escrow, Transaction):
    event.listen(_model, "before_update", _set_updated_at)
