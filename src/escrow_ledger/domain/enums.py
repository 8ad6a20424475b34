"""Domain enumerations for the escrow ledger.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class UserRole(enum.StrEnum):
    """Roles supplied by the identity provider for the calling user.

    SYSTEM is never presented by a client; it is the actor for webhook
    reconciliation and background sweeps.
    """

    CONSUMER = "CONSUMER"
    MERCHANT = "MERCHANT"
    DRIVER = "DRIVER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class OrderStatus(enum.StrEnum):
    """Delivery lifecycle of an order. See domain/state_machine.py."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ACCEPTED = "ACCEPTED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class EscrowStatus(enum.StrEnum):
    """Custody states of an escrow hold.

    RELEASED and REFUNDED are terminal and mutually exclusive.
    """

    HELD = "HELD"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"


class TransactionStatus(enum.StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class TransactionType(enum.StrEnum):
    """Kinds of money movement recorded in the ledger.

    The value doubles as the reference prefix source, see
    TransactionType.reference_prefix.
    """

    PAYMENT = "PAYMENT"
    DELIVERY_EARNINGS = "DELIVERY_EARNINGS"
    REFUND = "REFUND"
    ESCROW_RELEASE = "ESCROW_RELEASE"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"

    @property
    def reference_prefix(self) -> str:
        return _REFERENCE_PREFIXES[self]


_REFERENCE_PREFIXES = {
    TransactionType.PAYMENT: "TXN",
    TransactionType.DELIVERY_EARNINGS: "ERN",
    TransactionType.REFUND: "REF",
    TransactionType.ESCROW_RELEASE: "ESC_REL",
    TransactionType.TRANSFER_IN: "TRF_IN",
    TransactionType.TRANSFER_OUT: "TRF",
}


class EntityType(enum.StrEnum):
    """Entity kinds referenced by audit entries."""

    ORDER = "ORDER"
    ESCROW = "ESCROW"
    TRANSACTION = "TRANSACTION"
    WEBHOOK = "WEBHOOK"


class AuditAction(enum.StrEnum):
    """Action codes written to the audit log.

    Every state-changing operation MUST produce exactly one entry.
    """

    # Orders
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_UPDATED = "ORDER_UPDATED"
    ORDER_DELETED = "ORDER_DELETED"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    ORDER_ACCEPTED = "ORDER_ACCEPTED"
    ORDER_REJECTED = "ORDER_REJECTED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_PICKED_UP = "ORDER_PICKED_UP"
    ORDER_IN_TRANSIT = "ORDER_IN_TRANSIT"
    ORDER_DELIVERED = "ORDER_DELIVERED"

    # Escrows
    ESCROW_CREATED = "ESCROW_CREATED"
    ESCROW_UPDATED = "ESCROW_UPDATED"
    ESCROW_RELEASED = "ESCROW_RELEASED"
    ESCROW_REFUNDED = "ESCROW_REFUNDED"
    ESCROW_DISPUTED = "ESCROW_DISPUTED"
    ESCROW_DISPUTE_RESOLVED = "ESCROW_DISPUTE_RESOLVED"
    ESCROW_DELETED = "ESCROW_DELETED"

    # Transactions
    TRANSACTION_CREATED = "TRANSACTION_CREATED"
    TRANSACTION_UPDATED = "TRANSACTION_UPDATED"
    TRANSACTION_CONFIRMED = "TRANSACTION_CONFIRMED"
    TRANSACTION_REFUNDED = "TRANSACTION_REFUNDED"
    PAYOUT_INITIATED = "PAYOUT_INITIATED"
    PAYOUT_PENDING = "PAYOUT_PENDING"

    # Webhooks
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    TRANSFER_SUCCESS = "TRANSFER_SUCCESS"
    TRANSFER_FAILURE = "TRANSFER_FAILURE"
    TRANSFER_REVERSED = "TRANSFER_REVERSED"
    WEBHOOK_UNMATCHED = "WEBHOOK_UNMATCHED"
    WEBHOOK_IGNORED = "WEBHOOK_IGNORED"


class GatewayEvent(enum.StrEnum):
    """Paystack webhook event names handled by the reconciler."""

    CHARGE_SUCCESS = "charge.success"
    CHARGE_FAILED = "charge.failed"
    TRANSFER_SUCCESS = "transfer.success"
    TRANSFER_FAILED = "transfer.failed"
    TRANSFER_REVERSED = "transfer.reversed"


class WebhookOutcome(enum.StrEnum):
    """Result of applying one webhook delivery.

    Every outcome is acknowledged to the gateway with HTTP 200.
    """

    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    UNMATCHED = "unmatched"
    AMOUNT_MISMATCH = "amount_mismatch"
    IGNORED = "ignored"
    DUPLICATE_DELIVERY = "duplicate_delivery"
