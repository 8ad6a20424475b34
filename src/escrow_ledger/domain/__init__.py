"""Domain layer — pure business logic with zero framework dependencies."""

from escrow_ledger.domain.audit import AuditEntry, AuditSink, InMemoryAuditSink
from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import (
    AuditAction,
    EntityType,
    EscrowStatus,
    GatewayEvent,
    OrderStatus,
    TransactionStatus,
    TransactionType,
    UserRole,
    WebhookOutcome,
)
from escrow_ledger.domain.exceptions import (
    EscrowLedgerError,
    InvalidStateTransitionError,
    NotFoundError,
)
from escrow_ledger.domain.state_machine import (
    EscrowStateMachine,
    OrderStateMachine,
    TransactionStateMachine,
    validate_transition,
)

__all__ = [
    "AuditEntry",
    "AuditSink",
    "InMemoryAuditSink",
    "Caller",
    "AuditAction",
    "EntityType",
    "EscrowStatus",
    "GatewayEvent",
    "OrderStatus",
    "TransactionStatus",
    "TransactionType",
    "UserRole",
    "WebhookOutcome",
    "EscrowLedgerError",
    "InvalidStateTransitionError",
    "NotFoundError",
    "EscrowStateMachine",
    "OrderStateMachine",
    "TransactionStateMachine",
    "validate_transition",
]
