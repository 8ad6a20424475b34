"""Database infrastructure — engine, ORM models, and repositories."""

from escrow_ledger.infrastructure.database.engine import (
    close_db,
    get_async_session,
    init_db,
    session_scope,
)
from escrow_ledger.infrastructure.database.orm_models import (
    AuditLog,
    Base,
    Escrow,
    Order,
    Transaction,
    User,
)
from escrow_ledger.infrastructure.database.repositories import (
    AuditLogRepository,
    EscrowRepository,
    OrderRepository,
    TransactionRepository,
    UserRepository,
)

__all__ = [
    "Base",
    "AuditLog",
    "Escrow",
    "Order",
    "Transaction",
    "User",
    "AuditLogRepository",
    "EscrowRepository",
    "OrderRepository",
    "TransactionRepository",
    "UserRepository",
    "get_async_session",
    "init_db",
    "close_db",
    "session_scope",
]
