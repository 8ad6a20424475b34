"""Application services — use case orchestration."""

from escrow_ledger.services.escrow_service import EscrowService
from escrow_ledger.services.ledger_writer import LedgerWriter
from escrow_ledger.services.order_service import OrderService
from escrow_ledger.services.payment_service import PaymentService
from escrow_ledger.services.payout_service import PayoutService
from escrow_ledger.services.reconciliation_service import ReconciliationService
from escrow_ledger.services.settlement import PaymentSettlement
from escrow_ledger.services.transaction_service import TransactionService
from escrow_ledger.services.webhook_service import WebhookReconciler

__all__ = [
    "EscrowService",
    "LedgerWriter",
    "OrderService",
    "PaymentService",
    "PaymentSettlement",
    "PayoutService",
    "ReconciliationService",
    "TransactionService",
    "WebhookReconciler",
]
