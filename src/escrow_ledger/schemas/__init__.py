"""Pydantic API schemas."""

from escrow_ledger.schemas.common import (
    AuditEntryResponse,
    ErrorResponse,
    HealthResponse,
    Page,
    ReasonRequest,
)
from escrow_ledger.schemas.escrows import (
    AutoReleaseResponse,
    CreateEscrowRequest,
    EscrowResponse,
    UpdateEscrowRequest,
)
from escrow_ledger.schemas.orders import (
    CreateOrderRequest,
    OrderResponse,
    UpdateOrderRequest,
)
from escrow_ledger.schemas.transactions import (
    ConfirmTransactionRequest,
    CreatePayoutRequest,
    CreateTransactionRequest,
    PayoutResponse,
    ReconcileResponse,
    RefundResponse,
    RefundTransactionRequest,
    TransactionResponse,
    UpdateTransactionRequest,
    VerifyPaymentResponse,
)
from escrow_ledger.schemas.webhooks import (
    PaystackEventData,
    PaystackWebhookEvent,
    WebhookAck,
)

__all__ = [
    "AuditEntryResponse",
    "AutoReleaseResponse",
    "ConfirmTransactionRequest",
    "CreateEscrowRequest",
    "CreateOrderRequest",
    "CreatePayoutRequest",
    "CreateTransactionRequest",
    "ErrorResponse",
    "EscrowResponse",
    "HealthResponse",
    "OrderResponse",
    "Page",
    "PaystackEventData",
    "PaystackWebhookEvent",
    "PayoutResponse",
    "ReasonRequest",
    "ReconcileResponse",
    "RefundResponse",
    "RefundTransactionRequest",
    "TransactionResponse",
    "UpdateEscrowRequest",
    "UpdateOrderRequest",
    "VerifyPaymentResponse",
    "WebhookAck",
]
