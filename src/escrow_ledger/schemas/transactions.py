"""Pydantic schemas for the transaction ledger, payments and payouts."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from escrow_ledger.domain.enums import TransactionType, WebhookOutcome

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateTransactionRequest(BaseModel):
    """Request body for recording a money movement. The caller is the owner."""

    model_config = ConfigDict(extra="forbid")

    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)
    net_amount: Decimal | None = Field(
        default=None,
        ge=0,
        max_digits=15,
        decimal_places=2,
        description="Amount after fees; defaults to amount",
    )
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    order_id: uuid.UUID | None = None
    recipient_id: uuid.UUID | None = None
    payment_method: str | None = Field(default=None, max_length=40)
    description: str | None = Field(default=None, max_length=2000)
    metadata: dict[str, Any] | None = Field(
        default=None,
        description="Free-form client data, stored as an opaque metadata entry",
    )


class UpdateTransactionRequest(BaseModel):
    """Edits allowed on a transaction that is not yet settled."""

    model_config = ConfigDict(extra="forbid")

    description: str | None = Field(default=None, max_length=2000)
    payment_method: str | None = Field(default=None, max_length=40)
    payment_gateway_ref: str | None = Field(default=None, max_length=128)
    metadata: dict[str, Any] | None = None


class ConfirmTransactionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    payment_gateway_ref: str | None = Field(default=None, max_length=128)
    paystack_transaction_id: str | None = Field(default=None, max_length=64)


class RefundTransactionRequest(BaseModel):
    """Refund all or part of a completed transaction."""

    model_config = ConfigDict(extra="forbid")

    amount: Decimal | None = Field(
        default=None,
        max_digits=15,
        decimal_places=2,
        description="Defaults to the full original amount",
    )
    reason: str | None = Field(default=None, max_length=2000)


class CreatePayoutRequest(BaseModel):
    """Pay a released escrow out to its payee."""

    model_config = ConfigDict(extra="forbid")

    escrow_id: uuid.UUID


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    transaction_ref: str
    user_id: uuid.UUID
    order_id: uuid.UUID | None
    recipient_id: uuid.UUID | None
    amount: Decimal
    net_amount: Decimal
    currency: str
    type: str
    status: str
    payment_method: str | None
    payment_gateway_ref: str | None
    paystack_transaction_id: str | None
    description: str | None
    metadata: list[dict[str, Any]] = Field(validation_alias="metadata_json")
    initiated_at: datetime
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class RefundResponse(BaseModel):
    """The refunded original and the new REFUND row that credits its owner."""

    original: TransactionResponse
    refund: TransactionResponse


class PayoutResponse(BaseModel):
    """Outcome of starting or retrying a payout.

    `retryable` is True when the gateway gave no verdict (timeout, dropped
    connection or 5xx): the transfer stays PENDING and may be retried under the same reference.
    """

    transaction: TransactionResponse
    escrow_id: uuid.UUID
    transfer_code: str | None = None
    retryable: bool = False


class VerifyPaymentResponse(BaseModel):
    reference: str
    gateway_status: str | None
    outcome: WebhookOutcome | None = Field(
        default=None,
        description="How the gateway's answer was applied; None while still pending",
    )
    transaction: TransactionResponse | None = None


class ReconcileResponse(BaseModel):
    """Result of one reconciliation pass."""

    examined: int
    escrows_created: int
    orders_confirmed: int
    needs_refund: list[str] = Field(
        default_factory=list,
        description="References of captured payments whose order cannot hold an escrow",
    )
