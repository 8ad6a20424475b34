"""Pydantic schemas for the Escrow API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to maintain clean boundaries between the API
and database layers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateEscrowRequest(BaseModel):
    """Request body for placing an order's funds in escrow."""

    model_config = ConfigDict(extra="forbid")

    order_id: uuid.UUID = Field(..., description="Order whose funds are held")
    payer_id: uuid.UUID = Field(..., description="User whose funds are held")
    payee_id: uuid.UUID = Field(..., description="User who receives funds on release")
    amount: Decimal = Field(
        ...,
        gt=0,
        max_digits=15,
        decimal_places=2,
        description="Amount held, in major currency units",
        examples=["5000.00"],
    )
    paystack_escrow_id: str | None = Field(default=None, max_length=128)
    transaction_ref: str | None = Field(
        default=None,
        max_length=128,
        description="Reference of the payment that funded this escrow",
    )


class UpdateEscrowRequest(BaseModel):
    """Admin field edits. Status is never edited directly."""

    model_config = ConfigDict(extra="forbid")

    amount: Decimal | None = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    paystack_escrow_id: str | None = Field(default=None, max_length=128)
    transaction_ref: str | None = Field(default=None, max_length=128)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class EscrowResponse(BaseModel):
    """Response schema for an escrow."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_id: uuid.UUID
    payer_id: uuid.UUID
    payee_id: uuid.UUID
    amount: Decimal
    status: str
    paystack_escrow_id: str | None
    transaction_ref: str | None
    payout_ref: str | None
    created_at: datetime
    updated_at: datetime
    released_at: datetime | None
    cancelled_at: datetime | None


class AutoReleaseResponse(BaseModel):
    """Result of one escrow auto-release sweep."""

    released: list[uuid.UUID]
    count: int
