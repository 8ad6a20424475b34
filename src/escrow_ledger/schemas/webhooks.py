"""Paystack webhook envelope.

Paystack posts `{"event": "...", "data": {...}}`. Only the fields the ledger
reconciles on are declared; everything else in `data` is kept (extra="allow")
so the raw payload can be stored with the transaction.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from escrow_ledger.domain.enums import WebhookOutcome


class PaystackEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    reference: str = Field(..., min_length=1, max_length=128)
    amount: int | None = Field(default=None, ge=0, description="Minor units (kobo)")
    currency: str | None = None
    status: str | None = None
    id: int | str | None = Field(default=None, description="Gateway transaction id")
    transfer_code: str | None = None


class PaystackWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str = Field(..., min_length=1)
    data: PaystackEventData


class WebhookAck(BaseModel):
    """Body returned to the gateway for every accepted delivery."""

    status: str = "ok"
    outcome: WebhookOutcome
