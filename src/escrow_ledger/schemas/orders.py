"""Pydantic schemas for the Order API."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CreateOrderRequest(BaseModel):
    """Request body for placing an order. The caller is the customer."""

    model_config = ConfigDict(extra="forbid")

    order_type: str = Field(..., min_length=1, max_length=40, examples=["FOOD"])
    total_amount: Decimal = Field(
        ...,
        gt=0,
        max_digits=15,
        decimal_places=2,
        examples=["5000.00"],
    )
    delivery_address: str = Field(..., min_length=1, max_length=1000)
    pickup_address: str | None = Field(default=None, max_length=1000)
    merchant_id: uuid.UUID | None = None
    driver_id: uuid.UUID | None = None
    order_data: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form order details (items, notes)",
    )


class UpdateOrderRequest(BaseModel):
    """Field edits. Status only changes through the lifecycle actions."""

    model_config = ConfigDict(extra="forbid")

    total_amount: Decimal | None = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    delivery_address: str | None = Field(default=None, min_length=1, max_length=1000)
    pickup_address: str | None = Field(default=None, max_length=1000)
    merchant_id: uuid.UUID | None = None
    driver_id: uuid.UUID | None = None
    order_data: dict[str, Any] | None = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_number: str
    customer_id: uuid.UUID
    merchant_id: uuid.UUID | None
    driver_id: uuid.UUID | None
    order_type: str
    status: str
    total_amount: Decimal
    delivery_address: str
    pickup_address: str | None
    order_data: dict[str, Any]
    accepted_at: datetime | None
    picked_up_at: datetime | None
    delivered_at: datetime | None
    confirmation_deadline: datetime | None
    created_at: datetime
    updated_at: datetime
