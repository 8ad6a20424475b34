"""Order REST API routes.

Routes:
    POST   /api/v1/orders                 — Place an order (caller is the customer)
    GET    /api/v1/orders                 — List orders visible to the caller
    GET    /api/v1/orders/{id}            — Get order details
    PUT    /api/v1/orders/{id}            — Edit order fields
    DELETE /api/v1/orders/{id}            — Soft-delete (cancels the order)
    POST   /api/v1/orders/{id}/accept     — Merchant or driver accepts
    POST   /api/v1/orders/{id}/reject     — Merchant or driver declines
    POST   /api/v1/orders/{id}/cancel     — Customer or admin cancels
    POST   /api/v1/orders/{id}/pickup     — Driver picked the order up
    POST   /api/v1/orders/{id}/transit    — Driver is on the way
    POST   /api/v1/orders/{id}/deliver    — Driver delivered; opens the confirmation window
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.api.deps import get_audit_sink, get_caller, get_db_session
from escrow_ledger.domain.audit import AuditSink
from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import OrderStatus
from escrow_ledger.schemas.common import Page, ReasonRequest
from escrow_ledger.schemas.orders import (
    CreateOrderRequest,
    OrderResponse,
    UpdateOrderRequest,
)
from escrow_ledger.services.order_service import OrderService

router = APIRouter(prefix="/api/v1/orders", tags=["Orders"])


def _service(
    session: AsyncSession = Depends(get_db_session),
    audit: AuditSink = Depends(get_audit_sink),
) -> OrderService:
    return OrderService(session, audit)


@router.post("", response_model=OrderResponse, status_code=201, summary="Place an order")
async def create_order(
    request: CreateOrderRequest,
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> OrderResponse:
    order = await svc.create_order(
        caller,
        order_type=request.order_type,
        total_amount=request.total_amount,
        delivery_address=request.delivery_address,
        pickup_address=request.pickup_address,
        merchant_id=request.merchant_id,
        driver_id=request.driver_id,
        order_data=request.order_data,
    )
    return OrderResponse.model_validate(order)


@router.get("", response_model=Page[OrderResponse], summary="List orders")
async def list_orders(
    status: OrderStatus | None = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> Page[OrderResponse]:
    """Admins see every order; other callers see orders they are a party to."""
    orders, total = await svc.list_orders(caller, status, limit, offset)
    return Page[OrderResponse](
        items=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{order_id}", response_model=OrderResponse, summary="Get order details")
async def get_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.get_order(caller, order_id))


@router.put("/{order_id}", response_model=OrderResponse, summary="Edit an order")
async def update_order(
    order_id: uuid.UUID,
    request: UpdateOrderRequest,
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> OrderResponse:
    order = await svc.update_order(caller, order_id, request.model_dump(exclude_unset=True))
    return OrderResponse.model_validate(order)


@router.delete("/{order_id}", response_model=OrderResponse, summary="Soft-delete an order")
async def delete_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.soft_delete(caller, order_id))


# ---------------------------------------------------------------------------
# Lifecycle actions
# ---------------------------------------------------------------------------


@router.post("/{order_id}/accept", response_model=OrderResponse, summary="Accept an order")
async def accept_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.accept(caller, order_id))


@router.post("/{order_id}/reject", response_model=OrderResponse, summary="Decline an order")
async def reject_order(
    order_id: uuid.UUID,
    request: ReasonRequest | None = None,
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> OrderResponse:
    reason = request.reason if request else None
    return OrderResponse.model_validate(await svc.reject(caller, order_id, reason))


@router.post("/{order_id}/cancel", response_model=OrderResponse, summary="Cancel an order")
async def cancel_order(
    order_id: uuid.UUID,
    request: ReasonRequest | None = None,
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> OrderResponse:
    reason = request.reason if request else None
    return OrderResponse.model_validate(await svc.cancel(caller, order_id, reason))


@router.post("/{order_id}/pickup", response_model=OrderResponse, summary="Mark picked up")
async def pick_up_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.pick_up(caller, order_id))


@router.post("/{order_id}/transit", response_model=OrderResponse, summary="Mark in transit")
async def start_transit(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> OrderResponse:
    return OrderResponse.model_validate(await svc.start_transit(caller, order_id))


@router.post("/{order_id}/deliver", response_model=OrderResponse, summary="Mark delivered")
async def deliver_order(
    order_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: OrderService = Depends(_service),
) -> OrderResponse:
    """Delivery starts the window after which a HELD escrow auto-releases."""
    return OrderResponse.model_validate(await svc.deliver(caller, order_id))
