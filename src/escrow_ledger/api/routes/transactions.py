"""Transaction ledger REST API routes.

Routes:
    POST   /api/v1/transactions                — Record a PENDING money movement
    GET    /api/v1/transactions                — Search the caller's ledger rows
    GET    /api/v1/transactions/{id}           — Get one ledger row
    PUT    /api/v1/transactions/{id}           — Edit an unsettled row
    POST   /api/v1/transactions/{id}/confirm   — Operator confirmation (admin)
    POST   /api/v1/transactions/{id}/refund    — Full or partial refund (admin)
"""

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.api.deps import get_audit_sink, get_caller, get_db_session
from escrow_ledger.domain.audit import AuditSink
from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import TransactionStatus, TransactionType
from escrow_ledger.schemas.common import Page
from escrow_ledger.schemas.transactions import (
    ConfirmTransactionRequest,
    CreateTransactionRequest,
    RefundResponse,
    RefundTransactionRequest,
    TransactionResponse,
    UpdateTransactionRequest,
)
from escrow_ledger.services.transaction_service import TransactionService

router = APIRouter(prefix="/api/v1/transactions", tags=["Transactions"])


def _service(
    session: AsyncSession = Depends(get_db_session),
    audit: AuditSink = Depends(get_audit_sink),
) -> TransactionService:
    return TransactionService(session, audit)


@router.post(
    "",
    response_model=TransactionResponse,
    status_code=201,
    summary="Record a transaction",
)
async def create_transaction(
    request: CreateTransactionRequest,
    caller: Caller = Depends(get_caller),
    svc: TransactionService = Depends(_service),
) -> TransactionResponse:
    """Create a PENDING ledger row with a freshly allocated reference."""
    txn = await svc.create_transaction(
        caller,
        type_=request.type,
        amount=request.amount,
        net_amount=request.net_amount,
        currency=request.currency,
        order_id=request.order_id,
        recipient_id=request.recipient_id,
        payment_method=request.payment_method,
        description=request.description,
        metadata=request.metadata,
    )
    return TransactionResponse.model_validate(txn)


@router.get("", response_model=Page[TransactionResponse], summary="List transactions")
async def list_transactions(
    status: TransactionStatus | None = None,
    type_: TransactionType | None = Query(default=None, alias="type"),
    search: str | None = Query(default=None, max_length=128),
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
    svc: TransactionService = Depends(_service),
) -> Page[TransactionResponse]:
    """`search` matches the reference, description or gateway reference."""
    rows, total = await svc.list_transactions(
        caller,
        status=status,
        type_=type_,
        search=search,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return Page[TransactionResponse](
        items=[TransactionResponse.model_validate(t) for t in rows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get transaction details",
)
async def get_transaction(
    transaction_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: TransactionService = Depends(_service),
) -> TransactionResponse:
    return TransactionResponse.model_validate(await svc.get_transaction(caller, transaction_id))


@router.put(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Edit a transaction",
)
async def update_transaction(
    transaction_id: uuid.UUID,
    request: UpdateTransactionRequest,
    caller: Caller = Depends(get_caller),
    svc: TransactionService = Depends(_service),
) -> TransactionResponse:
    txn = await svc.update_transaction(
        caller, transaction_id, request.model_dump(exclude_unset=True)
    )
    return TransactionResponse.model_validate(txn)


@router.post(
    "/{transaction_id}/confirm",
    response_model=TransactionResponse,
    summary="Confirm a pending transaction",
)
async def confirm_transaction(
    transaction_id: uuid.UUID,
    request: ConfirmTransactionRequest | None = None,
    caller: Caller = Depends(get_caller),
    svc: TransactionService = Depends(_service),
) -> TransactionResponse:
    body = request or ConfirmTransactionRequest()
    txn = await svc.confirm(
        caller,
        transaction_id,
        payment_gateway_ref=body.payment_gateway_ref,
        paystack_transaction_id=body.paystack_transaction_id,
    )
    return TransactionResponse.model_validate(txn)


@router.post(
    "/{transaction_id}/refund",
    response_model=RefundResponse,
    summary="Refund a completed transaction",
)
async def refund_transaction(
    transaction_id: uuid.UUID,
    request: RefundTransactionRequest | None = None,
    caller: Caller = Depends(get_caller),
    svc: TransactionService = Depends(_service),
) -> RefundResponse:
    body = request or RefundTransactionRequest()
    original, refund = await svc.refund_transaction(
        caller, transaction_id, amount=body.amount, reason=body.reason
    )
    return RefundResponse(
        original=TransactionResponse.model_validate(original),
        refund=TransactionResponse.model_validate(refund),
    )
