"""Escrow REST API routes.

Routes:
    POST   /api/v1/escrows                       — Hold funds for an order
    GET    /api/v1/escrows                       — List escrows visible to the caller
    GET    /api/v1/escrows/{id}                  — Get escrow details
    PUT    /api/v1/escrows/{id}                  — Admin field edits
    DELETE /api/v1/escrows/{id}                  — Admin soft-delete of a settled escrow
    POST   /api/v1/escrows/{id}/release          — Release funds to the payee
    POST   /api/v1/escrows/{id}/refund           — Return funds to the payer (admin)
    POST   /api/v1/escrows/{id}/dispute          — Freeze funds pending review
    POST   /api/v1/escrows/{id}/resolve-dispute  — Return a disputed escrow to HELD (admin)
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.api.deps import get_audit_sink, get_caller, get_db_session
from escrow_ledger.domain.audit import AuditSink
from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import EscrowStatus
from escrow_ledger.schemas.common import Page, ReasonRequest
from escrow_ledger.schemas.escrows import (
    CreateEscrowRequest,
    EscrowResponse,
    UpdateEscrowRequest,
)
from escrow_ledger.services.escrow_service import EscrowService

router = APIRouter(prefix="/api/v1/escrows", tags=["Escrows"])


def _service(
    session: AsyncSession = Depends(get_db_session),
    audit: AuditSink = Depends(get_audit_sink),
) -> EscrowService:
    return EscrowService(session, audit)


def _reason(request: ReasonRequest | None) -> str | None:
    return request.reason if request else None


@router.post("", response_model=EscrowResponse, status_code=201, summary="Create an escrow")
async def create_escrow(
    request: CreateEscrowRequest,
    caller: Caller = Depends(get_caller),
    svc: EscrowService = Depends(_service),
) -> EscrowResponse:
    """Hold funds for an order. Fails with 409 if the order already has one."""
    escrow = await svc.create_escrow(
        caller,
        order_id=request.order_id,
        payer_id=request.payer_id,
        payee_id=request.payee_id,
        amount=request.amount,
        paystack_escrow_id=request.paystack_escrow_id,
        transaction_ref=request.transaction_ref,
    )
    return EscrowResponse.model_validate(escrow)


@router.get("", response_model=Page[EscrowResponse], summary="List escrows")
async def list_escrows(
    status: EscrowStatus | None = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
    svc: EscrowService = Depends(_service),
) -> Page[EscrowResponse]:
    escrows, total = await svc.list_escrows(caller, status, limit, offset)
    return Page[EscrowResponse](
        items=[EscrowResponse.model_validate(e) for e in escrows],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{escrow_id}", response_model=EscrowResponse, summary="Get escrow details")
async def get_escrow(
    escrow_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: EscrowService = Depends(_service),
) -> EscrowResponse:
    return EscrowResponse.model_validate(await svc.get_escrow(caller, escrow_id))


@router.put("/{escrow_id}", response_model=EscrowResponse, summary="Edit an escrow")
async def update_escrow(
    escrow_id: uuid.UUID,
    request: UpdateEscrowRequest,
    caller: Caller = Depends(get_caller),
    svc: EscrowService = Depends(_service),
) -> EscrowResponse:
    escrow = await svc.update_escrow(caller, escrow_id, request.model_dump(exclude_unset=True))
    return EscrowResponse.model_validate(escrow)


@router.delete("/{escrow_id}", response_model=EscrowResponse, summary="Soft-delete an escrow")
async def delete_escrow(
    escrow_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    svc: EscrowService = Depends(_service),
) -> EscrowResponse:
    return EscrowResponse.model_validate(await svc.soft_delete(caller, escrow_id))


# ---------------------------------------------------------------------------
# Custody actions
# ---------------------------------------------------------------------------


@router.post("/{escrow_id}/release", response_model=EscrowResponse, summary="Release funds")
async def release_escrow(
    escrow_id: uuid.UUID,
    request: ReasonRequest | None = None,
    caller: Caller = Depends(get_caller),
    svc: EscrowService = Depends(_service),
) -> EscrowResponse:
    """HELD -> RELEASED. Non-admins may only release after delivery."""
    escrow = await svc.release(caller, escrow_id, _reason(request))
    return EscrowResponse.model_validate(escrow)


@router.post("/{escrow_id}/refund", response_model=EscrowResponse, summary="Refund the payer")
async def refund_escrow(
    escrow_id: uuid.UUID,
    request: ReasonRequest | None = None,
    caller: Caller = Depends(get_caller),
    svc: EscrowService = Depends(_service),
) -> EscrowResponse:
    escrow = await svc.refund(caller, escrow_id, _reason(request))
    return EscrowResponse.model_validate(escrow)


@router.post("/{escrow_id}/dispute", response_model=EscrowResponse, summary="Raise a dispute")
async def dispute_escrow(
    escrow_id: uuid.UUID,
    request: ReasonRequest | None = None,
    caller: Caller = Depends(get_caller),
    svc: EscrowService = Depends(_service),
) -> EscrowResponse:
    escrow = await svc.dispute(caller, escrow_id, _reason(request))
    return EscrowResponse.model_validate(escrow)


@router.post(
    "/{escrow_id}/resolve-dispute",
    response_model=EscrowResponse,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    escrow_id: uuid.UUID,
    request: ReasonRequest | None = None,
    caller: Caller = Depends(get_caller),
    svc: EscrowService = Depends(_service),
) -> EscrowResponse:
    escrow = await svc.resolve_dispute(caller, escrow_id, _reason(request))
    return EscrowResponse.model_validate(escrow)
