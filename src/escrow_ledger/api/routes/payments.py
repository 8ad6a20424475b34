"""Gateway-facing operator routes: charge re-verification and payouts.

Routes:
    POST /api/v1/payments/verify/{reference}   — Ask Paystack about a charge and apply it
    POST /api/v1/payouts                       — Pay a released escrow to its payee (admin)
    POST /api/v1/payouts/{transaction_id}/retry — Resend a timed-out payout (admin)

Payout calls answer 201 when Paystack accepted the transfer and 202 when it
timed out: the payout then stays PENDING and can be retried safely.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Path, Response
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.api.deps import (
    get_audit_sink,
    get_caller,
    get_db_session,
    get_paystack_client,
)
from escrow_ledger.domain.audit import AuditSink
from escrow_ledger.domain.caller import Caller
from escrow_ledger.infrastructure.paystack_client import PaystackClient
from escrow_ledger.schemas.transactions import (
    CreatePayoutRequest,
    PayoutResponse,
    TransactionResponse,
    VerifyPaymentResponse,
)
from escrow_ledger.services.payment_service import PaymentService
from escrow_ledger.services.payout_service import PayoutResult, PayoutService

router = APIRouter(prefix="/api/v1", tags=["Payments"])


def _payout_service(
    session: AsyncSession = Depends(get_db_session),
    audit: AuditSink = Depends(get_audit_sink),
    gateway: PaystackClient = Depends(get_paystack_client),
) -> PayoutService:
    return PayoutService(session, audit, gateway)


def _payout_response(result: PayoutResult, response: Response) -> PayoutResponse:
    response.status_code = 202 if result.retryable else 201
    return PayoutResponse(
        transaction=TransactionResponse.model_validate(result.transaction),
        escrow_id=result.escrow.id,
        transfer_code=result.transfer_code,
        retryable=result.retryable,
    )


@router.post(
    "/payments/verify/{reference}",
    response_model=VerifyPaymentResponse,
    summary="Re-verify a charge with the gateway",
)
async def verify_payment(
    reference: str = Path(..., min_length=1, max_length=128),
    caller: Caller = Depends(get_caller),
    session: AsyncSession = Depends(get_db_session),
    audit: AuditSink = Depends(get_audit_sink),
    gateway: PaystackClient = Depends(get_paystack_client),
) -> VerifyPaymentResponse:
    """Apply the gateway's final answer exactly as a late webhook would."""
    result = await PaymentService(session, audit, gateway).verify_and_apply(caller, reference)
    return VerifyPaymentResponse(
        reference=result.reference,
        gateway_status=result.gateway_status,
        outcome=result.outcome,
        transaction=TransactionResponse.model_validate(result.transaction),
    )


@router.post(
    "/payouts",
    response_model=PayoutResponse,
    status_code=201,
    summary="Pay out a released escrow",
)
async def create_payout(
    request: CreatePayoutRequest,
    response: Response,
    caller: Caller = Depends(get_caller),
    svc: PayoutService = Depends(_payout_service),
) -> PayoutResponse:
    result = await svc.create_payout(caller, request.escrow_id)
    return _payout_response(result, response)


@router.post(
    "/payouts/{transaction_id}/retry",
    response_model=PayoutResponse,
    status_code=201,
    summary="Retry a pending payout",
)
async def retry_payout(
    transaction_id: uuid.UUID,
    response: Response,
    caller: Caller = Depends(get_caller),
    svc: PayoutService = Depends(_payout_service),
) -> PayoutResponse:
    result = await svc.retry_payout(caller, transaction_id)
    return _payout_response(result, response)
