"""Payment Service — operator-triggered re-verification of a charge.

When a webhook was lost or rejected, an operator can ask Paystack directly
for the state of a charge. The gateway's answer is turned into the same
event envelope a webhook would carry and applied through the reconciler, so
the outcome is identical to a (late) webhook delivery and just as idempotent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import ValidationError

from escrow_ledger.domain.enums import GatewayEvent
from escrow_ledger.domain.exceptions import (
    ForbiddenError,
    PaymentGatewayError,
    TransactionNotFoundError,
)
from escrow_ledger.infrastructure.database.repositories import TransactionRepository
from escrow_ledger.logging_config import get_logger
from escrow_ledger.schemas.webhooks import PaystackEventData, PaystackWebhookEvent
from escrow_ledger.services.webhook_service import WebhookReconciler

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.config import Settings
    from escrow_ledger.domain.audit import AuditSink
    from escrow_ledger.domain.caller import Caller
    from escrow_ledger.domain.enums import WebhookOutcome
    from escrow_ledger.infrastructure.database.orm_models import Transaction
    from escrow_ledger.infrastructure.paystack_client import PaystackClient

logger = get_logger(__name__)

# Paystack charge status -> event it is equivalent to. Anything else
# (ongoing, pending, processing, queued) is not final yet.
_FINAL_CHARGE_STATUSES = {
    "success": GatewayEvent.CHARGE_SUCCESS,
    "failed": GatewayEvent.CHARGE_FAILED,
    "abandoned": GatewayEvent.CHARGE_FAILED,
}


@dataclass
class VerificationResult:
    reference: str
    gateway_status: str | None
    outcome: WebhookOutcome | None
    transaction: Transaction


class PaymentService:
    """Verifies charges with Paystack and applies the result."""

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditSink,
        gateway: PaystackClient,
        settings: Settings | None = None,
    ) -> None:
        self._gateway = gateway
        self._txn_repo = TransactionRepository(session)
        self._reconciler = WebhookReconciler(session, audit, settings)

    async def verify_and_apply(self, caller: Caller, reference: str) -> VerificationResult:
        """Ask the gateway about `reference` and apply a final answer.

        Raises:
            TransactionNotFoundError: No ledger row carries this reference.
            ForbiddenError: Caller neither owns the transaction nor is admin.
            GatewayOutcomeUnknownError: Gateway gave no verdict (retryable).
            PaymentGatewayError: Gateway rejected the request.
        """
        txn = await self._txn_repo.get_by_reference(reference)
        if txn is None:
            raise TransactionNotFoundError(reference)
        if not (caller.is_admin or caller.is_user(txn.user_id)):
            raise ForbiddenError("Access denied to this transaction")

        data = await self._gateway.verify_transaction(reference)
        gateway_status = str(data.get("status") or "").lower() or None
        event_name = _FINAL_CHARGE_STATUSES.get(gateway_status or "")

        if event_name is None:
            logger.info("payment.verification_pending", reference=reference, gateway_status=gateway_status)
            return VerificationResult(reference, gateway_status, None, txn)

        try:
            event = PaystackWebhookEvent(
                event=event_name.value,
                data=PaystackEventData.model_validate({**data, "reference": reference}),
            )
        except ValidationError as exc:
            raise PaymentGatewayError(f"Malformed verification data for {reference}") from exc

        outcome = await self._reconciler.apply(event, actor=caller)
        logger.info(
            "payment.verified",
            reference=reference,
            gateway_status=gateway_status,
            outcome=outcome.value,
        )
        return VerificationResult(reference, gateway_status, outcome, txn)
