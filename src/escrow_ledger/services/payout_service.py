"""Payout Service — pays released escrows out to the payee via Paystack.

A payout is a TRANSFER_OUT ledger row. The row is written PENDING and
committed before the gateway is called, so a crash or timeout mid-call leaves
a visible, retryable record instead of an unknown outcome. The row only
becomes COMPLETED when the transfer.success webhook arrives.

At most one live payout exists per escrow: escrows.payout_ref is claimed
with a conditional update that only succeeds when no payout is attached or
the attached one has failed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from escrow_ledger.domain.enums import (
    AuditAction,
    EntityType,
    EscrowStatus,
    TransactionStatus,
    TransactionType,
)
from escrow_ledger.domain.exceptions import (
    EscrowNotFoundError,
    ForbiddenError,
    GatewayOutcomeUnknownError,
    GatewayTimeoutError,
    InputValidationError,
    InvalidStateTransitionError,
    PaymentGatewayError,
    PayoutAlreadyInitiatedError,
    TransactionNotFoundError,
    UserNotFoundError,
)
from escrow_ledger.domain.metadata import PayoutEntry, append_metadata, find_entries
from escrow_ledger.infrastructure.database.repositories import (
    EscrowRepository,
    TransactionRepository,
    UserRepository,
)
from escrow_ledger.logging_config import get_logger
from escrow_ledger.services.base import ServiceBase
from escrow_ledger.services.ledger_writer import LedgerWriter

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.config import Settings
    from escrow_ledger.domain.audit import AuditSink
    from escrow_ledger.domain.caller import Caller
    from escrow_ledger.infrastructure.database.orm_models import Escrow, Transaction
    from escrow_ledger.infrastructure.paystack_client import PaystackClient

logger = get_logger(__name__)

_LIVE_STATUSES = (TransactionStatus.PENDING, TransactionStatus.COMPLETED)


@dataclass
class PayoutResult:
    transaction: Transaction
    escrow: Escrow
    transfer_code: str | None = None
    retryable: bool = False


class PayoutService(ServiceBase):
    """Initiates and retries escrow payouts."""

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditSink,
        gateway: PaystackClient,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(session, audit, settings)
        self._gateway = gateway
        self._escrow_repo = EscrowRepository(session)
        self._txn_repo = TransactionRepository(session)
        self._user_repo = UserRepository(session)
        self._ledger = LedgerWriter(session, self._settings)

    async def create_payout(self, caller: Caller, escrow_id: uuid.UUID) -> PayoutResult:
        """Start paying a RELEASED escrow to its payee.

        Raises:
            ForbiddenError: Caller is not an admin.
            InvalidStateTransitionError: Escrow is not RELEASED.
            PayoutAlreadyInitiatedError: A pending or completed payout exists.
            InputValidationError: Payee has no transfer recipient code.
            PaymentGatewayError: Paystack explicitly rejected the transfer. An
                unanswered call is returned as `retryable` instead.
        """
        if not caller.is_admin:
            raise ForbiddenError("Only an admin can initiate a payout")

        escrow = await self._escrow_repo.get_active(escrow_id)
        if escrow is None:
            raise EscrowNotFoundError(str(escrow_id))
        if escrow.status != EscrowStatus.RELEASED:
            raise InvalidStateTransitionError("escrow", escrow.status, "payout")

        previous_ref = None
        if escrow.payout_ref:
            existing = await self._txn_repo.get_by_reference(escrow.payout_ref)
            if existing is not None and existing.status in _LIVE_STATUSES:
                raise PayoutAlreadyInitiatedError(str(escrow.id))
            previous_ref = escrow.payout_ref

        recipient_code = await self._recipient_code(escrow)

        txn = await self._ledger.append(
            type_=TransactionType.TRANSFER_OUT,
            status=TransactionStatus.PENDING,
            user_id=escrow.payee_id,
            recipient_id=escrow.payee_id,
            order_id=escrow.order_id,
            amount=escrow.amount,
            payment_method="paystack_transfer",
            description="Escrow payout",
            metadata=[PayoutEntry(escrow_id=escrow.id, recipient_code=recipient_code)],
        )
        if not await self._escrow_repo.claim_payout(escrow, txn.transaction_ref, previous_ref):
            raise PayoutAlreadyInitiatedError(str(escrow.id))

        await self._record(
            caller,
            AuditAction.PAYOUT_INITIATED,
            EntityType.TRANSACTION,
            txn.id,
            escrow_id=str(escrow.id),
            transaction_ref=txn.transaction_ref,
            amount=str(txn.amount),
            replaces=previous_ref,
        )
        # The PENDING row must be durable before money can move.
        await self._session.commit()

        return await self._send(caller, txn, escrow, recipient_code)

    async def retry_payout(self, caller: Caller, transaction_id: uuid.UUID) -> PayoutResult:
        """Resend a PENDING payout under its original reference.

        Used after a gateway timeout or any other unanswered transfer call. Paystack rejects a second transfer with
        the same reference, so a retry can never pay twice.
        """
        if not caller.is_admin:
            raise ForbiddenError("Only an admin can retry a payout")

        txn = await self._txn_repo.get_active(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(str(transaction_id))
        if txn.type != TransactionType.TRANSFER_OUT:
            raise InputValidationError("Only payout transactions can be retried")
        if txn.status != TransactionStatus.PENDING:
            raise InvalidStateTransitionError("transaction", txn.status, "retry payout")

        escrow = await self._escrow_repo.get_by_payout_ref(txn.transaction_ref)
        if escrow is None:
            raise EscrowNotFoundError(f"payout {txn.transaction_ref}")

        recipient_code = await self._recipient_code(escrow)
        return await self._send(caller, txn, escrow, recipient_code)

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        caller: Caller,
        txn: Transaction,
        escrow: Escrow,
        recipient_code: str,
    ) -> PayoutResult:
        try:
            data = await self._gateway.initiate_transfer(
                amount=txn.amount,
                recipient_code=recipient_code,
                reference=txn.transaction_ref,
                reason=f"Payout for order {escrow.order_id}",
            )
        except GatewayOutcomeUnknownError as exc:
            # Paystack may hold the transfer: leave PENDING, the webhook or a
            # retry under the same reference settles it.
            timed_out = isinstance(exc, GatewayTimeoutError)
            outcome = "gateway_timeout" if timed_out else "gateway_unknown"
            await self._record(
                caller,
                AuditAction.PAYOUT_PENDING,
                EntityType.TRANSACTION,
                txn.id,
                transaction_ref=txn.transaction_ref,
                outcome=outcome,
                error=exc.message,
            )
            logger.warning(
                "payout.outcome_unknown",
                transaction_ref=txn.transaction_ref,
                outcome=outcome,
                error=exc.message,
            )
            return PayoutResult(transaction=txn, escrow=escrow, retryable=True)
        except PaymentGatewayError as exc:
            await self._txn_repo.transition(
                txn, TransactionStatus.PENDING, TransactionStatus.FAILED
            )
            await self._record(
                caller,
                AuditAction.PAYOUT_PENDING,
                EntityType.TRANSACTION,
                txn.id,
                transaction_ref=txn.transaction_ref,
                outcome="rejected",
                error=exc.message,
            )
            # Keep the FAILED status even though the request ends in an error.
            await self._session.commit()
            logger.error(
                "payout.rejected", transaction_ref=txn.transaction_ref, error=exc.message
            )
            raise

        transfer_code = data.get("transfer_code")
        recorded = {e.transfer_code for e in find_entries(txn.metadata_json, PayoutEntry)}
        if transfer_code and transfer_code not in recorded:
            await self._txn_repo.update_if_status(
                txn,
                TransactionStatus.PENDING,
                payment_gateway_ref=transfer_code,
                metadata_json=append_metadata(
                    txn.metadata_json,
                    PayoutEntry(
                        escrow_id=escrow.id,
                        recipient_code=recipient_code,
                        transfer_code=transfer_code,
                    ),
                ),
            )

        await self._record(
            caller,
            AuditAction.PAYOUT_PENDING,
            EntityType.TRANSACTION,
            txn.id,
            transaction_ref=txn.transaction_ref,
            outcome="accepted",
            transfer_code=transfer_code,
            gateway_status=data.get("status"),
        )
        logger.info(
            "payout.sent",
            transaction_ref=txn.transaction_ref,
            transfer_code=transfer_code,
            simulated=self._gateway.simulate,
        )
        return PayoutResult(transaction=txn, escrow=escrow, transfer_code=transfer_code)

    async def _recipient_code(self, escrow: Escrow) -> str:
        payee = await self._user_repo.get_active(escrow.payee_id)
        if payee is None:
            raise UserNotFoundError(str(escrow.payee_id), role="Payee")
        if not payee.paystack_recipient_code:
            raise InputValidationError("Payee has no Paystack transfer recipient")
        return payee.paystack_recipient_code
