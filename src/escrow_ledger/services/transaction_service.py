"""Transaction Service — the client-facing side of the ledger.

The ledger never mutates historical amounts. A refund marks the original row
REFUNDED (attaching a refund record to its metadata) and appends a second,
independent REFUND row. Status changes are conditional updates guarded by
TransactionStateMachine.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from escrow_ledger.domain.enums import (
    AuditAction,
    EntityType,
    TransactionStatus,
    TransactionType,
)
from escrow_ledger.domain.exceptions import (
    ForbiddenError,
    InputValidationError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    TransactionNotFoundError,
    UnauthorizedError,
    UserNotFoundError,
)
from escrow_ledger.domain.metadata import (
    OpaqueEntry,
    RefundProvenanceEntry,
    RefundRecordEntry,
    append_metadata,
)
from escrow_ledger.domain.money import to_money
from escrow_ledger.domain.state_machine import TransactionStateMachine
from escrow_ledger.infrastructure.database.repositories import (
    OrderRepository,
    TransactionRepository,
    UserRepository,
)
from escrow_ledger.logging_config import get_logger
from escrow_ledger.services.base import ServiceBase, guard_transition
from escrow_ledger.services.ledger_writer import LedgerWriter
from escrow_ledger.services.settlement import PaymentSettlement

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.config import Settings
    from escrow_ledger.domain.audit import AuditSink
    from escrow_ledger.domain.caller import Caller
    from escrow_ledger.infrastructure.database.orm_models import Transaction

logger = get_logger(__name__)

SETTLED_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED)


class TransactionService(ServiceBase):
    """Creates, confirms, refunds and queries ledger rows."""

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditSink,
        settings: Settings | None = None,
        reference_factory: Callable[[TransactionType], str] | None = None,
    ) -> None:
        super().__init__(session, audit, settings)
        self._txn_repo = TransactionRepository(session)
        self._order_repo = OrderRepository(session)
        self._user_repo = UserRepository(session)
        self._ledger = LedgerWriter(session, self._settings, reference_factory)
        self._settlement = PaymentSettlement(session, audit, self._settings)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_transaction(
        self,
        caller: Caller,
        *,
        type_: TransactionType,
        amount: Decimal,
        net_amount: Decimal | None = None,
        currency: str | None = None,
        order_id: uuid.UUID | None = None,
        recipient_id: uuid.UUID | None = None,
        payment_method: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Transaction:
        """Record a PENDING money movement owned by the caller.

        Raises:
            OrderNotFoundError / UserNotFoundError: Referenced order or recipient absent.
            ForbiddenError: Non-admin linking another customer's order.
            DuplicateReferenceError: No unique reference could be allocated.
        """
        if caller.user_id is None:
            raise UnauthorizedError("Transactions must be created by a user")

        amount = to_money(amount)
        if amount <= 0:
            raise InputValidationError("Amount must be greater than zero")
        if net_amount is not None and to_money(net_amount) > amount:
            raise InputValidationError("Net amount cannot exceed amount")

        if order_id is not None:
            order = await self._order_repo.get_active(order_id)
            if order is None:
                raise OrderNotFoundError(str(order_id))
            if not (caller.is_admin or caller.is_user(order.customer_id)):
                raise ForbiddenError("Only the order's customer can pay for it")
        if recipient_id is not None and await self._user_repo.get_active(recipient_id) is None:
            raise UserNotFoundError(str(recipient_id), role="Recipient")

        txn = await self._ledger.append(
            type_=type_,
            user_id=caller.user_id,
            amount=amount,
            status=TransactionStatus.PENDING,
            net_amount=net_amount,
            currency=currency.upper() if currency else None,
            order_id=order_id,
            recipient_id=recipient_id,
            payment_method=payment_method,
            description=description,
            metadata=[OpaqueEntry(data=metadata)] if metadata else None,
        )

        await self._record(
            caller,
            AuditAction.TRANSACTION_CREATED,
            EntityType.TRANSACTION,
            txn.id,
            transaction_ref=txn.transaction_ref,
            type=txn.type,
            amount=str(txn.amount),
            new_status=txn.status,
        )
        logger.info(
            "transaction.created",
            transaction_id=str(txn.id),
            transaction_ref=txn.transaction_ref,
            type=txn.type,
        )
        return txn

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    async def confirm(
        self,
        caller: Caller,
        transaction_id: uuid.UUID,
        payment_gateway_ref: str | None = None,
        paystack_transaction_id: str | None = None,
    ) -> Transaction:
        """PENDING -> COMPLETED by an operator.

        For an order-linked PAYMENT this runs the same idempotent settlement
        as a charge.success webhook.
        """
        if not caller.is_admin:
            raise ForbiddenError("Only an admin can confirm a transaction")

        txn = await self._get_transaction_or_raise(transaction_id)
        guard_transition(TransactionStateMachine, "transaction", txn.status, "complete")

        values: dict[str, Any] = {"completed_at": datetime.now(UTC)}
        if payment_gateway_ref:
            values["payment_gateway_ref"] = payment_gateway_ref
        if paystack_transaction_id:
            values["paystack_transaction_id"] = paystack_transaction_id

        if not await self._txn_repo.transition(
            txn, TransactionStatus.PENDING, TransactionStatus.COMPLETED, **values
        ):
            raise InvalidStateTransitionError("transaction", txn.status, "complete")

        await self._record(
            caller,
            AuditAction.TRANSACTION_CONFIRMED,
            EntityType.TRANSACTION,
            txn.id,
            old_status=TransactionStatus.PENDING.value,
            new_status=txn.status,
            payment_gateway_ref=payment_gateway_ref,
        )
        logger.info("transaction.confirmed", transaction_ref=txn.transaction_ref)

        await self._settlement.settle(txn)
        return txn

    async def refund_transaction(
        self,
        caller: Caller,
        transaction_id: uuid.UUID,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> tuple[Transaction, Transaction]:
        """Refund all or part of a COMPLETED transaction.

        Returns (original, refund). The refund row credits the original owner.

        Raises:
            InvalidStateTransitionError: Original is not COMPLETED.
            InputValidationError: Amount is not in (0, original amount].
        """
        if not caller.is_admin:
            raise ForbiddenError("Only an admin can refund a transaction")

        original = await self._get_transaction_or_raise(transaction_id)
        guard_transition(TransactionStateMachine, "transaction", original.status, "refund")

        refund_amount = to_money(amount) if amount is not None else to_money(original.amount)
        if refund_amount <= Decimal("0") or refund_amount > original.amount:
            raise InputValidationError(
                f"Refund amount must be greater than 0 and at most {original.amount}"
            )
        reason = reason or "Refund"

        refund = await self._ledger.append(
            type_=TransactionType.REFUND,
            user_id=original.recipient_id or original.user_id,
            recipient_id=original.user_id,
            order_id=original.order_id,
            amount=refund_amount,
            currency=original.currency,
            payment_method=original.payment_method,
            description=f"Refund of {original.transaction_ref}: {reason}",
            metadata=[
                RefundProvenanceEntry(
                    original_transaction_id=original.id,
                    original_reference=original.transaction_ref,
                    reason=reason,
                )
            ],
        )

        record = RefundRecordEntry(
            reason=reason,
            refund_amount=refund_amount,
            refunded_by=caller.actor,
            refunded_at=datetime.now(UTC),
            refund_transaction_ref=refund.transaction_ref,
        )
        if not await self._txn_repo.transition(
            original,
            TransactionStatus.COMPLETED,
            TransactionStatus.REFUNDED,
            metadata_json=append_metadata(original.metadata_json, record),
        ):
            raise InvalidStateTransitionError("transaction", original.status, "refund")

        await self._record(
            caller,
            AuditAction.TRANSACTION_REFUNDED,
            EntityType.TRANSACTION,
            original.id,
            old_status=TransactionStatus.COMPLETED.value,
            new_status=original.status,
            refund_amount=str(refund_amount),
            refund_transaction_ref=refund.transaction_ref,
            reason=reason,
        )
        logger.info(
            "transaction.refunded",
            transaction_ref=original.transaction_ref,
            refund_ref=refund.transaction_ref,
            amount=str(refund_amount),
        )
        return original, refund

    # ------------------------------------------------------------------
    # Edits & queries
    # ------------------------------------------------------------------

    async def update_transaction(
        self, caller: Caller, transaction_id: uuid.UUID, changes: dict[str, Any]
    ) -> Transaction:
        """Edit descriptive fields. Blocked once COMPLETED or REFUNDED."""
        txn = await self._get_transaction_or_raise(transaction_id)
        if not (caller.is_admin or caller.is_user(txn.user_id)):
            raise ForbiddenError("Only the owner or an admin can edit a transaction")
        if txn.status in SETTLED_STATUSES:
            raise InvalidStateTransitionError("transaction", txn.status, "update")

        if "metadata" in changes:
            data = changes.pop("metadata")
            if data:
                changes["metadata_json"] = append_metadata(txn.metadata_json, OpaqueEntry(data=data))
        if not changes:
            return txn

        editable = (TransactionStatus.PENDING, TransactionStatus.FAILED)
        previous_status = txn.status
        if not await self._txn_repo.update_if_status(txn, editable, **changes):
            raise InvalidStateTransitionError("transaction", previous_status, "update")

        fields = sorted(k if k != "metadata_json" else "metadata" for k in changes)
        await self._record(
            caller,
            AuditAction.TRANSACTION_UPDATED,
            EntityType.TRANSACTION,
            txn.id,
            fields=fields,
        )
        logger.info("transaction.updated", transaction_ref=txn.transaction_ref, fields=fields)
        return txn

    async def list_transactions(
        self,
        caller: Caller,
        status: TransactionStatus | None = None,
        type_: TransactionType | None = None,
        search: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        party_id = None if caller.is_admin else caller.user_id
        return await self._txn_repo.list_visible(
            party_id,
            status=status,
            type_=type_,
            search=search,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )

    async def get_transaction(self, caller: Caller, transaction_id: uuid.UUID) -> Transaction:
        txn = await self._get_transaction_or_raise(transaction_id)
        if not (caller.is_admin or caller.is_user(txn.user_id) or caller.is_user(txn.recipient_id)):
            raise ForbiddenError("Access denied to this transaction")
        return txn

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _get_transaction_or_raise(self, transaction_id: uuid.UUID) -> Transaction:
        txn = await self._txn_repo.get_active(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(str(transaction_id))
        return txn
