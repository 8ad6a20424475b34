"""Escrow Service — custody of order funds between payer and payee.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Repositories (conditional updates, partial unique index)
    - LedgerWriter (the transaction appended on release/refund)
    - AuditSink (one entry per state change)

REST routes, webhook reconciliation and the auto-release sweep all call into
this service, so the custody rules live in one place.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import (
    AuditAction,
    EntityType,
    EscrowStatus,
    OrderStatus,
    TransactionType,
)
from escrow_ledger.domain.exceptions import (
    DuplicateEscrowError,
    EscrowLedgerError,
    EscrowNotFoundError,
    ForbiddenError,
    InputValidationError,
    InvalidStateTransitionError,
    OrderNotDeliveredError,
    OrderNotFoundError,
    UserNotFoundError,
)
from escrow_ledger.domain.metadata import EscrowProvenanceEntry
from escrow_ledger.domain.money import to_money
from escrow_ledger.domain.state_machine import EscrowStateMachine
from escrow_ledger.infrastructure.database.orm_models import Escrow
from escrow_ledger.infrastructure.database.repositories import (
    EscrowRepository,
    OrderRepository,
    UserRepository,
)
from escrow_ledger.logging_config import get_logger
from escrow_ledger.services.base import ServiceBase, guard_transition
from escrow_ledger.services.ledger_writer import LedgerWriter

if TYPE_CHECKING:
    import uuid
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.config import Settings
    from escrow_ledger.domain.audit import AuditSink
    from escrow_ledger.infrastructure.database.orm_models import Order, Transaction

logger = get_logger(__name__)

SETTLED_STATUSES = (EscrowStatus.RELEASED, EscrowStatus.REFUNDED)
OPEN_STATUSES = (EscrowStatus.HELD, EscrowStatus.DISPUTED)


class EscrowService(ServiceBase):
    """Manages the escrow custody lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditSink,
        settings: Settings | None = None,
        ledger: LedgerWriter | None = None,
    ) -> None:
        super().__init__(session, audit, settings)
        self._escrow_repo = EscrowRepository(session)
        self._order_repo = OrderRepository(session)
        self._user_repo = UserRepository(session)
        self._ledger = ledger or LedgerWriter(session, self._settings)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_escrow(
        self,
        caller: Caller,
        *,
        order_id: uuid.UUID,
        payer_id: uuid.UUID,
        payee_id: uuid.UUID,
        amount: Decimal,
        paystack_escrow_id: str | None = None,
        transaction_ref: str | None = None,
    ) -> Escrow:
        """Hold funds for an order. Result is HELD.

        Raises:
            OrderNotFoundError / UserNotFoundError: Order, payer or payee absent.
            ForbiddenError: Caller is not admin, the payer, or the order's customer.
            DuplicateEscrowError: The order already has an active escrow.
        """
        order = await self._order_repo.get_active(order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        if await self._user_repo.get_active(payer_id) is None:
            raise UserNotFoundError(str(payer_id), role="Payer")
        if await self._user_repo.get_active(payee_id) is None:
            raise UserNotFoundError(str(payee_id), role="Payee")

        if not (caller.is_admin or caller.is_user(payer_id) or caller.is_user(order.customer_id)):
            raise ForbiddenError("Only the payer, the order's customer or an admin can create")

        if await self._escrow_repo.get_active_for_order(order_id) is not None:
            raise DuplicateEscrowError(str(order_id))

        escrow = await self._escrow_repo.create_if_absent(
            Escrow(
                order_id=order_id,
                payer_id=payer_id,
                payee_id=payee_id,
                amount=to_money(amount),
                status=EscrowStatus.HELD.value,
                paystack_escrow_id=paystack_escrow_id,
                transaction_ref=transaction_ref,
            )
        )
        if escrow is None:
            raise DuplicateEscrowError(str(order_id))

        await self._record_created(caller, escrow)
        return escrow

    async def create_for_payment(self, txn: Transaction, order: Order) -> Escrow | None:
        """Create the escrow funded by a completed order payment.

        The payer is the order's customer, whoever recorded the payment.
        Idempotent: returns None when an escrow was ever opened for the order
        or the payment (soft-deleted ones included), and when a concurrent
        delivery wins the unique index race. Also returns None for cancelled
        orders and orders without a merchant.
        """
        if order.status == OrderStatus.CANCELLED:
            logger.info("escrow.skipped", order_id=str(order.id), reason="order cancelled")
            return None
        if order.merchant_id is None:
            logger.warning("escrow.skipped", order_id=str(order.id), reason="no merchant assigned")
            return None
        if await self._escrow_repo.exists_for_payment(order.id, txn.transaction_ref):
            return None

        escrow = await self._escrow_repo.create_if_absent(
            Escrow(
                order_id=order.id,
                payer_id=order.customer_id,
                payee_id=order.merchant_id,
                amount=to_money(txn.amount),
                status=EscrowStatus.HELD.value,
                paystack_escrow_id=txn.transaction_ref,
                transaction_ref=txn.transaction_ref,
            )
        )
        if escrow is None:
            return None

        await self._record_created(Caller.system(), escrow, source_transaction=txn.transaction_ref)
        return escrow

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def release(
        self, caller: Caller, escrow_id: uuid.UUID, reason: str | None = None
    ) -> Escrow:
        """Release held funds to the payee.

        Raises:
            InvalidStateTransitionError: Escrow is not HELD.
            ForbiddenError: Caller is neither admin nor the payer.
            OrderNotDeliveredError: Non-admin caller and the order is not DELIVERED.
        """
        escrow = await self._get_escrow_or_raise(escrow_id)
        guard_transition(EscrowStateMachine, "escrow", escrow.status, "release")

        if not (caller.is_admin or caller.is_user(escrow.payer_id)):
            raise ForbiddenError("Only the payer or an admin can release funds")

        if not caller.is_admin:
            order = await self._order_repo.get_active(escrow.order_id)
            if order is None or order.status != OrderStatus.DELIVERED:
                raise OrderNotDeliveredError(str(escrow.order_id))

        if not await self._release(escrow, caller, reason):
            raise InvalidStateTransitionError("escrow", escrow.status, "release")
        return escrow

    async def refund(self, caller: Caller, escrow_id: uuid.UUID, reason: str | None) -> Escrow:
        """Return held or disputed funds to the payer. Admin-only, reason required."""
        if not reason or not reason.strip():
            raise InputValidationError("Refund reason is required")
        if not caller.is_admin:
            raise ForbiddenError("Only an admin can refund an escrow")

        escrow = await self._get_escrow_or_raise(escrow_id)
        previous_status = escrow.status
        guard_transition(EscrowStateMachine, "escrow", previous_status, "refund")

        now = datetime.now(UTC)
        if not await self._escrow_repo.transition(
            escrow, previous_status, EscrowStatus.REFUNDED, cancelled_at=now
        ):
            raise InvalidStateTransitionError("escrow", previous_status, "refund")

        txn = await self._ledger.append(
            type_=TransactionType.REFUND,
            user_id=escrow.payer_id,
            recipient_id=escrow.payer_id,
            order_id=escrow.order_id,
            amount=escrow.amount,
            description=f"Escrow refund: {reason}",
            metadata=[
                EscrowProvenanceEntry(escrow_id=escrow.id, action="refund", reason=reason)
            ],
        )

        await self._record(
            caller,
            AuditAction.ESCROW_REFUNDED,
            EntityType.ESCROW,
            escrow.id,
            old_status=previous_status,
            new_status=escrow.status,
            reason=reason,
            amount=str(escrow.amount),
            transaction_ref=txn.transaction_ref,
        )
        logger.info(
            "escrow.refunded",
            escrow_id=str(escrow.id),
            amount=str(escrow.amount),
            transaction_ref=txn.transaction_ref,
        )
        return escrow

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def dispute(
        self, caller: Caller, escrow_id: uuid.UUID, reason: str | None = None
    ) -> Escrow:
        """HELD -> DISPUTED by the payer, the payee or an admin."""
        escrow = await self._get_escrow_or_raise(escrow_id)
        if not (
            caller.is_admin or caller.is_user(escrow.payer_id) or caller.is_user(escrow.payee_id)
        ):
            raise ForbiddenError("Only a party to the escrow or an admin can dispute")
        return await self._simple_transition(
            caller, escrow, "dispute", AuditAction.ESCROW_DISPUTED, reason
        )

    async def resolve_dispute(
        self, caller: Caller, escrow_id: uuid.UUID, reason: str | None = None
    ) -> Escrow:
        """DISPUTED -> HELD. Admin-only; release or refund then proceed as usual."""
        if not caller.is_admin:
            raise ForbiddenError("Only an admin can resolve a dispute")
        escrow = await self._get_escrow_or_raise(escrow_id)
        return await self._simple_transition(
            caller, escrow, "resolve_dispute", AuditAction.ESCROW_DISPUTE_RESOLVED, reason
        )

    # ------------------------------------------------------------------
    # Edits & queries
    # ------------------------------------------------------------------

    async def update_escrow(
        self, caller: Caller, escrow_id: uuid.UUID, changes: dict[str, Any]
    ) -> Escrow:
        """Admin field edits. Blocked once RELEASED or REFUNDED."""
        if not caller.is_admin:
            raise ForbiddenError("Only an admin can edit an escrow")

        escrow = await self._get_escrow_or_raise(escrow_id)
        if escrow.status in SETTLED_STATUSES:
            raise InvalidStateTransitionError("escrow", escrow.status, "update")

        if changes.get("amount") is None:
            changes.pop("amount", None)
        else:
            changes["amount"] = to_money(changes["amount"])
        if not changes:
            return escrow

        previous_status = escrow.status
        if not await self._escrow_repo.update_if_status(escrow, OPEN_STATUSES, **changes):
            raise InvalidStateTransitionError("escrow", previous_status, "update")

        await self._record(
            caller,
            AuditAction.ESCROW_UPDATED,
            EntityType.ESCROW,
            escrow.id,
            fields=sorted(changes),
        )
        logger.info("escrow.updated", escrow_id=str(escrow.id), fields=sorted(changes))
        return escrow

    async def list_escrows(
        self,
        caller: Caller,
        status: EscrowStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Escrow], int]:
        party_id = None if caller.is_admin else caller.user_id
        return await self._escrow_repo.list_visible(party_id, status, limit, offset)

    async def get_escrow(self, caller: Caller, escrow_id: uuid.UUID) -> Escrow:
        escrow = await self._get_escrow_or_raise(escrow_id)
        if not (
            caller.is_admin or caller.is_user(escrow.payer_id) or caller.is_user(escrow.payee_id)
        ):
            raise ForbiddenError("Access denied to this escrow")
        return escrow

    async def soft_delete(self, caller: Caller, escrow_id: uuid.UUID) -> Escrow:
        """Hide a settled escrow. Never while funds are HELD or DISPUTED."""
        if not caller.is_admin:
            raise ForbiddenError("Only an admin can delete an escrow")
        escrow = await self._get_escrow_or_raise(escrow_id)
        if escrow.status in OPEN_STATUSES:
            raise InvalidStateTransitionError("escrow", escrow.status, "delete")
        if not await self._escrow_repo.soft_delete(escrow, SETTLED_STATUSES):
            raise InvalidStateTransitionError("escrow", escrow.status, "delete")

        await self._record(
            caller, AuditAction.ESCROW_DELETED, EntityType.ESCROW, escrow.id, status=escrow.status
        )
        logger.info("escrow.deleted", escrow_id=str(escrow.id))
        return escrow

    # ------------------------------------------------------------------
    # Auto-release sweep
    # ------------------------------------------------------------------

    async def auto_release_expired(self, now: datetime | None = None) -> list[Escrow]:
        """Release HELD escrows of DELIVERED orders past their confirmation deadline.

        Each release runs in its own savepoint; one failure does not stop the
        sweep. Escrows a concurrent writer already moved are skipped.
        """
        now = now or datetime.now(UTC)
        released: list[Escrow] = []
        for escrow in await self._escrow_repo.held_for_delivered_orders_due(now):
            try:
                async with self._session.begin_nested():
                    done = await self._release(
                        escrow, Caller.system(), "confirmation window elapsed", automatic=True
                    )
            except (EscrowLedgerError, SQLAlchemyError) as exc:
                logger.error("escrow.auto_release_failed", escrow_id=str(escrow.id), error=str(exc))
                continue
            if done:
                released.append(escrow)

        logger.info("escrow.auto_release_sweep", released=len(released))
        return released

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _get_escrow_or_raise(self, escrow_id: uuid.UUID) -> Escrow:
        escrow = await self._escrow_repo.get_active(escrow_id)
        if escrow is None:
            raise EscrowNotFoundError(str(escrow_id))
        return escrow

    async def _release(
        self,
        escrow: Escrow,
        caller: Caller,
        reason: str | None,
        automatic: bool = False,
    ) -> bool:
        """HELD -> RELEASED plus the ESCROW_RELEASE ledger row. False if lost the race."""
        if not await self._escrow_repo.transition(
            escrow, EscrowStatus.HELD, EscrowStatus.RELEASED, released_at=datetime.now(UTC)
        ):
            return False

        txn = await self._ledger.append(
            type_=TransactionType.ESCROW_RELEASE,
            user_id=escrow.payer_id,
            recipient_id=escrow.payee_id,
            order_id=escrow.order_id,
            amount=escrow.amount,
            description="Escrow released to payee",
            metadata=[
                EscrowProvenanceEntry(escrow_id=escrow.id, action="release", reason=reason)
            ],
        )

        await self._record(
            caller,
            AuditAction.ESCROW_RELEASED,
            EntityType.ESCROW,
            escrow.id,
            old_status=EscrowStatus.HELD.value,
            new_status=escrow.status,
            reason=reason,
            automatic=automatic,
            amount=str(escrow.amount),
            transaction_ref=txn.transaction_ref,
        )
        logger.info(
            "escrow.released",
            escrow_id=str(escrow.id),
            amount=str(escrow.amount),
            transaction_ref=txn.transaction_ref,
            automatic=automatic,
        )
        return True

    async def _simple_transition(
        self,
        caller: Caller,
        escrow: Escrow,
        event: str,
        action: AuditAction,
        reason: str | None,
    ) -> Escrow:
        previous_status = escrow.status
        new_status = guard_transition(EscrowStateMachine, "escrow", previous_status, event)
        if not await self._escrow_repo.transition(escrow, previous_status, new_status):
            raise InvalidStateTransitionError("escrow", previous_status, event)

        await self._record(
            caller,
            action,
            EntityType.ESCROW,
            escrow.id,
            old_status=previous_status,
            new_status=new_status,
            reason=reason,
        )
        logger.info(f"escrow.{event}", escrow_id=str(escrow.id), new_status=new_status)
        return escrow

    async def _record_created(self, caller: Caller, escrow: Escrow, **extra: Any) -> None:
        await self._record(
            caller,
            AuditAction.ESCROW_CREATED,
            EntityType.ESCROW,
            escrow.id,
            order_id=str(escrow.order_id),
            amount=str(escrow.amount),
            new_status=escrow.status,
            **extra,
        )
        logger.info(
            "escrow.created",
            escrow_id=str(escrow.id),
            order_id=str(escrow.order_id),
            amount=str(escrow.amount),
        )
