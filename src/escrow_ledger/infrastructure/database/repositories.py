"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility); the only
exception is the SAVEPOINT wrapped around inserts that may collide with a
unique constraint, so a losing insert does not poison the caller's
transaction.

Status changes never go through attribute assignment. Every transition is a
single conditional UPDATE ... WHERE id = ? AND status IN (...) whose
rowcount tells the caller whether it won the race.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from escrow_ledger.domain.exceptions import DuplicateReferenceError
from escrow_ledger.infrastructure.database.orm_models import (
    AuditLog,
    Escrow,
    Order,
    Transaction,
    User,
)
from escrow_ledger.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.domain.enums import (
        EscrowStatus,
        OrderStatus,
        TransactionStatus,
        TransactionType,
    )

logger = get_logger(__name__)


def _statuses(expected: Any) -> list[str]:
    if isinstance(expected, str):
        return [str(expected)]
    return [str(s) for s in expected]


def _unsettled_payment_conditions() -> list[Any]:
    """COMPLETED order payments with no escrow, deleted or not, behind them."""
    any_escrow = (
        select(Escrow.id)
        .where(
            or_(
                Escrow.order_id == Transaction.order_id,
                Escrow.transaction_ref == Transaction.transaction_ref,
            )
        )
        .exists()
    )
    return [
        Transaction.type == "PAYMENT",
        Transaction.status == "COMPLETED",
        Transaction.order_id.is_not(None),
        Transaction.deleted_at.is_(None),
        ~any_escrow,
    ]


class _BaseRepository:
    model: Any

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def update_if_status(
        self,
        obj: Any,
        expected: str | Iterable[str],
        **values: Any,
    ) -> bool:
        """Write `values` only if the row's status is still in `expected`.

        Returns True when this call changed the row. On success `obj` is
        refreshed from the database.
        """
        model = type(obj)
        stmt = (
            update(model)
            .where(
                model.id == obj.id,
                model.status.in_(_statuses(expected)),
                model.deleted_at.is_(None),
            )
            .values(updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return False
        await self._session.refresh(obj)
        return True

    async def _transition(
        self,
        obj: Any,
        expected: str | Iterable[str],
        new_status: str,
        **values: Any,
    ) -> bool:
        """Move `obj` to `new_status` only if it is still in `expected`."""
        return await self.update_if_status(obj, expected, status=str(new_status), **values)

    async def _page(
        self, conditions: list[Any], order_by: Any, limit: int, offset: int
    ) -> tuple[list[Any], int]:
        total = await self._session.scalar(
            select(func.count()).select_from(self.model).where(*conditions)
        )
        result = await self._session.execute(
            select(self.model).where(*conditions).order_by(order_by).limit(limit).offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def refresh(self, obj: Any) -> Any:
        await self._session.refresh(obj)
        return obj


class UserRepository(_BaseRepository):
    """Read-only access to the identity store's users table."""

    model = User

    async def get_active(self, user_id: uuid.UUID) -> User | None:
        result = await self._session.execute(
            select(User).where(User.id == user_id, User.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()


class OrderRepository(_BaseRepository):
    """Data access for orders."""

    model = Order

    async def try_insert(self, order: Order) -> bool:
        """Insert inside a savepoint. False if order_number already exists."""
        try:
            async with self._session.begin_nested():
                self._session.add(order)
        except IntegrityError:
            if await self.get_by_number(order.order_number) is None:
                raise
            return False
        return True

    async def get_active(self, order_id: uuid.UUID) -> Order | None:
        """Fetch an order unless it is soft-deleted."""
        result = await self._session.execute(
            select(Order).where(Order.id == order_id, Order.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def get_by_number(self, order_number: str) -> Order | None:
        result = await self._session.execute(
            select(Order).where(Order.order_number == order_number)
        )
        return result.scalar_one_or_none()

    async def list_visible(
        self,
        party_id: uuid.UUID | None,
        status: OrderStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        """List active orders. `party_id` restricts to customer/merchant/driver."""
        conditions = [Order.deleted_at.is_(None)]
        if party_id is not None:
            conditions.append(
                or_(
                    Order.customer_id == party_id,
                    Order.merchant_id == party_id,
                    Order.driver_id == party_id,
                )
            )
        if status is not None:
            conditions.append(Order.status == status.value)
        return await self._page(conditions, Order.created_at.desc(), limit, offset)

    async def transition(
        self,
        order: Order,
        expected: OrderStatus | Iterable[OrderStatus],
        new_status: OrderStatus,
        **values: Any,
    ) -> bool:
        return await self._transition(order, expected, new_status, **values)

    async def soft_delete(self, order: Order, expected: Iterable[OrderStatus]) -> bool:
        """Mark deleted and cancelled in one conditional statement."""
        now = datetime.now(UTC)
        result = await self._session.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status.in_(_statuses(expected)),
                Order.deleted_at.is_(None),
            )
            .values(status="CANCELLED", deleted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(order)
        return True


class EscrowRepository(_BaseRepository):
    """Data access for escrows."""

    model = Escrow

    async def create_if_absent(self, escrow: Escrow) -> Escrow | None:
        """Insert unless the order already has an active escrow.

        The partial unique index on escrows(order_id) WHERE deleted_at IS NULL
        is the arbiter: a concurrent winner makes this insert fail inside its
        savepoint, and None is returned.
        """
        try:
            async with self._session.begin_nested():
                self._session.add(escrow)
        except IntegrityError:
            if await self.get_active_for_order(escrow.order_id) is None:
                raise
            logger.info("escrow.insert_lost_race", order_id=str(escrow.order_id))
            return None
        return escrow

    async def get_active(self, escrow_id: uuid.UUID) -> Escrow | None:
        result = await self._session.execute(
            select(Escrow).where(Escrow.id == escrow_id, Escrow.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def get_active_for_order(self, order_id: uuid.UUID) -> Escrow | None:
        result = await self._session.execute(
            select(Escrow).where(Escrow.order_id == order_id, Escrow.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def exists_for_payment(self, order_id: uuid.UUID, transaction_ref: str) -> bool:
        """True if an escrow, deleted or not, was ever opened for this order or payment."""
        result = await self._session.execute(
            select(
                select(Escrow.id)
                .where(
                    or_(Escrow.order_id == order_id, Escrow.transaction_ref == transaction_ref)
                )
                .exists()
            )
        )
        return bool(result.scalar())

    async def get_by_payout_ref(self, payout_ref: str) -> Escrow | None:
        result = await self._session.execute(
            select(Escrow).where(Escrow.payout_ref == payout_ref)
        )
        return result.scalar_one_or_none()

    async def list_visible(
        self,
        party_id: uuid.UUID | None,
        status: EscrowStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Escrow], int]:
        """List active escrows. `party_id` restricts to payer/payee."""
        conditions = [Escrow.deleted_at.is_(None)]
        if party_id is not None:
            conditions.append(or_(Escrow.payer_id == party_id, Escrow.payee_id == party_id))
        if status is not None:
            conditions.append(Escrow.status == status.value)
        return await self._page(
            conditions, Escrow.created_at.desc(), limit, offset
        )

    async def held_for_delivered_orders_due(self, now: datetime) -> list[Escrow]:
        """HELD escrows whose order is DELIVERED and past its confirmation deadline."""
        result = await self._session.execute(
            select(Escrow)
            .join(Order, Order.id == Escrow.order_id)
            .where(
                Escrow.status == "HELD",
                Escrow.deleted_at.is_(None),
                Order.status == "DELIVERED",
                Order.deleted_at.is_(None),
                Order.confirmation_deadline.is_not(None),
                Order.confirmation_deadline <= now,
            )
            .order_by(Order.confirmation_deadline.asc())
        )
        return list(result.scalars().all())

    async def transition(
        self,
        escrow: Escrow,
        expected: EscrowStatus | Iterable[EscrowStatus],
        new_status: EscrowStatus,
        **values: Any,
    ) -> bool:
        return await self._transition(escrow, expected, new_status, **values)

    async def claim_payout(
        self, escrow: Escrow, payout_ref: str, previous_ref: str | None = None
    ) -> bool:
        """Attach a payout reference to a RELEASED escrow exactly once.

        Succeeds only if no payout is attached yet, or if the attached one is
        `previous_ref` (a failed payout being replaced).
        """
        ref_condition = Escrow.payout_ref.is_(None)
        if previous_ref is not None:
            ref_condition = or_(ref_condition, Escrow.payout_ref == previous_ref)
        result = await self._session.execute(
            update(Escrow)
            .where(
                Escrow.id == escrow.id,
                Escrow.status == "RELEASED",
                Escrow.deleted_at.is_(None),
                ref_condition,
            )
            .values(payout_ref=payout_ref, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(escrow)
        return True

    async def soft_delete(self, escrow: Escrow, expected: Iterable[EscrowStatus]) -> bool:
        now = datetime.now(UTC)
        result = await self._session.execute(
            update(Escrow)
            .where(
                Escrow.id == escrow.id,
                Escrow.status.in_(_statuses(expected)),
                Escrow.deleted_at.is_(None),
            )
            .values(deleted_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await self._session.refresh(escrow)
        return True


class TransactionRepository(_BaseRepository):
    """Data access for the transaction ledger."""

    model = Transaction

    async def insert_with_unique_ref(
        self,
        build: Callable[[str], Transaction],
        next_reference: Callable[[], str],
        max_attempts: int,
    ) -> Transaction:
        """Insert a transaction under a freshly generated reference.

        A collision on transaction_ref is rejected by the UNIQUE constraint;
        the savepoint is rolled back and a new reference tried. Existing rows
        are never overwritten.

        Raises:
            DuplicateReferenceError: If every attempt collided.
        """
        reference = ""
        for attempt in range(1, max_attempts + 1):
            reference = next_reference()
            txn = build(reference)
            try:
                async with self._session.begin_nested():
                    self._session.add(txn)
            except IntegrityError:
                if await self.get_by_reference(reference) is None:
                    raise
                logger.warning(
                    "transaction.reference_collision",
                    reference=reference,
                    attempt=attempt,
                )
                continue
            return txn
        raise DuplicateReferenceError(reference)

    async def get_active(self, transaction_id: uuid.UUID) -> Transaction | None:
        result = await self._session.execute(
            select(Transaction).where(
                Transaction.id == transaction_id, Transaction.deleted_at.is_(None)
            )
        )
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> Transaction | None:
        result = await self._session.execute(
            select(Transaction).where(Transaction.transaction_ref == reference)
        )
        return result.scalar_one_or_none()

    async def list_visible(
        self,
        party_id: uuid.UUID | None,
        status: TransactionStatus | None = None,
        type_: TransactionType | None = None,
        search: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        """List ledger rows. `party_id` restricts to rows owned or received."""
        conditions = [Transaction.deleted_at.is_(None)]
        if party_id is not None:
            conditions.append(
                or_(Transaction.user_id == party_id, Transaction.recipient_id == party_id)
            )
        if status is not None:
            conditions.append(Transaction.status == status.value)
        if type_ is not None:
            conditions.append(Transaction.type == type_.value)
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    Transaction.transaction_ref.ilike(pattern),
                    Transaction.description.ilike(pattern),
                    Transaction.payment_gateway_ref.ilike(pattern),
                )
            )
        if date_from is not None:
            conditions.append(Transaction.created_at >= date_from)
        if date_to is not None:
            conditions.append(Transaction.created_at <= date_to)
        return await self._page(
            conditions, Transaction.created_at.desc(), limit, offset
        )

    async def completed_order_payments_without_escrow(self) -> list[Transaction]:
        """COMPLETED order-linked payments that never funded an escrow.

        Only orders that can still hold an escrow are considered: active, not
        cancelled, with a merchant to pay. Soft-deleted escrows count: once an
        escrow existed for the order or the payment, the payment is settled.
        """
        result = await self._session.execute(
            select(Transaction)
            .join(Order, Order.id == Transaction.order_id)
            .where(
                *_unsettled_payment_conditions(),
                Order.deleted_at.is_(None),
                Order.status != "CANCELLED",
                Order.merchant_id.is_not(None),
            )
            .order_by(Transaction.completed_at.asc())
        )
        return list(result.scalars().all())

    async def completed_payments_without_custody(self) -> list[Transaction]:
        """COMPLETED order payments that can never fund an escrow.

        The charge succeeded after the order was cancelled, deleted or lost
        its merchant. The money was captured and needs an operator refund.
        """
        result = await self._session.execute(
            select(Transaction)
            .join(Order, Order.id == Transaction.order_id)
            .where(
                *_unsettled_payment_conditions(),
                or_(
                    Order.deleted_at.is_not(None),
                    Order.status == "CANCELLED",
                    Order.merchant_id.is_(None),
                ),
            )
            .order_by(Transaction.completed_at.asc())
        )
        return list(result.scalars().all())

    async def transition(
        self,
        txn: Transaction,
        expected: TransactionStatus | Iterable[TransactionStatus],
        new_status: TransactionStatus,
        **values: Any,
    ) -> bool:
        return await self._transition(txn, expected, new_status, **values)


class AuditLogRepository:
    """Data access for the insert-only audit log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, row: AuditLog) -> AuditLog:
        """Append a new audit row. This is the ONLY write operation allowed."""
        self._session.add(row)
        await self._session.flush()
        return row

    async def list(
        self,
        entity_type: str | None = None,
        entity_id: uuid.UUID | None = None,
        action: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditLog]:
        """Fetch audit rows, newest first."""
        stmt = select(AuditLog)
        if entity_type is not None:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(AuditLog.entity_id == entity_id)
        if action is not None:
            stmt = stmt.where(AuditLog.action == action)
        result = await self._session.execute(
            stmt.order_by(AuditLog.created_at.desc()).limit(limit).offset(offset)
        )
        return list(result.scalars().all())
