"""Order Service — the delivery lifecycle that gates escrow release.

Coordinates:
    - OrderStateMachine (transition guard)
    - OrderRepository (conditional updates)
    - AuditSink (one entry per state change)

User-initiated transitions that lose a race raise InvalidStateTransitionError.
The internal entry points used by webhook reconciliation return False instead.
"""

from __future__ import annotations

import secrets
import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from escrow_ledger.domain.enums import (
    AuditAction,
    EntityType,
    EscrowStatus,
    OrderStatus,
    UserRole,
)
from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.exceptions import (
    DuplicateReferenceError,
    ForbiddenError,
    InvalidStateTransitionError,
    OrderNotFoundError,
    UnauthorizedError,
    UserNotFoundError,
)
from escrow_ledger.domain.money import to_money
from escrow_ledger.domain.state_machine import OrderStateMachine
from escrow_ledger.infrastructure.database.orm_models import Order
from escrow_ledger.infrastructure.database.repositories import (
    EscrowRepository,
    OrderRepository,
    UserRepository,
)
from escrow_ledger.logging_config import get_logger
from escrow_ledger.services.base import ServiceBase, guard_transition

if TYPE_CHECKING:
    import uuid
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.config import Settings
    from escrow_ledger.domain.audit import AuditSink

logger = get_logger(__name__)

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED.value, OrderStatus.CANCELLED.value})
ACTIVE_STATUSES = tuple(s for s in OrderStatus if s.value not in TERMINAL_STATUSES)
_REQUIRED_FIELDS = frozenset({"total_amount", "delivery_address", "order_data"})


def generate_order_number() -> str:
    """ORD + last 8 digits of epoch milliseconds + 3 random digits."""
    millis = str(int(time.time() * 1000))[-8:]
    return f"ORD{millis}{secrets.randbelow(1000):03d}"


class OrderService(ServiceBase):
    """Manages the order lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditSink,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(session, audit, settings)
        self._order_repo = OrderRepository(session)
        self._escrow_repo = EscrowRepository(session)
        self._user_repo = UserRepository(session)

    # ------------------------------------------------------------------
    # Creation & edits
    # ------------------------------------------------------------------

    async def create_order(
        self,
        caller: Caller,
        *,
        order_type: str,
        total_amount: Decimal,
        delivery_address: str,
        pickup_address: str | None = None,
        merchant_id: uuid.UUID | None = None,
        driver_id: uuid.UUID | None = None,
        order_data: dict[str, Any] | None = None,
    ) -> Order:
        """Create a PENDING order with the caller as customer."""
        if caller.user_id is None:
            raise UnauthorizedError("Orders must be placed by a user")
        await self._check_assignees(merchant_id, driver_id)

        now = datetime.now(UTC)
        amount = to_money(total_amount)
        order_number = ""
        for _ in range(self._settings.order_number_max_attempts):
            order_number = generate_order_number()
            order = Order(
                order_number=order_number,
                customer_id=caller.user_id,
                merchant_id=merchant_id,
                driver_id=driver_id,
                order_type=order_type,
                status=OrderStatus.PENDING.value,
                total_amount=amount,
                delivery_address=delivery_address,
                pickup_address=pickup_address,
                order_data=order_data or {},
                confirmation_deadline=now
                + timedelta(hours=self._settings.order_confirmation_window_hours),
            )
            if await self._order_repo.try_insert(order):
                break
            logger.warning("order.number_collision", order_number=order_number)
        else:
            raise DuplicateReferenceError(order_number)

        await self._record(
            caller,
            AuditAction.ORDER_CREATED,
            EntityType.ORDER,
            order.id,
            order_number=order.order_number,
            total_amount=str(amount),
            new_status=order.status,
        )
        logger.info(
            "order.created",
            order_id=str(order.id),
            order_number=order.order_number,
            total_amount=str(amount),
        )
        return order

    async def update_order(
        self, caller: Caller, order_id: uuid.UUID, changes: dict[str, Any]
    ) -> Order:
        """Edit order fields. Status is never changed here.

        Blocked once the order is DELIVERED or CANCELLED; the total may only
        change while the order is still PENDING.
        """
        order = await self._get_order_or_raise(order_id)
        if not (caller.is_admin or self._is_party(caller, order)):
            raise ForbiddenError("Only the customer, an assigned party or an admin can edit")

        if order.status in TERMINAL_STATUSES:
            raise InvalidStateTransitionError("order", order.status, "update")

        if "merchant_id" in changes or "driver_id" in changes:
            await self._check_assignees(changes.get("merchant_id"), changes.get("driver_id"))

        # Required columns: an explicit null means "leave unchanged".
        changes = {
            key: value
            for key, value in changes.items()
            if value is not None or key not in _REQUIRED_FIELDS
        }

        allowed: tuple[OrderStatus, ...] = ACTIVE_STATUSES
        if "total_amount" in changes:
            changes["total_amount"] = to_money(changes["total_amount"])
            allowed = (OrderStatus.PENDING,)
            if order.status != OrderStatus.PENDING:
                raise InvalidStateTransitionError("order", order.status, "update total")

        if not changes:
            return order

        previous_status = order.status
        if not await self._order_repo.update_if_status(order, allowed, **changes):
            raise InvalidStateTransitionError("order", previous_status, "update")

        await self._record(
            caller,
            AuditAction.ORDER_UPDATED,
            EntityType.ORDER,
            order.id,
            fields=sorted(changes),
        )
        logger.info("order.updated", order_id=str(order.id), fields=sorted(changes))
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_orders(
        self,
        caller: Caller,
        status: OrderStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        party_id = None if caller.is_admin else caller.user_id
        return await self._order_repo.list_visible(party_id, status, limit, offset)

    async def get_order(self, caller: Caller, order_id: uuid.UUID) -> Order:
        order = await self._get_order_or_raise(order_id)
        if not (caller.is_admin or self._is_party(caller, order)):
            raise ForbiddenError("Access denied to this order")
        return order

    # ------------------------------------------------------------------
    # Lifecycle actions
    # ------------------------------------------------------------------

    async def accept(self, caller: Caller, order_id: uuid.UUID) -> Order:
        """PENDING|CONFIRMED -> ACCEPTED by the assigned merchant/driver or an admin."""
        order = await self._get_order_or_raise(order_id)
        self._require_assigned_party(caller, order)
        return await self._apply(
            caller,
            order,
            "accept",
            AuditAction.ORDER_ACCEPTED,
            accepted_at=datetime.now(UTC),
        )

    async def reject(self, caller: Caller, order_id: uuid.UUID, reason: str | None = None) -> Order:
        """Return the order to PENDING and clear the rejecting party's assignment."""
        order = await self._get_order_or_raise(order_id)
        self._require_assigned_party(caller, order)

        values: dict[str, Any] = {"accepted_at": None}
        if caller.is_user(order.driver_id):
            values["driver_id"] = None
        if caller.is_user(order.merchant_id):
            values["merchant_id"] = None

        return await self._apply(
            caller,
            order,
            "reject",
            AuditAction.ORDER_REJECTED,
            reason=reason,
            cleared=sorted(k for k in values if k != "accepted_at"),
            **values,
        )

    async def cancel(self, caller: Caller, order_id: uuid.UUID, reason: str | None = None) -> Order:
        """Cancel from any non-terminal state. Disallowed once DELIVERED."""
        order = await self._get_order_or_raise(order_id)
        if not (caller.is_admin or self._is_party(caller, order)):
            raise ForbiddenError("Only the customer, an assigned party or an admin can cancel")
        return await self._apply(caller, order, "cancel", AuditAction.ORDER_CANCELLED, reason=reason)

    async def pick_up(self, caller: Caller, order_id: uuid.UUID) -> Order:
        order = await self._get_order_or_raise(order_id)
        self._require_driver(caller, order)
        return await self._apply(
            caller,
            order,
            "pick_up",
            AuditAction.ORDER_PICKED_UP,
            picked_up_at=datetime.now(UTC),
        )

    async def start_transit(self, caller: Caller, order_id: uuid.UUID) -> Order:
        order = await self._get_order_or_raise(order_id)
        self._require_driver(caller, order)
        return await self._apply(caller, order, "start_transit", AuditAction.ORDER_IN_TRANSIT)

    async def deliver(self, caller: Caller, order_id: uuid.UUID) -> Order:
        """Mark DELIVERED and open the customer's confirmation window.

        When the window elapses without a release or dispute, the escrow
        auto-release sweep pays the merchant.
        """
        order = await self._get_order_or_raise(order_id)
        self._require_driver(caller, order)
        now = datetime.now(UTC)
        return await self._apply(
            caller,
            order,
            "deliver",
            AuditAction.ORDER_DELIVERED,
            delivered_at=now,
            confirmation_deadline=now
            + timedelta(hours=self._settings.order_confirmation_window_hours),
        )

    async def soft_delete(self, caller: Caller, order_id: uuid.UUID) -> Order:
        """Hide the order and mark it CANCELLED.

        Blocked for delivered orders and while funds are held against it.
        """
        order = await self._get_order_or_raise(order_id)
        if not (caller.is_admin or caller.is_user(order.customer_id)):
            raise ForbiddenError("Only the customer or an admin can delete an order")
        if order.status == OrderStatus.DELIVERED:
            raise InvalidStateTransitionError("order", order.status, "delete")

        escrow = await self._escrow_repo.get_active_for_order(order.id)
        if escrow is not None and escrow.status in (EscrowStatus.HELD, EscrowStatus.DISPUTED):
            raise InvalidStateTransitionError("order", order.status, "delete with funds in escrow")

        previous_status = order.status
        deletable = (*ACTIVE_STATUSES, OrderStatus.CANCELLED)
        if not await self._order_repo.soft_delete(order, deletable):
            raise InvalidStateTransitionError("order", previous_status, "delete")

        await self._record(
            caller,
            AuditAction.ORDER_DELETED,
            EntityType.ORDER,
            order.id,
            old_status=previous_status,
            new_status=order.status,
        )
        logger.info("order.deleted", order_id=str(order.id))
        return order

    # ------------------------------------------------------------------
    # Internal entry points (webhook reconciliation)
    # ------------------------------------------------------------------

    async def confirm_payment(self, order: Order) -> bool:
        """PENDING -> CONFIRMED after a successful charge. False if not applied."""
        if order.status != OrderStatus.PENDING:
            return False
        if not await self._order_repo.transition(
            order, OrderStatus.PENDING, OrderStatus.CONFIRMED
        ):
            logger.info("order.confirm_skipped", order_id=str(order.id), reason="concurrent update")
            return False

        await self._record(
            Caller.system(),
            AuditAction.ORDER_CONFIRMED,
            EntityType.ORDER,
            order.id,
            old_status=OrderStatus.PENDING.value,
            new_status=OrderStatus.CONFIRMED.value,
        )
        logger.info("order.confirmed", order_id=str(order.id))
        return True

    async def cancel_for_failed_payment(self, order_id: uuid.UUID) -> bool:
        """Cancel an order whose payment failed. False if not applied."""
        order = await self._order_repo.get_active(order_id)
        if order is None or order.status in TERMINAL_STATUSES:
            return False

        previous_status = order.status
        if not await self._order_repo.transition(order, previous_status, OrderStatus.CANCELLED):
            return False

        await self._record(
            Caller.system(),
            AuditAction.ORDER_CANCELLED,
            EntityType.ORDER,
            order.id,
            old_status=previous_status,
            new_status=OrderStatus.CANCELLED.value,
            reason="payment failed",
        )
        logger.info("order.cancelled", order_id=str(order.id), reason="payment failed")
        return True

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _get_order_or_raise(self, order_id: uuid.UUID) -> Order:
        order = await self._order_repo.get_active(order_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))
        return order

    async def _apply(
        self,
        caller: Caller,
        order: Order,
        event: str,
        action: AuditAction,
        reason: str | None = None,
        cleared: list[str] | None = None,
        **values: Any,
    ) -> Order:
        """Guard `event`, then apply it with a conditional update."""
        previous_status = order.status
        new_status = guard_transition(OrderStateMachine, "order", previous_status, event)

        if not await self._order_repo.transition(order, previous_status, new_status, **values):
            raise InvalidStateTransitionError("order", previous_status, event)

        details: dict[str, Any] = {"old_status": previous_status, "new_status": new_status}
        if reason:
            details["reason"] = reason
        if cleared:
            details["cleared_assignments"] = cleared
        await self._record(caller, action, EntityType.ORDER, order.id, **details)

        logger.info(
            f"order.{event}",
            order_id=str(order.id),
            old_status=previous_status,
            new_status=new_status,
            actor=caller.actor,
        )
        return order

    async def _check_assignees(
        self, merchant_id: uuid.UUID | None, driver_id: uuid.UUID | None
    ) -> None:
        if merchant_id is not None:
            merchant = await self._user_repo.get_active(merchant_id)
            if merchant is None or merchant.role != UserRole.MERCHANT:
                raise UserNotFoundError(str(merchant_id), role="Merchant")
        if driver_id is not None:
            driver = await self._user_repo.get_active(driver_id)
            if driver is None or driver.role != UserRole.DRIVER:
                raise UserNotFoundError(str(driver_id), role="Driver")

    @staticmethod
    def _is_party(caller: Caller, order: Order) -> bool:
        return (
            caller.is_user(order.customer_id)
            or caller.is_user(order.merchant_id)
            or caller.is_user(order.driver_id)
        )

    @staticmethod
    def _require_assigned_party(caller: Caller, order: Order) -> None:
        if caller.is_admin or caller.is_user(order.merchant_id) or caller.is_user(order.driver_id):
            return
        raise ForbiddenError("Only the assigned merchant, driver or an admin can do this")

    @staticmethod
    def _require_driver(caller: Caller, order: Order) -> None:
        if caller.is_admin or caller.is_user(order.driver_id):
            return
        raise ForbiddenError("Only the assigned driver or an admin can do this")
