"""Settlement of a completed order payment.

Once an order-linked PAYMENT is COMPLETED, two follow-ups must happen:
the order moves PENDING -> CONFIRMED and an escrow is opened for it. Both
steps are idempotent, so the webhook path, manual confirmation and the
reconciliation pass can all run them for the same payment safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from escrow_ledger.domain.enums import TransactionStatus, TransactionType
from escrow_ledger.infrastructure.database.repositories import OrderRepository
from escrow_ledger.logging_config import get_logger
from escrow_ledger.services.escrow_service import EscrowService
from escrow_ledger.services.order_service import OrderService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.config import Settings
    from escrow_ledger.domain.audit import AuditSink
    from escrow_ledger.infrastructure.database.orm_models import Escrow, Transaction

logger = get_logger(__name__)


@dataclass
class SettlementResult:
    order_confirmed: bool = False
    escrow: Escrow | None = None


class PaymentSettlement:
    """Applies the order/escrow consequences of a completed payment."""

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditSink,
        settings: Settings | None = None,
    ) -> None:
        self._order_repo = OrderRepository(session)
        self._orders = OrderService(session, audit, settings)
        self._escrows = EscrowService(session, audit, settings)

    async def settle(self, txn: Transaction) -> SettlementResult:
        """Confirm the order and open its escrow. Safe to repeat."""
        result = SettlementResult()
        if (
            txn.order_id is None
            or txn.type != TransactionType.PAYMENT
            or txn.status != TransactionStatus.COMPLETED
        ):
            return result

        order = await self._order_repo.get_active(txn.order_id)
        if order is None:
            logger.warning(
                "settlement.order_missing",
                transaction_ref=txn.transaction_ref,
                order_id=str(txn.order_id),
            )
            return result

        result.order_confirmed = await self._orders.confirm_payment(order)
        result.escrow = await self._escrows.create_for_payment(txn, order)

        logger.info(
            "settlement.applied",
            transaction_ref=txn.transaction_ref,
            order_id=str(order.id),
            order_confirmed=result.order_confirmed,
            escrow_created=result.escrow is not None,
        )
        return result
