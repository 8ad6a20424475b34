"""Reconciliation Service — idempotent repair passes.

Two passes run periodically (from the app lifespan) and on demand (admin API):

    reconcile_completed_payments
        A COMPLETED order payment whose order/escrow follow-ups never happened
        (crash between the ledger write and the settlement) is settled again.
        Payments captured for orders that can no longer hold an escrow are
        reported for an operator refund, never settled.
    auto_release_expired
        HELD escrows of DELIVERED orders whose confirmation window elapsed are
        released to the payee.

Both are safe to run concurrently with webhooks and with each other: every
step is a conditional update or guarded by the active-escrow unique index.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from escrow_ledger.domain.exceptions import EscrowLedgerError
from escrow_ledger.infrastructure.database.engine import session_scope
from escrow_ledger.infrastructure.database.repositories import TransactionRepository
from escrow_ledger.logging_config import get_logger
from escrow_ledger.services.escrow_service import EscrowService
from escrow_ledger.services.settlement import PaymentSettlement

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_ledger.config import Settings
    from escrow_ledger.domain.audit import AuditSink
    from escrow_ledger.infrastructure.database.orm_models import Escrow

logger = get_logger(__name__)


@dataclass
class ReconcileReport:
    examined: int = 0
    escrows_created: int = 0
    orders_confirmed: int = 0
    # Captured payments whose order can no longer hold the funds.
    needs_refund: list[str] = field(default_factory=list)


class ReconciliationService:
    """Runs the repair passes inside the caller's session."""

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditSink,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._txn_repo = TransactionRepository(session)
        self._settlement = PaymentSettlement(session, audit, settings)
        self._escrows = EscrowService(session, audit, settings)

    async def reconcile_completed_payments(self) -> ReconcileReport:
        report = ReconcileReport()
        for txn in await self._txn_repo.completed_order_payments_without_escrow():
            report.examined += 1
            try:
                async with self._session.begin_nested():
                    result = await self._settlement.settle(txn)
            except (EscrowLedgerError, SQLAlchemyError) as exc:
                logger.error(
                    "reconcile.settlement_failed",
                    transaction_ref=txn.transaction_ref,
                    error=str(exc),
                )
                continue
            report.orders_confirmed += int(result.order_confirmed)
            report.escrows_created += int(result.escrow is not None)

        for txn in await self._txn_repo.completed_payments_without_custody():
            report.needs_refund.append(txn.transaction_ref)
            logger.warning(
                "reconcile.payment_needs_refund",
                transaction_ref=txn.transaction_ref,
                order_id=str(txn.order_id),
                amount=str(txn.amount),
            )

        logger.info(
            "reconcile.completed",
            examined=report.examined,
            escrows_created=report.escrows_created,
            orders_confirmed=report.orders_confirmed,
            needs_refund=len(report.needs_refund),
        )
        return report

    async def auto_release_expired(self, now: datetime | None = None) -> list[Escrow]:
        return await self._escrows.auto_release_expired(now)


async def run_periodic_sweeps(
    session_factory: async_sessionmaker[AsyncSession] | None,
    audit_factory: Callable[[AsyncSession], AuditSink],
    interval_seconds: float,
    stop: asyncio.Event,
) -> None:
    """Run both passes every `interval_seconds` until `stop` is set.

    Each pass gets its own unit of work; a failing pass is logged and the
    loop carries on.
    """
    logger.info("sweeps.started", interval_seconds=interval_seconds)
    while not stop.is_set():
        try:
            async with session_scope(session_factory) as session:
                service = ReconciliationService(session, audit_factory(session))
                await service.reconcile_completed_payments()
                await service.auto_release_expired()
        except (EscrowLedgerError, SQLAlchemyError) as exc:
            logger.error("sweeps.pass_failed", error=str(exc))

        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except TimeoutError:
            continue
    logger.info("sweeps.stopped")
