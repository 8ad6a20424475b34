"""Concurrency tests against a file-backed SQLite database.

Each task gets its own session and connection, so the conditional updates
and unique constraints are exercised the way concurrent requests hit them.
"""

import asyncio
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from escrow_ledger.domain.audit import InMemoryAuditSink
from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import (
    AuditAction,
    TransactionStatus,
    TransactionType,
    UserRole,
    WebhookOutcome,
)
from escrow_ledger.domain.exceptions import DuplicateReferenceError
from escrow_ledger.infrastructure.database.engine import (
    create_engine_for_url,
    make_session_factory,
)
from escrow_ledger.infrastructure.database.orm_models import Base, Escrow, Transaction, User
from escrow_ledger.services.order_service import OrderService
from escrow_ledger.services.transaction_service import TransactionService
from escrow_ledger.services.webhook_service import WebhookReconciler

DELIVERIES = 5


@pytest_asyncio.fixture
async def file_factory(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


async def _seed_user(factory, role, recipient_code=None):
    async with factory() as session:
        user = User(
            email=f"{uuid.uuid4().hex[:12]}@example.com",
            full_name=f"Test {role.value.title()}",
            role=role.value,
            paystack_recipient_code=recipient_code,
        )
        session.add(user)
        await session.commit()
        return Caller(user_id=user.id, role=role)


class TestConcurrentRedelivery:
    @pytest.mark.asyncio
    async def test_same_charge_success_settles_once(
        self, file_factory, settings, webhook_body, sign
    ):
        customer = await _seed_user(file_factory, UserRole.CONSUMER)
        merchant = await _seed_user(file_factory, UserRole.MERCHANT, "RCP_merchant01")
        async with file_factory() as session:
            audit = InMemoryAuditSink()
            order = await OrderService(session, audit, settings).create_order(
                customer,
                order_type="FOOD",
                total_amount=Decimal("5000.00"),
                delivery_address="12 Admiralty Way, Lekki",
                pickup_address="5 Allen Avenue, Ikeja",
                merchant_id=merchant.user_id,
            )
            txn = await TransactionService(session, audit, settings).create_transaction(
                customer,
                type_=TransactionType.PAYMENT,
                amount=Decimal("5000.00"),
                order_id=order.id,
                payment_method="card",
            )
            await session.commit()

        body = webhook_body("charge.success", txn.transaction_ref, Decimal("5000.00"))
        signature = sign(body)
        audit = InMemoryAuditSink()

        async def deliver():
            async with file_factory() as session:
                result = await WebhookReconciler(session, audit, settings).handle(body, signature)
                await session.commit()
                return result.outcome

        outcomes = await asyncio.gather(*(deliver() for _ in range(DELIVERIES)))

        assert outcomes.count(WebhookOutcome.APPLIED) == 1
        assert outcomes.count(WebhookOutcome.ALREADY_APPLIED) == DELIVERIES - 1
        applied = [
            e
            for e in audit.entries
            if e.action == AuditAction.PAYMENT_SUCCESS
            and e.details.get("outcome") == WebhookOutcome.APPLIED
        ]
        assert len(applied) == 1

        async with file_factory() as session:
            escrows = await session.scalar(
                select(func.count()).select_from(Escrow).where(Escrow.order_id == order.id)
            )
            stored = await session.scalar(
                select(Transaction).where(Transaction.transaction_ref == txn.transaction_ref)
            )
        assert escrows == 1
        assert stored.status == TransactionStatus.COMPLETED


class TestConcurrentReferenceAllocation:
    @pytest.mark.asyncio
    async def test_colliding_reference_admits_one_writer(self, file_factory, settings):
        customer = await _seed_user(file_factory, UserRole.CONSUMER)

        async def create():
            async with file_factory() as session:
                service = TransactionService(
                    session,
                    InMemoryAuditSink(),
                    settings,
                    reference_factory=lambda type_: "TRF_IN_1700000000000_FIXED1",
                )
                txn = await service.create_transaction(
                    customer, type_=TransactionType.TRANSFER_IN, amount=Decimal("100.00")
                )
                await session.commit()
                return txn.transaction_ref

        results = await asyncio.gather(create(), create(), return_exceptions=True)

        created = [r for r in results if isinstance(r, str)]
        rejected = [r for r in results if isinstance(r, DuplicateReferenceError)]
        assert created == ["TRF_IN_1700000000000_FIXED1"]
        assert len(rejected) == 1

        async with file_factory() as session:
            rows = await session.scalar(select(func.count()).select_from(Transaction))
        assert rows == 1

    @pytest.mark.asyncio
    async def test_fresh_reference_after_collision(self, file_factory, settings):
        customer = await _seed_user(file_factory, UserRole.CONSUMER)
        refs = iter(
            [
                "TRF_IN_1700000000000_FIXED1",
                "TRF_IN_1700000000000_FIXED1",
                "TRF_IN_1700000000001_FRESH1",
            ]
        )

        async def create():
            async with file_factory() as session:
                service = TransactionService(
                    session, InMemoryAuditSink(), settings, reference_factory=lambda _: next(refs)
                )
                txn = await service.create_transaction(
                    customer, type_=TransactionType.TRANSFER_IN, amount=Decimal("100.00")
                )
                await session.commit()
                return txn.transaction_ref

        results = await asyncio.gather(create(), create())

        assert sorted(results) == [
            "TRF_IN_1700000000000_FIXED1",
            "TRF_IN_1700000000001_FRESH1",
        ]
