"""Tests for escrow custody: creation, release, refund, disputes, auto-release."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from escrow_ledger.domain.enums import (
    AuditAction,
    EscrowStatus,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from escrow_ledger.domain.exceptions import (
    DuplicateEscrowError,
    EscrowNotFoundError,
    ForbiddenError,
    InputValidationError,
    InvalidStateTransitionError,
    OrderNotDeliveredError,
    OrderNotFoundError,
    UserNotFoundError,
)
from escrow_ledger.domain.metadata import EscrowProvenanceEntry, parse_metadata
from escrow_ledger.infrastructure.database.orm_models import Escrow, Transaction
from escrow_ledger.infrastructure.database.repositories import EscrowRepository
from escrow_ledger.services.escrow_service import EscrowService
from escrow_ledger.services.order_service import OrderService


@pytest.fixture
def service(session, audit, settings):
    return EscrowService(session, audit, settings)


@pytest.fixture
def orders(session, audit, settings):
    return OrderService(session, audit, settings)


@pytest.fixture
def held_escrow(session, pay_order):
    """Factory: escrow HELD for a freshly paid order."""

    async def _held(**kwargs):
        order, txn, _ = await pay_order(**kwargs)
        escrow = await EscrowRepository(session).get_active_for_order(order.id)
        return order, txn, escrow

    return _held


async def _deliver(orders, admin, order):
    for step in (orders.accept, orders.pick_up, orders.deliver):
        await step(admin, order.id)


async def _ledger_rows(session, type_):
    result = await session.execute(select(Transaction).where(Transaction.type == type_.value))
    return list(result.scalars().all())


class TestCreateEscrow:
    @pytest.mark.asyncio
    async def test_customer_creates_held_escrow(self, service, audit, place_order, customer, merchant):
        order, _ = await place_order()

        escrow = await service.create_escrow(
            customer,
            order_id=order.id,
            payer_id=customer.user_id,
            payee_id=merchant.user_id,
            amount=Decimal("5000"),
        )

        assert escrow.status == EscrowStatus.HELD
        assert escrow.amount == Decimal("5000.00")
        assert audit.actions()[-1] == AuditAction.ESCROW_CREATED

    @pytest.mark.asyncio
    async def test_unknown_order(self, service, admin, customer, merchant):
        with pytest.raises(OrderNotFoundError):
            await service.create_escrow(
                admin,
                order_id=uuid.uuid4(),
                payer_id=customer.user_id,
                payee_id=merchant.user_id,
                amount=Decimal("10"),
            )

    @pytest.mark.asyncio
    async def test_unknown_payee(self, service, place_order, admin, customer):
        order, _ = await place_order()

        with pytest.raises(UserNotFoundError):
            await service.create_escrow(
                admin,
                order_id=order.id,
                payer_id=customer.user_id,
                payee_id=uuid.uuid4(),
                amount=Decimal("10"),
            )

    @pytest.mark.asyncio
    async def test_outsider_forbidden(self, service, place_order, make_user, customer, merchant):
        order, _ = await place_order()
        outsider = await make_user(UserRole.CONSUMER)

        with pytest.raises(ForbiddenError):
            await service.create_escrow(
                outsider,
                order_id=order.id,
                payer_id=customer.user_id,
                payee_id=merchant.user_id,
                amount=Decimal("10"),
            )

    @pytest.mark.asyncio
    async def test_second_active_escrow_rejected(self, service, held_escrow, admin, customer, merchant):
        order, _, _ = await held_escrow()

        with pytest.raises(DuplicateEscrowError):
            await service.create_escrow(
                admin,
                order_id=order.id,
                payer_id=customer.user_id,
                payee_id=merchant.user_id,
                amount=Decimal("5000"),
            )

    @pytest.mark.asyncio
    async def test_unique_index_arbitrates_concurrent_insert(self, session, held_escrow, customer, merchant):
        order, _, _ = await held_escrow()

        loser = await EscrowRepository(session).create_if_absent(
            Escrow(
                order_id=order.id,
                payer_id=customer.user_id,
                payee_id=merchant.user_id,
                amount=Decimal("5000.00"),
                status=EscrowStatus.HELD.value,
            )
        )

        assert loser is None
        result = await session.execute(select(Escrow).where(Escrow.order_id == order.id))
        assert len(result.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_payment_escrow_skipped_without_merchant(
        self, service, orders, place_order, admin
    ):
        order, txn = await place_order()
        await orders.update_order(
            admin, order.id, {"merchant_id": None}
        )

        assert await service.create_for_payment(txn, order) is None


class TestRelease:
    @pytest.mark.asyncio
    async def test_payer_releases_after_delivery(
        self, service, session, audit, orders, held_escrow, admin, customer, merchant
    ):
        order, _, escrow = await held_escrow()
        await _deliver(orders, admin, order)

        await service.release(customer, escrow.id, reason="all good")

        assert escrow.status == EscrowStatus.RELEASED
        assert escrow.released_at is not None
        (row,) = await _ledger_rows(session, TransactionType.ESCROW_RELEASE)
        assert row.transaction_ref.startswith("ESC_REL_")
        assert row.status == TransactionStatus.COMPLETED
        assert row.user_id == customer.user_id
        assert row.recipient_id == merchant.user_id
        assert row.amount == escrow.amount
        (provenance,) = parse_metadata(row.metadata_json)
        assert isinstance(provenance, EscrowProvenanceEntry)
        assert provenance.escrow_id == escrow.id
        assert audit.actions()[-1] == AuditAction.ESCROW_RELEASED

    @pytest.mark.asyncio
    async def test_payer_cannot_release_before_delivery(self, service, held_escrow, customer):
        _, _, escrow = await held_escrow()

        with pytest.raises(OrderNotDeliveredError):
            await service.release(customer, escrow.id)
        assert escrow.status == EscrowStatus.HELD

    @pytest.mark.asyncio
    async def test_admin_releases_before_delivery(self, service, held_escrow, admin):
        _, _, escrow = await held_escrow()

        await service.release(admin, escrow.id)

        assert escrow.status == EscrowStatus.RELEASED

    @pytest.mark.asyncio
    async def test_payee_cannot_release(self, service, orders, held_escrow, admin, merchant):
        order, _, escrow = await held_escrow()
        await _deliver(orders, admin, order)

        with pytest.raises(ForbiddenError):
            await service.release(merchant, escrow.id)

    @pytest.mark.asyncio
    async def test_release_is_not_repeatable(self, service, session, held_escrow, admin):
        _, _, escrow = await held_escrow()
        await service.release(admin, escrow.id)

        with pytest.raises(InvalidStateTransitionError):
            await service.release(admin, escrow.id)
        assert len(await _ledger_rows(session, TransactionType.ESCROW_RELEASE)) == 1


class TestRefund:
    @pytest.mark.asyncio
    async def test_admin_refunds_to_payer(self, service, session, held_escrow, admin, customer):
        _, _, escrow = await held_escrow()

        await service.refund(admin, escrow.id, reason="restaurant closed")

        assert escrow.status == EscrowStatus.REFUNDED
        assert escrow.cancelled_at is not None
        (row,) = await _ledger_rows(session, TransactionType.REFUND)
        assert row.user_id == customer.user_id
        assert row.recipient_id == customer.user_id
        assert row.amount == escrow.amount

    @pytest.mark.asyncio
    async def test_reason_required(self, service, held_escrow, admin):
        _, _, escrow = await held_escrow()

        with pytest.raises(InputValidationError):
            await service.refund(admin, escrow.id, reason="   ")

    @pytest.mark.asyncio
    async def test_payer_cannot_refund(self, service, held_escrow, customer):
        _, _, escrow = await held_escrow()

        with pytest.raises(ForbiddenError):
            await service.refund(customer, escrow.id, reason="please")

    @pytest.mark.asyncio
    async def test_released_escrow_cannot_be_refunded(self, service, session, held_escrow, admin):
        _, _, escrow = await held_escrow()
        await service.release(admin, escrow.id)

        with pytest.raises(InvalidStateTransitionError):
            await service.refund(admin, escrow.id, reason="too late")
        assert escrow.status == EscrowStatus.RELEASED
        assert await _ledger_rows(session, TransactionType.REFUND) == []


class TestDisputes:
    @pytest.mark.asyncio
    async def test_dispute_blocks_release_until_resolved(
        self, service, orders, held_escrow, admin, customer, merchant
    ):
        order, _, escrow = await held_escrow()
        await _deliver(orders, admin, order)

        await service.dispute(merchant, escrow.id, reason="customer claims non-delivery")
        assert escrow.status == EscrowStatus.DISPUTED

        with pytest.raises(InvalidStateTransitionError):
            await service.release(customer, escrow.id)

        await service.resolve_dispute(admin, escrow.id, reason="proof of delivery")
        assert escrow.status == EscrowStatus.HELD

        await service.release(customer, escrow.id)
        assert escrow.status == EscrowStatus.RELEASED

    @pytest.mark.asyncio
    async def test_disputed_escrow_can_be_refunded(self, service, held_escrow, admin, customer):
        _, _, escrow = await held_escrow()
        await service.dispute(customer, escrow.id)

        await service.refund(admin, escrow.id, reason="dispute upheld")

        assert escrow.status == EscrowStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_only_admin_resolves(self, service, held_escrow, customer):
        _, _, escrow = await held_escrow()
        await service.dispute(customer, escrow.id)

        with pytest.raises(ForbiddenError):
            await service.resolve_dispute(customer, escrow.id)

    @pytest.mark.asyncio
    async def test_outsider_cannot_dispute(self, service, held_escrow, driver):
        _, _, escrow = await held_escrow()

        with pytest.raises(ForbiddenError):
            await service.dispute(driver, escrow.id)


class TestEditsAndDelete:
    @pytest.mark.asyncio
    async def test_admin_edits_open_escrow(self, service, held_escrow, admin):
        _, _, escrow = await held_escrow()

        await service.update_escrow(admin, escrow.id, {"paystack_escrow_id": "ESCROW_42"})

        assert escrow.paystack_escrow_id == "ESCROW_42"

    @pytest.mark.asyncio
    async def test_settled_escrow_is_frozen(self, service, held_escrow, admin):
        _, _, escrow = await held_escrow()
        await service.release(admin, escrow.id)

        with pytest.raises(InvalidStateTransitionError):
            await service.update_escrow(admin, escrow.id, {"amount": Decimal("1")})

    @pytest.mark.asyncio
    async def test_cannot_delete_held_escrow(self, service, held_escrow, admin):
        _, _, escrow = await held_escrow()

        with pytest.raises(InvalidStateTransitionError):
            await service.soft_delete(admin, escrow.id)

    @pytest.mark.asyncio
    async def test_delete_settled_escrow(self, service, held_escrow, admin):
        _, _, escrow = await held_escrow()
        await service.refund(admin, escrow.id, reason="cancelled")

        await service.soft_delete(admin, escrow.id)

        with pytest.raises(EscrowNotFoundError):
            await service.get_escrow(admin, escrow.id)

    @pytest.mark.asyncio
    async def test_list_scoped_to_parties(self, service, held_escrow, driver, merchant):
        await held_escrow()

        _, merchant_total = await service.list_escrows(merchant)
        _, driver_total = await service.list_escrows(driver)

        assert merchant_total == 1
        assert driver_total == 0


class TestAutoRelease:
    @pytest.mark.asyncio
    async def test_releases_only_after_deadline(self, service, orders, held_escrow, admin, audit):
        order, _, escrow = await held_escrow()
        await _deliver(orders, admin, order)

        assert await service.auto_release_expired(datetime.now(UTC)) == []
        assert escrow.status == EscrowStatus.HELD

        later = datetime.now(UTC) + timedelta(hours=49)
        released = await service.auto_release_expired(later)

        assert [e.id for e in released] == [escrow.id]
        assert escrow.status == EscrowStatus.RELEASED
        entry = audit.entries[-1]
        assert entry.action == AuditAction.ESCROW_RELEASED
        assert entry.actor == UserRole.SYSTEM.value
        assert entry.details["automatic"] is True

    @pytest.mark.asyncio
    async def test_skips_disputed_and_undelivered(self, service, orders, held_escrow, admin, customer):
        disputed_order, _, disputed = await held_escrow()
        await _deliver(orders, admin, disputed_order)
        await service.dispute(customer, disputed.id)
        _, _, undelivered = await held_escrow()

        later = datetime.now(UTC) + timedelta(days=30)
        assert await service.auto_release_expired(later) == []
        assert disputed.status == EscrowStatus.DISPUTED
        assert undelivered.status == EscrowStatus.HELD
