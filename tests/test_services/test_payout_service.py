"""Tests for escrow payouts over the Paystack transfer API.

The gateway is an httpx.MockTransport, so timeouts and rejections can be
produced on demand.
"""

import json
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from escrow_ledger.domain.enums import (
    AuditAction,
    TransactionStatus,
    TransactionType,
    WebhookOutcome,
)
from escrow_ledger.domain.exceptions import (
    ForbiddenError,
    InputValidationError,
    InvalidStateTransitionError,
    PaymentGatewayError,
    PayoutAlreadyInitiatedError,
)
from escrow_ledger.domain.metadata import PayoutEntry, find_entries
from escrow_ledger.infrastructure.database.orm_models import Transaction
from escrow_ledger.infrastructure.database.repositories import (
    EscrowRepository,
    TransactionRepository,
)
from escrow_ledger.infrastructure.paystack_client import PaystackClient
from escrow_ledger.services.escrow_service import EscrowService
from escrow_ledger.services.payout_service import PayoutService
from escrow_ledger.services.webhook_service import WebhookReconciler


class FakePaystack:
    """Scriptable transfer endpoint. Records every request body."""

    def __init__(self):
        self.mode = "ok"
        self.requests = []

    def __call__(self, request):
        body = json.loads(request.content)
        self.requests.append(body)
        if self.mode == "timeout":
            raise httpx.ReadTimeout("read timed out", request=request)
        if self.mode == "drop":
            raise httpx.ReadError("connection reset by peer", request=request)
        if self.mode == "server_error":
            return httpx.Response(500, json={"status": False, "message": "Internal error"})
        if self.mode == "reject":
            return httpx.Response(400, json={"status": False, "message": "Insufficient balance"})
        return httpx.Response(
            200,
            json={
                "status": True,
                "message": "Transfer has been queued",
                "data": {
                    "reference": body["reference"],
                    "transfer_code": f"TRF_live_{len(self.requests)}",
                    "status": "pending",
                    "amount": body["amount"],
                },
            },
        )


@pytest.fixture
def fake_paystack():
    return FakePaystack()


@pytest_asyncio.fixture
async def gateway(fake_paystack):
    client = PaystackClient("sk_test_live", transport=httpx.MockTransport(fake_paystack))
    yield client
    await client.aclose()


@pytest.fixture
def payouts(session, audit, settings, gateway):
    return PayoutService(session, audit, gateway, settings)


@pytest.fixture
def released_escrow(session, audit, settings, pay_order, admin):
    async def _released():
        order, _, _ = await pay_order()
        escrow = await EscrowRepository(session).get_active_for_order(order.id)
        await EscrowService(session, audit, settings).release(admin, escrow.id)
        return escrow

    return _released


class TestCreatePayout:
    @pytest.mark.asyncio
    async def test_pending_transfer_out_is_claimed_and_sent(
        self, payouts, audit, released_escrow, admin, merchant, fake_paystack
    ):
        escrow = await released_escrow()

        result = await payouts.create_payout(admin, escrow.id)

        txn = result.transaction
        assert result.retryable is False
        assert result.transfer_code == "TRF_live_1"
        assert txn.type == TransactionType.TRANSFER_OUT
        assert txn.status == TransactionStatus.PENDING
        assert txn.transaction_ref.startswith("TRF_")
        assert txn.user_id == merchant.user_id
        assert txn.amount == escrow.amount
        assert txn.payment_gateway_ref == "TRF_live_1"
        assert escrow.payout_ref == txn.transaction_ref

        (sent,) = fake_paystack.requests
        assert sent["reference"] == txn.transaction_ref
        assert sent["recipient"] == "RCP_merchant01"
        assert sent["amount"] == 500000

        codes = [e.transfer_code for e in find_entries(txn.metadata_json, PayoutEntry)]
        assert codes == [None, "TRF_live_1"]
        assert audit.actions()[-2:] == [AuditAction.PAYOUT_INITIATED, AuditAction.PAYOUT_PENDING]

    @pytest.mark.asyncio
    async def test_second_payout_rejected(self, payouts, released_escrow, admin, fake_paystack):
        escrow = await released_escrow()
        await payouts.create_payout(admin, escrow.id)

        with pytest.raises(PayoutAlreadyInitiatedError):
            await payouts.create_payout(admin, escrow.id)
        assert len(fake_paystack.requests) == 1

    @pytest.mark.asyncio
    async def test_held_escrow_cannot_be_paid_out(self, session, payouts, pay_order, admin):
        order, _, _ = await pay_order()
        escrow = await EscrowRepository(session).get_active_for_order(order.id)

        with pytest.raises(InvalidStateTransitionError):
            await payouts.create_payout(admin, escrow.id)

    @pytest.mark.asyncio
    async def test_admin_only(self, payouts, released_escrow, merchant):
        escrow = await released_escrow()

        with pytest.raises(ForbiddenError):
            await payouts.create_payout(merchant, escrow.id)

    @pytest.mark.asyncio
    async def test_payee_needs_recipient_code(
        self, session, audit, settings, payouts, place_order, customer, driver, admin
    ):
        order, _ = await place_order()
        escrows = EscrowService(session, audit, settings)
        escrow = await escrows.create_escrow(
            admin,
            order_id=order.id,
            payer_id=customer.user_id,
            payee_id=driver.user_id,
            amount=Decimal("800.00"),
        )
        await escrows.release(admin, escrow.id)

        with pytest.raises(InputValidationError):
            await payouts.create_payout(admin, escrow.id)


class TestGatewayFailures:
    @pytest.mark.asyncio
    async def test_timeout_leaves_pending_and_retry_reuses_reference(
        self, payouts, released_escrow, admin, fake_paystack
    ):
        escrow = await released_escrow()
        fake_paystack.mode = "timeout"

        result = await payouts.create_payout(admin, escrow.id)

        assert result.retryable is True
        assert result.transaction.status == TransactionStatus.PENDING
        assert result.transfer_code is None

        fake_paystack.mode = "ok"
        retried = await payouts.retry_payout(admin, result.transaction.id)

        assert retried.retryable is False
        assert retried.transaction.id == result.transaction.id
        assert [r["reference"] for r in fake_paystack.requests] == [
            result.transaction.transaction_ref
        ] * 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["drop", "server_error"])
    async def test_unanswered_transfer_never_frees_the_payout(
        self, session, payouts, released_escrow, admin, fake_paystack, mode
    ):
        escrow = await released_escrow()
        fake_paystack.mode = mode

        result = await payouts.create_payout(admin, escrow.id)

        assert result.retryable is True
        assert result.transaction.status == TransactionStatus.PENDING
        assert escrow.payout_ref == result.transaction.transaction_ref

        fake_paystack.mode = "ok"
        with pytest.raises(PayoutAlreadyInitiatedError):
            await payouts.create_payout(admin, escrow.id)
        await payouts.retry_payout(admin, result.transaction.id)

        payout_rows = await session.scalars(
            select(Transaction).where(
                Transaction.order_id == escrow.order_id,
                Transaction.type == TransactionType.TRANSFER_OUT,
            )
        )
        assert len(payout_rows.all()) == 1
        assert [r["reference"] for r in fake_paystack.requests] == [
            result.transaction.transaction_ref
        ] * 2

    @pytest.mark.asyncio
    async def test_rejection_fails_row_and_allows_new_payout(
        self, payouts, released_escrow, admin, fake_paystack
    ):
        escrow = await released_escrow()
        fake_paystack.mode = "reject"

        with pytest.raises(PaymentGatewayError):
            await payouts.create_payout(admin, escrow.id)
        failed_ref = escrow.payout_ref

        fake_paystack.mode = "ok"
        result = await payouts.create_payout(admin, escrow.id)

        assert result.transaction.transaction_ref != failed_ref
        assert escrow.payout_ref == result.transaction.transaction_ref

    @pytest.mark.asyncio
    async def test_retry_requires_pending_payout(
        self, session, payouts, released_escrow, admin, fake_paystack
    ):
        escrow = await released_escrow()
        fake_paystack.mode = "reject"
        with pytest.raises(PaymentGatewayError):
            await payouts.create_payout(admin, escrow.id)

        txn = await TransactionRepository(session).get_by_reference(escrow.payout_ref)
        assert txn.status == TransactionStatus.FAILED
        with pytest.raises(InvalidStateTransitionError):
            await payouts.retry_payout(admin, txn.id)


class TestSettlementByWebhook:
    @pytest.mark.asyncio
    async def test_transfer_success_completes_payout(
        self, session, audit, settings, payouts, released_escrow, admin, webhook_body, sign
    ):
        escrow = await released_escrow()
        result = await payouts.create_payout(admin, escrow.id)
        body = webhook_body(
            "transfer.success",
            result.transaction.transaction_ref,
            Decimal("5000.00"),
            transfer_code=result.transfer_code,
        )

        outcome = await WebhookReconciler(session, audit, settings).handle(body, sign(body))

        assert outcome.outcome == WebhookOutcome.APPLIED
        assert result.transaction.status == TransactionStatus.COMPLETED
        with pytest.raises(PayoutAlreadyInitiatedError):
            await payouts.create_payout(admin, escrow.id)


class TestSimulatedGateway:
    @pytest.mark.asyncio
    async def test_simulated_transfer_needs_no_network(
        self, session, audit, settings, released_escrow, admin
    ):
        def refuse(request):
            raise AssertionError("simulated transfers must not reach the network")

        client = PaystackClient("", simulate=True, transport=httpx.MockTransport(refuse))
        escrow = await released_escrow()

        result = await PayoutService(session, audit, client, settings).create_payout(
            admin, escrow.id
        )
        await client.aclose()

        assert result.transfer_code.startswith("TRF_sim_")
        assert result.transaction.status == TransactionStatus.PENDING
