"""HTTP tests for the escrow routes."""

import uuid

import pytest

from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import UserRole

CONSUMER = UserRole.CONSUMER.value
MERCHANT = UserRole.MERCHANT.value
DRIVER = UserRole.DRIVER.value
ADMIN = UserRole.ADMIN.value


@pytest.fixture
def held_escrow(api_client, api_pay_order, api_users, auth_headers):
    """Factory: a paid order and the escrow its payment created."""

    async def _make():
        order, txn = await api_pay_order()
        response = await api_client.get(
            "/api/v1/escrows", headers=auth_headers(api_users[CONSUMER])
        )
        (escrow,) = [e for e in response.json()["items"] if e["order_id"] == order["id"]]
        return order, escrow

    return _make


async def _deliver(api_client, api_users, auth_headers, order_id):
    url = f"/api/v1/orders/{order_id}"
    await api_client.post(f"{url}/accept", headers=auth_headers(api_users[MERCHANT]))
    await api_client.post(f"{url}/pickup", headers=auth_headers(api_users[DRIVER]))
    response = await api_client.post(f"{url}/deliver", headers=auth_headers(api_users[DRIVER]))
    assert response.json()["status"] == "DELIVERED"


class TestCreateEscrow:
    @pytest.mark.asyncio
    async def test_payment_webhook_creates_held_escrow(self, held_escrow, api_users):
        _, escrow = await held_escrow()

        assert escrow["status"] == "HELD"
        assert escrow["amount"] == "5000.00"
        assert escrow["payer_id"] == str(api_users[CONSUMER].user_id)
        assert escrow["payee_id"] == str(api_users[MERCHANT].user_id)

    @pytest.mark.asyncio
    async def test_second_escrow_for_order_conflicts(
        self, api_client, held_escrow, api_users, auth_headers
    ):
        order, _ = await held_escrow()

        response = await api_client.post(
            "/api/v1/escrows",
            json={
                "order_id": order["id"],
                "payer_id": str(api_users[CONSUMER].user_id),
                "payee_id": str(api_users[MERCHANT].user_id),
                "amount": "5000.00",
            },
            headers=auth_headers(api_users[CONSUMER]),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "DUPLICATE_ESCROW"

    @pytest.mark.asyncio
    async def test_manual_escrow(self, api_client, api_place_order, api_users, auth_headers):
        order, _ = await api_place_order()

        response = await api_client.post(
            "/api/v1/escrows",
            json={
                "order_id": order["id"],
                "payer_id": str(api_users[CONSUMER].user_id),
                "payee_id": str(api_users[MERCHANT].user_id),
                "amount": "5000.00",
            },
            headers=auth_headers(api_users[CONSUMER]),
        )

        assert response.status_code == 201
        assert response.json()["status"] == "HELD"


class TestCustody:
    @pytest.mark.asyncio
    async def test_release_needs_delivery(self, api_client, held_escrow, api_users, auth_headers):
        order, escrow = await held_escrow()
        url = f"/api/v1/escrows/{escrow['id']}/release"

        early = await api_client.post(url, headers=auth_headers(api_users[CONSUMER]))
        assert early.status_code == 412
        assert early.json()["error"] == "ORDER_NOT_DELIVERED"

        await _deliver(api_client, api_users, auth_headers, order["id"])
        released = await api_client.post(
            url, json={"reason": "food arrived"}, headers=auth_headers(api_users[CONSUMER])
        )
        assert released.status_code == 200
        assert released.json()["status"] == "RELEASED"
        assert released.json()["released_at"] is not None

        again = await api_client.post(url, headers=auth_headers(api_users[CONSUMER]))
        assert again.status_code == 409

    @pytest.mark.asyncio
    async def test_payee_cannot_release(self, api_client, held_escrow, api_users, auth_headers):
        _, escrow = await held_escrow()

        response = await api_client.post(
            f"/api/v1/escrows/{escrow['id']}/release", headers=auth_headers(api_users[MERCHANT])
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_dispute_then_refund(self, api_client, held_escrow, api_users, auth_headers):
        _, escrow = await held_escrow()
        url = f"/api/v1/escrows/{escrow['id']}"

        disputed = await api_client.post(
            f"{url}/dispute",
            json={"reason": "wrong items"},
            headers=auth_headers(api_users[CONSUMER]),
        )
        assert disputed.json()["status"] == "DISPUTED"

        forbidden = await api_client.post(
            f"{url}/refund", json={"reason": "x"}, headers=auth_headers(api_users[CONSUMER])
        )
        assert forbidden.status_code == 403

        refunded = await api_client.post(
            f"{url}/refund",
            json={"reason": "merchant confirmed the mix-up"},
            headers=auth_headers(api_users[ADMIN]),
        )
        assert refunded.status_code == 200
        assert refunded.json()["status"] == "REFUNDED"

    @pytest.mark.asyncio
    async def test_resolve_dispute_returns_to_held(
        self, api_client, held_escrow, api_users, auth_headers
    ):
        _, escrow = await held_escrow()
        url = f"/api/v1/escrows/{escrow['id']}"
        await api_client.post(f"{url}/dispute", headers=auth_headers(api_users[CONSUMER]))

        response = await api_client.post(
            f"{url}/resolve-dispute", headers=auth_headers(api_users[ADMIN])
        )

        assert response.status_code == 200
        assert response.json()["status"] == "HELD"

    @pytest.mark.asyncio
    async def test_unknown_reason_field_rejected(
        self, api_client, held_escrow, api_users, auth_headers
    ):
        _, escrow = await held_escrow()

        response = await api_client.post(
            f"/api/v1/escrows/{escrow['id']}/dispute",
            json={"why": "no"},
            headers=auth_headers(api_users[CONSUMER]),
        )

        assert response.status_code == 400


class TestQueries:
    @pytest.mark.asyncio
    async def test_outsider_sees_nothing(self, api_client, held_escrow, auth_headers):
        _, escrow = await held_escrow()
        outsider = Caller(user_id=uuid.uuid4(), role=UserRole.CONSUMER)

        listing = await api_client.get("/api/v1/escrows", headers=auth_headers(outsider))
        detail = await api_client.get(
            f"/api/v1/escrows/{escrow['id']}", headers=auth_headers(outsider)
        )

        assert listing.json()["total"] == 0
        assert detail.status_code == 403

    @pytest.mark.asyncio
    async def test_admin_edit_and_delete_after_settlement(
        self, api_client, held_escrow, api_users, auth_headers
    ):
        _, escrow = await held_escrow()
        url = f"/api/v1/escrows/{escrow['id']}"
        admin = auth_headers(api_users[ADMIN])

        edited = await api_client.put(url, json={"paystack_escrow_id": "ESC_ext_9"}, headers=admin)
        assert edited.json()["paystack_escrow_id"] == "ESC_ext_9"

        held = await api_client.delete(url, headers=admin)
        assert held.status_code == 409

        await api_client.post(f"{url}/refund", json={"reason": "order lost"}, headers=admin)
        deleted = await api_client.delete(url, headers=admin)
        assert deleted.status_code == 200

        gone = await api_client.get(url, headers=admin)
        assert gone.status_code == 404
