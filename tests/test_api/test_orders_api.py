"""HTTP tests for the order routes."""

import pytest

from escrow_ledger.domain.enums import UserRole

CONSUMER = UserRole.CONSUMER.value
MERCHANT = UserRole.MERCHANT.value
DRIVER = UserRole.DRIVER.value
ADMIN = UserRole.ADMIN.value


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_place_order(self, api_place_order, api_users):
        order, txn = await api_place_order("1500.50")

        assert order["status"] == "PENDING"
        assert order["order_number"].startswith("ORD")
        assert order["total_amount"] == "1500.50"
        assert order["customer_id"] == str(api_users[CONSUMER].user_id)
        assert txn["transaction_ref"].startswith("TXN_")
        assert txn["order_id"] == order["id"]

    @pytest.mark.asyncio
    async def test_missing_identity_headers(self, api_client):
        response = await api_client.get("/api/v1/orders")

        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_system_role_cannot_be_asserted(self, api_client, api_users):
        response = await api_client.get(
            "/api/v1/orders",
            headers={"X-User-Id": str(api_users[CONSUMER].user_id), "X-User-Role": "SYSTEM"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_body_is_a_validation_error(self, api_client, api_users, auth_headers):
        response = await api_client.post(
            "/api/v1/orders",
            json={"order_type": "FOOD", "total_amount": "-5", "delivery_address": ""},
            headers=auth_headers(api_users[CONSUMER]),
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["request_id"] == response.headers["X-Request-ID"]
        assert {tuple(d["loc"]) for d in body["details"]} >= {
            ("body", "total_amount"),
            ("body", "delivery_address"),
        }

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, api_client, api_users, auth_headers):
        response = await api_client.get(
            "/api/v1/orders",
            headers={**auth_headers(api_users[CONSUMER]), "X-Request-ID": "req-123"},
        )

        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_paid_order_through_delivery(
        self, api_client, api_pay_order, api_users, auth_headers
    ):
        order, _ = await api_pay_order()
        url = f"/api/v1/orders/{order['id']}"

        confirmed = await api_client.get(url, headers=auth_headers(api_users[DRIVER]))
        assert confirmed.json()["status"] == "CONFIRMED"

        steps = [
            ("accept", MERCHANT, "ACCEPTED"),
            ("pickup", DRIVER, "PICKED_UP"),
            ("transit", DRIVER, "IN_TRANSIT"),
            ("deliver", DRIVER, "DELIVERED"),
        ]
        for action, role, expected in steps:
            response = await api_client.post(
                f"{url}/{action}", headers=auth_headers(api_users[role])
            )
            assert response.status_code == 200, response.text
            assert response.json()["status"] == expected

        delivered = response.json()
        assert delivered["delivered_at"] is not None
        assert delivered["confirmation_deadline"] is not None

    @pytest.mark.asyncio
    async def test_skipping_pickup_is_a_conflict(
        self, api_client, api_place_order, api_users, auth_headers
    ):
        order, _ = await api_place_order()

        response = await api_client.post(
            f"/api/v1/orders/{order['id']}/deliver", headers=auth_headers(api_users[DRIVER])
        )

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE"

    @pytest.mark.asyncio
    async def test_customer_cannot_accept(self, api_client, api_place_order, api_users, auth_headers):
        order, _ = await api_place_order()

        response = await api_client.post(
            f"/api/v1/orders/{order['id']}/accept", headers=auth_headers(api_users[CONSUMER])
        )

        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_cancel_with_reason(self, api_client, api_place_order, api_users, auth_headers):
        order, _ = await api_place_order()

        response = await api_client.post(
            f"/api/v1/orders/{order['id']}/cancel",
            json={"reason": "changed my mind"},
            headers=auth_headers(api_users[CONSUMER]),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_is_scoped_and_paginated(
        self, api_client, api_place_order, api_users, auth_headers
    ):
        await api_place_order()
        await api_place_order()

        mine = await api_client.get(
            "/api/v1/orders", params={"limit": 1}, headers=auth_headers(api_users[CONSUMER])
        )
        everything = await api_client.get("/api/v1/orders", headers=auth_headers(api_users[ADMIN]))

        assert mine.json()["total"] == 2
        assert len(mine.json()["items"]) == 1
        assert everything.json()["total"] == 2

    @pytest.mark.asyncio
    async def test_unknown_order(self, api_client, api_users, auth_headers):
        response = await api_client.get(
            "/api/v1/orders/00000000-0000-0000-0000-000000000001",
            headers=auth_headers(api_users[ADMIN]),
        )

        assert response.status_code == 404
        assert response.json()["error"] == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_update_and_delete(self, api_client, api_place_order, api_users, auth_headers):
        order, _ = await api_place_order()
        url = f"/api/v1/orders/{order['id']}"
        headers = auth_headers(api_users[CONSUMER])

        updated = await api_client.put(url, json={"total_amount": "6000.00"}, headers=headers)
        assert updated.status_code == 200
        assert updated.json()["total_amount"] == "6000.00"

        deleted = await api_client.delete(url, headers=headers)
        assert deleted.status_code == 200
        assert deleted.json()["status"] == "CANCELLED"

    @pytest.mark.asyncio
    async def test_delete_blocked_while_funds_held(
        self, api_client, api_pay_order, api_users, auth_headers
    ):
        order, _ = await api_pay_order()

        response = await api_client.delete(
            f"/api/v1/orders/{order['id']}", headers=auth_headers(api_users[CONSUMER])
        )

        assert response.status_code == 409
