"""HTTP tests for operator routes and the health check."""

import pytest

from escrow_ledger.config import get_settings
from escrow_ledger.domain.enums import UserRole
from escrow_ledger.infrastructure.database.engine import close_db

CONSUMER = UserRole.CONSUMER.value
ADMIN = UserRole.ADMIN.value


class TestOperatorRoutes:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("POST", "/api/v1/admin/reconcile"),
            ("POST", "/api/v1/admin/escrows/auto-release"),
            ("GET", "/api/v1/audit-entries"),
        ],
    )
    async def test_admin_only(self, api_client, api_users, auth_headers, method, path):
        response = await api_client.request(method, path, headers=auth_headers(api_users[CONSUMER]))

        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_reconcile_with_nothing_to_do(self, api_client, api_pay_order, api_users, auth_headers):
        await api_pay_order()

        response = await api_client.post(
            "/api/v1/admin/reconcile", headers=auth_headers(api_users[ADMIN])
        )

        assert response.status_code == 200
        assert response.json() == {
            "examined": 0,
            "escrows_created": 0,
            "orders_confirmed": 0,
            "needs_refund": [],
        }

    @pytest.mark.asyncio
    async def test_auto_release_before_window(
        self, api_client, api_pay_order, api_users, auth_headers
    ):
        await api_pay_order()

        response = await api_client.post(
            "/api/v1/admin/escrows/auto-release", headers=auth_headers(api_users[ADMIN])
        )

        assert response.json() == {"released": [], "count": 0}

    @pytest.mark.asyncio
    async def test_audit_trail_of_a_paid_order(
        self, api_client, api_pay_order, api_users, auth_headers
    ):
        order, txn = await api_pay_order()
        headers = auth_headers(api_users[ADMIN])

        for_order = await api_client.get(
            "/api/v1/audit-entries",
            params={"entity_type": "ORDER", "entity_id": order["id"]},
            headers=headers,
        )
        payments = await api_client.get(
            "/api/v1/audit-entries", params={"action": "PAYMENT_SUCCESS"}, headers=headers
        )

        assert sorted(e["action"] for e in for_order.json()) == ["ORDER_CONFIRMED", "ORDER_CREATED"]
        (payment,) = payments.json()
        assert payment["entity_id"] == txn["id"]
        assert payment["actor"] == "SYSTEM"


class TestHealth:
    @pytest.mark.asyncio
    async def test_ok_without_redis(self, api_client, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
        get_settings.cache_clear()
        try:
            response = await api_client.get("/api/v1/health")
        finally:
            await close_db()

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["database"] == "healthy"
        assert body["redis"] == "disabled"
        assert body["version"] == "0.1.0"
