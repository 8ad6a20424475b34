"""Shared test fixtures for the escrow ledger test suite.

Provides:
    - An in-memory SQLite database (aiosqlite) with the full schema
    - Settings with a known webhook secret and simulated transfers
    - Marketplace users (customer, merchant, driver) and an admin caller
    - Helpers for building signed Paystack webhook bodies and paid orders
    - An HTTP client for the FastAPI app (httpx.ASGITransport)
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

import json
import uuid
from decimal import Decimal
from typing import Any

import httpx
import pytest
import pytest_asyncio

from escrow_ledger.api.deps import get_db_session
from escrow_ledger.config import Settings, get_settings
from escrow_ledger.domain.audit import InMemoryAuditSink
from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import TransactionType, UserRole
from escrow_ledger.domain.money import to_minor_units
from escrow_ledger.infrastructure.database.engine import (
    create_engine_for_url,
    make_session_factory,
)
from escrow_ledger.infrastructure.database.orm_models import Base, User
from escrow_ledger.infrastructure.paystack_client import PaystackClient
from escrow_ledger.main import create_app
from escrow_ledger.services.order_service import OrderService
from escrow_ledger.services.transaction_service import TransactionService
from escrow_ledger.services.webhook_service import WebhookReconciler, compute_signature

WEBHOOK_SECRET = "sk_test_secret"


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any .env file on the developer's machine."""
    return Settings(
        _env_file=None,
        app_env="test",
        paystack_secret_key=WEBHOOK_SECRET,
        paystack_webhook_secret="",
        paystack_simulate=True,
        escrow_sweep_interval_seconds=0,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_engine_for_url("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit() -> InMemoryAuditSink:
    return InMemoryAuditSink()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(session):
    """Factory inserting a user and returning a caller acting as them."""

    async def _make(role: UserRole = UserRole.CONSUMER, recipient_code: str | None = None) -> Caller:
        user = User(
            email=f"{uuid.uuid4().hex[:12]}@example.com",
            full_name=f"Test {role.value.title()}",
            role=role.value,
            paystack_recipient_code=recipient_code,
        )
        session.add(user)
        await session.flush()
        return Caller(user_id=user.id, role=role)

    return _make


@pytest_asyncio.fixture
async def customer(make_user) -> Caller:
    return await make_user(UserRole.CONSUMER)


@pytest_asyncio.fixture
async def merchant(make_user) -> Caller:
    return await make_user(UserRole.MERCHANT, recipient_code="RCP_merchant01")


@pytest_asyncio.fixture
async def driver(make_user) -> Caller:
    return await make_user(UserRole.DRIVER)


@pytest.fixture
def admin() -> Caller:
    return Caller(user_id=uuid.UUID("12345678-1234-5678-1234-567812345678"), role=UserRole.ADMIN)


# ---------------------------------------------------------------------------
# Webhooks & orders
# ---------------------------------------------------------------------------


@pytest.fixture
def webhook_body():
    """Build a Paystack event body. Amounts are given in major units."""

    def _build(
        event: str,
        reference: str,
        amount: Decimal | None = None,
        currency: str = "NGN",
        **data: Any,
    ) -> bytes:
        payload: dict[str, Any] = {
            "reference": reference,
            "currency": currency,
            "status": "success",
            "id": 302961,
            **data,
        }
        if amount is not None:
            payload["amount"] = to_minor_units(amount)
        return json.dumps({"event": event, "data": payload}).encode()

    return _build


@pytest.fixture
def sign():
    def _sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
        return compute_signature(secret, body)

    return _sign


@pytest.fixture
def place_order(session, audit, settings, customer, merchant, driver):
    """Factory: PENDING order plus its PENDING payment transaction."""

    async def _place(amount: Decimal = Decimal("5000.00"), with_driver: bool = True):
        order = await OrderService(session, audit, settings).create_order(
            customer,
            order_type="FOOD",
            total_amount=amount,
            delivery_address="12 Admiralty Way, Lekki",
            pickup_address="5 Allen Avenue, Ikeja",
            merchant_id=merchant.user_id,
            driver_id=driver.user_id if with_driver else None,
        )
        txn = await TransactionService(session, audit, settings).create_transaction(
            customer,
            type_=TransactionType.PAYMENT,
            amount=amount,
            order_id=order.id,
            payment_method="card",
        )
        return order, txn

    return _place


@pytest.fixture
def pay_order(session, audit, settings, place_order, webhook_body, sign):
    """Factory: order paid through a signed charge.success delivery."""

    async def _pay(amount: Decimal = Decimal("5000.00"), with_driver: bool = True):
        order, txn = await place_order(amount, with_driver=with_driver)
        body = webhook_body("charge.success", txn.transaction_ref, amount)
        result = await WebhookReconciler(session, audit, settings).handle(body, sign(body))
        return order, txn, result

    return _pay


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


@pytest.fixture
def auth_headers():
    """Identity headers as set by the upstream identity provider."""

    def _headers(caller: Caller) -> dict[str, str]:
        return {"X-User-Id": str(caller.user_id), "X-User-Role": caller.role.value}

    return _headers


@pytest_asyncio.fixture
async def api_users(session_factory) -> dict[str, Caller]:
    """Committed customer, merchant and driver for HTTP tests, plus an admin."""
    users: dict[str, Caller] = {}
    async with session_factory() as session:
        for role, recipient_code in (
            (UserRole.CONSUMER, None),
            (UserRole.MERCHANT, "RCP_merchant01"),
            (UserRole.DRIVER, None),
        ):
            user = User(
                email=f"{uuid.uuid4().hex[:12]}@example.com",
                full_name=f"Api {role.value.title()}",
                role=role.value,
                paystack_recipient_code=recipient_code,
            )
            session.add(user)
            await session.flush()
            users[role.value] = Caller(user_id=user.id, role=role)
        await session.commit()
    users[UserRole.ADMIN.value] = Caller(user_id=uuid.uuid4(), role=UserRole.ADMIN)
    return users


@pytest_asyncio.fixture
async def api_client(session_factory, monkeypatch):
    """HTTP client for the app, bound to the in-memory database.

    Each request gets its own unit of work, committed on success like
    get_async_session. Transfers are simulated.
    """
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("PAYSTACK_SECRET_KEY", WEBHOOK_SECRET)
    monkeypatch.setenv("PAYSTACK_WEBHOOK_SECRET", "")
    monkeypatch.setenv("PAYSTACK_SIMULATE", "true")
    monkeypatch.setenv("ESCROW_SWEEP_INTERVAL_SECONDS", "0")
    get_settings.cache_clear()

    app = create_app()

    async def _session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = _session
    app.state.paystack = PaystackClient(WEBHOOK_SECRET, simulate=True)

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        yield client

    await app.state.paystack.aclose()
    get_settings.cache_clear()


@pytest.fixture
def api_place_order(api_client, api_users, auth_headers):
    """Factory: place an order and its payment over HTTP; returns both bodies."""

    async def _place(amount: str = "5000.00") -> tuple[dict[str, Any], dict[str, Any]]:
        customer = api_users[UserRole.CONSUMER.value]
        response = await api_client.post(
            "/api/v1/orders",
            json={
                "order_type": "FOOD",
                "total_amount": amount,
                "delivery_address": "12 Admiralty Way, Lekki",
                "pickup_address": "5 Allen Avenue, Ikeja",
                "merchant_id": str(api_users[UserRole.MERCHANT.value].user_id),
                "driver_id": str(api_users[UserRole.DRIVER.value].user_id),
            },
            headers=auth_headers(customer),
        )
        assert response.status_code == 201, response.text
        order = response.json()
        response = await api_client.post(
            "/api/v1/transactions",
            json={
                "type": "PAYMENT",
                "amount": amount,
                "order_id": order["id"],
                "payment_method": "card",
            },
            headers=auth_headers(customer),
        )
        assert response.status_code == 201, response.text
        return order, response.json()

    return _place


@pytest.fixture
def api_pay_order(api_client, api_place_order, webhook_body, sign):
    """Factory: an order paid through a signed webhook delivery over HTTP."""

    async def _pay(amount: str = "5000.00") -> tuple[dict[str, Any], dict[str, Any]]:
        order, txn = await api_place_order(amount)
        body = webhook_body("charge.success", txn["transaction_ref"], Decimal(amount))
        response = await api_client.post(
            "/api/v1/webhooks/paystack",
            content=body,
            headers={"x-paystack-signature": sign(body), "content-type": "application/json"},
        )
        assert response.json() == {"status": "ok", "outcome": "applied"}, response.text
        return order, txn

    return _pay
