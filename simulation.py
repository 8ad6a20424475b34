#!/usr/bin/env python3
"""Escrow Ledger — End-to-End Simulation.

Drives the service layer the way the API would, with a simulated Paystack
sending signed webhooks:

    Scenario 1: Happy Path
        - Customer places an order and starts a payment
        - Paystack delivers charge.success -> order CONFIRMED, escrow HELD
        - Merchant accepts, driver picks up and delivers
        - Customer releases the escrow -> ESCROW_RELEASE row
        - Admin pays the merchant out (simulated transfer) and
          transfer.success completes the TRANSFER_OUT row

    Scenario 2: Hostile Webhooks
        - The same charge.success is delivered twice -> ALREADY_APPLIED
        - A tampered body is rejected by the signature check
        - A charge for the wrong amount is recorded but never applied
        - An event for an unknown reference is acknowledged as UNMATCHED

    Scenario 3: Dispute and Refund
        - Customer disputes a held escrow, admin refunds the payer

    Scenario 4: Auto-release
        - Delivered order, customer stays silent, the confirmation window
          elapses and the sweep releases the escrow

Usage:
    # Option A: PostgreSQL from DATABASE_URL:
    python simulation.py

    # Option B: SQLite in-memory (no Docker needed):
    python simulation.py --sqlite

    # Run a specific scenario:
    python simulation.py --sqlite --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import json
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from escrow_ledger.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from escrow_ledger.config import Settings  # noqa: E402
from escrow_ledger.domain.audit import InMemoryAuditSink  # noqa: E402
from escrow_ledger.domain.caller import Caller  # noqa: E402
from escrow_ledger.domain.enums import TransactionType, UserRole  # noqa: E402
from escrow_ledger.domain.exceptions import WebhookSignatureError  # noqa: E402
from escrow_ledger.domain.money import to_minor_units  # noqa: E402
from escrow_ledger.infrastructure.database.engine import (  # noqa: E402
    create_engine_for_url,
    make_session_factory,
    session_scope,
)
from escrow_ledger.infrastructure.database.orm_models import Base, User  # noqa: E402
from escrow_ledger.infrastructure.paystack_client import PaystackClient  # noqa: E402
from escrow_ledger.services import (  # noqa: E402
    EscrowService,
    OrderService,
    PayoutService,
    ReconciliationService,
    TransactionService,
    WebhookReconciler,
)
from escrow_ledger.services.webhook_service import compute_signature  # noqa: E402

SETTINGS = Settings(
    paystack_secret_key="sk_test_simulation",
    paystack_simulate=True,
    escrow_sweep_interval_seconds=0,
)
AUDIT = InMemoryAuditSink()
ADMIN = Caller(user_id=uuid.uuid4(), role=UserRole.ADMIN)

_engine = None
_session_factory = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Create the engine and the schema."""
    global _engine, _session_factory
    url = "sqlite+aiosqlite:///:memory:" if use_sqlite else SETTINGS.database_url
    _engine = create_engine_for_url(url)
    _session_factory = make_session_factory(_engine)
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.initialized", dialect=_engine.dialect.name)


async def shutdown_database() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def unit_of_work():
    return session_scope(_session_factory)


async def create_user(role: UserRole, name: str, recipient_code: str | None = None) -> Caller:
    """Insert a marketplace user and return a caller acting as them."""
    user_id = uuid.uuid4()
    async with unit_of_work() as session:
        session.add(
            User(
                id=user_id,
                email=f"{name.lower()}.{user_id.hex[:6]}@example.com",
                full_name=name,
                role=role.value,
                paystack_recipient_code=recipient_code,
            )
        )
    return Caller(user_id=user_id, role=role)


# ---------------------------------------------------------------------------
# Simulated Paystack
# ---------------------------------------------------------------------------
class PaystackBot:
    """Builds and signs webhook bodies the way Paystack does."""

    def body(
        self, event: str, reference: str, amount: Decimal, **extra: Any
    ) -> bytes:
        data = {
            "reference": reference,
            "amount": to_minor_units(amount),
            "currency": SETTINGS.default_currency,
            "status": "success",
            "id": uuid.uuid4().int % 10**9,
            **extra,
        }
        return json.dumps({"event": event, "data": data}).encode()

    def sign(self, body: bytes) -> str:
        return compute_signature(SETTINGS.webhook_signing_secret, body)

    async def deliver(self, body: bytes, signature: str | None = None) -> str:
        """POST a webhook and return the outcome, committing like the route does."""
        async with unit_of_work() as session:
            reconciler = WebhookReconciler(session, AUDIT, SETTINGS)
            result = await reconciler.handle(body, signature or self.sign(body))
        logger.info("🟣 PAYSTACK: Webhook delivered", outcome=result.outcome.value)
        return result.outcome.value


# ---------------------------------------------------------------------------
# Scenario building blocks
# ---------------------------------------------------------------------------
async def place_paid_order(
    customer: Caller, merchant: Caller, driver: Caller, amount: Decimal
) -> tuple[uuid.UUID, str]:
    """Place an order, start its payment and settle it by webhook."""
    async with unit_of_work() as session:
        order = await OrderService(session, AUDIT, SETTINGS).create_order(
            customer,
            order_type="FOOD",
            total_amount=amount,
            delivery_address="12 Admiralty Way, Lekki",
            pickup_address="5 Allen Avenue, Ikeja",
            merchant_id=merchant.user_id,
            driver_id=driver.user_id,
            order_data={"items": [{"name": "Jollof rice", "qty": 2}]},
        )
        txn = await TransactionService(session, AUDIT, SETTINGS).create_transaction(
            customer,
            type_=TransactionType.PAYMENT,
            amount=amount,
            order_id=order.id,
            payment_method="card",
            description=f"Payment for {order.order_number}",
        )
    logger.info("🔵 CUSTOMER: Order placed", order=order.order_number, reference=txn.transaction_ref)

    outcome = await PaystackBot().deliver(
        PaystackBot().body("charge.success", txn.transaction_ref, amount)
    )
    assert outcome == "applied", outcome
    return order.id, txn.transaction_ref


async def deliver_order(merchant: Caller, driver: Caller, order_id: uuid.UUID) -> None:
    async with unit_of_work() as session:
        orders = OrderService(session, AUDIT, SETTINGS)
        await orders.accept(merchant, order_id)
        await orders.pick_up(driver, order_id)
        await orders.start_transit(driver, order_id)
        order = await orders.deliver(driver, order_id)
    logger.info("🟢 DRIVER: Delivered", order=order.order_number)


async def escrow_for(order_id: uuid.UUID) -> uuid.UUID:
    async with unit_of_work() as session:
        escrows, _ = await EscrowService(session, AUDIT, SETTINGS).list_escrows(ADMIN)
    return next(e.id for e in escrows if e.order_id == order_id)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_audit_trail(since: int) -> None:
    """Print the audit entries recorded since index `since`."""
    print("\n  📜 Audit Trail:")
    for i, entry in enumerate(AUDIT.entries[since:], 1):
        outcome = entry.details.get("outcome")
        suffix = f" [{outcome}]" if outcome else ""
        print(f"    {i}. {entry.action} {entry.entity_type} (by {entry.actor}){suffix}")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path() -> None:
    banner("SCENARIO 1: Happy Path — Pay, Deliver, Release, Payout")
    mark = len(AUDIT.entries)

    customer = await create_user(UserRole.CONSUMER, "Ada")
    merchant = await create_user(UserRole.MERCHANT, "MamaPut", recipient_code="RCP_mamaput")
    driver = await create_user(UserRole.DRIVER, "Tunde")

    section("Step 1: Customer pays, Paystack confirms")
    order_id, _ = await place_paid_order(customer, merchant, driver, Decimal("5000.00"))
    escrow_id = await escrow_for(order_id)

    section("Step 2: Merchant accepts, driver delivers")
    await deliver_order(merchant, driver, order_id)

    section("Step 3: Customer releases the escrow")
    async with unit_of_work() as session:
        escrow = await EscrowService(session, AUDIT, SETTINGS).release(
            customer, escrow_id, "Food arrived hot"
        )
    print(f"  ✅ Escrow {escrow.status} at {escrow.released_at}")

    section("Step 4: Admin pays the merchant out")
    gateway = PaystackClient.from_settings(SETTINGS)
    try:
        async with unit_of_work() as session:
            payout = await PayoutService(session, AUDIT, gateway, SETTINGS).create_payout(
                ADMIN, escrow_id
            )
    finally:
        await gateway.aclose()
    print(f"  Transfer {payout.transfer_code} for {payout.transaction.transaction_ref}")

    outcome = await PaystackBot().deliver(
        PaystackBot().body(
            "transfer.success",
            payout.transaction.transaction_ref,
            payout.transaction.amount,
            transfer_code=payout.transfer_code,
        )
    )
    print(f"  ✅ transfer.success -> {outcome}")
    print_audit_trail(mark)


# ===========================================================================
# Scenario 2: Hostile Webhooks
# ===========================================================================
async def scenario_2_hostile_webhooks() -> None:
    banner("SCENARIO 2: Hostile Webhooks — Replays, Tampering, Mismatches")
    mark = len(AUDIT.entries)
    bot = PaystackBot()

    customer = await create_user(UserRole.CONSUMER, "Bisi")
    merchant = await create_user(UserRole.MERCHANT, "SuyaSpot")
    driver = await create_user(UserRole.DRIVER, "Emeka")

    section("Step 1: Original delivery")
    _, reference = await place_paid_order(customer, merchant, driver, Decimal("2500.00"))

    section("Step 2: Paystack redelivers the same event")
    replay = bot.body("charge.success", reference, Decimal("2500.00"))
    print(f"  🔁 Replay -> {await bot.deliver(replay)}")

    section("Step 3: Attacker tampers with the body")
    tampered = bot.body("charge.success", reference, Decimal("1.00"))
    try:
        await bot.deliver(tampered, signature=bot.sign(replay))
    except WebhookSignatureError as exc:
        print(f"  🛡️  Rejected: {exc.code}")

    section("Step 4: Charge for the wrong amount")
    async with unit_of_work() as session:
        order = await OrderService(session, AUDIT, SETTINGS).create_order(
            customer,
            order_type="FOOD",
            total_amount=Decimal("800.00"),
            delivery_address="3 Broad Street, Lagos Island",
            merchant_id=merchant.user_id,
        )
        txn = await TransactionService(session, AUDIT, SETTINGS).create_transaction(
            customer, type_=TransactionType.PAYMENT, amount=Decimal("800.00"), order_id=order.id
        )
    short = bot.body("charge.success", txn.transaction_ref, Decimal("80.00"))
    print(f"  ⚠️  Short charge -> {await bot.deliver(short)}")

    section("Step 5: Event for a reference nobody issued")
    stray = bot.body("charge.success", "PAY_0_UNKNOWN", Decimal("10.00"))
    print(f"  ❓ Stray -> {await bot.deliver(stray)}")
    print_audit_trail(mark)


# ===========================================================================
# Scenario 3: Dispute and Refund
# ===========================================================================
async def scenario_3_dispute_and_refund() -> None:
    banner("SCENARIO 3: Dispute and Refund")
    mark = len(AUDIT.entries)

    customer = await create_user(UserRole.CONSUMER, "Chioma")
    merchant = await create_user(UserRole.MERCHANT, "GrillHouse")
    driver = await create_user(UserRole.DRIVER, "Femi")

    order_id, _ = await place_paid_order(customer, merchant, driver, Decimal("7200.00"))
    escrow_id = await escrow_for(order_id)

    section("Step 1: Customer disputes")
    async with unit_of_work() as session:
        await EscrowService(session, AUDIT, SETTINGS).dispute(
            customer, escrow_id, "Wrong order delivered"
        )

    section("Step 2: Admin refunds the payer")
    async with unit_of_work() as session:
        escrow = await EscrowService(session, AUDIT, SETTINGS).refund(
            ADMIN, escrow_id, "Merchant confirmed the mix-up"
        )
        rows, _ = await TransactionService(session, AUDIT, SETTINGS).list_transactions(
            customer, type_=TransactionType.REFUND
        )
    print(f"  ✅ Escrow {escrow.status}; refund rows for customer: {len(rows)}")
    print_audit_trail(mark)


# ===========================================================================
# Scenario 4: Auto-release
# ===========================================================================
async def scenario_4_auto_release() -> None:
    banner("SCENARIO 4: Auto-release After the Confirmation Window")
    mark = len(AUDIT.entries)

    customer = await create_user(UserRole.CONSUMER, "Dayo")
    merchant = await create_user(UserRole.MERCHANT, "PepperSoup")
    driver = await create_user(UserRole.DRIVER, "Kemi")

    order_id, _ = await place_paid_order(customer, merchant, driver, Decimal("3100.00"))
    await deliver_order(merchant, driver, order_id)

    later = datetime.now(UTC) + timedelta(hours=SETTINGS.order_confirmation_window_hours, minutes=1)
    async with unit_of_work() as session:
        released = await ReconciliationService(session, AUDIT, SETTINGS).auto_release_expired(later)
    print(f"  ⏰ Sweep released {len(released)} escrow(s)")
    print_audit_trail(mark)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_hostile_webhooks,
    3: scenario_3_dispute_and_refund,
    4: scenario_4_auto_release,
}


async def run(scenario: int = 0, use_sqlite: bool = False) -> None:
    await init_database(use_sqlite=use_sqlite)
    try:
        print("\n" + "=" * 70)
        print("  ESCROW LEDGER — SIMULATION")
        print(f"  Database: {'SQLite (in-memory)' if use_sqlite else 'PostgreSQL'}")
        print("=" * 70 + "\n")

        if scenario == 0:
            for fn in SCENARIOS.values():
                await fn()
        elif scenario in SCENARIOS:
            await SCENARIOS[scenario]()
        else:
            print(f"Unknown scenario {scenario}. Available: {', '.join(map(str, SCENARIOS))}")
            return

        print("\n" + "=" * 70)
        print("  ✅ SIMULATION COMPLETED")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Escrow Ledger Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use SQLite in-memory instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()
    asyncio.run(run(args.scenario, use_sqlite=args.sqlite))
