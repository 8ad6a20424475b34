"""Tests for domain enumerations."""

from __future__ import annotations

from escrow_ledger.domain.enums import (
    EscrowStatus,
    GatewayEvent,
    OrderStatus,
    TransactionStatus,
    TransactionType,
    WebhookOutcome,
)


class TestStatuses:
    def test_order_statuses(self) -> None:
        expected = {
            "PENDING", "CONFIRMED", "ACCEPTED", "PICKED_UP",
            "IN_TRANSIT", "DELIVERED", "CANCELLED",
        }
        assert {s.value for s in OrderStatus} == expected

    def test_escrow_statuses(self) -> None:
        assert {s.value for s in EscrowStatus} == {"HELD", "RELEASED", "REFUNDED", "DISPUTED"}

    def test_transaction_statuses(self) -> None:
        assert {s.value for s in TransactionStatus} == {
            "PENDING", "COMPLETED", "FAILED", "REFUNDED",
        }

    def test_status_is_str_enum(self) -> None:
        assert isinstance(EscrowStatus.HELD, str)
        assert EscrowStatus.HELD == "HELD"


class TestTransactionType:
    def test_every_type_has_a_prefix(self) -> None:
        for type_ in TransactionType:
            assert type_.reference_prefix

    def test_prefixes_are_distinct(self) -> None:
        prefixes = [t.reference_prefix for t in TransactionType]
        assert len(prefixes) == len(set(prefixes))

    def test_payment_prefix(self) -> None:
        assert TransactionType.PAYMENT.reference_prefix == "TXN"
        assert TransactionType.ESCROW_RELEASE.reference_prefix == "ESC_REL"


class TestGatewayEnums:
    def test_gateway_events_match_paystack_names(self) -> None:
        assert GatewayEvent.CHARGE_SUCCESS == "charge.success"
        assert GatewayEvent.TRANSFER_REVERSED == "transfer.reversed"

    def test_webhook_outcomes(self) -> None:
        assert WebhookOutcome.ALREADY_APPLIED == "already_applied"
        assert len(WebhookOutcome) == 6
