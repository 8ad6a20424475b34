"""Tests for typed transaction metadata."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from escrow_ledger.domain.metadata import (
    GatewayPayloadEntry,
    OpaqueEntry,
    PayoutEntry,
    RefundRecordEntry,
    append_metadata,
    find_entries,
    parse_metadata,
)


class TestParse:
    def test_none_is_empty(self) -> None:
        assert parse_metadata(None) == []

    def test_bare_dict_becomes_opaque(self) -> None:
        entries = parse_metadata({"cart_id": "c-1"})
        assert entries == [OpaqueEntry(data={"cart_id": "c-1"})]

    def test_unknown_kind_is_kept_verbatim(self) -> None:
        raw = [{"kind": "loyalty_points", "points": 40}]
        (entry,) = parse_metadata(raw)
        assert isinstance(entry, OpaqueEntry)
        assert entry.data == {"kind": "loyalty_points", "points": 40}

    def test_known_kinds_are_typed(self) -> None:
        escrow_id = uuid.uuid4()
        raw = [{"kind": "payout", "escrow_id": str(escrow_id), "recipient_code": "RCP_1"}]
        (entry,) = parse_metadata(raw)
        assert isinstance(entry, PayoutEntry)
        assert entry.escrow_id == escrow_id


class TestAppend:
    def test_existing_entries_survive(self) -> None:
        stored = append_metadata({"note": "gift"})
        record = RefundRecordEntry(
            reason="damaged",
            refund_amount=Decimal("100.00"),
            refunded_by="SYSTEM",
            refunded_at=datetime(2026, 1, 1, tzinfo=UTC),
            refund_transaction_ref="REF_1_AAAAAA",
        )
        stored = append_metadata(stored, record)

        assert [e["kind"] for e in stored] == ["opaque", "refund_record"]
        assert stored[0]["data"] == {"note": "gift"}
        assert stored[1]["refund_amount"] == "100.00"

    def test_find_entries_by_type(self) -> None:
        payload = GatewayPayloadEntry(
            event="charge.success",
            reference="TXN_1_ABCDEF",
            received_at=datetime(2026, 1, 1, tzinfo=UTC),
        )
        stored = append_metadata([], OpaqueEntry(data={"a": 1}), payload)

        found = find_entries(stored, GatewayPayloadEntry)
        assert len(found) == 1
        assert found[0].reference == "TXN_1_ABCDEF"
        assert find_entries(stored, PayoutEntry) == []
