"""Typed transaction metadata.

The `metadata` JSON column of a transaction holds a list of tagged entries.
Known shapes are validated through a pydantic discriminated union on `kind`;
anything else (client-supplied maps, entries written by a newer release) is
kept verbatim as an `opaque` entry so nothing is lost on rewrite.

Stored form:
    [
        {"kind": "opaque", "data": {"cart_id": "c-1"}},
        {"kind": "gateway_payload", "event": "charge.success", ...},
        {"kind": "refund_record", "reason": "damaged", ...}
    ]
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Entry(BaseModel):
    model_config = ConfigDict(frozen=True)


class GatewayPayloadEntry(_Entry):
    """Raw gateway event that moved this transaction."""

    kind: Literal["gateway_payload"] = "gateway_payload"
    event: str
    reference: str
    gateway_transaction_id: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    status: str | None = None
    received_at: datetime
    raw: dict[str, Any] = Field(default_factory=dict)


class RefundRecordEntry(_Entry):
    """Attached to an original transaction when it is refunded."""

    kind: Literal["refund_record"] = "refund_record"
    reason: str
    refund_amount: Decimal
    refunded_by: str
    refunded_at: datetime
    refund_transaction_ref: str


class RefundProvenanceEntry(_Entry):
    """Carried by a REFUND transaction that compensates another transaction."""

    kind: Literal["refund_provenance"] = "refund_provenance"
    original_transaction_id: uuid.UUID
    original_reference: str
    reason: str


class EscrowProvenanceEntry(_Entry):
    """Carried by the transaction appended when an escrow is settled."""

    kind: Literal["escrow_provenance"] = "escrow_provenance"
    escrow_id: uuid.UUID
    action: Literal["release", "refund"]
    reason: str | None = None


class PayoutEntry(_Entry):
    """Carried by a TRANSFER_OUT transaction paying a released escrow out."""

    kind: Literal["payout"] = "payout"
    escrow_id: uuid.UUID
    recipient_code: str
    transfer_code: str | None = None


class OpaqueEntry(_Entry):
    """Escape hatch for maps without a known shape."""

    kind: Literal["opaque"] = "opaque"
    data: dict[str, Any] = Field(default_factory=dict)


MetadataEntry = Annotated[
    GatewayPayloadEntry
    | RefundRecordEntry
    | RefundProvenanceEntry
    | EscrowProvenanceEntry
    | PayoutEntry
    | OpaqueEntry,
    Field(discriminator="kind"),
]

_entry_adapter: TypeAdapter[MetadataEntry] = TypeAdapter(MetadataEntry)
_KNOWN_KINDS = frozenset(
    {
        "gateway_payload",
        "refund_record",
        "refund_provenance",
        "escrow_provenance",
        "payout",
        "opaque",
    }
)

E = TypeVar("E", bound=_Entry)


def parse_metadata(raw: Any) -> list[MetadataEntry]:
    """Parse a stored metadata value into typed entries.

    A bare dict (the shape clients send) becomes a single opaque entry.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        return [OpaqueEntry(data=raw)] if raw else []

    entries: list[MetadataEntry] = []
    for item in raw:
        if isinstance(item, dict) and item.get("kind") in _KNOWN_KINDS:
            entries.append(_entry_adapter.validate_python(item))
        else:
            entries.append(OpaqueEntry(data=item if isinstance(item, dict) else {"value": item}))
    return entries


def dump_metadata(entries: list[MetadataEntry]) -> list[dict[str, Any]]:
    """Serialize entries to the JSON-ready list stored in the column."""
    return [entry.model_dump(mode="json") for entry in entries]


def append_metadata(raw: Any, *new_entries: MetadataEntry) -> list[dict[str, Any]]:
    """Return the stored value with entries appended. Existing entries are kept."""
    return dump_metadata([*parse_metadata(raw), *new_entries])


def find_entries(raw: Any, entry_type: type[E]) -> list[E]:
    """Return every entry of the given type, oldest first."""
    return [e for e in parse_metadata(raw) if isinstance(e, entry_type)]
