"""Append-only writer for the transaction ledger.

Every ledger row, whether created by a client, by escrow settlement, by a
refund or by a payout, goes through LedgerWriter.append so that reference
allocation is identical everywhere:

    <PREFIX>_<epoch milliseconds>_<6 random [A-Z0-9]>

Uniqueness is guaranteed by the UNIQUE constraint on transaction_ref, not by
the generator. A collision is retried with a fresh reference.
"""

from __future__ import annotations

import secrets
import string
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from escrow_ledger.config import get_settings
from escrow_ledger.domain.enums import TransactionStatus, TransactionType
from escrow_ledger.domain.metadata import dump_metadata
from escrow_ledger.domain.money import to_money
from escrow_ledger.infrastructure.database.orm_models import Transaction
from escrow_ledger.infrastructure.database.repositories import TransactionRepository
from escrow_ledger.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.config import Settings
    from escrow_ledger.domain.metadata import MetadataEntry

logger = get_logger(__name__)

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def generate_reference(type_: TransactionType) -> str:
    """Build a candidate transaction reference for the given type."""
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"{type_.reference_prefix}_{int(time.time() * 1000)}_{suffix}"


class LedgerWriter:
    """Inserts ledger rows. Never updates or overwrites."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        reference_factory: Callable[[TransactionType], str] | None = None,
    ) -> None:
        self._repo = TransactionRepository(session)
        self._settings = settings or get_settings()
        self._reference_factory = reference_factory or generate_reference

    async def append(
        self,
        *,
        type_: TransactionType,
        user_id: uuid.UUID,
        amount: Decimal,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        net_amount: Decimal | None = None,
        currency: str | None = None,
        order_id: uuid.UUID | None = None,
        recipient_id: uuid.UUID | None = None,
        payment_method: str | None = None,
        payment_gateway_ref: str | None = None,
        description: str | None = None,
        metadata: list[MetadataEntry] | None = None,
    ) -> Transaction:
        """Insert one ledger row under a freshly allocated unique reference.

        Raises:
            DuplicateReferenceError: If no free reference was found within
                TRANSACTION_REF_MAX_ATTEMPTS attempts.
        """
        amount = to_money(amount)
        net = to_money(net_amount) if net_amount is not None else amount
        now = datetime.now(UTC)

        def build(reference: str) -> Transaction:
            return Transaction(
                transaction_ref=reference,
                user_id=user_id,
                order_id=order_id,
                recipient_id=recipient_id,
                amount=amount,
                net_amount=net,
                currency=currency or self._settings.default_currency,
                type=type_.value,
                status=status.value,
                payment_method=payment_method,
                payment_gateway_ref=payment_gateway_ref,
                description=description,
                metadata_json=dump_metadata(metadata or []),
                initiated_at=now,
                completed_at=now if status == TransactionStatus.COMPLETED else None,
            )

        txn = await self._repo.insert_with_unique_ref(
            build,
            lambda: self._reference_factory(type_),
            self._settings.transaction_ref_max_attempts,
        )
        logger.info(
            "ledger.appended",
            transaction_ref=txn.transaction_ref,
            type=type_.value,
            status=status.value,
            amount=str(amount),
        )
        return txn
