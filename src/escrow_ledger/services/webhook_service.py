"""Webhook Reconciler — applies Paystack events to the ledger exactly once.

Delivery is at-least-once and may be concurrent or out of order. Each event
is applied with a conditional update keyed on the transaction's current
status, so a redelivery, or a delivery racing a manual confirmation, finds
nothing to do and is acknowledged as already applied.

Pipeline:
    1. Authenticate  HMAC-SHA512(raw body, secret) == x-paystack-signature
    2. Parse         {event, data: {reference, amount, currency, status, id}}
    3. Fast path     Redis digest of the body, if configured (optional)
    4. Locate        transaction by data.reference
    5. Apply         per-event conditional update plus order/escrow settlement
    6. Audit         one entry per delivery, with the raw event and outcome
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import ValidationError

from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import (
    AuditAction,
    EntityType,
    GatewayEvent,
    TransactionStatus,
    TransactionType,
    WebhookOutcome,
)
from escrow_ledger.domain.exceptions import (
    InputValidationError,
    WebhookNotConfiguredError,
    WebhookSignatureError,
)
from escrow_ledger.domain.metadata import GatewayPayloadEntry, append_metadata
from escrow_ledger.domain.money import to_minor_units
from escrow_ledger.infrastructure.database.repositories import TransactionRepository
from escrow_ledger.logging_config import get_logger
from escrow_ledger.schemas.webhooks import PaystackWebhookEvent
from escrow_ledger.services.base import ServiceBase
from escrow_ledger.services.order_service import OrderService
from escrow_ledger.services.settlement import PaymentSettlement

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.config import Settings
    from escrow_ledger.domain.audit import AuditSink
    from escrow_ledger.infrastructure.database.orm_models import Transaction

logger = get_logger(__name__)


class IdempotencyCache(Protocol):
    """Optional fast-path store of processed body digests."""

    async def seen(self, digest: str) -> bool: ...

    async def remember(self, digest: str) -> None: ...


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    digest: str
    event: str | None = None
    reference: str | None = None


# transfer.* events: (expected statuses, new status, audit action)
_TRANSFER_TRANSITIONS: dict[str, tuple[tuple[TransactionStatus, ...], TransactionStatus, AuditAction]] = {
    GatewayEvent.TRANSFER_SUCCESS.value: (
        (TransactionStatus.PENDING,),
        TransactionStatus.COMPLETED,
        AuditAction.TRANSFER_SUCCESS,
    ),
    GatewayEvent.TRANSFER_FAILED.value: (
        (TransactionStatus.PENDING,),
        TransactionStatus.FAILED,
        AuditAction.TRANSFER_FAILURE,
    ),
    GatewayEvent.TRANSFER_REVERSED.value: (
        (TransactionStatus.PENDING, TransactionStatus.COMPLETED),
        TransactionStatus.REFUNDED,
        AuditAction.TRANSFER_REVERSED,
    ),
}


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA512 of the body, as Paystack computes it."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


class WebhookReconciler(ServiceBase):
    """Authenticates, parses and applies gateway webhook deliveries."""

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditSink,
        settings: Settings | None = None,
        cache: IdempotencyCache | None = None,
    ) -> None:
        super().__init__(session, audit, settings)
        self._cache = cache
        self._txn_repo = TransactionRepository(session)
        self._orders = OrderService(session, audit, self._settings)
        self._settlement = PaymentSettlement(session, audit, self._settings)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle(self, raw_body: bytes, signature: str | None) -> WebhookResult:
        """Process one delivery. Every returned outcome is acknowledged with 200.

        Raises:
            WebhookNotConfiguredError: No signing secret configured.
            WebhookSignatureError: Signature missing or wrong.
            InputValidationError: Body is not a valid event envelope.
        """
        self.verify_signature(raw_body, signature)
        event = self.parse(raw_body)
        digest = hashlib.sha512(raw_body).hexdigest()

        if self._cache is not None and await self._cache.seen(digest):
            await self._audit_delivery(
                AuditAction.WEBHOOK_IGNORED,
                None,
                event,
                WebhookOutcome.DUPLICATE_DELIVERY,
                Caller.system(),
            )
            logger.info("webhook.duplicate_delivery", reference=event.data.reference)
            return WebhookResult(
                WebhookOutcome.DUPLICATE_DELIVERY, digest, event.event, event.data.reference
            )

        outcome = await self.apply(event)
        return WebhookResult(outcome, digest, event.event, event.data.reference)

    async def mark_processed(self, result: WebhookResult) -> None:
        """Remember a delivery in the fast-path cache.

        Call only after the ledger changes are committed.
        """
        if self._cache is None:
            return
        if result.outcome in (WebhookOutcome.APPLIED, WebhookOutcome.ALREADY_APPLIED):
            await self._cache.remember(result.digest)

    def verify_signature(self, raw_body: bytes, signature: str | None) -> None:
        secret = self._settings.webhook_signing_secret
        if not secret:
            logger.error("webhook.secret_not_configured")
            raise WebhookNotConfiguredError()
        if not signature:
            logger.warning("webhook.signature_missing")
            raise WebhookSignatureError()
        expected = compute_signature(secret, raw_body)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("webhook.signature_invalid")
            raise WebhookSignatureError()

    @staticmethod
    def parse(raw_body: bytes) -> PaystackWebhookEvent:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise InputValidationError("Webhook body is not valid JSON") from exc
        try:
            return PaystackWebhookEvent.model_validate(payload)
        except ValidationError as exc:
            raise InputValidationError(
                "Malformed webhook payload",
                errors=exc.errors(include_url=False, include_context=False),
            ) from exc

    async def apply(
        self, event: PaystackWebhookEvent, actor: Caller | None = None
    ) -> WebhookOutcome:
        """Apply a parsed event. Also used for operator-triggered re-verification."""
        actor = actor or Caller.system()
        reference = event.data.reference

        txn = await self._txn_repo.get_by_reference(reference)
        if txn is None:
            await self._audit_delivery(
                AuditAction.WEBHOOK_UNMATCHED, None, event, WebhookOutcome.UNMATCHED, actor
            )
            logger.warning("webhook.unmatched", gateway_event=event.event, reference=reference)
            return WebhookOutcome.UNMATCHED

        if event.event == GatewayEvent.CHARGE_SUCCESS:
            return await self._charge_success(txn, event, actor)
        if event.event == GatewayEvent.CHARGE_FAILED:
            return await self._charge_failed(txn, event, actor)
        if event.event in _TRANSFER_TRANSITIONS:
            return await self._transfer(txn, event, actor)

        await self._audit_delivery(
            AuditAction.WEBHOOK_IGNORED, txn, event, WebhookOutcome.IGNORED, actor
        )
        logger.info("webhook.ignored", gateway_event=event.event, reference=reference)
        return WebhookOutcome.IGNORED

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _charge_success(
        self, txn: Transaction, event: PaystackWebhookEvent, actor: Caller
    ) -> WebhookOutcome:
        action = AuditAction.PAYMENT_SUCCESS
        if txn.status != TransactionStatus.PENDING:
            return await self._already_applied(txn, event, action, actor)

        mismatch = self._amount_mismatch(txn, event)
        if mismatch is not None:
            await self._audit_delivery(
                action, txn, event, WebhookOutcome.AMOUNT_MISMATCH, actor, **mismatch
            )
            logger.warning(
                "webhook.amount_mismatch", reference=txn.transaction_ref, **mismatch
            )
            return WebhookOutcome.AMOUNT_MISMATCH

        applied = await self._txn_repo.transition(
            txn,
            TransactionStatus.PENDING,
            TransactionStatus.COMPLETED,
            completed_at=datetime.now(UTC),
            **self._gateway_values(txn, event),
        )
        if not applied:
            return await self._already_applied(txn, event, action, actor)

        details: dict[str, Any] = {}
        if txn.order_id is not None and txn.type == TransactionType.PAYMENT:
            settlement = await self._settlement.settle(txn)
            details["order_confirmed"] = settlement.order_confirmed
            details["escrow_id"] = str(settlement.escrow.id) if settlement.escrow else None

        await self._audit_delivery(action, txn, event, WebhookOutcome.APPLIED, actor, **details)
        logger.info("webhook.payment_applied", reference=txn.transaction_ref, **details)
        return WebhookOutcome.APPLIED

    async def _charge_failed(
        self, txn: Transaction, event: PaystackWebhookEvent, actor: Caller
    ) -> WebhookOutcome:
        action = AuditAction.PAYMENT_FAILED
        if txn.status != TransactionStatus.PENDING:
            return await self._already_applied(txn, event, action, actor)

        applied = await self._txn_repo.transition(
            txn,
            TransactionStatus.PENDING,
            TransactionStatus.FAILED,
            **self._gateway_values(txn, event),
        )
        if not applied:
            return await self._already_applied(txn, event, action, actor)

        order_cancelled = False
        if txn.order_id is not None:
            order_cancelled = await self._orders.cancel_for_failed_payment(txn.order_id)

        await self._audit_delivery(
            action, txn, event, WebhookOutcome.APPLIED, actor, order_cancelled=order_cancelled
        )
        logger.info(
            "webhook.payment_failed", reference=txn.transaction_ref, order_cancelled=order_cancelled
        )
        return WebhookOutcome.APPLIED

    async def _transfer(
        self, txn: Transaction, event: PaystackWebhookEvent, actor: Caller
    ) -> WebhookOutcome:
        expected, new_status, action = _TRANSFER_TRANSITIONS[event.event]
        if txn.status not in expected:
            return await self._already_applied(txn, event, action, actor)

        values = self._gateway_values(txn, event)
        if new_status == TransactionStatus.COMPLETED:
            values["completed_at"] = datetime.now(UTC)
        if not await self._txn_repo.transition(txn, expected, new_status, **values):
            return await self._already_applied(txn, event, action, actor)

        await self._audit_delivery(action, txn, event, WebhookOutcome.APPLIED, actor)
        logger.info(
            "webhook.transfer_applied",
            gateway_event=event.event,
            reference=txn.transaction_ref,
            new_status=new_status.value,
        )
        return WebhookOutcome.APPLIED

    # ------------------------------------------------------------------
    # Internal Helpers
    # ------------------------------------------------------------------

    async def _already_applied(
        self,
        txn: Transaction,
        event: PaystackWebhookEvent,
        action: AuditAction,
        actor: Caller,
    ) -> WebhookOutcome:
        await self._audit_delivery(
            action, txn, event, WebhookOutcome.ALREADY_APPLIED, actor, current_status=txn.status
        )
        logger.info(
            "webhook.already_applied",
            gateway_event=event.event,
            reference=txn.transaction_ref,
            current_status=txn.status,
        )
        return WebhookOutcome.ALREADY_APPLIED

    @staticmethod
    def _amount_mismatch(txn: Transaction, event: PaystackWebhookEvent) -> dict[str, Any] | None:
        data = event.data
        expected_minor = to_minor_units(txn.amount)
        if data.amount is not None and data.amount != expected_minor:
            return {"expected_minor": expected_minor, "received_minor": data.amount}
        if data.currency and data.currency.upper() != txn.currency.upper():
            return {"expected_currency": txn.currency, "received_currency": data.currency}
        return None

    @staticmethod
    def _gateway_values(txn: Transaction, event: PaystackWebhookEvent) -> dict[str, Any]:
        data = event.data
        entry = GatewayPayloadEntry(
            event=event.event,
            reference=data.reference,
            gateway_transaction_id=str(data.id) if data.id is not None else None,
            amount_minor=data.amount,
            currency=data.currency,
            status=data.status,
            received_at=datetime.now(UTC),
            raw=event.model_dump(mode="json"),
        )
        values: dict[str, Any] = {"metadata_json": append_metadata(txn.metadata_json, entry)}
        if data.id is not None:
            values["paystack_transaction_id"] = str(data.id)
        gateway_ref = data.transfer_code or data.reference
        if not txn.payment_gateway_ref:
            values["payment_gateway_ref"] = gateway_ref
        return values

    async def _audit_delivery(
        self,
        action: AuditAction,
        txn: Transaction | None,
        event: PaystackWebhookEvent,
        outcome: WebhookOutcome,
        actor: Caller,
        **details: Any,
    ) -> None:
        await self._record(
            actor,
            action,
            EntityType.TRANSACTION if txn is not None else EntityType.WEBHOOK,
            txn.id if txn is not None else None,
            gateway_event=event.event,
            reference=event.data.reference,
            outcome=outcome.value,
            **details,
        )
