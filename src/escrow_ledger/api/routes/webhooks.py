"""Payment gateway webhook endpoint.

    POST /api/v1/webhooks/paystack

The body is read raw because the HMAC signature covers the exact bytes
Paystack sent. Once the signature checks out every delivery is answered
with 200, including unmatched and duplicate ones, so Paystack stops
redelivering; only authentication and malformed bodies are rejected.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.api.deps import get_audit_sink, get_db_session, get_idempotency_cache
from escrow_ledger.domain.audit import AuditSink
from escrow_ledger.infrastructure.redis_client import RedisIdempotencyCache
from escrow_ledger.logging_config import get_logger
from escrow_ledger.schemas.webhooks import WebhookAck
from escrow_ledger.services.webhook_service import WebhookReconciler

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)


@router.post(
    "/paystack",
    response_model=WebhookAck,
    summary="Receive a Paystack event",
)
async def paystack_webhook(
    request: Request,
    x_paystack_signature: str | None = Header(default=None),
    session: AsyncSession = Depends(get_db_session),
    audit: AuditSink = Depends(get_audit_sink),
    cache: RedisIdempotencyCache | None = Depends(get_idempotency_cache),
) -> WebhookAck:
    raw_body = await request.body()
    reconciler = WebhookReconciler(session, audit, cache=cache)
    result = await reconciler.handle(raw_body, x_paystack_signature)

    # The fast-path cache may only learn about changes that are durable.
    await session.commit()
    await reconciler.mark_processed(result)

    logger.info(
        "webhook.acknowledged",
        gateway_event=result.event,
        reference=result.reference,
        outcome=result.outcome.value,
    )
    return WebhookAck(outcome=result.outcome)
