"""Operator routes: on-demand repair passes and the audit trail.

Routes:
    POST /api/v1/admin/reconcile            — Settle completed payments missing follow-ups
    POST /api/v1/admin/escrows/auto-release — Release escrows whose window elapsed
    GET  /api/v1/audit-entries              — Browse the audit log

All routes require the ADMIN role. The same passes also run periodically
from the application lifespan.
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.api.deps import get_audit_sink, get_db_session, require_admin
from escrow_ledger.domain.audit import AuditSink
from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import AuditAction, EntityType
from escrow_ledger.infrastructure.database.repositories import AuditLogRepository
from escrow_ledger.schemas.common import AuditEntryResponse
from escrow_ledger.schemas.escrows import AutoReleaseResponse
from escrow_ledger.schemas.transactions import ReconcileResponse
from escrow_ledger.services.reconciliation_service import ReconciliationService

router = APIRouter(prefix="/api/v1", tags=["Admin"])


@router.post(
    "/admin/reconcile",
    response_model=ReconcileResponse,
    summary="Run the payment reconciliation pass",
)
async def reconcile(
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
    audit: AuditSink = Depends(get_audit_sink),
) -> ReconcileResponse:
    report = await ReconciliationService(session, audit).reconcile_completed_payments()
    return ReconcileResponse(
        examined=report.examined,
        escrows_created=report.escrows_created,
        orders_confirmed=report.orders_confirmed,
        needs_refund=report.needs_refund,
    )


@router.post(
    "/admin/escrows/auto-release",
    response_model=AutoReleaseResponse,
    summary="Release escrows past their confirmation window",
)
async def auto_release(
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
    audit: AuditSink = Depends(get_audit_sink),
) -> AutoReleaseResponse:
    released = await ReconciliationService(session, audit).auto_release_expired()
    return AutoReleaseResponse(released=[e.id for e in released], count=len(released))


@router.get(
    "/audit-entries",
    response_model=list[AuditEntryResponse],
    summary="Browse the audit log",
)
async def list_audit_entries(
    entity_type: EntityType | None = None,
    entity_id: uuid.UUID | None = None,
    action: AuditAction | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> list[AuditEntryResponse]:
    """Newest first."""
    rows = await AuditLogRepository(session).list(
        entity_type=entity_type.value if entity_type else None,
        entity_id=entity_id,
        action=action.value if action else None,
        limit=limit,
        offset=offset,
    )
    return [AuditEntryResponse.model_validate(r) for r in rows]
