"""AuditSink backed by the audit_logs table.

Rows are written in the caller's session, so an audit entry commits or rolls
back together with the change it describes. The insert runs inside a
SAVEPOINT: if it fails, only the audit row is lost and the failure is logged.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from escrow_ledger.infrastructure.database.orm_models import AuditLog
from escrow_ledger.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.domain.audit import AuditEntry

logger = get_logger(__name__)


def _json_safe(details: dict[str, Any]) -> dict[str, Any]:
    # Decimals, UUIDs and datetimes become strings.
    return json.loads(json.dumps(details, default=str))


class SqlAuditSink:
    """Writes AuditEntry records to audit_logs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, entry: AuditEntry) -> None:
        row = AuditLog(
            user_id=entry.user_id,
            actor=entry.actor,
            action=str(entry.action),
            entity_type=str(entry.entity_type),
            entity_id=entry.entity_id,
            details=_json_safe(entry.details),
        )
        try:
            async with self._session.begin_nested():
                self._session.add(row)
        except SQLAlchemyError as exc:
            logger.error(
                "audit.write_failed",
                action=str(entry.action),
                entity_type=str(entry.entity_type),
                entity_id=str(entry.entity_id),
                error=str(exc),
            )
            return

        logger.debug(
            "audit.recorded",
            action=str(entry.action),
            entity_id=str(entry.entity_id),
            actor=entry.actor,
        )
