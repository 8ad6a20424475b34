"""Shared plumbing for the application services."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from escrow_ledger.config import get_settings
from escrow_ledger.domain.audit import AuditEntry
from escrow_ledger.domain.exceptions import InvalidStateTransitionError
from escrow_ledger.domain.state_machine import validate_transition

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_ledger.config import Settings
    from escrow_ledger.domain.audit import AuditSink
    from escrow_ledger.domain.caller import Caller
    from escrow_ledger.domain.enums import AuditAction, EntityType


class ServiceBase:
    """Holds the request's session, audit sink and settings."""

    def __init__(
        self,
        session: AsyncSession,
        audit: AuditSink,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._audit = audit
        self._settings = settings or get_settings()

    async def _record(
        self,
        caller: Caller,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: uuid.UUID | None,
        **details: Any,
    ) -> None:
        await self._audit.record(
            AuditEntry(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor=caller.actor,
                user_id=caller.user_id,
                details=details,
            )
        )


def guard_transition(machine_cls: type, entity: str, current_status: str, event: str) -> str:
    """Validate a transition via the state machine and return the new status.

    Raises:
        InvalidStateTransitionError: If the event cannot fire from current_status.
    """
    try:
        return validate_transition(machine_cls, current_status, event)
    except TransitionNotAllowed as exc:
        raise InvalidStateTransitionError(entity, current_status, event) from exc
