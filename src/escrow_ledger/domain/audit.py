"""Audit sink protocol.

Services receive an AuditSink instead of writing audit rows themselves, so
the sink can be swapped for an in-memory double in tests. Recording is
fire-and-forget from the caller's point of view: a sink must never raise
into the operation it is auditing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    import uuid

    from escrow_ledger.domain.enums import AuditAction, EntityType


@dataclass(frozen=True)
class AuditEntry:
    """One immutable "who did what to which entity" record.

    Attributes:
        action: What happened (e.g. ESCROW_RELEASED).
        entity_type: Kind of entity acted upon.
        entity_id: Id of that entity, None for unmatched webhook deliveries.
        actor: User id string or SYSTEM.
        user_id: Acting user, None for the system actor.
        details: JSON-serializable context (before/after status, reason, ...).
    """

    action: AuditAction
    entity_type: EntityType
    entity_id: uuid.UUID | None
    actor: str
    user_id: uuid.UUID | None = None
    details: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class AuditSink(Protocol):
    """Destination for audit entries.

    Implementations:
        - infrastructure/audit_sink.py  SqlAuditSink (audit_logs table)
        - InMemoryAuditSink             (tests, simulation)
    """

    async def record(self, entry: AuditEntry) -> None:
        ...


class InMemoryAuditSink:
    """AuditSink that keeps entries in a list."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def actions(self) -> list[str]:
        return [str(e.action) for e in self.entries]
