"""Shared API schemas: pagination, reasons, errors, audit entries, health."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    """A page of results with the total number of matching rows."""

    items: list[T]
    total: int
    limit: int
    offset: int


class ReasonRequest(BaseModel):
    """Body for actions that carry an optional free-text reason."""

    model_config = ConfigDict(extra="forbid")

    reason: str | None = Field(
        default=None,
        max_length=2000,
        description="Why the action is taken; recorded in the audit log",
    )


class ErrorResponse(BaseModel):
    """Body of every non-2xx response."""

    error: str = Field(description="Stable machine-readable code, e.g. INVALID_STATE")
    message: str
    request_id: str | None = None
    details: list[Any] | None = None


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID | None
    actor: str
    action: str
    entity_type: str
    entity_id: uuid.UUID | None
    details: dict[str, Any]
    created_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
