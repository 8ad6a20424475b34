"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the database
session, the authenticated caller, the audit sink, the Paystack client,
the webhook idempotency cache and configuration.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import Settings, get_settings
from escrow_ledger.domain.audit import AuditSink
from escrow_ledger.domain.caller import Caller
from escrow_ledger.domain.enums import UserRole
from escrow_ledger.domain.exceptions import ForbiddenError, UnauthorizedError
from escrow_ledger.infrastructure.audit_sink import SqlAuditSink
from escrow_ledger.infrastructure.database.engine import get_async_session
from escrow_ledger.infrastructure.paystack_client import PaystackClient
from escrow_ledger.infrastructure.redis_client import (
    RedisIdempotencyCache,
    get_redis,
    is_redis_initialized,
)

# Roles an upstream identity provider may assert. SYSTEM is internal only.
_HEADER_ROLES = {
    UserRole.CONSUMER.value,
    UserRole.MERCHANT.value,
    UserRole.DRIVER.value,
    UserRole.ADMIN.value,
}


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session for a request."""
    async for session in get_async_session():
        yield session


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


async def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Caller:
    """Build the caller from the identity provider's trusted headers.

    Raises:
        UnauthorizedError: A header is missing or malformed.
    """
    if not x_user_id or not x_user_role:
        raise UnauthorizedError()
    try:
        user_id = uuid.UUID(x_user_id)
    except ValueError as exc:
        raise UnauthorizedError("Invalid X-User-Id header") from exc
    role = x_user_role.strip().upper()
    if role not in _HEADER_ROLES:
        raise UnauthorizedError("Invalid X-User-Role header")
    return Caller(user_id=user_id, role=UserRole(role))


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise ForbiddenError("Admin role required")
    return caller


async def get_audit_sink(
    session: AsyncSession = Depends(get_db_session),
) -> AuditSink:
    """Provide an audit sink writing into the request's session."""
    return SqlAuditSink(session)


def get_paystack_client(request: Request) -> PaystackClient:
    """Provide the shared Paystack client created at startup."""
    client = getattr(request.app.state, "paystack", None)
    if client is None:
        client = PaystackClient.from_settings(get_settings())
        request.app.state.paystack = client
    return client


def get_idempotency_cache(
    settings: Settings = Depends(get_app_settings),
) -> RedisIdempotencyCache | None:
    """Provide the webhook fast-path cache, or None when Redis is down."""
    if not is_redis_initialized():
        return None
    return RedisIdempotencyCache(get_redis(), settings.redis_idempotency_ttl_seconds)
