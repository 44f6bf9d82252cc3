"""Common FastAPI dependencies."""

from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import get_db_session, install_caller_context
from src.middleware.auth import get_current_user_email, get_current_user_id
from src.middleware.tenant import get_requested_tenant_id
from src.services.authorization import (
    AuthorizationContext,
    CallerIdentity,
    TenantNotFoundError,
    resolve_caller_tenants,
)
from src.services.events import EventPublisher, get_event_publisher


async def get_db_with_caller_context(
    request: Request,
    session: AsyncSession = Depends(get_db_session)
) -> AsyncSession:
    """Get database session with the caller exposed to row-level security."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        await install_caller_context(session, user_id)
    return session


def get_caller_identity(request: Request) -> CallerIdentity:
    """Identity established by the authentication middleware."""
    user_id = get_current_user_id(request)
    return CallerIdentity(
        user_id=UUID(str(user_id)),
        email=get_current_user_email(request),
        requested_tenant_id=get_requested_tenant_id(request),
    )


async def get_authorization_context(
    identity: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db_with_caller_context),
) -> AuthorizationContext:
    """Resolve the caller's tenants once per request."""
    try:
        return await resolve_caller_tenants(db, identity)
    except TenantNotFoundError:
        raise HTTPException(
            status_code=404,
            detail={
                "error": "tenant_not_found",
                "message": "Tenant not found",
                "code": "TENANT_NOT_FOUND"
            }
        )


def get_events() -> EventPublisher:
    return get_event_publisher()


def get_pagination_params(
    page: int = Query(1, ge=1, le=1000, description="Page number"),
    per_page: int = Query(25, ge=1, le=100, description="Items per page"),
) -> dict:
    """Get pagination parameters from query string."""
    return {
        "page": page,
        "per_page": per_page,
        "offset": (page - 1) * per_page,
        "limit": per_page,
    }
