"""Tenant selection middleware.

``X-Tenant-ID`` is optional: it names the tenant a request should be narrowed
to. It never grants access by itself; membership is checked when the caller's
authorization context is resolved, and an unknown or foreign tenant is a 404
from there.
"""

import logging
import uuid
from typing import Optional

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"


def parse_tenant_header(value: Optional[str]) -> Optional[uuid.UUID]:
    """Parse the header; raises ValueError for anything but a UUID."""
    if value is None or not value.strip():
        return None
    return uuid.UUID(value.strip())


class TenantContextMiddleware(BaseHTTPMiddleware):
    """Records the requested tenant on ``request.state`` and in the log context."""

    async def dispatch(self, request: Request, call_next):
        try:
            tenant_id = parse_tenant_header(request.headers.get(TENANT_HEADER))
        except ValueError:
            logger.warning(f"Malformed {TENANT_HEADER} header on {request.url.path}")
            return JSONResponse(
                status_code=400,
                content={"detail": {
                    "error": "invalid_tenant_id",
                    "message": f"{TENANT_HEADER} must be a valid UUID",
                    "code": "INVALID_TENANT_ID_FORMAT"
                }}
            )

        request.state.requested_tenant_id = tenant_id
        if tenant_id is None:
            return await call_next(request)

        structlog.contextvars.bind_contextvars(tenant_id=str(tenant_id))
        response = await call_next(request)
        response.headers[TENANT_HEADER] = str(tenant_id)
        return response


def get_requested_tenant_id(request: Request) -> Optional[uuid.UUID]:
    """Tenant named by the request, if any."""
    return getattr(request.state, "requested_tenant_id", None)
