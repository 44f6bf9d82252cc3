"""Main FastAPI application for the Tenant Ledger Service."""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from src.api.routes import admin, credits, customers, health, tenants
from src.api.routes.health import SERVICE_NAME, SERVICE_VERSION
from src.core.database import get_database
from src.core.settings import get_settings
from src.middleware.auth import AuthenticationMiddleware
from src.middleware.logging import LoggingMiddleware, configure_logging
from src.middleware.rate_limiting import RateLimitMiddleware
from src.middleware.tenant import TenantContextMiddleware
from src.schemas.base import JSONAPIErrorResponse
from src.services.authorization import TenantNotFoundError, TenantWriteDeniedError
from src.services.credit_ledger import CreditLedgerError
from src.services.tenant_scope import TenantScopeError
from src.services.tenant_service import TenantConflictError, TenantValidationError

# Initialize logging
configure_logging()

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    await get_database().connect()
    yield
    # Shutdown
    await get_database().disconnect()


app = FastAPI(
    title="Tenant Ledger Service",
    description="Multi-tenant isolation and credit ledger service for wholesale businesses",
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    openapi_url="/openapi.json" if not settings.is_production else None,
)

# Custom middleware stack (order matters: the last added runs first)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(TenantContextMiddleware)
app.add_middleware(AuthenticationMiddleware)
app.add_middleware(LoggingMiddleware)

# Security middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["*"],
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.allowed_hosts
)


def _error_response(request: Request, status_code: int, code: str, title: str, detail: str, meta=None):
    body = JSONAPIErrorResponse.single(status_code, code, title, detail, request.url.path, meta)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", exclude_none=True))


# Exception handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with JSON:API format."""
    if isinstance(exc.detail, dict):
        meta = {k: v for k, v in exc.detail.items() if k not in ("code", "message", "error")}
        response = _error_response(
            request,
            exc.status_code,
            exc.detail.get("code", "HTTP_ERROR"),
            exc.detail.get("error", "HTTP Error"),
            exc.detail.get("message", str(exc.detail)),
            meta or None,
        )
    else:
        response = _error_response(request, exc.status_code, "HTTP_ERROR", "HTTP Error", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(TenantNotFoundError)
async def tenant_not_found_handler(request: Request, exc: TenantNotFoundError):
    """Unauthorized reads are indistinguishable from missing rows."""
    return _error_response(request, 404, "RESOURCE_NOT_FOUND", "Resource Not Found", str(exc))


@app.exception_handler(TenantWriteDeniedError)
async def write_denied_handler(request: Request, exc: TenantWriteDeniedError):
    return _error_response(request, 403, "WRITE_DENIED", "Forbidden", str(exc))


@app.exception_handler(TenantValidationError)
async def tenant_validation_handler(request: Request, exc: TenantValidationError):
    meta = {"validation_errors": [
        {"field": e.field, "code": e.code, "message": e.message} for e in exc.validation_errors
    ]} if exc.validation_errors else None
    return _error_response(request, 422, "VALIDATION_FAILED", "Validation Failed", str(exc), meta)


@app.exception_handler(TenantConflictError)
async def tenant_conflict_handler(request: Request, exc: TenantConflictError):
    return _error_response(request, 409, "CONFLICT", "Conflict", str(exc))


@app.exception_handler(TenantScopeError)
async def tenant_scope_handler(request: Request, exc: TenantScopeError):
    return _error_response(request, 409, "CONSTRAINT_VIOLATION", "Conflict", str(exc))


@app.exception_handler(CreditLedgerError)
async def ledger_error_handler(request: Request, exc: CreditLedgerError):
    """Nothing was applied; the caller may retry."""
    return _error_response(
        request, 503, "LEDGER_UNAVAILABLE", "Service Unavailable",
        "The credit ledger could not complete the operation; no changes were applied",
    )


# Routes
app.include_router(health.router, prefix="", tags=["system"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "api": {
            "docs": "/docs" if not settings.is_production else None,
            "openapi": "/openapi.json" if not settings.is_production else None
        }
    }


# Main API routes
app.include_router(tenants.router, prefix="/api/v1/tenants", tags=["tenants"])
app.include_router(customers.router, prefix="/api/v1/customers", tags=["customers"])
app.include_router(credits.router, prefix="/api/v1/credits", tags=["credits"])
app.include_router(admin.router, prefix="/api/v1/admin/credits", tags=["admin"])


if __name__ == "__main__":
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
