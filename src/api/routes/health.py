"""Health check and system endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database import get_db_session, is_postgresql
from src.core.settings import get_settings
from src.schemas.base import HealthCheckResponse
from src.services.events import get_event_publisher

router = APIRouter()

SERVICE_NAME = "tenant-ledger-service"
SERVICE_VERSION = "1.0.0"

ISOLATED_TABLES = (
    "tenants",
    "tenant_memberships",
    "customers",
    "credit_accounts",
    "credit_transactions",
    "super_admin_actions",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _database_status(session: AsyncSession) -> Dict[str, Any]:
    try:
        value = (await session.execute(text("SELECT 1"))).scalar()
    except SQLAlchemyError as e:
        return {"status": "unhealthy", "error": str(e), "details": "Database connection failed"}
    if value != 1:
        return {"status": "unhealthy", "details": "Unexpected database response"}
    return {"status": "healthy", "details": "Connection successful"}


def _events_status() -> Dict[str, Any]:
    publisher = get_event_publisher()
    if publisher.event_bus_type != "sqs":
        return {"status": "healthy", "type": "mock", "details": "Ledger events are kept in memory"}
    if publisher.sqs_client and publisher.queue_url:
        return {"status": "healthy", "type": "sqs", "details": "SQS client initialized"}
    # Ledger writes still commit; only event delivery is lost
    return {"status": "degraded", "type": "sqs", "details": "SQS not properly configured"}


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(session: AsyncSession = Depends(get_db_session)):
    """
    Service health check endpoint.

    The database is required; a misconfigured event bus only degrades the
    service because ledger writes never wait on event delivery.
    """
    settings = get_settings()
    dependencies = {
        "database": await _database_status(session),
        "events": _events_status(),
        "rate_limiting": {"status": "healthy", "enabled": settings.rate_limit_enabled},
    }

    statuses = {dep["status"] for dep in dependencies.values()}
    if "unhealthy" in statuses:
        overall_status = "unhealthy"
    elif "degraded" in statuses:
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    health_data = {
        "status": overall_status,
        "timestamp": _now(),
        "version": SERVICE_VERSION,
        "environment": settings.environment,
        "dependencies": dependencies,
    }
    if overall_status == "unhealthy":
        health_data["timestamp"] = health_data["timestamp"].isoformat()
        raise HTTPException(status_code=503, detail=health_data)

    return HealthCheckResponse(**health_data)


@router.get("/health/database")
async def database_health(session: AsyncSession = Depends(get_db_session)):
    """Database health check including row-level security status on PostgreSQL."""
    try:
        await session.execute(text("SELECT 1"))

        if is_postgresql(session):
            rls_result = await session.execute(
                text("""
                    SELECT tablename, rowsecurity
                    FROM pg_tables
                    WHERE schemaname = 'public'
                    AND tablename = ANY(:tables)
                """),
                {"tables": list(ISOLATED_TABLES)},
            )
            rls_status = {row[0]: row[1] for row in rls_result.fetchall()}
            tables = sorted(rls_status)
        else:
            connection = await session.connection()
            existing = await connection.run_sync(lambda conn: inspect(conn).get_table_names())
            tables = sorted(t for t in existing if t in ISOLATED_TABLES)
            rls_status = {}

        return {
            "status": "healthy",
            "timestamp": _now().isoformat(),
            "details": {
                "connectivity": "ok",
                "tables": tables,
                "row_level_security": rls_status
            }
        }
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=503,
            detail={
                "status": "unhealthy",
                "timestamp": _now().isoformat(),
                "error": str(e)
            }
        )


@router.get("/version")
async def version_info():
    """Get service version information."""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "environment": get_settings().environment,
        "api_version": "v1",
    }
