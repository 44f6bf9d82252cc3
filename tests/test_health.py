"""Tests for health check endpoints."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test basic health check endpoint."""
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()

    assert data["status"] == "healthy"
    assert "timestamp" in data
    assert "version" in data
    assert data["environment"] == "test"
    assert data["dependencies"]["database"]["status"] == "healthy"
    assert data["dependencies"]["events"]["type"] == "mock"


@pytest.mark.asyncio
async def test_database_health_lists_isolated_tables(client: AsyncClient):
    response = await client.get("/health/database")

    assert response.status_code == 200
    tables = response.json()["details"]["tables"]
    assert "customers" in tables
    assert "credit_transactions" in tables


@pytest.mark.asyncio
async def test_version_endpoint(client: AsyncClient):
    """Test version information endpoint."""
    response = await client.get("/version")

    assert response.status_code == 200
    data = response.json()

    assert data["service"] == "tenant-ledger-service"
    assert data["api_version"] == "v1"
    assert "version" in data
    assert "environment" in data


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    """Test root endpoint."""
    response = await client.get("/")

    assert response.status_code == 200
    data = response.json()

    assert data["service"] == "tenant-ledger-service"
    assert data["status"] == "running"


@pytest.mark.asyncio
async def test_protected_endpoint_requires_token(client: AsyncClient):
    response = await client.get("/api/v1/tenants")

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "AUTHORIZATION_REQUIRED"


@pytest.mark.asyncio
async def test_invalid_token_rejected(client: AsyncClient):
    response = await client.get("/api/v1/tenants", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "INVALID_JWT_TOKEN"
