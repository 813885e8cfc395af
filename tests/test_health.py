"""Health endpoint tests."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    """GET /health returns 200 with healthy status."""
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_readiness(client: AsyncClient) -> None:
    """GET /ready checks the database; Redis is reported as disabled when not configured."""
    response = await client.get("/ready")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    assert data["checks"]["database"] == "ok"
    assert data["checks"]["redis"] == "disabled"


@pytest.mark.asyncio
async def test_version(client: AsyncClient) -> None:
    """GET /version returns version and environment."""
    response = await client.get("/version")
    assert response.status_code == 200
    data = response.json()
    assert data["version"] == "0.1.0"
    assert data["environment"] == "test"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient) -> None:
    """A well-formed inbound X-Request-Id is kept and returned."""
    response = await client.get("/health", headers={"X-Request-Id": "abc-123.def"})
    assert response.headers["X-Request-Id"] == "abc-123.def"


@pytest.mark.asyncio
async def test_malformed_request_id_is_replaced(client: AsyncClient) -> None:
    """Ids with spaces or control characters never reach the logs."""
    response = await client.get("/health", headers={"X-Request-Id": "bad id\tinjected"})
    request_id = response.headers["X-Request-Id"]
    assert request_id != "bad id\tinjected"
    assert len(request_id) == 32


@pytest.mark.asyncio
async def test_cors_preflight_allows_csrf_header(client: AsyncClient) -> None:
    """The front-end origin may send the CSRF header on POST."""
    response = await client.options(
        "/auth/login",
        headers={
            "Origin": "http://localhost:8080",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "X-CSRF-Token",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:8080"
    assert "x-csrf-token" in response.headers["access-control-allow-headers"].lower()
