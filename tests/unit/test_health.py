"""
Tests for health check endpoints.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)

HEALTHY_DB = {
    "healthy": True,
    "pool_stats": {"pool_size": 5, "pool_available": 4, "pool_utilization_percent": 20.0},
}


def scheduler_stub(status="healthy"):
    health = {"status": status, "queue": "reports", "checks": {}}
    return SimpleNamespace(
        scheduler=SimpleNamespace(health_check=AsyncMock(return_value=health)),
        run_workers=False,
    )


@pytest.fixture
def reporting_state():
    app.state.reporting = scheduler_stub()
    yield app.state.reporting
    app.state.reporting = None


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "backroom-reporting"


def test_readyz_endpoint_all_services_healthy(reporting_state):
    """Test readiness endpoint when all services are healthy."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
        patch("app.routes.health.settings.RESEND_API_KEY", "re_test"),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True

    checks = data["checks"]
    assert checks["redis"]["ok"] is True
    assert checks["database"]["ok"] is True
    assert checks["database"]["pool_size"] == 5
    assert checks["scheduler"]["ok"] is True
    assert checks["configuration"]["ok"] is True
    assert checks["configuration"]["warnings"] is None
    reporting_state.scheduler.health_check.assert_awaited_once_with(expect_workers=False)


def test_readyz_endpoint_redis_unhealthy(reporting_state):
    """Test readiness endpoint when Redis is down."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=False)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    # Should still return 200, but overall_ok should be False
    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["redis"]["ok"] is False


def test_readyz_endpoint_database_unhealthy(reporting_state):
    """Test readiness endpoint when the database pool is down."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch(
            "app.routes.health.db_health_check",
            new=AsyncMock(return_value={"healthy": False, "error": "Connection failed"}),
        ),
    ):
        response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["ok"] is False
    assert data["checks"]["database"]["error"] == "Connection failed"


def test_readyz_endpoint_scheduler_unhealthy():
    """Test readiness endpoint when the reporting scheduler reports unhealthy."""
    app.state.reporting = scheduler_stub(status="unhealthy")
    try:
        with (
            patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
            patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
        ):
            response = client.get("/readyz")
    finally:
        app.state.reporting = None

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["scheduler"]["ok"] is False


def test_readyz_endpoint_reporting_not_initialized():
    """Test readiness endpoint before the lifespan wired the scheduler."""
    app.state.reporting = None
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["scheduler"]["error"] == "Reporting not initialized"


def test_readyz_warns_without_email_key(reporting_state):
    """Missing email credentials is a warning, not a failure."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
        patch("app.routes.health.settings.RESEND_API_KEY", None),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["configuration"]["warnings"] == [
        "RESEND_API_KEY not set, report emails will fail"
    ]


def test_readyz_includes_latency_metrics(reporting_state):
    """Test that readiness checks include latency metrics."""
    with (
        patch("app.routes.health.fast_redis.ping", new=AsyncMock(return_value=True)),
        patch("app.routes.health.db_health_check", new=AsyncMock(return_value=HEALTHY_DB)),
    ):
        response = client.get("/readyz")

    checks = response.json()["checks"]
    assert isinstance(checks["redis"]["latency_ms"], (int, float))
    assert isinstance(checks["database"]["latency_ms"], (int, float))


def test_scheduler_health_endpoint(reporting_state):
    response = client.get("/health/scheduler")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
