"""Tests for the health and readiness endpoints."""

import uuid
from unittest.mock import patch

import pytest

pytestmark = pytest.mark.integration


def test_health_reports_healthy(api_client):
    response = api_client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "stacksgate"}


def test_health_returns_503_while_shutting_down(app, api_client):
    app.state.shutting_down = True

    response = api_client.get("/api/health")

    assert response.status_code == 503
    assert response.json()["status"] == "shutting_down"


def test_response_includes_correlation_id_header(api_client):
    response = api_client.get("/api/health")

    uuid.UUID(response.headers["x-request-id"])


def test_custom_correlation_id_echoed(api_client):
    response = api_client.get("/api/health", headers={"X-Request-ID": "custom-id-123"})

    assert response.headers["x-request-id"] == "custom-id-123"


def test_ready_with_memory_storage(api_client, memory_settings):
    with patch("stacksgate.api.routes.health.get_settings", return_value=memory_settings):
        response = api_client.get("/api/ready")

    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {}, "disabled_subsystems": []}


def test_ready_degraded_when_database_not_initialized(api_client, memory_settings):
    sql_settings = memory_settings.model_copy(update={"storage_backend": "sql"})

    with patch("stacksgate.api.routes.health.get_settings", return_value=sql_settings):
        response = api_client.get("/api/ready")

    assert response.status_code == 503
    assert response.json()["checks"] == {"database": False}


def test_ready_lists_disabled_subsystems(app, api_client, memory_settings):
    class StubCoordinator:
        disabled = {"confirmation_monitor": "No chain client configured"}

    app.state.coordinator = StubCoordinator()

    with patch("stacksgate.api.routes.health.get_settings", return_value=memory_settings):
        response = api_client.get("/api/ready")

    assert response.json()["disabled_subsystems"] == ["confirmation_monitor"]
