"""Tests for health check endpoints."""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient


class TestHealthEndpoints:
    """Test suite for health check endpoints."""

    def test_health_check_returns_status(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data
        assert data["checks"]["database"]["status"] == "healthy"

    def test_health_check_reports_degraded_database(self, client: TestClient) -> None:
        with patch(
            "credstore.main.check_db_health",
            new=AsyncMock(return_value={"status": "unhealthy", "error": "connection refused"}),
        ):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    def test_root_endpoint_returns_api_info(self, client: TestClient) -> None:
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "Credential Store" in data["message"]
        assert "version" in data

    def test_unknown_route_uses_error_envelope(self, client: TestClient) -> None:
        response = client.get("/api/v1/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"] is True
