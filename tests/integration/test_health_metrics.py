"""Integration tests for /health, /healthz and /metrics endpoints."""

from unittest.mock import MagicMock, PropertyMock, patch

import pytest
from fastapi.testclient import TestClient

from backend.app.application import create_app
from backend.app.config import Settings
from backend.app.deferred.errors import StoreUnavailableError
from backend.app.deferred.worker import WorkerPool


@pytest.fixture
def client(settings: Settings) -> TestClient:
    """Create test client."""
    return TestClient(create_app(settings))


class TestHealthEndpoint:
    """Test /health and /healthz endpoints."""

    def test_health_always_ok(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_healthz_in_memory_backend(self, client: TestClient) -> None:
        """Without a database or Redis both components are not configured."""
        response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["components"] == {
            "db": "not_configured",
            "redis": "not_configured",
            "workers": "stopped",
        }

    @patch("backend.app.api.routes.health.check_db")
    @patch("backend.app.api.routes.health.check_redis")
    def test_healthz_returns_200_when_all_ok(
        self,
        mock_check_redis: MagicMock,
        mock_check_db: MagicMock,
        client: TestClient,
    ) -> None:
        """Test /healthz returns 200 when DB and Redis are healthy."""
        mock_check_db.return_value = (True, "ok")
        mock_check_redis.return_value = (True, "ok")

        response = client.get("/healthz")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["components"]["db"] == "ok"
        assert data["components"]["redis"] == "ok"

    @patch("backend.app.api.routes.health.check_db")
    @patch("backend.app.api.routes.health.check_redis")
    def test_healthz_returns_503_when_db_fails(
        self,
        mock_check_redis: MagicMock,
        mock_check_db: MagicMock,
        client: TestClient,
    ) -> None:
        """Test /healthz returns 503 when DB check fails."""
        mock_check_db.return_value = (False, "connection refused")
        mock_check_redis.return_value = (True, "ok")

        response = client.get("/healthz")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["db"] == "connection refused"
        assert data["components"]["redis"] == "ok"

    @patch("backend.app.api.routes.health.check_db")
    @patch("backend.app.api.routes.health.check_redis")
    def test_healthz_returns_503_when_redis_fails(
        self,
        mock_check_redis: MagicMock,
        mock_check_db: MagicMock,
        client: TestClient,
    ) -> None:
        """Test /healthz returns 503 when the Redis lanes are unreachable."""
        mock_check_db.return_value = (True, "ok")
        mock_check_redis.return_value = (False, "timeout")

        response = client.get("/healthz")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["redis"] == "timeout"

    def test_healthz_returns_503_when_worker_pool_failed(self, client: TestClient) -> None:
        """A pool stopped by a consumer error is reported as degraded."""
        with patch.object(
            WorkerPool,
            "failure",
            new_callable=PropertyMock,
            return_value=StoreUnavailableError("connection refused"),
        ):
            response = client.get("/healthz")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["workers"] == "failed: StoreUnavailableError"


class TestMetricsEndpoint:
    """Test /metrics endpoint."""

    def test_metrics_returns_prometheus_format(self, client: TestClient) -> None:
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "# HELP" in response.text or "# TYPE" in response.text

    def test_metrics_include_deferred_metrics(self, client: TestClient) -> None:
        """Deferral decisions are counted for every API request."""
        from backend.app.utils.metrics import (
            deferred_execution_latency_ms,
            deferred_executions_total,
        )

        deferred_executions_total.labels(lane="default", outcome="completed").inc()
        deferred_execution_latency_ms.labels(lane="default", outcome="completed").observe(12)

        client.get("/api/v1/deferred")
        response = client.get("/metrics")

        assert response.status_code == 200
        text = response.text
        assert "deferred_decisions_total" in text
        assert "deferred_executions_total" in text
        assert "deferred_execution_latency_ms" in text


class TestRootEndpoint:
    """Test root endpoint."""

    def test_root_returns_api_info(self, client: TestClient) -> None:
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Blafast API"
        assert data["version"] == "0.1.0"
