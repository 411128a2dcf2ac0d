"""
Tests for the HTTP endpoints.

The application is exercised through FastAPI's TestClient with a store
double; no database is needed.
"""

import pytest
from fastapi.testclient import TestClient

import audit_service.services.pipeline  # noqa: F401  registers ingestion metrics
from audit_service.errors import StoreReadError
from audit_service.main import create_app
from audit_service.models import AuditRecord


class StubStore:
    """Store double returning canned records."""

    def __init__(self, payloads=(), error=None, healthy=True):
        self.payloads = list(payloads)
        self.error = error
        self.healthy = healthy
        self.limits = []

    async def recent_records(self, limit):
        self.limits.append(limit)
        if self.error is not None:
            raise self.error
        return [
            AuditRecord(payload=p, sequence_id=len(self.payloads) - i)
            for i, p in enumerate(self.payloads[:limit])
        ]

    async def health_check(self):
        return self.healthy


class FakeLifecycle:
    def __init__(self, state, ingesting=False):
        from audit_service.lifecycle import LifecycleState

        self.state = LifecycleState(state)
        self.ingesting = ingesting


def client_for(settings, store, lifecycle=None) -> TestClient:
    app = create_app(settings, store)
    app.state.lifecycle = lifecycle
    return TestClient(app, raise_server_exceptions=False)


class TestRetrieveOperations:
    """Tests for GET /."""

    def test_returns_recent_payloads(self, settings):
        store = StubStore([{"op": "BUY"}, {"op": "SELL"}])
        client = client_for(settings, store)

        response = client.get("/")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/json")
        assert response.json() == [{"op": "BUY"}, {"op": "SELL"}]
        assert store.limits == [10]

    def test_empty_store(self, settings):
        response = client_for(settings, StubStore()).get("/")

        assert response.status_code == 200
        assert response.json() == []

    def test_configured_limit(self, settings):
        settings.query_limit = 3
        store = StubStore([{"n": i} for i in range(5)])

        response = client_for(settings, store).get("/")

        assert len(response.json()) == 3
        assert store.limits == [3]

    def test_read_failure_is_500(self, settings):
        store = StubStore(error=StoreReadError("connection reset"))

        response = client_for(settings, store).get("/")

        assert response.status_code == 500
        assert response.json() == {"detail": "Failed to retrieve operations"}
        assert "connection reset" not in response.text

    def test_unexpected_failure_is_generic_500(self, settings):
        store = StubStore(error=RuntimeError("boom"))

        response = client_for(settings, store).get("/")

        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error"}

    def test_timing_header(self, settings):
        response = client_for(settings, StubStore()).get("/")

        assert float(response.headers["X-Process-Time"]) >= 0


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health(self, settings):
        client = client_for(settings, StubStore(), FakeLifecycle("ready", ingesting=True))

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["lifecycle"] == "ready"
        assert body["ingestion"] == "running"
        assert body["version"] == settings.app_version

    def test_health_database_down(self, settings):
        client = client_for(settings, StubStore(healthy=False), FakeLifecycle("ready"))

        body = client.get("/health").json()

        assert body["status"] == "unhealthy"
        assert body["database"] == "disconnected"
        assert body["ingestion"] == "idle"

    def test_liveness(self, settings):
        assert client_for(settings, StubStore()).get("/health/live").json() == {"status": "alive"}

    @pytest.mark.parametrize("state", ["created", "starting", "failed", "stopped"])
    def test_not_ready(self, settings, state):
        response = client_for(settings, StubStore(), FakeLifecycle(state)).get("/health/ready")

        assert response.status_code == 503
        assert response.json()["lifecycle"] == state

    def test_ready_while_ingestion_idle(self, settings):
        response = client_for(settings, StubStore(), FakeLifecycle("ready")).get("/health/ready")

        assert response.status_code == 200
        assert response.json() == {"status": "ready", "ingestion": "idle"}

    def test_unmanaged_app_is_not_ready(self, settings):
        response = client_for(settings, StubStore()).get("/health/ready")

        assert response.status_code == 503

    def test_metrics(self, settings):
        response = client_for(settings, StubStore()).get("/metrics")

        assert response.status_code == 200
        assert "audit_records_ingested_total" in response.text

    def test_metrics_disabled(self, settings):
        settings.enable_metrics = False

        assert client_for(settings, StubStore()).get("/metrics").status_code == 404
