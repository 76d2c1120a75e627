from __future__ import annotations

from helpers import TEST_USER, gmail_message


def test_health_endpoint(client):
    """GET /api/health should return 200 with status=healthy."""
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "omnicrm-pipeline"
    assert data["version"] == "0.1.0"
    assert data["checks"]["database"] == "ok"
    assert data["checks"]["vector_backend"] == "sql"


def test_readiness_endpoint(client):
    """GET /api/health/ready should return 200 with status=ready."""
    response = client.get("/api/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


class TestHealthEdgeCases:
    def test_job_stats_included(self, client):
        client.app.state.ingestion_service.record_batch(TEST_USER, "gmail", [gmail_message("m1")])
        jobs = client.get("/api/health").json()["checks"]["jobs"]
        assert jobs["by_status"] == {"queued": 1}
        assert jobs["by_type"] == {"normalize": 1}
        assert jobs["recent_failures"] == []

    def test_health_no_auth_required(self, client_no_auth):
        resp = client_no_auth.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_readiness_no_auth_required(self, client_no_auth):
        assert client_no_auth.get("/api/health/ready").status_code == 200
