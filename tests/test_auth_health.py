"""Tests for health checks, request timing, authentication and app-level error handlers."""

import pytest


# ── Health Endpoints ────────────────────────────────────────────────────


class TestHealthEndpoints:
    """Health check endpoint tests."""

    def test_health_basic(self, anonymous_client):
        """GET /api/v1/health returns 200."""
        res = anonymous_client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_health_ready(self, anonymous_client):
        res = anonymous_client.get("/api/v1/health/ready")
        assert res.status_code == 200

    def test_health_live(self, anonymous_client):
        """GET /api/v1/health/live returns detailed checks."""
        res = anonymous_client.get("/api/v1/health/live")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "ok"
        assert "latency_ms" in data["checks"]["database"]
        assert data["checks"]["storage"]["adapter"] == "InMemoryObjectStorage"
        assert data["checks"]["redis"]["status"] == "skipped"
        assert data["checks"]["app"]["testing"] is True

    def test_health_live_degraded_without_storage(self, app, anonymous_client):
        storage = app.extensions.pop("object_storage")
        try:
            res = anonymous_client.get("/api/v1/health/live")
        finally:
            app.extensions["object_storage"] = storage
        assert res.status_code == 503
        assert res.get_json()["status"] == "degraded"


# ── Request Timing ──────────────────────────────────────────────────────


class TestRequestTiming:
    """Request timing middleware tests."""

    def test_duration_header_present(self, anonymous_client):
        res = anonymous_client.get("/api/v1/health")
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_request_id_generated(self, anonymous_client):
        res = anonymous_client.get("/api/v1/health")
        assert len(res.headers["X-Request-ID"]) > 0

    def test_custom_request_id_passthrough(self, anonymous_client):
        res = anonymous_client.get("/api/v1/health", headers={"X-Request-ID": "test-123"})
        assert res.headers["X-Request-ID"] == "test-123"


# ── Authentication ──────────────────────────────────────────────────────


class TestDevelopmentAuth:
    """API_AUTH_ENABLED=false: the user comes from X-User-Id."""

    def test_missing_user_is_401(self, anonymous_client):
        res = anonymous_client.get("/api/v1/projects")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHORIZED"

    def test_blank_user_is_401(self, anonymous_client):
        res = anonymous_client.get("/api/v1/projects", headers={"X-User-Id": "   "})
        assert res.status_code == 401

    def test_user_header_accepted(self, client):
        assert client.get("/api/v1/projects").status_code == 200


class TestApiKeyAuth:
    """API_AUTH_ENABLED=true: X-API-Key mapped through API_KEYS."""

    @pytest.fixture(autouse=True)
    def _enable_auth(self, monkeypatch):
        monkeypatch.setenv("API_AUTH_ENABLED", "true")
        monkeypatch.setenv("API_KEYS", "k-alice:alice, k-bob:bob, orphan-key")

    def test_valid_key_resolves_user(self, anonymous_client):
        res = anonymous_client.post(
            "/api/v1/projects", json={"name": "Alice's"}, headers={"X-API-Key": "k-alice"},
        )
        assert res.status_code == 201
        assert res.get_json()["project"]["user_id"] == "alice"

        listed = anonymous_client.get("/api/v1/projects", headers={"X-API-Key": "k-bob"})
        assert listed.get_json()["total"] == 0

    def test_query_param_key(self, anonymous_client):
        assert anonymous_client.get("/api/v1/projects?api_key=k-bob").status_code == 200

    def test_missing_key(self, anonymous_client):
        assert anonymous_client.get("/api/v1/projects").status_code == 401

    def test_user_header_ignored(self, client):
        assert client.get("/api/v1/projects").status_code == 401

    def test_invalid_key(self, anonymous_client):
        res = anonymous_client.get("/api/v1/projects", headers={"X-API-Key": "orphan-key"})
        assert res.status_code == 401

    def test_keys_not_configured(self, monkeypatch, anonymous_client):
        monkeypatch.setenv("API_KEYS", "")
        res = anonymous_client.get("/api/v1/projects", headers={"X-API-Key": "k-alice"})
        assert res.status_code == 500

    def test_health_stays_public(self, anonymous_client):
        assert anonymous_client.get("/api/v1/health").status_code == 200


# ── App-level error handlers ────────────────────────────────────────────


class TestErrorHandlers:
    def test_unknown_route_is_json_404(self, client):
        res = client.get("/api/v1/does-not-exist")
        assert res.status_code == 404
        assert res.get_json()["path"] == "/api/v1/does-not-exist"

    def test_method_not_allowed(self, client):
        res = client.patch("/api/v1/projects")
        assert res.status_code == 405
        assert res.get_json()["error"] == "Method not allowed"

    def test_wrong_content_type_is_415(self, client):
        res = client.post("/api/v1/projects", data="name=x", content_type="text/plain")
        assert res.status_code == 415

    def test_missing_row_uses_service_error_shape(self, client):
        res = client.get("/api/v1/suites/424242")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"
