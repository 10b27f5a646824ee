"""
Tests for api/main.py and api/routes.py - Gateway application.

Covers:
- /health and /debug/cookies
- Collaborator route groups (passed in and loaded from import strings)
- Middleware ordering: normalized errors still carry CORS headers
"""
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from fastapi import APIRouter
from fastapi.testclient import TestClient


def make_supervisor(state):
    from db.connection import ConnectionSupervisor

    supervisor = Mock(spec=ConnectionSupervisor)
    supervisor.current_state.return_value = state
    return supervisor


@pytest.fixture
def sheets_router(operational_error):
    router = APIRouter()

    @router.get("/")
    async def list_sheets():
        return [{"id": 1, "title": "Unit 3 quiz"}]

    @router.get("/broken")
    async def broken():
        raise operational_error()

    return router


@pytest.fixture
def auth_router():
    router = APIRouter()

    @router.post("/login")
    async def login():
        return {"ok": True}

    return router


@pytest.fixture
def client(gateway_config, auth_router, sheets_router):
    from api.main import create_app
    from db.connection import ConnectionState

    app = create_app(
        gateway_config,
        make_supervisor(ConnectionState.CONNECTED),
        auth_router=auth_router,
        sheets_router=sheets_router,
    )
    return TestClient(app)


# =============================================================================
# System Route Tests
# =============================================================================

class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_health_connected(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "OK"
        assert body["database"] == "connected"
        parsed = datetime.strptime(body["timestamp"], "%Y-%m-%dT%H:%M:%S.%fZ")
        assert abs(parsed.replace(tzinfo=timezone.utc) - datetime.now(timezone.utc)).total_seconds() < 60

    def test_health_reflects_live_state(self, gateway_config):
        from api.main import create_app
        from db.connection import ConnectionState

        supervisor = make_supervisor(ConnectionState.CONNECTED)
        client = TestClient(create_app(gateway_config, supervisor))

        assert client.get("/health").json()["database"] == "connected"
        supervisor.current_state.return_value = ConnectionState.DISCONNECTING
        assert client.get("/health").json()["database"] == "disconnecting"

    def test_health_without_supervisor(self, gateway_config):
        from api.main import create_app

        client = TestClient(create_app(gateway_config))
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "disconnected"

    def test_health_subject_to_origin_policy(self, client):
        response = client.get("/health", headers={"Origin": "https://evil.example"})

        assert response.status_code == 403
        assert response.json()["code"] == "CORS_DENIED"

    def test_origin_policy_built_from_config(self, gateway_config):
        from api.main import create_app
        from api.security.cors import OriginPolicy

        app = create_app(gateway_config)

        policy = app.state.origin_policy
        assert isinstance(policy, OriginPolicy)
        assert policy.config is gateway_config.cors


class TestDebugCookiesEndpoint:
    """Tests for GET /debug/cookies."""

    def test_sets_test_cookie(self, client):
        response = client.get("/debug/cookies")

        assert response.status_code == 200
        set_cookie = response.headers["set-cookie"].lower()
        assert set_cookie.startswith("test-cookie=test-value")
        assert "max-age=60" in set_cookie
        assert "samesite=lax" in set_cookie
        assert "httponly" not in set_cookie
        assert "secure" not in set_cookie

    def test_echoes_cookies_and_origin(self, client):
        origin = "http://localhost:5173"
        response = client.get(
            "/debug/cookies",
            headers={"Origin": origin, "Cookie": "session=abc123"},
        )

        assert response.json() == {
            "message": "Debug endpoint",
            "cookies": {"session": "abc123"},
            "origin": origin,
        }
        assert response.headers["access-control-allow-origin"] == origin


# =============================================================================
# Route Group Tests
# =============================================================================

class TestRouteGroups:
    """Tests for collaborator router mounting."""

    def test_groups_mounted_under_prefixes(self, client):
        assert client.post("/auth/login").json() == {"ok": True}
        assert client.get("/api/sheets/").json() == [{"id": 1, "title": "Unit 3 quiz"}]

    def test_missing_groups_are_skipped(self, gateway_config):
        from api.main import create_app

        client = TestClient(create_app(gateway_config))

        assert client.post("/auth/login").status_code == 404

    def test_router_loaded_from_import_string(self, gateway_config, tmp_path, monkeypatch):
        from api.main import create_app

        (tmp_path / "collab_sheets.py").write_text(
            "from fastapi import APIRouter\n"
            "router = APIRouter()\n"
            "@router.get('/count')\n"
            "async def count():\n"
            "    return {'count': 3}\n"
        )
        monkeypatch.syspath_prepend(str(tmp_path))
        gateway_config.api.sheets_router = "collab_sheets:router"

        client = TestClient(create_app(gateway_config))

        assert client.get("/api/sheets/count").json() == {"count": 3}

    @pytest.mark.parametrize("import_string", [
        "no_colon_here",
        "does_not_exist_module:router",
        "fastapi.routing:APIRouter",
    ])
    def test_bad_import_string_rejected(self, import_string):
        from api.routes import load_router
        from core.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            load_router(import_string)


# =============================================================================
# Middleware Ordering Tests
# =============================================================================

class TestMiddlewareOrdering:
    """Normalized failures still pass through the origin policy."""

    def test_persistence_failure_normalized_with_cors_headers(self, client):
        origin = "https://test-gen-frontend.onrender.com"
        response = client.get("/api/sheets/broken", headers={"Origin": origin})

        assert response.status_code == 503
        assert response.json() == {"message": "Database temporarily unavailable", "code": "DB_ERROR"}
        assert response.headers["access-control-allow-origin"] == origin

    def test_request_id_propagated(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"

    def test_request_id_generated(self, client):
        response = client.get("/health")

        assert response.headers["x-request-id"]

    def test_app_state_exposes_supervisor(self, gateway_config):
        from api.main import create_app
        from db.connection import ConnectionState

        supervisor = make_supervisor(ConnectionState.CONNECTED)
        app = create_app(gateway_config, supervisor)

        assert app.state.supervisor is supervisor
        assert app.state.config is gateway_config
