import importlib
import os

import pytest
from fastapi.testclient import TestClient

from tenantcrm import app as app_module
from tenantcrm.service.errors import SigningKeyError


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides for CORS tests."""
    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded
    finally:
        importlib.reload(app_module)


def test_security_headers_and_health(fresh_app):
    client = TestClient(fresh_app.app)
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["version"] == app_module.__version__
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "no-store" in response.headers["Cache-Control"]
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert "Strict-Transport-Security" not in response.headers


def test_hsts_only_over_https():
    client = TestClient(app_module.app, base_url="https://testserver")
    response = client.get("/healthz")
    assert response.headers["Strict-Transport-Security"].startswith("max-age=")


def test_request_id_is_echoed():
    client = TestClient(app_module.app)
    response = client.get("/v1/auth/verify", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 401
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["request_id"] == "req-123"


def test_request_id_generated_when_missing():
    client = TestClient(app_module.app)
    response = client.get("/healthz")
    assert response.headers["X-Request-ID"]


def test_unknown_route_uses_error_envelope():
    client = TestClient(app_module.app)
    response = client.get("/v1/does-not-exist")

    assert response.status_code == 404
    assert response.json()["status"] == "error"
    assert response.json()["error"]["code"] == "not_found"


def test_allowed_origins_default(fresh_app):
    origins = fresh_app._allowed_origins()
    assert "http://localhost:3000" in origins
    assert "http://127.0.0.1:5173" in origins
    assert "*" not in origins


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://crm.example.com, https://demo.local")
    try:
        reloaded = importlib.reload(app_module)
        assert reloaded._allowed_origins() == ["https://crm.example.com", "https://demo.local"]
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS")
        importlib.reload(app_module)


def test_missing_signing_key_fails_import(monkeypatch):
    secret = os.environ["JWT_SECRET"]
    monkeypatch.delenv("JWT_SECRET")
    try:
        with pytest.raises(SigningKeyError):
            importlib.reload(app_module)
    finally:
        monkeypatch.setenv("JWT_SECRET", secret)
        importlib.reload(app_module)
