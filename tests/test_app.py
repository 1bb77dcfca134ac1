"""Tests for app-level behaviour: health, errors, headers and configuration."""

from conftest import ALICE
from tasklane.config import Settings
from tasklane.database import build_engine, normalize_database_url


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "OK"
    assert "timestamp" in body
    assert "environment" in body


def test_index(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["endpoints"]["tasks"] == "/api/tasks"


def test_unknown_route(client):
    response = client.get("/api/nothing-here")
    assert response.status_code == 404
    assert response.json() == {"error": "Not Found", "message": "Route /api/nothing-here not found"}


def test_method_not_allowed(client):
    response = client.patch("/health")
    assert response.status_code == 405
    assert response.json()["error"] == "Method Not Allowed"


def test_security_headers(client):
    response = client.get("/health")
    assert response.headers["x-content-type-options"] == "nosniff"
    assert response.headers["x-frame-options"] == "DENY"
    assert response.headers["referrer-policy"] == "no-referrer"


def test_security_headers_on_errors(client):
    response = client.get("/api/tasks/", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401
    assert response.headers["x-content-type-options"] == "nosniff"


def test_cors_preflight(client):
    response = client.options(
        "/api/tasks/",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Authorization",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_cors_rejects_unknown_origin(client):
    response = client.get("/health", headers={"Origin": "https://evil.example"})
    assert "access-control-allow-origin" not in response.headers


def test_malformed_json_body(client):
    response = client.post(
        "/api/tasks/",
        content=b"{not json",
        headers={**ALICE, "Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Bad Request"


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
    monkeypatch.setenv("ENHANCEMENT_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("STATUS_POLL_INTERVAL_SECONDS", "not-a-number")

    settings = Settings.from_env()

    assert settings.is_production
    assert settings.log_level == "DEBUG"
    assert settings.cors_origins == ("https://a.example", "https://b.example")
    assert settings.identity_configured
    assert settings.enhancement_timeout_seconds == 30.0
    assert settings.status_poll_interval_seconds == 2.0


def test_settings_without_identity_provider(monkeypatch):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)
    assert not Settings.from_env().identity_configured


def test_postgres_url_is_normalized():
    assert normalize_database_url("postgres://u:p@db.example:5432/tasks") == (
        "postgresql://u:p@db.example:5432/tasks"
    )
    assert normalize_database_url("sqlite:///tasks.db") == "sqlite:///tasks.db"


def test_sqlite_engine_enforces_foreign_keys(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'tasks.db'}")
    with engine.connect() as connection:
        assert connection.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
    engine.dispose()
