"""Tests for the per-client API rate limits."""

import pytest
from fastapi.testclient import TestClient

from conftest import ALICE, FakeIdentity
from tasklane.config import Settings, get_settings
from tasklane.database import get_engine
from tasklane.deps import get_identity_client
from tasklane.main import create_app
from tasklane.ratelimit import RateLimiter

GENERAL_MESSAGE = "Too many requests from this IP, please try again later."
AUTH_MESSAGE = "Too many authentication attempts, please try again later."


def _limited_client(engine, **overrides) -> TestClient:
    settings = Settings(
        rate_limit_max_requests=3,
        auth_rate_limit_max_requests=1,
        **overrides,
    )
    app = create_app(settings)
    identity = FakeIdentity()
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_identity_client] = lambda: identity
    app.dependency_overrides[get_settings] = lambda: settings
    return TestClient(app)


@pytest.fixture(name="limited_client")
def limited_client_fixture(engine):
    return _limited_client(engine)


def test_auth_attempts_are_limited(limited_client):
    login = {"email": "alice@example.com", "password": "correct-horse"}
    assert limited_client.post("/api/auth/login", json=login).status_code == 200

    response = limited_client.post("/api/auth/login", json=login)

    assert response.status_code == 429
    assert response.json() == {"error": "Too Many Requests", "message": AUTH_MESSAGE}
    assert int(response.headers["retry-after"]) >= 1
    assert response.headers["x-content-type-options"] == "nosniff"


def test_general_api_limit(limited_client):
    for _ in range(3):
        assert limited_client.get("/api/tasks/", headers=ALICE).status_code == 200

    response = limited_client.get("/api/tasks/", headers=ALICE)

    assert response.status_code == 429
    assert response.json() == {"error": "Too Many Requests", "message": GENERAL_MESSAGE}


def test_auth_requests_count_against_general_limit(limited_client):
    limited_client.get("/api/auth/profile", headers=ALICE)
    limited_client.get("/api/tasks/", headers=ALICE)
    limited_client.get("/api/tasks/", headers=ALICE)

    response = limited_client.get("/api/tasks/", headers=ALICE)
    assert response.status_code == 429
    assert response.json()["message"] == GENERAL_MESSAGE


def test_health_is_not_limited(limited_client):
    for _ in range(10):
        assert limited_client.get("/health").status_code == 200


def test_limits_can_be_disabled(engine):
    client = _limited_client(engine, rate_limit_enabled=False)
    for _ in range(5):
        assert client.get("/api/tasks/", headers=ALICE).status_code == 200


def test_limiter_counts_per_client():
    limiter = RateLimiter.from_settings(Settings(rate_limit_max_requests=1))

    assert limiter.check("/api/tasks/", "10.0.0.1") is None
    assert limiter.check("/api/tasks/", "10.0.0.2") is None
    rule, retry_after = limiter.check("/api/tasks/", "10.0.0.1")
    assert rule.prefix == "/api/"
    assert 1 <= retry_after <= 900

    limiter.reset()
    assert limiter.check("/api/tasks/", "10.0.0.1") is None


def test_rate_limit_settings_from_env(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "60000")
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "50")
    monkeypatch.setenv("AUTH_RATE_LIMIT_MAX_REQUESTS", "2")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")

    settings = Settings.from_env()

    assert settings.rate_limit_window_seconds == 60
    assert settings.rate_limit_max_requests == 50
    assert settings.auth_rate_limit_max_requests == 2
    assert settings.rate_limit_enabled is False


def test_rate_limit_defaults(monkeypatch):
    for name in (
        "RATE_LIMIT_WINDOW_MS",
        "RATE_LIMIT_MAX_REQUESTS",
        "AUTH_RATE_LIMIT_MAX_REQUESTS",
        "RATE_LIMIT_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.rate_limit_enabled is True
    assert settings.rate_limit_window_seconds == 900
    assert settings.rate_limit_max_requests == 100
    assert settings.auth_rate_limit_max_requests == 5
