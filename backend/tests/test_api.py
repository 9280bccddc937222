import pytest
from fastapi.testclient import TestClient

from app.core.database import get_db
from app.main import app


@pytest.fixture
def api(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health_and_metrics(api):
    health = api.get("/health")
    assert health.status_code == 200
    assert health.json()["readiness"]["sweeper"]["running"] is False

    metrics = api.get("/metrics")
    assert metrics.status_code == 200
    assert "contentforge_http_requests_total" in metrics.text


def test_missing_credentials_render_generic_message(api):
    response = api.get("/api/v1/auth/me")

    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Please log in again"
    assert "reason" not in body["details"]


def test_refresh_flow_over_http(api):
    registered = api.post(
        "/api/v1/auth/register",
        json={"email": "ada@example.com", "password": "correct-horse"},
        headers={"User-Agent": "pytest-client/1.0"},
    )
    assert registered.status_code == 201
    tokens = registered.json()

    me = api.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
    assert me.status_code == 200
    assert me.json()["email"] == "ada@example.com"

    rotated = api.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert rotated.status_code == 200

    replay = api.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert replay.status_code == 401
    assert replay.json()["error"] == "Please log in again"


def test_oauth_exchange_requires_bridge_key(api):
    payload = {"email": "grace@example.com", "provider": "google", "provider_id": "g-1"}

    denied = api.post("/api/v1/auth/oauth/exchange", json=payload)
    assert denied.status_code == 403

    accepted = api.post(
        "/api/v1/auth/oauth/exchange",
        json=payload,
        headers={"X-Identity-Bridge-Key": "test-bridge-key"},
    )
    assert accepted.status_code == 200
    assert accepted.json()["is_new_user"] is True
