# tests/test_health_endpoints.py
from fastapi.testclient import TestClient
from crmhub.main import app

client = TestClient(app)


def test_health_endpoint():
    """Test that /health reports KV backend and KeyCRM config."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["timestamp"].endswith("Z")
    assert data["kv_backend"] == "memory"
    assert data["keycrm_configured"] is True
    assert "version" in data


def test_ping_endpoint():
    """Test that /ping endpoint works."""
    response = client.get("/ping")
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["pong"] is True
    assert data["time"].endswith("Z")
