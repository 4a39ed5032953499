"""Health endpoint."""
from fastapi.testclient import TestClient


def test_health_returns_ok(client: TestClient):
    r = client.get("/health")
    assert r.status_code == 200
    j = r.json()
    assert j.get("status") == "ok"
    assert j.get("database") == "ok"
    # No processor credentials in the test environment: only cash on delivery
    assert j.get("gateways") == ["cod"]
    assert r.headers.get("X-Request-ID")
