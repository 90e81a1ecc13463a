"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' against the live store
  - No authentication required
  - Unknown routes still answer with the error envelope
"""

from __future__ import annotations

from api.main import VERSION


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == VERSION
    assert data["components"]["app"] == "ok"
    assert data["components"]["database"] == "ok"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    resp = api_client.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_unknown_route_uses_envelope(api_client):
    resp = api_client.client.get("/api/v1/nowhere")
    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["code"] == "http_404"
