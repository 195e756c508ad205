"""
Unit tests for FastAPI application.
"""

import pytest


@pytest.fixture
def client(api_client):
    """Create a test client for the FastAPI application."""
    return api_client


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["snapshot_store"] is True
    assert "version" in data


def test_root_endpoint(client):
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert "message" in data
    assert data["docs"] == "/docs"


def test_openapi_lists_routes(client):
    paths = client.get("/openapi.json").json()["paths"]

    assert "/api/saves/{owner}/{repo}/{branch}" in paths
    assert "/api/content/{owner}/{repo}/commit" in paths
    assert "/api/rate-limit" in paths
