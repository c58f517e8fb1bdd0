from unittest.mock import AsyncMock, Mock

from fastapi.testclient import TestClient

from server.rag_api import app

client = TestClient(app)


def test_health():
    """Test the health endpoint returns OK status."""
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("ok") is True


def test_health_response_format():
    """Test that health endpoint returns proper JSON format."""
    r = client.get("/health")
    response_data = r.json()
    assert "time" in response_data
    assert isinstance(response_data["time"], str)


def test_root_lists_endpoints():
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["health"] == "/health"


def test_detailed_health_without_services():
    app.state.services = None
    r = client.get("/health/detailed")
    assert r.status_code == 503


def test_detailed_health(store, website):
    services = Mock()
    services.store = store
    services.jobs.is_running = False
    services.jobs.backend = "memory"
    services.sessions = ["s1", "s2"]
    services.settings.cors_origins = ["*"]
    app.state.services = services
    try:
        r = client.get("/health/detailed")
    finally:
        app.state.services = None

    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "degraded"
    assert data["components"]["database"]["status"] == "healthy"
    assert data["components"]["database"]["websites"] == 1
    assert data["components"]["jobs"] == {"status": "unavailable", "backend": "memory"}
    assert data["components"]["sessions"]["live"] == 2


def test_detailed_health_database_down():
    services = Mock()
    services.store.get_stats = AsyncMock(side_effect=ConnectionError("connection refused"))
    services.jobs.is_running = True
    services.jobs.backend = "redis"
    services.sessions = []
    services.settings.cors_origins = ["*"]
    app.state.services = services
    try:
        r = client.get("/health/detailed")
    finally:
        app.state.services = None

    data = r.json()
    assert data["status"] == "degraded"
    assert data["components"]["database"]["status"] == "unhealthy"


def test_metrics_endpoint():
    client.get("/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "sitechat_http_requests_total" in r.text
