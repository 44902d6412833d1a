from fastapi.testclient import TestClient

from dutysync.api import get_context
from dutysync.config import settings
from dutysync.main import app


def make_client(ctx):
    app.dependency_overrides[get_context] = lambda: ctx
    return TestClient(app)


def test_health_ready_ok_without_redis(ctx):
    previous_redis = settings.REDIS_URL
    try:
        settings.REDIS_URL = ""
        client = make_client(ctx)
        response = client.get("/health/ready")
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ready"
        assert payload["checks"]["db"] == "ok"
        assert payload["checks"]["redis"] == "skipped"
        assert payload["checks"]["sync"] == "enabled"
    finally:
        settings.REDIS_URL = previous_redis
        app.dependency_overrides.clear()


def test_health_ready_reports_unreachable_redis(ctx):
    previous_redis = settings.REDIS_URL
    try:
        settings.REDIS_URL = "redis://127.0.0.1:1/0"
        client = make_client(ctx)
        response = client.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["checks"]["redis"] == "error"
    finally:
        settings.REDIS_URL = previous_redis
        app.dependency_overrides.clear()


def test_security_headers_are_present():
    previous_security_headers = bool(settings.SECURITY_HEADERS_ENABLED)
    try:
        settings.SECURITY_HEADERS_ENABLED = True
        client = TestClient(app)
        response = client.get("/health")
        assert response.status_code == 200
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("X-Frame-Options") == "DENY"
        assert response.headers.get("Referrer-Policy") == "no-referrer"
    finally:
        settings.SECURITY_HEADERS_ENABLED = previous_security_headers


def test_request_id_is_echoed():
    client = TestClient(app)
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers.get("X-Request-ID") == "req-123"

    generated = client.get("/health")
    assert generated.headers.get("X-Request-ID")


class _PingClient:
    def __init__(self):
        self.closed = False

    def ping(self):
        return True

    def close(self):
        self.closed = True


def test_health_ready_closes_its_redis_client(ctx, monkeypatch):
    created = []

    def fake_from_url(url, **kwargs):
        created.append(_PingClient())
        return created[-1]

    monkeypatch.setattr("dutysync.main.redis.from_url", fake_from_url)
    monkeypatch.setattr(settings, "REDIS_URL", "redis://cache:6379/0")
    try:
        client = make_client(ctx)
        for _ in range(2):
            response = client.get("/health/ready")
            assert response.status_code == 200
            assert response.json()["checks"]["redis"] == "ok"
    finally:
        app.dependency_overrides.clear()

    assert len(created) == 2
    assert all(c.closed for c in created)
