"""Status endpoint served next to the bot."""
import pytest
from fastapi.testclient import TestClient

from admin.app import create_app
from common.config import CURRENT_VERSION


@pytest.fixture
def ready():
    return {"value": True}


@pytest.fixture
def client(ready):
    stats = {"processed": 3, "queues": {"c-es": {"length": 1, "processing": True}}}
    return TestClient(create_app(lambda: stats, is_ready=lambda: ready["value"]))


def test_health_reports_readiness(client, ready):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.text == "ok"

    ready["value"] = False
    resp = client.get("/health")
    assert resp.status_code == 503
    assert resp.text == "not ready"


def test_status_includes_version_and_stats(client):
    body = client.get("/status").json()
    assert body["ok"] is True
    assert body["version"] == CURRENT_VERSION
    assert body["ready"] is True
    assert body["processed"] == 3
    assert body["queues"]["c-es"] == {"length": 1, "processing": True}
    assert body["uptime_seconds"] >= 0


def test_status_failure_returns_500():
    def broken():
        raise RuntimeError("boom")

    resp = TestClient(create_app(broken)).get("/status")
    assert resp.status_code == 500
    assert resp.json() == {"ok": False, "error": "stats unavailable"}
