"""Tests for the HTTP surface with the session dependency overridden."""

import pytest
from fastapi.testclient import TestClient

from genorch.api.app import app
from genorch.api.routes import get_generation_session
from genorch.orchestrator.session import GenerationSession

from conftest import ScriptedProvider, ok


@pytest.fixture
def session(test_settings, clock, sleep, rng):
    provider = ScriptedProvider(lambda r: ok({"url": f"https://cdn.test/{r.id}.png"}))
    return GenerationSession(provider, test_settings, clock=clock, sleep=sleep, rng=rng)


@pytest.fixture
def client(session):
    app.dependency_overrides[get_generation_session] = lambda: session
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_submit_then_list_tasks(client):
    response = client.post(
        "/api/generations",
        json={"items": [{"prompt": "a"}, {"prompt": "b", "scene_id": "s2"}, {"prompt": "c"}]},
    )

    assert response.status_code == 202
    body = response.json()
    assert len(body["request_ids"]) == 3
    assert body["status_url"] == "/api/tasks"

    # Background tasks have run by the time TestClient returns
    tasks = client.get("/api/tasks").json()
    assert {t["id"] for t in tasks["tasks"]} == set(body["request_ids"])
    assert tasks["counts"]["completed"] == 3
    assert all(t["result"]["url"].startswith("https://cdn.test/") for t in tasks["tasks"])


def test_submit_validates_body(client):
    assert client.post("/api/generations", json={"items": []}).status_code == 422
    assert client.post("/api/generations", json={"items": [{"prompt": ""}]}).status_code == 422
    assert client.post(
        "/api/generations", json={"items": [{"prompt": "a"}], "type": "audio"}
    ).status_code == 422
    assert client.post(
        "/api/generations", json={"items": [{"prompt": "a"}], "concurrency_cap": 0}
    ).status_code == 422


def test_cancel_unknown_task_is_404(client):
    response = client.delete("/api/tasks/does-not-exist")

    assert response.status_code == 404


def test_rate_limits(client):
    response = client.get("/api/rate-limits")

    assert response.status_code == 200
    stats = response.json()
    assert stats["recent_events"] == 0
    assert stats["throttle"]["tracked_keys"] == 0
