from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from curator import main


@pytest.fixture
def client(engine, queue, monkeypatch):
    monkeypatch.setattr(main, "get_engine", lambda: engine)
    main.app.dependency_overrides[main.get_queue] = lambda: queue
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def test_health_endpoints(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/readyz").json() == {"status": "ready", "db": "ok"}


def test_enqueue_and_fetch_work(client):
    resp = client.post(
        "/work",
        json={"item_id": "q-1", "action": "improve", "priority": 3, "reason": "answer too short"},
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["item_type"] == "question"
    assert body["status"] == "pending"
    assert body["created_by"] == "api"
    assert body["attempts_left"] == 3

    fetched = client.get(f"/work/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json() == body


def test_duplicate_work_is_a_conflict(client):
    payload = {"item_id": "q-1", "action": "delete"}
    assert client.post("/work", json=payload).status_code == 201

    resp = client.post("/work", json=payload)

    assert resp.status_code == 409
    assert "already queued" in resp.json()["detail"]


@pytest.mark.parametrize(
    "payload",
    [
        {"item_id": "q-1", "action": "publish"},
        {"item_id": "q-1", "action": "verify", "priority": 0},
        {"item_id": "", "action": "verify"},
    ],
)
def test_invalid_requests_are_rejected(client, payload):
    assert client.post("/work", json=payload).status_code == 422


def test_unknown_work_is_404(client):
    assert client.get("/work/12345").status_code == 404


def test_stats(client, queue):
    client.post("/work", json={"item_id": "q-1", "action": "verify"})
    client.post("/work", json={"item_id": "q-2", "action": "verify"})
    work = queue.claim_next("verify-bot")
    queue.complete(work.id)

    stats = client.get("/work/stats").json()

    assert stats["pending"] == 1
    assert stats["completed"] == 1
    assert stats["by_action"] == {"verify": 2}
