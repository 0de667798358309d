from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from crm_sync.features.matching import resolver
from crm_sync.features.offline_sync import MutationQueue, SyncEngine, SyncEventBus
from crm_sync.main import create_app
from crm_sync.models.api.matching_request import MAX_BODY_LENGTH


class FakePool:
    def __init__(self, healthy: bool = True):
        self.healthy = healthy

    async def health_check(self):
        if self.healthy:
            return {"healthy": True, "pool_size": 2, "pool_available": 2}
        return {"healthy": False, "error": "connection refused"}


@pytest.fixture
def client(tmp_path, remote_store, clock, fake_redis):
    @asynccontextmanager
    async def lifespan(app):
        queue = MutationQueue(tmp_path / "queue.db", clock=clock)
        await queue.open()
        app.state.db_pool = FakePool()
        app.state.redis = fake_redis
        app.state.queue = queue
        app.state.sync_engine = SyncEngine(queue, remote_store, events=SyncEventBus(), clock=clock)
        yield
        await queue.close()

    with TestClient(create_app(lifespan=lifespan)) as test_client:
        yield test_client


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_readyz_reports_all_dependencies(client):
    body = client.get("/readyz").json()

    assert body["overall_ok"] is True
    assert set(body["checks"]) == {"redis", "database", "queue"}
    assert body["checks"]["queue"]["counts"]["pending"] == 0


def test_readyz_fails_when_database_is_down(client):
    client.app.state.db_pool = FakePool(healthy=False)

    body = client.get("/readyz").json()

    assert body["overall_ok"] is False
    assert body["checks"]["database"]["error"] == "connection refused"


def test_enqueue_and_list_queue(client):
    response = client.post(
        "/sync/queue",
        json={"operation": "CREATE", "entity_type": "consultant", "entity_id": "temp-1", "payload": {"name": "Ann"}},
    )
    assert response.status_code == 202
    item_id = response.json()["id"]

    body = client.get("/sync/queue").json()

    assert [item["id"] for item in body["items"]] == [item_id]
    assert body["counts"]["pending"] == 1
    assert client.get("/sync/queue", params={"status": "synced"}).json()["items"] == []


def test_enqueue_rejects_unknown_entity_type(client):
    response = client.post(
        "/sync/queue",
        json={"operation": "CREATE", "entity_type": "invoice", "entity_id": "temp-1", "payload": {}},
    )

    assert response.status_code == 422


def test_retry_failed_item_runs_a_drain(client, remote_store):
    item_id = client.post(
        "/sync/queue",
        json={"operation": "UPDATE", "entity_type": "requirement", "entity_id": "req-1", "payload": {"title": "A"}},
    ).json()["id"]
    remote_store.put("requirement", "req-1", title="Old")

    # Not failed yet
    assert client.post(f"/sync/queue/{item_id}/retry").status_code == 409

    client.post("/sync/retry")
    assert remote_store.rows[("requirement", "req-1")]["title"] == "A"
    items = client.get("/sync/queue", params={"status": "synced"}).json()["items"]
    assert [item["id"] for item in items] == [item_id]


def test_retry_unknown_item_is_404(client):
    assert client.post("/sync/queue/nope/retry").status_code == 404


def test_retry_permanently_failed_item(client):
    item_id = client.post(
        "/sync/queue",
        json={"operation": "CREATE", "entity_type": "consultant", "entity_id": "temp-1", "payload": {}},
    ).json()["id"]
    client.post("/sync/retry")

    failed = client.get("/sync/queue", params={"status": "failed"}).json()["items"]
    assert failed[0]["permanently_failed"] is True

    body = client.post(f"/sync/queue/{item_id}/retry").json()
    assert body["reset"] == 1
    assert body["result"]["failed"] == 1


def test_conflicts_list_and_clear(client, remote_store, clock):
    client.post(
        "/sync/queue",
        json={"operation": "UPDATE", "entity_type": "requirement", "entity_id": "req-1", "payload": {"title": "Mine"}},
    )
    clock.advance(5)
    remote_store.put("requirement", "req-1", title="Theirs")
    client.post("/sync/retry")

    conflicts = client.get("/sync/conflicts").json()
    assert len(conflicts) == 1
    assert conflicts[0]["local_version"] == {"title": "Mine"}

    assert client.delete("/sync/conflicts").json() == {"cleared": 1}
    assert client.get("/sync/conflicts").json() == []


def test_leader_status_without_elector(client):
    body = client.get("/sync/leader").json()

    assert body["mode"] == "standalone"
    assert body["is_leader"] is True
    assert body["online"] is True


def test_matching_score(client):
    response = client.post(
        "/matching/score",
        json={
            "email": {
                "subject": "Senior React Developer",
                "body": "Hi Jane, sharing a Senior React Developer opening. Strong React and Redux skills required.",
                "recipient": "jane@acme.com",
            },
            "requirements": [
                {"id": "req-1", "title": "Senior React Developer", "description": "React, Redux"},
                {"id": "req-2", "title": "Data Engineer - Google"},
            ],
            "confidence_level": "high",
        },
    )

    body = response.json()
    assert response.status_code == 200
    assert body["requirement_id"] == "req-1"
    assert body["score"] == 80
    assert body["match_status"] == "pending_confirmation"
    assert [s["requirement_id"] for s in body["scores"]] == ["req-1", "req-2"]


def test_matching_score_with_no_requirements(client):
    body = client.post("/matching/score", json={"email": {"subject": "Hello"}}).json()

    assert body["requirement_id"] is None
    assert body["should_link"] is False


def test_matching_score_scores_each_requirement_once(client, monkeypatch):
    calls = []
    original = resolver.score_breakdown

    def counting(requirement, email):
        calls.append(requirement.id)
        return original(requirement, email)

    monkeypatch.setattr(resolver, "score_breakdown", counting)

    response = client.post(
        "/matching/score",
        json={
            "email": {"subject": "Senior React Developer", "body": "React and Redux"},
            "requirements": [
                {"id": "req-1", "title": "Senior React Developer", "description": "React, Redux"},
                {"id": "req-2", "title": "Data Engineer"},
                {"id": "req-3", "title": "Closed role", "status": "closed"},
            ],
        },
    )

    assert response.status_code == 200
    assert calls == ["req-1", "req-2"]
    assert [s["requirement_id"] for s in response.json()["scores"]] == ["req-1", "req-2"]


def test_matching_score_rejects_oversized_body(client):
    response = client.post(
        "/matching/score",
        json={"email": {"subject": "Hello", "body": "x" * (MAX_BODY_LENGTH + 1)}},
    )

    assert response.status_code == 422
