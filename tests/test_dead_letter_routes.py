from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from reply_pipeline.deps import get_dead_letter_repository, get_dispatcher, get_redis
from reply_pipeline.errors import StoreUnavailableError
from reply_pipeline.routes import create_app
from reply_pipeline.schemas import Lane, TaskEnvelope
from reply_pipeline.services.dead_letter_service import STATUS_REQUEUED, DeadLetterRepository
from tests.utils import InMemoryRedis, make_message


@pytest.fixture()
def repository(session_factory) -> DeadLetterRepository:
    return DeadLetterRepository(session_factory)


@pytest.fixture()
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture()
def client(repository, fake_redis, dispatcher) -> TestClient:
    app = create_app()

    async def _override_get_redis():
        return fake_redis

    app.dependency_overrides[get_redis] = _override_get_redis
    app.dependency_overrides[get_dead_letter_repository] = lambda: repository
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    return TestClient(app)


def _park(repository: DeadLetterRepository, message_id: str, session_id: str = "s1"):
    message = make_message(message_id, session_id, at=1_700_000_000.0)
    return repository.park(
        TaskEnvelope.from_message(message, lane=Lane.NORMAL),
        reason="retries_exhausted",
        last_error="UpstreamTimeoutError: slow",
        attempt_count=4,
    )


def test_list_and_filter_dead_letters(client, repository):
    _park(repository, "m1", "s1")
    _park(repository, "m2", "s2")

    resp = client.get("/v1/dead-letters")
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 2
    assert {item["message_id"] for item in body["items"]} == {"m1", "m2"}

    resp = client.get("/v1/dead-letters", params={"session_id": "s2", "status": "parked"})
    assert [item["message_id"] for item in resp.json()["items"]] == ["m2"]

    resp = client.get("/v1/dead-letters", params={"limit": 0})
    assert resp.status_code == 422


def test_get_dead_letter(client, repository):
    _park(repository, "m1")

    resp = client.get("/v1/dead-letters/m1")
    assert resp.status_code == 200
    assert resp.json()["attempt_count"] == 4
    assert resp.json()["reason"] == "retries_exhausted"

    resp = client.get("/v1/dead-letters/missing")
    assert resp.status_code == 404
    assert resp.json()["detail"]["error"] == "not_found"


def test_requeue_dead_letter(client, repository, dispatcher):
    _park(repository, "m1")

    resp = client.post("/v1/dead-letters/m1/requeue")

    assert resp.status_code == 200
    assert resp.json()["status"] == STATUS_REQUEUED
    envelope, route = dispatcher.last()
    assert envelope.message_id == "m1"
    assert envelope.attempt_count == 0
    assert route.lane == Lane.NORMAL


def test_requeue_reports_broker_outage(client, repository, dispatcher):
    _park(repository, "m1")
    dispatcher.fail_with = StoreUnavailableError("broker down")

    resp = client.post("/v1/dead-letters/m1/requeue")

    assert resp.status_code == 503
    assert repository.get("m1").status == "parked"


def test_resolve_dead_letter(client, repository):
    _park(repository, "m1")

    assert client.delete("/v1/dead-letters/m1").status_code == 204
    assert repository.get("m1") is None
    assert client.delete("/v1/dead-letters/m1").status_code == 404
