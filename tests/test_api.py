"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from chatgenius_rag.api import create_app
from chatgenius_rag.utils.errors import SchedulerBusy, VectorStoreUnavailable

from conftest import DIM, SERVICE_TOKEN, USER_TOKEN

SERVICE = {"Authorization": f"Bearer {SERVICE_TOKEN}"}
MEMBER = {"Authorization": f"Bearer {USER_TOKEN}"}


@pytest.fixture
def client(container):
    return TestClient(create_app(container, start_scheduler=False))


@pytest.fixture
def seeded(container, message_store, client):
    message_store.add("launch", "We decided the launch date is March 3rd", channel_id="C1")
    message_store.add("secret", "Salary bands for next year", channel_id="C2", minutes=1)
    message_store.add_member("C1", "U1")
    response = client.post("/reembedding/run", headers=SERVICE)
    assert response.status_code == 200
    return client


# ------------------------------------------------------------------
# Auth
# ------------------------------------------------------------------


def test_health_needs_no_auth(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["reembedding"]["health"] == "healthy"


def test_missing_token_is_401(client):
    response = client.post("/search", json={"query": "launch"})
    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "error": "unauthorized",
        "detail": "Authentication required",
    }
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_unknown_token_is_401(client):
    response = client.get("/vectorstore/stats", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def test_operator_endpoints_need_service_role(client):
    response = client.get("/embeddings/messages", headers=MEMBER)
    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


# ------------------------------------------------------------------
# Embeddings
# ------------------------------------------------------------------


def test_list_pending_messages(client, message_store):
    message_store.add("m1", "first")
    message_store.add("m2", "second", minutes=1)

    response = client.get("/embeddings/messages?offset=1&limit=5", headers=SERVICE)

    body = response.json()
    assert response.status_code == 200
    assert [m["id"] for m in body["messages"]] == ["m2"]
    assert body["metadata"] == {"offset": 1, "limit": 5, "count": 1}


def test_embed_does_not_write(client, container, message_store):
    message_store.add("m1", "hello world")

    response = client.post(
        "/embeddings",
        json={"message_ids": ["m1"], "include_vectors": True},
        headers=SERVICE,
    )

    body = response.json()
    assert response.status_code == 200
    assert body["count"] == 1
    assert body["embeddings"][0]["id"] == "m1_chunk_0"
    assert len(body["embeddings"][0]["values"]) == DIM
    assert container.tracker.get_checkpoint("m1") is None
    assert client.get("/vectorstore/stats", headers=SERVICE).json()["total_vectors"] == 0


def test_upsert_reports_partial_failure(client, container, message_store):
    message_store.add("m1", "hello world")
    message_store.add("bad", None, minutes=1)

    response = client.post(
        "/vectorstore/upsert",
        json={"message_ids": ["m1", "bad", "ghost"]},
        headers=SERVICE,
    )

    body = response.json()
    assert response.status_code == 207
    assert body["error"] == "partial_ingestion_failure"
    assert body["processed"] == 1
    assert set(body["failures"]) == {"bad", "ghost"}
    assert body["vector_ids"] == ["m1_chunk_0"]
    assert container.tracker.get_checkpoint("m1").status.value == "embedded"


def test_upsert_rejects_empty_batch(client):
    response = client.post("/vectorstore/upsert", json={"message_ids": []}, headers=SERVICE)
    assert response.status_code == 422


# ------------------------------------------------------------------
# Vector store
# ------------------------------------------------------------------


def test_vector_by_id_and_random(seeded):
    found = seeded.get("/vectorstore/vectors/launch_chunk_0", headers=SERVICE)
    assert found.status_code == 200
    assert found.json()["vector"]["metadata"]["source_message_id"] == "launch"

    missing = seeded.get("/vectorstore/vectors/nope_chunk_0", headers=SERVICE)
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"

    sample = seeded.get("/vectorstore/vectors/random?count=5", headers=SERVICE)
    assert sample.status_code == 200
    assert sample.json()["count"] == 2
    assert "values" not in sample.json()["vectors"][0]


def test_vectorstore_status(seeded):
    body = seeded.get("/vectorstore/status", headers=MEMBER).json()
    assert body["stats"]["total_vectors"] == 2
    assert body["checkpoints"]["embedded"] == 2


def test_store_outage_is_503_not_200(client, container, monkeypatch):
    async def broken_stats():
        raise VectorStoreUnavailable("stats", "connection refused")

    monkeypatch.setattr(container.store, "stats", broken_stats)

    response = client.get("/vectorstore/stats", headers=SERVICE)
    assert response.status_code == 503
    assert response.json()["error"] == "vector_store_unavailable"


# ------------------------------------------------------------------
# Re-embedding
# ------------------------------------------------------------------


def test_reembedding_status(seeded):
    body = seeded.get("/reembedding/status", headers=MEMBER).json()
    assert body["run"]["state"] == "completed"
    assert body["run"]["messages_processed"] == 2
    assert body["run"]["trigger"] == "manual"
    assert body["vector_store"]["total_vectors"] == 2


def test_busy_scheduler_is_409(client, container, monkeypatch):
    async def busy(trigger):
        raise SchedulerBusy("2024-03-01T12:00:00+00:00")

    monkeypatch.setattr(container.scheduler, "run_once", busy)

    response = client.post("/reembedding/run", headers=SERVICE)
    assert response.status_code == 409
    assert response.json()["error"] == "scheduler_busy"


# ------------------------------------------------------------------
# Retrieval
# ------------------------------------------------------------------


def test_ask_returns_answer_and_sources(seeded):
    response = seeded.post(
        "/ask",
        json={"query": "what did we decide about the launch date?"},
        headers=MEMBER,
    )

    body = response.json()
    assert response.status_code == 200
    assert body["answer"] == "Generated answer."
    assert "launch" in body["source_ids"]
    # Member U1 cannot see C2
    assert "secret" not in body["source_ids"]


def test_ask_empty_query_is_400(client, fake_openai):
    response = client.post("/ask", json={"query": ""}, headers=MEMBER)

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_query"
    assert fake_openai.embeddings.calls == []
    assert fake_openai.chat.completions.calls == []


def test_search_returns_ranked_results(seeded):
    response = seeded.post("/search", json={"query": "launch date", "top_k": 3}, headers=SERVICE)

    body = response.json()
    assert response.status_code == 200
    assert body["results"][0]["source_message_id"] == "launch"
    assert body["count"] == len(body["results"])


def test_query_rate_limit(container):
    container.settings.query_rate_limit = 2
    client = TestClient(create_app(container, start_scheduler=False))

    for _ in range(2):
        assert client.post("/search", json={"query": "hi"}, headers=MEMBER).status_code == 200

    response = client.post("/search", json={"query": "hi"}, headers=MEMBER)
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1


def test_upsert_while_run_active_is_409(client, container, message_store, monkeypatch):
    message_store.add("m1", "hello world")

    async def busy(messages):
        raise SchedulerBusy("2024-03-01T12:00:00+00:00")

    monkeypatch.setattr(container.scheduler, "ingest_messages", busy)

    response = client.post("/vectorstore/upsert", json={"message_ids": ["m1"]}, headers=SERVICE)
    assert response.status_code == 409
    assert response.json()["error"] == "scheduler_busy"
    assert container.tracker.get_checkpoint("m1") is None
