"""Tests for the ChromaDB vector store gateway."""

import asyncio
import time
import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from chatgenius_rag.models import Chunk, EmbeddingRecord, SourceMessage, build_record
from chatgenius_rag.rag.vectorstore import ChromaVectorStore, build_where
from chatgenius_rag.utils.errors import EmbeddingVersionMismatch, VectorStoreUnavailable

from conftest import BASE_TIME, DIM, EMBED_MODEL, bag_of_words_vector


def _record(
    message_id: str,
    text: str,
    container_id: str = "C1",
    minutes: int = 0,
    model: str = EMBED_MODEL,
    vector=None,
) -> EmbeddingRecord:
    created = BASE_TIME + timedelta(minutes=minutes)
    message = SourceMessage(message_id, text, "U1", created, created, container_id)
    c = Chunk(message_id, 0, text, (0, len(text)))
    return build_record(c, message, vector or bag_of_words_vector(text), model, 1)


# ------------------------------------------------------------------
# build_where
# ------------------------------------------------------------------


def test_build_where_pins_model_only():
    assert build_where("m", None) == {"embedding_model": {"$eq": "m"}}


def test_build_where_combines_filters():
    where = build_where("m", {"container_id": ["C2", "C1"], "author_id": "U1"})
    assert where == {
        "$and": [
            {"embedding_model": {"$eq": "m"}},
            {"container_id": {"$in": ["C1", "C2"]}},
            {"author_id": {"$eq": "U1"}},
        ]
    }


# ------------------------------------------------------------------
# Upsert
# ------------------------------------------------------------------


def test_upsert_is_idempotent(store):
    record = _record("m1", "hello world")
    asyncio.run(store.upsert([record]))
    summary = asyncio.run(store.upsert([record]))

    assert summary.accepted == 1
    assert asyncio.run(store.stats()).total_vectors == 1


def test_upsert_overwrites_metadata(store):
    asyncio.run(store.upsert([_record("m1", "old text")]))
    asyncio.run(store.upsert([_record("m1", "new text")]))

    fetched = asyncio.run(store.fetch_by_id("m1_chunk_0"))
    assert fetched.text == "new text"


def test_upsert_rejects_wrong_dimension_and_model(store):
    good = _record("m1", "hello")
    bad_dim = _record("m2", "hello", vector=[0.1] * (DIM + 1))
    bad_model = _record("m3", "hello", model="other-model")

    summary = asyncio.run(store.upsert([good, bad_dim, bad_model]))

    assert summary.accepted == 1
    assert summary.rejected == 2
    assert set(summary.rejected_ids) == {"m2_chunk_0", "m3_chunk_0"}
    assert asyncio.run(store.stats()).total_vectors == 1


def test_delete_removes_vectors(store):
    asyncio.run(store.upsert([_record("m1", "one"), _record("m2", "two")]))
    asyncio.run(store.delete(["m1_chunk_0", "missing_chunk_0"]))

    assert asyncio.run(store.fetch_by_id("m1_chunk_0")) is None
    assert asyncio.run(store.stats()).total_vectors == 1


# ------------------------------------------------------------------
# Query
# ------------------------------------------------------------------


def test_query_empty_store_returns_no_hits(store):
    assert asyncio.run(store.query_similar(bag_of_words_vector("anything"), 5)) == []


def test_query_orders_by_similarity(store):
    asyncio.run(store.upsert([
        _record("m1", "the launch date is march third"),
        _record("m2", "lunch menu for friday"),
        _record("m3", "launch date moved"),
    ]))

    hits = asyncio.run(store.query_similar(bag_of_words_vector("the launch date is march third"), 3))

    assert hits[0].source_message_id == "m1"
    assert hits[0].score == pytest.approx(1.0, abs=1e-4)
    assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)


def test_query_respects_top_k(store):
    asyncio.run(store.upsert([_record(f"m{i}", f"message number {i}") for i in range(8)]))
    hits = asyncio.run(store.query_similar(bag_of_words_vector("message number"), 3))
    assert len(hits) == 3


def test_ties_broken_by_newer_first_then_id(store):
    vector = bag_of_words_vector("same words")
    asyncio.run(store.upsert([
        _record("old", "same words", minutes=0, vector=vector),
        _record("new", "same words", minutes=10, vector=vector),
        _record("b", "same words", minutes=5, vector=vector),
        _record("a", "same words", minutes=5, vector=vector),
    ]))

    hits = asyncio.run(store.query_similar(vector, 4))
    assert [h.source_message_id for h in hits] == ["new", "a", "b", "old"]


def test_ranking_is_deterministic(store):
    asyncio.run(store.upsert([_record(f"m{i}", f"topic {i % 3} note {i}", minutes=i) for i in range(12)]))
    vector = bag_of_words_vector("topic note")

    first = [h.vector_id for h in asyncio.run(store.query_similar(vector, 5))]
    for _ in range(3):
        assert [h.vector_id for h in asyncio.run(store.query_similar(vector, 5))] == first


def test_query_filters_by_container(store):
    asyncio.run(store.upsert([
        _record("m1", "budget review", container_id="C1"),
        _record("m2", "budget review", container_id="C2"),
        _record("m3", "budget review", container_id="C3"),
    ]))

    hits = asyncio.run(store.query_similar(
        bag_of_words_vector("budget review"), 5, {"container_id": ["C1", "C3"]}
    ))
    assert {h.source_message_id for h in hits} == {"m1", "m3"}


def test_query_with_no_visible_containers_returns_nothing(store):
    asyncio.run(store.upsert([_record("m1", "budget review")]))
    hits = asyncio.run(store.query_similar(bag_of_words_vector("budget"), 5, {"container_id": []}))
    assert hits == []


# ------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------


def test_fetch_by_id(store):
    asyncio.run(store.upsert([_record("m1", "hello world", container_id="C9")]))

    record = asyncio.run(store.fetch_by_id("m1_chunk_0"))
    assert record.source_message_id == "m1"
    assert record.metadata["container_id"] == "C9"
    assert record.metadata["embedding_model"] == EMBED_MODEL
    assert len(record.embedding_vector) == DIM

    assert asyncio.run(store.fetch_by_id("nope_chunk_0")) is None


def test_sample_random(store):
    asyncio.run(store.upsert([_record(f"m{i}", f"text {i}") for i in range(5)]))

    sample = asyncio.run(store.sample_random(3))
    assert len(sample) == 3
    assert len({r.vector_id for r in sample}) == 3

    assert len(asyncio.run(store.sample_random(50))) == 5


def test_stats(store):
    asyncio.run(store.upsert([_record("m1", "a"), _record("m2", "b")]))
    stats = asyncio.run(store.stats())

    assert stats.total_vectors == 2
    assert stats.dimension == DIM
    assert stats.index_fullness == pytest.approx(2 / 1000)
    assert stats.embedding_model == EMBED_MODEL


# ------------------------------------------------------------------
# Version pinning and failures
# ------------------------------------------------------------------


def test_reopening_with_other_model_is_rejected(chroma_client):
    name = f"test_{uuid.uuid4().hex}"
    ChromaVectorStore(chroma_client, name, embedding_model="model-a", dimension=DIM).open()

    with pytest.raises(EmbeddingVersionMismatch):
        ChromaVectorStore(chroma_client, name, embedding_model="model-b", dimension=DIM).open()


def test_open_failure_is_unavailable():
    client = MagicMock()
    client.get_collection.side_effect = RuntimeError("connection refused")
    client.create_collection.side_effect = RuntimeError("connection refused")
    store = ChromaVectorStore(client, "c", embedding_model=EMBED_MODEL, dimension=DIM)

    with pytest.raises(VectorStoreUnavailable):
        asyncio.run(store.stats())


def test_query_transport_error_is_not_empty_result():
    collection = MagicMock()
    collection.metadata = {"embedding_model": EMBED_MODEL, "dimension": DIM}
    collection.count.return_value = 3
    collection.query.side_effect = RuntimeError("connection reset")
    client = MagicMock()
    client.get_collection.return_value = collection

    store = ChromaVectorStore(client, "c", embedding_model=EMBED_MODEL, dimension=DIM)

    with pytest.raises(VectorStoreUnavailable, match="query"):
        asyncio.run(store.query_similar([0.1] * DIM, 5))


def test_slow_store_times_out_as_unavailable():
    collection = MagicMock()
    collection.metadata = {"embedding_model": EMBED_MODEL, "dimension": DIM}
    collection.count.side_effect = lambda: time.sleep(0.5) or 3
    client = MagicMock()
    client.get_collection.return_value = collection

    store = ChromaVectorStore(
        client, "c", embedding_model=EMBED_MODEL, dimension=DIM, timeout_seconds=0.05
    )

    with pytest.raises(VectorStoreUnavailable, match="timed out"):
        asyncio.run(store.query_similar([0.1] * DIM, 5))
