"""
Vector Store Module

Gateway over a ChromaDB collection holding message-chunk embeddings.

Properties:
- Idempotent upserts keyed by deterministic vector ids
- Source metadata on every vector for citations and access filtering
- Cosine similarity, ties broken by newer messages first
- Errors are raised, never reported as empty results

Every vector carries the embedding model that produced it; queries only
ever compare against vectors from the pinned model.
"""

import asyncio
import math
import random
from typing import Any, Mapping, Optional, Protocol, Sequence

import chromadb

from ..models import EmbeddingRecord, ScoredChunk, UpsertSummary, Vector, VectorStats
from ..utils.errors import EmbeddingVersionMismatch, RagError, VectorStoreUnavailable
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Extra candidates fetched so ties at the top_k boundary can be ordered
TIE_BREAK_HEADROOM = 10


class VectorStore(Protocol):
    """Operations the pipelines need from a vector index."""

    embedding_model: str

    async def upsert(self, records: Sequence[EmbeddingRecord]) -> UpsertSummary: ...

    async def query_similar(
        self, vector: Vector, top_k: int, filters: Optional[Mapping[str, Any]] = None
    ) -> list[ScoredChunk]: ...

    async def fetch_by_id(self, vector_id: str) -> Optional[EmbeddingRecord]: ...

    async def sample_random(self, n: int) -> list[EmbeddingRecord]: ...

    async def delete(self, vector_ids: Sequence[str]) -> int: ...

    async def stats(self) -> VectorStats: ...


def rank_key(hit: ScoredChunk) -> tuple:
    """Descending score, then newer created_at, then vector id."""
    return (-round(hit.score, 9), -hit.created_at_ts, hit.vector_id)


def build_where(embedding_model: str, filters: Optional[Mapping[str, Any]]) -> dict:
    """
    Translate simple equality/membership filters into a Chroma where clause.

    {"container_id": ["C1", "C2"]} -> {"container_id": {"$in": ["C1", "C2"]}}
    """
    conditions: list[dict] = [{"embedding_model": {"$eq": embedding_model}}]

    for key, value in (filters or {}).items():
        if isinstance(value, (list, tuple, set, frozenset)):
            conditions.append({key: {"$in": sorted(value)}})
        else:
            conditions.append({key: {"$eq": value}})

    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


def _clean_metadata(metadata: Mapping[str, Any]) -> dict:
    # Chroma accepts only str, int, float and bool values
    return {
        k: v for k, v in metadata.items()
        if isinstance(v, (str, int, float, bool))
    }


def _to_vector(values) -> Vector:
    return [float(v) for v in values] if values is not None else []


class ChromaVectorStore:
    """
    ChromaDB-backed vector store gateway.

    Usage:
        client = chromadb.PersistentClient(path="./data/chroma")
        store = ChromaVectorStore(client, "chat_messages", "text-embedding-3-small", 1536)
        store.open()
        await store.upsert(records)
    """

    def __init__(
        self,
        client: "chromadb.ClientAPI",
        collection_name: str,
        embedding_model: str,
        dimension: int,
        max_vectors: int = 1_000_000,
        timeout_seconds: float = 15.0,
    ):
        self._client = client
        self.collection_name = collection_name
        self.embedding_model = embedding_model
        self.dimension = dimension
        self.max_vectors = max_vectors
        self.timeout_seconds = timeout_seconds
        self._collection = None

    def open(self):
        """
        Get or create the collection and check its pinned model.

        Raises:
            EmbeddingVersionMismatch: If the collection was built with another model
            VectorStoreUnavailable: If Chroma cannot be reached
        """
        if self._collection is not None:
            return self._collection

        # Existing collection metadata is never updated
        try:
            collection = self._client.get_collection(name=self.collection_name)
        except Exception as lookup_error:
            logger.info(f"Creating collection {self.collection_name} ({lookup_error})")
            try:
                collection = self._client.create_collection(
                    name=self.collection_name,
                    metadata={
                        "hnsw:space": "cosine",
                        "embedding_model": self.embedding_model,
                        "dimension": self.dimension,
                    },
                )
            except Exception as e:
                raise VectorStoreUnavailable("open", str(e)) from e

        metadata = collection.metadata or {}
        stored_model = metadata.get("embedding_model", "unknown")
        if stored_model != self.embedding_model:
            raise EmbeddingVersionMismatch(expected=stored_model, actual=self.embedding_model)

        stored_dimension = metadata.get("dimension")
        if stored_dimension is not None and int(stored_dimension) != self.dimension:
            raise VectorStoreUnavailable(
                "open",
                f"collection dimension {stored_dimension} does not match {self.dimension}",
            )

        self._collection = collection
        logger.info(
            f"Vector store ready: {self.collection_name} "
            f"(model={self.embedding_model}, dimension={self.dimension})"
        )
        return collection

    async def _call(self, operation: str, func, *args, **kwargs):
        """Run a blocking Chroma call off the event loop with a timeout."""
        try:
            collection = self.open()
            return await asyncio.wait_for(
                asyncio.to_thread(func, collection, *args, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise VectorStoreUnavailable(operation, f"timed out after {self.timeout_seconds}s")
        except RagError:
            raise
        except Exception as e:
            raise VectorStoreUnavailable(operation, str(e)) from e

    # ======================
    # WRITES
    # ======================

    def _reject_reason(self, record: EmbeddingRecord) -> Optional[str]:
        if len(record.embedding_vector) != self.dimension:
            return f"dimension {len(record.embedding_vector)} != {self.dimension}"
        if record.metadata.get("embedding_model") != self.embedding_model:
            return f"model {record.metadata.get('embedding_model')!r} != {self.embedding_model!r}"
        if not all(math.isfinite(v) for v in record.embedding_vector):
            return "vector contains non-finite values"
        return None

    async def upsert(self, records: Sequence[EmbeddingRecord]) -> UpsertSummary:
        """
        Insert or overwrite records by vector id.

        Records with the wrong dimension or embedding model are rejected
        rather than written.
        """
        summary = UpsertSummary()
        accepted: list[EmbeddingRecord] = []

        for record in records:
            reason = self._reject_reason(record)
            if reason:
                logger.warning(f"Rejected vector {record.vector_id}: {reason}")
                summary.rejected += 1
                summary.rejected_ids.append(record.vector_id)
            else:
                accepted.append(record)

        if not accepted:
            return summary

        def _upsert(collection):
            collection.upsert(
                ids=[r.vector_id for r in accepted],
                embeddings=[r.embedding_vector for r in accepted],
                metadatas=[_clean_metadata(r.metadata) for r in accepted],
                documents=[r.text for r in accepted],
            )

        await self._call("upsert", _upsert)
        summary.accepted = len(accepted)
        return summary

    async def delete(self, vector_ids: Sequence[str]) -> int:
        """Delete vectors by id. Unknown ids are ignored."""
        ids = list(vector_ids)
        if not ids:
            return 0

        def _delete(collection):
            collection.delete(ids=ids)

        await self._call("delete", _delete)
        return len(ids)

    # ======================
    # READS
    # ======================

    async def query_similar(
        self,
        vector: Vector,
        top_k: int,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> list[ScoredChunk]:
        """
        Find the most similar vectors.

        Args:
            vector: Query embedding
            top_k: Maximum number of results
            filters: Metadata filters; a list value means "one of"

        Returns:
            At most top_k hits, highest similarity first
        """
        if top_k <= 0:
            return []

        for value in (filters or {}).values():
            if isinstance(value, (list, tuple, set, frozenset)) and not value:
                return []

        where = build_where(self.embedding_model, filters)

        def _query(collection):
            total = collection.count()
            if total == 0:
                return None
            return collection.query(
                query_embeddings=[vector],
                n_results=min(top_k + TIE_BREAK_HEADROOM, total),
                where=where,
                include=["metadatas", "distances"],
            )

        results = await self._call("query", _query)
        if not results or not results["ids"] or not results["ids"][0]:
            return []

        hits = []
        for i, vector_id in enumerate(results["ids"][0]):
            distance = results["distances"][0][i] if results["distances"] else 1.0
            metadata = results["metadatas"][0][i] if results["metadatas"] else {}
            hits.append(ScoredChunk(
                vector_id=vector_id,
                # Cosine similarity = 1 - cosine distance
                score=1.0 - float(distance),
                metadata=dict(metadata or {}),
            ))

        hits.sort(key=rank_key)
        return hits[:top_k]

    async def fetch_by_id(self, vector_id: str) -> Optional[EmbeddingRecord]:
        """Fetch one record, or None if the id is unknown."""
        records = await self._get([vector_id], "fetch")
        return records[0] if records else None

    async def sample_random(self, n: int) -> list[EmbeddingRecord]:
        """
        Fetch up to n random records.

        Used for validation and observability only, never for ranking.
        """
        if n <= 0:
            return []

        def _ids(collection):
            return collection.get(include=[])["ids"]

        ids = await self._call("sample", _ids)
        if not ids:
            return []

        chosen = random.sample(ids, min(n, len(ids)))
        return await self._get(chosen, "sample")

    async def _get(self, ids: list[str], operation: str) -> list[EmbeddingRecord]:
        def _fetch(collection):
            return collection.get(ids=ids, include=["embeddings", "metadatas"])

        result = await self._call(operation, _fetch)
        embeddings = result.get("embeddings")
        metadatas = result.get("metadatas")

        records = []
        for i, vector_id in enumerate(result["ids"]):
            records.append(EmbeddingRecord(
                vector_id=vector_id,
                embedding_vector=_to_vector(embeddings[i]) if embeddings is not None else [],
                metadata=dict(metadatas[i] or {}) if metadatas is not None else {},
            ))
        return records

    async def stats(self) -> VectorStats:
        """Vector count, dimension and fullness of the index."""

        def _count(collection):
            return collection.count()

        total = await self._call("stats", _count)
        return VectorStats(
            total_vectors=total,
            dimension=self.dimension,
            index_fullness=round(total / self.max_vectors, 6) if self.max_vectors else 0.0,
            embedding_model=self.embedding_model,
        )


def create_chroma_client(path: str) -> "chromadb.ClientAPI":
    """Persistent Chroma client with telemetry disabled."""
    from chromadb.config import Settings as ChromaSettings

    return chromadb.PersistentClient(
        path=path,
        settings=ChromaSettings(anonymized_telemetry=False),
    )
