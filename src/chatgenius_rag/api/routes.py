"""
HTTP endpoints for ingestion, observability and retrieval.

Every failure is raised as a RagError and rendered by the app's error
handler; no endpoint reports success on error.
"""

from typing import Sequence

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ..container import ServiceContainer
from ..models import Identity, SourceMessage
from ..scheduler.reembedding import RunTrigger
from ..utils.errors import NotFound, PartialIngestionFailure, RagError
from ..utils.logger import get_logger
from .auth import get_container, rate_limited_identity, require_identity, require_service
from .schemas import (
    AskResponse,
    MessageBatchRequest,
    MessageModel,
    PageMetadata,
    PendingMessagesResponse,
    QueryRequest,
    SearchResponse,
    SearchResult,
    VectorListResponse,
    VectorResponse,
)

logger = get_logger(__name__)

router = APIRouter()


async def _load_messages(
    container: ServiceContainer, ids: Sequence[str]
) -> tuple[list[SourceMessage], dict[str, str]]:
    """Fetch requested messages; unknown ids are reported as failures."""
    messages = await container.source.get_messages(list(dict.fromkeys(ids)))
    found = {m.id for m in messages}
    missing = {i: "message not found" for i in ids if i not in found}
    return messages, missing


def _batch_response(body: dict, failed: dict[str, str], succeeded: int) -> JSONResponse:
    """200 when every message succeeded, 207 with per-message reasons otherwise."""
    if not failed:
        return JSONResponse(status_code=200, content={"success": True, **body})

    partial = PartialIngestionFailure(failed, succeeded)
    logger.warning(str(partial))
    return JSONResponse(
        status_code=partial.status_code,
        content={
            "success": False,
            "error": partial.kind,
            "detail": partial.user_message,
            "failures": failed,
            **body,
        },
    )


# ======================
# EMBEDDINGS
# ======================

@router.get("/embeddings/messages", response_model=PendingMessagesResponse, tags=["embeddings"])
async def list_pending_messages(
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    _: Identity = Depends(require_service),
    container: ServiceContainer = Depends(get_container),
):
    """List messages that still need embedding, oldest first."""
    messages = await container.tracker.list_pending(limit=limit, offset=offset)
    return PendingMessagesResponse(
        messages=[MessageModel.from_message(m) for m in messages],
        metadata=PageMetadata(offset=offset, limit=limit, count=len(messages)),
    )


@router.post("/embeddings", tags=["embeddings"])
async def embed_messages(
    request: MessageBatchRequest,
    _: Identity = Depends(require_service),
    container: ServiceContainer = Depends(get_container),
):
    """Chunk and embed messages without writing vectors or checkpoints."""
    messages, failed = await _load_messages(container, request.message_ids)

    embeddings = []
    for message in messages:
        try:
            records = await container.pipeline.embed_message(message)
        except RagError as e:
            failed[message.id] = str(e)
            continue
        for record in records:
            data = record.to_dict(include_vector=request.include_vectors)
            data["dimension"] = len(record.embedding_vector)
            embeddings.append(data)

    succeeded = len(messages) - len([m for m in messages if m.id in failed])
    return _batch_response(
        {
            "embeddings": embeddings,
            "count": len(embeddings),
            "embedding_model": container.generator.model_version,
        },
        failed,
        succeeded,
    )


# ======================
# VECTOR STORE
# ======================

@router.post("/vectorstore/upsert", tags=["vectorstore"])
async def upsert_messages(
    request: MessageBatchRequest,
    _: Identity = Depends(require_service),
    container: ServiceContainer = Depends(get_container),
):
    """Embed messages, upsert their vectors and mark them embedded. 409 while a run is active."""
    messages, missing = await _load_messages(container, request.message_ids)
    result = await container.scheduler.ingest_messages(messages)
    failed = {**missing, **result.failed}

    body = result.to_dict()
    body.pop("failures")
    body["vector_ids"] = [vid for r in result.succeeded for vid in r.vector_ids]
    return _batch_response(body, failed, len(result.succeeded))


@router.get("/vectorstore/status", tags=["vectorstore"])
async def vectorstore_status(
    _: Identity = Depends(require_identity),
    container: ServiceContainer = Depends(get_container),
):
    """Index statistics plus checkpoint counts."""
    stats = await container.store.stats()
    return {
        "success": True,
        "status": "ready",
        "embedding_model": stats.embedding_model,
        "stats": {
            "total_vectors": stats.total_vectors,
            "dimension": stats.dimension,
            "index_fullness": stats.index_fullness,
        },
        "checkpoints": container.tracker.counts(),
    }


@router.get("/vectorstore/stats", tags=["vectorstore"])
async def vectorstore_stats(
    _: Identity = Depends(require_identity),
    container: ServiceContainer = Depends(get_container),
):
    stats = await container.store.stats()
    return {
        "success": True,
        "total_vectors": stats.total_vectors,
        "dimension": stats.dimension,
        "index_fullness": stats.index_fullness,
        "embedding_model": stats.embedding_model,
    }


@router.get("/vectorstore/vectors/random", response_model=VectorListResponse, tags=["vectorstore"])
async def random_vectors(
    count: int = Query(5, ge=1, le=100),
    include_vectors: bool = Query(False),
    _: Identity = Depends(require_service),
    container: ServiceContainer = Depends(get_container),
):
    """Random sample of stored vectors, for validation only."""
    records = await container.store.sample_random(count)
    return VectorListResponse(
        vectors=[r.to_dict(include_vector=include_vectors) for r in records],
        count=len(records),
    )


@router.get("/vectorstore/vectors/{vector_id}", response_model=VectorResponse, tags=["vectorstore"])
async def get_vector(
    vector_id: str,
    include_vectors: bool = Query(True),
    _: Identity = Depends(require_service),
    container: ServiceContainer = Depends(get_container),
):
    record = await container.store.fetch_by_id(vector_id)
    if record is None:
        raise NotFound("Vector", vector_id)
    return VectorResponse(vector=record.to_dict(include_vector=include_vectors))


# ======================
# RE-EMBEDDING
# ======================

@router.get("/reembedding/status", tags=["reembedding"])
async def reembedding_status(
    _: Identity = Depends(require_identity),
    container: ServiceContainer = Depends(get_container),
):
    """Current or last run state plus vector-store statistics."""
    stats = await container.store.stats()
    return {
        "success": True,
        "run": container.scheduler.status(),
        "vector_store": {
            "total_vectors": stats.total_vectors,
            "dimension": stats.dimension,
            "index_fullness": stats.index_fullness,
            "embedding_model": stats.embedding_model,
        },
    }


@router.post("/reembedding/run", tags=["reembedding"])
async def trigger_reembedding(
    _: Identity = Depends(require_service),
    container: ServiceContainer = Depends(get_container),
):
    """Run one re-embedding pass now. 409 if a run is already active."""
    status = await container.scheduler.run_once(RunTrigger.MANUAL.value)
    return {"success": True, "run": status.to_dict()}


# ======================
# RETRIEVAL
# ======================

@router.post("/search", response_model=SearchResponse, tags=["retrieval"])
async def search(
    request: QueryRequest,
    identity: Identity = Depends(rate_limited_identity),
    container: ServiceContainer = Depends(get_container),
):
    """Ranked retrieval without answer synthesis."""
    hits = await container.query_service.search(request.query, identity, top_k=request.top_k)
    return SearchResponse(
        query=request.query,
        results=[SearchResult.from_hit(h) for h in hits],
        count=len(hits),
    )


@router.post("/ask", response_model=AskResponse, tags=["retrieval"])
async def ask(
    request: QueryRequest,
    identity: Identity = Depends(rate_limited_identity),
    container: ServiceContainer = Depends(get_container),
):
    """Answer a question grounded in the caller's visible messages."""
    answer = await container.query_service.ask(request.query, identity, top_k=request.top_k)
    return AskResponse(
        answer=answer.text,
        source_ids=answer.source_ids,
        used_context=answer.used_context,
        model=answer.model,
        results=[SearchResult.from_hit(h) for h in answer.results],
    )


# ======================
# HEALTH
# ======================

@router.get("/health", tags=["health"])
async def health(container: ServiceContainer = Depends(get_container)):
    """Liveness plus re-embedding job health. No authentication."""
    run = container.scheduler.status()
    return {
        "status": "ok",
        "reembedding": {
            "health": run["health"],
            "state": run["state"],
            "running": run["running"],
            "consecutive_failures": run["consecutive_failures"],
        },
    }
