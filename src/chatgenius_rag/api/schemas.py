"""
Request / response models for the HTTP API.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from ..models import ScoredChunk, SourceMessage


class QueryRequest(BaseModel):
    # Emptiness is checked by the query service so it maps to invalid_query
    query: str
    top_k: Optional[int] = Field(default=None, ge=1, le=50)


class MessageBatchRequest(BaseModel):
    message_ids: list[str] = Field(min_length=1, max_length=500)
    include_vectors: bool = False


class MessageModel(BaseModel):
    id: str
    text: str
    author_id: str
    container_id: str
    created_at: str
    updated_at: str

    @classmethod
    def from_message(cls, message: SourceMessage) -> "MessageModel":
        return cls(
            id=message.id,
            text=message.text,
            author_id=message.author_id,
            container_id=message.container_id,
            created_at=message.created_at.isoformat(),
            updated_at=message.updated_at.isoformat(),
        )


class PageMetadata(BaseModel):
    offset: int
    limit: int
    count: int


class PendingMessagesResponse(BaseModel):
    success: bool = True
    messages: list[MessageModel]
    metadata: PageMetadata


class SearchResult(BaseModel):
    id: str
    score: float
    source_message_id: str
    text: str
    container_id: Optional[str] = None
    author_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_hit(cls, hit: ScoredChunk) -> "SearchResult":
        return cls(
            id=hit.vector_id,
            score=round(hit.score, 6),
            source_message_id=hit.source_message_id,
            text=hit.text,
            container_id=hit.metadata.get("container_id"),
            author_id=hit.metadata.get("author_id"),
            created_at=hit.metadata.get("created_at"),
        )


class SearchResponse(BaseModel):
    success: bool = True
    query: str
    results: list[SearchResult]
    count: int


class AskResponse(BaseModel):
    success: bool = True
    answer: str
    source_ids: list[str]
    used_context: bool
    model: str
    results: list[SearchResult] = Field(default_factory=list)


class VectorResponse(BaseModel):
    success: bool = True
    vector: dict[str, Any]


class VectorListResponse(BaseModel):
    success: bool = True
    vectors: list[dict[str, Any]]
    count: int
