"""
Data Models

Plain dataclasses shared by the ingestion and retrieval pipelines.

- SourceMessage: read-only chat message from the external message store
- Chunk: bounded-size segment of a message (derived, never persisted)
- EmbeddingRecord: one vector per embedded chunk
- SyncCheckpoint: per-message ingestion progress
- ScoredChunk / AnswerResponse: transient query results
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


Vector = list[float]


@dataclass(frozen=True)
class SourceMessage:
    """Chat message as read from the message store."""
    id: str
    text: str
    author_id: str
    created_at: datetime
    updated_at: datetime
    container_id: str

    @property
    def content_hash(self) -> str:
        return content_hash(self.text)


def content_hash(text: Optional[str]) -> str:
    """SHA-256 of message text; detects edits independently of timestamps."""
    return hashlib.sha256((text or "").encode("utf-8", "surrogatepass")).hexdigest()


@dataclass(frozen=True)
class Chunk:
    """A bounded-size text segment of a message."""
    source_message_id: str
    chunk_index: int
    text: str
    char_range: tuple[int, int]

    @property
    def vector_id(self) -> str:
        return make_vector_id(self.source_message_id, self.chunk_index)


def make_vector_id(source_message_id: str, chunk_index: int) -> str:
    """
    Deterministic vector id for a chunk.

    Re-embedding the same chunk overwrites its vector instead of adding one.
    """
    return f"{source_message_id}_chunk_{chunk_index}"


@dataclass
class EmbeddingRecord:
    """A chunk's embedding plus the metadata stored alongside it."""
    vector_id: str
    embedding_vector: Vector
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def source_message_id(self) -> Optional[str]:
        return self.metadata.get("source_message_id")

    @property
    def text(self) -> str:
        return self.metadata.get("text", "")

    def to_dict(self, include_vector: bool = False) -> dict:
        data = {"id": self.vector_id, "metadata": self.metadata}
        if include_vector:
            data["values"] = self.embedding_vector
        return data


def build_record(
    chunk: Chunk,
    message: SourceMessage,
    vector: Vector,
    embedding_model: str,
    total_chunks: int,
) -> EmbeddingRecord:
    """Attach source metadata to an embedded chunk."""
    return EmbeddingRecord(
        vector_id=chunk.vector_id,
        embedding_vector=vector,
        metadata={
            "source_message_id": message.id,
            "container_id": message.container_id,
            "author_id": message.author_id,
            "text": chunk.text,
            "created_at": message.created_at.isoformat(),
            "created_at_ts": message.created_at.timestamp(),
            "chunk_index": chunk.chunk_index,
            "total_chunks": total_chunks,
            "char_start": chunk.char_range[0],
            "char_end": chunk.char_range[1],
            "embedding_model": embedding_model,
        },
    )


@dataclass
class UpsertSummary:
    """Outcome of a vector upsert."""
    accepted: int = 0
    rejected: int = 0
    rejected_ids: list[str] = field(default_factory=list)


@dataclass
class VectorStats:
    """Vector index statistics."""
    total_vectors: int
    dimension: int
    index_fullness: float
    embedding_model: str


class CheckpointStatus(str, Enum):
    """Ingestion status of a source message."""
    PENDING = "pending"
    EMBEDDED = "embedded"
    FAILED = "failed"


@dataclass
class SyncCheckpoint:
    """
    Durable ingestion marker for one source message.

    content_hash is the hash last seen; embedded_hash is the hash of the
    last successful embed and survives later failures.
    """
    source_message_id: str
    status: CheckpointStatus
    content_hash: Optional[str] = None
    embedded_hash: Optional[str] = None
    last_embedded_at: Optional[datetime] = None
    chunk_count: int = 0
    attempts: int = 0
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "source_message_id": self.source_message_id,
            "status": self.status.value,
            "content_hash": self.content_hash,
            "last_embedded_at": self.last_embedded_at.isoformat() if self.last_embedded_at else None,
            "chunk_count": self.chunk_count,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


@dataclass
class ScoredChunk:
    """One retrieval hit."""
    vector_id: str
    score: float
    metadata: dict[str, Any]

    @property
    def source_message_id(self) -> str:
        return self.metadata.get("source_message_id", self.vector_id)

    @property
    def text(self) -> str:
        return self.metadata.get("text", "")

    @property
    def created_at_ts(self) -> float:
        return float(self.metadata.get("created_at_ts") or 0.0)

    def to_dict(self) -> dict:
        return {
            "id": self.vector_id,
            "score": self.score,
            "source_message_id": self.source_message_id,
            "text": self.text,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""
    user_id: str
    role: str = "member"

    @property
    def unrestricted(self) -> bool:
        """Service identities may read every container."""
        return self.role == "service"


@dataclass
class AnswerResponse:
    """Generated answer plus the message ids used as grounding."""
    text: str
    source_ids: list[str]
    used_context: bool
    model: str
    results: list[ScoredChunk] = field(default_factory=list)
