"""
Ingestion Pipeline

Drives one source message through chunk -> embed -> upsert -> checkpoint.

Write order per message:
1. Upsert the message's vectors (idempotent by vector id)
2. Delete vectors left over from a longer previous version
3. Mark the checkpoint embedded

A failure at any step leaves the checkpoint untouched or failed, so the
message is picked up again by the next run.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from ..models import EmbeddingRecord, SourceMessage, build_record, make_vector_id
from ..storage.sync_tracker import SyncTracker
from ..utils.errors import DatabaseError, EmbeddingServiceError, RagError, retry_async
from ..utils.logger import get_logger
from .chunker import chunk
from .embeddings import EmbeddingGenerator
from .vectorstore import VectorStore

logger = get_logger(__name__)


@dataclass
class IngestionResult:
    """Outcome of ingesting one message."""
    source_message_id: str
    chunk_count: int
    vector_ids: list[str] = field(default_factory=list)
    deleted_vectors: int = 0


@dataclass
class BatchResult:
    """Outcome of ingesting a batch with per-message isolation."""
    succeeded: list[IngestionResult] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    last_error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def to_dict(self) -> dict:
        return {
            "processed": len(self.succeeded),
            "failed": len(self.failed),
            "vectors": sum(r.chunk_count for r in self.succeeded),
            "failures": self.failed,
        }


class IngestionPipeline:
    """
    Embeds source messages into the vector store and records checkpoints.

    Shared by the re-embedding scheduler and the manual HTTP triggers.
    """

    def __init__(
        self,
        tracker: SyncTracker,
        generator: EmbeddingGenerator,
        store: VectorStore,
        chunk_size: int = 500,
        chunk_overlap: int = 50,
        embed_retries: int = 2,
        retry_delay_seconds: float = 1.0,
    ):
        self.tracker = tracker
        self.generator = generator
        self.store = store
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.embed_retries = embed_retries
        self.retry_delay_seconds = retry_delay_seconds

    async def embed_message(self, message: SourceMessage) -> list[EmbeddingRecord]:
        """
        Chunk and embed a message without writing anything.

        Raises:
            ChunkingError: If the content cannot be chunked (not retried)
            EmbeddingServiceError: If embedding still fails after retries
        """
        chunks = chunk(message, self.chunk_size, self.chunk_overlap)
        if not chunks:
            return []

        def _on_retry(attempt: int, error: Exception) -> None:
            logger.warning(f"Embedding retry {attempt} for message {message.id}: {error}")

        vectors = await retry_async(
            lambda: self.generator.embed([c.text for c in chunks]),
            max_retries=self.embed_retries,
            delay_seconds=self.retry_delay_seconds,
            exceptions=(EmbeddingServiceError,),
            on_retry=_on_retry,
        )

        return [
            build_record(c, message, vector, self.generator.model_version, len(chunks))
            for c, vector in zip(chunks, vectors)
        ]

    async def ingest_message(self, message: SourceMessage) -> IngestionResult:
        """
        Embed a message, write its vectors and mark it embedded.

        Empty or whitespace-only messages are marked embedded with no vectors.
        """
        records = await self.embed_message(message)
        previous = self.tracker.get_checkpoint(message.id)

        if records:
            summary = await self.store.upsert(records)
            if summary.rejected:
                raise EmbeddingServiceError(
                    f"{summary.rejected} vector(s) rejected by the store for message {message.id}"
                )

        # Chunks beyond the new count belong to an older, longer version
        old_count = previous.chunk_count if previous else 0
        stale_ids = [make_vector_id(message.id, i) for i in range(len(records), old_count)]
        if stale_ids:
            await self.store.delete(stale_ids)
            logger.debug(f"Deleted {len(stale_ids)} stale vectors for message {message.id}")

        self.tracker.mark_embedded(message.id, message.content_hash, chunk_count=len(records))

        return IngestionResult(
            source_message_id=message.id,
            chunk_count=len(records),
            vector_ids=[r.vector_id for r in records],
            deleted_vectors=len(stale_ids),
        )

    async def ingest_batch(
        self,
        messages: Sequence[SourceMessage],
        on_progress: Optional[Callable[[BatchResult], None]] = None,
    ) -> BatchResult:
        """
        Ingest messages one by one; a failing message does not stop the rest.

        DatabaseError from the checkpoint store propagates, since nothing
        can be recorded without it.

        Args:
            messages: Messages to ingest, in order
            on_progress: Called with the partial result after each message
        """
        result = BatchResult()
        started = time.perf_counter()

        for message in messages:
            try:
                result.succeeded.append(await self.ingest_message(message))
            except DatabaseError:
                raise
            except RagError as e:
                reason = str(e)
                logger.warning(f"Message {message.id} failed: {reason}")
                self.tracker.mark_failed(message.id, reason, content_hash=message.content_hash)
                result.failed[message.id] = reason
                result.last_error = reason

            if on_progress:
                on_progress(result)

        result.duration_ms = (time.perf_counter() - started) * 1000
        return result

    async def purge_message(self, source_message_id: str) -> int:
        """Delete every vector and the checkpoint of a removed message."""
        checkpoint = self.tracker.get_checkpoint(source_message_id)
        count = checkpoint.chunk_count if checkpoint else 0
        ids = [make_vector_id(source_message_id, i) for i in range(count)]
        if ids:
            await self.store.delete(ids)
        self.tracker.delete_checkpoint(source_message_id)
        return len(ids)
