"""
Embedding Sync Tracker

Durable record of which source messages have been embedded and when.

Eligibility rule: a message needs (re-)embedding when it has no
checkpoint, its checkpoint is failed, or its current content hash differs
from the hash recorded at its last successful embed.

Ordering rule: mark_embedded is only called after the vectors for that
message have been written. A crash in between leaves the message
eligible, and the idempotent upsert makes the retry harmless.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from ..models import CheckpointStatus, SourceMessage, SyncCheckpoint
from ..utils.logger import get_logger
from .database import Database
from .message_source import MessageSource, parse_timestamp

logger = get_logger(__name__)


class SyncTracker:
    """
    Checkpoint store joined against the message source.

    Usage:
        tracker = SyncTracker(db, source)
        pending = await tracker.list_pending(limit=100)
        ...upsert vectors...
        tracker.mark_embedded(msg.id, msg.content_hash, chunk_count=2)
    """

    def __init__(self, db: Database, source: MessageSource, scan_page_size: int = 500):
        self.db = db
        self.source = source
        self.scan_page_size = scan_page_size

    # ======================
    # PENDING DISCOVERY
    # ======================

    @staticmethod
    def is_eligible(message: SourceMessage, checkpoint: Optional[SyncCheckpoint]) -> bool:
        """Whether a message must be (re-)embedded given its checkpoint."""
        if checkpoint is None:
            return True
        if checkpoint.status != CheckpointStatus.EMBEDDED:
            return True
        return checkpoint.embedded_hash != message.content_hash

    async def list_pending(self, limit: int = 100, offset: int = 0) -> list[SourceMessage]:
        """
        List messages that still need embedding, oldest first.

        Args:
            limit: Maximum number of messages to return
            offset: Number of eligible messages to skip

        Returns:
            Eligible messages ordered by created_at ascending
        """
        pending: list[SourceMessage] = []
        skipped = 0
        scan_offset = 0

        while len(pending) < limit:
            page = await self.source.fetch_messages(scan_offset, self.scan_page_size)
            if not page:
                break
            scan_offset += len(page)

            checkpoints = self.get_checkpoints([m.id for m in page])
            for message in page:
                if not self.is_eligible(message, checkpoints.get(message.id)):
                    continue
                if skipped < offset:
                    skipped += 1
                    continue
                pending.append(message)
                if len(pending) >= limit:
                    break

            if len(page) < self.scan_page_size:
                break

        return pending

    # ======================
    # CHECKPOINT WRITES
    # ======================

    def mark_embedded(
        self,
        source_message_id: str,
        content_hash: str,
        timestamp: Optional[datetime] = None,
        chunk_count: int = 0,
    ) -> SyncCheckpoint:
        """
        Record a successful embed. Call only after the vector upsert landed.

        Args:
            source_message_id: Message id
            content_hash: Hash of the text that was embedded
            timestamp: Embed time (defaults to now)
            chunk_count: Number of vectors now stored for the message
        """
        embedded_at = (timestamp or datetime.now(timezone.utc)).isoformat()
        now = _now_iso()

        with self.db.connection() as conn:
            conn.execute(
                """INSERT INTO sync_checkpoints (
                       source_message_id, content_hash, embedded_hash, last_embedded_at,
                       status, chunk_count, attempts, last_error, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, 0, NULL, ?)
                   ON CONFLICT(source_message_id) DO UPDATE SET
                       content_hash = excluded.content_hash,
                       embedded_hash = excluded.embedded_hash,
                       last_embedded_at = excluded.last_embedded_at,
                       status = excluded.status,
                       chunk_count = excluded.chunk_count,
                       attempts = 0,
                       last_error = NULL,
                       updated_at = excluded.updated_at""",
                (
                    source_message_id,
                    content_hash,
                    content_hash,
                    embedded_at,
                    CheckpointStatus.EMBEDDED.value,
                    chunk_count,
                    now,
                ),
            )

        return self.get_checkpoint(source_message_id)

    def mark_failed(
        self,
        source_message_id: str,
        reason: str,
        content_hash: Optional[str] = None,
    ) -> SyncCheckpoint:
        """
        Record a failure without losing the last successful embed state.

        embedded_hash, last_embedded_at and chunk_count are left untouched so
        a transient failure does not hide what is already in the index.
        """
        now = _now_iso()

        with self.db.connection() as conn:
            conn.execute(
                """INSERT INTO sync_checkpoints (
                       source_message_id, content_hash, status, attempts, last_error, updated_at)
                   VALUES (?, ?, ?, 1, ?, ?)
                   ON CONFLICT(source_message_id) DO UPDATE SET
                       content_hash = COALESCE(excluded.content_hash, sync_checkpoints.content_hash),
                       status = excluded.status,
                       attempts = sync_checkpoints.attempts + 1,
                       last_error = excluded.last_error,
                       updated_at = excluded.updated_at""",
                (
                    source_message_id,
                    content_hash,
                    CheckpointStatus.FAILED.value,
                    reason[:1000],
                    now,
                ),
            )

        logger.debug(f"Checkpoint {source_message_id} marked failed: {reason}")
        return self.get_checkpoint(source_message_id)

    def delete_checkpoint(self, source_message_id: str) -> None:
        """Remove a checkpoint once its message and vectors are gone."""
        with self.db.connection() as conn:
            conn.execute(
                "DELETE FROM sync_checkpoints WHERE source_message_id = ?",
                (source_message_id,),
            )

    # ======================
    # READS
    # ======================

    def get_checkpoint(self, source_message_id: str) -> Optional[SyncCheckpoint]:
        """Get one checkpoint by message id."""
        return self.get_checkpoints([source_message_id]).get(source_message_id)

    def get_checkpoints(self, ids: Iterable[str]) -> dict[str, SyncCheckpoint]:
        """Get checkpoints for many message ids."""
        ids = list(ids)
        result: dict[str, SyncCheckpoint] = {}

        with self.db.connection() as conn:
            for start in range(0, len(ids), 500):
                batch = ids[start:start + 500]
                placeholders = ",".join("?" for _ in batch)
                rows = conn.execute(
                    f"SELECT * FROM sync_checkpoints WHERE source_message_id IN ({placeholders})",
                    tuple(batch),
                ).fetchall()
                for row in rows:
                    checkpoint = _row_to_checkpoint(row)
                    result[checkpoint.source_message_id] = checkpoint

        return result

    def all_checkpoint_ids(self) -> list[str]:
        """Ids of every tracked message."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT source_message_id FROM sync_checkpoints ORDER BY source_message_id"
            ).fetchall()
            return [row["source_message_id"] for row in rows]

    async def stale_checkpoints(self) -> list[str]:
        """Ids of checkpoints whose source message no longer exists."""
        tracked = self.all_checkpoint_ids()
        stale: list[str] = []
        for start in range(0, len(tracked), self.scan_page_size):
            batch = tracked[start:start + self.scan_page_size]
            existing = await self.source.existing_ids(batch)
            stale.extend(i for i in batch if i not in existing)
        return stale

    def counts(self) -> dict[str, int]:
        """Number of checkpoints per status."""
        counts = {status.value: 0 for status in CheckpointStatus}
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM sync_checkpoints GROUP BY status"
            ).fetchall()
            for row in rows:
                counts[row["status"]] = row["n"]
        return counts


def _row_to_checkpoint(row) -> SyncCheckpoint:
    return SyncCheckpoint(
        source_message_id=row["source_message_id"],
        status=CheckpointStatus(row["status"]),
        content_hash=row["content_hash"],
        embedded_hash=row["embedded_hash"],
        last_embedded_at=parse_timestamp(row["last_embedded_at"]) if row["last_embedded_at"] else None,
        chunk_count=row["chunk_count"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        updated_at=parse_timestamp(row["updated_at"]) if row["updated_at"] else None,
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
