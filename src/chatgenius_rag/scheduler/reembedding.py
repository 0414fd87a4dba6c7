"""
Re-embedding Scheduler

Recurring background job that embeds new and edited messages.

Behaviour:
- Async-compatible scheduling (APScheduler AsyncIOScheduler)
- At most one run at a time; a second request is rejected, not queued
- Per-message failure isolation
- Run status persisted for the status endpoint
- Alerts on failed, repeatedly failing and slow runs

Run states: idle -> running -> completed | completed_with_errors | aborted
"""

import asyncio
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Sequence

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..models import SourceMessage
from ..rag.ingestion import BatchResult, IngestionPipeline
from ..storage.database import Database
from ..storage.sync_tracker import SyncTracker
from ..utils.errors import SchedulerBusy, format_error_for_log
from ..utils.logger import get_logger, log_ingestion_run

logger = get_logger(__name__)

JOB_NAME = "reembedding"


class RunState(str, Enum):
    """Lifecycle of a re-embedding run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ABORTED = "aborted"


class RunTrigger(str, Enum):
    INTERVAL = "interval"
    MANUAL = "manual"


@dataclass
class RunStatus:
    """Status of the current or last run."""
    state: RunState = RunState.IDLE
    trigger: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    messages_processed: int = 0
    messages_failed: int = 0
    vectors_deleted: int = 0
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    avg_processing_ms: float = 0.0
    health: str = "healthy"

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds() * 1000
        return None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "messages_processed": self.messages_processed,
            "messages_failed": self.messages_failed,
            "vectors_deleted": self.vectors_deleted,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "avg_processing_ms": round(self.avg_processing_ms, 1),
            "health": self.health,
        }


class ReembeddingScheduler:
    """
    Interval-driven re-embedding job with run exclusivity.

    Usage:
        scheduler = ReembeddingScheduler(pipeline, tracker, db)
        scheduler.restore()
        scheduler.start()
        ...
        status = await scheduler.run_once("manual")
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        tracker: SyncTracker,
        db: Database,
        page_size: int = 100,
        interval_minutes: float = 5.0,
        max_run_seconds: float = 240.0,
        max_consecutive_failures: int = 3,
    ):
        self.pipeline = pipeline
        self.tracker = tracker
        self.db = db
        self.page_size = page_size
        self.interval_minutes = interval_minutes
        self.max_run_seconds = max_run_seconds
        self.max_consecutive_failures = max_consecutive_failures

        self._lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._current: Optional[RunStatus] = None
        self._last = RunStatus()

    # ======================
    # LIFECYCLE
    # ======================

    def restore(self) -> None:
        """Load failure counters and the last outcome from the database."""
        row = self.db.get_job_status(JOB_NAME)
        if not row:
            return

        try:
            state = RunState(row["last_run_status"])
        except ValueError:
            state = RunState.IDLE

        self._last = RunStatus(
            state=state,
            finished_at=datetime.fromisoformat(row["last_run_time"]) if row["last_run_time"] else None,
            messages_processed=row["last_processed_count"] or 0,
            messages_failed=row["last_failed_count"] or 0,
            last_error=row["last_error"],
            consecutive_failures=row["consecutive_failures"] or 0,
            avg_processing_ms=row["avg_processing_time"] or 0.0,
            health=row["health"] or "healthy",
        )

    def start(self) -> None:
        """Start the interval trigger. Must be called from a running event loop."""
        if self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._scheduled_run,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_NAME,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Re-embedding scheduler started (interval: {self.interval_minutes} min)")

    async def stop(self) -> None:
        """Stop the interval trigger. An active run is left to finish."""
        if self._scheduler is None:
            return

        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Re-embedding scheduler stopped")

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def next_run_time(self) -> Optional[datetime]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(JOB_NAME)
        return job.next_run_time if job else None

    async def _scheduled_run(self) -> None:
        try:
            await self.run_once(RunTrigger.INTERVAL.value)
        except SchedulerBusy:
            logger.info("Skipping scheduled re-embedding: a run is already active")

    # ======================
    # RUNS
    # ======================

    async def run_once(self, trigger: str = RunTrigger.MANUAL.value) -> RunStatus:
        """
        Execute one run over a page of pending messages.

        Raises:
            SchedulerBusy: If a run is already active
        """
        self._reject_if_busy()

        async with self._lock:
            return await self._run(trigger)

    async def ingest_messages(self, messages: Sequence[SourceMessage]) -> BatchResult:
        """
        Ingest specific messages under the run lock (manual upsert).

        Raises:
            SchedulerBusy: If a run or another manual batch is active
        """
        self._reject_if_busy()

        async with self._lock:
            logger.info(f"Manual ingestion of {len(messages)} message(s)")
            return await self.pipeline.ingest_batch(messages)

    def _reject_if_busy(self) -> None:
        if self._lock.locked():
            started = self._current.started_at.isoformat() if self._current and self._current.started_at else None
            raise SchedulerBusy(started)

    @staticmethod
    def _progress(status: RunStatus) -> Callable[[BatchResult], None]:
        def update(batch: BatchResult) -> None:
            status.messages_processed = len(batch.succeeded)
            status.messages_failed = len(batch.failed)
        return update

    async def _run(self, trigger: str) -> RunStatus:
        previous = self._last
        status = RunStatus(
            state=RunState.RUNNING,
            trigger=trigger,
            started_at=datetime.now(timezone.utc),
            consecutive_failures=previous.consecutive_failures,
            avg_processing_ms=previous.avg_processing_ms,
            health=previous.health,
        )
        self._current = status
        logger.info(f"Re-embedding run started ({trigger})")

        batch = BatchResult()
        started = time.perf_counter()
        try:
            pending = await self.tracker.list_pending(limit=self.page_size)
            batch = await self.pipeline.ingest_batch(pending, on_progress=self._progress(status))
            status.vectors_deleted = await self._reconcile()
            status.state = RunState.COMPLETED_WITH_ERRORS if batch.failed else RunState.COMPLETED
            status.last_error = batch.last_error
        except Exception as e:
            logger.error(f"Re-embedding run aborted: {format_error_for_log(e)}")
            status.state = RunState.ABORTED
            status.last_error = str(e)
        finally:
            status.finished_at = datetime.now(timezone.utc)
            self._current = None

        duration_ms = (time.perf_counter() - started) * 1000
        status.messages_processed = len(batch.succeeded)
        status.messages_failed = len(batch.failed)

        self._account(status, batch, duration_ms)
        self._last = status
        self._persist(status)

        log_ingestion_run(
            logger,
            state=status.state.value,
            trigger=trigger,
            messages_processed=status.messages_processed,
            messages_failed=status.messages_failed,
            duration_ms=duration_ms,
            last_error=status.last_error,
        )
        return replace(status)

    async def _reconcile(self) -> int:
        """Remove vectors and checkpoints of messages deleted at the source."""
        deleted = 0
        for source_message_id in await self.tracker.stale_checkpoints():
            deleted += await self.pipeline.purge_message(source_message_id)
            logger.info(f"Purged vectors for deleted message {source_message_id}")
        return deleted

    def _account(self, status: RunStatus, batch: BatchResult, duration_ms: float) -> None:
        """Update failure counters, moving average, health and alerts."""
        failed_run = status.state == RunState.ABORTED or (
            batch.attempted > 0 and not batch.succeeded
        )
        status.consecutive_failures = status.consecutive_failures + 1 if failed_run else 0

        if status.avg_processing_ms:
            status.avg_processing_ms = status.avg_processing_ms * 0.8 + duration_ms * 0.2
        else:
            status.avg_processing_ms = duration_ms

        status.health = (
            "critical"
            if status.consecutive_failures >= self.max_consecutive_failures
            else "healthy"
        )

        details = {
            "trigger": status.trigger,
            "state": status.state.value,
            "processed": status.messages_processed,
            "failed": status.messages_failed,
            "duration_ms": round(duration_ms, 1),
            "error": status.last_error,
        }

        if failed_run:
            self._alert("error", "Re-embedding run failed", details)
            if status.consecutive_failures == self.max_consecutive_failures:
                self._alert(
                    "error",
                    f"Re-embedding job has failed {status.consecutive_failures} times in a row",
                    details,
                )

        if duration_ms > self.max_run_seconds * 1000:
            self._alert(
                "warning",
                f"Re-embedding run took {duration_ms / 1000:.1f}s "
                f"(limit {self.max_run_seconds:.0f}s)",
                details,
            )

    def _alert(self, type: str, message: str, details: dict) -> None:
        log = logger.error if type == "error" else logger.warning
        log(f"[alert] {message}", extra={"extra_fields": details})
        self.db.add_alert(type=type, message=message, details=details, service=JOB_NAME)

    def _persist(self, status: RunStatus) -> None:
        self.db.save_job_status(JOB_NAME, {
            "last_run_time": status.finished_at.isoformat() if status.finished_at else None,
            "last_run_status": status.state.value,
            "consecutive_failures": status.consecutive_failures,
            "last_processed_count": status.messages_processed,
            "last_failed_count": status.messages_failed,
            "avg_processing_time": status.avg_processing_ms,
            "health": status.health,
            "last_error": status.last_error,
        })

    # ======================
    # STATUS
    # ======================

    def status(self) -> dict:
        """Current run if one is active, else the last finished run."""
        current = self._current if self.running and self._current else self._last
        data = current.to_dict()
        data["running"] = self.running
        next_run = self.next_run_time()
        data["next_run_time"] = next_run.isoformat() if next_run else None
        data["interval_minutes"] = self.interval_minutes
        data["checkpoints"] = self.tracker.counts()
        return data
