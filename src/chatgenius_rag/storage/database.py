"""
SQLite Database Module

Durable state owned by the RAG service:
- Sync checkpoints (which messages are embedded, with which content hash)
- Re-embedding job status
- System alerts raised by the scheduler

The chat messages themselves live in the external message store and are
only read through a MessageSource.
"""

import os
import sqlite3
import time
import json
from contextlib import contextmanager
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Optional

from ..utils.errors import DatabaseError
from ..utils.logger import get_logger

logger = get_logger(__name__)


SCHEMA = """
    -- One row per source message
    CREATE TABLE IF NOT EXISTS sync_checkpoints (
        source_message_id TEXT PRIMARY KEY,
        content_hash TEXT,
        embedded_hash TEXT,
        last_embedded_at TEXT,
        status TEXT NOT NULL,
        chunk_count INTEGER NOT NULL DEFAULT 0,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        updated_at TEXT NOT NULL
    );

    -- Re-embedding job status, one row per job
    CREATE TABLE IF NOT EXISTS cron_status (
        job_name TEXT PRIMARY KEY,
        last_run_time TEXT,
        last_run_status TEXT,
        consecutive_failures INTEGER DEFAULT 0,
        last_processed_count INTEGER DEFAULT 0,
        last_failed_count INTEGER DEFAULT 0,
        avg_processing_time REAL DEFAULT 0,
        health TEXT DEFAULT 'healthy',
        last_error TEXT,
        updated_at TEXT NOT NULL
    );

    -- Alerts raised by background jobs
    CREATE TABLE IF NOT EXISTS system_alerts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        type TEXT NOT NULL,
        message TEXT NOT NULL,
        details TEXT,
        service TEXT NOT NULL,
        created_at INTEGER NOT NULL,
        acknowledged INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_checkpoints_status ON sync_checkpoints(status);
    CREATE INDEX IF NOT EXISTS idx_system_alerts_type ON system_alerts(type);
    CREATE INDEX IF NOT EXISTS idx_system_alerts_created_at ON system_alerts(created_at);
"""


@dataclass
class Alert:
    """System alert data class."""
    id: int
    type: str
    message: str
    details: dict
    service: str
    created_at: int


class Database:
    """
    SQLite database holding checkpoints, job status and alerts.

    Usage:
        db = Database("./data/rag.db")
        db.init()
        with db.connection() as conn:
            conn.execute("SELECT * FROM sync_checkpoints")
    """

    def __init__(self, path: str):
        self.path = path

    def init(self) -> None:
        """
        Initialize the schema.

        Should be called once at application startup.
        """
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with self.connection() as conn:
            conn.executescript(SCHEMA)

        logger.info(f"Database initialized at {self.path}")

    @contextmanager
    def connection(self):
        """
        Get a database connection with automatic commit and cleanup.

        Raises:
            DatabaseError: If SQLite reports an operational error
        """
        try:
            conn = sqlite3.connect(self.path)
        except sqlite3.Error as e:
            raise DatabaseError("connect", str(e)) from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise DatabaseError("query", str(e)) from e
        finally:
            conn.close()

    # ======================
    # JOB STATUS
    # ======================

    def save_job_status(self, job_name: str, status: dict[str, Any]) -> None:
        """Upsert the status row for a background job."""
        now = _utc_now_iso()
        with self.connection() as conn:
            conn.execute(
                """INSERT INTO cron_status (
                       job_name, last_run_time, last_run_status, consecutive_failures,
                       last_processed_count, last_failed_count, avg_processing_time,
                       health, last_error, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(job_name) DO UPDATE SET
                       last_run_time = excluded.last_run_time,
                       last_run_status = excluded.last_run_status,
                       consecutive_failures = excluded.consecutive_failures,
                       last_processed_count = excluded.last_processed_count,
                       last_failed_count = excluded.last_failed_count,
                       avg_processing_time = excluded.avg_processing_time,
                       health = excluded.health,
                       last_error = excluded.last_error,
                       updated_at = excluded.updated_at""",
                (
                    job_name,
                    status.get("last_run_time"),
                    status.get("last_run_status"),
                    status.get("consecutive_failures", 0),
                    status.get("last_processed_count", 0),
                    status.get("last_failed_count", 0),
                    status.get("avg_processing_time", 0.0),
                    status.get("health", "healthy"),
                    status.get("last_error"),
                    now,
                ),
            )

    def get_job_status(self, job_name: str) -> Optional[dict]:
        """Get the persisted status row for a job, if any."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM cron_status WHERE job_name = ?",
                (job_name,),
            ).fetchone()
            return dict(row) if row else None

    # ======================
    # ALERTS
    # ======================

    def add_alert(self, type: str, message: str, details: dict, service: str) -> Alert:
        """Record a system alert."""
        now = int(time.time())
        with self.connection() as conn:
            cursor = conn.execute(
                """INSERT INTO system_alerts (type, message, details, service, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (type, message, json.dumps(details, default=str), service, now),
            )
            return Alert(
                id=cursor.lastrowid,
                type=type,
                message=message,
                details=details,
                service=service,
                created_at=now,
            )

    def get_alerts(self, service: Optional[str] = None, limit: int = 50) -> list[Alert]:
        """Get recent alerts, newest first."""
        with self.connection() as conn:
            if service:
                rows = conn.execute(
                    """SELECT * FROM system_alerts WHERE service = ?
                       ORDER BY created_at DESC, id DESC LIMIT ?""",
                    (service, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM system_alerts ORDER BY created_at DESC, id DESC LIMIT ?",
                    (limit,),
                ).fetchall()

            return [
                Alert(
                    id=row["id"],
                    type=row["type"],
                    message=row["message"],
                    details=json.loads(row["details"]) if row["details"] else {},
                    service=row["service"],
                    created_at=row["created_at"],
                )
                for row in rows
            ]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
