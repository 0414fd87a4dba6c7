"""
Logging Utilities

Provides structured logging for the chat RAG service.

Features:
- Structured JSON logging for production
- Console logging for development
- Per-module loggers
- One structured line per ingestion run and per query
"""

import os
import sys
import json
import logging
from datetime import datetime
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

# Log level from environment
LOG_LEVEL = os.getenv("LOG_LEVEL", "info").upper()

# Whether to use JSON format
JSON_LOGGING = os.getenv("JSON_LOGGING", "false").lower() == "true"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Console formatter with colors and structure."""

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET if color else ""

        timestamp = datetime.now().strftime("%H:%M:%S")

        msg = f"{color}[{timestamp}] [{record.levelname:7}]{reset} [{record.name}] {record.getMessage()}"

        if hasattr(record, "extra_fields") and record.extra_fields:
            extras = " ".join(f"{k}={v}" for k, v in record.extra_fields.items())
            msg += f" ({extras})"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


def setup_logging(level: Optional[str] = None, json_logging: Optional[bool] = None) -> None:
    """
    Set up logging for the application.

    Args:
        level: Log level (debug, info, warning, error). Uses LOG_LEVEL env if not provided.
        json_logging: Force JSON output. Uses JSON_LOGGING env if not provided.
    """
    log_level = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    use_json = JSON_LOGGING if json_logging is None else json_logging

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())

    root_logger.addHandler(handler)

    # Quiet third-party loggers
    for name in ("httpx", "openai", "chromadb", "apscheduler", "slack_sdk", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Args:
        name: Module name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def log_ingestion_run(
    logger: logging.Logger,
    state: str,
    trigger: str,
    messages_processed: int,
    messages_failed: int,
    duration_ms: Optional[float] = None,
    last_error: Optional[str] = None,
) -> None:
    """
    Log the outcome of one re-embedding run with structured data.

    Args:
        logger: Logger instance
        state: Final run state (completed, completed_with_errors, aborted)
        trigger: What started the run (interval or manual)
        messages_processed: Messages embedded successfully
        messages_failed: Messages recorded as failed
        duration_ms: Wall-clock duration of the run
        last_error: Last error seen during the run
    """
    extra_fields = {
        "state": state,
        "trigger": trigger,
        "processed": messages_processed,
        "failed": messages_failed,
    }

    if duration_ms is not None:
        extra_fields["duration_ms"] = round(duration_ms, 1)

    if last_error:
        extra_fields["last_error"] = last_error

    if state == "aborted":
        logger.error("Re-embedding run aborted", extra={"extra_fields": extra_fields})
    elif messages_failed:
        logger.warning("Re-embedding run finished with errors", extra={"extra_fields": extra_fields})
    else:
        logger.info("Re-embedding run finished", extra={"extra_fields": extra_fields})


def log_query(
    logger: logging.Logger,
    user_id: str,
    mode: str,
    query: str,
    results: int,
    duration_ms: Optional[float] = None,
    source_ids: Optional[list[str]] = None,
) -> None:
    """
    Log a search or ask request with structured data.

    Args:
        logger: Logger instance
        user_id: Caller identity
        mode: "search" or "ask"
        query: The query text (only its length is logged)
        results: Number of retrieved chunks
        duration_ms: Total processing time
        source_ids: Grounding message ids used in the answer
    """
    extra_fields = {
        "user_id": user_id,
        "mode": mode,
        "query_length": len(query),
        "results": results,
    }

    if duration_ms is not None:
        extra_fields["duration_ms"] = round(duration_ms, 1)

    if source_ids:
        extra_fields["source_count"] = len(source_ids)

    logger.info(f"Query served ({mode})", extra={"extra_fields": extra_fields})
