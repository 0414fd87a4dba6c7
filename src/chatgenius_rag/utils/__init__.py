"""
Utilities Module

Logging and error handling shared by the ingestion and retrieval pipelines.
"""

from .logger import (
    setup_logging,
    get_logger,
    log_ingestion_run,
    log_query,
)

from .errors import (
    RagError,
    InvalidQuery,
    EmbeddingServiceError,
    EmbeddingVersionMismatch,
    VectorStoreUnavailable,
    MessageSourceError,
    AnswerGenerationError,
    ChunkingError,
    PartialIngestionFailure,
    SchedulerBusy,
    ConfigError,
    DatabaseError,
    RateLimitError,
    AuthError,
    PermissionDenied,
    NotFound,
    format_error_for_user,
    format_error_for_log,
    retry_async,
)

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "log_ingestion_run",
    "log_query",
    # Errors
    "RagError",
    "InvalidQuery",
    "EmbeddingServiceError",
    "EmbeddingVersionMismatch",
    "VectorStoreUnavailable",
    "MessageSourceError",
    "AnswerGenerationError",
    "ChunkingError",
    "PartialIngestionFailure",
    "SchedulerBusy",
    "ConfigError",
    "DatabaseError",
    "RateLimitError",
    "AuthError",
    "PermissionDenied",
    "NotFound",
    "format_error_for_user",
    "format_error_for_log",
    "retry_async",
]
