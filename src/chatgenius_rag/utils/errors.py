"""
Error Handling Utilities

Structured errors for the ingestion and retrieval pipelines.

Every error carries:
- A technical message for logs
- A user-friendly message safe to return to API callers
- The HTTP status code the API layer maps it to
"""

import asyncio
import traceback
from typing import Callable, Optional


class RagError(Exception):
    """Base exception for RAG errors."""

    status_code = 500
    kind = "internal_error"

    def __init__(self, message: str, user_message: Optional[str] = None):
        """
        Initialize RAG error.

        Args:
            message: Technical error message for logging
            user_message: User-friendly message to display
        """
        super().__init__(message)
        self.user_message = user_message or "Sorry, something went wrong. Please try again."


class InvalidQuery(RagError):
    """Empty or malformed query input. Never retried."""

    status_code = 400
    kind = "invalid_query"

    def __init__(self, message: str):
        super().__init__(message, message)


class EmbeddingServiceError(RagError):
    """Upstream embedding model failure."""

    status_code = 502
    kind = "embedding_service_error"

    def __init__(self, message: str):
        super().__init__(
            f"Embedding service failed: {message}",
            "The embedding service is unavailable. Please try again later.",
        )


class EmbeddingVersionMismatch(RagError):
    """Query and index were produced by different embedding models."""

    status_code = 409
    kind = "embedding_version_mismatch"

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding model mismatch: index uses {expected}, generator uses {actual}",
            "The search index was built with a different embedding model and must be re-indexed.",
        )


class VectorStoreUnavailable(RagError):
    """Vector store transport or availability error. Never an empty result."""

    status_code = 503
    kind = "vector_store_unavailable"

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(
            f"Vector store {operation} failed: {message}",
            "The search index is unavailable. Please try again later.",
        )


class MessageSourceError(RagError):
    """The external message store could not be read."""

    status_code = 503
    kind = "message_source_unavailable"

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Message source {operation} failed: {message}",
            "The message store is unavailable. Please try again later.",
        )


class AnswerGenerationError(RagError):
    """Language model failure."""

    status_code = 502
    kind = "answer_generation_error"

    def __init__(self, message: str):
        super().__init__(
            f"Answer generation failed: {message}",
            "I couldn't generate an answer right now. Please try again later.",
        )


class ChunkingError(RagError):
    """Message content cannot be chunked. Fatal for that message only."""

    status_code = 422
    kind = "malformed_message"

    def __init__(self, message_id: str, message: str):
        self.message_id = message_id
        super().__init__(
            f"Cannot chunk message {message_id}: {message}",
            "The message content is malformed.",
        )


class PartialIngestionFailure(RagError):
    """Some messages in a batch failed; the rest were ingested."""

    status_code = 207
    kind = "partial_ingestion_failure"

    def __init__(self, failed: dict[str, str], succeeded: int):
        self.failed = failed
        self.succeeded = succeeded
        super().__init__(
            f"{len(failed)} message(s) failed, {succeeded} succeeded",
            f"{len(failed)} message(s) could not be embedded.",
        )


class SchedulerBusy(RagError):
    """A re-embedding run is already active."""

    status_code = 409
    kind = "scheduler_busy"

    def __init__(self, started_at: Optional[str] = None):
        msg = "Re-embedding run already in progress"
        if started_at:
            msg += f" (started {started_at})"
        super().__init__(msg, "A re-embedding run is already in progress.")


class ConfigError(RagError):
    """Configuration error."""

    kind = "config_error"

    def __init__(self, config_name: str, message: str):
        super().__init__(
            f"Configuration error for {config_name}: {message}",
            "There's a configuration issue. Please contact the administrator.",
        )


class DatabaseError(RagError):
    """Database operation error."""

    kind = "database_error"

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Database {operation} failed: {message}",
            "I couldn't save or retrieve data. Please try again.",
        )


class RateLimitError(RagError):
    """Rate limit exceeded error."""

    status_code = 429
    kind = "rate_limited"

    def __init__(self, service: str, retry_after: Optional[int] = None):
        msg = f"Rate limit exceeded for {service}"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(
            msg,
            "Too many requests. Please wait a moment and try again.",
        )
        self.retry_after = retry_after


class AuthError(RagError):
    """Missing or invalid credentials."""

    status_code = 401
    kind = "unauthorized"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, message)


class PermissionDenied(RagError):
    """Authenticated caller lacks the required role."""

    status_code = 403
    kind = "forbidden"

    def __init__(self, message: str = "This operation requires a service token"):
        super().__init__(message, message)


class NotFound(RagError):
    """Requested item does not exist."""

    status_code = 404
    kind = "not_found"

    def __init__(self, what: str, identifier: str):
        super().__init__(f"{what} not found: {identifier}", f"{what} not found.")


def format_error_for_user(error: Exception) -> str:
    """
    Format an error for display to the user.

    Args:
        error: The exception

    Returns:
        User-friendly error message
    """
    if isinstance(error, RagError):
        return error.user_message

    return "Sorry, I encountered an unexpected error. Please try again."


def format_error_for_log(error: Exception) -> str:
    """Format an error with its traceback for logging."""
    error_type = type(error).__name__
    tb = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return f"{error_type}: {error}\n{tb}"


async def retry_async(
    func: Callable,
    max_retries: int = 3,
    delay_seconds: float = 1.0,
    exponential_backoff: bool = True,
    exceptions: tuple = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Retry an async function with exponential backoff.

    Args:
        func: Zero-argument async callable to retry
        max_retries: Maximum number of retries
        delay_seconds: Initial delay between retries
        exponential_backoff: Whether to double the delay after each attempt
        exceptions: Exception types to catch and retry
        on_retry: Called with (attempt, error) before each retry

    Returns:
        Function result

    Raises:
        Last exception if all retries fail
    """
    last_error: Optional[Exception] = None
    delay = delay_seconds

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except exceptions as e:
            last_error = e
            if attempt < max_retries:
                if on_retry:
                    on_retry(attempt + 1, e)
                await asyncio.sleep(delay)
                if exponential_backoff:
                    delay *= 2

    raise last_error
