"""
HTTP API Module

FastAPI application exposing ingestion, observability and retrieval.
"""

from .app import create_app, rag_error_handler
from .auth import RateLimiter, require_identity, require_service

__all__ = [
    "create_app",
    "rag_error_handler",
    "RateLimiter",
    "require_identity",
    "require_service",
]
