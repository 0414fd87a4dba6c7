"""
RAG (Retrieval Augmented Generation) Module

This module provides:
- Message chunking with overlap
- Embedding generation (OpenAI embeddings)
- Vector store gateway (ChromaDB)
- Ingestion pipeline used by the scheduler and manual triggers
- Query service for search and grounded answers
"""

from .chunker import chunk, validate_text, DEFAULT_CHUNK_SIZE, DEFAULT_CHUNK_OVERLAP

from .embeddings import EmbeddingGenerator, preprocess_text

from .vectorstore import (
    VectorStore,
    ChromaVectorStore,
    create_chroma_client,
    build_where,
    rank_key,
)

from .generator import AnswerGenerator

from .prompts import SYSTEM_PROMPT, NO_CONTEXT_FALLBACK, build_context_block, build_messages

from .ingestion import IngestionPipeline, IngestionResult, BatchResult

from .retrieval import QueryService, normalize_query

__all__ = [
    # Chunking
    "chunk",
    "validate_text",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_CHUNK_OVERLAP",
    # Embeddings
    "EmbeddingGenerator",
    "preprocess_text",
    # Vector store
    "VectorStore",
    "ChromaVectorStore",
    "create_chroma_client",
    "build_where",
    "rank_key",
    # Answering
    "AnswerGenerator",
    "SYSTEM_PROMPT",
    "NO_CONTEXT_FALLBACK",
    "build_context_block",
    "build_messages",
    # Pipelines
    "IngestionPipeline",
    "IngestionResult",
    "BatchResult",
    "QueryService",
    "normalize_query",
]
