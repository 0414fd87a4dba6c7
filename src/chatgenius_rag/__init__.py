"""
ChatGenius RAG

Semantic search and retrieval-augmented answers over chat history:
- Incremental embedding of new and edited messages
- ChromaDB vector index pinned to one embedding model
- Grounded answers with source message ids
"""

__version__ = "0.1.0"
