"""
Service Configuration

Loads settings from environment variables (and a .env file if present).

All gateways, the scheduler and the query service are constructed from a
single Settings instance at process start.
"""

import os
import json
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

from .utils.errors import ConfigError

load_dotenv()

# Upstream embedding APIs reject oversized batches
MAX_EMBEDDING_BATCH_SIZE = 96

MESSAGE_SOURCES = ("sqlite", "slack")
NO_CONTEXT_MODES = ("model", "fallback")


@dataclass
class ApiToken:
    """Identity bound to a bearer token."""
    user_id: str
    role: str = "member"


@dataclass
class Settings:
    """Runtime settings for the RAG service."""

    # OpenAI
    openai_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_batch_size: int = MAX_EMBEDDING_BATCH_SIZE
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 500

    # Chunking
    chunk_size: int = 500
    chunk_overlap: int = 50

    # Vector store
    vector_db_path: str = "./data/chroma"
    collection_name: str = "chat_messages"
    max_vectors: int = 1_000_000

    # Storage
    database_path: str = "./data/rag.db"
    message_source: str = "sqlite"
    message_store_path: str = "./data/messages.db"
    slack_bot_token: Optional[str] = None

    # Retrieval
    top_k: int = 5
    context_char_budget: int = 6000
    no_context_mode: str = "model"

    # Re-embedding
    reembed_interval_minutes: float = 5.0
    reembed_page_size: int = 100
    embed_retries: int = 2
    max_run_seconds: float = 240.0
    max_consecutive_failures: int = 3

    # Timeouts
    embedding_timeout_seconds: float = 30.0
    vector_store_timeout_seconds: float = 15.0
    llm_timeout_seconds: float = 60.0

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    query_rate_limit: int = 10
    query_rate_window_seconds: float = 60.0
    api_tokens: dict[str, ApiToken] = field(default_factory=dict)

    def validate(self) -> None:
        """
        Check settings for values the pipeline cannot run with.

        Raises:
            ConfigError: On the first invalid value
        """
        if self.chunk_size <= 0:
            raise ConfigError("RAG_CHUNK_SIZE", "must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ConfigError("RAG_CHUNK_OVERLAP", "must be >= 0 and smaller than RAG_CHUNK_SIZE")
        if not 0 < self.embedding_batch_size <= MAX_EMBEDDING_BATCH_SIZE:
            raise ConfigError(
                "RAG_EMBEDDING_BATCH_SIZE", f"must be between 1 and {MAX_EMBEDDING_BATCH_SIZE}"
            )
        if self.embedding_dimensions <= 0:
            raise ConfigError("RAG_EMBEDDING_DIMENSIONS", "must be positive")
        if self.top_k <= 0:
            raise ConfigError("RAG_TOP_K", "must be positive")
        if self.reembed_page_size <= 0:
            raise ConfigError("RAG_REEMBED_PAGE_SIZE", "must be positive")
        if self.message_source not in MESSAGE_SOURCES:
            raise ConfigError("MESSAGE_SOURCE", f"must be one of {', '.join(MESSAGE_SOURCES)}")
        if self.no_context_mode not in NO_CONTEXT_MODES:
            raise ConfigError("RAG_NO_CONTEXT_MODE", f"must be one of {', '.join(NO_CONTEXT_MODES)}")


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(name, f"expected an integer, got {raw!r}")


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(name, f"expected a number, got {raw!r}")


def parse_api_tokens(raw: Optional[str]) -> dict[str, ApiToken]:
    """
    Parse the RAG_API_TOKENS JSON map.

    Format: {"<token>": {"user_id": "U1", "role": "member"}, ...}
    """
    if not raw:
        return {}

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError("RAG_API_TOKENS", f"invalid JSON: {e}")

    if not isinstance(data, dict):
        raise ConfigError("RAG_API_TOKENS", "expected a JSON object")

    tokens = {}
    for token, entry in data.items():
        if not isinstance(entry, dict) or not entry.get("user_id"):
            raise ConfigError("RAG_API_TOKENS", "each token needs a user_id")
        tokens[token] = ApiToken(
            user_id=str(entry["user_id"]),
            role=entry.get("role", "member"),
        )
    return tokens


def load_settings() -> Settings:
    """
    Build Settings from the environment.

    Returns:
        Validated Settings

    Raises:
        ConfigError: If a value is malformed or invalid
    """
    settings = Settings(
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        embedding_model=os.getenv("RAG_EMBEDDING_MODEL", "text-embedding-3-small"),
        embedding_dimensions=_get_int("RAG_EMBEDDING_DIMENSIONS", 1536),
        embedding_batch_size=_get_int("RAG_EMBEDDING_BATCH_SIZE", MAX_EMBEDDING_BATCH_SIZE),
        llm_model=os.getenv("DEFAULT_MODEL", "gpt-4o-mini"),
        llm_temperature=_get_float("RAG_LLM_TEMPERATURE", 0.7),
        llm_max_tokens=_get_int("RAG_LLM_MAX_TOKENS", 500),
        chunk_size=_get_int("RAG_CHUNK_SIZE", 500),
        chunk_overlap=_get_int("RAG_CHUNK_OVERLAP", 50),
        vector_db_path=os.getenv("RAG_VECTOR_DB_PATH", "./data/chroma"),
        collection_name=os.getenv("RAG_COLLECTION_NAME", "chat_messages"),
        max_vectors=_get_int("RAG_MAX_VECTORS", 1_000_000),
        database_path=os.getenv("DATABASE_PATH", "./data/rag.db"),
        message_source=os.getenv("MESSAGE_SOURCE", "sqlite").lower(),
        message_store_path=os.getenv("MESSAGE_STORE_PATH", "./data/messages.db"),
        slack_bot_token=os.getenv("SLACK_BOT_TOKEN"),
        top_k=_get_int("RAG_TOP_K", 5),
        context_char_budget=_get_int("RAG_CONTEXT_CHAR_BUDGET", 6000),
        no_context_mode=os.getenv("RAG_NO_CONTEXT_MODE", "model").lower(),
        reembed_interval_minutes=_get_float("RAG_REEMBED_INTERVAL_MINUTES", 5.0),
        reembed_page_size=_get_int("RAG_REEMBED_PAGE_SIZE", 100),
        embed_retries=_get_int("RAG_EMBED_RETRIES", 2),
        max_run_seconds=_get_float("RAG_MAX_RUN_SECONDS", 240.0),
        max_consecutive_failures=_get_int("RAG_MAX_CONSECUTIVE_FAILURES", 3),
        embedding_timeout_seconds=_get_float("EMBEDDING_TIMEOUT_SECONDS", 30.0),
        vector_store_timeout_seconds=_get_float("VECTOR_STORE_TIMEOUT_SECONDS", 15.0),
        llm_timeout_seconds=_get_float("LLM_TIMEOUT_SECONDS", 60.0),
        api_host=os.getenv("API_HOST", "0.0.0.0"),
        api_port=_get_int("API_PORT", 8000),
        query_rate_limit=_get_int("RAG_QUERY_RATE_LIMIT", 10),
        query_rate_window_seconds=_get_float("RAG_QUERY_RATE_WINDOW_SECONDS", 60.0),
        api_tokens=parse_api_tokens(os.getenv("RAG_API_TOKENS")),
    )
    settings.validate()
    return settings
