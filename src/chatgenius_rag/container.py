"""
Service Container

Builds every gateway once at process start and wires them into the
ingestion pipeline, the scheduler and the query service.

Tests construct ServiceContainer directly with fakes.
"""

from dataclasses import dataclass
from typing import Optional

from openai import AsyncOpenAI
from slack_sdk.web.async_client import AsyncWebClient

from .config import Settings
from .rag.embeddings import EmbeddingGenerator
from .rag.generator import AnswerGenerator
from .rag.ingestion import IngestionPipeline
from .rag.retrieval import QueryService
from .rag.vectorstore import ChromaVectorStore, VectorStore, create_chroma_client
from .scheduler.reembedding import ReembeddingScheduler
from .storage.database import Database
from .storage.message_source import MessageSource, SlackMessageSource, SQLiteMessageSource
from .storage.sync_tracker import SyncTracker
from .utils.errors import ConfigError
from .utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Process-wide service instances."""
    settings: Settings
    db: Database
    source: MessageSource
    tracker: SyncTracker
    generator: EmbeddingGenerator
    store: VectorStore
    answerer: AnswerGenerator
    pipeline: IngestionPipeline
    query_service: QueryService
    scheduler: ReembeddingScheduler

    @classmethod
    def assemble(
        cls,
        settings: Settings,
        db: Database,
        source: MessageSource,
        generator: EmbeddingGenerator,
        store: VectorStore,
        answerer: AnswerGenerator,
        retry_delay_seconds: float = 1.0,
    ) -> "ServiceContainer":
        """Wire pipelines around already-built gateways."""
        tracker = SyncTracker(db, source)
        pipeline = IngestionPipeline(
            tracker,
            generator,
            store,
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            embed_retries=settings.embed_retries,
            retry_delay_seconds=retry_delay_seconds,
        )
        query_service = QueryService(
            generator,
            store,
            answerer,
            source,
            top_k=settings.top_k,
            context_char_budget=settings.context_char_budget,
            no_context_mode=settings.no_context_mode,
        )
        scheduler = ReembeddingScheduler(
            pipeline,
            tracker,
            db,
            page_size=settings.reembed_page_size,
            interval_minutes=settings.reembed_interval_minutes,
            max_run_seconds=settings.max_run_seconds,
            max_consecutive_failures=settings.max_consecutive_failures,
        )
        return cls(
            settings=settings,
            db=db,
            source=source,
            tracker=tracker,
            generator=generator,
            store=store,
            answerer=answerer,
            pipeline=pipeline,
            query_service=query_service,
            scheduler=scheduler,
        )


def build_source(settings: Settings, slack_client: Optional[AsyncWebClient] = None) -> MessageSource:
    """Create the configured message source connector."""
    if settings.message_source == "slack":
        if slack_client is None:
            if not settings.slack_bot_token:
                raise ConfigError("SLACK_BOT_TOKEN", "required when MESSAGE_SOURCE=slack")
            slack_client = AsyncWebClient(token=settings.slack_bot_token)
        return SlackMessageSource(slack_client)
    return SQLiteMessageSource(settings.message_store_path)


def build_container(settings: Settings) -> ServiceContainer:
    """
    Construct all gateways from settings.

    Raises:
        ConfigError: If a required credential is missing
        EmbeddingVersionMismatch: If the index was built with another model
    """
    if not settings.openai_api_key:
        raise ConfigError("OPENAI_API_KEY", "is not set")

    db = Database(settings.database_path)
    db.init()

    openai_client = AsyncOpenAI(api_key=settings.openai_api_key)

    generator = EmbeddingGenerator(
        openai_client,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        batch_size=settings.embedding_batch_size,
        timeout_seconds=settings.embedding_timeout_seconds,
    )
    store = ChromaVectorStore(
        create_chroma_client(settings.vector_db_path),
        settings.collection_name,
        embedding_model=settings.embedding_model,
        dimension=settings.embedding_dimensions,
        max_vectors=settings.max_vectors,
        timeout_seconds=settings.vector_store_timeout_seconds,
    )
    store.open()

    answerer = AnswerGenerator(
        openai_client,
        model=settings.llm_model,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeout_seconds=settings.llm_timeout_seconds,
    )

    container = ServiceContainer.assemble(
        settings,
        db=db,
        source=build_source(settings),
        generator=generator,
        store=store,
        answerer=answerer,
    )
    container.scheduler.restore()

    logger.info(
        f"Services ready (source={settings.message_source}, "
        f"embedding_model={settings.embedding_model}, llm={settings.llm_model})"
    )
    return container
