"""
Retrieval-Augmented Query Service

Query path:
1. Normalize and validate the query
2. Embed it with the same model used at ingestion
3. Retrieve the top-k chunks from containers the caller may read
4. Assemble a context block within a character budget
5. Ask the language model and return the answer with its source ids

Retrieval is best effort: no matching context still produces an answer.
Store or model failures are raised, never turned into empty results.
"""

import re
import time
from typing import Optional

from ..models import AnswerResponse, Identity, ScoredChunk
from ..storage.message_source import MessageSource
from ..utils.errors import EmbeddingVersionMismatch, InvalidQuery
from ..utils.logger import get_logger, log_query
from .embeddings import EmbeddingGenerator
from .generator import AnswerGenerator
from .prompts import NO_CONTEXT_FALLBACK, build_context_block, build_messages
from .vectorstore import VectorStore

logger = get_logger(__name__)

# Chat trigger prefix, e.g. "@ai what did we decide?"
AI_MENTION = re.compile(r"^\s*@ai\b[:,]?\s*", re.IGNORECASE)

MAX_QUERY_CHARS = 4000


def normalize_query(raw) -> str:
    """
    Strip the @ai mention and surrounding whitespace.

    Raises:
        InvalidQuery: If nothing is left to search for
    """
    if not isinstance(raw, str):
        raise InvalidQuery("Query must be a string")

    text = AI_MENTION.sub("", raw, count=1).strip()
    if not text:
        raise InvalidQuery("Query cannot be empty")
    if len(text) > MAX_QUERY_CHARS:
        raise InvalidQuery(f"Query is too long (max {MAX_QUERY_CHARS} characters)")
    return text


class QueryService:
    """
    Search and question answering over embedded chat history.

    Usage:
        service = QueryService(generator, store, answerer, source)
        answer = await service.ask("what did we decide about the launch?", identity)
    """

    def __init__(
        self,
        generator: EmbeddingGenerator,
        store: VectorStore,
        answerer: AnswerGenerator,
        source: MessageSource,
        top_k: int = 5,
        context_char_budget: int = 6000,
        no_context_mode: str = "model",
    ):
        self.generator = generator
        self.store = store
        self.answerer = answerer
        self.source = source
        self.top_k = top_k
        self.context_char_budget = context_char_budget
        self.no_context_mode = no_context_mode

    def check_version(self) -> None:
        """Refuse to compare query vectors against another model's index."""
        if self.generator.model_version != self.store.embedding_model:
            raise EmbeddingVersionMismatch(
                expected=self.store.embedding_model,
                actual=self.generator.model_version,
            )

    async def _filters(self, identity: Identity) -> Optional[dict]:
        if identity.unrestricted:
            return None
        containers = await self.source.visible_containers(identity.user_id)
        return {"container_id": sorted(containers)}

    async def _retrieve(self, text: str, identity: Identity, top_k: Optional[int]) -> list[ScoredChunk]:
        self.check_version()
        filters = await self._filters(identity)
        vector = await self.generator.embed_query(text)
        return await self.store.query_similar(vector, top_k or self.top_k, filters)

    async def search(
        self,
        query: str,
        identity: Identity,
        top_k: Optional[int] = None,
    ) -> list[ScoredChunk]:
        """
        Ranked retrieval without answer synthesis.

        Raises:
            InvalidQuery: Before any external call if the query is empty
        """
        started = time.perf_counter()
        text = normalize_query(query)

        hits = await self._retrieve(text, identity, top_k)

        log_query(
            logger,
            user_id=identity.user_id,
            mode="search",
            query=text,
            results=len(hits),
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return hits

    async def ask(self, query: str, identity: Identity, top_k: Optional[int] = None) -> AnswerResponse:
        """
        Answer a question grounded in retrieved messages.

        Raises:
            InvalidQuery: Before any external call if the query is empty
            EmbeddingServiceError / VectorStoreUnavailable: Retrieval failed
            AnswerGenerationError: The language model failed
        """
        started = time.perf_counter()
        text = normalize_query(query)

        hits = await self._retrieve(text, identity, top_k)
        context, source_ids = build_context_block(hits, self.context_char_budget)

        if not context and self.no_context_mode == "fallback":
            answer = AnswerResponse(
                text=NO_CONTEXT_FALLBACK,
                source_ids=[],
                used_context=False,
                model=self.answerer.model,
            )
        else:
            if not context:
                logger.info("No relevant context found, answering from model knowledge")
            reply = await self.answerer.generate(build_messages(text, context))
            answer = AnswerResponse(
                text=reply,
                source_ids=source_ids,
                used_context=bool(context),
                model=self.answerer.model,
                results=hits,
            )

        log_query(
            logger,
            user_id=identity.user_id,
            mode="ask",
            query=text,
            results=len(hits),
            duration_ms=(time.perf_counter() - started) * 1000,
            source_ids=answer.source_ids,
        )
        return answer
