"""
Embeddings Module

Converts text to vector embeddings using OpenAI's embedding models.

The same generator (same model, same preprocessing) is used for message
chunks at ingestion time and for user queries at search time; similarity
scores are only meaningful when both sides come from one model.
"""

import asyncio
import re
import time
from typing import Sequence

import openai
from openai import AsyncOpenAI

from ..config import MAX_EMBEDDING_BATCH_SIZE
from ..models import Vector
from ..utils.errors import EmbeddingServiceError
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Models that accept a requested output dimension
SHORTENABLE_MODEL_PREFIX = "text-embedding-3"


def preprocess_text(text: str) -> str:
    """
    Clean text before embedding.
    Removes chat markup that carries no meaning.
    """
    # Remove user mentions: <@U1234567>
    text = re.sub(r"<@[A-Z0-9]+>", "", text)

    # Convert channel links: <#C1234567|general> -> #general
    text = re.sub(r"<#[A-Z0-9]+\|([^>]+)>", r"#\1", text)

    # Convert URL links: <https://example.com|Example> -> Example
    text = re.sub(r"<https?://[^|>]+\|([^>]+)>", r"\1", text)

    # Remove plain URLs: <https://example.com>
    text = re.sub(r"<https?://[^>]+>", "", text)

    # Remove extra whitespace
    text = " ".join(text.split())

    return text.strip()


class EmbeddingGenerator:
    """
    Stateless adapter over the OpenAI embeddings endpoint.

    - Batches of at most 96 texts per call
    - One vector per input text, in input order
    - A batch either fully succeeds or raises EmbeddingServiceError

    Usage:
        generator = EmbeddingGenerator(AsyncOpenAI(), model="text-embedding-3-small")
        vectors = await generator.embed(["hello", "world"])
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        batch_size: int = MAX_EMBEDDING_BATCH_SIZE,
        timeout_seconds: float = 30.0,
    ):
        self._client = client
        self.model = model
        self.dimensions = dimensions
        self.batch_size = min(batch_size, MAX_EMBEDDING_BATCH_SIZE)
        self.timeout_seconds = timeout_seconds

    @property
    def model_version(self) -> str:
        """Pinned model identifier stored with every vector."""
        return self.model

    async def embed(self, texts: Sequence[str]) -> list[Vector]:
        """
        Create embedding vectors for multiple texts.

        Args:
            texts: Texts to embed

        Returns:
            One vector per text, same order

        Raises:
            EmbeddingServiceError: If any batch fails
        """
        if not texts:
            return []

        vectors: list[Vector] = []
        for start in range(0, len(texts), self.batch_size):
            batch = list(texts[start:start + self.batch_size])
            vectors.extend(await self._embed_batch(batch))

        return vectors

    async def embed_query(self, text: str) -> Vector:
        """Create the embedding vector for a single query."""
        vectors = await self.embed([text])
        return vectors[0]

    def _request(self, texts: list[str]) -> dict:
        request = {"model": self.model, "input": texts}
        if self.model.startswith(SHORTENABLE_MODEL_PREFIX):
            request["dimensions"] = self.dimensions
        return request

    async def _embed_batch(self, texts: list[str]) -> list[Vector]:
        """Call the embeddings API for one batch."""
        # The API rejects empty strings
        cleaned = [preprocess_text(t) or t.strip() or " " for t in texts]
        started = time.perf_counter()

        try:
            response = await asyncio.wait_for(
                self._client.embeddings.create(**self._request(cleaned)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise EmbeddingServiceError(f"timed out after {self.timeout_seconds}s")
        except openai.OpenAIError as e:
            raise EmbeddingServiceError(str(e)) from e

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise EmbeddingServiceError(
                f"expected {len(texts)} embeddings, received {len(data)}"
            )

        vectors = [list(item.embedding) for item in data]
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingServiceError(
                    f"expected dimension {self.dimensions}, received {len(vector)}"
                )

        logger.debug(
            f"Embedded {len(texts)} texts in {(time.perf_counter() - started) * 1000:.0f}ms"
        )
        return vectors
