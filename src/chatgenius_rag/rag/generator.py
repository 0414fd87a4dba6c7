"""
Answer Generator

Single language-model call for a prepared prompt.

Once the request is issued it is shielded from caller cancellation and
runs to completion or timeout.
"""

import asyncio
import time

import openai
from openai import AsyncOpenAI

from ..utils.errors import AnswerGenerationError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AnswerGenerator:
    """
    Thin adapter over OpenAI chat completions.

    Usage:
        generator = AnswerGenerator(AsyncOpenAI(), model="gpt-4o-mini")
        text = await generator.generate(messages)
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        max_tokens: int = 500,
        timeout_seconds: float = 60.0,
    ):
        self._client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds

    async def _complete(self, messages: list[dict]) -> str:
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise AnswerGenerationError(f"timed out after {self.timeout_seconds}s")
        except openai.OpenAIError as e:
            raise AnswerGenerationError(str(e)) from e

        if not response.choices:
            raise AnswerGenerationError("model returned no choices")

        text = (response.choices[0].message.content or "").strip()
        if not text:
            raise AnswerGenerationError("model returned an empty answer")

        logger.debug(f"Answer generated in {(time.perf_counter() - started) * 1000:.0f}ms")
        return text

    async def generate(self, messages: list[dict]) -> str:
        """
        Generate an answer.

        Raises:
            AnswerGenerationError: On upstream failure, timeout or empty output
        """
        task = asyncio.ensure_future(self._complete(messages))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(_log_abandoned_answer)
            raise


def _log_abandoned_answer(task: asyncio.Future) -> None:
    """Collect the outcome of a completion whose caller went away."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning(f"Answer for a cancelled request failed: {error}")
    else:
        logger.info("Answer for a cancelled request completed and was discarded")
