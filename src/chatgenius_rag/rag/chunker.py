"""
Message Chunker

Splits long chat messages into bounded-size segments for embedding.

Split preference, from best to worst:
1. Paragraph break ("\n\n")
2. Line break ("\n")
3. Sentence end (". ", "! ", "? ")
4. Whitespace
5. Hard character cut

Each chunk is an exact slice of the message (char_range), and consecutive
chunks overlap by `overlap` characters. Boundaries depend only on the
text and the two size parameters, so vector ids derived from chunk
indexes are stable across runs.
"""

import re
from typing import Optional

from ..models import Chunk, SourceMessage
from ..utils.errors import ChunkingError

SEPARATORS = ("\n\n", "\n")
SENTENCE_END = re.compile(r"[.!?]+[\"')\]]*\s+")

DEFAULT_CHUNK_SIZE = 500
DEFAULT_CHUNK_OVERLAP = 50


def _find_cut(text: str, start: int, end: int) -> int:
    """Best cut position in text[start:end], never in its first half."""
    lower = start + max((end - start) // 2, 1)
    window = text[lower:end]

    for sep in SEPARATORS:
        i = window.rfind(sep)
        if i != -1:
            return lower + i + len(sep)

    last_sentence: Optional[re.Match] = None
    for match in SENTENCE_END.finditer(text, lower, end):
        last_sentence = match
    if last_sentence is not None:
        return last_sentence.end()

    i = max(window.rfind(" "), window.rfind("\t"))
    if i != -1:
        return lower + i + 1

    return end


def validate_text(message: SourceMessage) -> str:
    """
    Return the message text if it can be chunked.

    Raises:
        ChunkingError: If the content is missing or not valid text
    """
    text = message.text
    if not isinstance(text, str):
        raise ChunkingError(message.id, f"content is {type(text).__name__}, expected text")
    if "\x00" in text:
        raise ChunkingError(message.id, "content contains NUL bytes")
    try:
        text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise ChunkingError(message.id, f"content is not valid UTF-8: {e.reason}")
    return text


def chunk(
    message: SourceMessage,
    max_chars: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[Chunk]:
    """
    Split a message into chunks.

    Args:
        message: Source message
        max_chars: Maximum characters per chunk
        overlap: Characters shared by consecutive chunks

    Returns:
        Chunks in index order. Empty or whitespace-only text yields none.

    Raises:
        ValueError: If the size parameters are inconsistent
        ChunkingError: If the message content is malformed
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if not 0 <= overlap < max_chars:
        raise ValueError("overlap must be >= 0 and smaller than max_chars")

    text = validate_text(message)

    if not text.strip():
        return []

    n = len(text)
    if n <= max_chars:
        return [Chunk(message.id, 0, text, (0, n))]

    chunks: list[Chunk] = []
    start = 0

    while start < n:
        end = min(start + max_chars, n)
        cut = end if end == n else _find_cut(text, start, end)

        piece = text[start:cut]
        if piece.strip():
            chunks.append(Chunk(message.id, len(chunks), piece, (start, cut)))

        if cut >= n:
            break

        next_start = cut - overlap
        start = next_start if next_start > start else cut

    return chunks
