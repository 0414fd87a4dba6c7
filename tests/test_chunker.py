"""Tests for the message chunker."""

from datetime import datetime, timezone

import pytest

from chatgenius_rag.models import SourceMessage
from chatgenius_rag.rag.chunker import chunk
from chatgenius_rag.utils.errors import ChunkingError

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def _msg(text, id: str = "m1") -> SourceMessage:
    return SourceMessage(
        id=id,
        text=text,
        author_id="U1",
        created_at=NOW,
        updated_at=NOW,
        container_id="C1",
    )


# ------------------------------------------------------------------
# Small inputs
# ------------------------------------------------------------------


def test_short_message_is_single_chunk():
    chunks = chunk(_msg("hello world"), max_chars=100, overlap=10)
    assert len(chunks) == 1
    assert chunks[0].text == "hello world"
    assert chunks[0].char_range == (0, 11)
    assert chunks[0].vector_id == "m1_chunk_0"


def test_message_exactly_max_chars_is_single_chunk():
    text = "a" * 100
    assert len(chunk(_msg(text), max_chars=100, overlap=10)) == 1


@pytest.mark.parametrize("text", ["", "   ", "\n\n\t"])
def test_empty_or_whitespace_yields_no_chunks(text):
    assert chunk(_msg(text), max_chars=100, overlap=10) == []


# ------------------------------------------------------------------
# Boundaries
# ------------------------------------------------------------------


def test_hard_cut_with_overlap():
    text = "a" * 250
    chunks = chunk(_msg(text), max_chars=100, overlap=10)
    assert [c.char_range for c in chunks] == [(0, 100), (90, 190), (180, 250)]
    assert [c.chunk_index for c in chunks] == [0, 1, 2]


def test_prefers_paragraph_break():
    text = "A" * 60 + "\n\n" + "B" * 60
    chunks = chunk(_msg(text), max_chars=100, overlap=10)
    assert chunks[0].text == "A" * 60 + "\n\n"
    assert chunks[0].char_range == (0, 62)
    assert chunks[1].char_range == (52, 122)


def test_prefers_sentence_end_over_hard_cut():
    text = "x" * 55 + ". " + "y" * 80
    chunks = chunk(_msg(text), max_chars=100, overlap=10)
    assert chunks[0].char_range == (0, 57)
    assert chunks[0].text.endswith(". ")


def test_falls_back_to_whitespace():
    text = " ".join(["word"] * 60)
    chunks = chunk(_msg(text), max_chars=100, overlap=10)
    for c in chunks[:-1]:
        assert c.text.endswith(" ")


def test_chunks_are_exact_slices_within_budget():
    text = ("The launch was moved. " * 30 + "\n") * 3
    chunks = chunk(_msg(text), max_chars=120, overlap=20)
    assert len(chunks) > 1
    for c in chunks:
        start, end = c.char_range
        assert text[start:end] == c.text
        assert len(c.text) <= 120


def test_chunks_cover_whole_message():
    text = "Sentence number one. " * 40
    chunks = chunk(_msg(text), max_chars=100, overlap=15)
    assert chunks[0].char_range[0] == 0
    assert chunks[-1].char_range[1] == len(text)
    for prev, nxt in zip(chunks, chunks[1:]):
        # No gap between consecutive chunks
        assert nxt.char_range[0] <= prev.char_range[1]
        assert prev.char_range[1] - nxt.char_range[0] <= 15


def test_chunking_is_deterministic():
    text = "Paragraph one is here.\n\nParagraph two follows. " * 20
    first = chunk(_msg(text), max_chars=90, overlap=12)
    second = chunk(_msg(text), max_chars=90, overlap=12)
    assert first == second


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------


def test_invalid_parameters():
    with pytest.raises(ValueError):
        chunk(_msg("x"), max_chars=0, overlap=0)
    with pytest.raises(ValueError):
        chunk(_msg("x"), max_chars=10, overlap=10)
    with pytest.raises(ValueError):
        chunk(_msg("x"), max_chars=10, overlap=-1)


def test_missing_content_is_chunking_error():
    with pytest.raises(ChunkingError) as exc_info:
        chunk(_msg(None, id="bad"), max_chars=100, overlap=10)
    assert exc_info.value.message_id == "bad"


def test_nul_bytes_are_chunking_error():
    with pytest.raises(ChunkingError):
        chunk(_msg("bad\x00text"), max_chars=100, overlap=10)


def test_lone_surrogate_is_chunking_error():
    with pytest.raises(ChunkingError):
        chunk(_msg("broken \ud800 text"), max_chars=100, overlap=10)
