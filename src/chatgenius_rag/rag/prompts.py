"""
Answer Prompts

System prompt and context builders for grounded answers.
"""

from typing import Sequence

from ..models import ScoredChunk

SYSTEM_PROMPT = """You are a helpful assistant inside a team chat application.
Answer the user's question clearly and concisely.

When context from past messages is provided:
- Base your answer on that context
- Cite the messages you used by their [source:...] tag
- If the context does not answer the question, say so before answering from general knowledge

Keep responses short. Do not invent messages or people."""

NO_CONTEXT_FALLBACK = (
    "I couldn't find any relevant messages to answer that. "
    "Try rephrasing the question or mentioning the channel or topic."
)


def format_context_entry(hit: ScoredChunk) -> str:
    """Format one retrieved chunk with its source tag."""
    return f"[source:{hit.source_message_id}] {hit.text.strip()}"


def build_context_block(hits: Sequence[ScoredChunk], char_budget: int) -> tuple[str, list[str]]:
    """
    Concatenate retrieved chunks in the given order within a character budget.

    An entry that does not fit is truncated if it is the first one and
    dropped otherwise.

    Returns:
        (context text, source message ids in first-use order)
    """
    parts: list[str] = []
    source_ids: list[str] = []
    used = 0

    for hit in hits:
        entry = format_context_entry(hit)
        separator = 2 if parts else 0

        if used + separator + len(entry) > char_budget:
            if parts:
                break
            entry = entry[:char_budget]
            if not entry:
                break

        parts.append(entry)
        used += separator + len(entry)
        if hit.source_message_id not in source_ids:
            source_ids.append(hit.source_message_id)

    return "\n\n".join(parts), source_ids


def build_messages(query: str, context: str = "") -> list[dict]:
    """Build the chat completion messages: system + context + question."""
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]

    if context:
        messages.append({
            "role": "user",
            "content": (
                "Use this context to help answer the question:\n\n"
                f"{context}\n\n"
                f"Question: {query}"
            ),
        })
    else:
        messages.append({"role": "user", "content": query})

    return messages
