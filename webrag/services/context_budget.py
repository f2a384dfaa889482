"""Byte-budget clamping of the web context before it is shown to a model.

Reductions run in a fixed order and stop as soon as the context fits:

1. drop the raw body of scraped docs that already carry RAG chunks
2. keep the first 8 results
3. drop answerBox, peopleAlsoAsk and topStories
4. keep the first 5 results

Scraped documents themselves are never dropped here. `hard_clamp_scraped` is
the separate last-resort truncation used right before prompt assembly.
"""

from __future__ import annotations

from typing import Callable

from webrag.models.context import WebContext


def _drop_redundant_bodies(context: WebContext) -> None:
    for doc in context.scraped or []:
        if doc.rag_chunks:
            doc.markdown = None
            doc.text = None


def _results_to(limit: int) -> Callable[[WebContext], None]:
    def step(context: WebContext) -> None:
        context.results = context.results[:limit]

    return step


def _drop_secondary_blocks(context: WebContext) -> None:
    context.answer_box = None
    context.people_also_ask = None
    context.top_stories = None


CLAMP_STEPS: tuple[Callable[[WebContext], None], ...] = (
    _drop_redundant_bodies,
    _results_to(8),
    _drop_secondary_blocks,
    _results_to(5),
)


def clamp_context(context: WebContext, max_bytes: int) -> WebContext:
    """Return a copy of `context` reduced until it serializes within `max_bytes`."""
    clamped = context.model_copy(deep=True)
    if clamped.serialized_size() <= max_bytes:
        return clamped
    for step in CLAMP_STEPS:
        step(clamped)
        if clamped.serialized_size() <= max_bytes:
            break
    return clamped


def hard_clamp_scraped(context: WebContext, max_chars: int) -> WebContext:
    """Return a copy with every scraped body cut to `max_chars` characters."""
    clamped = context.model_copy(deep=True)
    for doc in clamped.scraped or []:
        if doc.markdown is not None and len(doc.markdown) > max_chars:
            doc.markdown = doc.markdown[:max_chars]
        if doc.text is not None and len(doc.text) > max_chars:
            doc.text = doc.text[:max_chars]
    return clamped


def finalize_context(
    context: WebContext,
    *,
    max_bytes: int,
    ceiling_bytes: int,
    scraped_max_chars: int,
) -> WebContext:
    """Clamp for the final prompt, hard-truncating scraped bodies only above the ceiling."""
    final = clamp_context(context, max_bytes)
    if final.serialized_size() > ceiling_bytes:
        final = hard_clamp_scraped(final, scraped_max_chars)
    return final
