"""Flattening and merging of search payloads and scraped documents."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from loguru import logger

from webrag.models.context import ScrapedDoc, WebContext, WebResult
from webrag.services.context_budget import clamp_context
from webrag.tools import web_utils

SNIPPET_MAX_CHARS = 460
EXTRAS_MAX_ITEMS = 8

SearchFn = Callable[[str], Awaitable[dict[str, Any]]]


def web_result_from_hit(hit: Any) -> WebResult | None:
    if not isinstance(hit, dict):
        return None
    link = hit.get("link") or hit.get("url")
    if not isinstance(link, str) or not web_utils.is_valid_url(link.strip()):
        return None
    link = link.strip()
    snippet = web_utils.collapse_whitespace(str(hit.get("snippet") or ""))
    date = hit.get("date")
    return WebResult(
        title=web_utils.collapse_whitespace(str(hit.get("title") or "")),
        snippet=snippet[:SNIPPET_MAX_CHARS],
        link=link,
        source=web_utils.extract_domain(link),
        date=str(date) if date else None,
    )


def merge_queries(existing: list[str], new: list[str]) -> list[str]:
    merged = list(existing)
    seen = {q.strip().lower() for q in existing}
    for query in new:
        cleaned = " ".join(str(query).split())
        key = cleaned.lower()
        if not cleaned or key in seen:
            continue
        seen.add(key)
        merged.append(cleaned)
    return merged


def _append_results(
    context: WebContext,
    candidates: list[WebResult],
    *,
    max_total_results: int,
) -> int:
    seen = {web_utils.normalize_link(r.link) for r in context.results}
    added = 0
    for result in candidates:
        if len(context.results) >= max_total_results:
            break
        key = web_utils.normalize_link(result.link)
        if key in seen:
            continue
        seen.add(key)
        context.results.append(result)
        added += 1
    return added


def _merge_extras(
    current: list[dict[str, Any]] | None, incoming: Any
) -> list[dict[str, Any]] | None:
    if not isinstance(incoming, list):
        return current
    items = [item for item in incoming if isinstance(item, dict)]
    if not items:
        return current
    return ((current or []) + items)[:EXTRAS_MAX_ITEMS]


def add_search_payload(
    context: WebContext,
    payload: dict[str, Any],
    *,
    max_organic_per_query: int,
    max_total_results: int,
) -> int:
    """Fold one raw search response into `context`; returns organic results added."""
    organic = payload.get("organic") or []
    candidates = [
        result
        for result in (web_result_from_hit(hit) for hit in organic[:max_organic_per_query])
        if result is not None
    ]
    added = _append_results(context, candidates, max_total_results=max_total_results)

    answer_box = payload.get("answerBox")
    if context.answer_box is None and isinstance(answer_box, dict) and answer_box:
        context.answer_box = answer_box
    knowledge_graph = payload.get("knowledgeGraph")
    if context.knowledge_graph is None and isinstance(knowledge_graph, dict) and knowledge_graph:
        context.knowledge_graph = knowledge_graph

    context.people_also_ask = _merge_extras(context.people_also_ask, payload.get("peopleAlsoAsk"))
    context.top_stories = _merge_extras(context.top_stories, payload.get("topStories"))
    return added


def merge_scraped(context: WebContext, docs: list[ScrapedDoc]) -> list[ScrapedDoc]:
    """Merge docs by lowercased URL, first one wins. Returns the docs actually added."""
    existing = context.scraped or []
    seen = {doc.url.strip().lower() for doc in existing}
    added: list[ScrapedDoc] = []
    for doc in docs:
        key = doc.url.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        added.append(doc)
    if added:
        context.scraped = existing + added
    return added


def merge_contexts(
    base: WebContext,
    incoming: WebContext,
    *,
    max_total_results: int,
) -> WebContext:
    """Merge a follow-up search context into the accumulator in place."""
    base.queries_used = merge_queries(base.queries_used, incoming.queries_used)
    _append_results(base, incoming.results, max_total_results=max_total_results)
    if base.answer_box is None and incoming.answer_box:
        base.answer_box = incoming.answer_box
    if base.knowledge_graph is None and incoming.knowledge_graph:
        base.knowledge_graph = incoming.knowledge_graph
    base.people_also_ask = _merge_extras(base.people_also_ask, incoming.people_also_ask)
    base.top_stories = _merge_extras(base.top_stories, incoming.top_stories)
    if incoming.scraped:
        merge_scraped(base, incoming.scraped)
    return base


async def search_all(
    queries: list[str],
    *,
    search_fn: SearchFn,
    max_organic_per_query: int,
    max_total_results: int,
    max_bytes: int,
) -> WebContext:
    """Run one search per query in parallel and flatten the responses.

    All calls must succeed: the first failure cancels the siblings and
    propagates.
    """
    queries = merge_queries([], queries)
    tasks = [asyncio.create_task(search_fn(query)) for query in queries]
    try:
        payloads = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    context = WebContext(queries_used=queries)
    for query, payload in zip(queries, payloads):
        added = add_search_payload(
            context,
            payload if isinstance(payload, dict) else {},
            max_organic_per_query=max_organic_per_query,
            max_total_results=max_total_results,
        )
        logger.debug(f"Search {query!r} contributed {added} new results")
    return clamp_context(context, max_bytes)
