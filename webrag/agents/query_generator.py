"""Standalone-question and search-query generation for one user turn."""

from __future__ import annotations

import re
from datetime import date
from typing import Any

from loguru import logger

from webrag.config import settings
from webrag.llm_client import ChatClient
from webrag.models.context import QueryPlan
from webrag.models.errors import ConfigurationError
from webrag.services.model_output import extract_json_object
from webrag.services.prompt_store import render_prompt

QUERY_MAX_CHARS = 200
_PUNCTUATION_RE = re.compile(r"[^\w\s]", re.UNICODE)


def naive_queries(question: str) -> list[str]:
    """Keyword fallback: lowercase, drop punctuation, keep tokens longer than 2 chars."""
    cleaned = _PUNCTUATION_RE.sub(" ", question.lower())
    core = " ".join(token for token in cleaned.split() if len(token) > 2)
    if not core:
        return []
    return [core, f"site:wikipedia.org {core}"]


def _clean_queries(raw: Any, max_queries: int) -> list[str]:
    if not isinstance(raw, list):
        return []
    queries: list[str] = []
    seen: set[str] = set()
    for item in raw:
        if not isinstance(item, str):
            continue
        query = " ".join(item.split())[:QUERY_MAX_CHARS]
        key = query.lower()
        if not query or key in seen:
            continue
        seen.add(key)
        queries.append(query)
        if len(queries) >= max_queries:
            break
    return queries


def parse_query_plan(raw_text: str, question: str, *, max_queries: int | None = None) -> QueryPlan | None:
    """Parse model output into a QueryPlan, or None when it is unusable.

    The current schema {"standalone", "queries"} is tried first, then the
    older {"queries"} shape, where the question itself stands in for the
    standalone restatement.
    """
    max_queries = max_queries or settings.max_queries
    payload = extract_json_object(raw_text)
    if payload is None:
        return None

    standalone = payload.get("standalone")
    if isinstance(standalone, str) and standalone.strip() and "queries" in payload:
        return QueryPlan(
            standalone=" ".join(standalone.split()),
            queries=_clean_queries(payload.get("queries"), max_queries),
        )

    if "queries" in payload and isinstance(payload.get("queries"), list):
        queries = _clean_queries(payload["queries"], max_queries)
        if queries:
            return QueryPlan(standalone=question.strip(), queries=queries)
    return None


def fallback_plan(question: str) -> QueryPlan:
    return QueryPlan(standalone=question.strip(), queries=naive_queries(question), fallback=True)


def _transcript(history: list[dict[str, str]]) -> str:
    if not history:
        return "(no earlier messages)"
    lines = []
    for message in history:
        content = " ".join(str(message.get("content", "")).split())
        lines.append(f"{message.get('role', 'user')}: {content}")
    return "\n".join(lines)


async def generate_queries(
    question: str,
    history: list[dict[str, str]],
    chat: ChatClient,
    *,
    max_queries: int | None = None,
) -> QueryPlan:
    """Ask the model for a standalone question and search queries.

    Malformed output, an empty query list and model failures fall back to
    keyword queries; the turn skips web search only when those are empty too.
    Configuration errors propagate.
    """
    max_queries = max_queries or settings.max_queries
    messages = [
        {
            "role": "system",
            "content": render_prompt(
                "query_generation.system",
                today_iso=date.today().isoformat(),
                max_queries=max_queries,
            ),
        },
        {
            "role": "user",
            "content": render_prompt(
                "query_generation.user",
                transcript=_transcript(history),
                question=question.strip(),
            ),
        },
    ]
    try:
        raw = await chat.complete(messages, caller="query_generation", max_tokens=400)
    except ConfigurationError:
        raise
    except Exception as exc:
        logger.warning(f"Query generation call failed, using keyword fallback: {exc}")
        return fallback_plan(question)

    plan = parse_query_plan(raw, question, max_queries=max_queries)
    if plan is None:
        logger.warning(f"Unparseable query plan, using keyword fallback: {raw[:200]!r}")
        return fallback_plan(question)
    if not plan.queries:
        logger.info(f"Model returned no queries for {plan.standalone!r}, using keyword fallback")
        return QueryPlan(standalone=plan.standalone, queries=naive_queries(question), fallback=True)
    logger.info(f"Generated {len(plan.queries)} queries for {plan.standalone!r}")
    return plan
