"""Coverage assessment: does the gathered web context answer the question?"""

from __future__ import annotations

from datetime import date
from typing import Any

from loguru import logger

from webrag.config import settings
from webrag.llm_client import ChatClient
from webrag.models.context import RefinementDecision, ScrapePlan, WebContext
from webrag.models.errors import ConfigurationError
from webrag.services.context_budget import clamp_context
from webrag.services.model_output import extract_json_object
from webrag.services.prompt_store import render_prompt
from webrag.tools import web_utils

FOCUS_MAX_CHARS = 300
QUERY_MAX_CHARS = 200


def _clean(value: Any, max_chars: int) -> str:
    if not isinstance(value, str):
        return ""
    return " ".join(value.split())[:max_chars]


def sanitize_decision(
    raw: dict[str, Any],
    context: WebContext,
    *,
    max_scrape: int | None = None,
    max_queries: int | None = None,
) -> RefinementDecision:
    """Turn an untrusted decision payload into one the loop can act on.

    Scrape URLs must match a link already in `results` (compared by normalized
    link) and must not have been scraped yet. Plans from `scrape` need a
    non-empty focus; bare `scrape_links` are accepted with no focus. New
    queries are deduped against `queries_used`.
    """
    max_scrape = settings.max_scrape_per_round if max_scrape is None else max_scrape
    max_queries = settings.max_additional_queries if max_queries is None else max_queries

    known_links = {web_utils.normalize_link(result.link): result.link for result in context.results}
    already_scraped = {doc.url.strip().lower() for doc in context.scraped or []}
    taken: set[str] = set()

    def accept(url: Any) -> str | None:
        if not isinstance(url, str) or len(taken) >= max_scrape:
            return None
        link = known_links.get(web_utils.normalize_link(url.strip()))
        if link is None:
            return None
        key = link.lower()
        if key in taken or key in already_scraped:
            return None
        taken.add(key)
        return link

    plans: list[ScrapePlan] = []
    scrape = raw.get("scrape")
    for item in scrape if isinstance(scrape, list) else []:
        if not isinstance(item, dict):
            continue
        focus = _clean(item.get("focus"), FOCUS_MAX_CHARS)
        if not focus:
            continue
        link = accept(item.get("url"))
        if link:
            plans.append(ScrapePlan(url=link, focus=focus))

    legacy_links = raw.get("scrape_links")
    for url in legacy_links if isinstance(legacy_links, list) else []:
        link = accept(url)
        if link:
            plans.append(ScrapePlan(url=link, focus=None))

    used = {query.strip().lower() for query in context.queries_used}
    queries: list[str] = []
    additional = raw.get("additional_queries")
    for item in additional if isinstance(additional, list) else []:
        query = _clean(item, QUERY_MAX_CHARS)
        if not query or query.lower() in used:
            continue
        used.add(query.lower())
        queries.append(query)
        if len(queries) >= max_queries:
            break

    enough = raw.get("enough")
    if not isinstance(enough, bool):
        enough = not (plans or queries)

    return RefinementDecision(
        enough=enough,
        scrape=[plan for plan in plans if plan.focus],
        scrape_links=[plan.url for plan in plans if not plan.focus],
        additional_queries=queries,
    )


def parse_decision(raw_text: str, context: WebContext, **limits: Any) -> RefinementDecision:
    payload = extract_json_object(raw_text)
    if payload is None:
        logger.warning(f"Unparseable coverage decision, stopping refinement: {raw_text[:200]!r}")
        return RefinementDecision(enough=True)
    return sanitize_decision(payload, context, **limits)


async def assess_coverage(
    question: str,
    context: WebContext,
    chat: ChatClient,
    *,
    max_scrape: int | None = None,
    max_queries: int | None = None,
    max_bytes: int | None = None,
) -> RefinementDecision:
    """One model call deciding whether to stop, scrape, or search more.

    The model sees a copy of `context` clamped to `max_bytes`; scrape URLs are
    matched against the full, unclamped results. Any failure other than
    configuration resolves to enough=True.
    """
    max_scrape = settings.max_scrape_per_round if max_scrape is None else max_scrape
    max_queries = settings.max_additional_queries if max_queries is None else max_queries
    max_bytes = settings.context_max_bytes if max_bytes is None else max_bytes
    shown = clamp_context(context, max_bytes)
    messages = [
        {
            "role": "system",
            "content": render_prompt(
                "coverage.system",
                today_iso=date.today().isoformat(),
                max_scrape=max_scrape,
                max_queries=max_queries,
            ),
        },
        {
            "role": "user",
            "content": render_prompt(
                "coverage.user",
                question=question,
                context_json=shown.to_json(),
            ),
        },
    ]
    try:
        raw = await chat.complete(messages, caller="coverage", max_tokens=600)
    except ConfigurationError:
        raise
    except Exception as exc:
        logger.warning(f"Coverage assessment call failed, stopping refinement: {exc}")
        return RefinementDecision(enough=True)
    return parse_decision(raw, context, max_scrape=max_scrape, max_queries=max_queries)
