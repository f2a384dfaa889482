from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable

from loguru import logger

from webrag.agents.coverage import assess_coverage
from webrag.agents.query_generator import generate_queries
from webrag.config import settings
from webrag.llm_client import ChatClient, client as llm_client
from webrag.models import events
from webrag.models.context import ScrapedDoc, ScrapePlan, WebContext
from webrag.models.errors import PipelineStageError, SearchError
from webrag.models.events import HistoryMessage, StatusCallback, WebStatus
from webrag.research_core.scrape.service import ScrapeService
from webrag.services import logger as log_service
from webrag.services.aggregator import SearchFn, merge_contexts, merge_scraped, search_all
from webrag.services.context_budget import finalize_context
from webrag.services.prompt_builder import (
    Message,
    build_direct_messages,
    build_final_messages,
    history_messages,
)
from webrag.services.prompt_store import render_prompt
from webrag.services.rag import WebRAG, distill_document
from webrag.tools import serper_search


def _ignore_status(_status: WebStatus) -> None:
    return None


async def _gather_or_cancel(*aws: Awaitable[Any]) -> list[Any]:
    """Await all; the first failure cancels the rest and propagates."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class WebSearchPipeline:
    """Web-augmented answering for one conversation.

    Flow per turn:
      1. Generate a standalone question and up to 4 search queries
      2. Fan out the searches in parallel and flatten the results
      3. Up to 3 coverage rounds: assess, then scrape and/or search more,
         distill long pages with RAG, merge
      4. Clamp the context and assemble the final messages
      5. Stream the completion

    At most one run is active per pipeline; starting another cancels it.
    """

    def __init__(
        self,
        chat: ChatClient | None = None,
        scraper: ScrapeService | None = None,
        rag: WebRAG | None = None,
        search_fn: SearchFn | None = None,
    ):
        self._chat = chat
        self.scraper = scraper or ScrapeService()
        self.rag = rag or WebRAG.from_settings()
        self.search_fn = search_fn or serper_search.search
        self.max_rounds = max(int(settings.max_refinement_rounds), 0)
        self._current: asyncio.Task | None = None

    @property
    def chat(self) -> ChatClient:
        if self._chat is None:
            self._chat = llm_client()
        return self._chat

    async def run(
        self,
        question: str,
        history: Iterable[HistoryMessage | dict[str, Any]] = (),
        on_status: StatusCallback | None = None,
    ) -> list[Message]:
        """Build the final message list for `question`, gathering web context on the way."""
        emit = on_status or _ignore_status
        prior = history_messages(history)
        await self.scraper.reset()
        try:
            return await self._run(question, prior, emit)
        finally:
            await self.scraper.cache.clear()

    async def _run(self, question: str, history: list[Message], emit: StatusCallback) -> list[Message]:
        emit(events.generating_queries())
        try:
            plan = await generate_queries(question, history, self.chat)
        except Exception as exc:
            raise PipelineStageError("query_generation", exc) from exc

        if not plan.queries:
            logger.info("No search queries generated, answering without web context")
            return build_direct_messages(question, history)

        try:
            context = await self._search(plan.queries)
        except Exception as exc:
            raise PipelineStageError("search", exc) from exc

        try:
            await self._refine(plan.standalone, context, emit)
        except PipelineStageError:
            raise
        except Exception as exc:
            raise PipelineStageError("refinement", exc) from exc

        try:
            final = finalize_context(
                context,
                max_bytes=settings.context_max_bytes,
                ceiling_bytes=settings.final_context_ceiling_bytes,
                scraped_max_chars=settings.final_scraped_max_chars,
            )
            messages = build_final_messages(question, history, final)
        except Exception as exc:
            raise PipelineStageError("prompt_assembly", exc) from exc
        log_service.log_event(
            "prompt_ready",
            "Final web context assembled",
            bytes=final.serialized_size(),
            results=len(final.results),
            scraped=len(final.scraped or []),
        )
        return messages

    async def _search_one(self, query: str) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(
                self.search_fn(query),
                timeout=settings.search_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise SearchError(
                f"Search for {query!r} timed out after {settings.search_timeout_seconds:g}s"
            ) from exc

    async def _search(self, queries: list[str]) -> WebContext:
        return await search_all(
            queries,
            search_fn=self._search_one,
            max_organic_per_query=settings.max_organic_per_query,
            max_total_results=settings.max_total_results,
            max_bytes=settings.context_max_bytes,
        )

    async def _refine(self, standalone: str, context: WebContext, emit: StatusCallback) -> None:
        for round_index in range(1, self.max_rounds + 1):
            emit(events.analyzing_results())
            decision = await assess_coverage(standalone, context, self.chat)
            if decision.enough:
                logger.info(f"Round {round_index}: coverage is enough")
                break
            if not decision.wants_more:
                logger.info(f"Round {round_index}: nothing usable requested, stopping")
                break

            plans = decision.scrape_plans()
            urls = [plan.url for plan in plans]
            if urls:
                emit(events.scraping(urls))
            docs, extra = await _gather_or_cancel(
                self._scrape(urls),
                self._search_more(decision.additional_queries),
            )

            added = merge_scraped(context, docs)
            if extra is not None:
                merge_contexts(context, extra, max_total_results=settings.max_total_results)
            await self._distill(added, plans, standalone)
            log_service.log_context_snapshot(round_index, context, context.serialized_size())

    async def _scrape(self, urls: list[str]) -> list[ScrapedDoc]:
        if not urls:
            return []
        return await self.scraper.scrape_urls(urls)

    async def _search_more(self, queries: list[str]) -> WebContext | None:
        if not queries:
            return None
        try:
            return await self._search(queries)
        except Exception as exc:
            raise PipelineStageError("search", exc) from exc

    async def _distill(self, docs: list[ScrapedDoc], plans: list[ScrapePlan], standalone: str) -> None:
        focus_by_url = {plan.url.lower(): plan.focus or standalone for plan in plans}
        for doc in docs:
            focus = focus_by_url.get(doc.url.lower(), standalone)
            await distill_document(doc, focus, rag=self.rag, translate=self.translate)

    async def translate(self, text: str, language: str) -> str:
        messages = [
            {"role": "system", "content": render_prompt("translation.system", language=language)},
            {"role": "user", "content": render_prompt("translation.user", text=text)},
        ]
        return await self.chat.complete(messages, caller="translation", max_tokens=200)

    def run_search_and_stream(
        self,
        question: str,
        history: Iterable[HistoryMessage | dict[str, Any]],
        on_chunk: Callable[[str], None],
        on_complete: Callable[[], None],
        on_error: Callable[[BaseException], None],
        on_status: StatusCallback | None = None,
    ) -> asyncio.Task:
        """Start a full turn in the background, cancelling any run still in flight.

        Exactly one of `on_complete`/`on_error` fires unless the run is
        cancelled, in which case neither does.
        """
        previous = self._current
        if previous is not None and not previous.done():
            self.scraper.cancel()
            previous.cancel()
        task = asyncio.create_task(
            self._run_and_stream(previous, question, list(history), on_chunk, on_complete, on_error, on_status)
        )
        self._current = task
        return task

    async def _run_and_stream(
        self,
        previous: asyncio.Task | None,
        question: str,
        history: list[HistoryMessage | dict[str, Any]],
        on_chunk: Callable[[str], None],
        on_complete: Callable[[], None],
        on_error: Callable[[BaseException], None],
        on_status: StatusCallback | None,
    ) -> None:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)

        try:
            messages = await self.run(question, history, on_status)
        except asyncio.CancelledError:
            logger.info("Web search run cancelled")
            raise
        except Exception as exc:
            logger.error(f"Web search run failed: {exc}")
            on_error(exc)
            return

        def stream_failed(exc: BaseException) -> None:
            on_error(PipelineStageError("completion", exc))

        handle = self.chat.stream_chat(messages, on_chunk, on_complete, stream_failed)
        try:
            await handle.task
        except asyncio.CancelledError:
            handle.cancel()
            logger.info("Answer stream cancelled")
            raise

    def cancel_running(self) -> bool:
        """Cancel the active run, if any. Returns True when something was cancelled."""
        task = self._current
        if task is None or task.done():
            return False
        self.scraper.cancel()
        task.cancel()
        return True

    async def aclose(self) -> None:
        self.cancel_running()
        if self._current is not None:
            await asyncio.gather(self._current, return_exceptions=True)
        await self.scraper.aclose()
