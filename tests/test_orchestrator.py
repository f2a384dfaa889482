from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from webrag.agents import orchestrator as orchestrator_module
from webrag.agents.orchestrator import WebSearchPipeline
from webrag.llm_client import StreamHandle
from webrag.models.context import ScrapedDoc
from webrag.models.errors import PipelineStageError, SearchError, describe_failure
from webrag.models.events import HistoryMessage, PipelineStage
from webrag.research_core.models.interfaces import FetchedPage
from webrag.research_core.scrape.service import ScrapeService
from webrag.services.embeddings import EmbeddingRegistry
from webrag.services.rag import WebRAG

QUERY_PLAN = json.dumps({"standalone": "When was Python 3.13 released?", "queries": ["python 3.13 release"]})


class ScriptedChat:
    """Chat double answering each caller from its own queue of replies."""

    def __init__(self, replies: dict[str, list], stream_chunks: list[str] | None = None):
        self.replies = {caller: list(items) for caller, items in replies.items()}
        self.calls: list[tuple[str, list[dict]]] = []
        self.stream_chunks = stream_chunks or ["Python 3.13 ", "was released in October 2024."]
        self.streamed: list[list[dict]] = []

    async def complete(self, messages, *, caller, max_tokens=1024, temperature=0):
        self.calls.append((caller, messages))
        queue = self.replies.get(caller) or []
        reply = queue.pop(0) if len(queue) > 1 else (queue[0] if queue else "")
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def callers(self) -> list[str]:
        return [caller for caller, _ in self.calls]

    def stream_chat(self, messages, on_chunk, on_complete, on_error):
        self.streamed.append(messages)

        async def run():
            for chunk in self.stream_chunks:
                await asyncio.sleep(0)
                on_chunk(chunk)
            on_complete()

        return StreamHandle(asyncio.create_task(run()))


class FakeStrategy:
    name = "local"
    uses_local_renderer = True

    def __init__(self, body: str = "Python 3.13 was released on October 7, 2024."):
        self.body = body
        self.calls: list[str] = []

    async def fetch(self, url: str) -> FetchedPage:
        self.calls.append(url)
        await asyncio.sleep(0)
        return FetchedPage(url=url, title="Release notes", text=self.body)

    async def aclose(self) -> None:
        return None


class FakeEmbedder:
    model_name = "fake"

    async def embed_texts(self, texts):
        return [[float(text.count("2024")), 1.0] for text in texts]


def _search_fn(responses: dict[str, dict] | None = None):
    calls: list[str] = []

    async def search(query: str) -> dict:
        calls.append(query)
        if responses and query in responses:
            return responses[query]
        slug = query.replace(" ", "-")
        return {
            "organic": [
                {"title": f"{query} A", "link": f"https://a.com/{slug}", "snippet": "snippet a"},
                {"title": f"{query} B", "link": f"https://b.com/{slug}", "snippet": "snippet b"},
            ]
        }

    search.calls = calls
    return search


def _pipeline(chat, *, search_fn=None, strategy=None) -> WebSearchPipeline:
    rag = WebRAG(EmbeddingRegistry({"en": "fake"}, factory=lambda _name: FakeEmbedder()), chunk_chars=200, overlap_chars=30)
    return WebSearchPipeline(
        chat=chat,
        scraper=ScrapeService(strategy or FakeStrategy(), max_concurrent=3),
        rag=rag,
        search_fn=search_fn or _search_fn(),
    )


def _not_enough(**extra) -> str:
    return json.dumps({"enough": False, **extra})


@pytest.fixture(autouse=True)
def _fixed_rounds(monkeypatch):
    monkeypatch.setattr(orchestrator_module.settings, "max_refinement_rounds", 3)


@pytest.mark.asyncio
async def test_enough_on_first_round_builds_final_prompt():
    chat = ScriptedChat({"query_generation": [QUERY_PLAN], "coverage": ['{"enough": true}']})
    statuses = []
    pipeline = _pipeline(chat)

    messages = await pipeline.run(
        "and when was it released?",
        [HistoryMessage(role="user", content="Tell me about Python 3.13"), {"role": "assistant", "content": "Sure."}],
        statuses.append,
    )

    assert [s.stage for s in statuses] == [PipelineStage.GENERATING_QUERIES, PipelineStage.ANALYZING_RESULTS]
    assert messages[0]["role"] == "system"
    assert messages[1:3] == [
        {"role": "user", "content": "Tell me about Python 3.13"},
        {"role": "assistant", "content": "Sure."},
    ]
    final = messages[-1]["content"]
    assert final.startswith("Question: and when was it released?\n\nWeb context (JSON):\n")
    context = json.loads(final.split("Web context (JSON):\n", 1)[1])
    assert context["queries_used"] == ["python 3.13 release"]
    assert len(context["results"]) == 2


@pytest.mark.asyncio
async def test_loop_is_bounded_to_three_rounds():
    decision = _not_enough(additional_queries=["q-{n}"])
    replies = [decision.replace("{n}", str(i)) for i in range(10)]
    chat = ScriptedChat({"query_generation": [QUERY_PLAN], "coverage": replies})
    search = _search_fn()
    pipeline = _pipeline(chat, search_fn=search)

    await pipeline.run("question", [])

    assert chat.callers().count("coverage") == 3
    assert search.calls == ["python 3.13 release", "q-0", "q-1", "q-2"]


@pytest.mark.asyncio
async def test_empty_decision_stops_after_that_round():
    chat = ScriptedChat(
        {
            "query_generation": [QUERY_PLAN],
            "coverage": [_not_enough(scrape=[], additional_queries=[]), _not_enough(additional_queries=["more"])],
        }
    )
    search = _search_fn()
    statuses = []

    await _pipeline(chat, search_fn=search).run("question", [], statuses.append)

    assert chat.callers().count("coverage") == 1
    assert search.calls == ["python 3.13 release"]
    assert PipelineStage.SCRAPING not in [s.stage for s in statuses]


@pytest.mark.asyncio
async def test_unknown_scrape_urls_stop_the_loop():
    chat = ScriptedChat(
        {
            "query_generation": [QUERY_PLAN],
            "coverage": [_not_enough(scrape=[{"url": "https://elsewhere.com", "focus": "date"}])],
        }
    )
    strategy = FakeStrategy()
    await _pipeline(chat, strategy=strategy).run("question", [])
    assert chat.callers().count("coverage") == 1
    assert strategy.calls == []


@pytest.mark.asyncio
async def test_scrape_round_merges_and_distills_docs(monkeypatch):
    monkeypatch.setattr(orchestrator_module.settings, "rag_trigger_tokens", 100)
    link = "https://a.com/python-3.13-release"
    long_body = ("Filler paragraph about unrelated things. " * 30) + "Released October 7, 2024. " + "More filler. " * 30
    chat = ScriptedChat(
        {
            "query_generation": [QUERY_PLAN],
            "coverage": [_not_enough(scrape=[{"url": link, "focus": "release date 2024"}]), '{"enough": true}'],
        }
    )
    statuses = []
    strategy = FakeStrategy(body=long_body)
    pipeline = _pipeline(chat, strategy=strategy)
    pipeline_messages = await pipeline.run("question", [], statuses.append)

    assert strategy.calls == [link]
    assert [s.to_dict() for s in statuses if s.stage == PipelineStage.SCRAPING] == [
        {"stage": "scraping", "urls": [link]}
    ]
    context = json.loads(pipeline_messages[-1]["content"].split("Web context (JSON):\n", 1)[1])
    (doc,) = context["scraped"]
    assert doc["url"] == link
    assert doc["ragQuery"] == "release date 2024"
    assert "2024" in doc["ragChunks"][0]["text"]
    assert len(doc["ragChunks"]) <= 3
    assert await pipeline.scraper.cache.size() == 0


@pytest.mark.asyncio
async def test_scrape_failure_degrades_to_error_doc():
    class BrokenStrategy(FakeStrategy):
        async def fetch(self, url: str) -> FetchedPage:
            raise TimeoutError("navigation timed out")

    link = "https://b.com/python-3.13-release"
    chat = ScriptedChat(
        {
            "query_generation": [QUERY_PLAN],
            "coverage": [_not_enough(scrape=[{"url": link, "focus": "date"}]), '{"enough": true}'],
        }
    )
    messages = await _pipeline(chat, strategy=BrokenStrategy()).run("question", [])
    context = json.loads(messages[-1]["content"].split("Web context (JSON):\n", 1)[1])
    assert context["scraped"] == [{"url": link, "source": "b.com", "error": "navigation timed out"}]


class TracedChat(ScriptedChat):
    def __init__(self, timeline: list[str], replies: dict[str, list]):
        super().__init__(replies)
        self.timeline = timeline

    async def complete(self, messages, *, caller, max_tokens=1024, temperature=0):
        self.timeline.append(caller)
        return await super().complete(messages, caller=caller, max_tokens=max_tokens, temperature=temperature)


@pytest.mark.asyncio
async def test_round_runs_scrape_and_extra_search_together():
    link = "https://a.com/python-3.13-release"
    timeline: list[str] = []
    search = _search_fn()

    async def traced_search(query: str) -> dict:
        timeline.append(f"search:{query}")
        return await search(query)

    class TracedStrategy(FakeStrategy):
        async def fetch(self, url: str) -> FetchedPage:
            timeline.append(f"scrape:{url}")
            return await super().fetch(url)

    chat = TracedChat(
        timeline,
        {
            "query_generation": [QUERY_PLAN],
            "coverage": [
                _not_enough(
                    scrape=[{"url": link, "focus": "release date"}],
                    additional_queries=["python 3.13 changelog"],
                ),
                '{"enough": true}',
            ],
        },
    )
    messages = await _pipeline(chat, search_fn=traced_search, strategy=TracedStrategy()).run("question", [])

    assert timeline[:3] == ["query_generation", "search:python 3.13 release", "coverage"]
    assert set(timeline[3:5]) == {f"scrape:{link}", "search:python 3.13 changelog"}
    assert timeline[5:] == ["coverage"]

    context = json.loads(messages[-1]["content"].split("Web context (JSON):\n", 1)[1])
    assert context["queries_used"] == ["python 3.13 release", "python 3.13 changelog"]
    assert "https://a.com/python-3.13-changelog" in [r["link"] for r in context["results"]]
    assert [doc["url"] for doc in context["scraped"]] == [link]


@pytest.mark.asyncio
async def test_extra_search_failure_cancels_sibling_scrape():
    link = "https://a.com/python-3.13-release"
    scrape_started = asyncio.Event()
    cancelled: list[str] = []

    class HangingStrategy(FakeStrategy):
        async def fetch(self, url: str) -> FetchedPage:
            scrape_started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(url)
                raise
            return FetchedPage(url=url, text="never")

    base_search = _search_fn()

    async def search(query: str) -> dict:
        if query == "python 3.13 changelog":
            await scrape_started.wait()
            raise SearchError("Search for 'python 3.13 changelog' failed with HTTP 503")
        return await base_search(query)

    chat = ScriptedChat(
        {
            "query_generation": [QUERY_PLAN],
            "coverage": [
                _not_enough(
                    scrape=[{"url": link, "focus": "release date"}],
                    additional_queries=["python 3.13 changelog"],
                )
            ],
        }
    )
    pipeline = _pipeline(chat, search_fn=search, strategy=HangingStrategy())

    with pytest.raises(PipelineStageError) as info:
        await pipeline.run("question", [])

    assert info.value.stage == "search"
    assert "HTTP 503" in str(info.value)
    assert cancelled == [link]
    assert await pipeline.scraper.cache.size() == 0


@pytest.mark.asyncio
async def test_empty_query_list_searches_with_keyword_fallback():
    chat = ScriptedChat(
        {"query_generation": ['{"standalone": "weather today", "queries": []}'], "coverage": ['{"enough": true}']}
    )
    search = _search_fn()

    messages = await _pipeline(chat, search_fn=search).run("weather today??", [])

    assert search.calls == ["weather today", "site:wikipedia.org weather today"]
    assert messages[-1]["content"].startswith("Question: weather today??\n\nWeb context (JSON):\n")


@pytest.mark.asyncio
async def test_no_keywords_answers_from_history_only():
    chat = ScriptedChat({"query_generation": ['{"standalone": "Is it ok?", "queries": []}']})
    search = _search_fn()

    messages = await _pipeline(chat, search_fn=search).run("Is it ok?", [{"role": "user", "content": "earlier"}])

    assert messages == [{"role": "user", "content": "earlier"}, {"role": "user", "content": "Is it ok?"}]
    assert search.calls == []


@pytest.mark.asyncio
async def test_search_failure_names_the_stage():
    async def failing_search(query: str) -> dict:
        raise SearchError("Search for 'x' failed with HTTP 500")

    chat = ScriptedChat({"query_generation": [QUERY_PLAN]})
    pipeline = _pipeline(chat, search_fn=failing_search)

    with pytest.raises(PipelineStageError) as info:
        await pipeline.run("question", [])

    assert info.value.stage == "search"
    message = describe_failure(info.value)
    assert "Web search failed" in message
    assert "HTTP 500" in message
    assert await pipeline.scraper.cache.size() == 0


@pytest.mark.asyncio
async def test_search_timeout_is_a_search_error(monkeypatch):
    monkeypatch.setattr(orchestrator_module.settings, "search_timeout_seconds", 0.01)

    async def hanging_search(query: str) -> dict:
        await asyncio.sleep(5)
        return {}

    chat = ScriptedChat({"query_generation": [QUERY_PLAN]})
    with pytest.raises(PipelineStageError) as info:
        await _pipeline(chat, search_fn=hanging_search).run("question", [])
    assert isinstance(info.value.error, SearchError)
    assert "timed out" in str(info.value)


@pytest.mark.asyncio
async def test_run_search_and_stream_streams_answer():
    chat = ScriptedChat({"query_generation": [QUERY_PLAN], "coverage": ['{"enough": true}']})
    pipeline = _pipeline(chat)
    chunks: list[str] = []
    completed: list[bool] = []
    errors: list[BaseException] = []

    task = pipeline.run_search_and_stream(
        "question", [], chunks.append, lambda: completed.append(True), errors.append
    )
    await task

    assert "".join(chunks) == "Python 3.13 was released in October 2024."
    assert completed == [True]
    assert errors == []
    assert chat.streamed[0][-1]["content"].startswith("Question: question")


@pytest.mark.asyncio
async def test_run_search_and_stream_reports_failures():
    chat = ScriptedChat({"query_generation": [QUERY_PLAN]})

    async def failing_search(query: str) -> dict:
        raise SearchError("boom")

    pipeline = _pipeline(chat, search_fn=failing_search)
    errors: list[BaseException] = []
    completed: list[bool] = []

    await pipeline.run_search_and_stream("q", [], lambda _c: None, lambda: completed.append(True), errors.append)

    assert completed == []
    assert len(errors) == 1
    assert isinstance(errors[0], PipelineStageError)
    assert chat.streamed == []


@pytest.mark.asyncio
async def test_new_run_cancels_previous_silently():
    release = asyncio.Event()
    calls: list[str] = []

    async def slow_search(query: str) -> dict:
        calls.append(query)
        if len(calls) == 1:
            await release.wait()
        return {"organic": [{"title": "t", "link": "https://a.com", "snippet": "s"}]}

    chat = ScriptedChat({"query_generation": [QUERY_PLAN], "coverage": ['{"enough": true}']})
    pipeline = _pipeline(chat, search_fn=slow_search)
    first_events: list[str] = []
    second_done: list[bool] = []

    first = pipeline.run_search_and_stream(
        "first", [], first_events.append, lambda: first_events.append("complete"), first_events.append
    )
    while not calls:
        await asyncio.sleep(0)
    second = pipeline.run_search_and_stream(
        "second", [], lambda _c: None, lambda: second_done.append(True), lambda exc: second_done.append(False)
    )
    await second

    assert first.cancelled()
    assert first_events == []
    assert second_done == [True]
    assert pipeline.scraper.cancelled is False


@pytest.mark.asyncio
async def test_cancel_running_clears_cache_and_stops_scrapes():
    started = asyncio.Event()

    class HangingStrategy(FakeStrategy):
        async def fetch(self, url: str) -> FetchedPage:
            started.set()
            await asyncio.sleep(30)
            return FetchedPage(url=url, text="never")

    link = "https://a.com/python-3.13-release"
    chat = ScriptedChat(
        {"query_generation": [QUERY_PLAN], "coverage": [_not_enough(scrape=[{"url": link, "focus": "date"}])]}
    )
    pipeline = _pipeline(chat, strategy=HangingStrategy())
    await pipeline.scraper.cache.put(ScrapedDoc(url="https://stale.com", text="stale"))
    errors: list[BaseException] = []

    task = pipeline.run_search_and_stream("q", [], lambda _c: None, lambda: None, errors.append)
    await started.wait()

    assert pipeline.cancel_running() is True
    with pytest.raises(asyncio.CancelledError):
        await task

    assert errors == []
    assert pipeline.scraper.cancelled
    assert await pipeline.scraper.cache.size() == 0
    assert pipeline.cancel_running() is False
