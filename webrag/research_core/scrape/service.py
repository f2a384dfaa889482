from __future__ import annotations

import asyncio
import time

from loguru import logger

from webrag.config import settings
from webrag.models.context import ScrapedDoc
from webrag.models.errors import ConfigurationError
from webrag.research_core.models.interfaces import FetchedPage, ScrapeStrategy
from webrag.services.scrape_cache import RunScrapeCache
from webrag.tools import jina_reader, web_utils
from webrag.tools.browser_renderer import BrowserRenderer


class LocalRenderStrategy:
    """Render in headless Chromium and extract text from the printed page."""

    name = "local"
    uses_local_renderer = True

    def __init__(self, renderer: BrowserRenderer | None = None):
        self.renderer = renderer or BrowserRenderer()

    async def fetch(self, url: str) -> FetchedPage:
        return await self.renderer.render(url)

    async def aclose(self) -> None:
        await self.renderer.aclose()


class RemoteReaderStrategy:
    """Delegate extraction to the remote reader API."""

    name = "reader"
    uses_local_renderer = False

    async def fetch(self, url: str) -> FetchedPage:
        result = await jina_reader.read(url)
        return FetchedPage(url=url, title=result.title, markdown=result.markdown)

    async def aclose(self) -> None:
        return None


def build_strategy(mode: str | None = None) -> ScrapeStrategy:
    mode = (mode or settings.scraping_mode).strip().lower()
    if mode == "local":
        return LocalRenderStrategy()
    if mode == "reader":
        return RemoteReaderStrategy()
    raise ConfigurationError(f"Unknown scraping mode {mode!r}, expected 'local' or 'reader'")


class ScrapeService:
    """Concurrent page scraping with a renderer permit pool, cancellation and a run cache."""

    def __init__(
        self,
        strategy: ScrapeStrategy | None = None,
        *,
        max_concurrent: int | None = None,
        cache: RunScrapeCache | None = None,
    ):
        self.strategy = strategy or build_strategy()
        self.max_concurrent = max(int(max_concurrent or settings.local_render_max_concurrent), 1)
        self.cache = cache or RunScrapeCache()
        self._permits = asyncio.Semaphore(self.max_concurrent)
        self._cancelled = asyncio.Event()
        self._active_renders = 0
        self.peak_active_renders = 0

    @property
    def active_renders(self) -> int:
        return self._active_renders

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    async def reset(self) -> None:
        """Clear the cancellation flag and the run cache before a new run."""
        self._cancelled.clear()
        await self.cache.clear()

    async def aclose(self) -> None:
        await self.strategy.aclose()

    async def scrape(self, url: str) -> ScrapedDoc:
        """Scrape one URL. Raises on failure or cancellation."""
        cached = await self.cache.get(url)
        if cached is not None:
            logger.debug(f"Scrape cache hit for {url}")
            return cached

        if self.strategy.uses_local_renderer:
            async with self._permits:
                self._raise_if_cancelled()
                page = await self._fetch_counted(url)
        else:
            self._raise_if_cancelled()
            page = await self.strategy.fetch(url)

        body = page.body.strip()
        if not body:
            raise RuntimeError(f"No text extracted from {url}")
        doc = ScrapedDoc(
            url=url,
            source=web_utils.extract_domain(url),
            title=page.title,
            markdown=page.markdown,
            text=page.text if page.markdown is None else None,
        )
        await self.cache.put(doc)
        return doc

    async def _fetch_counted(self, url: str) -> FetchedPage:
        self._active_renders += 1
        self.peak_active_renders = max(self.peak_active_renders, self._active_renders)
        try:
            return await self.strategy.fetch(url)
        finally:
            self._active_renders -= 1

    def _raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise asyncio.CancelledError()

    async def _scrape_or_error(self, url: str) -> ScrapedDoc:
        started = time.monotonic()
        try:
            doc = await self.scrape(url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f"Scrape failed for {url}: {exc}")
            return ScrapedDoc(
                url=url,
                source=web_utils.extract_domain(url),
                error=str(exc) or exc.__class__.__name__,
            )
        logger.debug(
            f"Scraped {url} via {self.strategy.name} in "
            f"{int((time.monotonic() - started) * 1000)}ms ({len(doc.body)} chars)"
        )
        return doc

    async def scrape_urls(self, urls: list[str]) -> list[ScrapedDoc]:
        """Scrape a batch concurrently; per-URL failures become error-marked docs.

        If the service is cancelled while the batch runs, the batch raises
        `asyncio.CancelledError` and its partial results are discarded.
        """
        unique: list[str] = []
        seen: set[str] = set()
        for url in urls:
            key = url.strip().lower()
            if key and key not in seen:
                seen.add(key)
                unique.append(url.strip())
        if not unique:
            return []

        self._raise_if_cancelled()
        results = await asyncio.gather(
            *(self._scrape_or_error(url) for url in unique),
            return_exceptions=True,
        )
        if self.cancelled:
            raise asyncio.CancelledError()
        docs: list[ScrapedDoc] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            docs.append(result)
        return docs
