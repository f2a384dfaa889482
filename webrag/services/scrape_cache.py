from __future__ import annotations

import asyncio

from webrag.models.context import ScrapedDoc


def cache_key(url: str) -> str:
    return url.strip().lower()


class RunScrapeCache:
    """URL -> ScrapedDoc map that lives for a single pipeline run."""

    def __init__(self):
        self._docs: dict[str, ScrapedDoc] = {}
        self._lock = asyncio.Lock()

    async def get(self, url: str) -> ScrapedDoc | None:
        async with self._lock:
            doc = self._docs.get(cache_key(url))
            return doc.model_copy(deep=True) if doc is not None else None

    async def put(self, doc: ScrapedDoc) -> None:
        async with self._lock:
            self._docs[cache_key(doc.url)] = doc.model_copy(deep=True)

    async def clear(self) -> None:
        async with self._lock:
            self._docs.clear()

    async def size(self) -> int:
        async with self._lock:
            return len(self._docs)
