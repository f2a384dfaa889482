from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol


ScrapingMode = Literal["local", "reader"]


@dataclass(slots=True)
class FetchedPage:
    url: str
    title: str | None = None
    markdown: str | None = None
    text: str | None = None

    @property
    def body(self) -> str:
        return self.markdown if self.markdown is not None else (self.text or "")


class ScrapeStrategy(Protocol):
    name: ScrapingMode
    uses_local_renderer: bool

    async def fetch(self, url: str) -> FetchedPage: ...

    async def aclose(self) -> None: ...
