from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable


class PipelineStage(str, Enum):
    GENERATING_QUERIES = "generating_queries"
    ANALYZING_RESULTS = "analyzing_results"
    SCRAPING = "scraping"


@dataclass
class WebStatus:
    stage: PipelineStage
    urls: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"stage": self.stage.value}
        if self.stage == PipelineStage.SCRAPING:
            data["urls"] = list(self.urls)
        return data


def generating_queries() -> WebStatus:
    return WebStatus(stage=PipelineStage.GENERATING_QUERIES)


def analyzing_results() -> WebStatus:
    return WebStatus(stage=PipelineStage.ANALYZING_RESULTS)


def scraping(urls: list[str]) -> WebStatus:
    return WebStatus(stage=PipelineStage.SCRAPING, urls=list(urls))


StatusCallback = Callable[[WebStatus], None]


@dataclass
class HistoryMessage:
    """One persisted conversation turn."""

    role: str
    content: str
    timestamp: datetime | None = None

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}
