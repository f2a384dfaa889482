from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    """Models serialized into prompts use the camelCase wire names."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class WebResult(_WireModel):
    title: str = ""
    snippet: str = ""
    link: str
    source: str = ""
    date: str | None = None


class RAGChunk(_WireModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    text: str
    source_url: str = Field(alias="sourceURL")
    chunk_index: int = Field(alias="chunkIndex")
    score: float


class ScrapedDoc(_WireModel):
    url: str
    source: str = ""
    title: str | None = None
    markdown: str | None = None
    text: str | None = None
    error: str | None = None
    rag_chunks: list[RAGChunk] | None = Field(default=None, alias="ragChunks")
    rag_query: str | None = Field(default=None, alias="ragQuery")
    rag_query_original: str | None = Field(default=None, alias="ragQueryOriginal")
    rag_doc_lang: str | None = Field(default=None, alias="ragDocLang")
    rag_query_lang: str | None = Field(default=None, alias="ragQueryLang")

    @property
    def body(self) -> str:
        return self.markdown if self.markdown is not None else (self.text or "")

    @property
    def is_markdown(self) -> bool:
        return self.markdown is not None

    def replace_body(self, value: str) -> None:
        if self.markdown is not None:
            self.markdown = value
        else:
            self.text = value


class WebContext(_WireModel):
    queries_used: list[str] = Field(default_factory=list)
    results: list[WebResult] = Field(default_factory=list)
    answer_box: dict[str, Any] | None = Field(default=None, alias="answerBox")
    knowledge_graph: dict[str, Any] | None = Field(default=None, alias="knowledgeGraph")
    people_also_ask: list[dict[str, Any]] | None = Field(default=None, alias="peopleAlsoAsk")
    top_stories: list[dict[str, Any]] | None = Field(default=None, alias="topStories")
    scraped: list[ScrapedDoc] | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def serialized_size(self) -> int:
        return len(self.to_json().encode("utf-8"))


class ScrapePlan(BaseModel):
    url: str
    focus: str | None = None


class RefinementDecision(BaseModel):
    enough: bool = True
    scrape: list[ScrapePlan] = Field(default_factory=list)
    scrape_links: list[str] = Field(default_factory=list)
    additional_queries: list[str] = Field(default_factory=list)

    @property
    def wants_more(self) -> bool:
        return bool(self.scrape or self.scrape_links or self.additional_queries)

    def scrape_plans(self) -> list[ScrapePlan]:
        return [*self.scrape, *(ScrapePlan(url=url) for url in self.scrape_links)]


class QueryPlan(BaseModel):
    standalone: str
    queries: list[str] = Field(default_factory=list)
    fallback: bool = False
