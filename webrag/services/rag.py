"""Chunking and embedding ranking of long scraped pages."""

from __future__ import annotations

import html
import re
from typing import Awaitable, Callable

from loguru import logger

from webrag.config import settings
from webrag.models.context import RAGChunk, ScrapedDoc
from webrag.services.embeddings import EmbeddingRegistry, cosine
from webrag.services.language import LanguageGuess, detect_languages

Translator = Callable[[str, str], Awaitable[str]]

_CODE_FENCE_RE = re.compile(r"```[^\n]*\n?|~~~[^\n]*\n?")
_INLINE_CODE_RE = re.compile(r"`([^`]*)`")
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_REF_LINK_RE = re.compile(r"\[([^\]]*)\]\[[^\]]*\]")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_EMPHASIS_RE = re.compile(r"(\*\*|__|\*|_|~~)(?=\S)(.+?)(?<=\S)\1")
_QUOTE_RE = re.compile(r"^\s{0,3}>\s?", re.MULTILINE)
_HTML_TAG_RE = re.compile(r"<[^>]+>")
_SPACES_RE = re.compile(r"[ \t]+")


def strip_markdown(text: str) -> str:
    text = _CODE_FENCE_RE.sub("", text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    text = _IMAGE_RE.sub(r"\1", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _REF_LINK_RE.sub(r"\1", text)
    text = _HEADING_RE.sub("", text)
    text = _QUOTE_RE.sub("", text)
    for _ in range(2):
        text = _EMPHASIS_RE.sub(r"\2", text)
    text = _HTML_TAG_RE.sub(" ", text)
    text = html.unescape(text)
    text = _SPACES_RE.sub(" ", text)
    return text.strip()


class WebRAG:
    """Splits a page into overlapping windows and ranks them against a focus query."""

    def __init__(
        self,
        registry: EmbeddingRegistry,
        *,
        chunk_chars: int,
        overlap_chars: int,
    ):
        if chunk_chars <= 0:
            raise ValueError("chunk_chars must be positive")
        self.registry = registry
        self.chunk_chars = chunk_chars
        self.overlap_chars = min(max(overlap_chars, 0), chunk_chars - 1)

    @classmethod
    def from_settings(cls, registry: EmbeddingRegistry | None = None) -> "WebRAG":
        chunk_chars = settings.rag_chunk_chars
        return cls(
            registry or EmbeddingRegistry.from_settings(),
            chunk_chars=chunk_chars,
            overlap_chars=round(chunk_chars * settings.rag_overlap_ratio),
        )

    def chunk(self, text: str) -> list[str]:
        if not text:
            return []
        step = self.chunk_chars - self.overlap_chars
        chunks: list[str] = []
        start = 0
        while start < len(text):
            chunks.append(text[start : start + self.chunk_chars])
            if start + self.chunk_chars >= len(text):
                break
            start += step
        return chunks

    async def top_chunks(
        self,
        full_text: str,
        query: str,
        url: str,
        *,
        top_k: int = 3,
        language: str | None = None,
        payload_is_markdown: bool = False,
    ) -> list[RAGChunk]:
        chunks = self.chunk(full_text)
        if not chunks or top_k <= 0:
            return []
        embedder = self.registry.for_language(language)
        if embedder is None:
            raise RuntimeError("No embedding model registered")

        if payload_is_markdown:
            query_input = strip_markdown(query) or query
            chunk_inputs = [strip_markdown(chunk) or chunk for chunk in chunks]
        else:
            query_input = query
            chunk_inputs = chunks

        vectors = await embedder.embed_texts([query_input, *chunk_inputs])
        if len(vectors) != len(chunks) + 1:
            raise RuntimeError(
                f"Embedding model returned {len(vectors)} vectors for {len(chunks) + 1} inputs"
            )
        query_vector = vectors[0]
        scored = [
            RAGChunk(text=chunk, source_url=url, chunk_index=index, score=cosine(query_vector, vector))
            for index, (chunk, vector) in enumerate(zip(chunks, vectors[1:]))
        ]
        scored.sort(key=lambda item: item.score, reverse=True)
        return scored[:top_k]


def excerpt_length(body_length: int, chunk_chars: int) -> int:
    return min(body_length // 8, chunk_chars)


def should_translate(
    doc_lang: LanguageGuess | None,
    query_lang: LanguageGuess | None,
    min_confidence: float,
) -> bool:
    if doc_lang is None or query_lang is None:
        return False
    if doc_lang.code == query_lang.code:
        return False
    return doc_lang.confidence >= min_confidence and query_lang.confidence >= min_confidence


async def distill_document(
    doc: ScrapedDoc,
    focus: str,
    *,
    rag: WebRAG,
    translate: Translator | None = None,
    trigger_chars: int | None = None,
    top_k: int | None = None,
    sample_chars: int | None = None,
    min_confidence: float | None = None,
) -> bool:
    """Replace a long document body with its best-matching chunks.

    Returns True when the document was distilled. Documents below the trigger
    length, failed documents, and documents whose ranking fails are left whole.
    """
    trigger_chars = settings.rag_trigger_chars if trigger_chars is None else trigger_chars
    top_k = settings.rag_top_k if top_k is None else top_k
    sample_chars = settings.rag_language_sample_chars if sample_chars is None else sample_chars
    min_confidence = (
        settings.rag_translate_min_confidence if min_confidence is None else min_confidence
    )

    body = doc.body
    focus = (focus or "").strip()
    if doc.error or not focus or len(body) < trigger_chars:
        return False

    doc_guesses = detect_languages(body, sample_chars=sample_chars)
    query_guesses = detect_languages(focus, sample_chars=sample_chars)
    doc_lang = doc_guesses[0] if doc_guesses else None
    query_lang = query_guesses[0] if query_guesses else None
    embedding_lang = rag.registry.pick_language(
        [guess.code for guess in doc_guesses],
        [guess.code for guess in query_guesses],
    )

    query = focus
    if translate is not None and should_translate(doc_lang, query_lang, min_confidence):
        try:
            translated = (await translate(focus, doc_lang.code)).strip()
            if translated:
                query = translated
        except Exception as exc:
            logger.warning(f"Focus translation to {doc_lang.code} failed for {doc.url}: {exc}")

    try:
        chunks = await rag.top_chunks(
            body,
            query,
            doc.url,
            top_k=top_k,
            language=embedding_lang,
            payload_is_markdown=doc.is_markdown,
        )
    except Exception as exc:
        logger.warning(f"RAG ranking failed for {doc.url}, keeping full body: {exc}")
        return False
    if not chunks:
        return False

    doc.rag_chunks = chunks
    doc.rag_query = query
    doc.rag_query_original = focus if query != focus else None
    doc.rag_doc_lang = doc_lang.code if doc_lang else None
    doc.rag_query_lang = query_lang.code if query_lang else None
    doc.replace_body(body[: excerpt_length(len(body), rag.chunk_chars)])
    logger.debug(
        f"Distilled {doc.url}: {len(body)} chars -> {len(chunks)} chunks "
        f"(doc={doc.rag_doc_lang}, query={doc.rag_query_lang})"
    )
    return True
