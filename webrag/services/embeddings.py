from __future__ import annotations

import asyncio
import math
from typing import Any, Callable, Iterable, Protocol

from loguru import logger

from webrag.config import settings


class Embedder(Protocol):
    model_name: str

    async def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class LocalEmbeddingService:
    """sentence-transformers model loaded on first use and run off the event loop."""

    def __init__(self, model_name: str, batch_size: int | None = None):
        self.model_name = model_name
        self.batch_size = batch_size or int(settings.embedding_batch_size)
        self._model: Any | None = None
        self._lock = asyncio.Lock()

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        async with self._lock:
            if self._model is None:
                self._model = await asyncio.to_thread(self._load_model)
        return await asyncio.to_thread(self._embed_sync, texts)

    def _load_model(self) -> Any:
        from sentence_transformers import SentenceTransformer

        logger.info(f"Loading embedding model {self.model_name}")
        return SentenceTransformer(self.model_name)

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        vectors = self._model.encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return [list(map(float, row)) for row in vectors]


def cosine(a: list[float], b: list[float]) -> float:
    n = min(len(a), len(b))
    if n == 0:
        return 0.0
    dot = sum(a[i] * b[i] for i in range(n))
    norm_a = math.sqrt(sum(a[i] * a[i] for i in range(n)))
    norm_b = math.sqrt(sum(b[i] * b[i] for i in range(n)))
    denom = norm_a * norm_b
    return dot / denom if denom > 0 else 0.0


class EmbeddingRegistry:
    """Language code -> embedding model, with one service per distinct model."""

    def __init__(
        self,
        models: dict[str, str],
        *,
        factory: Callable[[str], Embedder] = LocalEmbeddingService,
    ):
        self._models = {code.lower(): name for code, name in models.items()}
        self._factory = factory
        self._services: dict[str, Embedder] = {}

    @classmethod
    def from_settings(cls) -> "EmbeddingRegistry":
        models = {
            code: settings.embedding_model_en if code == "en" else settings.embedding_model_multilingual
            for code in settings.embedding_language_list
        }
        return cls(models)

    @property
    def languages(self) -> list[str]:
        return sorted(self._models)

    def supports(self, language: str | None) -> bool:
        return bool(language) and language.lower() in self._models

    def resolve_language(self, language: str | None) -> str | None:
        """Registry language used for `language`: itself, then English, then any."""
        if self.supports(language):
            return language.lower()
        if "en" in self._models:
            return "en"
        return next(iter(self._models), None)

    def pick_language(self, *candidates: Iterable[str]) -> str | None:
        """First supported code across the candidate lists, in order.

        Each list is expected best-first. When nothing is supported the usual
        English-then-any fallback applies.
        """
        for codes in candidates:
            for code in codes:
                if self.supports(code):
                    return code.lower()
        return self.resolve_language(None)

    def for_language(self, language: str | None) -> Embedder | None:
        resolved = self.resolve_language(language)
        if resolved is None:
            return None
        model_name = self._models[resolved]
        service = self._services.get(model_name)
        if service is None:
            service = self._factory(model_name)
            self._services[model_name] = service
        return service
