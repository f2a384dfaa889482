from __future__ import annotations

from types import SimpleNamespace

import pytest

from webrag.services import language
from webrag.services.embeddings import EmbeddingRegistry, cosine
from webrag.services.language import detect_languages


class NamedEmbedder:
    def __init__(self, model_name: str):
        self.model_name = model_name

    async def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [[1.0] for _ in texts]


def test_registry_shares_one_service_per_model():
    registry = EmbeddingRegistry(
        {"en": "english", "it": "multi", "fr": "multi"},
        factory=NamedEmbedder,
    )
    assert registry.for_language("it") is registry.for_language("FR")
    assert registry.for_language("en") is not registry.for_language("it")
    assert registry.languages == ["en", "fr", "it"]


def test_registry_falls_back_to_english_then_any():
    registry = EmbeddingRegistry({"en": "english", "it": "multi"}, factory=NamedEmbedder)
    assert registry.for_language("xx").model_name == "english"
    assert registry.for_language(None).model_name == "english"

    no_english = EmbeddingRegistry({"it": "multi"}, factory=NamedEmbedder)
    assert no_english.for_language("ko").model_name == "multi"

    assert EmbeddingRegistry({}, factory=NamedEmbedder).for_language("en") is None


def test_cosine():
    assert cosine([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine([0.0, 0.0], [1.0, 1.0]) == 0.0
    assert cosine([], []) == 0.0


def test_detect_languages_normalizes_chinese_variants(monkeypatch):
    monkeypatch.setattr(
        language,
        "detect_langs",
        lambda _text: [
            SimpleNamespace(lang="zh-cn", prob=0.6),
            SimpleNamespace(lang="ja", prob=0.15),
            SimpleNamespace(lang="zh-tw", prob=0.25),
        ],
    )
    guesses = detect_languages("中文内容")
    assert [g.code for g in guesses] == ["zh", "ja"]
    assert guesses[0].confidence == pytest.approx(0.85)


def test_detect_languages_samples_prefix(monkeypatch):
    seen: list[str] = []

    def fake_detect(text):
        seen.append(text)
        return [SimpleNamespace(lang="en", prob=0.99)]

    monkeypatch.setattr(language, "detect_langs", fake_detect)
    detect_languages("a" * 50, sample_chars=10)
    assert seen == ["a" * 10]


def test_detect_languages_real_detector():
    guesses = detect_languages(
        "The quick brown fox jumps over the lazy dog while the farmer watches from the old wooden porch."
    )
    assert guesses
    assert guesses[0].code == "en"
    assert detect_languages("   ") == []
    assert detect_languages("12345 67890") == []


def test_registry_picks_first_supported_candidate():
    registry = EmbeddingRegistry({"en": "english", "nl": "multi"}, factory=NamedEmbedder)
    assert registry.pick_language(["af", "NL"], ["en"]) == "nl"
    assert registry.pick_language(["af"], ["nl", "en"]) == "nl"
    assert registry.pick_language(["af"], ["sw"]) == "en"
    assert registry.pick_language() == "en"
