from __future__ import annotations

from dataclasses import dataclass

from langdetect import DetectorFactory, detect_langs
from langdetect.lang_detect_exception import LangDetectException

DetectorFactory.seed = 0

CODE_ALIASES = {
    "zh-cn": "zh",
    "zh-tw": "zh",
    "iw": "he",
    "nb": "no",
}


@dataclass(frozen=True, slots=True)
class LanguageGuess:
    code: str
    confidence: float


def detect_languages(
    text: str,
    *,
    sample_chars: int = 20_000,
    max_hypotheses: int = 3,
) -> list[LanguageGuess]:
    """Most likely languages of `text`, best first. Empty when undetectable."""
    snippet = text[:sample_chars].strip()
    if not snippet:
        return []
    try:
        hypotheses = detect_langs(snippet)
    except LangDetectException:
        return []
    guesses: dict[str, float] = {}
    for hypothesis in hypotheses:
        code = CODE_ALIASES.get(hypothesis.lang.lower(), hypothesis.lang.lower())
        guesses[code] = guesses.get(code, 0.0) + float(hypothesis.prob)
    ranked = sorted(guesses.items(), key=lambda item: item[1], reverse=True)
    return [LanguageGuess(code=code, confidence=prob) for code, prob in ranked[:max_hypotheses]]

