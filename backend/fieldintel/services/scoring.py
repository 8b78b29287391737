"""Transcript confidence scoring.

Whisper's ``verbose_json`` response has no overall confidence, so the score is
a length heuristic. Scorers are plain callables and can be swapped per stage.
"""

from collections.abc import Callable

ConfidenceScorer = Callable[[str, int], float]

BASE_CONFIDENCE = 0.7
MAX_CONFIDENCE = 0.95


def count_words(text: str) -> int:
    """Whitespace-separated, non-empty tokens."""
    return len(text.split())


def length_confidence(text: str, word_count: int) -> float:
    """``min(0.95, 0.7 + word_count / 1000 * 0.2)``."""
    return min(MAX_CONFIDENCE, BASE_CONFIDENCE + (word_count / 1000) * 0.2)
