"""Lexical matching of extracted values against source text."""

from __future__ import annotations

import difflib
import re
import unicodedata
from typing import Iterable, List, Optional

_NUMBER_UNIT = re.compile(r"(\d)\s+(?=[^\W\d_])")
_DECIMAL_COMMA = re.compile(r"(\d),(\d)")
_TOKEN = re.compile(r"[^\W_]+(?:[.,/'-][^\W_]+)*")

DEFAULT_COVERAGE = 0.8
CLOSE_MATCH_CUTOFF = 0.85
MIN_FUZZY_LENGTH = 4


def fold(text: str) -> str:
    """Case-fold, strip accents, unify decimal separators and glue numbers to units."""
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    stripped = stripped.replace("’", "'").replace("µ", "u").replace("μ", "u")
    stripped = _DECIMAL_COMMA.sub(r"\1.\2", stripped)
    stripped = _NUMBER_UNIT.sub(r"\1", stripped)
    return re.sub(r"\s+", " ", stripped).strip()


def tokens(text: str) -> List[str]:
    return _TOKEN.findall(fold(text))


def _token_found(token: str, haystack: List[str]) -> bool:
    if token in haystack:
        return True
    if len(token) < MIN_FUZZY_LENGTH or any(char.isdigit() for char in token):
        return False
    return bool(difflib.get_close_matches(token, haystack, n=1, cutoff=CLOSE_MATCH_CUTOFF))


def coverage(value: str, text: str) -> float:
    """Share of ``value`` tokens present in ``text`` (close matches allowed for words)."""
    needle = tokens(value)
    if not needle:
        return 0.0
    haystack = tokens(text)
    found = sum(1 for token in needle if _token_found(token, haystack))
    return found / len(needle)


def appears_in(value: Optional[str], text: str, threshold: float = DEFAULT_COVERAGE) -> bool:
    if value is None or not str(value).strip() or not text:
        return False
    folded_value = fold(str(value))
    if re.fullmatch(r"\d+(?:\.\d+)?", folded_value):
        return number_in(folded_value, text)
    # fold() glues units to their numbers, so a unit may follow a digit
    before = r"(?<![\w.])" if folded_value[0].isdigit() else r"(?<![^\W\d_])"
    if re.search(rf"{before}{re.escape(folded_value)}(?!\w)", fold(text)):
        return True
    return coverage(str(value), text) >= threshold


def number_in(number: str, text: str) -> bool:
    """True when ``number`` occurs as a standalone numeral in ``text``."""
    folded = fold(number)
    pattern = rf"(?<![\d.]){re.escape(folded)}(?![\d]|\.\d)"
    return re.search(pattern, fold(text)) is not None


def best_snippet(values: Iterable[str], text: str, width: int = 160) -> str:
    """Sentence of ``text`` matching the most ``values``, trimmed to ``width``."""
    sentences = [part.strip() for part in re.split(r"(?<=[.!?\n])\s+", text) if part.strip()]
    if not sentences:
        return ""
    wanted = [value for value in values if value]
    scored = [
        (sum(1 for value in wanted if appears_in(value, sentence)), -position, sentence)
        for position, sentence in enumerate(sentences)
    ]
    hits, _, sentence = max(scored)
    if hits == 0:
        return ""
    return sentence if len(sentence) <= width else sentence[: width - 3].rstrip() + "..."


__all__ = ["appears_in", "best_snippet", "coverage", "fold", "number_in", "tokens"]
