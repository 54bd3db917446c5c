"""Deterministic date resolution against an anchor date.

Absolute dates are read in the unit's locale; relative expressions
("yesterday", "3 days ago", "next Tuesday", "il y a 2 semaines",
"vor 3 Tagen") are resolved with real calendar arithmetic. Anything
ambiguous or unsupported resolves to ``None`` and is never guessed.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Optional, Tuple

RESOLVED_ABSOLUTE = "absolute"
RESOLVED_RELATIVE = "relative"
DURATION = "duration"
UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class DateResolution:
    value: Optional[str]
    kind: str
    duration: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.value is not None


MONTHS: Dict[str, int] = {
    # en
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3, "april": 4, "apr": 4,
    "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7, "august": 8, "aug": 8, "september": 9,
    "sep": 9, "sept": 9, "october": 10, "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
    # fr
    "janvier": 1, "janv": 1, "février": 2, "fevrier": 2, "févr": 2, "fevr": 2, "mars": 3, "avril": 4,
    "avr": 4, "mai": 5, "juin": 6, "juillet": 7, "juil": 7, "août": 8, "aout": 8, "septembre": 9,
    "octobre": 10, "novembre": 11, "décembre": 12, "decembre": 12, "déc": 12,
    # de
    "januar": 1, "jänner": 1, "februar": 2, "märz": 3, "maerz": 3, "mär": 3, "juni": 6, "juli": 7,
    "oktober": 10, "okt": 10, "dezember": 12, "dez": 12,
}

WEEKDAYS: Dict[str, int] = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3, "friday": 4, "saturday": 5, "sunday": 6,
    "lundi": 0, "mardi": 1, "mercredi": 2, "jeudi": 3, "vendredi": 4, "samedi": 5, "dimanche": 6,
    "montag": 0, "dienstag": 1, "mittwoch": 2, "donnerstag": 3, "freitag": 4, "samstag": 5, "sonntag": 6,
}

NUMBER_WORDS: Dict[str, int] = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6, "seven": 7,
    "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12, "a couple of": 2,
    "un": 1, "une": 1, "deux": 2, "trois": 3, "quatre": 4, "cinq": 5, "sept": 7, "huit": 8,
    "neuf": 9, "dix": 10, "onze": 11, "douze": 12,
    "ein": 1, "eine": 1, "einem": 1, "einer": 1, "einen": 1, "zwei": 2, "drei": 3, "vier": 4,
    "fünf": 5, "sechs": 6, "sieben": 7, "acht": 8, "neun": 9, "zehn": 10, "elf": 11, "zwölf": 12,
}

_UNIT_PATTERNS: Tuple[Tuple[str, str], ...] = (
    ("day", r"days?|jours?|tage?n?"),
    ("week", r"weeks?|semaines?|wochen?"),
    ("month", r"months?|mois|monate?n?"),
    ("year", r"years?|ans?|années?|jahre?n?"),
)
_UNIT_RE = "|".join(f"(?P<{name}>{pattern})" for name, pattern in _UNIT_PATTERNS)
_NUMBER_RE = r"(?P<num>\d{1,3}|" + "|".join(
    sorted((re.escape(word) for word in NUMBER_WORDS), key=len, reverse=True)
) + r")"

_FIXED_OFFSETS: Dict[str, int] = {
    "today": 0, "this morning": 0, "this afternoon": 0, "this evening": 0, "tonight": 0,
    "aujourd'hui": 0, "aujourd’hui": 0, "ce matin": 0, "cet après-midi": 0, "ce soir": 0,
    "heute": 0, "heute morgen": 0, "heute früh": 0, "heute abend": 0,
    "yesterday": -1, "last night": -1, "yesterday evening": -1, "yesterday morning": -1,
    "hier": -1, "hier soir": -1, "hier matin": -1, "gestern": -1, "gestern abend": -1,
    "day before yesterday": -2, "the day before yesterday": -2, "avant-hier": -2, "vorgestern": -2,
    "tomorrow": 1, "demain": 1, "morgen": 1,
    "day after tomorrow": 2, "the day after tomorrow": 2, "après-demain": 2, "übermorgen": 2,
}

_SINCE_PREFIX = re.compile(r"^(?:ever\s+)?(?:since|depuis|seit)\s+")
_NOISE_PREFIX = re.compile(
    r"^(?:started|starting|start|began|from|on|as of|à partir d[e']|a partir d[e']|dès|le|am|ab|vom|beginning)\s+"
)
_APPROXIMATE = re.compile(
    r"\b(?:about|around|approximately|roughly|maybe|probably|environ|vers|à peu près|"
    r"peut-être|etwa|ungefähr|circa|vielleicht)\b|\b(?:approx|ca)\."
)
_ISO = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})(?:[t\s].*)?$")
_NUMERIC = re.compile(r"^(\d{1,2})[./-](\d{1,2})[./-](\d{4}|\d{2})$")
_NUMERIC_NO_YEAR = re.compile(r"^(\d{1,2})\.(\d{1,2})\.?$")
_DAY_MONTH = re.compile(r"^(\d{1,2})(?:st|nd|rd|th|er|\.)?\s+(?:of\s+)?([^\W\d_]+)\.?,?(?:\s+(\d{4}))?$")
_MONTH_DAY = re.compile(r"^([^\W\d_]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?(?:\s+(\d{4}))?$")
_AGO = re.compile(rf"^{_NUMBER_RE}\s+(?:{_UNIT_RE})\s+ago$")
_IL_Y_A = re.compile(rf"^il y a\s+{_NUMBER_RE}\s+(?:{_UNIT_RE})$")
_VOR = re.compile(rf"^vor\s+{_NUMBER_RE}\s+(?:{_UNIT_RE})$")
_IN_FUTURE = re.compile(rf"^(?:in|dans)\s+{_NUMBER_RE}\s+(?:{_UNIT_RE})$")
_BARE_DURATION = re.compile(rf"^(?:for|pendant|für|depuis|seit)?\s*{_NUMBER_RE}\s+(?:{_UNIT_RE})$")
_WEEKDAY_WORD = r"(?P<weekday>" + "|".join(WEEKDAYS) + r")"
_NEXT_WEEKDAY = (
    re.compile(rf"^(?:next|coming|this coming|nächsten|nächster|kommenden|kommender)\s+{_WEEKDAY_WORD}$"),
    re.compile(rf"^{_WEEKDAY_WORD}\s+(?:prochain|qui vient)$"),
)
_LAST_WEEKDAY = (
    re.compile(rf"^(?:last|past|previous|letzten|letzter|vergangenen|vergangener)\s+{_WEEKDAY_WORD}$"),
    re.compile(rf"^{_WEEKDAY_WORD}\s+(?:dernier|passé)$"),
)
_LEADING_WEEKDAY = re.compile(rf"^{_WEEKDAY_WORD},?\s+(?=\d|[^\W\d_]+\s+\d)")


def _number(token: str) -> Optional[int]:
    if token.isdigit():
        return int(token)
    return NUMBER_WORDS.get(token)


def _unit_name(match: "re.Match") -> str:
    for name, _ in _UNIT_PATTERNS:
        if match.group(name):
            return name
    raise ValueError("no unit matched")


def shift_months(anchor: date, months: int) -> date:
    """Calendar month shift, clamping the day to the target month's length."""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _offset(anchor: date, amount: int, unit: str) -> date:
    if unit == "day":
        return anchor + timedelta(days=amount)
    if unit == "week":
        return anchor + timedelta(weeks=amount)
    if unit == "month":
        return shift_months(anchor, amount)
    return shift_months(anchor, 12 * amount)


def next_weekday(anchor: date, weekday: int) -> date:
    """First ``weekday`` strictly after ``anchor``."""
    days = (weekday - anchor.weekday()) % 7 or 7
    return anchor + timedelta(days=days)


def previous_weekday(anchor: date, weekday: int) -> date:
    """Most recent ``weekday`` strictly before ``anchor``."""
    days = (anchor.weekday() - weekday) % 7 or 7
    return anchor - timedelta(days=days)


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _expand_year(year: int, anchor: date) -> int:
    if year >= 100:
        return year
    pivot = anchor.year % 100 + 1
    return 2000 + year if year <= pivot else 1900 + year


def _nearest_year(month: int, day: int, anchor: date) -> Optional[date]:
    """Pick the year that puts a year-less date closest to the anchor."""
    options = [
        candidate
        for candidate in (_safe_date(anchor.year + delta, month, day) for delta in (-1, 0, 1))
        if candidate is not None
    ]
    if not options:
        return None
    return min(options, key=lambda candidate: abs((candidate - anchor).days))


def _day_first(language: str) -> Optional[bool]:
    """True for day-first locales, False for month-first, None when unknown."""
    tag = language.replace("_", "-").lower()
    if tag in ("en-us", "en-ph"):
        return False
    if tag == "en":
        return None
    return True


def _resolve_numeric(first: int, second: int, year: int, language: str, anchor: date) -> Optional[date]:
    year = _expand_year(year, anchor)
    day_first = _day_first(language)
    if day_first is None:
        if first > 12:
            day_first = True
        elif second > 12:
            day_first = False
        elif first == second:
            day_first = True
        else:
            return None
    if day_first:
        return _safe_date(year, second, first)
    return _safe_date(year, first, second)


def _resolve_absolute(text: str, language: str, anchor: date) -> Optional[date]:
    match = _ISO.match(text)
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    match = _NUMERIC.match(text)
    if match:
        return _resolve_numeric(int(match.group(1)), int(match.group(2)), int(match.group(3)), language, anchor)

    match = _NUMERIC_NO_YEAR.match(text)
    if match and _day_first(language):
        return _nearest_year(int(match.group(2)), int(match.group(1)), anchor)

    text = _LEADING_WEEKDAY.sub("", text)
    match = _DAY_MONTH.match(text)
    if match and match.group(2) in MONTHS:
        day, month = int(match.group(1)), MONTHS[match.group(2)]
        if match.group(3):
            return _safe_date(int(match.group(3)), month, day)
        return _nearest_year(month, day, anchor)

    match = _MONTH_DAY.match(text)
    if match and match.group(1) in MONTHS:
        month, day = MONTHS[match.group(1)], int(match.group(2))
        if match.group(3):
            return _safe_date(int(match.group(3)), month, day)
        return _nearest_year(month, day, anchor)
    return None


def _resolve_relative(text: str, anchor: date) -> Optional[date]:
    if text in _FIXED_OFFSETS:
        return anchor + timedelta(days=_FIXED_OFFSETS[text])

    for pattern, sign in ((_AGO, -1), (_IL_Y_A, -1), (_VOR, -1), (_IN_FUTURE, 1)):
        match = pattern.match(text)
        if match:
            amount = _number(match.group("num"))
            if amount is None:
                return None
            return _offset(anchor, sign * amount, _unit_name(match))

    for pattern in _NEXT_WEEKDAY:
        match = pattern.match(text)
        if match:
            return next_weekday(anchor, WEEKDAYS[match.group("weekday")])
    for pattern in _LAST_WEEKDAY:
        match = pattern.match(text)
        if match:
            return previous_weekday(anchor, WEEKDAYS[match.group("weekday")])
    return None


def _clean(text: str) -> str:
    cleaned = text.strip().lower()
    cleaned = re.sub(r"\s+", " ", cleaned)
    return cleaned.strip(" .,;:!")


def resolve_date(text: Optional[str], anchor: date, language: str = "en") -> DateResolution:
    """Resolve ``text`` to an ISO date string relative to ``anchor``.

    ``language`` is the unit's full tag (``en-US``, ``fr``, ``de-CH``) and
    decides the order of numeric day/month fields.
    """
    if text is None or not text.strip():
        return DateResolution(None, UNRESOLVED)
    cleaned = _clean(text)
    if _APPROXIMATE.search(cleaned):
        return DateResolution(None, UNRESOLVED)

    since = bool(_SINCE_PREFIX.match(cleaned))
    body = _SINCE_PREFIX.sub("", cleaned)
    body = _NOISE_PREFIX.sub("", body).strip()

    duration = _BARE_DURATION.match(body)
    if duration:
        amount = _number(duration.group("num"))
        if since and amount is not None:
            # "since 3 days" / "depuis 3 jours": onset is that long ago
            resolved = _offset(anchor, -amount, _unit_name(duration))
            return DateResolution(resolved.isoformat(), RESOLVED_RELATIVE, duration=body)
        return DateResolution(None, DURATION, duration=text.strip())

    absolute = _resolve_absolute(body, language, anchor)
    if absolute is not None:
        return DateResolution(absolute.isoformat(), RESOLVED_ABSOLUTE)

    relative = _resolve_relative(body, anchor)
    if relative is not None:
        return DateResolution(relative.isoformat(), RESOLVED_RELATIVE)
    return DateResolution(None, UNRESOLVED)


__all__ = [
    "DateResolution",
    "next_weekday",
    "previous_weekday",
    "resolve_date",
    "shift_months",
]
