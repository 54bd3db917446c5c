"""
Date resolution against an anchor date (2026-02-26 is a Thursday).
"""
from datetime import date

import pytest

from clinex.normalization.dates import (
    DURATION,
    RESOLVED_ABSOLUTE,
    RESOLVED_RELATIVE,
    UNRESOLVED,
    next_weekday,
    previous_weekday,
    resolve_date,
    shift_months,
)

ANCHOR = date(2026, 2, 26)


@pytest.mark.parametrize(
    "text, language, expected",
    [
        ("yesterday", "en", "2026-02-25"),
        ("since yesterday", "en", "2026-02-25"),
        ("Today", "en", "2026-02-26"),
        ("3 days ago", "en", "2026-02-23"),
        ("a week ago", "en", "2026-02-19"),
        ("two months ago", "en", "2025-12-26"),
        ("in 2 weeks", "en", "2026-03-12"),
        ("next Tuesday", "en", "2026-03-03"),
        ("next Thursday", "en", "2026-03-05"),
        ("last Monday", "en", "2026-02-23"),
        ("hier", "fr", "2026-02-25"),
        ("il y a 2 semaines", "fr", "2026-02-12"),
        ("mardi prochain", "fr", "2026-03-03"),
        ("vor 3 Tagen", "de", "2026-02-23"),
        ("gestern", "de", "2026-02-25"),
        ("nächsten Montag", "de", "2026-03-02"),
    ],
)
def test_relative_expressions(text, language, expected):
    resolution = resolve_date(text, ANCHOR, language)
    assert resolution.value == expected
    assert resolution.kind == RESOLVED_RELATIVE


@pytest.mark.parametrize(
    "text, language, expected",
    [
        ("2026-03-04", "en", "2026-03-04"),
        ("03/04/2026", "fr", "2026-04-03"),
        ("03/04/2026", "en-US", "2026-03-04"),
        ("13/04/2026", "en", "2026-04-13"),
        ("04.03.26", "de", "2026-03-04"),
        ("3 mars 2026", "fr", "2026-03-03"),
        ("le 3 mars", "fr", "2026-03-03"),
        ("am 3. März", "de", "2026-03-03"),
        ("March 3rd", "en", "2026-03-03"),
        ("Monday, March 2", "en", "2026-03-02"),
        ("12.03.", "de", "2026-03-12"),
        # nearest year to the anchor
        ("December 20", "en", "2025-12-20"),
    ],
)
def test_absolute_dates(text, language, expected):
    resolution = resolve_date(text, ANCHOR, language)
    assert resolution.value == expected
    assert resolution.kind == RESOLVED_ABSOLUTE


@pytest.mark.parametrize(
    "text, language",
    [
        ("03/04/2026", "en"),
        ("31/02/2026", "fr"),
        ("about a week ago", "en"),
        ("environ 3 jours", "fr"),
        ("ca. 2 Wochen", "de"),
        ("a while back", "en"),
        ("", "en"),
        (None, "en"),
    ],
)
def test_unresolved(text, language):
    resolution = resolve_date(text, ANCHOR, language)
    assert resolution.value is None
    assert not resolution.resolved
    assert resolution.kind == UNRESOLVED


def test_bare_duration_is_not_a_date():
    resolution = resolve_date("for 3 days", ANCHOR)
    assert resolution.kind == DURATION
    assert resolution.value is None
    assert resolution.duration == "for 3 days"


@pytest.mark.parametrize("text, language", [("since 3 days", "en"), ("depuis 3 jours", "fr"), ("seit drei Tagen", "de")])
def test_since_duration_resolves_to_onset(text, language):
    resolution = resolve_date(text, ANCHOR, language)
    assert resolution.value == "2026-02-23"
    assert resolution.kind == RESOLVED_RELATIVE


def test_calendar_arithmetic():
    assert shift_months(date(2026, 3, 31), -1) == date(2026, 2, 28)
    assert shift_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert shift_months(date(2026, 1, 15), -2) == date(2025, 11, 15)
    assert resolve_date("1 month ago", date(2026, 3, 31)).value == "2026-02-28"
    assert resolve_date("in 1 year", date(2024, 2, 29)).value == "2025-02-28"


def test_weekday_helpers_are_strict():
    thursday = ANCHOR
    assert next_weekday(thursday, 3) == date(2026, 3, 5)
    assert previous_weekday(thursday, 3) == date(2026, 2, 19)
    assert next_weekday(thursday, 4) == date(2026, 2, 27)
