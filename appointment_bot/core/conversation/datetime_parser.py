"""
Date/time extraction from patient and assistant text.

Two layers:
- numeric day-first dates with a time ("30/08 at 14:00", "30/08/25 14h",
  "5/9 3pm"), the shape every offered slot label uses
- a natural-language fallback via dateparser ("next Monday at 10",
  "tomorrow afternoon"), future-preferring and timezone-aware
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional

from dateparser.search import search_dates

logger = logging.getLogger(__name__)

DEFAULT_DURATION = timedelta(minutes=60)

_NUMERIC = re.compile(
    r"\b(?P<day>\d{1,2})/(?P<month>\d{1,2})(?:/(?P<year>\d{4}|\d{2}))?\b"
    r"[^\d]{0,12}?"
    r"(?P<hour>\d{1,2})"
    r"(?:(?::(?P<minute>\d{2}))|(?P<hmark>\s*h(?:rs?|s)?)(?P<hminute>\d{2})?)?"
    r"\s*(?P<meridiem>am|pm|a\.m\.|p\.m\.)?",
    re.IGNORECASE,
)

_DAY_WORDS = re.compile(
    r"\b(today|tonight|tomorrow|monday|tuesday|wednesday|thursday|friday|"
    r"saturday|sunday|mon|tue|tues|wed|thu|thur|thurs|fri|sat|sun|next week|"
    r"january|february|march|april|june|july|august|september|october|"
    r"november|december|jan|feb|mar|apr|jun|jul|aug|sep|sept|oct|nov|dec)\b",
    re.IGNORECASE,
)
_TIME_SHAPE = re.compile(r"\d{1,2}(:\d{2}|\s*(am|pm|h\b))", re.IGNORECASE)


@dataclass(frozen=True)
class ParsedDateTime:
    """Result of a date/time extraction."""

    found: bool
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def not_found(cls) -> "ParsedDateTime":
        return cls(found=False)


def _now(tz: tzinfo) -> datetime:
    return datetime.now(timezone.utc).astimezone(tz)


def parse_numeric(
    text: str,
    tz: tzinfo,
    now: Optional[datetime] = None,
    duration: timedelta = DEFAULT_DURATION,
) -> ParsedDateTime:
    """
    Parse the first day-first numeric date followed by a time.

    A date without a year takes the current local year, or next year
    when that day has already passed. Two-digit years are 20xx.

    Args:
        text: Free text
        tz: Local timezone the date/time is expressed in
        now: Reference instant (defaults to current time)
        duration: Length used to compute end

    Returns:
        ParsedDateTime (found=False on any miss)
    """
    if not text:
        return ParsedDateTime.not_found()

    local_now = (now or _now(tz)).astimezone(tz)

    for match in _NUMERIC.finditer(text):
        minute_str = match.group("minute") or match.group("hminute")
        meridiem = (match.group("meridiem") or "").lower().replace(".", "")
        if not (minute_str or match.group("hmark") or meridiem):
            continue

        day, month = int(match.group("day")), int(match.group("month"))
        hour, minute = int(match.group("hour")), int(minute_str or 0)

        if meridiem:
            if not 1 <= hour <= 12:
                continue
            hour = hour % 12 + (12 if meridiem == "pm" else 0)

        year_str = match.group("year")
        if year_str:
            year = int(year_str) + (2000 if len(year_str) == 2 else 0)
        else:
            year = local_now.year

        try:
            start = datetime(year, month, day, hour, minute, tzinfo=tz)
        except ValueError:
            continue

        if not year_str and start.date() < local_now.date():
            try:
                start = start.replace(year=year + 1)
            except ValueError:
                continue

        return ParsedDateTime(found=True, start=start, end=start + duration)

    return ParsedDateTime.not_found()


def _looks_temporal(fragment: str) -> bool:
    """Reject dateparser matches on ordinary words ("may", "now", "3")."""
    return bool(_DAY_WORDS.search(fragment) or _TIME_SHAPE.search(fragment))


def parse(
    text: str,
    tz: tzinfo,
    now: Optional[datetime] = None,
    duration: timedelta = DEFAULT_DURATION,
) -> ParsedDateTime:
    """
    Extract a date/time anchor from free text.

    Numeric day-first dates win; otherwise the first natural-language
    expression dateparser finds is used.
    """
    numeric = parse_numeric(text, tz, now=now, duration=duration)
    if numeric.found or not text:
        return numeric

    local_now = (now or _now(tz)).astimezone(tz)
    try:
        results = search_dates(
            text,
            languages=["en"],
            settings={
                "TIMEZONE": str(tz),
                "RETURN_AS_TIMEZONE_AWARE": True,
                "PREFER_DATES_FROM": "future",
                "DATE_ORDER": "DMY",
                "RELATIVE_BASE": local_now.replace(tzinfo=None),
            },
        )
    except (ValueError, OverflowError) as e:
        logger.debug(f"dateparser failed on message: {e}")
        return ParsedDateTime.not_found()

    for fragment, moment in results or []:
        if not _looks_temporal(fragment):
            continue
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=tz)
        start = moment.astimezone(tz).replace(second=0, microsecond=0)
        return ParsedDateTime(found=True, start=start, end=start + duration)

    return ParsedDateTime.not_found()
