"""
Day and time-window matching for date rules.

All parsing helpers raise ValueError on malformed input; callers decide
whether that disables a single rule or is reported upstream.
"""
import re
from datetime import UTC, date, datetime, timedelta
from typing import FrozenSet, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.modules.adaptive.domain.models import DateRule


WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
TIME_PATTERN = re.compile(r'^(\d{1,2}):(\d{2})$')


def parse_time_of_day(value: Optional[str]) -> Optional[int]:
    """
    Parse a 24-hour ``HH:MM`` string into minutes since midnight.

    Args:
        value: Time string, or None/empty for "unbounded"

    Returns:
        Minutes since midnight, or None when the bound is absent

    Raises:
        ValueError: If the value is present but not a valid time

    Examples:
        >>> parse_time_of_day("11:30")
        690
        >>> parse_time_of_day(None) is None
        True
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    match = TIME_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid time of day: {value!r}")

    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time of day: {value!r}")
    return hour * 60 + minute


def parse_weekday(name: str) -> int:
    """
    Map a weekday name to ``date.weekday()`` numbering (Monday is 0).

    Matching is by the first three letters, case-insensitive, so "Mon",
    "monday" and "MONDAY" are all accepted.
    """
    key = name.strip().lower()[:3]
    if key not in WEEKDAYS:
        raise ValueError(f"Unknown weekday: {name!r}")
    return WEEKDAYS.index(key)


def parse_days(days: Iterable[str]) -> Optional[FrozenSet[int]]:
    """
    Parse a rule's day list.

    Returns None for "every day" (empty list). Unknown names are ignored as
    long as at least one valid weekday remains.
    """
    names = [day for day in days if day and day.strip()]
    if not names:
        return None

    parsed = set()
    for name in names:
        try:
            parsed.add(parse_weekday(name))
        except ValueError:
            continue

    if not parsed:
        raise ValueError(f"No valid weekday in {names!r}")
    return frozenset(parsed)


def parse_rule_date(value: Optional[str]) -> Optional[date]:
    if value is None or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as e:
        raise ValueError(f"Invalid date: {value!r}") from e


def load_zone(name: Optional[str]) -> ZoneInfo:
    """
    Load an IANA time zone, defaulting to UTC.

    Raises:
        ValueError: If the zone name is unknown
    """
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown time zone: {name!r}") from e


def to_local(now: datetime, zone: ZoneInfo) -> datetime:
    """Convert an instant to wall-clock time in ``zone``. Naive values are UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(zone)


def window_anchor_days(
    start: Optional[int],
    end: Optional[int],
    minute_of_day: int,
    today: date
) -> List[date]:
    """
    Return the calendar days whose window contains ``minute_of_day``.

    A window is anchored on the day it opens. For a window that wraps past
    midnight (start > end) the early-morning part belongs to the previous
    day. Bounds are inclusive.
    """
    if start is None and end is None:
        return [today]

    if start is not None and end is not None and start > end:
        anchors = []
        if minute_of_day >= start:
            anchors.append(today)
        if minute_of_day <= end:
            anchors.append(today - timedelta(days=1))
        return anchors

    if start is not None and minute_of_day < start:
        return []
    if end is not None and minute_of_day > end:
        return []
    return [today]


def rule_matches(rule: DateRule, local_now: datetime) -> bool:
    """
    Check whether a date rule covers a local wall-clock instant.

    Args:
        rule: Date rule to evaluate
        local_now: Current time already converted to the governing zone

    Returns:
        True if the day filter, date range and time window all match

    Raises:
        ValueError: If any of the rule's fields is malformed
    """
    days = parse_days(rule.days)
    start = parse_time_of_day(rule.start_time)
    end = parse_time_of_day(rule.end_time)
    start_date = parse_rule_date(rule.start_date)
    end_date = parse_rule_date(rule.end_date)

    minute_of_day = local_now.hour * 60 + local_now.minute

    for anchor in window_anchor_days(start, end, minute_of_day, local_now.date()):
        if days is not None and anchor.weekday() not in days:
            continue
        if start_date and anchor < start_date:
            continue
        if end_date and anchor > end_date:
            continue
        return True

    return False


def describe_rule_window(rule: DateRule) -> str:
    """Human-readable summary, e.g. ``"Mon, Tue: 11:00 - 14:00"``."""
    if rule.start_time and rule.end_time:
        time_range = f"{rule.start_time} - {rule.end_time}"
    else:
        time_range = rule.start_time or rule.end_time or "All day"

    days = ", ".join(rule.days) if rule.days else "Every day"
    text = f"{days}: {time_range}"

    if rule.start_date or rule.end_date:
        text += f" ({rule.start_date or '...'} to {rule.end_date or '...'})"
    return text


def month_start(now: datetime) -> datetime:
    """First instant of the UTC calendar month containing ``now``; scan quotas reset there."""
    now = now.astimezone(UTC) if now.tzinfo else now.replace(tzinfo=UTC)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
