"""
Utility functions for the dashboard API.

Row values come back from the store as ints, Decimals, numeric strings,
NULLs and datetime objects depending on the driver; the helpers here turn
them into the plain JSON types the views expect and compute the derived
metrics shown on the KPI tiles.
"""

import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional


# =============================================================================
# Scalar Normalisation
# =============================================================================

def to_int(value: Any) -> int:
    """Coerce a row value to int; NULL, NaN and garbage become 0."""
    if value is None:
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0
    return int(number)


def to_float(value: Any) -> float:
    """Coerce a row value (Decimal, str, NULL) to float, defaulting to 0.0."""
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def round1(value: Any) -> float:
    """Round half-up to one decimal place, the precision used for percentages."""
    return math.floor(to_float(value) * 10 + 0.5) / 10


def round2(value: Any) -> float:
    """Round half-up to two decimal places, the precision used for rates and amounts."""
    return math.floor(to_float(value) * 100 + 0.5) / 100


def round0(value: Any) -> int:
    """Round half-up to a whole number."""
    return int(math.floor(to_float(value) + 0.5))


def iso(value: Any) -> Optional[str]:
    """
    Format a timestamp or date as ISO-8601.

    Naive datetimes are UTC (that is how the store keeps them) and get a Z suffix.
    Strings pass through untouched, NULL stays None.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat(timespec="milliseconds") + "Z"
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def truncate(text: Optional[str], limit: int = 150) -> Optional[str]:
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + "..."


# =============================================================================
# Derived Metrics
# =============================================================================

def percentage(part: Any, whole: Any) -> float:
    """part / whole * 100 rounded to one decimal, 0 for an empty whole."""
    whole_value = to_float(whole)
    if whole_value <= 0:
        return 0.0
    return round1(to_float(part) / whole_value * 100)


def growth_rate(today: Any, yesterday: Any) -> float:
    """
    Day-over-day growth in percent.

    Returns 0 when both days are empty and 100 when only today has activity.
    """
    today_value = to_float(today)
    yesterday_value = to_float(yesterday)
    if yesterday_value == 0:
        return 100.0 if today_value > 0 else 0.0
    return round1((today_value - yesterday_value) / yesterday_value * 100)


def retention_rate(retained: Any, yesterday: Any) -> float:
    """Share of yesterday's active users also active today, 0 when yesterday is empty."""
    return percentage(retained, yesterday)


def activity_score(message_count: Any, is_recent_activity: bool, is_new_today: bool, has_pet: bool) -> int:
    """Display-only ranking heuristic for the thread list."""
    score = to_int(message_count)
    if is_recent_activity:
        score += 10
    if is_new_today:
        score += 5
    if has_pet:
        score += 3
    return score


# =============================================================================
# Local Calendar Helpers
# =============================================================================

def utc_now() -> datetime:
    """Current time as naive UTC, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def local_today(offset_minutes: int, now: Optional[datetime] = None) -> date:
    """The local calendar date for a naive UTC instant."""
    return ((now or utc_now()) + timedelta(minutes=offset_minutes)).date()


def local_midnight_utc(day: date, offset_minutes: int) -> datetime:
    """Naive UTC instant at which the given local date begins."""
    return datetime.combine(day, time.min) - timedelta(minutes=offset_minutes)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC for storage; naive values are assumed UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
