"""
Calendar day keys.

Converts timestamps to canonical YYYY-MM-DD keys in local time and
normalizes the other date spellings emitted by usage reports.
"""

from datetime import datetime, timedelta
from typing import Optional

DATE_KEY_FORMAT = "%Y-%m-%d"

# Alternate spellings seen in daily reports, tried in order.
ALTERNATE_DATE_FORMATS = (
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%Y/%m/%d",
    "%Y.%m.%d",
)


def to_local(moment: datetime) -> datetime:
    """Return moment as a naive datetime in the local time zone."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)


def date_key_for(moment: datetime) -> str:
    """Canonical day key for the local calendar day containing moment."""
    return to_local(moment).strftime(DATE_KEY_FORMAT)


def date_from_key(key: str) -> Optional[datetime]:
    """Parse a canonical key into local midnight of that day.

    Returns:
        Naive local datetime at 00:00, or None if key is not canonical
    """
    try:
        return datetime.strptime(key, DATE_KEY_FORMAT)
    except ValueError:
        return None


def normalized_date_key(raw: str) -> Optional[str]:
    """Convert any supported date spelling into the canonical key.

    The canonical format is tried first and is lenient about zero padding,
    so "2024-1-5" normalizes to "2024-01-05".

    Args:
        raw: Date string as stored or reported

    Returns:
        Canonical key, or None if no supported format matches
    """
    for fmt in (DATE_KEY_FORMAT,) + ALTERNATE_DATE_FORMATS:
        try:
            parsed = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        return parsed.strftime(DATE_KEY_FORMAT)
    return None


def start_of_day(moment: datetime) -> datetime:
    return to_local(moment).replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_today(now: Optional[datetime] = None) -> datetime:
    return start_of_day(now or datetime.now())


def date_key_days_ago(days: int, now: Optional[datetime] = None) -> str:
    """Key of the local day `days` days before today."""
    return date_key_for(start_of_today(now) - timedelta(days=days))
