"""
Hourly usage inference.

Samples report a cumulative cost at irregular instants, so the cost spent
inside each hour is unknown. Each sample's delta is spread over the time
elapsed since the previous sample in proportion to the seconds falling in
each hour, which keeps the hourly values summing to the total of the deltas.
"""

from datetime import datetime, timedelta
from typing import List, Sequence

from cost_pulse.storage.models import UsageSample, UsageSeriesPoint, UsageTool
from .dates import to_local

ONE_HOUR = timedelta(hours=1)


def infer_hourly_points(
    tool: UsageTool,
    samples: Sequence[UsageSample],
    start_of_day: datetime,
    end: datetime,
) -> List[UsageSeriesPoint]:
    """Distribute sample deltas into hour-of-day buckets.

    Args:
        tool: Tool the samples belong to
        samples: Same-day samples sorted by recorded_at ascending
        start_of_day: Local midnight of the day being drawn
        end: Last instant to cover; points run through the hour containing it

    Returns:
        One point per hour from 0 through end's hour, stamped at the start of
        the hour. Empty if there are no samples or start_of_day >= end.
    """
    start_of_day = to_local(start_of_day)
    end = to_local(end)
    if start_of_day >= end or not samples:
        return []

    hourly_totals = [0.0] * (end.hour + 1)
    cursor = start_of_day

    for sample in samples:
        current = max(to_local(sample.recorded_at), cursor)
        delta = max(0.0, sample.delta_cost)

        if delta > 0:
            if current > cursor:
                _spread(hourly_totals, delta, cursor, current)
            else:
                _add(hourly_totals, current.hour, delta)

        cursor = current

    return [
        UsageSeriesPoint(
            tool=tool,
            date=start_of_day.replace(hour=hour, minute=0, second=0, microsecond=0),
            cost=cost,
        )
        for hour, cost in enumerate(hourly_totals)
    ]


def _spread(hourly_totals: List[float], delta: float, start: datetime, end: datetime) -> None:
    # Seconds are real elapsed time; buckets are the local hour each slice starts in.
    start = start.astimezone()
    end = end.astimezone()
    total_seconds = (end - start).total_seconds()
    if total_seconds <= 0:
        _add(hourly_totals, start.hour, delta)
        return

    cursor = start
    while cursor < end:
        hour_start = cursor.replace(minute=0, second=0, microsecond=0)
        slice_end = min(end, (hour_start + ONE_HOUR).astimezone())
        slice_seconds = (slice_end - cursor).total_seconds()
        _add(hourly_totals, cursor.hour, delta * slice_seconds / total_seconds)
        cursor = slice_end


def _add(hourly_totals: List[float], hour: int, amount: float) -> None:
    # Hours past the end of the series are dropped.
    if 0 <= hour < len(hourly_totals):
        hourly_totals[hour] += amount
