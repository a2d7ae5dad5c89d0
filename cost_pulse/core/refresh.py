"""
Refresh cycle and usage snapshot.

Pulls daily totals from the fetch collaborator into the store, then reads
the store back into display-ready series.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

import structlog

from cost_pulse.storage.models import (
    DailyTotal,
    ToolTotal,
    UsageSeriesPoint,
    UsageTool,
)
from cost_pulse.storage.repository import UsageStore
from .dates import date_from_key, date_key_days_ago, date_key_for, start_of_day
from .hourly import infer_hourly_points

logger = structlog.get_logger(__name__)

NO_TOOLS_MESSAGE = "Enable Claude Code or Codex in the configuration."

# Today plus the 29 days before it.
DAILY_SERIES_DAYS = 29


class FetchError(Exception):
    """Raised by fetchers when a tool's daily report cannot be obtained."""


class DailyTotalsFetcher(Protocol):
    """Source of per-day cost totals for a tool."""

    def fetch_daily_totals(self, tool: UsageTool) -> List[DailyTotal]:
        ...


@dataclass
class RefreshResult:
    """Outcome of one refresh cycle."""
    errors: Dict[UsageTool, str] = field(default_factory=dict)
    refreshed_at: Optional[datetime] = None
    skipped_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.errors and self.skipped_message is None

    @property
    def status_message(self) -> Optional[str]:
        if self.skipped_message:
            return self.skipped_message
        if not self.errors:
            return None
        return " | ".join(
            f"{tool.display_name}: {message}" for tool, message in self.errors.items()
        )


@dataclass
class UsageSnapshot:
    """Everything needed to draw the current usage view."""
    hourly_series: List[UsageSeriesPoint]
    daily_series: List[UsageSeriesPoint]
    tool_totals: List[ToolTotal]

    @property
    def combined_total(self) -> float:
        return sum(total.total_cost for total in self.tool_totals)


def refresh_usage(
    store: UsageStore,
    fetcher: DailyTotalsFetcher,
    tools: Sequence[UsageTool],
    now: Optional[datetime] = None,
) -> RefreshResult:
    """Fetch each tool's daily totals and record them.

    Rollups are replaced with the fetched totals, and today's total (when
    present) is appended as a new sample. A failure for one tool is recorded
    and does not stop the others.

    Args:
        store: Store receiving the totals
        fetcher: Source of daily totals
        tools: Tools to refresh
        now: Refresh instant (defaults to the current time)

    Returns:
        RefreshResult with per-tool errors
    """
    if not tools:
        return RefreshResult(skipped_message=NO_TOOLS_MESSAGE)

    now = now or datetime.now()
    today_key = date_key_for(now)
    result = RefreshResult()

    for tool in tools:
        try:
            totals = fetcher.fetch_daily_totals(tool)
            store.upsert_daily_totals(tool, totals)
            today_total = next((t for t in totals if t.date_key == today_key), None)
            if today_total is not None:
                store.insert_sample(tool, today_total.cost, now)
        except Exception as e:
            logger.warning("tool_refresh_failed", tool=tool.value, error=str(e))
            result.errors[tool] = str(e) or type(e).__name__

    if not result.errors:
        result.refreshed_at = now
    return result


def load_usage_snapshot(
    store: UsageStore,
    tools: Sequence[UsageTool],
    now: Optional[datetime] = None,
) -> UsageSnapshot:
    """Read today's hourly curve, the 30 day series and today's totals.

    Today's total for a tool is its rollup when one exists, otherwise the
    latest sample of the day, otherwise zero.
    """
    now = now or datetime.now()
    day_start = start_of_day(now)
    today_key = date_key_for(now)

    hourly: List[UsageSeriesPoint] = []
    for tool in tools:
        samples = sorted(store.fetch_samples(tool, day_start, now), key=lambda s: s.recorded_at)
        hourly.extend(infer_hourly_points(tool, samples, day_start, now))

    daily = []
    for rollup in store.fetch_daily_rollups(date_key_days_ago(DAILY_SERIES_DAYS, now)):
        date = date_from_key(rollup.date_key)
        if rollup.tool in tools and date is not None:
            daily.append(UsageSeriesPoint(tool=rollup.tool, date=date, cost=rollup.total_cost))

    totals = []
    for tool in tools:
        total = store.daily_total(today_key, tool)
        if total is None:
            sample = store.latest_sample(today_key, tool)
            total = sample.total_cost if sample else 0.0
        totals.append(ToolTotal(tool=tool, total_cost=total))

    return UsageSnapshot(
        hourly_series=sorted(hourly, key=lambda p: p.date),
        daily_series=daily,
        tool_totals=totals,
    )
