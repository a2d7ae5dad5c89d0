"""
Data models for storage layer.

Defines the tracked tools and the records persisted by the usage store.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from cost_pulse.core.dates import date_key_for


class UsageTool(Enum):
    """Cost-tracked command line assistants."""
    CLAUDE = "claude"
    CODEX = "codex"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def short_name(self) -> str:
        return _SHORT_NAMES[self]


_DISPLAY_NAMES = {
    UsageTool.CLAUDE: "Claude Code",
    UsageTool.CODEX: "Codex",
}

_SHORT_NAMES = {
    UsageTool.CLAUDE: "CC",
    UsageTool.CODEX: "Codex",
}


@dataclass(frozen=True)
class DailyTotal:
    """Total cost reported by a tool for one calendar day.

    The date key may be canonical (YYYY-MM-DD) or a raw form that still
    needs normalization.
    """
    date_key: str
    cost: float


@dataclass(frozen=True)
class UsageSample:
    """Point-in-time observation of a tool's running total for the day.

    delta_cost is the non-negative increase over the previous sample of the
    same tool and day.
    """
    tool: UsageTool
    recorded_at: datetime
    total_cost: float
    delta_cost: float
    date_key: Optional[str] = None

    def __post_init__(self):
        """Derive the date key from recorded_at when not given."""
        if self.date_key is None:
            object.__setattr__(self, "date_key", date_key_for(self.recorded_at))


@dataclass(frozen=True)
class DailyRollup:
    """Authoritative total cost for one tool on one calendar day."""
    date_key: str
    tool: UsageTool
    total_cost: float
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class UsageSeriesPoint:
    """One point of an hourly or daily cost series."""
    tool: UsageTool
    date: datetime
    cost: float


@dataclass(frozen=True)
class ToolTotal:
    """Reconciled total for one tool on one day."""
    tool: UsageTool
    total_cost: float
