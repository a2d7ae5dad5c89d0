"""
Store maintenance routine.

Repairs historical sample deltas and daily rollup date keys. In automatic
mode it runs at most once per interval; manual mode only runs when forced.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from cost_pulse.config.loader import MaintenanceMode
from cost_pulse.storage.errors import MaintenanceFailure
from cost_pulse.storage.models import UsageTool
from cost_pulse.storage.repository import UsageStore

logger = structlog.get_logger(__name__)

DEFAULT_INTERVAL = timedelta(hours=24)


@dataclass(frozen=True)
class MaintenanceReport:
    """Outcome of one maintenance run."""
    started_at: datetime
    deltas_updated: int = 0
    dates_normalized: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def message(self) -> str:
        if self.error is not None:
            return f"Maintenance failed: {self.error}"
        return (
            f"Maintenance complete. Updated {self.deltas_updated} snapshots, "
            f"normalized {self.dates_normalized} daily totals."
        )


class MaintenanceRunner:
    """Runs the store's repair procedures on demand or on a daily cadence."""

    def __init__(
        self,
        store: UsageStore,
        mode: MaintenanceMode = MaintenanceMode.AUTOMATIC,
        last_run_at: Optional[datetime] = None,
        interval: timedelta = DEFAULT_INTERVAL,
    ):
        self.store = store
        self.mode = mode
        self.last_run_at = last_run_at
        self.interval = interval
        self._running = threading.Lock()

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """Whether an unforced run would do any work right now."""
        if self.mode is not MaintenanceMode.AUTOMATIC:
            return False
        if self.last_run_at is None:
            return True
        return (now or datetime.now()) - self.last_run_at >= self.interval

    def run(self, force: bool = False, now: Optional[datetime] = None) -> Optional[MaintenanceReport]:
        """Backfill sample deltas and normalize rollup dates for every tool.

        Failures are reported, never raised, so a broken run does not stop
        later refresh cycles. The last run time only advances on success.

        Args:
            force: Run regardless of mode and interval
            now: Current time (defaults to now)

        Returns:
            Report of the run, or None if skipped
        """
        now = now or datetime.now()
        if not force and not self.is_due(now):
            return None
        if not self._running.acquire(blocking=False):
            return None

        try:
            deltas = self.store.backfill_sample_deltas()
            dates = sum(self.store.normalize_daily_rollup_dates(tool) for tool in UsageTool)
        except MaintenanceFailure as e:
            logger.error("maintenance_failed", error=str(e))
            return MaintenanceReport(started_at=now, error=str(e))
        finally:
            self._running.release()

        self.last_run_at = now
        report = MaintenanceReport(started_at=now, deltas_updated=deltas, dates_normalized=dates)
        logger.info("maintenance_complete", deltas_updated=deltas, dates_normalized=dates)
        return report
