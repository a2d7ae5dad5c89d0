"""
Periodic refresh.

Runs the refresh cycle on the configured cadence in a background thread,
preceded by the maintenance routine whenever it is due.
"""

import threading
from datetime import datetime
from typing import Optional

import structlog

from cost_pulse.config.loader import AppConfig
from cost_pulse.storage.repository import UsageStore
from .maintenance import MaintenanceRunner
from .refresh import DailyTotalsFetcher, RefreshResult, refresh_usage

logger = structlog.get_logger(__name__)


class RefreshLoop:
    """Background refresh of every enabled tool."""

    def __init__(
        self,
        store: UsageStore,
        fetcher: DailyTotalsFetcher,
        config: AppConfig,
        maintenance: Optional[MaintenanceRunner] = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.config = config
        self.maintenance = maintenance or MaintenanceRunner(store, config.maintenance_mode)
        self.last_result: Optional[RefreshResult] = None
        self._refreshing = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def refresh_now(self, now: Optional[datetime] = None) -> Optional[RefreshResult]:
        """Run one cycle: maintenance if due, then the refresh itself.

        Returns:
            The refresh outcome, or None if another cycle is still running
        """
        if not self._refreshing.acquire(blocking=False):
            return None
        try:
            self.maintenance.run(now=now)
            result = refresh_usage(self.store, self.fetcher, self.config.enabled_tools, now)
        finally:
            self._refreshing.release()

        if result.status_message:
            logger.warning("refresh_incomplete", message=result.status_message)
        self.last_result = result
        return result

    def start(self) -> None:
        """Refresh now and then every config.refresh_seconds until stopped."""
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="cost-pulse-refresh")
        self._thread.start()
        logger.info("refresh_loop_started", interval_seconds=self.config.refresh_seconds)

    def stop(self, timeout: float = 10) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("refresh_loop_stop_timeout")
        else:
            logger.info("refresh_loop_stopped")
        self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.refresh_now()
            self._stop_event.wait(timeout=self.config.refresh_seconds)
