"""
Tests for the maintenance routine.
"""

import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from cost_pulse.config.loader import MaintenanceMode
from cost_pulse.core.maintenance import MaintenanceReport, MaintenanceRunner
from cost_pulse.storage.errors import MaintenanceFailure
from cost_pulse.storage.models import DailyTotal, UsageTool
from cost_pulse.storage.repository import UsageStore


NOW = datetime(2024, 1, 15, 9, 0)


def create_mock_store(deltas=2, dates=1):
    """Create a mock store with canned maintenance counts."""
    store = MagicMock(spec=UsageStore)
    store.backfill_sample_deltas.return_value = deltas
    store.normalize_daily_rollup_dates.return_value = dates
    return store


class TestMaintenanceRunner:
    """Test gating and reporting of maintenance runs."""

    def test_first_automatic_run(self):
        store = create_mock_store(deltas=3, dates=1)
        runner = MaintenanceRunner(store)

        report = runner.run(now=NOW)

        assert report.succeeded
        assert report.deltas_updated == 3
        assert report.dates_normalized == 2  # one per tool
        assert report.message == "Maintenance complete. Updated 3 snapshots, normalized 2 daily totals."
        assert runner.last_run_at == NOW
        store.backfill_sample_deltas.assert_called_once()
        normalized = [call.args[0] for call in store.normalize_daily_rollup_dates.call_args_list]
        assert normalized == list(UsageTool)

    def test_runs_at_most_once_per_day(self):
        store = create_mock_store()
        runner = MaintenanceRunner(store, last_run_at=NOW - timedelta(hours=23))

        assert runner.run(now=NOW) is None
        store.backfill_sample_deltas.assert_not_called()

        assert runner.run(now=NOW + timedelta(hours=1)) is not None

    def test_force_ignores_interval(self):
        store = create_mock_store()
        runner = MaintenanceRunner(store, last_run_at=NOW - timedelta(minutes=5))

        assert runner.run(force=True, now=NOW) is not None

    def test_manual_mode_requires_force(self):
        store = create_mock_store()
        runner = MaintenanceRunner(store, mode=MaintenanceMode.MANUAL)

        assert not runner.is_due(NOW)
        assert runner.run(now=NOW) is None
        assert runner.run(force=True, now=NOW).succeeded

    def test_run_in_flight_is_skipped(self):
        store = create_mock_store()
        started = threading.Event()
        release = threading.Event()

        def slow_backfill():
            started.set()
            release.wait(timeout=5)
            return 2

        store.backfill_sample_deltas.side_effect = slow_backfill
        runner = MaintenanceRunner(store)
        reports = []
        first = threading.Thread(target=lambda: reports.append(runner.run(now=NOW)))
        first.start()
        try:
            assert started.wait(timeout=5)
            assert runner.run(force=True, now=NOW) is None
        finally:
            release.set()
            first.join(timeout=5)

        assert len(reports) == 1
        assert reports[0].succeeded
        assert reports[0].deltas_updated == 2
        store.backfill_sample_deltas.assert_called_once()

    def test_failure_is_reported_not_raised(self):
        store = create_mock_store()
        store.backfill_sample_deltas.side_effect = MaintenanceFailure("disk I/O error")
        previous = NOW - timedelta(days=2)
        runner = MaintenanceRunner(store, last_run_at=previous)

        report = runner.run(now=NOW)

        assert not report.succeeded
        assert report.message == "Maintenance failed: disk I/O error"
        assert runner.last_run_at == previous
        assert runner.is_due(NOW)

    def test_run_against_real_store(self):
        with UsageStore.in_memory() as store:
            store.insert_sample(UsageTool.CLAUDE, 10, datetime(2024, 1, 15, 1))
            store.upsert_daily_totals(UsageTool.CODEX, [
                DailyTotal("2024-01-05", 5.0),
                DailyTotal("Jan 5, 2024", 9.0),
            ])

            report = MaintenanceRunner(store).run(now=NOW)

            assert report == MaintenanceReport(started_at=NOW, deltas_updated=0, dates_normalized=1)
            assert store.daily_total("2024-01-05", UsageTool.CODEX) == pytest.approx(9.0)
