"""
Usage store.

Owns the SQLite database holding cost samples and daily rollups. Every
operation, read or write, runs as a task on a single dedicated worker so the
connection is never used concurrently; callers block until their task is done.
"""

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, TypeVar

import structlog

from cost_pulse.core.dates import date_key_for, normalized_date_key
from .db import DEFAULT_DB_PATH, MEMORY_PATH, get_connection
from .errors import (
    MaintenanceFailure,
    OpenFailure,
    SchemaFailure,
    StoreError,
    WriteFailure,
)
from .models import DailyRollup, DailyTotal, UsageSample, UsageTool

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Stored deltas closer than this to the recomputed value are left alone.
DELTA_TOLERANCE = 1e-4

FALLBACK_NOTICE = "Database unavailable. Running without persistence."

SCHEMA = """
CREATE TABLE IF NOT EXISTS samples (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tool TEXT NOT NULL,
    recorded_at REAL NOT NULL,
    total_cost REAL NOT NULL,
    delta_cost REAL NOT NULL DEFAULT 0,
    date_key TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS daily_rollups (
    date_key TEXT NOT NULL,
    tool TEXT NOT NULL,
    total_cost REAL NOT NULL,
    updated_at REAL NOT NULL,
    PRIMARY KEY (date_key, tool)
);
"""

SAMPLES_INDEX = """
CREATE INDEX IF NOT EXISTS idx_samples_date_tool
ON samples (date_key, tool)
"""

UPSERT_ROLLUP_SQL = """
INSERT INTO daily_rollups (date_key, tool, total_cost, updated_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(date_key, tool) DO UPDATE SET
    total_cost = excluded.total_cost,
    updated_at = excluded.updated_at
"""

LATEST_SAMPLE_SQL = """
SELECT recorded_at, total_cost, delta_cost, date_key
FROM samples
WHERE date_key = ? AND tool = ?
ORDER BY recorded_at DESC, id DESC
LIMIT 1
"""


class UsageStore:
    """Serialized access to the samples and daily_rollups tables.

    Reads never raise: a failing query is logged and answered with an
    empty list or None. Writes raise WriteFailure and the two repair
    procedures raise MaintenanceFailure after rolling back.
    """

    def __init__(self, db_path: str = str(DEFAULT_DB_PATH)):
        """Open the database and bring its schema up to date.

        Args:
            db_path: Path to SQLite database file, or ":memory:"

        Raises:
            OpenFailure: If the database cannot be opened
            SchemaFailure: If a migration statement fails
        """
        self.db_path = db_path
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cost-pulse-store")
        self._conn: Optional[sqlite3.Connection] = None
        self._closed = False
        try:
            self._conn = self._run(get_connection, db_path)
            self._run(self._migrate)
        except StoreError:
            self._run(self._close_connection)
            self._executor.shutdown()
            raise
        logger.debug("store_opened", db_path=db_path)

    @classmethod
    def in_memory(cls) -> "UsageStore":
        """Transient store that disappears with the process."""
        return cls(MEMORY_PATH)

    @property
    def is_persistent(self) -> bool:
        return self.db_path != MEMORY_PATH

    def close(self) -> None:
        """Close the connection and stop the worker. Safe to call twice."""
        if self._closed:
            return
        self._run(self._close_connection)
        self._executor.shutdown()
        self._closed = True

    def __enter__(self) -> "UsageStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Writes

    def upsert_daily_totals(self, tool: UsageTool, totals: Sequence[DailyTotal]) -> None:
        """Insert or replace the rollup row of every given day.

        Each row is written by its own statement; a failure part way through
        leaves the earlier rows in place.

        Args:
            tool: Tool the totals belong to
            totals: Daily totals as reported by the tool

        Raises:
            WriteFailure: If any upsert statement fails
        """
        self._run(self._upsert_daily_totals, tool, list(totals))

    def insert_sample(self, tool: UsageTool, total_cost: float, recorded_at: datetime) -> UsageSample:
        """Append a sample, deriving its delta from the day's latest sample.

        The delta is the increase over the most recent stored sample for the
        same tool and day, clamped at zero. A lower total is stored as-is and
        becomes the baseline for the next sample.

        Args:
            tool: Tool that reported the total
            total_cost: Running total for the day as of recorded_at
            recorded_at: Observation instant

        Returns:
            The stored sample

        Raises:
            WriteFailure: If the lookup or the insert fails
        """
        return self._run(self._insert_sample, tool, total_cost, recorded_at)

    # Reads

    def fetch_samples(self, tool: UsageTool, start: datetime, end: datetime) -> List[UsageSample]:
        """Samples of tool recorded in [start, end], oldest first."""
        return self._read(self._fetch_samples, [], tool, start, end)

    def fetch_daily_rollups(self, since_date_key: str) -> List[DailyRollup]:
        """Rollups of all tools whose normalized key is >= since_date_key.

        Rows whose stored key cannot be normalized, or whose tool is unknown,
        are skipped. Results are sorted by date key.
        """
        return self._read(self._fetch_daily_rollups, [], since_date_key)

    def daily_total(self, date_key: str, tool: UsageTool) -> Optional[float]:
        return self._read(self._daily_total, None, date_key, tool)

    def latest_sample(self, date_key: str, tool: UsageTool) -> Optional[UsageSample]:
        return self._read(self._latest_sample, None, date_key, tool)

    # Maintenance

    def backfill_sample_deltas(self) -> int:
        """Recompute every stored delta from the sample totals.

        Samples are replayed per tool and day in recorded order with the
        baseline reset to zero at each new day. Runs in one transaction.

        Returns:
            Number of rows whose delta was rewritten

        Raises:
            MaintenanceFailure: If any statement fails; nothing is changed
        """
        return self._run(self._backfill_sample_deltas)

    def normalize_daily_rollup_dates(self, tool: UsageTool) -> int:
        """Rewrite non-canonical rollup date keys of tool.

        A row whose canonical key is free is renamed in place. When the
        canonical key already has a row the two are merged by keeping the
        larger total and the non-canonical row is deleted. Runs in one
        transaction.

        Returns:
            Number of non-canonical rows touched

        Raises:
            MaintenanceFailure: If any statement fails; nothing is changed
        """
        return self._run(self._normalize_daily_rollup_dates, tool)

    # Worker plumbing

    def _run(self, fn: Callable[..., T], *args) -> T:
        return self._executor.submit(fn, *args).result()

    def _read(self, fn: Callable[..., T], default: T, *args) -> T:
        # Undecodable rows and reads after close() degrade the same way.
        try:
            return self._run(fn, *args)
        except Exception as e:
            logger.warning("store_read_failed", operation=fn.__name__.lstrip("_"), error=str(e))
            return default

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self._conn
            self._conn.execute("COMMIT")
        except BaseException:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise

    def _close_connection(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # Tasks, always executed on the worker

    def _migrate(self) -> None:
        try:
            self._conn.executescript(SCHEMA)
            columns = {row[1] for row in self._conn.execute("PRAGMA table_info(samples)")}
            if "delta_cost" not in columns:
                self._conn.execute(
                    "ALTER TABLE samples ADD COLUMN delta_cost REAL NOT NULL DEFAULT 0"
                )
                logger.info("schema_migrated", added_column="samples.delta_cost")
            self._conn.execute(SAMPLES_INDEX)
        except sqlite3.Error as e:
            raise SchemaFailure(f"Schema migration failed for {self.db_path}: {e}") from e

    def _upsert_daily_totals(self, tool: UsageTool, totals: List[DailyTotal]) -> None:
        updated_at = datetime.now().timestamp()
        for total in totals:
            self._upsert_rollup(tool, total.date_key, total.cost, updated_at)

    def _upsert_rollup(self, tool: UsageTool, date_key: str, cost: float, updated_at: float) -> None:
        try:
            self._conn.execute(UPSERT_ROLLUP_SQL, (date_key, tool.value, cost, updated_at))
        except sqlite3.Error as e:
            logger.error("rollup_write_failed", tool=tool.value, date_key=date_key, error=str(e))
            raise WriteFailure(f"Failed to store daily total {date_key} for {tool.value}: {e}") from e

    def _insert_sample(self, tool: UsageTool, total_cost: float, recorded_at: datetime) -> UsageSample:
        date_key = date_key_for(recorded_at)
        try:
            row = self._conn.execute(LATEST_SAMPLE_SQL, (date_key, tool.value)).fetchone()
            baseline = row[1] if row else 0.0
            delta_cost = max(0.0, total_cost - baseline)
            self._conn.execute(
                """
                INSERT INTO samples (tool, recorded_at, total_cost, delta_cost, date_key)
                VALUES (?, ?, ?, ?, ?)
                """,
                (tool.value, recorded_at.timestamp(), total_cost, delta_cost, date_key),
            )
        except sqlite3.Error as e:
            logger.error("sample_write_failed", tool=tool.value, date_key=date_key, error=str(e))
            raise WriteFailure(f"Failed to store sample for {tool.value}: {e}") from e

        return UsageSample(
            tool=tool,
            recorded_at=recorded_at,
            total_cost=total_cost,
            delta_cost=delta_cost,
            date_key=date_key,
        )

    def _fetch_samples(self, tool: UsageTool, start: datetime, end: datetime) -> List[UsageSample]:
        cursor = self._conn.execute(
            """
            SELECT recorded_at, total_cost, delta_cost, date_key
            FROM samples
            WHERE tool = ? AND recorded_at >= ? AND recorded_at <= ?
            ORDER BY recorded_at ASC, id ASC
            """,
            (tool.value, start.timestamp(), end.timestamp()),
        )
        return [_sample_from_row(tool, row) for row in cursor.fetchall()]

    def _fetch_daily_rollups(self, since_date_key: str) -> List[DailyRollup]:
        cursor = self._conn.execute(
            "SELECT date_key, tool, total_cost, updated_at FROM daily_rollups"
        )
        rollups = []
        for raw_key, raw_tool, total_cost, updated_at in cursor.fetchall():
            if not isinstance(raw_key, str) or not isinstance(raw_tool, str):
                continue
            date_key = normalized_date_key(raw_key)
            if date_key is None or date_key < since_date_key:
                continue
            try:
                tool = UsageTool(raw_tool)
            except ValueError:
                continue
            rollups.append(DailyRollup(
                date_key=date_key,
                tool=tool,
                total_cost=total_cost,
                updated_at=datetime.fromtimestamp(updated_at),
            ))
        return sorted(rollups, key=lambda r: (r.date_key, r.tool.value))

    def _daily_total(self, date_key: str, tool: UsageTool) -> Optional[float]:
        row = self._conn.execute(
            "SELECT total_cost FROM daily_rollups WHERE date_key = ? AND tool = ? LIMIT 1",
            (date_key, tool.value),
        ).fetchone()
        return row[0] if row else None

    def _latest_sample(self, date_key: str, tool: UsageTool) -> Optional[UsageSample]:
        row = self._conn.execute(LATEST_SAMPLE_SQL, (date_key, tool.value)).fetchone()
        return _sample_from_row(tool, row) if row else None

    def _backfill_sample_deltas(self) -> int:
        updated = 0
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT id, tool, date_key, total_cost, delta_cost
                    FROM samples
                    ORDER BY tool, date_key, recorded_at ASC, id ASC
                    """
                ).fetchall()

                group: Optional[Tuple[str, str]] = None
                previous_total = 0.0
                for sample_id, tool, date_key, total_cost, stored_delta in rows:
                    if (tool, date_key) != group:
                        group = (tool, date_key)
                        previous_total = 0.0

                    delta = max(0.0, total_cost - previous_total)
                    if abs(delta - stored_delta) > DELTA_TOLERANCE:
                        conn.execute(
                            "UPDATE samples SET delta_cost = ? WHERE id = ?",
                            (delta, sample_id),
                        )
                        updated += 1
                    previous_total = total_cost
        except sqlite3.Error as e:
            logger.error("delta_backfill_failed", error=str(e))
            raise MaintenanceFailure(f"Backfilling sample deltas failed: {e}") from e

        logger.info("delta_backfill_complete", updated=updated)
        return updated

    def _normalize_daily_rollup_dates(self, tool: UsageTool) -> int:
        touched = 0
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    "SELECT date_key, total_cost FROM daily_rollups WHERE tool = ?",
                    (tool.value,),
                ).fetchall()

                for raw_key, total_cost in rows:
                    if raw_key is None:
                        continue
                    date_key = normalized_date_key(raw_key)
                    if date_key is None or date_key == raw_key:
                        continue

                    existing = self._daily_total(date_key, tool)
                    if existing is not None:
                        merged = max(existing, total_cost)
                        if abs(merged - existing) > DELTA_TOLERANCE:
                            self._upsert_rollup(tool, date_key, merged, datetime.now().timestamp())
                        conn.execute(
                            "DELETE FROM daily_rollups WHERE tool = ? AND date_key = ?",
                            (tool.value, raw_key),
                        )
                    else:
                        conn.execute(
                            "UPDATE daily_rollups SET date_key = ? WHERE tool = ? AND date_key = ?",
                            (date_key, tool.value, raw_key),
                        )
                    touched += 1
        except (sqlite3.Error, WriteFailure) as e:
            logger.error("rollup_normalization_failed", tool=tool.value, error=str(e))
            raise MaintenanceFailure(f"Normalizing daily rollup dates failed for {tool.value}: {e}") from e

        logger.info("rollup_normalization_complete", tool=tool.value, touched=touched)
        return touched


def _sample_from_row(tool: UsageTool, row: tuple) -> UsageSample:
    recorded_at, total_cost, delta_cost, date_key = row
    return UsageSample(
        tool=tool,
        recorded_at=datetime.fromtimestamp(recorded_at),
        total_cost=total_cost,
        delta_cost=delta_cost,
        date_key=date_key,
    )


def open_store(db_path: str = str(DEFAULT_DB_PATH)) -> Tuple[UsageStore, Optional[str]]:
    """Open the persistent store, falling back to an in-memory one.

    Args:
        db_path: Path to SQLite database file

    Returns:
        The store and a notice to show the user when persistence is
        unavailable (None otherwise)
    """
    try:
        return UsageStore(db_path), None
    except (OpenFailure, SchemaFailure) as e:
        logger.warning("store_fallback_in_memory", db_path=db_path, error=str(e))
        return UsageStore.in_memory(), FALLBACK_NOTICE
