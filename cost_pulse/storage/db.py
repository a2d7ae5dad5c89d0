"""
Database connection management.

Provides the SQLite connection owned by the usage store.
"""

import sqlite3
from pathlib import Path

from .errors import OpenFailure

MEMORY_PATH = ":memory:"
DEFAULT_DB_PATH = Path.home() / ".cost_pulse" / "cost_pulse.sqlite"


def get_connection(db_path: str = str(DEFAULT_DB_PATH)) -> sqlite3.Connection:
    """Create and return a SQLite connection for the store's worker thread.

    The connection runs in autocommit mode; multi-statement work opens its
    own explicit transaction. Parent directories are created as needed.

    Args:
        db_path: Path to SQLite database file, or ":memory:"

    Returns:
        SQLite connection usable from a thread other than its creator

    Raises:
        OpenFailure: If the directory or database cannot be created
    """
    target = db_path
    if db_path != MEMORY_PATH:
        path = Path(db_path).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise OpenFailure(f"Cannot create database directory {path.parent}: {e}") from e
        target = str(path)

    try:
        return sqlite3.connect(target, check_same_thread=False, isolation_level=None)
    except sqlite3.Error as e:
        raise OpenFailure(f"Cannot open database {db_path}: {e}") from e
