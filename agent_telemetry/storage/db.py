"""
Database connection management.

Provides SQLite connections for telemetry persistence.
"""

import math
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

DEFAULT_DB_PATH = "telemetry.db"


def _local_date(timestamp_ms: Optional[int]) -> Optional[str]:
    """Return the local calendar date (YYYY-MM-DD) of a millisecond timestamp."""
    if timestamp_ms is None:
        return None
    try:
        return datetime.fromtimestamp(timestamp_ms / 1000).date().isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def _as_number(value: Union[str, int, float, None]) -> Optional[float]:
    """Coerce a JSON scalar to float, returning NULL for non-numeric values.

    NaN and infinities count as non-numeric.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value) if isinstance(value, (int, float)) else float(str(value).strip())
    except (ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection ready for telemetry queries.

    Registers the SQL helper functions used by the aggregation queries:
    ``local_date(ts_ms)`` and ``as_number(value)``.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection in WAL mode with a busy timeout
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30.0)
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 30000")
    conn.create_function("local_date", 1, _local_date, deterministic=True)
    conn.create_function("as_number", 1, _as_number, deterministic=True)
    return conn
