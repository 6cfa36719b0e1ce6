"""
Repository pattern for data access.

Handles the append-only metric and event tables and the grouped scans the
aggregation engine is built on.
"""

import json
import re
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import AttributeMap, EventRecord, MetricRecord


class StoreFailure(RuntimeError):
    """Raised when an atomic batch insert cannot be completed.

    The batch is rolled back before this is raised, so nothing from the
    failed request is persisted.
    """


# Expressions used as correlation keys in grouped scans
GROUP_KEYS = {
    "date": "local_date(timestamp)",
    "session": "json_extract(attributes, '$.session_id')",
}

_LABEL_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

# Writers from concurrent requests must not interleave their batches
_write_lock = threading.Lock()


@dataclass(frozen=True)
class SumSpec:
    """A filtered sum over metric values.

    Sums ``value`` of metrics named ``metric_name``, optionally restricted to
    records whose ``type`` attribute equals ``type_filter``.
    """
    label: str
    metric_name: str
    type_filter: Optional[str] = None

    def __post_init__(self):
        """Validate the label is usable as a column alias."""
        if not _LABEL_RE.match(self.label):
            raise ValueError(f"invalid sum label: {self.label!r}")


def _attribute_path(key: str) -> str:
    """Build a JSON path selecting a top-level attribute key."""
    escaped = key.replace("\\", "\\\\").replace('"', '\\"')
    return f'$."{escaped}"'


def _window_conditions(
    start: Optional[int],
    end: Optional[int],
) -> Tuple[List[str], List[Any]]:
    """Build the [start, end) timestamp conditions; None leaves a side open."""
    conditions = []
    params: List[Any] = []
    if start is not None:
        conditions.append("timestamp >= ?")
        params.append(start)
    if end is not None:
        conditions.append("timestamp < ?")
        params.append(end)
    return conditions, params


def _where(conditions: Sequence[str]) -> str:
    return (" WHERE " + " AND ".join(conditions)) if conditions else ""


def _encode_attributes(attributes: AttributeMap) -> str:
    # json_extract rejects the NaN/Infinity tokens json.dumps writes by default
    return json.dumps(attributes, separators=(",", ":"), allow_nan=False)


class TelemetryRepository:
    """Read access to the telemetry tables.

    Every method opens its own connection, so queries may run concurrently
    with ingest writes and with each other.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        conn = get_connection(self.db_path)
        try:
            conn.row_factory = sqlite3.Row
            return conn.execute(sql, list(params)).fetchall()
        finally:
            conn.close()

    def _filtered_scan(
        self,
        columns: str,
        table: str,
        start: Optional[int],
        end: Optional[int],
        name: Optional[str],
        attribute_filters: Optional[Dict[str, Any]],
        limit: Optional[int],
    ) -> List[sqlite3.Row]:
        conditions, params = _window_conditions(start, end)
        if name is not None:
            conditions.append("name = ?")
            params.append(name)
        for key, value in (attribute_filters or {}).items():
            conditions.append("json_extract(attributes, ?) = ?")
            params.extend([_attribute_path(key), value])

        query = f"SELECT {columns} FROM {table}{_where(conditions)} ORDER BY timestamp DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return self._query(query, params)

    def fetch_metrics(
        self,
        start: Optional[int] = None,
        end: Optional[int] = None,
        name: Optional[str] = None,
        attribute_filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[MetricRecord]:
        """Get metric records in a time window with optional filtering.

        Args:
            start: Inclusive lower bound in ms (None for unbounded)
            end: Exclusive upper bound in ms (None for unbounded)
            name: Optional exact metric name
            attribute_filters: Optional attribute key/value equality filters
            limit: Maximum number of records to return

        Returns:
            List of metric records ordered by timestamp (newest first)
        """
        rows = self._filtered_scan(
            "id, timestamp, name, value, attributes", "metrics",
            start, end, name, attribute_filters, limit,
        )
        return [
            MetricRecord(
                id=row["id"],
                timestamp=row["timestamp"],
                name=row["name"],
                value=row["value"],
                attributes=json.loads(row["attributes"]),
            )
            for row in rows
        ]

    def fetch_events(
        self,
        start: Optional[int] = None,
        end: Optional[int] = None,
        name: Optional[str] = None,
        attribute_filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[EventRecord]:
        """Get event records in a time window with optional filtering.

        Same arguments and ordering as :meth:`fetch_metrics`.
        """
        rows = self._filtered_scan(
            "id, timestamp, name, attributes", "events",
            start, end, name, attribute_filters, limit,
        )
        return [
            EventRecord(
                id=row["id"],
                timestamp=row["timestamp"],
                name=row["name"],
                attributes=json.loads(row["attributes"]),
            )
            for row in rows
        ]

    def metric_rollups(
        self,
        group_by: str,
        sums: Sequence[SumSpec],
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> Dict[Any, Dict[str, Any]]:
        """Group metrics by a correlation key and compute filtered sums.

        Each group always carries ``sessions`` (distinct session ids),
        ``start_time`` and ``end_time`` in addition to one entry per SumSpec.
        Records whose group key is NULL are left out.

        Args:
            group_by: "date" (local calendar date) or "session"
            sums: Filtered sums to compute per group
            start: Inclusive lower bound in ms
            end: Exclusive upper bound in ms

        Returns:
            Mapping of group key to its aggregate columns
        """
        key_expr = GROUP_KEYS[group_by]
        columns = [
            f"{key_expr} AS group_key",
            "COUNT(DISTINCT json_extract(attributes, '$.session_id')) AS sessions",
            "MIN(timestamp) AS start_time",
            "MAX(timestamp) AS end_time",
        ]
        params: List[Any] = []
        for spec in sums:
            if spec.type_filter is None:
                columns.append(f"SUM(CASE WHEN name = ? THEN value ELSE 0 END) AS {spec.label}")
                params.append(spec.metric_name)
            else:
                columns.append(
                    "SUM(CASE WHEN name = ? AND json_extract(attributes, '$.type') = ? "
                    f"THEN value ELSE 0 END) AS {spec.label}"
                )
                params.extend([spec.metric_name, spec.type_filter])

        conditions, window_params = _window_conditions(start, end)
        conditions.append(f"{key_expr} IS NOT NULL")
        query = (
            f"SELECT {', '.join(columns)} FROM metrics{_where(conditions)} "
            "GROUP BY group_key"
        )
        rows = self._query(query, params + window_params)
        return {row["group_key"]: dict(row) for row in rows}

    def event_counts(
        self,
        name: str,
        group_by: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> Dict[Any, int]:
        """Count events with the given name per correlation key."""
        key_expr = GROUP_KEYS[group_by]
        conditions, params = _window_conditions(start, end)
        conditions.extend(["name = ?", f"{key_expr} IS NOT NULL"])
        params.append(name)
        query = (
            f"SELECT {key_expr} AS group_key, COUNT(*) AS total FROM events"
            f"{_where(conditions)} GROUP BY group_key"
        )
        return {row["group_key"]: row["total"] for row in self._query(query, params)}

    def tool_stats(
        self,
        event_name: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Per-tool call statistics over events with the given name.

        ``success`` is matched by JSON type, so only real booleans count.
        ``duration_ms`` is coerced to a number; non-numeric values are
        ignored by the average.
        """
        conditions, params = _window_conditions(start, end)
        conditions.append("name = ?")
        params.append(event_name)
        query = f"""
            SELECT
                json_extract(attributes, '$.tool_name') AS tool_name,
                COUNT(*) AS total_calls,
                SUM(CASE WHEN json_type(attributes, '$.success') = 'true' THEN 1 ELSE 0 END) AS successful,
                SUM(CASE WHEN json_type(attributes, '$.success') = 'false' THEN 1 ELSE 0 END) AS failed,
                AVG(CASE WHEN json_type(attributes, '$.duration_ms') IN ('integer', 'real', 'text')
                    THEN as_number(json_extract(attributes, '$.duration_ms')) END) AS avg_duration_ms
            FROM events{_where(conditions)}
            GROUP BY tool_name
            ORDER BY total_calls DESC, tool_name
        """
        return [dict(row) for row in self._query(query, params)]

    def metric_sum(self, name: str) -> float:
        """Sum of all values ever stored for a metric name."""
        rows = self._query("SELECT SUM(value) AS total FROM metrics WHERE name = ?", [name])
        return float(rows[0]["total"] or 0)

    def distinct_attribute_count(self, key: str) -> int:
        """Number of distinct values of an attribute across all metrics."""
        rows = self._query(
            "SELECT COUNT(DISTINCT json_extract(attributes, ?)) AS total FROM metrics",
            [_attribute_path(key)],
        )
        return int(rows[0]["total"] or 0)


# Repository instances, one per database path
_repositories: Dict[str, TelemetryRepository] = {}


def get_repository(db_path: str = DEFAULT_DB_PATH) -> TelemetryRepository:
    """Get the repository instance for a database path.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of TelemetryRepository
    """
    if db_path not in _repositories:
        _repositories[db_path] = TelemetryRepository(db_path)
    return _repositories[db_path]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the metrics and events tables and their indices if missing.

    Both tables are append-only ledgers. No UPDATE or DELETE operations
    should ever be performed on them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp INTEGER NOT NULL CHECK (timestamp >= 0),
                name TEXT NOT NULL CHECK (length(name) > 0),
                value REAL NOT NULL,
                attributes TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp INTEGER NOT NULL CHECK (timestamp >= 0),
                name TEXT NOT NULL CHECK (length(name) > 0),
                attributes TEXT NOT NULL DEFAULT '{}'
            );

            CREATE INDEX IF NOT EXISTS idx_metrics_timestamp ON metrics(timestamp);
            CREATE INDEX IF NOT EXISTS idx_metrics_name ON metrics(name);
            CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
            CREATE INDEX IF NOT EXISTS idx_events_name ON events(name);
        """)
        conn.commit()
    finally:
        conn.close()


def _insert_batch(sql: str, rows: Iterable[Tuple[Any, ...]], db_path: str) -> List[int]:
    """Insert rows in a single transaction and return their ids in order."""
    try:
        rows = list(rows)
    except ValueError as e:
        raise StoreFailure(f"records could not be encoded: {e}") from e
    if not rows:
        return []

    with _write_lock:
        conn = get_connection(db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            ids = []
            for row in rows:
                cursor = conn.execute(sql, row)
                ids.append(cursor.lastrowid)
            conn.commit()
            return ids
        except (sqlite3.Error, OverflowError) as e:
            conn.rollback()
            raise StoreFailure(f"batch insert of {len(rows)} records failed: {e}") from e
        finally:
            conn.close()


def insert_metrics(records: Sequence[MetricRecord], db_path: str = DEFAULT_DB_PATH) -> List[int]:
    """Insert metric records atomically into the append-only ledger.

    All records are inserted in a single transaction: either every record
    is persisted or none is.

    Args:
        records: Metric records to store
        db_path: Path to SQLite database file

    Returns:
        Assigned record ids, in input order

    Raises:
        StoreFailure: If the batch could not be committed
    """
    return _insert_batch(
        "INSERT INTO metrics (timestamp, name, value, attributes) VALUES (?, ?, ?, ?)",
        (
            (r.timestamp, r.name, float(r.value), _encode_attributes(r.attributes))
            for r in records
        ),
        db_path,
    )


def insert_events(records: Sequence[EventRecord], db_path: str = DEFAULT_DB_PATH) -> List[int]:
    """Insert event records atomically into the append-only ledger.

    Args:
        records: Event records to store
        db_path: Path to SQLite database file

    Returns:
        Assigned record ids, in input order

    Raises:
        StoreFailure: If the batch could not be committed
    """
    return _insert_batch(
        "INSERT INTO events (timestamp, name, attributes) VALUES (?, ?, ?)",
        ((r.timestamp, r.name, _encode_attributes(r.attributes)) for r in records),
        db_path,
    )
