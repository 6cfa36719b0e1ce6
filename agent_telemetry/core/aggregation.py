"""
Aggregation engine for telemetry rollups.

Every query is computed from scratch over the store: metric-derived groups
and event-derived counts are fetched as two independent grouped scans keyed
by the correlation key (date or session id), then merged in one pass where
missing counts default to zero.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from agent_telemetry.storage.repository import SumSpec, TelemetryRepository

COST_METRIC = "claude_code.cost.usage"
TOKEN_METRIC = "claude_code.token.usage"
LINES_METRIC = "claude_code.lines_of_code.count"
TOOL_RESULT_EVENT = "claude_code.tool_result"

_TOKEN_SUMS = [
    SumSpec("total_cost", COST_METRIC),
    SumSpec("total_tokens", TOKEN_METRIC),
    SumSpec("input_tokens", TOKEN_METRIC, "input"),
    SumSpec("output_tokens", TOKEN_METRIC, "output"),
    SumSpec("cache_read_tokens", TOKEN_METRIC, "cacheRead"),
]

DAILY_SUMS = _TOKEN_SUMS + [
    SumSpec("lines_added", LINES_METRIC, "added"),
    SumSpec("lines_removed", LINES_METRIC, "removed"),
]

SESSION_SUMS = _TOKEN_SUMS


@dataclass(frozen=True)
class DailySummary:
    """Usage rollup for one local calendar date."""
    date: str
    sessions: int
    total_cost: float
    total_tokens: float
    input_tokens: float
    output_tokens: float
    cache_read_tokens: float
    tool_calls: int
    lines_added: float
    lines_removed: float


@dataclass(frozen=True)
class ToolUsage:
    """Call statistics for one tool.

    tool_name is None for tool results that carried no tool name.
    """
    tool_name: Optional[str]
    total_calls: int
    successful: int
    failed: int
    avg_duration_ms: float


@dataclass(frozen=True)
class SessionSummary:
    """Usage rollup for one agent session."""
    session_id: str
    start_time: int
    end_time: int
    total_cost: float
    total_input_tokens: float
    total_output_tokens: float
    total_cache_read_tokens: float
    tool_calls: int

    @property
    def duration_ms(self) -> int:
        return self.end_time - self.start_time


@dataclass(frozen=True)
class TotalStats:
    """All-time totals across every stored metric."""
    total_cost: float
    total_tokens: float
    total_sessions: int


def _num(row: Dict[str, Any], key: str) -> float:
    return float(row.get(key) or 0)


class AggregationEngine:
    """Read-only rollups over the telemetry store.

    All windowed queries cover [start, end) in milliseconds.
    """

    def __init__(self, repository: TelemetryRepository):
        self.repository = repository

    def get_daily_summary(self, start: int, end: int) -> List[DailySummary]:
        """Summarize metrics per local calendar date, newest date first.

        Tool calls are left-joined by date: a date with metrics but no tool
        results reports zero, and dates with only events are not reported.

        Args:
            start: Inclusive window start in ms
            end: Exclusive window end in ms

        Returns:
            One DailySummary per date that has metrics
        """
        by_date = self.repository.metric_rollups("date", DAILY_SUMS, start, end)
        tool_calls = self.repository.event_counts(TOOL_RESULT_EVENT, "date", start, end)

        summaries = [
            DailySummary(
                date=day,
                sessions=int(row.get("sessions") or 0),
                total_cost=_num(row, "total_cost"),
                total_tokens=_num(row, "total_tokens"),
                input_tokens=_num(row, "input_tokens"),
                output_tokens=_num(row, "output_tokens"),
                cache_read_tokens=_num(row, "cache_read_tokens"),
                tool_calls=tool_calls.get(day, 0),
                lines_added=_num(row, "lines_added"),
                lines_removed=_num(row, "lines_removed"),
            )
            for day, row in by_date.items()
        ]
        return sorted(summaries, key=lambda s: s.date, reverse=True)

    def get_tool_usage(self, start: int, end: int) -> List[ToolUsage]:
        """Per-tool statistics over tool results, most used first."""
        return [
            ToolUsage(
                tool_name=None if row["tool_name"] is None else str(row["tool_name"]),
                total_calls=int(row["total_calls"] or 0),
                successful=int(row["successful"] or 0),
                failed=int(row["failed"] or 0),
                avg_duration_ms=_num(row, "avg_duration_ms"),
            )
            for row in self.repository.tool_stats(TOOL_RESULT_EVENT, start, end)
        ]

    def get_session_summaries(self, start: int, end: int) -> List[SessionSummary]:
        """Summarize metrics per session id, most recently started first.

        Metrics without a session_id are not attributed to any session.
        Sessions without tool results in the window report zero tool calls.
        """
        by_session = self.repository.metric_rollups("session", SESSION_SUMS, start, end)
        tool_calls = self.repository.event_counts(TOOL_RESULT_EVENT, "session", start, end)

        summaries = [
            SessionSummary(
                session_id=str(session_id),
                start_time=int(row["start_time"]),
                end_time=int(row["end_time"]),
                total_cost=_num(row, "total_cost"),
                total_input_tokens=_num(row, "input_tokens"),
                total_output_tokens=_num(row, "output_tokens"),
                total_cache_read_tokens=_num(row, "cache_read_tokens"),
                tool_calls=tool_calls.get(session_id, 0),
            )
            for session_id, row in by_session.items()
        ]
        return sorted(summaries, key=lambda s: (s.start_time, s.session_id), reverse=True)

    def get_total_stats(self) -> TotalStats:
        """All-time cost, tokens and distinct session count."""
        return TotalStats(
            total_cost=self.repository.metric_sum(COST_METRIC),
            total_tokens=self.repository.metric_sum(TOKEN_METRIC),
            total_sessions=self.repository.distinct_attribute_count("session_id"),
        )
