"""
Unit tests for the aggregation engine.

Covers the four rollups, the left-join zero rules and the end-to-end
cost + tool result scenario.
"""

import os
import tempfile
from datetime import datetime

import pytest

from agent_telemetry.core.aggregation import (
    COST_METRIC,
    LINES_METRIC,
    TOKEN_METRIC,
    TOOL_RESULT_EVENT,
    AggregationEngine,
    DailySummary,
    TotalStats,
    ToolUsage,
)
from agent_telemetry.core.windows import to_millis, today_window
from agent_telemetry.storage.models import EventRecord, MetricRecord
from agent_telemetry.storage.repository import (
    TelemetryRepository,
    initialize_schema,
    insert_events,
    insert_metrics,
)

DAY = datetime(2024, 5, 14, 12, 0, 0)
T = to_millis(DAY)
PREVIOUS_DAY_T = to_millis(datetime(2024, 5, 13, 9, 30, 0))


def _tool_result(timestamp, **attributes):
    return EventRecord(timestamp=timestamp, name=TOOL_RESULT_EVENT, attributes=attributes)


class AggregationTestBase:
    """Fresh database and engine per test."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.engine = AggregationEngine(TelemetryRepository(self.db_path))

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def metrics(self, *records):
        insert_metrics(list(records), self.db_path)

    def events(self, *records):
        insert_events(list(records), self.db_path)


class TestEndToEndScenario(AggregationTestBase):
    """One cost metric and one tool result in the same session and day."""

    def setup_method(self):
        """Insert the scenario records."""
        super().setup_method()
        self.metrics(MetricRecord(timestamp=T, name=COST_METRIC, value=0.05,
                                  attributes={"session_id": "s1"}))
        self.events(_tool_result(T, session_id="s1", tool_name="Read", success=True, duration_ms=120))
        self.start, self.end = today_window(DAY)

    def test_daily_summary(self):
        daily = self.engine.get_daily_summary(self.start, self.end)
        assert len(daily) == 1
        assert daily[0].date == "2024-05-14"
        assert daily[0].total_cost == pytest.approx(0.05)
        assert daily[0].sessions == 1
        assert daily[0].tool_calls == 1

    def test_tool_usage(self):
        assert self.engine.get_tool_usage(self.start, self.end) == [
            ToolUsage(tool_name="Read", total_calls=1, successful=1, failed=0, avg_duration_ms=120.0)
        ]

    def test_session_summary(self):
        sessions = self.engine.get_session_summaries(self.start, self.end)
        assert len(sessions) == 1
        assert sessions[0].session_id == "s1"
        assert sessions[0].start_time == T
        assert sessions[0].end_time == T
        assert sessions[0].total_cost == pytest.approx(0.05)
        assert sessions[0].tool_calls == 1


class TestDailySummary(AggregationTestBase):
    """Test per-date rollups."""

    def test_empty_window(self):
        assert self.engine.get_daily_summary(*today_window(DAY)) == []

    def test_token_and_line_breakdown(self):
        self.metrics(
            MetricRecord(timestamp=T, name=TOKEN_METRIC, value=100, attributes={"type": "input", "session_id": "s1"}),
            MetricRecord(timestamp=T + 1, name=TOKEN_METRIC, value=40, attributes={"type": "output", "session_id": "s1"}),
            MetricRecord(timestamp=T + 2, name=TOKEN_METRIC, value=500, attributes={"type": "cacheRead", "session_id": "s2"}),
            MetricRecord(timestamp=T + 3, name=TOKEN_METRIC, value=7, attributes={"type": "cacheCreation"}),
            MetricRecord(timestamp=T + 4, name=LINES_METRIC, value=12, attributes={"type": "added"}),
            MetricRecord(timestamp=T + 5, name=LINES_METRIC, value=3, attributes={"type": "removed"}),
            MetricRecord(timestamp=T + 6, name=COST_METRIC, value=0.25, attributes={"session_id": "s2"}),
        )
        daily = self.engine.get_daily_summary(*today_window(DAY))

        assert daily == [DailySummary(
            date="2024-05-14",
            sessions=2,
            total_cost=0.25,
            total_tokens=647.0,
            input_tokens=100.0,
            output_tokens=40.0,
            cache_read_tokens=500.0,
            tool_calls=0,
            lines_added=12.0,
            lines_removed=3.0,
        )]

    def test_single_day_without_tool_results_still_reported(self):
        self.metrics(MetricRecord(timestamp=T, name=COST_METRIC, value=1.0))
        daily = self.engine.get_daily_summary(*today_window(DAY))
        assert len(daily) == 1
        assert daily[0].tool_calls == 0
        assert daily[0].sessions == 0

    def test_ordered_by_date_descending_and_joined_by_date(self):
        self.metrics(
            MetricRecord(timestamp=PREVIOUS_DAY_T, name=COST_METRIC, value=1.0, attributes={"session_id": "a"}),
            MetricRecord(timestamp=T, name=COST_METRIC, value=2.0, attributes={"session_id": "b"}),
        )
        self.events(
            _tool_result(PREVIOUS_DAY_T, tool_name="Bash"),
            _tool_result(PREVIOUS_DAY_T + 10, tool_name="Bash"),
            _tool_result(T, tool_name="Read"),
        )
        start = to_millis(datetime(2024, 5, 13))
        end = today_window(DAY)[1]
        daily = self.engine.get_daily_summary(start, end)

        assert [d.date for d in daily] == ["2024-05-14", "2024-05-13"]
        assert [d.tool_calls for d in daily] == [1, 2]
        assert [d.total_cost for d in daily] == [2.0, 1.0]

    def test_dates_with_only_events_are_not_reported(self):
        self.events(_tool_result(T, tool_name="Read"))
        assert self.engine.get_daily_summary(*today_window(DAY)) == []

    def test_other_events_do_not_count_as_tool_calls(self):
        self.metrics(MetricRecord(timestamp=T, name=COST_METRIC, value=1.0))
        self.events(EventRecord(timestamp=T, name="claude_code.api_request"))
        assert self.engine.get_daily_summary(*today_window(DAY))[0].tool_calls == 0

    def test_records_outside_window_excluded(self):
        start, end = today_window(DAY)
        self.metrics(
            MetricRecord(timestamp=start - 1, name=COST_METRIC, value=10.0),
            MetricRecord(timestamp=end, name=COST_METRIC, value=20.0),
            MetricRecord(timestamp=start, name=COST_METRIC, value=1.0),
        )
        daily = self.engine.get_daily_summary(start, end)
        assert [d.total_cost for d in daily] == [1.0]


class TestToolUsage(AggregationTestBase):
    """Test per-tool statistics."""

    def test_counts_and_ordering(self):
        self.events(
            _tool_result(T, tool_name="Read", success=True, duration_ms=100),
            _tool_result(T, tool_name="Read", success=False, duration_ms=300),
            _tool_result(T, tool_name="Read", success=True, duration_ms=200),
            _tool_result(T, tool_name="Bash", success=True, duration_ms=50),
        )
        usage = self.engine.get_tool_usage(*today_window(DAY))

        assert [u.tool_name for u in usage] == ["Read", "Bash"]
        assert usage[0] == ToolUsage(tool_name="Read", total_calls=3, successful=2, failed=1,
                                     avg_duration_ms=200.0)

    def test_success_compared_by_type(self):
        """String 'true' is not a boolean success."""
        self.events(
            _tool_result(T, tool_name="Edit", success="true"),
            _tool_result(T, tool_name="Edit", success="false"),
            _tool_result(T, tool_name="Edit"),
        )
        usage = self.engine.get_tool_usage(*today_window(DAY))
        assert usage[0].total_calls == 3
        assert usage[0].successful == 0
        assert usage[0].failed == 0

    def test_duration_coercion(self):
        self.events(
            _tool_result(T, tool_name="Grep", duration_ms="30"),
            _tool_result(T, tool_name="Grep", duration_ms=90),
            _tool_result(T, tool_name="Grep", duration_ms="slow"),
        )
        assert self.engine.get_tool_usage(*today_window(DAY))[0].avg_duration_ms == 60.0

    def test_no_durations_average_zero(self):
        self.events(_tool_result(T, tool_name="Glob"))
        assert self.engine.get_tool_usage(*today_window(DAY))[0].avg_duration_ms == 0.0

    def test_missing_tool_name_groups_under_none(self):
        self.events(_tool_result(T, success=True), _tool_result(T, success=False))
        usage = self.engine.get_tool_usage(*today_window(DAY))
        assert len(usage) == 1
        assert usage[0].tool_name is None
        assert usage[0].total_calls == 2

    def test_empty_window(self):
        assert self.engine.get_tool_usage(*today_window(DAY)) == []


class TestSessionSummaries(AggregationTestBase):
    """Test per-session rollups."""

    def test_session_without_tool_results_reports_zero(self):
        self.metrics(
            MetricRecord(timestamp=T, name=TOKEN_METRIC, value=10, attributes={"session_id": "quiet", "type": "input"}),
        )
        sessions = self.engine.get_session_summaries(*today_window(DAY))
        assert len(sessions) == 1
        assert sessions[0].session_id == "quiet"
        assert sessions[0].tool_calls == 0
        assert sessions[0].total_input_tokens == 10.0

    def test_grouping_ordering_and_correlation(self):
        self.metrics(
            MetricRecord(timestamp=T, name=COST_METRIC, value=0.1, attributes={"session_id": "early"}),
            MetricRecord(timestamp=T + 60_000, name=COST_METRIC, value=0.2, attributes={"session_id": "early"}),
            MetricRecord(timestamp=T + 1000, name=TOKEN_METRIC, value=5,
                         attributes={"session_id": "late", "type": "output"}),
            MetricRecord(timestamp=T + 2000, name=TOKEN_METRIC, value=9,
                         attributes={"session_id": "late", "type": "cacheRead"}),
            MetricRecord(timestamp=T, name=COST_METRIC, value=5.0),
        )
        self.events(
            _tool_result(T, session_id="early", tool_name="Read"),
            _tool_result(T, session_id="early", tool_name="Edit"),
            _tool_result(T, session_id="late", tool_name="Read"),
            _tool_result(T, session_id="ghost", tool_name="Read"),
        )
        sessions = self.engine.get_session_summaries(*today_window(DAY))

        assert [s.session_id for s in sessions] == ["late", "early"]
        late, early = sessions
        assert early.start_time == T
        assert early.end_time == T + 60_000
        assert early.duration_ms == 60_000
        assert early.total_cost == pytest.approx(0.3)
        assert early.tool_calls == 2
        assert late.total_output_tokens == 5.0
        assert late.total_cache_read_tokens == 9.0
        assert late.tool_calls == 1

    def test_metrics_without_session_are_not_a_session(self):
        self.metrics(MetricRecord(timestamp=T, name=COST_METRIC, value=1.0))
        assert self.engine.get_session_summaries(*today_window(DAY)) == []


class TestTotalStats(AggregationTestBase):
    """Test unbounded totals."""

    def test_empty_store_is_zero(self):
        assert self.engine.get_total_stats() == TotalStats(total_cost=0.0, total_tokens=0.0, total_sessions=0)

    def test_totals_across_all_time(self):
        self.metrics(
            MetricRecord(timestamp=PREVIOUS_DAY_T, name=TOKEN_METRIC, value=100, attributes={"session_id": "a", "type": "input"}),
            MetricRecord(timestamp=T, name=TOKEN_METRIC, value=50, attributes={"session_id": "b", "type": "output"}),
            MetricRecord(timestamp=T, name=TOKEN_METRIC, value=25, attributes={"session_id": "a"}),
            MetricRecord(timestamp=1, name=COST_METRIC, value=0.5, attributes={"session_id": "c"}),
            MetricRecord(timestamp=T, name=LINES_METRIC, value=99),
        )
        stats = self.engine.get_total_stats()
        assert stats.total_tokens == 175.0
        assert stats.total_cost == 0.5
        assert stats.total_sessions == 3
