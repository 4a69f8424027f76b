"""Tests for metric delta aggregation."""

import pytest

from agent_sync.state.delta_store import FileOperation, TokenCounts
from agent_sync.sync.metrics_aggregator import (
    METRIC_NAME,
    aggregate_deltas,
    ms_to_iso,
    sanitize_error,
    timestamp_to_ms,
    truncate_project_path,
)
from agent_sync.sync.registry import MetricsConfig


class TestHelpers:
    """Path, error and time helpers."""

    @pytest.mark.parametrize("path,expected", [
        ("/Users/dev/repos/acme/service", "acme/service"),
        ("C:\\Users\\Dev\\projects\\app", "projects/app"),
        ("/Users/dev/repos/acme/service/", "acme/service"),
        ("single", "single"),
        ("C:\\", "unknown"),
        ("", "unknown"),
        (None, "unknown"),
    ])
    def test_truncate_project_path(self, path, expected):
        """Test only the last two segments are kept."""
        assert truncate_project_path(path) == expected

    def test_sanitize_strips_ansi_and_crlf(self):
        """Test terminal escapes and CRLF are removed."""
        assert sanitize_error("\x1b[31mfailed\x1b[0m\r\nline2") == "failed\nline2"

    def test_sanitize_truncates(self):
        """Test long messages are capped."""
        result = sanitize_error("x" * 5000)

        assert len(result) < 1100
        assert result.endswith("...[truncated]")

    def test_timestamps(self):
        """Test epoch ms and ISO strings normalize to ms."""
        assert timestamp_to_ms(1_760_000_000_000) == 1_760_000_000_000
        assert timestamp_to_ms("1760000000000") == 1_760_000_000_000
        assert timestamp_to_ms("2025-10-09T10:00:00Z") == timestamp_to_ms("2025-10-09T10:00:00+00:00")
        assert timestamp_to_ms("garbage") is None
        assert timestamp_to_ms(None) is None

    def test_ms_to_iso(self):
        """Test ms are rendered as UTC ISO with a Z suffix."""
        assert ms_to_iso(0) == "1970-01-01T00:00:00Z"


class TestAggregateDeltas:
    """Per-branch aggregation over the pending window."""

    def test_sums_tokens(self, session_metadata, delta_factory):
        """Test tokens are summed over the given deltas only."""
        deltas = [
            delta_factory("r1", tokens=TokenCounts(input=10, output=5, cache_read=1, cache_write=2)),
            delta_factory("r2", tokens=TokenCounts(input=3, output=7)),
        ]

        [metric] = aggregate_deltas(deltas, session_metadata, "1.0.0")
        attrs = metric.attributes

        assert attrs.total_input_tokens == 13
        assert attrs.total_output_tokens == 12
        assert attrs.total_cache_read_input_tokens == 1
        assert attrs.total_cache_creation_tokens == 2
        assert metric.record_ids == ["r1", "r2"]

    def test_one_metric_per_branch(self, session_metadata, delta_factory):
        """Test deltas are grouped by branch with session and unknown fallbacks."""
        session_metadata.git_branch = "develop"
        deltas = [
            delta_factory("r1", branch="main"),
            delta_factory("r2", branch=None),
            delta_factory("r3", branch="main"),
        ]

        metrics = aggregate_deltas(deltas, session_metadata, "1.0.0")

        assert [m.attributes.branch for m in metrics] == ["main", "develop"]
        assert metrics[0].record_ids == ["r1", "r3"]

        session_metadata.git_branch = None
        [metric] = aggregate_deltas([delta_factory("r4", branch=None)], session_metadata, "1.0.0")
        assert metric.attributes.branch == "unknown"

    def test_tools_and_files(self, session_metadata, delta_factory):
        """Test tool calls and file operations are counted."""
        delta = delta_factory(
            "r1",
            tools={"Read": 2, "Edit": 1},
            tool_status={"Read": {"success": 2, "failure": 0}, "Edit": {"success": 0, "failure": 1}},
            file_operations=[
                FileOperation("write", "a.py", 10, 0),
                FileOperation("edit", "b.py", 3, 2),
                FileOperation("delete", "c.py", 0, 7),
            ],
            user_prompts=[{"count": 2}, {"text": "hi"}],
            models=["claude-sonnet", "claude-haiku", "claude-sonnet"],
        )

        attrs = aggregate_deltas([delta], session_metadata, "1.0.0")[0].attributes

        assert attrs.total_tool_calls == 3
        assert attrs.successful_tool_calls == 2
        assert attrs.failed_tool_calls == 1
        assert (attrs.files_created, attrs.files_modified, attrs.files_deleted) == (1, 1, 1)
        assert (attrs.total_lines_added, attrs.total_lines_removed) == (13, 9)
        assert attrs.total_user_prompts == 3
        assert attrs.llm_model == "claude-sonnet"
        assert attrs.had_errors is True

    def test_duration_and_time(self, session_metadata, delta_factory):
        """Test duration spans the window and time is the newest delta."""
        deltas = [delta_factory("r1", timestamp=1_000_000), delta_factory("r2", timestamp=1_090_000)]

        metric = aggregate_deltas(deltas, session_metadata, "1.0.0")[0]

        assert metric.attributes.session_duration_ms == 90_000
        assert metric.time == ms_to_iso(1_090_000)

    def test_final_metric(self, session_metadata, delta_factory):
        """Test the terminal metric is stamped with the session end."""
        session_metadata.end_time = 2_000_000

        metric = aggregate_deltas([delta_factory("r1")], session_metadata, "1.0.0", is_final=True)[0]

        assert metric.attributes.is_final is True
        assert metric.attributes.status == "completed"
        assert metric.time == ms_to_iso(2_000_000)

    def test_excluded_tool_errors_dropped(self, session_metadata, delta_factory):
        """Test errors of excluded tools are not forwarded."""
        deltas = [
            delta_factory("r1", tool_status={"Bash": {"success": 0, "failure": 1}}, api_error_message="rm: denied"),
            delta_factory("r2", tool_status={"Edit": {"success": 0, "failure": 1}}, api_error_message="\x1b[1mno match\x1b[0m"),
            delta_factory("r3", api_error_message="overloaded"),
        ]

        attrs = aggregate_deltas(deltas, session_metadata, "1.0.0", MetricsConfig(exclude_errors_from_tools=["Bash"]))[0].attributes

        assert attrs.error_messages == {"Edit": ["no match"], "api": ["overloaded"]}
        assert attrs.had_errors is True

    def test_payload_shape(self, session_metadata, delta_factory):
        """Test the wire payload has the three documented keys."""
        payload = aggregate_deltas([delta_factory("r1")], session_metadata, "1.0.0")[0].to_payload()

        assert set(payload) == {"metric_name", "attributes", "time"}
        assert payload["metric_name"] == METRIC_NAME
        assert payload["attributes"]["repository"] == "acme/service"
        assert payload["attributes"]["agent_version"] == "1.0.0"
        assert payload["attributes"]["status"] == "active"
        assert "error_messages" not in payload["attributes"]
