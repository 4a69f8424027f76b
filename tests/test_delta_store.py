"""Tests for the metric delta store."""

import json
import threading

import pytest

from agent_sync.state.delta_store import DeltaStore, FileOperation, MetricDelta, SyncStatus, TokenCounts
from agent_sync.state.file_lock import FileLock


class TestMetricDelta:
    """On-disk representation of a delta."""

    def test_from_dict_camel_case(self):
        """Test parsing the on-disk format."""
        delta = MetricDelta.from_dict({
            "recordId": "r1",
            "sessionId": "s1",
            "agentSessionId": "as1",
            "timestamp": "2025-10-09T10:00:00Z",
            "gitBranch": "feature/x",
            "tokens": {"input": 3, "output": 4, "cacheRead": 5, "cacheWrite": 6},
            "tools": {"Read": 2},
            "toolStatus": {"Read": {"success": 2, "failure": 0}},
            "fileOperations": [{"type": "edit", "path": "a.py", "linesAdded": 3, "linesRemoved": 1}],
            "models": ["claude-sonnet"],
            "syncStatus": "synced",
            "syncAttempts": 1,
            "syncedAt": 123,
        })

        assert delta.record_id == "r1"
        assert delta.git_branch == "feature/x"
        assert delta.tokens == TokenCounts(input=3, output=4, cache_read=5, cache_write=6)
        assert delta.tool_status == {"Read": {"success": 2, "failure": 0}}
        assert delta.file_operations == [FileOperation("edit", "a.py", 3, 1)]
        assert delta.sync_status == SyncStatus.SYNCED
        assert not delta.is_pending

    def test_cache_creation_alias(self):
        """Test cacheCreation is read as cacheWrite."""
        tokens = TokenCounts.from_dict({"cacheCreation": 7})

        assert tokens.cache_write == 7

    def test_unknown_status_is_pending(self):
        """Test an unknown sync status is treated as not yet synced."""
        delta = MetricDelta.from_dict({"recordId": "r1", "syncStatus": "syncing"})

        assert delta.is_pending

    def test_round_trip_keeps_fields(self):
        """Test to_dict output parses back to an equal delta."""
        delta = MetricDelta(
            record_id="r1",
            timestamp=1000,
            session_id="s",
            tokens=TokenCounts(1, 2, 3, 4),
            tools={"Bash": 1},
            tool_status={"Bash": {"success": 0, "failure": 1}},
            api_error_message="boom",
        )

        assert MetricDelta.from_dict(delta.to_dict()) == delta


class TestDeltaStore:
    """Reading and rewriting a session's delta file."""

    def test_append_and_read(self, paths, session_id, delta_factory):
        """Test appended deltas are pending and stamped with the session id."""
        store = DeltaStore(session_id, paths)
        store.append_delta(delta_factory("r1"))
        store.append_delta(delta_factory("r2", sync_status=SyncStatus.SYNCED, sync_attempts=3))

        deltas = store.read_all()

        assert [d.record_id for d in deltas] == ["r1", "r2"]
        assert all(d.is_pending for d in deltas)
        assert all(d.session_id == session_id for d in deltas)
        assert deltas[1].sync_attempts == 0

    def test_read_skips_records_without_id(self, paths, session_id, write_lines):
        """Test junk records are skipped."""
        write_lines(paths.metrics_file(session_id), [
            '{"recordId": "r1", "timestamp": 1}',
            '{"timestamp": 2}',
            '"just a string"',
            '{"recordId": "r3", "timestamp": 3}',
        ])

        assert [d.record_id for d in DeltaStore(session_id, paths).read_all()] == ["r1", "r3"]

    def test_read_pending(self, paths, session_id, delta_factory):
        """Test only pending deltas are returned."""
        store = DeltaStore(session_id, paths)
        store.write_all([
            delta_factory("r1"),
            delta_factory("r2", sync_status=SyncStatus.SYNCED),
            delta_factory("r3"),
        ])

        assert [d.record_id for d in store.read_pending()] == ["r1", "r3"]

    def test_mark_synced(self, paths, session_id, delta_factory):
        """Test marked deltas flip to synced with attempts and timestamp."""
        store = DeltaStore(session_id, paths)
        store.write_all([delta_factory("r1"), delta_factory("r2")])

        store.mark_synced(["r1"], synced_at=5000)
        deltas = {d.record_id: d for d in store.read_all()}

        assert deltas["r1"].sync_status == SyncStatus.SYNCED
        assert deltas["r1"].sync_attempts == 1
        assert deltas["r1"].synced_at == 5000
        assert deltas["r2"].is_pending

    def test_mark_synced_keeps_late_appends(self, paths, session_id, delta_factory):
        """Test deltas appended after the pending read survive the rewrite as pending."""
        store = DeltaStore(session_id, paths)
        store.append_delta(delta_factory("r1"))
        pending = store.read_pending()
        store.append_delta(delta_factory("r2"))

        store.mark_synced([d.record_id for d in pending])

        assert [d.record_id for d in store.read_pending()] == ["r2"]

    def test_mark_synced_is_idempotent(self, paths, session_id, delta_factory):
        """Test an already-synced delta is not touched again."""
        store = DeltaStore(session_id, paths)
        store.write_all([delta_factory("r1")])
        store.mark_synced(["r1"], synced_at=1)
        store.mark_synced(["r1"], synced_at=2)

        delta = store.read_all()[0]

        assert delta.sync_attempts == 1
        assert delta.synced_at == 1

    def test_file_is_valid_jsonl_after_rewrite(self, paths, session_id, delta_factory):
        """Test the rewritten file has one JSON object per line."""
        store = DeltaStore(session_id, paths)
        store.write_all([delta_factory("r1"), delta_factory("r2")])
        store.mark_synced(["r1", "r2"])

        lines = store.file_path.read_text().splitlines()

        assert [json.loads(line)["syncStatus"] for line in lines] == ["synced", "synced"]

    def test_stats(self, paths, session_id, delta_factory):
        """Test pending/synced counts."""
        store = DeltaStore(session_id, paths)
        store.write_all([delta_factory("r1"), delta_factory("r2"), delta_factory("r3")])
        store.mark_synced(["r2"])

        assert store.stats() == {"total": 3, "pending": 2, "synced": 1}

    def test_missing_file(self, paths, session_id):
        """Test a session without deltas reads as empty."""
        store = DeltaStore(session_id, paths)

        assert not store.exists()
        assert store.read_pending() == []


class TestDeltaFileLock:
    """Appends and the synced rewrite never interleave."""

    def test_append_during_rewrite_is_kept(self, paths, session_id, delta_factory, monkeypatch):
        """Test a delta appended while mark_synced rewrites the file is not lost."""
        store = DeltaStore(session_id, paths)
        store.append_delta(delta_factory("r1"))
        appender = threading.Thread(
            target=lambda: DeltaStore(session_id, paths).append_delta(delta_factory("r2"))
        )
        original_write_all = store.write_all

        def write_all(deltas):
            # The appender must block on the file lock until the rewrite is done.
            appender.start()
            appender.join(timeout=0.3)
            assert appender.is_alive()
            return original_write_all(deltas)

        monkeypatch.setattr(store, "write_all", write_all)

        store.mark_synced(["r1"])
        appender.join(timeout=5)

        assert [d.record_id for d in store.read_all()] == ["r1", "r2"]
        assert [d.record_id for d in store.read_pending()] == ["r2"]

    def test_append_waits_for_lock(self, paths, session_id, delta_factory):
        """Test append_delta blocks while another writer holds the delta file lock."""
        store = DeltaStore(session_id, paths)
        holder = FileLock(paths.metrics_lock_file(session_id))
        assert holder.acquire() is True
        appender = threading.Thread(target=lambda: store.append_delta(delta_factory("r1")))
        try:
            appender.start()
            appender.join(timeout=0.3)
            assert appender.is_alive()
            assert store.read_all() == []
        finally:
            holder.release()
        appender.join(timeout=5)

        assert [d.record_id for d in store.read_all()] == ["r1"]

    def test_lock_timeout(self, paths, session_id):
        """Test a second FileLock gives up after its timeout."""
        holder = FileLock(paths.metrics_lock_file(session_id))
        assert holder.acquire() is True
        try:
            assert FileLock(paths.metrics_lock_file(session_id), timeout=0.1).acquire() is False
            with pytest.raises(TimeoutError):
                with FileLock(paths.metrics_lock_file(session_id), timeout=0.1):
                    pass
        finally:
            holder.release()

        with FileLock(paths.metrics_lock_file(session_id), timeout=0.1):
            assert paths.metrics_lock_file(session_id).exists()
