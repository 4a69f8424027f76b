"""Tests for atomic file writes."""

import json
import os
from unittest.mock import patch

import pytest

from agent_sync.state import atomic_writer
from agent_sync.state.atomic_writer import (
    append_jsonl,
    write_json_atomic,
    write_jsonl_atomic,
    write_text_atomic,
)


class TestAtomicWrites:
    """Successful writes."""

    def test_write_jsonl(self, tmp_path):
        """Test records are written one per line."""
        path = tmp_path / "out.jsonl"

        count = write_jsonl_atomic(path, [{"a": 1}, {"b": "ü"}])

        assert count == 2
        assert path.read_text(encoding="utf-8") == '{"a": 1}\n{"b": "ü"}\n'

    def test_write_jsonl_empty(self, tmp_path):
        """Test writing no records truncates the file."""
        path = tmp_path / "out.jsonl"
        path.write_text('{"old": true}\n')

        assert write_jsonl_atomic(path, []) == 0
        assert path.read_text() == ""

    def test_write_json_creates_parent(self, tmp_path):
        """Test missing parent directories are created."""
        path = tmp_path / "nested" / "dir" / "doc.json"

        write_json_atomic(path, {"sessionId": "x"})

        assert json.loads(path.read_text()) == {"sessionId": "x"}

    def test_no_temp_files_left(self, tmp_path):
        """Test the temp file is gone after a successful write."""
        path = tmp_path / "doc.json"
        write_json_atomic(path, {"a": 1})

        assert [p.name for p in tmp_path.iterdir()] == ["doc.json"]

    def test_append_jsonl(self, tmp_path):
        """Test appends add whole lines."""
        path = tmp_path / "log.jsonl"
        append_jsonl(path, {"n": 1})
        append_jsonl(path, {"n": 2})

        assert path.read_text().splitlines() == ['{"n": 1}', '{"n": 2}']


class TestInterruptedWrites:
    """A write that dies before the rename leaves the previous generation."""

    def test_failure_before_rename_keeps_previous_generation(self, tmp_path):
        """Test the target is bit-for-bit unchanged when the rename never happens."""
        path = tmp_path / "state.jsonl"
        write_jsonl_atomic(path, [{"gen": 1, "id": "a"}, {"gen": 1, "id": "b"}])
        before = path.read_bytes()

        with patch.object(atomic_writer.os, "replace", side_effect=OSError("killed")):
            with pytest.raises(OSError, match="killed"):
                write_jsonl_atomic(path, [{"gen": 2, "id": "a"}])

        assert path.read_bytes() == before
        assert [p.name for p in tmp_path.iterdir()] == ["state.jsonl"]

    def test_failure_during_serialization(self, tmp_path):
        """Test an unserializable record never touches the target."""
        path = tmp_path / "state.json"
        write_json_atomic(path, {"gen": 1})
        before = path.read_bytes()

        with pytest.raises(TypeError):
            write_json_atomic(path, {"gen": 2, "bad": object()})

        assert path.read_bytes() == before

    def test_fsync_failure_cleans_up(self, tmp_path):
        """Test a failed fsync removes the temp file and re-raises."""
        path = tmp_path / "doc.txt"
        path.write_text("old")

        with patch.object(atomic_writer.os, "fsync", side_effect=OSError("disk gone")):
            with pytest.raises(OSError, match="disk gone"):
                write_text_atomic(path, "new")

        assert path.read_text() == "old"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["doc.txt"]

    def test_temp_file_lives_next_to_target(self, tmp_path):
        """Test the temp file is created in the target directory (same filesystem)."""
        path = tmp_path / "doc.txt"
        seen = {}
        real_replace = os.replace

        def spy(src, dst):
            seen["src"] = src
            return real_replace(src, dst)

        with patch.object(atomic_writer.os, "replace", side_effect=spy):
            write_text_atomic(path, "content")

        assert os.path.dirname(str(seen["src"])) == str(tmp_path)
        assert path.read_text() == "content"
