"""Tests for the conversation payload log."""

import json

from agent_sync.state.payload_log import SUPERSEDED_ERROR, ConversationPayloadRecord, PayloadLog, PayloadStatus


def _history(index, text="hi"):
    return [
        {"role": "User", "message": text, "history_index": index},
        {"role": "Assistant", "message": "ok", "history_index": index},
    ]


class TestPayloadLog:
    """Append/update lifecycle of payload records."""

    def test_append_pending(self, paths, session_id):
        """Test a record is appended as pending with camelCase keys."""
        log = PayloadLog(session_id, paths)

        log.append_pending("conv-1", _history(0), False, [0], last_message_uuid="a0")

        raw = json.loads(log.file_path.read_text().splitlines()[0])
        assert raw["status"] == "pending"
        assert raw["payload"]["conversationId"] == "conv-1"
        assert raw["historyIndices"] == [0]
        assert raw["messageCount"] == 2
        assert raw["isTurnContinuation"] is False
        assert raw["lastMessageUuid"] == "a0"

    def test_update_last_status(self, paths, session_id):
        """Test the last record is rewritten to success with the response."""
        log = PayloadLog(session_id, paths)
        log.append_pending("conv-1", _history(0), False, [0])
        log.append_pending("conv-1", _history(1), False, [1])

        assert log.update_last_status(PayloadStatus.SUCCESS, response={"syncedCount": 2})

        records = log.read_all()
        assert [r.status for r in records] == [PayloadStatus.PENDING, PayloadStatus.SUCCESS]
        assert records[1].response == {"syncedCount": 2}

    def test_update_failed_keeps_error(self, paths, session_id):
        """Test a failed send records its error."""
        log = PayloadLog(session_id, paths)
        log.append_pending("conv-1", _history(0), False, [0])

        log.update_last_status(PayloadStatus.FAILED, error="HTTP 500")

        record = log.read_all()[0]
        assert record.status == PayloadStatus.FAILED
        assert record.error == "HTTP 500"

    def test_update_on_empty_log(self, paths, session_id):
        """Test updating a missing log reports False."""
        log = PayloadLog(session_id, paths)

        assert log.update_last_status(PayloadStatus.SUCCESS) is False
        assert log.update_status(3, PayloadStatus.SUCCESS) is False

    def test_pending_positions(self, paths, session_id):
        """Test pending() returns records with their positions."""
        log = PayloadLog(session_id, paths)
        for i in range(3):
            log.append_pending("conv-1", _history(i), False, [i])
        log.update_status(1, PayloadStatus.SUCCESS)

        assert [(pos, r.history_indices) for pos, r in log.pending()] == [(0, [0]), (2, [2])]

    def test_supersede_pending(self, paths, session_id):
        """Test only pending records at or below the index are marked failed."""
        log = PayloadLog(session_id, paths)
        for i in range(3):
            log.append_pending("conv-1", _history(i), False, [i])
        log.update_status(0, PayloadStatus.SUCCESS)

        assert log.supersede_pending(1) == 1

        records = log.read_all()
        assert [r.status for r in records] == [PayloadStatus.SUCCESS, PayloadStatus.FAILED, PayloadStatus.PENDING]
        assert records[1].error == SUPERSEDED_ERROR
        assert log.supersede_pending(1) == 0

    def test_last_successful(self, paths, session_id):
        """Test the newest success record defines the replayable history."""
        log = PayloadLog(session_id, paths)
        log.append_pending("conv-1", _history(0, "first"), False, [0])
        log.update_last_status(PayloadStatus.SUCCESS)
        log.append_pending("conv-1", _history(1, "second"), False, [1])
        log.update_last_status(PayloadStatus.SUCCESS)
        log.append_pending("conv-1", _history(2, "third"), False, [2])
        log.update_last_status(PayloadStatus.FAILED, error="x")

        record = log.last_successful()

        assert record.history[0]["message"] == "second"

    def test_last_successful_none(self, paths, session_id):
        """Test no success record returns None."""
        assert PayloadLog(session_id, paths).last_successful() is None

    def test_sync_stats(self, paths, session_id):
        """Test counts per status."""
        log = PayloadLog(session_id, paths)
        for i in range(4):
            log.append_pending("conv-1", _history(i), False, [i])
        log.update_status(0, PayloadStatus.SUCCESS)
        log.update_status(1, PayloadStatus.FAILED, error="x")

        assert log.get_sync_stats() == {"total": 4, "pending": 2, "success": 1, "failed": 1}


class TestConversationPayloadRecord:
    """Parsing records written by other versions."""

    def test_unknown_status_reads_as_failed(self):
        """Test an unknown status is never replayed."""
        record = ConversationPayloadRecord.from_dict({"status": "weird", "payload": {}})

        assert record.status == PayloadStatus.FAILED

    def test_message_count_defaults_to_history_length(self):
        """Test a missing messageCount falls back to the history length."""
        record = ConversationPayloadRecord.from_dict({
            "payload": {"conversationId": "c", "history": [{}, {}, {}]},
        })

        assert record.message_count == 3
        assert record.conversation_id == "c"
        assert record.status == PayloadStatus.PENDING
