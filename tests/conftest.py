"""Pytest configuration and fixtures for agent-sync tests."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_sync.api.client import SendResult
from agent_sync.state.delta_store import MetricDelta, TokenCounts
from agent_sync.state.paths import SessionPaths
from agent_sync.state.session_store import (
    Correlation,
    CorrelationStatus,
    SessionMetadata,
    SessionStore,
)
from agent_sync.sync.base import ParsedSession, ProcessingContext

SESSION_ID = "0f8e2c1a-5b7d-4e3f-9a21-6c4d8b0e7f13"


@pytest.fixture(autouse=True)
def agent_sync_home(tmp_path, monkeypatch):
    """Point AGENT_SYNC_HOME at a per-test directory."""
    home = tmp_path / "home"
    monkeypatch.setenv("AGENT_SYNC_HOME", str(home))
    monkeypatch.delenv("AGENT_SYNC_API_URL", raising=False)
    monkeypatch.delenv("AGENT_SYNC_DRY_RUN", raising=False)
    return home


@pytest.fixture
def paths(agent_sync_home):
    return SessionPaths(agent_sync_home)


@pytest.fixture
def session_id():
    return SESSION_ID


@pytest.fixture
def session_metadata(session_id):
    """A matched Claude session started on main."""
    return SessionMetadata(
        session_id=session_id,
        agent_name="claude",
        provider="anthropic",
        start_time=1_760_000_000_000,
        working_directory="/home/dev/repos/acme/service",
        git_branch="main",
        correlation=Correlation(
            status=CorrelationStatus.MATCHED,
            agent_session_id="agent-session-1",
        ),
    )


@pytest.fixture
def saved_session(paths, session_metadata):
    """Session metadata persisted to disk."""
    SessionStore(paths).save(session_metadata)
    return session_metadata


def make_delta(record_id, timestamp=1_760_000_100_000, branch="main", **kwargs):
    """Build a pending metric delta."""
    defaults = dict(
        tokens=TokenCounts(input=10, output=5),
        tools={},
        tool_status={},
    )
    defaults.update(kwargs)
    return MetricDelta(record_id=record_id, timestamp=timestamp, git_branch=branch, **defaults)


@pytest.fixture
def delta_factory():
    return make_delta


@pytest.fixture
def write_lines():
    """Write raw text lines to a file."""
    def _write(path: Path, lines):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path
    return _write


def user_prompt(uuid, text, timestamp="2025-10-09T10:00:00.000Z"):
    return {
        "type": "user",
        "uuid": uuid,
        "timestamp": timestamp,
        "message": {"role": "user", "content": text},
    }


def assistant_reply(uuid, text, timestamp="2025-10-09T10:00:03.500Z", tool_uses=None, usage=None):
    content = [{"type": "text", "text": text}] if text else []
    content.extend(tool_uses or [])
    return {
        "type": "assistant",
        "uuid": uuid,
        "timestamp": timestamp,
        "message": {
            "role": "assistant",
            "content": content,
            "usage": usage or {"input_tokens": 100, "output_tokens": 20},
        },
    }


def tool_result(uuid, tool_use_id, output, is_error=False, timestamp="2025-10-09T10:00:02.000Z"):
    return {
        "type": "user",
        "uuid": uuid,
        "timestamp": timestamp,
        "message": {
            "role": "user",
            "content": [{
                "type": "tool_result",
                "tool_use_id": tool_use_id,
                "content": output,
                "is_error": is_error,
            }],
        },
    }


def conversation_turns(count):
    """Transcript with `count` complete prompt/answer turns (uuids u0/a0, u1/a1, ...)."""
    messages = []
    for i in range(count):
        messages.append(user_prompt(f"u{i}", f"question {i}"))
        messages.append(assistant_reply(f"a{i}", f"answer {i}"))
    return messages


def read_json(path: Path):
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def make_sender(metric_results=None, conversation_results=None):
    """Sender double; each send returns the scripted results in order, then success."""
    sender = MagicMock()
    sender.send_metric = AsyncMock(return_value=SendResult(success=True, status_code=200))
    sender.upsert_conversation = AsyncMock(return_value=SendResult(success=True, status_code=200))
    if metric_results:
        sender.send_metric.side_effect = list(metric_results)
    if conversation_results:
        sender.upsert_conversation.side_effect = list(conversation_results)
    sender.close = AsyncMock()
    return sender


@pytest.fixture
def context():
    return ProcessingContext(api_base_url="http://api.test", version="1.0.0")


@pytest.fixture
def parsed(session_metadata):
    """Catch-up view of the session (no live messages)."""
    return ParsedSession(session_id=session_metadata.session_id, agent_name="claude", metadata=session_metadata)
