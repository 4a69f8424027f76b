"""Tests for the ingestion API client."""

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp import test_utils

from agent_sync.api.client import RemoteSender, SyncApiError, is_retryable_status
from agent_sync.sync.base import ProcessingContext


class FakeApi:
    """Serves scripted responses and records every request."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def handle(self, request):
        body = await request.text()
        self.requests.append({
            "method": request.method,
            "path": request.path,
            "headers": dict(request.headers),
            "json": json.loads(body) if body else None,
        })
        status, payload = self.responses.pop(0) if self.responses else (200, {"success": True})
        if isinstance(payload, str):
            return web.Response(status=status, text=payload)
        return web.json_response(payload, status=status)

    def app(self):
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle)
        return app


def _sender(server, **kwargs):
    kwargs.setdefault("retry_delays", (0, 0, 0))
    return RemoteSender(str(server.make_url("")).rstrip("/"), **kwargs)


METRIC = {"metric_name": "coding_agent_usage", "attributes": {"branch": "main"}, "time": "2025-10-09T10:00:00Z"}


class TestRequests:
    """Wire format of both endpoints."""

    @pytest.mark.asyncio
    async def test_send_metric_posts_payload(self):
        """Test the metric is POSTed unchanged to /v1/metrics."""
        api = FakeApi([(200, {"success": True, "message": "stored"})])
        async with test_utils.TestServer(api.app()) as server:
            async with _sender(server, cookies="sid=abc") as sender:
                result = await sender.send_metric(METRIC)

        assert result.success is True
        assert result.message == "stored"
        assert result.attempts == 1
        request = api.requests[0]
        assert request["method"] == "POST"
        assert request["path"] == "/v1/metrics"
        assert request["json"] == METRIC

    @pytest.mark.asyncio
    async def test_upsert_conversation_puts_history(self):
        """Test the conversation upsert shape."""
        api = FakeApi([(200, {"new_messages": 2, "total_messages": 6})])
        history = [{"role": "User", "message": "hi", "history_index": 3}]
        async with test_utils.TestServer(api.app()) as server:
            async with _sender(server) as sender:
                result = await sender.upsert_conversation("conv-1", history, "assistant-1", "Claude Code")

        assert result.success is True
        assert result.data["total_messages"] == 6
        request = api.requests[0]
        assert request["method"] == "PUT"
        assert request["path"] == "/v1/conversations/conv-1/history"
        assert request["json"] == {"assistant_id": "assistant-1", "folder": "Claude Code", "history": history}

    @pytest.mark.asyncio
    async def test_cookie_headers(self):
        """Test SSO auth sends the cookie and client headers."""
        api = FakeApi([(200, {})])
        async with test_utils.TestServer(api.app()) as server:
            async with _sender(server, cookies="sid=abc", version="9.9.9", client_type="cli") as sender:
                await sender.send_metric(METRIC)

        headers = api.requests[0]["headers"]
        assert headers["Cookie"] == "sid=abc"
        assert headers["User-Agent"] == "agent-sync/9.9.9"
        assert headers["X-Agent-Sync-Client"] == "cli"
        assert "user-id" not in {k.lower() for k in headers}

    def test_api_key_takes_precedence(self):
        """Test API key auth replaces the cookie header."""
        sender = RemoteSender("http://x", cookies="sid=abc", api_key="key-1")

        headers = sender.build_headers()

        assert headers["user-id"] == "key-1"
        assert "Cookie" not in headers
        assert headers["Content-Type"] == "application/json"

    def test_from_context(self):
        """Test a sender is built from the processing context."""
        context = ProcessingContext(api_base_url="http://api/", api_key="k", version="1.2.3", dry_run=True)

        sender = RemoteSender.from_context(context, retry_delays=(0,))

        assert sender.base_url == "http://api"
        assert sender.api_key == "k"
        assert sender.dry_run is True
        assert sender.retry_delays == (0,)


class TestRetries:
    """Retry classification."""

    @pytest.mark.asyncio
    async def test_retries_5xx_then_succeeds(self):
        """Test server errors are retried."""
        api = FakeApi([(503, {"message": "busy"}), (500, "oops"), (200, {"success": True})])
        async with test_utils.TestServer(api.app()) as server:
            async with _sender(server) as sender:
                result = await sender.send_metric(METRIC)

        assert result.success is True
        assert result.attempts == 3
        assert len(api.requests) == 3

    @pytest.mark.asyncio
    async def test_retries_429(self):
        """Test rate limiting is retried."""
        api = FakeApi([(429, {"message": "slow down"}), (200, {})])
        async with test_utils.TestServer(api.app()) as server:
            async with _sender(server) as sender:
                result = await sender.send_metric(METRIC)

        assert result.success is True
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_all_attempts(self):
        """Test one attempt plus one per retry delay, then failure."""
        api = FakeApi([(502, {"message": "bad gateway"})] * 4)
        async with test_utils.TestServer(api.app()) as server:
            async with _sender(server) as sender:
                result = await sender.send_metric(METRIC)

        assert result.success is False
        assert result.attempts == 4
        assert result.status_code == 502
        assert "Failed after 4 attempts" in result.message
        assert len(api.requests) == 4

    @pytest.mark.asyncio
    async def test_4xx_not_retried(self):
        """Test client errors fail immediately with the server message."""
        api = FakeApi([(400, {"message": "invalid payload", "details": "time missing"})])
        async with test_utils.TestServer(api.app()) as server:
            async with _sender(server) as sender:
                result = await sender.send_metric(METRIC)

        assert result.success is False
        assert result.attempts == 1
        assert result.status_code == 400
        assert "invalid payload" in result.message
        assert "time missing" in result.message

    @pytest.mark.asyncio
    async def test_success_false_body_not_retried(self):
        """Test a 200 with success=false is a non-retryable failure."""
        api = FakeApi([(200, {"success": False, "message": "rejected"})])
        async with test_utils.TestServer(api.app()) as server:
            async with _sender(server) as sender:
                result = await sender.send_metric(METRIC)

        assert result.success is False
        assert result.attempts == 1
        assert "rejected" in result.message

    @pytest.mark.asyncio
    async def test_connection_error_retried(self):
        """Test an unreachable server is retried and reported."""
        server = test_utils.TestServer(web.Application())
        await server.start_server()
        url = str(server.make_url("")).rstrip("/")
        await server.close()

        async with RemoteSender(url, retry_delays=(0, 0)) as sender:
            result = await sender.send_metric(METRIC)

        assert result.success is False
        assert result.attempts == 3
        assert "Connection error" in result.message

    @pytest.mark.asyncio
    async def test_timeout_retried(self):
        """Test a slow response counts as a retryable timeout."""
        async def slow(request):
            await asyncio.sleep(1)
            return web.json_response({})

        app = web.Application()
        app.router.add_post("/v1/metrics", slow)
        async with test_utils.TestServer(app) as server:
            async with _sender(server, timeout=0.05, retry_delays=(0,)) as sender:
                result = await sender.send_metric(METRIC)

        assert result.success is False
        assert result.attempts == 2
        assert "timeout" in result.message.lower()

    @pytest.mark.parametrize("status,expected", [(500, True), (503, True), (429, True), (400, False), (404, False)])
    def test_is_retryable_status(self, status, expected):
        """Test status classification."""
        assert is_retryable_status(status) is expected


class TestDryRun:
    """Dry run never touches the network."""

    @pytest.mark.asyncio
    async def test_dry_run_metric(self):
        """Test dry-run metrics succeed without a server."""
        async with RemoteSender("http://127.0.0.1:9", dry_run=True) as sender:
            result = await sender.send_metric(METRIC)

        assert result.success is True
        assert "DRY-RUN" in result.message

    @pytest.mark.asyncio
    async def test_dry_run_conversation(self):
        """Test dry-run upserts report the would-be counts."""
        async with RemoteSender("http://127.0.0.1:9", dry_run=True) as sender:
            result = await sender.upsert_conversation("c", [{}, {}], "a", "f")

        assert result.success is True
        assert result.data["new_messages"] == 2


def test_sync_api_error_str():
    """Test the error message includes the HTTP status."""
    assert str(SyncApiError("boom", status_code=502)) == "boom (HTTP 502)"
    assert str(SyncApiError("boom")) == "boom"
