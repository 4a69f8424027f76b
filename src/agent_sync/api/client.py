"""
Remote sender for the ingestion API.

Two endpoints are used:

    POST {base}/v1/metrics                                  session metric
    PUT  {base}/v1/conversations/{conversation_id}/history  conversation upsert

Every request has a fixed timeout and is retried with backoff on
connection errors, timeouts, 5xx and 429. Other 4xx responses fail
immediately. The sender never raises into processors: each call returns
a SendResult.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

import aiohttp

from .. import __version__

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRY_DELAYS: tuple[float, ...] = (1.0, 2.0, 5.0)
DEFAULT_CLIENT_TYPE = "agent-sync"

METRICS_PATH = "/v1/metrics"
CONVERSATIONS_PATH = "/v1/conversations"


class SyncApiError(Exception):
    """Error talking to the ingestion API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
        response: dict[str, Any] | None = None,
    ):
        """
        Initialize the error.

        Args:
            message: Error message
            status_code: HTTP status code, None for transport errors
            retryable: Whether sending again may succeed
            response: Decoded error body, if any
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.response = response

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message


def is_retryable_status(status: int) -> bool:
    """5xx and 429 are worth retrying; other 4xx are not."""
    return status >= 500 or status == 429


@dataclass
class SendResult:
    """Outcome of one logical send (after retries)."""
    success: bool
    message: str = ""
    status_code: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0


class RemoteSender:
    """
    Async client for the ingestion API.

    Example:
        async with RemoteSender.from_context(context) as sender:
            result = await sender.send_metric(payload)
            if not result.success:
                ...
    """

    def __init__(
        self,
        base_url: str,
        cookies: str = "",
        api_key: str | None = None,
        version: str = __version__,
        client_type: str = DEFAULT_CLIENT_TYPE,
        dry_run: bool = False,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.cookies = cookies
        self.api_key = api_key
        self.version = version
        self.client_type = client_type or DEFAULT_CLIENT_TYPE
        self.dry_run = dry_run
        self.timeout = timeout
        self.retry_delays = tuple(retry_delays)
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_context(cls, context: Any, **kwargs: Any) -> "RemoteSender":
        """Build a sender from a ProcessingContext."""
        return cls(
            base_url=context.api_base_url,
            cookies=context.cookies,
            api_key=context.api_key,
            version=context.version,
            client_type=context.client_type,
            dry_run=context.dry_run,
            **kwargs,
        )

    async def __aenter__(self) -> "RemoteSender":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    def build_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"agent-sync/{self.version}",
            "X-Agent-Sync-Client": self.client_type,
        }
        if self.api_key:
            headers["user-id"] = self.api_key
        elif self.cookies:
            headers["Cookie"] = self.cookies
        return headers

    async def send_metric(self, metric: dict[str, Any]) -> SendResult:
        """POST one session metric."""
        if self.dry_run:
            attributes = metric.get("attributes", {})
            logger.info(
                f"[RemoteSender] DRY-RUN: would send metric {metric.get('metric_name')} "
                f"for branch {attributes.get('branch')}"
            )
            logger.debug(f"[RemoteSender] DRY-RUN payload: {json.dumps(metric)}")
            return SendResult(success=True, message="[DRY-RUN] Metric logged (not sent)")
        return await self._request("POST", METRICS_PATH, metric)

    async def upsert_conversation(
        self,
        conversation_id: str,
        history: list[dict[str, Any]],
        assistant_id: str,
        folder: str,
    ) -> SendResult:
        """PUT new history entries of a conversation."""
        payload = {"assistant_id": assistant_id, "folder": folder, "history": history}
        if self.dry_run:
            logger.info(
                f"[RemoteSender] DRY-RUN: would upsert conversation {conversation_id} "
                f"({len(history)} entries)"
            )
            logger.debug(f"[RemoteSender] DRY-RUN payload: {json.dumps(payload)}")
            return SendResult(
                success=True,
                message="[DRY-RUN] Conversation logged (not sent)",
                data={
                    "conversation_id": conversation_id,
                    "new_messages": len(history),
                    "total_messages": len(history),
                },
            )
        return await self._request("PUT", f"{CONVERSATIONS_PATH}/{conversation_id}/history", payload)

    async def _request(self, method: str, path: str, payload: dict[str, Any]) -> SendResult:
        """Send with retry. Never raises."""
        url = f"{self.base_url}{path}"
        attempts = 1 + len(self.retry_delays)
        last_error: SyncApiError | None = None

        for attempt in range(attempts):
            if attempt > 0:
                delay = self.retry_delays[attempt - 1]
                logger.debug(f"[RemoteSender] Retry {attempt} for {method} {path} in {delay}s")
                await asyncio.sleep(delay)

            try:
                data, status = await self._send_once(method, url, payload)
                logger.debug(f"[RemoteSender] {method} {path} -> {status}")
                return SendResult(
                    success=True,
                    message=str(data.get("message", "OK")),
                    status_code=status,
                    data=data,
                    attempts=attempt + 1,
                )
            except SyncApiError as e:
                last_error = e
                if not e.retryable:
                    logger.error(f"[RemoteSender] Non-retryable error on {method} {path}: {e}")
                    return SendResult(
                        success=False,
                        message=str(e),
                        status_code=e.status_code,
                        attempts=attempt + 1,
                    )
                logger.warning(f"[RemoteSender] Attempt {attempt + 1}/{attempts} failed on {method} {path}: {e}")

        assert last_error is not None
        logger.error(f"[RemoteSender] {method} {path} failed after {attempts} attempts: {last_error}")
        return SendResult(
            success=False,
            message=f"Failed after {attempts} attempts: {last_error}",
            status_code=last_error.status_code,
            attempts=attempts,
        )

    async def _send_once(self, method: str, url: str, payload: dict[str, Any]) -> tuple[dict[str, Any], int]:
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                json=payload,
                headers=self.build_headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                text = await response.text()
                data = _decode_body(text)

                if response.status >= 400:
                    message = data.get("message") or response.reason or "error"
                    detail = f"API returned {response.status}: {message}"
                    if data.get("details"):
                        detail += f" ({data['details']})"
                    raise SyncApiError(
                        detail,
                        status_code=response.status,
                        retryable=is_retryable_status(response.status),
                        response=data,
                    )

                if data.get("success") is False:
                    raise SyncApiError(
                        f"API reported failure: {data.get('message', 'unknown')}",
                        status_code=response.status,
                        response=data,
                    )
                return data, response.status

        # aiohttp's timeout errors are also ClientErrors; classify them first.
        except asyncio.TimeoutError:
            raise SyncApiError(f"Request timeout after {self.timeout}s", retryable=True)
        except aiohttp.ClientError as e:
            raise SyncApiError(f"Connection error: {e}", retryable=True)


def _decode_body(text: str) -> dict[str, Any]:
    if not text:
        return {}
    try:
        data = json.loads(text)
    except ValueError:
        return {"message": text[:500]}
    return data if isinstance(data, dict) else {"data": data}
