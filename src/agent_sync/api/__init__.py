"""
Ingestion API client.
"""

from .client import (
    DEFAULT_RETRY_DELAYS,
    DEFAULT_TIMEOUT_SECONDS,
    RemoteSender,
    SendResult,
    SyncApiError,
    is_retryable_status,
)

__all__ = [
    "RemoteSender",
    "SendResult",
    "SyncApiError",
    "is_retryable_status",
    "DEFAULT_RETRY_DELAYS",
    "DEFAULT_TIMEOUT_SECONDS",
]
