"""
Settings data models for agent-sync.

This module defines the configuration data classes:
- AuthMode: How requests authenticate against the ingestion API
- RetryConfig: Remote sender timeout and backoff
- SyncSettings: Main settings class aggregating all options
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .. import __version__
from ..api.client import DEFAULT_CLIENT_TYPE, DEFAULT_RETRY_DELAYS, DEFAULT_TIMEOUT_SECONDS
from ..state.lock_manager import DEFAULT_LOCK_TTL_SECONDS
from ..state.paths import SessionPaths
from ..sync.base import ProcessingContext

DEFAULT_API_BASE_URL = "http://localhost:8080"


class AuthMode(Enum):
    """
    Supported authentication modes.

    - SSO: Session cookies captured from a browser login (Cookie header)
    - API_KEY: Per-user key sent in the user-id header
    """

    SSO = "sso"
    API_KEY = "api-key"


@dataclass
class RetryConfig:
    """
    Remote sender retry settings.

    Attributes:
        timeout_seconds: Timeout of a single request.
        delays: Seconds to wait before each retry; one attempt plus one per delay.
    """

    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    delays: List[float] = field(default_factory=lambda: list(DEFAULT_RETRY_DELAYS))

    @property
    def max_attempts(self) -> int:
        return len(self.delays) + 1

    @property
    def worst_case_seconds(self) -> float:
        """Longest one logical send can take: every attempt times out, every delay is waited."""
        return self.timeout_seconds * self.max_attempts + sum(self.delays)


@dataclass
class SyncSettings:
    """
    Global settings for agent-sync.

    Secrets (API key, SSO cookies) are not part of this class; they live in
    the system keyring and are passed to build_context() by the caller.

    Attributes:
        api_base_url: Base URL of the ingestion API.
        client_type: Value of the X-Agent-Sync-Client header.
        auth_mode: Which secret authenticates requests.
        retry: Request timeout and retry backoff.
        lock_ttl_seconds: Age after which a session lock counts as abandoned.
        data_dir: Override of the data directory ("" uses AGENT_SYNC_HOME or ~/.agent-sync).
        dry_run: Never hit the network.
    """

    api_base_url: str = DEFAULT_API_BASE_URL
    client_type: str = DEFAULT_CLIENT_TYPE
    auth_mode: AuthMode = AuthMode.SSO
    retry: RetryConfig = field(default_factory=RetryConfig)
    lock_ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS
    data_dir: str = ""
    dry_run: bool = False

    def session_paths(self) -> SessionPaths:
        return SessionPaths(Path(self.data_dir).expanduser() if self.data_dir else None)

    def effective_lock_ttl(self) -> float:
        """
        Lock TTL actually used for syncing.

        A TTL shorter than one worst-case send would let a second process
        reclaim the lock of a live holder, so it is raised to twice that.
        """
        return max(self.lock_ttl_seconds, 2 * self.retry.worst_case_seconds)

    def build_context(
        self,
        cookies: str = "",
        api_key: Optional[str] = None,
        dry_run: Optional[bool] = None,
    ) -> ProcessingContext:
        """
        Build the processing context for a sync run.

        Only the secret matching auth_mode is forwarded, so a stale key in
        the keyring cannot override SSO.
        """
        return ProcessingContext(
            api_base_url=self.api_base_url,
            cookies=cookies if self.auth_mode == AuthMode.SSO else "",
            api_key=api_key if self.auth_mode == AuthMode.API_KEY else None,
            client_type=self.client_type,
            version=__version__,
            dry_run=self.dry_run if dry_run is None else dry_run,
        )
