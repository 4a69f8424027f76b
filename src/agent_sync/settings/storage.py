"""
Settings storage management for agent-sync.

This module provides YAML-based configuration file persistence with:
- Default SyncSettings when no configuration exists
- Environment variable overrides (AGENT_SYNC_API_URL, AGENT_SYNC_DRY_RUN)
- Secure storage of the API key and SSO cookies using the system keyring
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import keyring
import keyring.errors
import yaml

from ..state.paths import get_home_dir
from .models import AuthMode, RetryConfig, SyncSettings

logger = logging.getLogger(__name__)

API_KEY_ENTRY = "api-key"
COOKIES_ENTRY = "sso-cookies"

_TRUE_VALUES = {"1", "true", "yes", "on"}


class SettingsStorage:
    """
    Settings storage manager.

    Handles loading and saving SyncSettings to a YAML configuration file.
    Configuration is stored at ~/.agent-sync/config.yaml by default
    (AGENT_SYNC_HOME moves it together with the session data).

    Attributes:
        config_dir: Directory path for configuration files.
        config_file: Path to the main configuration file.
    """

    KEYRING_SERVICE = "agent-sync"

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        self.config_dir = config_dir or get_home_dir()
        self.config_file = self.config_dir / "config.yaml"

    def load(self) -> SyncSettings:
        """
        Load settings from the configuration file, then apply environment overrides.

        Returns:
            SyncSettings loaded from the config file, or defaults if it does not exist.
        """
        data: Dict[str, Any] = {}
        if self.config_file.exists():
            with open(self.config_file, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        settings = self._dict_to_settings(data)
        return self._apply_env(settings)

    def save(self, settings: SyncSettings) -> None:
        """Save settings to the configuration file, creating its directory."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            yaml.dump(
                self._settings_to_dict(settings),
                f,
                default_flow_style=False,
                allow_unicode=True,
                sort_keys=False,
            )

    def _settings_to_dict(self, settings: SyncSettings) -> Dict[str, Any]:
        return {
            "api_base_url": settings.api_base_url,
            "client_type": settings.client_type,
            "auth_mode": settings.auth_mode.value,
            "retry": {
                "timeout_seconds": settings.retry.timeout_seconds,
                "delays": list(settings.retry.delays),
            },
            "lock_ttl_seconds": settings.lock_ttl_seconds,
            "data_dir": settings.data_dir,
            "dry_run": settings.dry_run,
        }

    def _dict_to_settings(self, data: Dict[str, Any]) -> SyncSettings:
        defaults = SyncSettings()

        try:
            auth_mode = AuthMode(data.get("auth_mode", defaults.auth_mode.value))
        except ValueError:
            logger.warning(f"Unknown auth_mode {data.get('auth_mode')!r}, using {defaults.auth_mode.value}")
            auth_mode = defaults.auth_mode

        retry_data = data.get("retry") or {}
        retry = RetryConfig(
            timeout_seconds=float(retry_data.get("timeout_seconds", defaults.retry.timeout_seconds)),
            delays=[float(d) for d in retry_data.get("delays", defaults.retry.delays)],
        )

        return SyncSettings(
            api_base_url=data.get("api_base_url", defaults.api_base_url),
            client_type=data.get("client_type", defaults.client_type),
            auth_mode=auth_mode,
            retry=retry,
            lock_ttl_seconds=float(data.get("lock_ttl_seconds", defaults.lock_ttl_seconds)),
            data_dir=data.get("data_dir", defaults.data_dir) or "",
            dry_run=bool(data.get("dry_run", defaults.dry_run)),
        )

    def _apply_env(self, settings: SyncSettings) -> SyncSettings:
        api_url = os.environ.get("AGENT_SYNC_API_URL")
        if api_url:
            settings.api_base_url = api_url
        dry_run = os.environ.get("AGENT_SYNC_DRY_RUN")
        if dry_run is not None and dry_run != "":
            settings.dry_run = dry_run.strip().lower() in _TRUE_VALUES
        return settings

    # ========================================================================
    # Secret Management (using keyring for secure storage)
    # ========================================================================

    def _get_secret(self, entry: str) -> Optional[str]:
        try:
            return keyring.get_password(self.KEYRING_SERVICE, entry)
        except keyring.errors.KeyringError as e:
            logger.warning(f"Keyring unavailable, cannot retrieve {entry}: {e}")
            return None

    def _set_secret(self, entry: str, value: str) -> None:
        try:
            keyring.set_password(self.KEYRING_SERVICE, entry, value)
            logger.debug(f"Stored {entry} in keyring")
        except keyring.errors.KeyringError as e:
            logger.error(f"Failed to store {entry} in keyring: {e}")
            raise

    def _delete_secret(self, entry: str) -> None:
        try:
            keyring.delete_password(self.KEYRING_SERVICE, entry)
        except keyring.errors.PasswordDeleteError:
            logger.debug(f"No {entry} stored to delete")
        except keyring.errors.KeyringError as e:
            logger.warning(f"Keyring error while deleting {entry}: {e}")

    def get_api_key(self) -> Optional[str]:
        return self._get_secret(API_KEY_ENTRY)

    def set_api_key(self, api_key: str) -> None:
        self._set_secret(API_KEY_ENTRY, api_key)

    def delete_api_key(self) -> None:
        self._delete_secret(API_KEY_ENTRY)

    def get_cookies(self) -> Optional[str]:
        return self._get_secret(COOKIES_ENTRY)

    def set_cookies(self, cookies: str) -> None:
        self._set_secret(COOKIES_ENTRY, cookies)

    def build_context(self, settings: SyncSettings, dry_run: Optional[bool] = None):
        """Build a ProcessingContext with the secrets for the configured auth mode."""
        if settings.auth_mode == AuthMode.API_KEY:
            return settings.build_context(api_key=self.get_api_key(), dry_run=dry_run)
        return settings.build_context(cookies=self.get_cookies() or "", dry_run=dry_run)
